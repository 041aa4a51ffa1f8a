"""
Webhook Package

Inbound ingestion and outbound delivery of webhooks:

- Signature verification (HMAC, timestamp-qualified HMAC, header aliases)
- Provider variants for generic senders, Stripe, GitHub and Shopify
- Deduplicated ingestion with per-source handlers
- Subscription matching with wildcard event types and payload filters
- Outbound dispatch with retry/backoff and per-destination circuit breaking

Example usage:

    from hookrelay_core.config import Settings
    from hookrelay_core.webhooks import build_webhook_service

    service = build_webhook_service(Settings())
    await service.start()

    # Outbound
    endpoint = await service.create_endpoint(
        "https://example.com/webhook",
        events=["invoice.*"],
    )
    await service.subscribe(
        endpoint.id,
        "invoice.paid",
        filters=[{"path": "data.amount", "operator": "gte", "value": 1000}],
    )
    delivery_ids = await service.broadcast("invoice.paid", {"data": {"amount": 4200}})

    # Inbound
    service.on("stripe", "customer.*", handle_customer_event)
    event = await service.handle_incoming("stripe", raw_body, request_headers)

    await service.stop()
"""

# Models
from .models import (
    DeliveryResult,
    DeliveryStatus,
    ProcessingStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookSubscription,
)

# Errors
from .exceptions import (
    CircuitOpen,
    DeliveryNotFound,
    DeliveryNotRetryable,
    DestinationRejected,
    DestinationUnreachable,
    DuplicateDelivery,
    EndpointInactive,
    EndpointNotFound,
    EventNotFound,
    HandlerFailure,
    InvalidFilter,
    MalformedPayload,
    MaxRetriesExceeded,
    MissingRawBody,
    PersistenceFailure,
    SignatureInvalid,
    UnknownSource,
    WebhookError,
)

# Signing
from .signing import (
    ApiKeyValidator,
    BasicAuthValidator,
    HeaderAliasSignatureValidator,
    HeaderTimestampSignatureValidator,
    HmacSignatureValidator,
    JwtSignatureValidator,
    SignatureValidator,
    SignatureVariant,
    TimestampSignatureValidator,
    build_validator,
    generate_secret,
    get_validator,
    verify_signature,
)

# Providers
from .providers import InboundRequest, ProviderRegistry, WebhookProvider

# Routing
from .filters import FilterGroup, FilterOperator, FilterPredicate, parse_filters
from .matcher import SubscriptionMatcher, event_type_matches

# Delivery
from .circuit import (
    CircuitBreaker,
    CircuitState,
    CircuitStateName,
    CircuitStateStore,
    InMemoryCircuitStateStore,
    RedisCircuitStateStore,
)
from .retry import RetryPolicy
from .scheduler import RetryScheduler
from .dispatcher import WebhookDispatcher

# Ingestion
from .receiver import WebhookReceiver

# Notifications and storage
from .notifications import LoggingListener, NotificationBus, WebhookLifecycle, WebhookNotification
from .repository import InMemoryWebhookRepository, WebhookRepository

# Service
from .service import WebhookService, build_webhook_service


__all__ = [
    # Models
    "DeliveryResult",
    "DeliveryStatus",
    "ProcessingStatus",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookEvent",
    "WebhookSubscription",
    # Errors
    "CircuitOpen",
    "DeliveryNotFound",
    "DeliveryNotRetryable",
    "DestinationRejected",
    "DestinationUnreachable",
    "DuplicateDelivery",
    "EndpointInactive",
    "EndpointNotFound",
    "EventNotFound",
    "HandlerFailure",
    "InvalidFilter",
    "MalformedPayload",
    "MaxRetriesExceeded",
    "MissingRawBody",
    "PersistenceFailure",
    "SignatureInvalid",
    "UnknownSource",
    "WebhookError",
    # Signing
    "ApiKeyValidator",
    "BasicAuthValidator",
    "HeaderAliasSignatureValidator",
    "HeaderTimestampSignatureValidator",
    "HmacSignatureValidator",
    "JwtSignatureValidator",
    "SignatureValidator",
    "SignatureVariant",
    "TimestampSignatureValidator",
    "build_validator",
    "generate_secret",
    "get_validator",
    "verify_signature",
    # Providers
    "InboundRequest",
    "ProviderRegistry",
    "WebhookProvider",
    # Routing
    "FilterGroup",
    "FilterOperator",
    "FilterPredicate",
    "parse_filters",
    "SubscriptionMatcher",
    "event_type_matches",
    # Delivery
    "CircuitBreaker",
    "CircuitState",
    "CircuitStateName",
    "CircuitStateStore",
    "InMemoryCircuitStateStore",
    "RedisCircuitStateStore",
    "RetryPolicy",
    "RetryScheduler",
    "WebhookDispatcher",
    # Ingestion
    "WebhookReceiver",
    # Notifications and storage
    "LoggingListener",
    "NotificationBus",
    "WebhookLifecycle",
    "WebhookNotification",
    "InMemoryWebhookRepository",
    "WebhookRepository",
    # Service
    "WebhookService",
    "build_webhook_service",
]
