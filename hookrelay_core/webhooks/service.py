"""
Webhook Service
===============

Facade over the receiver, the dispatcher and the subscription matcher, plus
:func:`build_webhook_service` which wires the components together from
:class:`~hookrelay_core.config.Settings`. Nothing here is a process-wide
singleton; callers own the instance they build.
"""

import time
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx
import structlog

from ..config import Settings
from .circuit import CircuitBreaker, CircuitStateName, CircuitStateStore
from .dispatcher import WebhookDispatcher
from .exceptions import EndpointInactive, EndpointNotFound
from .filters import parse_filters
from .matcher import SubscriptionMatcher, endpoint_accepts_event
from .models import (
    DeliveryResult,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookSubscription,
    new_id,
)
from .notifications import LoggingListener, Listener, NotificationBus
from .providers import InboundRequest, ProviderRegistry
from .receiver import Handler, WebhookReceiver
from .repository import InMemoryWebhookRepository, WebhookRepository
from .signing import generate_secret

logger = structlog.get_logger(__name__)


class WebhookService:
    """
    Entry point for the management and ingestion layers.

    Usage:
        service = build_webhook_service(settings)
        async with service:
            endpoint = await service.create_endpoint("https://example.com/hook")
            await service.subscribe(endpoint.id, "invoice.*")
            await service.broadcast("invoice.paid", {"id": "in_1"})
    """

    def __init__(
        self,
        settings: Settings,
        repository: WebhookRepository,
        receiver: WebhookReceiver,
        dispatcher: WebhookDispatcher,
        circuit_breaker: CircuitBreaker,
        matcher: SubscriptionMatcher,
        notifier: NotificationBus,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repository = repository
        self.receiver = receiver
        self.dispatcher = dispatcher
        self.circuit_breaker = circuit_breaker
        self.matcher = matcher
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.circuit_breaker.store.close()

    async def __aenter__(self) -> "WebhookService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    generate_secret = staticmethod(generate_secret)

    # =========================================================================
    # Inbound
    # =========================================================================

    def on(self, source: str, pattern: str, handler: Handler) -> None:
        self.receiver.on(source, pattern, handler)

    def on_any(self, source: str, handler: Handler) -> None:
        self.receiver.on_any(source, handler)

    async def handle_incoming(
        self,
        source: str,
        body: Union[bytes, InboundRequest],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        return await self.receiver.handle(source, body, headers)

    # =========================================================================
    # Endpoints and subscriptions
    # =========================================================================

    async def create_endpoint(
        self,
        url: str,
        name: str = "",
        events: Optional[List[str]] = None,
        secret: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        is_active: bool = True,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WebhookEndpoint:
        """Register an outbound endpoint. A secret is generated when none is given."""
        parsed = httpx.URL(url)
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError(f"Endpoint URL must be an absolute http(s) URL: {url}")

        endpoint = WebhookEndpoint(
            id=new_id("whk"),
            url=url,
            secret=secret or generate_secret(),
            name=name or parsed.host,
            description=description,
            is_active=is_active,
            events=list(events or []),
            headers=dict(headers or {}),
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
            metadata=dict(metadata or {}),
        )
        endpoint = await self.repository.store_endpoint(endpoint)
        logger.info("webhook_endpoint_created", endpoint_id=endpoint.id, url=url)
        return endpoint

    async def update_endpoint(self, endpoint_id: str, **changes: Any) -> WebhookEndpoint:
        endpoint = await self._get_endpoint(endpoint_id)
        for key, value in changes.items():
            if key in ("id", "created_at") or not hasattr(endpoint, key):
                raise ValueError(f"Cannot update endpoint field '{key}'")
            setattr(endpoint, key, value)
        return await self.repository.store_endpoint(endpoint)

    async def _get_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = await self.repository.get_endpoint(endpoint_id)
        if endpoint is None:
            raise EndpointNotFound(endpoint_id)
        return endpoint

    async def subscribe(
        self,
        endpoint_id: str,
        event_types: Union[str, Iterable[str]],
        filters: Any = None,
        expires_at: Optional[datetime] = None,
        max_deliveries: Optional[int] = None,
        description: str = "",
        is_active: bool = True,
    ) -> WebhookSubscription:
        """
        Subscribe an endpoint to event types.

        Raises:
            EndpointNotFound: Unknown endpoint
            InvalidFilter: Filters cannot be compiled
        """
        await self._get_endpoint(endpoint_id)
        if isinstance(event_types, str):
            event_types = [event_types]
        event_types = [t for t in event_types if t]
        if not event_types:
            raise ValueError("At least one event type pattern is required")

        subscription = WebhookSubscription(
            id=new_id("sub"),
            endpoint_id=endpoint_id,
            event_types=event_types,
            filters=parse_filters(filters),
            is_active=is_active,
            expires_at=expires_at,
            max_deliveries=max_deliveries,
            description=description,
        )
        subscription = await self.repository.store_subscription(subscription)
        logger.info(
            "webhook_subscription_created",
            subscription_id=subscription.id,
            endpoint_id=endpoint_id,
            event_types=event_types,
        )
        return subscription

    async def unsubscribe(self, subscription_id: str) -> Optional[WebhookSubscription]:
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            return None
        subscription.is_active = False
        return await self.repository.store_subscription(subscription)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(
        self,
        url: str,
        event_type: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        secret: Optional[str] = None,
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Queue a delivery to an ad-hoc URL. Returns the delivery id."""
        delivery = WebhookDelivery(
            id=new_id("dlv"),
            destination=url,
            event_type=event_type,
            payload=payload,
            max_attempts=max_attempts or self.settings.dispatch.max_attempts,
            headers=dict(headers or {}),
            secret=secret,
            timeout_seconds=timeout_seconds,
            metadata=dict(metadata or {}),
            created_at=self._now(),
        )
        return await self.dispatcher.enqueue(delivery)

    async def send_to_endpoint(
        self,
        endpoint_id: str,
        event_type: str,
        payload: Dict[str, Any],
        subscription_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Queue a delivery to a registered endpoint.

        Raises:
            EndpointNotFound: Unknown endpoint
            EndpointInactive: Endpoint disabled or not accepting ``event_type``
        """
        endpoint = await self._get_endpoint(endpoint_id)
        return await self._enqueue_for_endpoint(endpoint, event_type, payload, subscription_id, metadata)

    async def _enqueue_for_endpoint(
        self,
        endpoint: WebhookEndpoint,
        event_type: str,
        payload: Dict[str, Any],
        subscription_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not endpoint.is_active:
            raise EndpointInactive(endpoint.id)
        if not endpoint_accepts_event(endpoint, event_type):
            raise EndpointInactive(endpoint.id, f"Endpoint does not accept event type '{event_type}'")

        delivery = WebhookDelivery(
            id=new_id("dlv"),
            destination=endpoint.url,
            event_type=event_type,
            payload=payload,
            endpoint_id=endpoint.id,
            subscription_id=subscription_id,
            max_attempts=endpoint.max_attempts or self.settings.dispatch.max_attempts,
            headers=dict(endpoint.headers),
            timeout_seconds=endpoint.timeout_seconds,
            metadata=dict(metadata or {}),
            created_at=self._now(),
        )
        return await self.dispatcher.enqueue(delivery)

    async def matching_subscriptions(self, event_type: str, payload: Dict[str, Any]) -> List[WebhookSubscription]:
        candidates = await self.repository.find_subscriptions_for_event(event_type)
        endpoints: Dict[str, WebhookEndpoint] = {}
        for subscription in candidates:
            if subscription.endpoint_id not in endpoints:
                endpoint = await self.repository.get_endpoint(subscription.endpoint_id)
                if endpoint is not None:
                    endpoints[endpoint.id] = endpoint
        return self.matcher.match(event_type, payload, candidates, endpoints)

    async def broadcast(
        self,
        event_type: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Queue one delivery per endpoint with a matching subscription."""
        matched = await self.matching_subscriptions(event_type, payload)

        delivery_ids = []
        seen_endpoints = set()
        for subscription in matched:
            if subscription.endpoint_id in seen_endpoints:
                continue
            seen_endpoints.add(subscription.endpoint_id)
            endpoint = await self._get_endpoint(subscription.endpoint_id)
            delivery_ids.append(
                await self._enqueue_for_endpoint(endpoint, event_type, payload, subscription.id, metadata)
            )

        logger.info("webhook_broadcast", event_type=event_type, deliveries=len(delivery_ids))
        return delivery_ids

    async def retry(self, delivery_id: str) -> DeliveryResult:
        return await self.dispatcher.retry(delivery_id)

    async def cancel(self, delivery_id: str, reason: str = "Cancelled") -> WebhookDelivery:
        return await self.dispatcher.cancel(delivery_id, reason)

    async def retry_failed(self, limit: Optional[int] = None) -> int:
        """Move every retrying delivery to the front of the queue."""
        deliveries = await self.repository.find_deliveries(statuses=[DeliveryStatus.RETRYING])
        if limit is not None:
            deliveries = deliveries[:limit]
        for delivery in deliveries:
            self.dispatcher.scheduler.schedule(delivery.id)
        logger.info("webhook_retry_failed", count=len(deliveries))
        return len(deliveries)

    # =========================================================================
    # Observability and maintenance
    # =========================================================================

    async def stats(self, days: int = 7) -> Dict[str, Any]:
        """Aggregate inbound and outbound counters for the last ``days`` days."""
        since = self._now() - timedelta(days=days)
        events = await self.repository.find_events(since=since)
        deliveries = await self.repository.find_deliveries(since=since)

        by_source: Dict[str, Counter] = defaultdict(Counter)
        for event in events:
            by_source[event.source][event.status.value] += 1

        delivery_status = Counter(d.status.value for d in deliveries)
        by_destination: Dict[str, Counter] = defaultdict(Counter)
        for delivery in deliveries:
            by_destination[delivery.destination][delivery.status.value] += 1

        timings = [d.response_time_ms for d in deliveries if d.response_time_ms is not None]
        finished = delivery_status[DeliveryStatus.SUCCESS.value] + delivery_status[DeliveryStatus.EXHAUSTED.value]

        return {
            "period_days": days,
            "incoming": {
                "total": len(events),
                "by_status": dict(Counter(e.status.value for e in events)),
                "by_source": {source: dict(c) for source, c in by_source.items()},
                "invalid_signatures": self.receiver.invalid_signature_counts,
            },
            "outgoing": {
                "total": len(deliveries),
                "by_status": dict(delivery_status),
                "by_destination": {dest: dict(c) for dest, c in by_destination.items()},
                "success_rate": (
                    delivery_status[DeliveryStatus.SUCCESS.value] / finished if finished else None
                ),
                "avg_response_time_ms": sum(timings) / len(timings) if timings else None,
                "total_attempts": sum(d.attempts for d in deliveries),
            },
            "circuits": await self.circuit_breaker.snapshots(),
        }

    async def health(self) -> Dict[str, Any]:
        circuits = await self.circuit_breaker.snapshots()
        open_circuits = [c["destination"] for c in circuits if c["state"] == CircuitStateName.OPEN.value]
        backlog = await self.repository.find_deliveries(
            statuses=[DeliveryStatus.PENDING, DeliveryStatus.RETRYING]
        )
        scheduler = self.dispatcher.scheduler
        healthy = scheduler.running and not open_circuits
        return {
            "status": "healthy" if healthy else "degraded",
            "scheduler_running": scheduler.running,
            "scheduled": scheduler.pending,
            "in_flight": scheduler.in_flight,
            "backlog": len(backlog),
            "open_circuits": open_circuits,
        }

    async def cleanup(self, days: Optional[int] = None) -> Dict[str, int]:
        """Delete events and finished deliveries older than the retention period."""
        days = self.settings.retention_days if days is None else days
        return await self.repository.delete_older_than(self._now() - timedelta(days=days))


def build_webhook_service(
    settings: Optional[Settings] = None,
    repository: Optional[WebhookRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    circuit_store: Optional[CircuitStateStore] = None,
    listeners: Optional[Iterable[Listener]] = None,
    clock: Callable[[], float] = time.time,
) -> WebhookService:
    """
    Wire a :class:`WebhookService`.

    Args:
        settings: Settings (environment is read when omitted)
        repository: Storage backend; in-memory when omitted
        http_client: Client used for outbound calls; created on start when omitted
        circuit_store: Breaker state store; Redis when ``circuit_breaker.redis_url``
            is set, in-process otherwise
        listeners: Extra notification listeners. A :class:`LoggingListener`
            is always registered.
        clock: Unix time source shared by every component
    """
    settings = settings or Settings()
    repository = repository or InMemoryWebhookRepository(clock=clock)

    notifier = NotificationBus()
    notifier.subscribe_all(LoggingListener())
    for listener in listeners or ():
        notifier.subscribe_all(listener)

    circuit_breaker = CircuitBreaker.from_settings(settings.circuit_breaker, store=circuit_store, clock=clock)
    providers = ProviderRegistry.from_settings(settings.receiving, clock=clock)

    receiver = WebhookReceiver(
        repository, providers, notifier=notifier, settings=settings.receiving, clock=clock
    )
    dispatcher = WebhookDispatcher(
        repository,
        circuit_breaker,
        settings=settings,
        notifier=notifier,
        http_client=http_client,
        clock=clock,
    )
    matcher = SubscriptionMatcher(clock=lambda: datetime.fromtimestamp(clock(), tz=timezone.utc))

    return WebhookService(
        settings=settings,
        repository=repository,
        receiver=receiver,
        dispatcher=dispatcher,
        circuit_breaker=circuit_breaker,
        matcher=matcher,
        notifier=notifier,
        clock=clock,
    )
