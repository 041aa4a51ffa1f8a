"""
Inbound webhook providers.

Each provider knows where a third party puts its signature, event type and
delivery id, and which signature scheme it uses. Providers are looked up by
source name through :class:`ProviderRegistry`.
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Type, Union

import httpx
import structlog

from ..config import ReceivingSettings, SourceSettings
from .signing import (
    HeaderAliasSignatureValidator,
    HmacSignatureValidator,
    HeaderTimestampSignatureValidator,
    SignatureValidator,
    TimestampSignatureValidator,
    build_validator,
)

logger = structlog.get_logger(__name__)


@dataclass
class InboundRequest:
    """Raw inbound HTTP request as handed over by the transport layer."""

    body: Optional[bytes]
    headers: Union[Mapping[str, str], httpx.Headers] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(dict(self.headers))
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name)
        return value.strip() if value else None

    def json(self) -> Any:
        """Decode the body as JSON. Raises ValueError on bad input."""
        if not self.body:
            raise ValueError("Empty request body")
        return json.loads(self.body)


class WebhookProvider(ABC):
    """Capability interface for one inbound provider."""

    name: str = ""

    def __init__(
        self,
        source: str,
        secret: Optional[str] = None,
        signature_header: Optional[str] = None,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
        validator: Optional[str] = None,
    ):
        self.source = source
        self.secret = secret
        self.signature_header = signature_header
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock
        if validator:
            # Configured scheme replaces the provider default
            self.validator = build_validator(
                validator,
                header=signature_header,
                tolerance_seconds=tolerance_seconds,
                clock=clock,
            )
        else:
            self.validator = self.build_validator()

    @abstractmethod
    def build_validator(self) -> SignatureValidator:
        """Create the signature validator for this provider."""

    def get_source(self, request: InboundRequest) -> str:
        return self.source

    def get_signature(self, request: InboundRequest) -> Optional[str]:
        return request.header(self.validator.header)

    @abstractmethod
    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        """Extract the event type."""

    @abstractmethod
    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        """Extract the provider's delivery id used for deduplication."""

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)

    def verify(self, request: InboundRequest) -> bool:
        if not self.secret:
            return False
        return self.validator.verify(request.body, request.headers, self.secret)


def _payload_field(payload: Any, *names: str) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value:
            return value
    return None


class GenericProvider(WebhookProvider):
    """Any sender using the relay's own ``X-Webhook-*`` headers."""

    name = "generic"

    EVENT_FIELDS = ("event", "type", "event_type", "action", "name")

    def build_validator(self) -> SignatureValidator:
        return HmacSignatureValidator(header=self.signature_header or "X-Webhook-Signature")

    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return request.header("X-Webhook-Event") or _payload_field(payload, *self.EVENT_FIELDS)

    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return request.header("X-Webhook-Id") or request.header("X-Delivery-Id")


class StripeProvider(WebhookProvider):
    """Stripe: timestamp-qualified ``Stripe-Signature`` header."""

    name = "stripe"

    def build_validator(self) -> SignatureValidator:
        return TimestampSignatureValidator(
            header=self.signature_header or "Stripe-Signature",
            tolerance_seconds=self.tolerance_seconds,
            clock=self._clock,
        )

    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return _payload_field(payload, "type")

    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return _payload_field(payload, "id")


class GitHubProvider(WebhookProvider):
    """GitHub: ``X-Hub-Signature-256`` with the legacy ``X-Hub-Signature`` alias."""

    name = "github"

    def build_validator(self) -> SignatureValidator:
        return HeaderAliasSignatureValidator(
            header=self.signature_header or "X-Hub-Signature-256",
            legacy_header="X-Hub-Signature",
            prefix="sha256=",
        )

    def get_signature(self, request: InboundRequest) -> Optional[str]:
        return request.header(self.validator.header) or request.header("X-Hub-Signature")

    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        event = request.header("X-GitHub-Event")
        if not event:
            return None
        action = _payload_field(payload, "action")
        return f"{event}.{action}" if action else event

    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return request.header("X-GitHub-Delivery")


class ShopifyProvider(WebhookProvider):
    """Shopify: base64 HMAC in ``X-Shopify-Hmac-Sha256``."""

    name = "shopify"

    def build_validator(self) -> SignatureValidator:
        return HmacSignatureValidator(
            header=self.signature_header or "X-Shopify-Hmac-Sha256",
            encoding="base64",
        )

    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return request.header("X-Shopify-Topic")

    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return request.header("X-Shopify-Webhook-Id")


class SlackProvider(WebhookProvider):
    """Slack: ``X-Slack-Signature`` with the timestamp in ``X-Slack-Request-Timestamp``."""

    name = "slack"

    def build_validator(self) -> SignatureValidator:
        return HeaderTimestampSignatureValidator(
            header=self.signature_header or "X-Slack-Signature",
            timestamp_header="X-Slack-Request-Timestamp",
            tolerance_seconds=self.tolerance_seconds,
            clock=self._clock,
        )

    def get_event_type(self, request: InboundRequest, payload: Any) -> Optional[str]:
        kind = _payload_field(payload, "type")
        # event_callback wraps the actual event, e.g. event_callback.app_mention
        if kind == "event_callback" and isinstance(payload.get("event"), dict):
            inner = _payload_field(payload["event"], "type")
            if inner:
                return f"{kind}.{inner}"
        return kind

    def get_delivery_id(self, request: InboundRequest, payload: Any) -> Optional[str]:
        return _payload_field(payload, "event_id")


PROVIDER_TYPES: Dict[str, Type[WebhookProvider]] = {
    GenericProvider.name: GenericProvider,
    StripeProvider.name: StripeProvider,
    GitHubProvider.name: GitHubProvider,
    ShopifyProvider.name: ShopifyProvider,
    SlackProvider.name: SlackProvider,
}


class ProviderRegistry:
    """Lookup table from source name to provider."""

    def __init__(self):
        self._providers: Dict[str, WebhookProvider] = {}

    def register(self, provider: WebhookProvider) -> None:
        self._providers[provider.source] = provider
        logger.debug("provider_registered", source=provider.source, provider=provider.name)

    def get(self, source: str) -> Optional[WebhookProvider]:
        return self._providers.get(source)

    def __contains__(self, source: str) -> bool:
        return source in self._providers

    def sources(self) -> list:
        return sorted(self._providers)

    @classmethod
    def from_settings(
        cls,
        settings: ReceivingSettings,
        clock: Callable[[], float] = time.time,
    ) -> "ProviderRegistry":
        registry = cls()
        for source, conf in settings.sources.items():
            registry.register(create_provider(source, conf, clock=clock))
        return registry


def create_provider(
    source: str,
    conf: SourceSettings,
    clock: Callable[[], float] = time.time,
) -> WebhookProvider:
    """Instantiate the provider configured for ``source``."""
    try:
        provider_cls = PROVIDER_TYPES[conf.provider]
    except KeyError:
        raise ValueError(f"Unknown provider '{conf.provider}' for source '{source}'") from None
    return provider_cls(
        source,
        secret=conf.secret,
        signature_header=conf.signature_header,
        tolerance_seconds=conf.tolerance_seconds,
        clock=clock,
        validator=conf.validator,
    )
