"""Inbound webhook ingestion."""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from ..config import ReceivingSettings
from .exceptions import (
    DuplicateDelivery,
    HandlerFailure,
    MalformedPayload,
    MissingRawBody,
    SignatureInvalid,
    UnknownSource,
)
from .matcher import event_type_matches
from .models import ProcessingStatus, WebhookEvent, new_id
from .notifications import NotificationBus, WebhookLifecycle
from .providers import InboundRequest, ProviderRegistry, WebhookProvider
from .repository import WebhookRepository

logger = structlog.get_logger(__name__)

Handler = Callable[[WebhookEvent], Any]

ANY_SOURCE = "*"


@dataclass
class _Registration:
    source: str
    pattern: str
    handler: Handler
    name: str

    def matches(self, source: str, event_type: str) -> bool:
        if self.source not in (ANY_SOURCE, source):
            return False
        return event_type_matches(self.pattern, event_type)


class WebhookReceiver:
    """
    Validates, deduplicates, stores and routes inbound webhooks.

    Handlers are registered per source with an event type pattern
    (``invoice.paid``, ``customer.*``, ``*``) and run in registration order.
    A failing handler is reported and does not stop the others.
    """

    FALLBACK_EVENT_FIELDS = ("type", "event", "event_type")

    def __init__(
        self,
        repository: WebhookRepository,
        providers: ProviderRegistry,
        notifier: Optional[NotificationBus] = None,
        settings: Optional[ReceivingSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.providers = providers
        self.notifier = notifier or NotificationBus()
        self.settings = settings or ReceivingSettings()
        self._clock = clock
        self._handlers: List[_Registration] = []
        self._invalid_signatures: Counter = Counter()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def on(self, source: str, pattern: str, handler: Handler) -> None:
        """Register ``handler`` for events from ``source`` matching ``pattern``."""
        name = getattr(handler, "__qualname__", None) or type(handler).__name__
        self._handlers.append(_Registration(source, pattern, handler, name))
        logger.debug("webhook_handler_registered", source=source, pattern=pattern, handler=name)

    def on_any(self, source: str, handler: Handler) -> None:
        """Register ``handler`` for every event from ``source``."""
        self.on(source, "*", handler)

    def handlers_for(self, source: str, event_type: str) -> List[_Registration]:
        return [r for r in self._handlers if r.matches(source, event_type)]

    @property
    def invalid_signature_counts(self) -> Dict[str, int]:
        return dict(self._invalid_signatures)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def handle(
        self,
        source: str,
        request: Union[InboundRequest, bytes],
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookEvent:
        """
        Ingest one inbound webhook.

        Args:
            source: Source name the request arrived on
            request: The raw request, or raw body bytes together with ``headers``

        Returns:
            The stored event, or the original event for a repeated delivery id

        Raises:
            UnknownSource: No provider configured for ``source``
            SignatureInvalid: Missing or bad signature (nothing is stored)
            MalformedPayload: Body is not a JSON object
            PersistenceFailure: Repository unavailable
        """
        if not isinstance(request, InboundRequest):
            request = InboundRequest(body=request, headers=headers or {})

        provider = self.providers.get(source)
        if provider is None:
            raise UnknownSource(source)

        await self._verify(source, provider, request)

        try:
            payload = request.json()
        except ValueError as exc:
            raise MalformedPayload(source, f"Invalid JSON payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedPayload(source, "Payload must be a JSON object")

        event_type = self._event_type(provider, request, payload)
        delivery_id = provider.get_delivery_id(request, payload)
        log = logger.bind(source=source, event_type=event_type, delivery_id=delivery_id)

        if delivery_id:
            existing = await self.repository.find_event_by_delivery_id(source, delivery_id)
            if existing is not None:
                return await self._duplicate(existing)

        event = WebhookEvent(
            id=new_id("evt"),
            source=source,
            event_type=event_type,
            payload=payload,
            raw_body=request.body or b"",
            headers=dict(request.headers),
            delivery_id=delivery_id,
            received_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )
        try:
            event = await self.repository.store_incoming_event(event)
        except DuplicateDelivery as exc:
            # Lost a race with a concurrent redelivery
            existing = exc.existing or await self.repository.find_event_by_delivery_id(
                source, delivery_id
            )
            return await self._duplicate(existing)

        log.debug("webhook_stored", event_id=event.id)
        await self.notifier.publish(
            WebhookLifecycle.RECEIVED,
            {"event_id": event.id, "source": source, "event_type": event_type, "delivery_id": delivery_id},
        )

        return await self._process(event)

    async def _verify(self, source: str, provider: WebhookProvider, request: InboundRequest) -> None:
        if provider.has_secret:
            try:
                valid = provider.verify(request)
            except MissingRawBody as exc:
                raise MalformedPayload(source, str(exc)) from exc
            reason = "Invalid webhook signature"
        elif self.settings.require_signatures:
            valid = False
            reason = "No signing secret configured for source"
        else:
            valid = True
            reason = ""

        if not valid:
            self._invalid_signatures[source] += 1
            error = SignatureInvalid(source, reason)
            await self.notifier.publish(
                WebhookLifecycle.INVALID,
                {"source": source, "has_signature": provider.get_signature(request) is not None},
                error=error,
            )
            raise error

        await self.notifier.publish(WebhookLifecycle.VALIDATED, {"source": source})

    def _event_type(self, provider: WebhookProvider, request: InboundRequest, payload: Dict[str, Any]) -> str:
        event_type = provider.get_event_type(request, payload)
        if event_type:
            return event_type
        for field_name in self.FALLBACK_EVENT_FIELDS:
            value = payload.get(field_name)
            if isinstance(value, str) and value:
                return value
        return "unknown"

    async def _duplicate(self, existing: WebhookEvent) -> WebhookEvent:
        logger.info(
            "webhook_duplicate",
            source=existing.source,
            delivery_id=existing.delivery_id,
            event_id=existing.id,
        )
        await self.notifier.publish(
            WebhookLifecycle.DUPLICATE,
            {"event_id": existing.id, "source": existing.source, "delivery_id": existing.delivery_id},
        )
        return existing

    async def _process(self, event: WebhookEvent) -> WebhookEvent:
        registrations = self.handlers_for(event.source, event.event_type)
        started = time.perf_counter()
        results: List[Dict[str, Any]] = []
        errors: List[str] = []

        for registration in registrations:
            try:
                value = registration.handler(event)
                if asyncio.iscoroutine(value):
                    value = await value
                results.append({"handler": registration.name, "success": True, "result": value})
            except Exception as exc:
                failure = HandlerFailure(event.source, event.event_type, registration.name, exc)
                logger.exception(
                    "webhook_handler_failed",
                    source=event.source,
                    event_id=event.id,
                    handler=registration.name,
                )
                results.append({"handler": registration.name, "success": False, "error": str(exc)})
                errors.append(failure.message)
                await self.notifier.publish(
                    WebhookLifecycle.FAILED,
                    {"event_id": event.id, "source": event.source, "event_type": event.event_type,
                     "handler": registration.name},
                    error=failure,
                )

        if not registrations:
            event.status = ProcessingStatus.SKIPPED
        elif errors:
            event.status = ProcessingStatus.FAILED
            event.processing_error = "; ".join(errors)
        else:
            event.status = ProcessingStatus.PROCESSED
        event.handler_results = results
        event.processed_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        event.processing_time_ms = int((time.perf_counter() - started) * 1000)

        event = await self.repository.update_event(event)

        await self.notifier.publish(
            WebhookLifecycle.HANDLED,
            {
                "event_id": event.id,
                "source": event.source,
                "event_type": event.event_type,
                "status": event.status.value,
                "handlers": len(registrations),
                "results": results,
            },
        )
        return event
