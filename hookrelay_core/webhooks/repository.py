"""
Webhook repository contract.

The relay depends only on :class:`WebhookRepository`. Durable backends
implement it outside this package; :class:`InMemoryWebhookRepository` is the
reference implementation used for development and tests.

Implementations must raise :class:`PersistenceFailure` when storage is
unavailable, :class:`DuplicateDelivery` when an inbound ``(source,
delivery_id)`` pair already exists, and must refuse to modify a delivery that
already reached a terminal status. :meth:`WebhookRepository.claim_delivery` must be
atomic: of two concurrent claims on the same delivery at most one succeeds.
"""

import copy
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from .exceptions import (
    DeliveryNotFound,
    DeliveryNotRetryable,
    DuplicateDelivery,
    EndpointNotFound,
    EventNotFound,
)
from .matcher import endpoint_accepts_event, matches_any_pattern
from .models import (
    TERMINAL_STATUSES,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookSubscription,
)

logger = structlog.get_logger(__name__)

CLAIMABLE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})


class WebhookRepository(ABC):
    """Storage contract for events, deliveries, endpoints and subscriptions."""

    # Inbound events

    @abstractmethod
    async def store_incoming_event(self, event: WebhookEvent) -> WebhookEvent:
        """Persist a new inbound event. Raises DuplicateDelivery on a repeated delivery id."""

    @abstractmethod
    async def find_event_by_delivery_id(self, source: str, delivery_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def update_event(self, event: WebhookEvent) -> WebhookEvent:
        """Persist processing status and results of an event."""

    @abstractmethod
    async def find_events(
        self,
        source: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[WebhookEvent]:
        pass

    # Outbound deliveries

    @abstractmethod
    async def store_outgoing_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        pass

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        pass

    @abstractmethod
    async def claim_delivery(self, delivery_id: str) -> WebhookDelivery:
        """
        Move a pending or retrying delivery to DISPATCHING.

        Raises:
            DeliveryNotFound: Unknown delivery id
            DeliveryNotRetryable: Delivery is terminal or already dispatching
        """

    @abstractmethod
    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        **changes: Any,
    ) -> WebhookDelivery:
        """Move a delivery to ``status``, applying extra field ``changes``."""

    @abstractmethod
    async def mark_delivery_succeeded(
        self,
        delivery_id: str,
        attempts: int,
        status_code: int,
        response_body: Optional[str] = None,
        response_headers: Optional[Dict[str, str]] = None,
        response_time_ms: Optional[int] = None,
    ) -> WebhookDelivery:
        pass

    @abstractmethod
    async def mark_delivery_failed(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        attempts: int,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        response_headers: Optional[Dict[str, str]] = None,
        error_message: Optional[str] = None,
        error_detail: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> WebhookDelivery:
        """Record a failed attempt; ``status`` is RETRYING or EXHAUSTED."""

    @abstractmethod
    async def find_deliveries(
        self,
        statuses: Optional[Iterable[DeliveryStatus]] = None,
        since: Optional[datetime] = None,
        endpoint_id: Optional[str] = None,
    ) -> List[WebhookDelivery]:
        pass

    # Endpoints and subscriptions

    @abstractmethod
    async def store_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        pass

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        pass

    @abstractmethod
    async def find_endpoints_for_event(
        self, event_type: str, active_only: bool = True
    ) -> List[WebhookEndpoint]:
        pass

    @abstractmethod
    async def store_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        pass

    @abstractmethod
    async def find_subscriptions_for_event(
        self, event_type: str, active_only: bool = True
    ) -> List[WebhookSubscription]:
        """Subscriptions whose patterns match ``event_type``. Filters are not applied here."""

    @abstractmethod
    async def increment_subscription_deliveries(self, subscription_id: str) -> None:
        pass

    # Retention

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> Dict[str, int]:
        """Delete events and terminal deliveries created before ``cutoff``."""


class InMemoryWebhookRepository(WebhookRepository):
    """
    Dictionary-backed repository.

    Objects are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._events: Dict[str, WebhookEvent] = {}
        self._event_index: Dict[Tuple[str, str], str] = {}
        self._deliveries: Dict[str, WebhookDelivery] = {}
        self._endpoints: Dict[str, WebhookEndpoint] = {}
        self._subscriptions: Dict[str, WebhookSubscription] = {}

    @staticmethod
    def _copy(obj):
        return copy.deepcopy(obj) if obj is not None else None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def store_incoming_event(self, event: WebhookEvent) -> WebhookEvent:
        if event.delivery_id:
            key = (event.source, event.delivery_id)
            existing_id = self._event_index.get(key)
            if existing_id is not None:
                raise DuplicateDelivery(
                    event.source, event.delivery_id, self._copy(self._events[existing_id])
                )
            self._event_index[key] = event.id

        self._events[event.id] = self._copy(event)
        return self._copy(event)

    async def find_event_by_delivery_id(self, source: str, delivery_id: str) -> Optional[WebhookEvent]:
        event_id = self._event_index.get((source, delivery_id))
        return self._copy(self._events.get(event_id)) if event_id else None

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self._copy(self._events.get(event_id))

    async def update_event(self, event: WebhookEvent) -> WebhookEvent:
        if event.id not in self._events:
            raise EventNotFound(event.id)
        self._events[event.id] = self._copy(event)
        return self._copy(event)

    async def find_events(
        self,
        source: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[WebhookEvent]:
        events = [
            e for e in self._events.values()
            if (source is None or e.source == source)
            and (since is None or e.received_at >= since)
        ]
        return [self._copy(e) for e in sorted(events, key=lambda e: e.received_at)]

    # -------------------------------------------------------------------------
    # Deliveries
    # -------------------------------------------------------------------------

    async def store_outgoing_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self._deliveries[delivery.id] = self._copy(delivery)
        return self._copy(delivery)

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self._copy(self._deliveries.get(delivery_id))

    def _mutable_delivery(self, delivery_id: str) -> WebhookDelivery:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)
        if delivery.status in TERMINAL_STATUSES:
            raise DeliveryNotRetryable(delivery_id, delivery.status.value)
        return delivery

    @staticmethod
    def _set_attempts(delivery: WebhookDelivery, attempts: Optional[int]) -> None:
        if attempts is not None:
            delivery.attempts = max(delivery.attempts, attempts)

    async def claim_delivery(self, delivery_id: str) -> WebhookDelivery:
        # No await between the check and the write: atomic on the event loop
        delivery = self._mutable_delivery(delivery_id)
        if delivery.status not in CLAIMABLE_STATUSES:
            raise DeliveryNotRetryable(delivery_id, delivery.status.value)
        delivery.status = DeliveryStatus.DISPATCHING
        delivery.next_attempt_at = None
        return self._copy(delivery)

    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        **changes: Any,
    ) -> WebhookDelivery:
        delivery = self._mutable_delivery(delivery_id)
        self._set_attempts(delivery, changes.pop("attempts", None))
        for key, value in changes.items():
            if not hasattr(delivery, key):
                raise AttributeError(f"WebhookDelivery has no field '{key}'")
            setattr(delivery, key, value)
        delivery.status = DeliveryStatus(status)
        if delivery.status in TERMINAL_STATUSES and delivery.completed_at is None:
            delivery.completed_at = self._now()
        return self._copy(delivery)

    async def mark_delivery_succeeded(
        self,
        delivery_id: str,
        attempts: int,
        status_code: int,
        response_body: Optional[str] = None,
        response_headers: Optional[Dict[str, str]] = None,
        response_time_ms: Optional[int] = None,
    ) -> WebhookDelivery:
        delivery = self._mutable_delivery(delivery_id)
        now = self._now()
        self._set_attempts(delivery, attempts)
        delivery.status = DeliveryStatus.SUCCESS
        delivery.response_status = status_code
        delivery.response_body = response_body
        delivery.response_headers = response_headers
        delivery.response_time_ms = response_time_ms
        delivery.error_message = None
        delivery.error_detail = None
        delivery.last_attempt_at = now
        delivery.next_attempt_at = None
        delivery.completed_at = now
        return self._copy(delivery)

    async def mark_delivery_failed(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        attempts: int,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        response_headers: Optional[Dict[str, str]] = None,
        error_message: Optional[str] = None,
        error_detail: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> WebhookDelivery:
        status = DeliveryStatus(status)
        if status not in (DeliveryStatus.RETRYING, DeliveryStatus.EXHAUSTED):
            raise ValueError(f"Invalid failure status: {status.value}")

        delivery = self._mutable_delivery(delivery_id)
        now = self._now()
        self._set_attempts(delivery, attempts)
        delivery.status = status
        delivery.response_status = status_code
        delivery.response_body = response_body
        delivery.response_headers = response_headers
        delivery.response_time_ms = response_time_ms
        delivery.error_message = error_message
        delivery.error_detail = error_detail
        delivery.last_attempt_at = now
        if status == DeliveryStatus.EXHAUSTED:
            delivery.next_attempt_at = None
            delivery.completed_at = now
        else:
            delivery.next_attempt_at = next_attempt_at
        return self._copy(delivery)

    async def find_deliveries(
        self,
        statuses: Optional[Iterable[DeliveryStatus]] = None,
        since: Optional[datetime] = None,
        endpoint_id: Optional[str] = None,
    ) -> List[WebhookDelivery]:
        wanted = {DeliveryStatus(s) for s in statuses} if statuses is not None else None
        deliveries = [
            d for d in self._deliveries.values()
            if (wanted is None or d.status in wanted)
            and (since is None or d.created_at >= since)
            and (endpoint_id is None or d.endpoint_id == endpoint_id)
        ]
        return [self._copy(d) for d in sorted(deliveries, key=lambda d: d.created_at)]

    # -------------------------------------------------------------------------
    # Endpoints / subscriptions
    # -------------------------------------------------------------------------

    async def store_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        endpoint.updated_at = self._now()
        self._endpoints[endpoint.id] = self._copy(endpoint)
        return self._copy(endpoint)

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        return self._copy(self._endpoints.get(endpoint_id))

    async def find_endpoints_for_event(
        self, event_type: str, active_only: bool = True
    ) -> List[WebhookEndpoint]:
        endpoints = [
            e for e in self._endpoints.values()
            if (e.is_active or not active_only) and endpoint_accepts_event(e, event_type)
        ]
        return [self._copy(e) for e in sorted(endpoints, key=lambda e: e.id)]

    async def store_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        if subscription.endpoint_id not in self._endpoints:
            raise EndpointNotFound(subscription.endpoint_id)
        self._subscriptions[subscription.id] = self._copy(subscription)
        return self._copy(subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        return self._copy(self._subscriptions.get(subscription_id))

    async def find_subscriptions_for_event(
        self, event_type: str, active_only: bool = True
    ) -> List[WebhookSubscription]:
        subscriptions = [
            s for s in self._subscriptions.values()
            if (s.is_active or not active_only) and matches_any_pattern(s.event_types, event_type)
        ]
        return [self._copy(s) for s in sorted(subscriptions, key=lambda s: s.id)]

    async def increment_subscription_deliveries(self, subscription_id: str) -> None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is not None:
            subscription.delivery_count += 1

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def delete_older_than(self, cutoff: datetime) -> Dict[str, int]:
        old_events = [eid for eid, e in self._events.items() if e.received_at < cutoff]
        for event_id in old_events:
            event = self._events.pop(event_id)
            if event.delivery_id:
                self._event_index.pop((event.source, event.delivery_id), None)

        old_deliveries = [
            did for did, d in self._deliveries.items()
            if d.created_at < cutoff and d.status in TERMINAL_STATUSES
        ]
        for delivery_id in old_deliveries:
            del self._deliveries[delivery_id]

        logger.info(
            "webhook_data_cleaned",
            events=len(old_events),
            deliveries=len(old_deliveries),
            cutoff=cutoff.isoformat(),
        )
        return {"events": len(old_events), "deliveries": len(old_deliveries)}
