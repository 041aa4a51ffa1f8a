"""Event-type pattern matching and subscription routing."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from .filters import matches_all
from .models import WebhookEndpoint, WebhookSubscription

logger = structlog.get_logger(__name__)


def event_type_matches(pattern: str, event_type: str) -> bool:
    """
    Match an event type against a subscription pattern.

    ``*`` matches everything, ``invoice.*`` matches by prefix, ``*.created``
    matches by suffix. Anything else must be equal. Case-sensitive.
    """
    if not pattern:
        return False
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return event_type.startswith(pattern[:-1])
    if pattern.startswith("*"):
        return event_type.endswith(pattern[1:])
    return pattern == event_type


def matches_any_pattern(patterns: Iterable[str], event_type: str) -> bool:
    return any(event_type_matches(p, event_type) for p in patterns)


def endpoint_accepts_event(endpoint: WebhookEndpoint, event_type: str) -> bool:
    """Endpoint allow-list check. An empty list accepts every event type."""
    if not endpoint.events:
        return True
    return matches_any_pattern(endpoint.events, event_type)


class SubscriptionMatcher:
    """Finds the subscriptions that should receive an event."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock

    def is_eligible(
        self,
        subscription: WebhookSubscription,
        endpoint: Optional[WebhookEndpoint],
        event_type: str,
    ) -> bool:
        if not subscription.is_active:
            return False
        if subscription.expires_at is not None and subscription.expires_at <= self._clock():
            return False
        if (
            subscription.max_deliveries is not None
            and subscription.delivery_count >= subscription.max_deliveries
        ):
            return False
        if endpoint is None or not endpoint.is_active:
            return False
        return endpoint_accepts_event(endpoint, event_type)

    def match(
        self,
        event_type: str,
        payload: Any,
        subscriptions: Iterable[WebhookSubscription],
        endpoints: Mapping[str, WebhookEndpoint],
    ) -> List[WebhookSubscription]:
        """
        Select matching subscriptions.

        Args:
            event_type: Event type being published
            payload: Event payload the filters are evaluated against
            subscriptions: Candidate subscriptions
            endpoints: Endpoints by id, used for the active flag and allow-list

        Returns:
            Matching subscriptions ordered by subscription id, without duplicates
        """
        matched: Dict[str, WebhookSubscription] = {}

        for subscription in subscriptions:
            if subscription.id in matched:
                continue
            if not matches_any_pattern(subscription.event_types, event_type):
                continue
            if not self.is_eligible(
                subscription, endpoints.get(subscription.endpoint_id), event_type
            ):
                continue
            if not matches_all(subscription.filters, payload):
                continue
            matched[subscription.id] = subscription

        result = sorted(matched.values(), key=lambda s: s.id)
        logger.debug("subscriptions_matched", event_type=event_type, count=len(result))
        return result
