"""Webhook error taxonomy."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .models import WebhookEvent


class WebhookError(Exception):
    """Base class for webhook errors.

    ``status_code`` is the HTTP status an outer API layer should answer with.
    """

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Inbound
# =============================================================================


class SignatureInvalid(WebhookError):
    """Raised when an inbound signature is missing or does not verify."""

    status_code = 401

    def __init__(self, source: str, reason: str = "Invalid webhook signature"):
        super().__init__(reason, {"source": source})
        self.source = source


class MalformedPayload(WebhookError):
    """Raised when an inbound body cannot be parsed."""

    status_code = 400

    def __init__(self, source: str, reason: str):
        super().__init__(reason, {"source": source})
        self.source = source


class UnknownSource(WebhookError):
    """Raised when no provider is configured for a source."""

    status_code = 404

    def __init__(self, source: str):
        super().__init__(f"Unknown webhook source: {source}", {"source": source})
        self.source = source


class DuplicateDelivery(WebhookError):
    """An inbound delivery id was already stored for the source.

    Not a failure: callers answer 200 with the original event.
    """

    status_code = 200

    def __init__(self, source: str, delivery_id: str, existing: Optional["WebhookEvent"] = None):
        super().__init__(
            f"Delivery {delivery_id} from {source} already received",
            {"source": source, "delivery_id": delivery_id},
        )
        self.source = source
        self.delivery_id = delivery_id
        self.existing = existing


class HandlerFailure(WebhookError):
    """Wraps an exception raised by a registered inbound handler."""

    def __init__(self, source: str, event_type: str, handler_name: str, cause: BaseException):
        super().__init__(
            f"Handler {handler_name} failed for {source}/{event_type}: {cause}",
            {"source": source, "event_type": event_type, "handler": handler_name},
        )
        self.handler_name = handler_name
        self.cause = cause


class MissingRawBody(ValueError):
    """Raised when signature verification is asked to run without raw body bytes."""


# =============================================================================
# Outbound
# =============================================================================


class DestinationUnreachable(WebhookError):
    """Network error or timeout while calling a destination."""

    status_code = 502

    def __init__(self, destination: str, reason: str):
        super().__init__(f"Destination unreachable: {reason}", {"destination": destination})
        self.destination = destination
        self.reason = reason


class DestinationRejected(WebhookError):
    """Destination answered with a non-success status code."""

    status_code = 502

    def __init__(self, destination: str, response_status: int, response_body: Optional[str] = None):
        super().__init__(
            f"HTTP {response_status}",
            {"destination": destination, "response_status": response_status},
        )
        self.destination = destination
        self.response_status = response_status
        self.response_body = response_body


class CircuitOpen(WebhookError):
    """Dispatch refused because the destination's circuit is open."""

    status_code = 503

    def __init__(
        self,
        destination: str,
        failure_count: int = 0,
        retry_at: Optional[float] = None,
    ):
        super().__init__(
            f"Circuit is open for {destination}",
            {
                "destination": destination,
                "failure_count": failure_count,
                "retry_at": (
                    datetime.fromtimestamp(retry_at, tz=timezone.utc).isoformat()
                    if retry_at
                    else None
                ),
            },
        )
        self.destination = destination
        self.failure_count = failure_count
        self.retry_at = retry_at


class MaxRetriesExceeded(WebhookError):
    """A delivery used all of its attempts."""

    def __init__(self, delivery_id: str, attempts: int):
        super().__init__(
            f"Delivery {delivery_id} exhausted after {attempts} attempts",
            {"delivery_id": delivery_id, "attempts": attempts},
        )
        self.delivery_id = delivery_id
        self.attempts = attempts


class EventNotFound(WebhookError):
    status_code = 404

    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}", {"event_id": event_id})
        self.event_id = event_id


class DeliveryNotFound(WebhookError):
    status_code = 404

    def __init__(self, delivery_id: str):
        super().__init__(f"Delivery not found: {delivery_id}", {"delivery_id": delivery_id})
        self.delivery_id = delivery_id


class DeliveryNotRetryable(WebhookError):
    """Raised when a delivery is terminal or already has an attempt in flight."""

    status_code = 409

    def __init__(self, delivery_id: str, status: str):
        super().__init__(
            f"Delivery {delivery_id} is {status} and cannot be dispatched",
            {"delivery_id": delivery_id, "status": status},
        )
        self.delivery_id = delivery_id
        self.status = status


class EndpointNotFound(WebhookError):
    status_code = 404

    def __init__(self, endpoint_id: str):
        super().__init__(f"Endpoint not found: {endpoint_id}", {"endpoint_id": endpoint_id})
        self.endpoint_id = endpoint_id


class EndpointInactive(WebhookError):
    status_code = 409

    def __init__(self, endpoint_id: str, reason: str = "Endpoint is not active"):
        super().__init__(reason, {"endpoint_id": endpoint_id})
        self.endpoint_id = endpoint_id


class InvalidFilter(WebhookError):
    """Raised when a subscription filter cannot be compiled."""

    status_code = 422


# =============================================================================
# Storage
# =============================================================================


class PersistenceFailure(WebhookError):
    """Repository unavailable or write rejected."""

    status_code = 503
