"""Webhook data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import uuid4

if TYPE_CHECKING:
    from .filters import FilterNode


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed identifier (e.g. ``dlv_3f2a...``)."""
    return f"{prefix}_{uuid4().hex}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DeliveryStatus(str, Enum):
    """Outbound delivery status."""

    PENDING = "pending"
    DISPATCHING = "dispatching"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.SUCCESS, DeliveryStatus.EXHAUSTED, DeliveryStatus.CANCELLED}
)


class ProcessingStatus(str, Enum):
    """Inbound event processing status."""

    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"  # No handler registered
    FAILED = "failed"  # At least one handler raised


@dataclass
class WebhookEvent:
    """An inbound webhook received from a third-party source."""

    id: str
    source: str
    event_type: str
    payload: Dict[str, Any]
    raw_body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    delivery_id: Optional[str] = None
    status: ProcessingStatus = ProcessingStatus.PENDING
    received_at: datetime = field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    processing_error: Optional[str] = None
    handler_results: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source": self.source,
            "event_type": self.event_type,
            "payload": self.payload,
            "delivery_id": self.delivery_id,
            "status": self.status.value,
            "received_at": self.received_at.isoformat(),
            "processed_at": _iso(self.processed_at),
            "processing_time_ms": self.processing_time_ms,
            "processing_error": self.processing_error,
            "handler_results": self.handler_results,
        }


@dataclass
class WebhookEndpoint:
    """A registered outbound destination."""

    id: str
    url: str
    secret: str = ""
    name: str = ""
    description: str = ""
    is_active: bool = True
    # Allow-listed event type patterns; empty means every event type
    events: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    max_attempts: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. The secret is never included."""
        data = asdict(self)
        data.pop("secret")
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class WebhookSubscription:
    """Binds an endpoint to event type patterns and payload filters."""

    id: str
    endpoint_id: str
    event_types: List[str]
    filters: List["FilterNode"] = field(default_factory=list)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    max_deliveries: Optional[int] = None
    delivery_count: int = 0
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "endpoint_id": self.endpoint_id,
            "event_types": list(self.event_types),
            "filters": [f.to_dict() for f in self.filters],
            "is_active": self.is_active,
            "expires_at": _iso(self.expires_at),
            "max_deliveries": self.max_deliveries,
            "delivery_count": self.delivery_count,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class WebhookDelivery:
    """One outbound delivery lineage (including retries)."""

    id: str
    destination: str
    event_type: str
    payload: Dict[str, Any]
    endpoint_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    headers: Dict[str, str] = field(default_factory=dict)
    secret: Optional[str] = None
    timeout_seconds: Optional[float] = None

    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Optional[Dict[str, str]] = None
    response_time_ms: Optional[int] = None

    error_message: Optional[str] = None
    error_detail: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "destination": self.destination,
            "event_type": self.event_type,
            "endpoint_id": self.endpoint_id,
            "subscription_id": self.subscription_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "response_status": self.response_status,
            "response_time_ms": self.response_time_ms,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": _iso(self.last_attempt_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class DeliveryResult:
    """Outcome of a single dispatch call."""

    delivery_id: str
    status: DeliveryStatus
    attempt: int
    success: bool = False
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            **asdict(self),
            "status": self.status.value,
            "next_attempt_at": _iso(self.next_attempt_at),
        }
