"""
Webhook Lifecycle Notifications
===============================

Explicit observer registry used by the receiver and the dispatcher to report
lifecycle transitions (received, invalid, dispatched, exhausted...).
Listeners are registered at startup; a failing listener is logged and never
affects the operation that published the notification.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class WebhookLifecycle(str, Enum):
    """Notification kinds"""

    # Inbound
    RECEIVED = "webhook.received"
    VALIDATED = "webhook.validated"
    INVALID = "webhook.invalid"
    DUPLICATE = "webhook.duplicate"
    HANDLED = "webhook.handled"
    FAILED = "webhook.failed"

    # Outbound
    DISPATCHING = "webhook.dispatching"
    DISPATCHED = "webhook.dispatched"
    DISPATCH_FAILED = "webhook.dispatch_failed"
    DEFERRED = "webhook.deferred"  # Circuit open, attempt postponed
    EXHAUSTED = "webhook.exhausted"
    CANCELLED = "webhook.cancelled"


@dataclass
class WebhookNotification:
    """A single lifecycle notification."""

    kind: WebhookLifecycle
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "data": self.data,
            "error": str(self.error) if self.error else None,
            "occurred_at": self.occurred_at.isoformat(),
        }


Listener = Callable[[WebhookNotification], Union[None, Awaitable[None]]]


class NotificationBus:
    """
    Observer registry.

    Usage:
        bus = NotificationBus()
        bus.subscribe(WebhookLifecycle.EXHAUSTED, alert_on_call)
        bus.subscribe_all(LoggingListener())
    """

    def __init__(self):
        self._listeners: Dict[WebhookLifecycle, List[Listener]] = defaultdict(list)
        self._global: List[Listener] = []

    def subscribe(self, kind: WebhookLifecycle, listener: Listener) -> None:
        self._listeners[WebhookLifecycle(kind)].append(listener)

    def subscribe_all(self, listener: Listener) -> None:
        self._global.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._global:
            self._global.remove(listener)
        for listeners in self._listeners.values():
            if listener in listeners:
                listeners.remove(listener)

    def listener_count(self, kind: Optional[WebhookLifecycle] = None) -> int:
        if kind is None:
            return len(self._global) + sum(len(v) for v in self._listeners.values())
        return len(self._global) + len(self._listeners.get(kind, []))

    async def publish(
        self,
        kind: WebhookLifecycle,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> WebhookNotification:
        notification = WebhookNotification(kind=kind, data=data or {}, error=error)

        for listener in [*self._listeners.get(kind, []), *self._global]:
            try:
                result = listener(notification)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "notification_listener_failed",
                    kind=kind.value,
                    listener=getattr(listener, "__name__", type(listener).__name__),
                )

        return notification


_DEFAULT_LEVELS: Dict[WebhookLifecycle, int] = {
    WebhookLifecycle.RECEIVED: logging.INFO,
    WebhookLifecycle.VALIDATED: logging.DEBUG,
    WebhookLifecycle.INVALID: logging.WARNING,
    WebhookLifecycle.DUPLICATE: logging.INFO,
    WebhookLifecycle.HANDLED: logging.INFO,
    WebhookLifecycle.FAILED: logging.ERROR,
    WebhookLifecycle.DISPATCHING: logging.DEBUG,
    WebhookLifecycle.DISPATCHED: logging.INFO,
    WebhookLifecycle.DISPATCH_FAILED: logging.WARNING,
    WebhookLifecycle.DEFERRED: logging.INFO,
    WebhookLifecycle.EXHAUSTED: logging.ERROR,
    WebhookLifecycle.CANCELLED: logging.INFO,
}


class LoggingListener:
    """Writes one structured log line per notification."""

    def __init__(self, levels: Optional[Dict[WebhookLifecycle, int]] = None):
        self.levels = {**_DEFAULT_LEVELS, **(levels or {})}
        self._logger = structlog.get_logger("hookrelay.lifecycle")

    def __call__(self, notification: WebhookNotification) -> None:
        level = self.levels.get(notification.kind, logging.INFO)
        context = dict(notification.data)
        if notification.error is not None:
            context["error"] = str(notification.error)
            context["error_type"] = type(notification.error).__name__
        self._logger.log(level, notification.kind.value, **context)
