"""
Webhook Dispatcher
==================

Outbound delivery with signing, retry/backoff and per-destination circuit
breaking.

Delivery state machine::

    pending -> dispatching -> success
                           -> retrying -> dispatching (loop)
                           -> exhausted
    (any non-terminal) -> cancelled

Attempts run as background tasks submitted by :class:`RetryScheduler`;
callers of :meth:`WebhookDispatcher.enqueue` get the delivery id back
immediately. :meth:`WebhookDispatcher.dispatch` runs one attempt inline.
"""

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import structlog

from ..config import Settings
from .circuit import CircuitBreaker
from .exceptions import (
    CircuitOpen,
    DeliveryNotFound,
    DeliveryNotRetryable,
    DestinationRejected,
    DestinationUnreachable,
    MaxRetriesExceeded,
    WebhookError,
)
from .models import DeliveryResult, DeliveryStatus, WebhookDelivery
from .notifications import NotificationBus, WebhookLifecycle
from .repository import WebhookRepository
from .retry import RetryPolicy
from .scheduler import RetryScheduler
from .signing import HmacSignatureValidator, SignatureValidator, TimestampSignatureValidator

logger = structlog.get_logger(__name__)

Callback = Callable[..., Any]


def build_outbound_signer(settings: Settings, clock: Callable[[], float] = time.time) -> SignatureValidator:
    """Signer for outgoing requests, per ``signing.outbound_scheme``."""
    signing = settings.signing
    if signing.outbound_scheme == "hmac":
        return HmacSignatureValidator(header=signing.signature_header)
    return TimestampSignatureValidator(
        header=signing.signature_header,
        tolerance_seconds=signing.tolerance_seconds,
        clock=clock,
    )


def encode_payload(payload: Any) -> bytes:
    """Compact JSON body; the exact bytes are what gets signed."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


async def _call(callback: Callback, *args: Any) -> Any:
    result = callback(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


class WebhookDispatcher:
    """
    Sends deliveries to their destinations.

    Features:
    - Signed JSON POST with delivery id, event type, timestamp and attempt headers
    - Exponential backoff with jitter between attempts
    - Circuit breaker gate per destination; refused attempts are deferred, not failed
    - Cooperative cancellation: results of in-flight attempts on cancelled
      deliveries are discarded
    - before/after/failure callbacks and circuit-open fallbacks
    """

    def __init__(
        self,
        repository: WebhookRepository,
        circuit_breaker: CircuitBreaker,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationBus] = None,
        signer: Optional[SignatureValidator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        scheduler: Optional[RetryScheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        self.repository = repository
        self.circuit_breaker = circuit_breaker
        self.notifier = notifier or NotificationBus()
        self._clock = clock
        self.signer = signer or build_outbound_signer(self.settings, clock=clock)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings.dispatch)
        self.scheduler = scheduler or RetryScheduler(
            max_concurrent=self.settings.dispatch.max_concurrent,
            poll_interval=self.settings.dispatch.poll_interval_seconds,
            clock=clock,
        )

        self._http_client = http_client
        self._owns_client = http_client is None

        self._before: List[Callback] = []
        self._after: List[Callback] = []
        self._on_failure: List[Callback] = []
        self._fallbacks: List[Tuple[Optional[str], Callback]] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            dispatch = self.settings.dispatch
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(dispatch.timeout_seconds, connect=dispatch.connect_timeout_seconds),
                follow_redirects=False,
            )
            self._owns_client = True
        return self._http_client

    async def start(self) -> None:
        """Start background dispatch and resume unfinished deliveries."""
        self._client()
        await self.scheduler.start(self._run_scheduled)

        unfinished = await self.repository.find_deliveries(
            statuses=[DeliveryStatus.PENDING, DeliveryStatus.RETRYING, DeliveryStatus.DISPATCHING]
        )
        for delivery in unfinished:
            if delivery.status == DeliveryStatus.DISPATCHING:
                # Interrupted mid-attempt by a previous run
                delivery = await self.repository.update_delivery_status(
                    delivery.id, DeliveryStatus.RETRYING, next_attempt_at=None
                )
            at = delivery.next_attempt_at.timestamp() if delivery.next_attempt_at else None
            self.scheduler.schedule(delivery.id, at)

        logger.info("webhook_dispatcher_started", resumed=len(unfinished))

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("webhook_dispatcher_stopped")

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def before_dispatch(self, callback: Callback) -> None:
        """``callback(delivery)`` runs before each network attempt."""
        self._before.append(callback)

    def after_dispatch(self, callback: Callback) -> None:
        """``callback(delivery, result)`` runs after each successful attempt."""
        self._after.append(callback)

    def on_failure(self, callback: Callback) -> None:
        """``callback(delivery, result)`` runs after each failed attempt."""
        self._on_failure.append(callback)

    def add_fallback(self, fallback: Callback, destination: Optional[str] = None) -> None:
        """``fallback(delivery, error)`` runs when the circuit refuses an attempt."""
        self._fallbacks.append((destination, fallback))

    async def _run_callbacks(self, callbacks: List[Callback], *args: Any) -> None:
        for callback in callbacks:
            try:
                await _call(callback, *args)
            except Exception:
                logger.exception(
                    "dispatch_callback_failed",
                    callback=getattr(callback, "__name__", repr(callback)),
                )

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def enqueue(self, delivery: WebhookDelivery) -> str:
        """Persist ``delivery`` and schedule its first attempt. Returns its id."""
        stored = await self.repository.store_outgoing_delivery(delivery)
        self.scheduler.schedule(stored.id)
        logger.debug(
            "delivery_enqueued",
            delivery_id=stored.id,
            destination=stored.destination,
            event_type=stored.event_type,
        )
        return stored.id

    async def dispatch(self, delivery: Union[WebhookDelivery, str]) -> DeliveryResult:
        """
        Run one attempt now.

        Raises:
            DeliveryNotFound: Unknown delivery id
            DeliveryNotRetryable: Delivery terminal or already being dispatched
        """
        delivery_id = delivery if isinstance(delivery, str) else delivery.id
        current = await self.repository.get_delivery(delivery_id)
        if current is None:
            if isinstance(delivery, str):
                raise DeliveryNotFound(delivery_id)
            current = await self.repository.store_outgoing_delivery(delivery)
        if current.status.is_terminal or current.status == DeliveryStatus.DISPATCHING:
            raise DeliveryNotRetryable(current.id, current.status.value)

        self.scheduler.unschedule(current.id)
        return await self._attempt(current)

    async def retry(self, delivery_id: str) -> DeliveryResult:
        """Attempt a non-terminal delivery immediately."""
        delivery = await self.repository.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)
        if delivery.status.is_terminal:
            raise DeliveryNotRetryable(delivery_id, delivery.status.value)
        logger.info("delivery_manual_retry", delivery_id=delivery_id, attempts=delivery.attempts)
        return await self.dispatch(delivery_id)

    async def cancel(self, delivery_id: str, reason: str = "Cancelled") -> WebhookDelivery:
        """Cancel a non-terminal delivery. An attempt already in flight completes but is discarded."""
        delivery = await self.repository.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)
        if delivery.status.is_terminal:
            raise DeliveryNotRetryable(delivery_id, delivery.status.value)

        cancelled = await self.repository.update_delivery_status(
            delivery_id,
            DeliveryStatus.CANCELLED,
            error_message=reason,
            next_attempt_at=None,
            completed_at=self._now(),
        )
        self.scheduler.unschedule(delivery_id)

        await self.notifier.publish(
            WebhookLifecycle.CANCELLED,
            {"delivery_id": delivery_id, "destination": cancelled.destination, "reason": reason},
        )
        return cancelled

    # -------------------------------------------------------------------------
    # Attempt
    # -------------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _run_scheduled(self, delivery_id: str) -> None:
        try:
            await self.dispatch(delivery_id)
        except (DeliveryNotFound, DeliveryNotRetryable) as exc:
            logger.debug("scheduled_delivery_skipped", delivery_id=delivery_id, reason=exc.message)

    async def _resolve_secret(self, delivery: WebhookDelivery) -> str:
        if delivery.endpoint_id:
            endpoint = await self.repository.get_endpoint(delivery.endpoint_id)
            if endpoint is not None and endpoint.secret:
                return endpoint.secret
        return delivery.secret or self.settings.signing.default_secret

    def _build_headers(
        self, delivery: WebhookDelivery, body: bytes, attempt: int, secret: str
    ) -> Dict[str, str]:
        signing = self.settings.signing
        timestamp = int(self._clock())

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.settings.dispatch.user_agent,
        }
        headers.update(delivery.headers)
        headers[signing.id_header] = delivery.id
        headers[signing.event_header] = delivery.event_type
        headers[signing.timestamp_header] = str(timestamp)
        headers[signing.attempt_header] = str(attempt)
        if secret:
            headers[signing.signature_header] = self.signer.sign(body, secret, timestamp=timestamp)
        return headers

    async def _defer(self, delivery: WebhookDelivery, error: CircuitOpen) -> DeliveryResult:
        """Circuit refused the attempt: postpone without spending an attempt."""
        retry_at = error.retry_at or (self._clock() + self.scheduler.poll_interval)
        next_attempt_at = datetime.fromtimestamp(retry_at, tz=timezone.utc)

        try:
            await self.repository.update_delivery_status(
                delivery.id,
                DeliveryStatus.RETRYING,
                next_attempt_at=next_attempt_at,
                error_message="circuit_open",
                error_detail=error.message,
            )
        except DeliveryNotRetryable:
            return DeliveryResult(delivery.id, DeliveryStatus.CANCELLED, attempt=delivery.attempts)

        fallbacks = [fb for dest, fb in self._fallbacks if dest in (None, delivery.destination)]
        await self._run_callbacks(fallbacks, delivery, error)

        await self.notifier.publish(
            WebhookLifecycle.DEFERRED,
            {
                "delivery_id": delivery.id,
                "destination": delivery.destination,
                "event_type": delivery.event_type,
                "retry_at": next_attempt_at.isoformat(),
            },
            error=error,
        )
        self.scheduler.schedule(delivery.id, retry_at)

        return DeliveryResult(
            delivery_id=delivery.id,
            status=DeliveryStatus.RETRYING,
            attempt=delivery.attempts,
            error="circuit_open",
            next_attempt_at=next_attempt_at,
        )

    async def _send(
        self, delivery: WebhookDelivery, body: bytes, headers: Dict[str, str]
    ) -> Tuple[Optional[httpx.Response], Optional[WebhookError], int, Optional[str]]:
        dispatch = self.settings.dispatch
        timeout_seconds = delivery.timeout_seconds or dispatch.timeout_seconds
        timeout = httpx.Timeout(
            timeout_seconds, connect=min(dispatch.connect_timeout_seconds, timeout_seconds)
        )

        start = time.perf_counter()
        try:
            response = await self._client().post(
                delivery.destination, content=body, headers=headers, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            return None, DestinationUnreachable(delivery.destination, f"Request timeout: {exc}"), elapsed_ms, None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            reason = str(exc) or type(exc).__name__
            return None, DestinationUnreachable(delivery.destination, reason), elapsed_ms, None

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        response_body = response.text[: dispatch.response_body_limit]
        if response.status_code in dispatch.success_status_codes:
            return response, None, elapsed_ms, response_body
        return (
            response,
            DestinationRejected(delivery.destination, response.status_code, response_body),
            elapsed_ms,
            response_body,
        )

    async def _attempt(self, delivery: WebhookDelivery) -> DeliveryResult:
        destination = delivery.destination
        log = logger.bind(delivery_id=delivery.id, destination=destination)

        # Only one attempt per delivery at a time; losers get DeliveryNotRetryable
        delivery = await self.repository.claim_delivery(delivery.id)
        attempt = delivery.attempts + 1

        try:
            await self.circuit_breaker.acquire(destination)
        except CircuitOpen as exc:
            log.info("delivery_deferred_circuit_open", retry_at=exc.retry_at)
            return await self._defer(delivery, exc)

        try:
            await self.notifier.publish(
                WebhookLifecycle.DISPATCHING,
                {
                    "delivery_id": delivery.id,
                    "destination": destination,
                    "event_type": delivery.event_type,
                    "attempt": attempt,
                },
            )
            await self._run_callbacks(self._before, delivery)

            body = encode_payload(delivery.payload)
            secret = await self._resolve_secret(delivery)
            headers = self._build_headers(delivery, body, attempt, secret)

            response, error, elapsed_ms, response_body = await self._send(delivery, body, headers)
        except BaseException:
            await self.circuit_breaker.release_trial(destination)
            raise
        status_code = response.status_code if response is not None else None
        response_headers = dict(response.headers) if response is not None else None

        if error is None:
            await self.circuit_breaker.record_success(destination)
            return await self._succeeded(
                delivery, attempt, status_code, response_body, response_headers, elapsed_ms
            )

        await self.circuit_breaker.record_failure(destination)
        return await self._failed(
            delivery, attempt, error, status_code, response_body, response_headers, elapsed_ms
        )

    async def _succeeded(
        self,
        delivery: WebhookDelivery,
        attempt: int,
        status_code: int,
        response_body: Optional[str],
        response_headers: Optional[Dict[str, str]],
        elapsed_ms: int,
    ) -> DeliveryResult:
        try:
            updated = await self.repository.mark_delivery_succeeded(
                delivery.id,
                attempts=attempt,
                status_code=status_code,
                response_body=response_body,
                response_headers=response_headers,
                response_time_ms=elapsed_ms,
            )
        except DeliveryNotRetryable:
            return self._discarded(delivery, attempt, status_code)

        if updated.subscription_id:
            await self.repository.increment_subscription_deliveries(updated.subscription_id)

        result = DeliveryResult(
            delivery_id=delivery.id,
            status=DeliveryStatus.SUCCESS,
            attempt=attempt,
            success=True,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=elapsed_ms,
        )
        await self.notifier.publish(
            WebhookLifecycle.DISPATCHED,
            {
                "delivery_id": delivery.id,
                "destination": delivery.destination,
                "event_type": delivery.event_type,
                "attempt": attempt,
                "status_code": status_code,
                "response_time_ms": elapsed_ms,
            },
        )
        await self._run_callbacks(self._after, updated, result)
        return result

    async def _failed(
        self,
        delivery: WebhookDelivery,
        attempt: int,
        error: WebhookError,
        status_code: Optional[int],
        response_body: Optional[str],
        response_headers: Optional[Dict[str, str]],
        elapsed_ms: int,
    ) -> DeliveryResult:
        max_attempts = delivery.max_attempts or self.retry_policy.max_attempts
        exhausted = not self.retry_policy.should_retry(attempt, max_attempts)
        next_attempt_at = None if exhausted else self.retry_policy.next_attempt_at(attempt, self._now())
        status = DeliveryStatus.EXHAUSTED if exhausted else DeliveryStatus.RETRYING

        try:
            updated = await self.repository.mark_delivery_failed(
                delivery.id,
                status=status,
                attempts=attempt,
                status_code=status_code,
                response_body=response_body,
                response_headers=response_headers,
                error_message=error.message,
                error_detail=type(error).__name__,
                response_time_ms=elapsed_ms,
                next_attempt_at=next_attempt_at,
            )
        except DeliveryNotRetryable:
            return self._discarded(delivery, attempt, status_code)

        result = DeliveryResult(
            delivery_id=delivery.id,
            status=status,
            attempt=attempt,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=elapsed_ms,
            error=error.message,
            next_attempt_at=next_attempt_at,
        )
        context = {
            "delivery_id": delivery.id,
            "destination": delivery.destination,
            "event_type": delivery.event_type,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "status_code": status_code,
        }
        await self.notifier.publish(WebhookLifecycle.DISPATCH_FAILED, context, error=error)
        await self._run_callbacks(self._on_failure, updated, result)

        if exhausted:
            await self.notifier.publish(
                WebhookLifecycle.EXHAUSTED, context, error=MaxRetriesExceeded(delivery.id, attempt)
            )
        else:
            self.scheduler.schedule(delivery.id, next_attempt_at.timestamp())
        return result

    def _discarded(
        self, delivery: WebhookDelivery, attempt: int, status_code: Optional[int]
    ) -> DeliveryResult:
        logger.info(
            "delivery_result_discarded",
            delivery_id=delivery.id,
            destination=delivery.destination,
            attempt=attempt,
        )
        return DeliveryResult(
            delivery_id=delivery.id,
            status=DeliveryStatus.CANCELLED,
            attempt=attempt,
            status_code=status_code,
            error="cancelled",
        )
