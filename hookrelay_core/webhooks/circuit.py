"""
Circuit Breaker
===============

Per-destination circuit breaker gating outbound webhook dispatch.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Destination failing, requests rejected without a network call
- HALF_OPEN: One trial request at a time tests whether it recovered

Each destination's state lives in a :class:`CircuitStateStore` and is only
mutated inside that store's per-destination lock, so concurrent attempts to
one destination cannot lose counter updates while other destinations proceed
independently.
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import redis.asyncio as redis
import structlog

from ..config import CircuitBreakerSettings
from .exceptions import CircuitOpen

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitStateName(str, Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Testing if destination recovered


@dataclass
class CircuitState:
    """Breaker state for one destination."""

    destination: str
    state: CircuitStateName = CircuitStateName.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None
    open_timeout: float = 0.0
    reopen_count: int = 0
    trial_in_flight: bool = False
    trial_started_at: Optional[float] = None
    forced: bool = False
    updated_at: Optional[float] = None

    @property
    def reset_at(self) -> Optional[float]:
        if self.opened_at is None:
            return None
        return self.opened_at + self.open_timeout

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitState":
        data = dict(data)
        data["state"] = CircuitStateName(data.get("state", CircuitStateName.CLOSED.value))
        return cls(**data)


# =============================================================================
# State stores
# =============================================================================


class CircuitStateStore(ABC):
    """Storage for per-destination breaker state."""

    @abstractmethod
    def lock(self, destination: str) -> AsyncContextManager:
        """Exclusive section for one destination."""

    @abstractmethod
    async def load(self, destination: str) -> Optional[CircuitState]:
        pass

    @abstractmethod
    async def save(self, state: CircuitState) -> None:
        pass

    @abstractmethod
    async def delete(self, destination: str) -> None:
        pass

    @abstractmethod
    async def destinations(self) -> List[str]:
        pass

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryCircuitStateStore(CircuitStateStore):
    """Process-local store. State is not shared between instances."""

    def __init__(self):
        self._states: Dict[str, CircuitState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, destination: str) -> asyncio.Lock:
        lock = self._locks.get(destination)
        if lock is None:
            lock = self._locks[destination] = asyncio.Lock()
        return lock

    async def load(self, destination: str) -> Optional[CircuitState]:
        state = self._states.get(destination)
        return copy.copy(state) if state else None

    async def save(self, state: CircuitState) -> None:
        self._states[state.destination] = copy.copy(state)

    async def delete(self, destination: str) -> None:
        self._states.pop(destination, None)

    async def destinations(self) -> List[str]:
        return sorted(self._states)


class RedisCircuitStateStore(CircuitStateStore):
    """
    Redis-backed store shared by every dispatcher process.

    Keys:
        <prefix><destination>:state  JSON-encoded CircuitState
        <prefix><destination>:lock   redis lock guarding read-modify-write
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "webhook-circuit:",
        lock_timeout: float = 10.0,
        blocking_timeout: float = 5.0,
    ):
        self._client = client
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "webhook-circuit:") -> "RedisCircuitStateStore":
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _key(self, destination: str, suffix: str) -> str:
        return f"{self._prefix}{destination}:{suffix}"

    def lock(self, destination: str) -> AsyncContextManager:
        return self._client.lock(
            self._key(destination, "lock"),
            timeout=self._lock_timeout,
            blocking_timeout=self._blocking_timeout,
        )

    async def load(self, destination: str) -> Optional[CircuitState]:
        raw = await self._client.get(self._key(destination, "state"))
        if raw is None:
            return None
        return CircuitState.from_dict(json.loads(raw))

    async def save(self, state: CircuitState) -> None:
        await self._client.set(self._key(state.destination, "state"), json.dumps(state.to_dict()))

    async def delete(self, destination: str) -> None:
        await self._client.delete(self._key(destination, "state"))

    async def destinations(self) -> List[str]:
        suffix = ":state"
        found = []
        async for key in self._client.scan_iter(match=f"{self._prefix}*{suffix}"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            found.append(key[len(self._prefix):-len(suffix)])
        return sorted(found)

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Breaker
# =============================================================================


class CircuitBreaker:
    """
    Per-destination circuit breaker.

    Usage:
        breaker = CircuitBreaker(InMemoryCircuitStateStore())

        if await breaker.allow_request("https://example.com/hook"):
            ...
            await breaker.record_success("https://example.com/hook")
    """

    # Refused half-open callers are told to come back after this many seconds
    HALF_OPEN_RETRY_SECONDS = 1.0

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        reset_backoff_multiplier: float = 2.0,
        max_reset_timeout: float = 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryCircuitStateStore()
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.reset_backoff_multiplier = reset_backoff_multiplier
        self.max_reset_timeout = max(max_reset_timeout, reset_timeout)
        self.enabled = enabled
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: CircuitBreakerSettings,
        store: Optional[CircuitStateStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> "CircuitBreaker":
        if store is None and settings.redis_url:
            store = RedisCircuitStateStore.from_url(settings.redis_url, settings.key_prefix)
        return cls(
            store=store,
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            reset_timeout=settings.reset_timeout_seconds,
            reset_backoff_multiplier=settings.reset_backoff_multiplier,
            max_reset_timeout=settings.max_reset_timeout_seconds,
            enabled=settings.enabled,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Internal state handling (callers hold the destination lock)
    # -------------------------------------------------------------------------

    async def _load(self, destination: str) -> CircuitState:
        state = await self.store.load(destination)
        if state is None:
            state = CircuitState(destination=destination, open_timeout=self.reset_timeout)
        return state

    def _advance(self, state: CircuitState, now: float) -> bool:
        """Apply time-based transitions. Returns True when the state changed."""
        if state.state == CircuitStateName.OPEN:
            reset_at = state.reset_at
            if reset_at is not None and now >= reset_at:
                self._transition(state, CircuitStateName.HALF_OPEN, now)
                return True
        elif state.state == CircuitStateName.HALF_OPEN and state.trial_in_flight:
            # A trial whose result never arrived must not wedge the circuit
            started = state.trial_started_at or 0.0
            if now - started >= state.open_timeout:
                state.trial_in_flight = False
                state.trial_started_at = None
                logger.warning("circuit_trial_expired", destination=state.destination)
                return True
        return False

    def _transition(self, state: CircuitState, new_state: CircuitStateName, now: float) -> None:
        old_state = state.state
        state.state = new_state
        state.trial_in_flight = False
        state.trial_started_at = None

        if new_state == CircuitStateName.OPEN:
            state.opened_at = now
            state.success_count = 0
        elif new_state == CircuitStateName.HALF_OPEN:
            state.success_count = 0
            state.forced = False
        elif new_state == CircuitStateName.CLOSED:
            state.failure_count = 0
            state.success_count = 0
            state.opened_at = None
            state.open_timeout = self.reset_timeout
            state.reopen_count = 0
            state.forced = False

        log = logger.warning if new_state == CircuitStateName.OPEN else logger.info
        log(
            "circuit_state_change",
            destination=state.destination,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=state.failure_count,
        )

    def _reopen_timeout(self, reopen_count: int) -> float:
        timeout = self.reset_timeout * (self.reset_backoff_multiplier ** reopen_count)
        return min(timeout, self.max_reset_timeout)

    async def _save(self, state: CircuitState, now: float) -> None:
        state.updated_at = now
        await self.store.save(state)

    def _retry_at(self, state: CircuitState, now: float) -> float:
        if state.state == CircuitStateName.OPEN and state.reset_at is not None:
            return state.reset_at
        if state.state == CircuitStateName.HALF_OPEN and state.trial_started_at is not None:
            return min(
                state.trial_started_at + state.open_timeout,
                now + self.HALF_OPEN_RETRY_SECONDS,
            )
        return now

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_state(self, destination: str) -> CircuitStateName:
        """Current state, applying any pending time-based transition."""
        async with self.store.lock(destination):
            existing = await self.store.load(destination)
            if existing is None:
                return CircuitStateName.CLOSED
            now = self._clock()
            if self._advance(existing, now):
                await self._save(existing, now)
            return existing.state

    async def is_open(self, destination: str) -> bool:
        return await self.get_state(destination) == CircuitStateName.OPEN

    async def is_closed(self, destination: str) -> bool:
        return await self.get_state(destination) == CircuitStateName.CLOSED

    async def is_half_open(self, destination: str) -> bool:
        return await self.get_state(destination) == CircuitStateName.HALF_OPEN

    async def get_failure_count(self, destination: str) -> int:
        state = await self.store.load(destination)
        return state.failure_count if state else 0

    async def get_success_count(self, destination: str) -> int:
        state = await self.store.load(destination)
        return state.success_count if state else 0

    async def get_reset_at(self, destination: str) -> Optional[float]:
        """Unix time at which an open circuit becomes half-open, if open."""
        state = await self.store.load(destination)
        if state is None or state.state != CircuitStateName.OPEN:
            return None
        return state.reset_at

    async def snapshot(self, destination: str) -> Dict[str, Any]:
        await self.get_state(destination)
        state = await self._load(destination)
        return state.to_dict()

    async def snapshots(self) -> List[Dict[str, Any]]:
        return [await self.snapshot(dest) for dest in await self.store.destinations()]

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    async def acquire(self, destination: str) -> None:
        """
        Claim permission to call ``destination``.

        In HALF_OPEN only one caller at a time gets the trial slot.

        Raises:
            CircuitOpen: If the call must not be made
        """
        if not self.enabled:
            return

        async with self.store.lock(destination):
            now = self._clock()
            state = await self._load(destination)
            changed = self._advance(state, now)

            if state.state == CircuitStateName.CLOSED:
                if changed:
                    await self._save(state, now)
                return

            if state.state == CircuitStateName.HALF_OPEN and not state.trial_in_flight:
                state.trial_in_flight = True
                state.trial_started_at = now
                await self._save(state, now)
                logger.info("circuit_trial_started", destination=destination)
                return

            if changed:
                await self._save(state, now)
            raise CircuitOpen(
                destination,
                failure_count=state.failure_count,
                retry_at=self._retry_at(state, now),
            )

    async def allow_request(self, destination: str) -> bool:
        try:
            await self.acquire(destination)
        except CircuitOpen:
            return False
        return True

    async def record_success(self, destination: str) -> None:
        if not self.enabled:
            return

        async with self.store.lock(destination):
            now = self._clock()
            state = await self._load(destination)
            self._advance(state, now)

            if state.state == CircuitStateName.CLOSED:
                if state.failure_count == 0 and state.updated_at is not None:
                    return
                state.failure_count = 0
            elif state.state == CircuitStateName.HALF_OPEN:
                state.trial_in_flight = False
                state.trial_started_at = None
                state.success_count += 1
                if state.success_count >= self.success_threshold:
                    self._transition(state, CircuitStateName.CLOSED, now)
            else:
                # Late result from a call started before the circuit opened
                return

            await self._save(state, now)

    async def record_failure(self, destination: str) -> None:
        if not self.enabled:
            return

        async with self.store.lock(destination):
            now = self._clock()
            state = await self._load(destination)
            self._advance(state, now)
            state.failure_count += 1

            if state.state == CircuitStateName.CLOSED:
                if state.failure_count >= self.failure_threshold:
                    state.reopen_count = 0
                    state.open_timeout = self.reset_timeout
                    self._transition(state, CircuitStateName.OPEN, now)
            elif state.state == CircuitStateName.HALF_OPEN:
                state.reopen_count += 1
                state.open_timeout = self._reopen_timeout(state.reopen_count)
                self._transition(state, CircuitStateName.OPEN, now)

            await self._save(state, now)

    async def release_trial(self, destination: str) -> None:
        """Give back a half-open trial slot whose call was never made."""
        if not self.enabled:
            return

        async with self.store.lock(destination):
            state = await self.store.load(destination)
            if state is None or state.state != CircuitStateName.HALF_OPEN or not state.trial_in_flight:
                return
            state.trial_in_flight = False
            state.trial_started_at = None
            await self._save(state, self._clock())
            logger.info("circuit_trial_released", destination=destination)

    # -------------------------------------------------------------------------
    # Manual overrides
    # -------------------------------------------------------------------------

    async def force_open(self, destination: str, duration: Optional[float] = None) -> None:
        """Open the circuit for ``duration`` seconds (default: reset timeout)."""
        async with self.store.lock(destination):
            now = self._clock()
            state = await self._load(destination)
            state.open_timeout = duration if duration is not None else self.reset_timeout
            self._transition(state, CircuitStateName.OPEN, now)
            state.forced = True
            await self._save(state, now)

    async def force_close(self, destination: str) -> None:
        async with self.store.lock(destination):
            now = self._clock()
            state = await self._load(destination)
            self._transition(state, CircuitStateName.CLOSED, now)
            await self._save(state, now)

    async def reset(self, destination: str) -> None:
        """Forget all state for ``destination``."""
        async with self.store.lock(destination):
            await self.store.delete(destination)
        logger.info("circuit_reset", destination=destination)

    # -------------------------------------------------------------------------
    # Wrapped execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        destination: str,
        func: Callable[[], Union[T, Awaitable[T]]],
        fallback: Optional[Callable[[CircuitOpen], Any]] = None,
    ) -> Any:
        """
        Run ``func`` through the breaker.

        Args:
            destination: Circuit to use
            func: Zero-argument callable, sync or async
            fallback: Called with the :class:`CircuitOpen` error when the
                circuit refuses the call

        Raises:
            CircuitOpen: If refused and no fallback is given
        """
        try:
            await self.acquire(destination)
        except CircuitOpen as exc:
            if fallback is None:
                raise
            result = fallback(exc)
            if asyncio.iscoroutine(result):
                result = await result
            return result

        try:
            result = func()
            if asyncio.iscoroutine(result):
                result = await result
        except Exception:
            await self.record_failure(destination)
            raise

        await self.record_success(destination)
        return result
