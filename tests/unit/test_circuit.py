"""Unit tests for the per-destination circuit breaker."""

import asyncio
import fnmatch

import pytest

from hookrelay_core.config import CircuitBreakerSettings
from hookrelay_core.webhooks.circuit import (
    CircuitBreaker,
    CircuitState,
    CircuitStateName,
    InMemoryCircuitStateStore,
    RedisCircuitStateStore,
)
from hookrelay_core.webhooks.exceptions import CircuitOpen

DEST = "https://hooks.example.com/in"


class FakeRedis:
    """Minimal async redis client covering what the state store uses."""

    def __init__(self):
        self.data = {}
        self.locks = []
        self.closed = False

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.locks.append(name)
        return asyncio.Lock()

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


async def _open(breaker, destination=DEST):
    for _ in range(breaker.failure_threshold):
        await breaker.record_failure(destination)


# =============================================================================
# Closed / Open
# =============================================================================


class TestClosedState:
    """Tests for failure counting while closed."""

    @pytest.mark.asyncio
    async def test_unknown_destination_is_closed(self, breaker):
        assert await breaker.get_state(DEST) == CircuitStateName.CLOSED
        assert await breaker.allow_request(DEST) is True
        assert await breaker.get_failure_count(DEST) == 0

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        for _ in range(4):
            await breaker.record_failure(DEST)
        assert await breaker.is_closed(DEST)

        await breaker.record_failure(DEST)

        assert await breaker.is_open(DEST)
        assert await breaker.get_failure_count(DEST) == 5

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, breaker):
        for _ in range(4):
            await breaker.record_failure(DEST)

        await breaker.record_success(DEST)
        await breaker.record_failure(DEST)

        assert await breaker.get_failure_count(DEST) == 1
        assert await breaker.is_closed(DEST)

    @pytest.mark.asyncio
    async def test_destinations_are_independent(self, breaker):
        await _open(breaker)

        assert await breaker.is_open(DEST)
        assert await breaker.allow_request("https://other.example.com") is True


class TestOpenState:
    """Tests for refusal and the transition to half-open."""

    @pytest.mark.asyncio
    async def test_refuses_with_retry_at(self, breaker, clock):
        await _open(breaker)

        with pytest.raises(CircuitOpen) as exc_info:
            await breaker.acquire(DEST)

        assert exc_info.value.retry_at == clock.now + 60
        assert exc_info.value.failure_count == 5
        assert await breaker.get_reset_at(DEST) == clock.now + 60

    @pytest.mark.asyncio
    async def test_half_open_after_timeout(self, breaker, clock):
        await _open(breaker)

        clock.advance(59)
        assert await breaker.is_open(DEST)

        clock.advance(1)
        assert await breaker.is_half_open(DEST)
        assert await breaker.get_reset_at(DEST) is None

    @pytest.mark.asyncio
    async def test_late_success_ignored_while_open(self, breaker):
        await _open(breaker)

        await breaker.record_success(DEST)

        assert await breaker.is_open(DEST)
        assert await breaker.get_failure_count(DEST) == 5


# =============================================================================
# Half-open
# =============================================================================


class TestHalfOpenState:
    """Tests for trial requests."""

    @pytest.mark.asyncio
    async def test_single_trial(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)

        await breaker.acquire(DEST)
        with pytest.raises(CircuitOpen) as exc_info:
            await breaker.acquire(DEST)

        assert exc_info.value.retry_at == clock.now + CircuitBreaker.HALF_OPEN_RETRY_SECONDS

    @pytest.mark.asyncio
    async def test_concurrent_acquire_grants_one_trial(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)

        results = await asyncio.gather(
            *(breaker.allow_request(DEST) for _ in range(10))
        )

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_closes_after_success_threshold(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)

        await breaker.acquire(DEST)
        await breaker.record_success(DEST)
        assert await breaker.is_half_open(DEST)
        assert await breaker.get_success_count(DEST) == 1

        await breaker.acquire(DEST)
        await breaker.record_success(DEST)

        assert await breaker.is_closed(DEST)
        assert await breaker.get_failure_count(DEST) == 0

    @pytest.mark.asyncio
    async def test_failure_reopens_with_backoff(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)

        await breaker.acquire(DEST)
        await breaker.record_failure(DEST)

        assert await breaker.is_open(DEST)
        assert await breaker.get_reset_at(DEST) == clock.now + 120

        clock.advance(120)
        await breaker.acquire(DEST)
        await breaker.record_failure(DEST)

        assert await breaker.get_reset_at(DEST) == clock.now + 240

    @pytest.mark.asyncio
    async def test_reopen_timeout_is_capped(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=1, reset_timeout=60, max_reset_timeout=100, clock=clock
        )
        await breaker.record_failure(DEST)

        for _ in range(3):
            clock.advance(1000)
            await breaker.acquire(DEST)
            await breaker.record_failure(DEST)

        assert await breaker.get_reset_at(DEST) == clock.now + 100

    @pytest.mark.asyncio
    async def test_lost_trial_expires(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)
        await breaker.acquire(DEST)

        clock.advance(60)

        assert await breaker.allow_request(DEST) is True

    @pytest.mark.asyncio
    async def test_released_trial_can_be_claimed_again(self, breaker, clock):
        await _open(breaker)
        clock.advance(60)
        await breaker.acquire(DEST)

        await breaker.release_trial(DEST)

        assert await breaker.is_half_open(DEST)
        assert await breaker.get_success_count(DEST) == 0
        assert await breaker.allow_request(DEST) is True
        assert await breaker.allow_request(DEST) is False

    @pytest.mark.asyncio
    async def test_release_outside_half_open_is_noop(self, breaker):
        await breaker.release_trial(DEST)
        await _open(breaker)

        await breaker.release_trial(DEST)

        assert await breaker.is_open(DEST)
        assert await breaker.allow_request(DEST) is False


# =============================================================================
# Manual overrides and execute
# =============================================================================


class TestOverrides:
    """Tests for force_open, force_close and reset."""

    @pytest.mark.asyncio
    async def test_force_open_for_duration(self, breaker, clock):
        await breaker.force_open(DEST, duration=10)

        assert await breaker.is_open(DEST)
        with pytest.raises(CircuitOpen):
            await breaker.acquire(DEST)

        clock.advance(10)
        assert await breaker.is_half_open(DEST)

    @pytest.mark.asyncio
    async def test_force_close(self, breaker):
        await _open(breaker)

        await breaker.force_close(DEST)

        assert await breaker.is_closed(DEST)
        assert await breaker.get_failure_count(DEST) == 0

    @pytest.mark.asyncio
    async def test_reset_forgets_state(self, breaker):
        await _open(breaker)

        await breaker.reset(DEST)

        assert await breaker.store.destinations() == []
        assert await breaker.is_closed(DEST)

    @pytest.mark.asyncio
    async def test_disabled_breaker_never_refuses(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, enabled=False, clock=clock)

        await breaker.record_failure(DEST)

        assert await breaker.allow_request(DEST) is True

    @pytest.mark.asyncio
    async def test_snapshots(self, breaker):
        await _open(breaker)
        await breaker.record_failure("https://b.example.com")

        snapshots = await breaker.snapshots()

        assert [s["destination"] for s in snapshots] == ["https://b.example.com", DEST]
        assert snapshots[1]["state"] == "open"


class TestExecute:
    """Tests for CircuitBreaker.execute."""

    @pytest.mark.asyncio
    async def test_success_recorded(self, breaker):
        async def call():
            return "ok"

        assert await breaker.execute(DEST, call) == "ok"

    @pytest.mark.asyncio
    async def test_failure_recorded_and_raised(self, breaker):
        def call():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await breaker.execute(DEST, call)

        assert await breaker.get_failure_count(DEST) == 1

    @pytest.mark.asyncio
    async def test_fallback_when_open(self, breaker):
        await _open(breaker)
        calls = []

        result = await breaker.execute(DEST, lambda: calls.append(1), fallback=lambda exc: "queued")

        assert result == "queued"
        assert calls == []

    @pytest.mark.asyncio
    async def test_open_without_fallback_raises(self, breaker):
        await _open(breaker)

        with pytest.raises(CircuitOpen):
            await breaker.execute(DEST, lambda: None)


# =============================================================================
# Stores
# =============================================================================


class TestCircuitState:
    """Tests for CircuitState serialization."""

    def test_dict_conversion(self):
        state = CircuitState(DEST, CircuitStateName.OPEN, failure_count=3, opened_at=10.0, open_timeout=5.0)

        restored = CircuitState.from_dict(state.to_dict())

        assert restored == state
        assert restored.reset_at == 15.0


class TestInMemoryStore:
    """Tests for InMemoryCircuitStateStore."""

    @pytest.mark.asyncio
    async def test_load_returns_copy(self):
        store = InMemoryCircuitStateStore()
        await store.save(CircuitState(DEST))

        loaded = await store.load(DEST)
        loaded.failure_count = 99

        assert (await store.load(DEST)).failure_count == 0

    def test_lock_per_destination(self):
        store = InMemoryCircuitStateStore()

        assert store.lock("a") is store.lock("a")
        assert store.lock("a") is not store.lock("b")


class TestRedisStore:
    """Tests for RedisCircuitStateStore against a fake client."""

    @pytest.mark.asyncio
    async def test_state_shared_through_redis(self, clock):
        client = FakeRedis()
        first = CircuitBreaker(RedisCircuitStateStore(client, key_prefix="t:"), clock=clock)
        second = CircuitBreaker(RedisCircuitStateStore(client, key_prefix="t:"), clock=clock)

        await _open(first)

        assert await second.is_open(DEST)
        assert f"t:{DEST}:state" in client.data
        assert f"t:{DEST}:lock" in client.locks

    @pytest.mark.asyncio
    async def test_destinations_and_delete(self):
        client = FakeRedis()
        store = RedisCircuitStateStore(client, key_prefix="t:")
        await store.save(CircuitState("https://a"))
        await store.save(CircuitState("https://b"))

        assert await store.destinations() == ["https://a", "https://b"]

        await store.delete("https://a")
        assert await store.destinations() == ["https://b"]
        assert await store.load("https://a") is None

    @pytest.mark.asyncio
    async def test_close(self):
        client = FakeRedis()

        await RedisCircuitStateStore(client).close()

        assert client.closed is True

    def test_from_settings_selects_redis(self):
        settings = CircuitBreakerSettings(redis_url="redis://localhost:6379/0", failure_threshold=3)

        breaker = CircuitBreaker.from_settings(settings)

        assert isinstance(breaker.store, RedisCircuitStateStore)
        assert breaker.failure_threshold == 3

    def test_from_settings_defaults_to_memory(self):
        breaker = CircuitBreaker.from_settings(CircuitBreakerSettings())

        assert isinstance(breaker.store, InMemoryCircuitStateStore)
