"""Shared pytest fixtures for testing."""

import os
import time
from typing import Callable, List, Optional, Union

import httpx
import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "development"

from hookrelay_core.config import (  # noqa: E402
    CircuitBreakerSettings,
    DispatchSettings,
    ReceivingSettings,
    Settings,
    SigningSettings,
    SourceSettings,
)
from hookrelay_core.webhooks.circuit import CircuitBreaker, InMemoryCircuitStateStore  # noqa: E402
from hookrelay_core.webhooks.dispatcher import WebhookDispatcher  # noqa: E402
from hookrelay_core.webhooks.notifications import NotificationBus, WebhookNotification  # noqa: E402
from hookrelay_core.webhooks.repository import InMemoryWebhookRepository  # noqa: E402


# =============================================================================
# Helpers
# =============================================================================


class FakeClock:
    """Controllable unix time source."""

    def __init__(self, start: Optional[float] = None):
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingListener:
    """Collects every published notification."""

    def __init__(self):
        self.notifications: List[WebhookNotification] = []

    def __call__(self, notification: WebhookNotification) -> None:
        self.notifications.append(notification)

    def kinds(self) -> List[str]:
        return [n.kind.value for n in self.notifications]

    def of(self, kind) -> List[WebhookNotification]:
        return [n for n in self.notifications if n.kind == kind]


Step = Union[int, type, Callable[[httpx.Request], httpx.Response]]


class ScriptedDestination:
    """
    httpx.MockTransport handler replaying a script.

    Each step is a status code, an httpx exception class to raise, or a
    callable producing the response. Once the script runs out every request
    gets ``default``.
    """

    def __init__(self, *steps: Step, default: int = 200):
        self.steps = list(steps)
        self.default = default
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if self.steps else self.default
        if isinstance(step, type) and issubclass(step, Exception):
            raise step("scripted failure", request=request)
        if callable(step):
            return step(request)
        return httpx.Response(step, text=f"status {step}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries and a few configured inbound sources."""
    return Settings(
        environment="test",
        log_format="console",
        signing=SigningSettings(default_secret="relay-secret"),
        receiving=ReceivingSettings(
            require_signatures=True,
            sources={
                "acme": SourceSettings(provider="generic", secret="s"),
                "stripe": SourceSettings(provider="stripe", secret="whsec_test"),
                "github": SourceSettings(provider="github", secret="gh-secret"),
                "shopify": SourceSettings(provider="shopify", secret="shp-secret"),
                "open": SourceSettings(provider="generic"),
                "slack": SourceSettings(provider="slack", secret="slack-signing"),
                "partner": SourceSettings(
                    provider="generic", secret="partner-key", validator="apikey", signature_header="X-Partner-Key"
                ),
            },
        ),
        dispatch=DispatchSettings(
            max_attempts=5,
            base_delay_seconds=1.0,
            backoff_multiplier=2.0,
            jitter=0.0,
            max_delay_seconds=60.0,
            timeout_seconds=2.0,
            poll_interval_seconds=0.01,
        ),
        circuit_breaker=CircuitBreakerSettings(
            failure_threshold=5,
            success_threshold=2,
            reset_timeout_seconds=60.0,
        ),
    )


@pytest.fixture
def repository(clock) -> InMemoryWebhookRepository:
    return InMemoryWebhookRepository(clock=clock)


@pytest.fixture
def recorder() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def notifier(recorder: RecordingListener) -> NotificationBus:
    bus = NotificationBus()
    bus.subscribe_all(recorder)
    return bus


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        InMemoryCircuitStateStore(),
        failure_threshold=5,
        success_threshold=2,
        reset_timeout=60.0,
        clock=clock,
    )


@pytest.fixture
def scripted():
    """Factory for scripted destinations: ``scripted(500, 500, 200)``."""
    return ScriptedDestination


@pytest_asyncio.fixture
async def make_dispatcher(repository, breaker, settings, notifier, clock):
    """Build dispatchers talking to a scripted destination; closed on teardown."""
    created = []

    def factory(destination: ScriptedDestination, **overrides):
        client = destination.client()
        dispatcher = WebhookDispatcher(
            repository,
            overrides.pop("circuit_breaker", breaker),
            settings=overrides.pop("settings", settings),
            notifier=notifier,
            http_client=client,
            clock=clock,
            **overrides,
        )
        created.append((dispatcher, client))
        return dispatcher

    yield factory

    for dispatcher, client in created:
        await dispatcher.stop()
        await client.aclose()
