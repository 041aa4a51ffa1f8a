"""Unit tests for settings and logging setup."""

import pytest
import structlog
from pydantic import ValidationError

from hookrelay_core.config import CircuitBreakerSettings, Settings, SigningSettings, SourceSettings
from hookrelay_core.core.logging import LogFormat, configure_logging


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("HOOKRELAY_DISPATCH__MAX_ATTEMPTS", raising=False)

        settings = Settings(_env_file=None)

        assert settings.dispatch.max_attempts == 5
        assert settings.signing.outbound_scheme == "timestamp"
        assert settings.signing.attempt_header == "X-Webhook-Attempt"
        assert settings.circuit_breaker.failure_threshold == 5
        assert settings.dispatch.success_status_codes == list(range(200, 300))
        assert settings.retention_days == 30

    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("HOOKRELAY_DISPATCH__MAX_ATTEMPTS", "8")
        monkeypatch.setenv("HOOKRELAY_CIRCUIT_BREAKER__REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("HOOKRELAY_SIGNING__DEFAULT_SECRET", "from-env")

        settings = Settings(_env_file=None)

        assert settings.dispatch.max_attempts == 8
        assert settings.circuit_breaker.redis_url == "redis://cache:6379/1"
        assert settings.signing.default_secret == "from-env"

    def test_sources_from_json(self, monkeypatch):
        monkeypatch.setenv(
            "HOOKRELAY_RECEIVING__SOURCES",
            '{"stripe": {"provider": "stripe", "secret": "whsec_x"}}',
        )

        settings = Settings(_env_file=None)

        assert settings.receiving.sources["stripe"].provider == "stripe"
        assert settings.receiving.sources["stripe"].secret == "whsec_x"

    def test_invalid_outbound_scheme(self):
        with pytest.raises(ValidationError):
            SigningSettings(outbound_scheme="rsa")

    def test_source_validator_choices(self):
        assert SourceSettings().validator is None
        assert SourceSettings(validator="jwt").validator == "jwt"
        with pytest.raises(ValidationError):
            SourceSettings(validator="paypal")

    def test_reset_timeout_cap_validated(self):
        with pytest.raises(ValidationError):
            CircuitBreakerSettings(reset_timeout_seconds=120, max_reset_timeout_seconds=60)

    def test_is_production(self):
        assert Settings(_env_file=None, environment="production").is_production is True
        assert Settings(_env_file=None, environment="test").is_production is False


class TestLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def restore_structlog(self):
        yield
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()

    @pytest.mark.parametrize("log_format", [LogFormat.JSON.value, LogFormat.CONSOLE.value])
    def test_configure(self, log_format):
        configure_logging(level="DEBUG", log_format=log_format, service_name="hookrelay-test")

        assert structlog.is_configured()
        structlog.get_logger("hookrelay.test").info("configured", log_format=log_format)

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            configure_logging(log_format="xml")
