"""Unit tests for inbound webhook providers."""

import base64
import hashlib
import hmac
import json

import pytest

from hookrelay_core.config import ReceivingSettings, SourceSettings
from hookrelay_core.webhooks.providers import (
    GenericProvider,
    GitHubProvider,
    InboundRequest,
    ProviderRegistry,
    ShopifyProvider,
    SlackProvider,
    StripeProvider,
    create_provider,
)
from hookrelay_core.webhooks.signing import ApiKeyValidator, JwtSignatureValidator

NOW = 1_700_000_000


def _hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class TestInboundRequest:
    """Tests for the raw request wrapper."""

    def test_headers_are_case_insensitive(self):
        request = InboundRequest(b"{}", {"X-Webhook-Event": " order.created "})

        assert request.header("x-webhook-event") == "order.created"
        assert request.header("X-Missing") is None

    def test_str_body_encoded(self):
        assert InboundRequest('{"a":1}').body == b'{"a":1}'

    def test_json(self):
        assert InboundRequest(b'{"a": 1}').json() == {"a": 1}

    def test_empty_body_is_not_json(self):
        with pytest.raises(ValueError):
            InboundRequest(b"").json()

    def test_bad_json(self):
        with pytest.raises(ValueError):
            InboundRequest(b"{not json").json()


class TestGenericProvider:
    """Tests for the relay's own header conventions."""

    def test_verify(self):
        provider = GenericProvider("acme", secret="s")
        body = b'{"event":"order.created"}'

        assert provider.verify(InboundRequest(body, {"X-Webhook-Signature": _hex("s", body)}))
        assert not provider.verify(InboundRequest(body, {"X-Webhook-Signature": _hex("x", body)}))

    def test_without_secret_never_verifies(self):
        provider = GenericProvider("open")
        body = b"{}"

        assert provider.has_secret is False
        assert provider.verify(InboundRequest(body, {"X-Webhook-Signature": _hex("", body)})) is False

    def test_event_type_prefers_header(self):
        provider = GenericProvider("acme", secret="s")
        request = InboundRequest(b"{}", {"X-Webhook-Event": "from.header"})

        assert provider.get_event_type(request, {"event": "from.body"}) == "from.header"

    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"event": "a"}, "a"),
            ({"type": "b"}, "b"),
            ({"event_type": "c"}, "c"),
            ({"action": "d"}, "d"),
            ({"name": "e"}, "e"),
            ({"type": "", "action": "f"}, "f"),
            ({"other": 1}, None),
        ],
    )
    def test_event_type_from_payload(self, payload, expected):
        provider = GenericProvider("acme", secret="s")

        assert provider.get_event_type(InboundRequest(b"{}"), payload) == expected

    def test_delivery_id_headers(self):
        provider = GenericProvider("acme", secret="s")

        assert provider.get_delivery_id(InboundRequest(b"{}", {"X-Webhook-Id": "w1"}), {}) == "w1"
        assert provider.get_delivery_id(InboundRequest(b"{}", {"X-Delivery-Id": "d1"}), {}) == "d1"
        assert provider.get_delivery_id(InboundRequest(b"{}"), {"id": "body"}) is None

    def test_custom_signature_header(self):
        provider = GenericProvider("acme", secret="s", signature_header="X-Acme-Sig")
        body = b"{}"

        assert provider.verify(InboundRequest(body, {"X-Acme-Sig": _hex("s", body)}))
        assert provider.get_signature(InboundRequest(body, {"X-Acme-Sig": "abc"})) == "abc"


class TestStripeProvider:
    """Tests for Stripe-style timestamped signatures."""

    def _provider(self, now=NOW):
        return StripeProvider("stripe", secret="whsec_test", clock=lambda: now)

    def test_verify_and_extract(self):
        provider = self._provider()
        payload = {"id": "evt_1", "type": "invoice.paid"}
        body = json.dumps(payload).encode()
        header = provider.validator.sign(body, "whsec_test", timestamp=NOW)
        request = InboundRequest(body, {"Stripe-Signature": header})

        assert provider.verify(request) is True
        assert provider.get_event_type(request, payload) == "invoice.paid"
        assert provider.get_delivery_id(request, payload) == "evt_1"

    def test_stale_timestamp_rejected(self):
        provider = self._provider()
        body = b'{"id":"evt_1"}'
        header = provider.validator.sign(body, "whsec_test", timestamp=NOW - 600)

        assert provider.verify(InboundRequest(body, {"Stripe-Signature": header})) is False


class TestGitHubProvider:
    """Tests for GitHub hub signatures."""

    def test_verify_primary_and_legacy(self):
        provider = GitHubProvider("github", secret="gh-secret")
        body = b'{"action":"opened"}'
        signature = f"sha256={_hex('gh-secret', body)}"

        assert provider.verify(InboundRequest(body, {"X-Hub-Signature-256": signature}))
        assert provider.verify(InboundRequest(body, {"X-Hub-Signature": signature}))

    def test_event_type_includes_action(self):
        provider = GitHubProvider("github", secret="gh-secret")
        request = InboundRequest(b"{}", {"X-GitHub-Event": "pull_request", "X-GitHub-Delivery": "g-1"})

        assert provider.get_event_type(request, {"action": "opened"}) == "pull_request.opened"
        assert provider.get_event_type(request, {}) == "pull_request"
        assert provider.get_delivery_id(request, {}) == "g-1"

    def test_missing_event_header(self):
        provider = GitHubProvider("github", secret="gh-secret")

        assert provider.get_event_type(InboundRequest(b"{}"), {"action": "opened"}) is None


class TestShopifyProvider:
    """Tests for Shopify base64 signatures."""

    def test_verify_and_extract(self):
        provider = ShopifyProvider("shopify", secret="shp-secret")
        body = b'{"id":42}'
        digest = base64.b64encode(hmac.new(b"shp-secret", body, hashlib.sha256).digest()).decode()
        request = InboundRequest(
            body,
            {
                "X-Shopify-Hmac-Sha256": digest,
                "X-Shopify-Topic": "orders/create",
                "X-Shopify-Webhook-Id": "shp-1",
            },
        )

        assert provider.verify(request) is True
        assert provider.get_event_type(request, {}) == "orders/create"
        assert provider.get_delivery_id(request, {}) == "shp-1"


class TestSlackProvider:
    """Tests for Slack request signing."""

    def _provider(self, now=NOW):
        return SlackProvider("slack", secret="slack-signing", clock=lambda: now)

    def test_verify_and_extract(self):
        provider = self._provider()
        payload = {"type": "event_callback", "event_id": "Ev01", "event": {"type": "message"}}
        body = json.dumps(payload).encode()
        signature = "v0=" + _hex("slack-signing", f"v0:{NOW}:".encode() + body)
        request = InboundRequest(body, {"X-Slack-Signature": signature, "X-Slack-Request-Timestamp": str(NOW)})

        assert provider.verify(request) is True
        assert provider.get_signature(request) == signature
        assert provider.get_event_type(request, payload) == "event_callback.message"
        assert provider.get_delivery_id(request, payload) == "Ev01"

    def test_replayed_timestamp_rejected(self):
        provider = self._provider()
        body = b'{"type":"url_verification"}'
        signature = provider.validator.sign(body, "slack-signing", timestamp=NOW - 600)
        headers = {"X-Slack-Signature": signature, "X-Slack-Request-Timestamp": str(NOW - 600)}

        assert provider.verify(InboundRequest(body, headers)) is False

    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"type": "url_verification", "challenge": "c"}, "url_verification"),
            ({"type": "event_callback"}, "event_callback"),
            ({"type": "event_callback", "event": {}}, "event_callback"),
            ({}, None),
        ],
    )
    def test_event_type_fallbacks(self, payload, expected):
        assert self._provider().get_event_type(InboundRequest(b"{}"), payload) == expected


class TestConfiguredValidator:
    """Tests for overriding a provider's signature scheme from settings."""

    def test_apikey_on_generic_source(self):
        provider = create_provider(
            "partner", SourceSettings(secret="k-1", validator="apikey", signature_header="X-Partner-Key")
        )

        assert isinstance(provider.validator, ApiKeyValidator)
        assert provider.verify(InboundRequest(b"{}", {"X-Partner-Key": "k-1"})) is True
        assert provider.verify(InboundRequest(b"{}", {"X-Webhook-Signature": _hex("k-1", b"{}")})) is False

    def test_jwt_uses_provider_clock(self):
        secret = "jwt-" + "abcdef0123456789" * 4
        provider = create_provider(
            "signed", SourceSettings(secret=secret, validator="jwt"), clock=lambda: NOW
        )
        token = provider.validator.sign(b"{}", secret)

        assert isinstance(provider.validator, JwtSignatureValidator)
        assert provider.verify(InboundRequest(b"{}", {"Authorization": f"Bearer {token}"})) is True

    def test_basic_keeps_provider_extraction(self):
        provider = create_provider("gh", SourceSettings(provider="github", secret="u:p", validator="basic"))
        headers = {"Authorization": "Basic " + base64.b64encode(b"u:p").decode(), "X-GitHub-Event": "push"}
        request = InboundRequest(b"{}", headers)

        assert provider.verify(request) is True
        assert provider.get_event_type(request, {}) == "push"


class TestProviderRegistry:
    """Tests for building providers from settings."""

    def test_from_settings(self):
        settings = ReceivingSettings(
            sources={
                "acme": SourceSettings(provider="generic", secret="s"),
                "stripe": SourceSettings(provider="stripe", secret="whsec", tolerance_seconds=60),
            }
        )

        registry = ProviderRegistry.from_settings(settings)

        assert registry.sources() == ["acme", "stripe"]
        assert "acme" in registry
        assert "missing" not in registry
        assert isinstance(registry.get("stripe"), StripeProvider)
        assert registry.get("stripe").validator.tolerance_seconds == 60
        assert registry.get("missing") is None

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_provider("x", SourceSettings(provider="paypal"))
