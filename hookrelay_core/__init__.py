"""
Webhook Relay
=============

Core delivery engine for inbound and outbound webhooks.

This package provides:
- Signature verification for third-party providers
- Deduplicated ingestion with per-source handlers
- Subscription matching with payload filters
- Outbound dispatch with retry, backoff and circuit breaking
"""

__version__ = "1.0.0"
