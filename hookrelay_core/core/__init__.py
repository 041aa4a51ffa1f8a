"""Core utilities."""

from hookrelay_core.core.logging import LogFormat, configure_logging

__all__ = ["LogFormat", "configure_logging"]
