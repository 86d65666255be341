"""API route modules."""

from . import health, relay

__all__ = ["health", "relay"]
