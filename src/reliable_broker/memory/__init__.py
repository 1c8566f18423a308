"""In-memory broker client for tests and local development."""

from __future__ import annotations

from .client import InMemoryBrokerClient

__all__ = ["InMemoryBrokerClient"]
