"""RabbitMQ transport adapter (optional extra: reliable-broker[rabbitmq])."""

from __future__ import annotations

from .client import AioPikaClient

__all__ = ["AioPikaClient"]
