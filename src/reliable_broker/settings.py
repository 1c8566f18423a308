"""Broker settings and the delivery policy derived from them."""

from __future__ import annotations

from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class DeliveryPolicy(BaseModel):
    """Retry budgets and well-known queue names used by the core components."""

    model_config = ConfigDict(frozen=True)

    max_delivery_limit: int = Field(default=30, ge=0)
    max_connection_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=3.0, ge=0, description="Seconds between attempts")
    reject_queue: str = "notReach"
    publish_queue: str = "grouping"
    consume_queue: str = "ingnotification"
    strip_attempts_on_quarantine: bool = False


class BrokerSettings(BaseModel):
    """Connection and delivery configuration.

    Loading values from the environment is up to the application; build the
    settings with ``BrokerSettings(...)`` or ``BrokerSettings.model_validate(mapping)``.
    """

    model_config = ConfigDict(frozen=True)

    broker: str = "rabbitmq"
    url: str | None = Field(default=None, description="Full AMQP URL; overrides host/port")
    host: str = "localhost"
    port: int = Field(default=5672, gt=0, le=65535)
    username: str = "guest"
    password: SecretStr = SecretStr("guest")
    vhost: str = "/"
    connection_timeout: float | None = Field(default=None, gt=0)

    max_connection_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=3000, ge=0)
    max_delivery_limit: int = Field(default=30, ge=0)

    consume_queue: str = "ingnotification"
    reject_queue: str = "notReach"
    publish_queue: str = "grouping"
    default_queues: list[str] = Field(default_factory=list)
    prefetch_count: int = Field(default=1, ge=1)
    strip_attempts_on_quarantine: bool = False

    @property
    def policy(self) -> DeliveryPolicy:
        return DeliveryPolicy(
            max_delivery_limit=self.max_delivery_limit,
            max_connection_retries=self.max_connection_retries,
            retry_delay=self.retry_delay_ms / 1000,
            reject_queue=self.reject_queue,
            publish_queue=self.publish_queue,
            consume_queue=self.consume_queue,
            strip_attempts_on_quarantine=self.strip_attempts_on_quarantine,
        )

    def amqp_url(self) -> str:
        """Return ``url`` if set, otherwise build one from the individual fields."""
        if self.url:
            return self.url
        user = quote(self.username, safe="")
        password = quote(self.password.get_secret_value(), safe="")
        vhost = quote(self.vhost, safe="")
        return f"amqp://{user}:{password}@{self.host}:{self.port}/{vhost}"
