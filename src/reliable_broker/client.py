from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .message import Message
    from .settings import BrokerSettings
    from .topology import ExchangeKind

    DeliveryCallback = Callable[[Message], Awaitable[None]]


@dataclass(frozen=True)
class PublishConfirmation:
    """Broker verdict for one message published in confirm mode."""

    message: Message
    acked: bool
    reason: str | None = None


@runtime_checkable
class BrokerClient(Protocol):
    """
    Port for the AMQP client library doing the actual wire work.

    The reliability layer never talks to the network directly; concrete
    adapters (``AioPikaClient``, ``InMemoryBrokerClient``) implement this.
    Connection and channel handles are opaque to the callers.
    Transport failures must surface as ``BrokerConnectionError`` (or the
    builtin ``ConnectionError``/``OSError``).
    """

    name: str

    async def dial(self, settings: BrokerSettings) -> Any:
        """Open a connection and return its handle."""
        ...

    async def open_channel(self, connection: Any) -> Any:
        """Open a channel on *connection* and return its handle."""
        ...

    async def declare_queue(
        self,
        channel: Any,
        name: str,
        *,
        durable: bool,
        exclusive: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None: ...

    async def declare_exchange(
        self,
        channel: Any,
        name: str,
        kind: ExchangeKind,
        *,
        durable: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None: ...

    async def bind_queue(
        self,
        channel: Any,
        exchange: str,
        queue: str,
        routing_key: str,
        arguments: dict[str, Any] | None = None,
    ) -> None: ...

    async def queue_exists(self, connection: Any, name: str) -> bool:
        """
        Passively check whether *name* exists on the broker.

        Must not disturb channels in use: a failed passive declare closes
        the channel it ran on, so adapters use a throwaway channel.
        """
        ...

    async def publish(
        self,
        channel: Any,
        message: Message,
        *,
        exchange: str,
        routing_key: str,
        batch: Any = None,
    ) -> None:
        """
        Publish *message*.

        An empty *exchange* means the default exchange, where *routing_key*
        is the queue name. Without *batch* this waits for the broker verdict
        and raises ``PublishConfirmError`` on a nack or return. With a
        *batch* handle from ``enable_confirm`` it returns at once and the
        verdict is collected by ``wait_for_confirms``.
        """
        ...

    async def enable_confirm(self, channel: Any) -> Any:
        """Start a confirm batch on *channel* and return its handle."""
        ...

    async def wait_for_confirms(self, channel: Any, batch: Any) -> list[PublishConfirmation]:
        """
        Wait for every publish sent with *batch*.

        Returns one confirmation per message, in publish order. Publishes
        made without this handle, or with another one, are never included.
        """
        ...

    async def consume(
        self,
        channel: Any,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch_count: int = 1,
    ) -> str:
        """Subscribe *callback* to *queue* with manual acks; return the consumer tag."""
        ...

    async def cancel(self, channel: Any, consumer_tag: str) -> None: ...

    async def ack(self, channel: Any, delivery_tag: int) -> None: ...

    def is_connected(self, connection: Any) -> bool: ...

    def is_channel_open(self, channel: Any) -> bool: ...

    def is_consuming(self, channel: Any) -> bool: ...

    async def close_channel(self, channel: Any) -> None: ...

    async def close_connection(self, connection: Any) -> None: ...
