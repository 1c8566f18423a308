"""AioPikaClient — BrokerClient backed by aio-pika."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import (
    AMQPConnectionError,
    ChannelClosed,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
    PublishError,
)
from pamqp.commands import Basic

from ..client import PublishConfirmation
from ..exceptions import (
    BrokerConnectionError,
    InvalidTopologyError,
    PublishConfirmError,
    PublishFailure,
)
from ..message import DeliveryMode, Message

if TYPE_CHECKING:
    from collections.abc import Iterator

    from aio_pika.abc import (
        AbstractChannel,
        AbstractConnection,
        AbstractIncomingMessage,
        AbstractQueue,
    )

    from ..client import DeliveryCallback
    from ..settings import BrokerSettings
    from ..topology import ExchangeKind

logger = logging.getLogger("reliable_broker.rabbitmq")


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map aio-pika/aiormq failures onto the reliability layer's taxonomy."""
    try:
        yield
    except (ChannelPreconditionFailed, ChannelNotFoundEntity) as e:
        raise InvalidTopologyError(f"{operation}: {e}") from e
    except (
        AMQPConnectionError,
        ChannelClosed,
        ConnectionError,
        OSError,
        asyncio.TimeoutError,
    ) as e:
        raise BrokerConnectionError(f"{operation}: {e}") from e


def _outgoing(message: Message) -> aio_pika.Message:
    return aio_pika.Message(
        body=message.body,
        headers=dict(message.headers),
        content_type=message.content_type,
        delivery_mode=aio_pika.DeliveryMode(int(message.delivery_mode)),
        message_id=message.message_id,
    )


def _incoming(raw: AbstractIncomingMessage) -> Message:
    return Message(
        body=raw.body,
        headers=dict(raw.headers or {}),
        content_type=raw.content_type,
        delivery_mode=DeliveryMode(int(raw.delivery_mode or DeliveryMode.NOT_PERSISTENT)),
        message_id=raw.message_id,
        delivery_tag=raw.delivery_tag,
        redelivered=bool(raw.redelivered),
        exchange=raw.exchange or "",
        routing_key=raw.routing_key or "",
    )


@dataclass
class _ConfirmBatch:
    pending: list[tuple[Message, asyncio.Future[Any]]] = field(default_factory=list)


def _is_ack(result: Any) -> bool:
    # without publisher confirms aiormq returns None
    return result is None or isinstance(result, Basic.Ack)


class AioPikaClient:
    """BrokerClient over aio-pika.

    Channels are opened with publisher confirms and ``on_return_raises`` so an
    unroutable or nacked message is never reported as delivered. Queue targets
    go through the default exchange with ``mandatory=True``.
    """

    name = "RabbitMQ"

    def __init__(self, **connect_kwargs: Any) -> None:
        """Extra kwargs are passed to ``aio_pika.connect``."""
        self._connect_kwargs = connect_kwargs
        self._consumers: dict[AbstractChannel, dict[str, AbstractQueue]] = {}
        self._inflight: dict[tuple[AbstractChannel, int], AbstractIncomingMessage] = {}

    async def dial(self, settings: BrokerSettings) -> AbstractConnection:
        kwargs = dict(self._connect_kwargs)
        if settings.connection_timeout is not None:
            kwargs.setdefault("timeout", settings.connection_timeout)
        with _translate_errors("connect"):
            return await aio_pika.connect(settings.amqp_url(), **kwargs)

    async def open_channel(self, connection: AbstractConnection) -> AbstractChannel:
        with _translate_errors("open channel"):
            return await connection.channel(publisher_confirms=True, on_return_raises=True)

    def is_connected(self, connection: AbstractConnection) -> bool:
        return not connection.is_closed

    def is_channel_open(self, channel: AbstractChannel) -> bool:
        return not channel.is_closed

    def is_consuming(self, channel: AbstractChannel) -> bool:
        return not channel.is_closed and bool(self._consumers.get(channel))

    async def close_channel(self, channel: AbstractChannel) -> None:
        self._forget(channel)
        if not channel.is_closed:
            await channel.close()

    async def close_connection(self, connection: AbstractConnection) -> None:
        if not connection.is_closed:
            await connection.close()

    def _forget(self, channel: AbstractChannel) -> None:
        self._consumers.pop(channel, None)
        for key in [k for k in self._inflight if k[0] is channel]:
            del self._inflight[key]

    async def declare_queue(
        self,
        channel: AbstractChannel,
        name: str,
        *,
        durable: bool,
        exclusive: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        with _translate_errors(f"declare queue {name!r}"):
            await channel.declare_queue(
                name,
                durable=durable,
                exclusive=exclusive,
                auto_delete=auto_delete,
                arguments=arguments,
            )

    async def declare_exchange(
        self,
        channel: AbstractChannel,
        name: str,
        kind: ExchangeKind,
        *,
        durable: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        with _translate_errors(f"declare exchange {name!r}"):
            await channel.declare_exchange(
                name,
                aio_pika.ExchangeType(kind.value),
                durable=durable,
                auto_delete=auto_delete,
                arguments=arguments,
            )

    async def bind_queue(
        self,
        channel: AbstractChannel,
        exchange: str,
        queue: str,
        routing_key: str,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        with _translate_errors(f"bind {exchange!r} -> {queue!r}"):
            target = await channel.get_queue(queue, ensure=False)
            await target.bind(exchange, routing_key=routing_key, arguments=arguments)

    async def queue_exists(self, connection: AbstractConnection, name: str) -> bool:
        # a passive declare of a missing queue closes its channel, so use a scratch one
        with _translate_errors(f"check queue {name!r}"):
            scratch = await connection.channel(publisher_confirms=False)
            try:
                await scratch.get_queue(name, ensure=True)
            except ChannelNotFoundEntity:
                return False
            finally:
                if not scratch.is_closed:
                    await scratch.close()
        return True

    async def publish(
        self,
        channel: AbstractChannel,
        message: Message,
        *,
        exchange: str,
        routing_key: str,
        batch: _ConfirmBatch | None = None,
    ) -> None:
        with _translate_errors(f"publish to {exchange or routing_key!r}"):
            if exchange:
                target = await channel.get_exchange(exchange, ensure=False)
            else:
                target = channel.default_exchange
            sending = target.publish(_outgoing(message), routing_key=routing_key, mandatory=True)

            if batch is not None:
                batch.pending.append((message, asyncio.ensure_future(sending)))
                return

            try:
                result = await sending
            except (DeliveryError, PublishError) as e:
                raise PublishConfirmError(
                    [PublishFailure(index=0, message=message, reason=str(e))], total=1
                ) from e
            if not _is_ack(result):
                raise PublishConfirmError(
                    [PublishFailure(index=0, message=message, reason="nack")], total=1
                )

    async def enable_confirm(self, channel: AbstractChannel) -> _ConfirmBatch:
        # confirms are negotiated when the channel opens; a batch only groups futures
        return _ConfirmBatch()

    async def wait_for_confirms(
        self, channel: AbstractChannel, batch: _ConfirmBatch
    ) -> list[PublishConfirmation]:
        pending, batch.pending = batch.pending, []
        results = await asyncio.gather(*(f for _, f in pending), return_exceptions=True)
        confirmations: list[PublishConfirmation] = []
        for (message, _), result in zip(pending, results):
            if isinstance(result, (DeliveryError, PublishError)):
                confirmations.append(PublishConfirmation(message, False, str(result)))
            elif isinstance(result, BaseException):
                with _translate_errors("wait for confirms"):
                    raise result
            elif _is_ack(result):
                confirmations.append(PublishConfirmation(message, True))
            else:
                confirmations.append(PublishConfirmation(message, False, "nack"))
        return confirmations

    async def consume(
        self,
        channel: AbstractChannel,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch_count: int = 1,
    ) -> str:
        async def on_message(raw: AbstractIncomingMessage) -> None:
            if raw.delivery_tag is None:
                logger.warning("Dropping delivery without a delivery tag")
                return
            self._inflight[(channel, raw.delivery_tag)] = raw
            await callback(_incoming(raw))

        with _translate_errors(f"consume {queue!r}"):
            await channel.set_qos(prefetch_count=prefetch_count)
            source = await channel.get_queue(queue, ensure=False)
            tag = await source.consume(on_message, no_ack=False)
        self._consumers.setdefault(channel, {})[tag] = source
        return tag

    async def cancel(self, channel: AbstractChannel, consumer_tag: str) -> None:
        source = self._consumers.get(channel, {}).pop(consumer_tag, None)
        if source is None:
            return
        with _translate_errors(f"cancel consumer {consumer_tag}"):
            await source.cancel(consumer_tag)

    async def ack(self, channel: AbstractChannel, delivery_tag: int) -> None:
        raw = self._inflight.pop((channel, delivery_tag), None)
        with _translate_errors(f"ack delivery {delivery_tag}"):
            if raw is not None:
                await raw.ack()
            else:
                underlay = await channel.get_underlay_channel()
                await underlay.basic_ack(delivery_tag)
