"""InMemoryBrokerClient — an in-process AMQP model for tests and local runs."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..client import PublishConfirmation
from ..exceptions import (
    BrokerConnectionError,
    InvalidTopologyError,
    PublishConfirmError,
    PublishFailure,
)
from ..topology import ExchangeKind

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..client import DeliveryCallback
    from ..message import Message
    from ..settings import BrokerSettings

logger = logging.getLogger("reliable_broker.memory")


@dataclass
class _Queue:
    name: str
    durable: bool
    exclusive: bool
    auto_delete: bool
    arguments: dict[str, Any]
    messages: deque[Message] = field(default_factory=deque)


@dataclass
class _Exchange:
    name: str
    kind: ExchangeKind
    durable: bool
    auto_delete: bool
    arguments: dict[str, Any]
    bindings: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)


@dataclass
class _Connection:
    id: int
    open: bool = True


@dataclass
class _Consumer:
    tag: str
    queue: str
    callback: DeliveryCallback
    prefetch_count: int
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    active: bool = True


@dataclass
class _Channel:
    id: int
    connection: _Connection
    open: bool = True
    consumers: dict[str, _Consumer] = field(default_factory=dict)
    unacked: dict[int, tuple[str | None, str, Message]] = field(default_factory=dict)


@dataclass
class _ConfirmBatch:
    channel: _Channel
    pending: list[PublishConfirmation] = field(default_factory=list)


def _topic_matches(pattern: str, routing_key: str) -> bool:
    return _match_words(pattern.split("."), routing_key.split(".") if routing_key else [])


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head in ("*", words[0]):
        return _match_words(rest, words[1:])
    return False


def _headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    mode = arguments.get("x-match", "all")
    wanted = {k: v for k, v in arguments.items() if not k.startswith("x-")}
    if not wanted:
        return True
    hits = [k in headers and headers[k] == v for k, v in wanted.items()]
    return any(hits) if mode == "any" else all(hits)


class InMemoryBrokerClient:
    """BrokerClient that keeps queues, exchanges and deliveries in memory.

    Follows AMQP semantics closely enough to exercise the reliability layer:
    declare-if-absent with precondition checks, the four exchange types,
    manual acks with per-consumer prefetch, and confirm batches. Publishes
    outside a batch raise on a nack or an unroutable message, like a
    confirming channel with mandatory publishes. Failures can be
    scripted with ``fail_next_dials``, ``nack_when``, ``drop_connections``
    and ``close_channel_from_broker``.
    """

    name = "memory"

    def __init__(self) -> None:
        self._queues: dict[str, _Queue] = {}
        self._exchanges: dict[str, _Exchange] = {}
        self._ids = itertools.count(1)
        self._tags = itertools.count(1)
        self._connections: list[_Connection] = []
        self._channels: list[_Channel] = []
        self._dial_failures: list[BaseException] = []

        self.nack_when: Callable[[Message], bool] | None = None
        self.dial_attempts = 0
        self.confirm_selects = 0
        self.confirm_waits = 0
        self.acks: list[int] = []
        self.unroutable: list[Message] = []

    # -- scripting / inspection ----------------------------------------------

    def fail_next_dials(self, count: int, error: BaseException | None = None) -> None:
        for _ in range(count):
            self._dial_failures.append(error or ConnectionRefusedError("Connection refused"))

    def drop_connections(self) -> None:
        """Simulate the broker going away."""
        for conn in self._connections:
            conn.open = False
        for channel in self._channels:
            self._close(channel)

    def close_channel_from_broker(self, channel: _Channel) -> None:
        self._close(channel)

    def messages(self, queue: str) -> list[Message]:
        if queue not in self._queues:
            return []
        return list(self._queues[queue].messages)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def queue_arguments(self, name: str) -> dict[str, Any]:
        return dict(self._queues[name].arguments)

    def has_exchange(self, name: str) -> bool:
        return name in self._exchanges

    def bindings(self, exchange: str) -> list[tuple[str, str, dict[str, Any]]]:
        return list(self._exchanges[exchange].bindings)

    async def basic_get(self, channel: _Channel, queue: str) -> Message | None:
        """Pull one message with manual ack, like ``basic.get``."""
        self._check(channel)
        q = self._require_queue(queue)
        if not q.messages:
            return None
        return self._deliver(channel, None, queue, q.messages.popleft())

    # -- connection lifecycle ------------------------------------------------

    async def dial(self, settings: BrokerSettings) -> _Connection:
        self.dial_attempts += 1
        if self._dial_failures:
            raise self._dial_failures.pop(0)
        conn = _Connection(id=next(self._ids))
        self._connections.append(conn)
        return conn

    async def open_channel(self, connection: _Connection) -> _Channel:
        if not connection.open:
            raise BrokerConnectionError("Connection is closed")
        channel = _Channel(id=next(self._ids), connection=connection)
        self._channels.append(channel)
        return channel

    def is_connected(self, connection: _Connection) -> bool:
        return connection.open

    def is_channel_open(self, channel: _Channel) -> bool:
        return channel.open and channel.connection.open

    def is_consuming(self, channel: _Channel) -> bool:
        return self.is_channel_open(channel) and bool(channel.consumers)

    async def close_channel(self, channel: _Channel) -> None:
        self._close(channel)

    async def close_connection(self, connection: _Connection) -> None:
        connection.open = False
        for channel in self._channels:
            if channel.connection is connection:
                self._close(channel)

    def _close(self, channel: _Channel) -> None:
        channel.open = False
        for consumer in channel.consumers.values():
            self._stop_consumer(consumer)
        channel.consumers.clear()
        # unacked deliveries go back to their queues, as on a real broker
        for _, name, message in channel.unacked.values():
            queue = self._queues.get(name)
            if queue is not None:
                queue.messages.appendleft(
                    message.model_copy(update={"delivery_tag": None, "redelivered": True})
                )
        channel.unacked.clear()
        self._channels = [c for c in self._channels if c is not channel]

    def _check(self, channel: _Channel) -> None:
        if not self.is_channel_open(channel):
            raise BrokerConnectionError("Channel is closed")

    # -- topology ------------------------------------------------------------

    async def declare_queue(
        self,
        channel: _Channel,
        name: str,
        *,
        durable: bool,
        exclusive: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._check(channel)
        wanted = (durable, exclusive, auto_delete, dict(arguments or {}))
        existing = self._queues.get(name)
        if existing is not None:
            current = (
                existing.durable,
                existing.exclusive,
                existing.auto_delete,
                existing.arguments,
            )
            if current != wanted:
                raise InvalidTopologyError(
                    f"PRECONDITION_FAILED - inequivalent arguments for queue {name!r}"
                )
            return
        self._queues[name] = _Queue(name, *wanted)

    async def declare_exchange(
        self,
        channel: _Channel,
        name: str,
        kind: ExchangeKind,
        *,
        durable: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._check(channel)
        kind = ExchangeKind(kind)
        existing = self._exchanges.get(name)
        if existing is not None:
            current = (existing.kind, existing.durable, existing.auto_delete, existing.arguments)
            if current != (kind, durable, auto_delete, dict(arguments or {})):
                raise InvalidTopologyError(
                    f"PRECONDITION_FAILED - inequivalent arguments for exchange {name!r}"
                )
            return
        self._exchanges[name] = _Exchange(name, kind, durable, auto_delete, dict(arguments or {}))

    async def bind_queue(
        self,
        channel: _Channel,
        exchange: str,
        queue: str,
        routing_key: str,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._check(channel)
        target = self._exchanges.get(exchange)
        if target is None:
            raise InvalidTopologyError(f"NOT_FOUND - no exchange {exchange!r}")
        self._require_queue(queue)
        binding = (queue, routing_key, dict(arguments or {}))
        if binding not in target.bindings:
            target.bindings.append(binding)

    async def queue_exists(self, connection: _Connection, name: str) -> bool:
        if not connection.open:
            raise BrokerConnectionError("Connection is closed")
        return name in self._queues

    def _require_queue(self, name: str) -> _Queue:
        queue = self._queues.get(name)
        if queue is None:
            raise InvalidTopologyError(f"NOT_FOUND - no queue {name!r}")
        return queue

    # -- publishing ----------------------------------------------------------

    def _route(self, exchange: str, routing_key: str, message: Message) -> list[str]:
        if not exchange:
            return [routing_key] if routing_key in self._queues else []
        target = self._exchanges.get(exchange)
        if target is None:
            raise BrokerConnectionError(f"NOT_FOUND - no exchange {exchange!r}")
        queues: list[str] = []
        for queue, key, arguments in target.bindings:
            if target.kind is ExchangeKind.FANOUT:
                matched = True
            elif target.kind is ExchangeKind.DIRECT:
                matched = key == routing_key
            elif target.kind is ExchangeKind.TOPIC:
                matched = _topic_matches(key, routing_key)
            else:
                matched = _headers_match(arguments, message.headers)
            if matched and queue not in queues:
                queues.append(queue)
        return queues

    async def publish(
        self,
        channel: _Channel,
        message: Message,
        *,
        exchange: str,
        routing_key: str,
        batch: _ConfirmBatch | None = None,
    ) -> None:
        self._check(channel)
        targets = self._route(exchange, routing_key, message)
        for name in targets:
            self._queues[name].messages.append(
                message.model_copy(
                    update={"exchange": exchange, "routing_key": routing_key, "delivery_tag": None}
                )
            )
            self._notify(name)
        if not targets:
            logger.debug("Unroutable message to %r/%r", exchange, routing_key)
            self.unroutable.append(message)
            confirmation = PublishConfirmation(message, False, "unroutable")
        elif self.nack_when is not None and self.nack_when(message):
            confirmation = PublishConfirmation(message, False, "nack")
        else:
            confirmation = PublishConfirmation(message, True)

        if batch is not None:
            batch.pending.append(confirmation)
        elif not confirmation.acked:
            raise PublishConfirmError(
                [PublishFailure(index=0, message=message, reason=confirmation.reason or "nack")],
                total=1,
            )

    async def enable_confirm(self, channel: _Channel) -> _ConfirmBatch:
        self._check(channel)
        self.confirm_selects += 1
        return _ConfirmBatch(channel=channel)

    async def wait_for_confirms(
        self, channel: _Channel, batch: _ConfirmBatch
    ) -> list[PublishConfirmation]:
        self._check(channel)
        self.confirm_waits += 1
        confirmations, batch.pending = batch.pending, []
        return confirmations

    # -- consuming -----------------------------------------------------------

    async def consume(
        self,
        channel: _Channel,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch_count: int = 1,
    ) -> str:
        self._check(channel)
        self._require_queue(queue)
        consumer = _Consumer(
            tag=f"ctag-{next(self._ids)}",
            queue=queue,
            callback=callback,
            prefetch_count=prefetch_count,
        )
        channel.consumers[consumer.tag] = consumer
        consumer.task = asyncio.create_task(self._pump(channel, consumer))
        return consumer.tag

    async def cancel(self, channel: _Channel, consumer_tag: str) -> None:
        consumer = channel.consumers.pop(consumer_tag, None)
        if consumer is not None:
            self._stop_consumer(consumer)

    def _stop_consumer(self, consumer: _Consumer) -> None:
        consumer.active = False
        consumer.wakeup.set()
        if consumer.task is not None and consumer.task is not asyncio.current_task():
            consumer.task.cancel()

    async def ack(self, channel: _Channel, delivery_tag: int) -> None:
        self._check(channel)
        entry = channel.unacked.pop(delivery_tag, None)
        if entry is None:
            self._close(channel)
            raise BrokerConnectionError(
                f"PRECONDITION_FAILED - unknown delivery tag {delivery_tag}"
            )
        self.acks.append(delivery_tag)
        ctag = entry[0]
        if ctag is not None and ctag in channel.consumers:
            channel.consumers[ctag].wakeup.set()

    def _deliver(
        self, channel: _Channel, ctag: str | None, queue: str, message: Message
    ) -> Message:
        tag = next(self._tags)
        delivered = message.model_copy(update={"delivery_tag": tag})
        channel.unacked[tag] = (ctag, queue, delivered)
        return delivered

    def _notify(self, queue: str) -> None:
        for channel in self._channels:
            for consumer in channel.consumers.values():
                if consumer.queue == queue:
                    consumer.wakeup.set()

    async def _pump(self, channel: _Channel, consumer: _Consumer) -> None:
        while consumer.active and channel.open:
            in_flight = sum(1 for ctag, _, _ in channel.unacked.values() if ctag == consumer.tag)
            queue = self._queues.get(consumer.queue)
            if queue is None or not queue.messages or in_flight >= consumer.prefetch_count:
                consumer.wakeup.clear()
                await consumer.wakeup.wait()
                continue
            delivered = self._deliver(channel, consumer.tag, queue.name, queue.messages.popleft())
            await consumer.callback(delivered)
