"""MessageBroker — composition root wiring one connection into every component."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .connection import BrokerConnection
from .consumer import Consumer
from .delivery import DeliveryTracker
from .exceptions import InvalidBrokerNameError
from .publisher import Publisher
from .settings import BrokerSettings
from .status import StatusReporter
from .topology import QueueSpec, TopologyManager

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence
    from types import TracebackType

    from .client import BrokerClient
    from .consumer import Handler
    from .message import Message
    from .publisher import BatchPublishResult
    from .status import BrokerStatus
    from .topology import BindingSpec, ExchangeKind, ExchangeLike, QueueLike

logger = logging.getLogger("reliable_broker.broker")


def _rabbitmq_client() -> BrokerClient:
    from .rabbitmq import AioPikaClient

    return AioPikaClient()


def _memory_client() -> BrokerClient:
    from .memory import InMemoryBrokerClient

    return InMemoryBrokerClient()


_CLIENT_FACTORIES: dict[str, Callable[[], BrokerClient]] = {
    "rabbitmq": _rabbitmq_client,
    "memory": _memory_client,
}


def register_client(name: str, factory: Callable[[], BrokerClient]) -> None:
    """Make another broker client selectable through ``BrokerSettings.broker``."""
    _CLIENT_FACTORIES[name.lower()] = factory


def create_client(name: str) -> BrokerClient:
    factory = _CLIENT_FACTORIES.get(name.lower())
    if factory is None:
        logger.error("No broker client registered as %r", name)
        raise InvalidBrokerNameError(name)
    return factory()


class MessageBroker:
    """Owns one ``BrokerConnection`` and the components built on top of it.

    Example::

        async with MessageBroker(BrokerSettings(host="rabbit")) as broker:
            await broker.publish_to_queue({"id": 1})
            await broker.consume(handle)
    """

    def __init__(
        self,
        settings: BrokerSettings | None = None,
        client: BrokerClient | None = None,
        *,
        on_connection_failure: Callable[[BaseException], Any] | None = None,
        concurrency: int = 1,
        handler_timeout: float | None = None,
    ) -> None:
        self.settings = settings or BrokerSettings()
        policy = self.settings.policy
        self.connection = BrokerConnection(
            client or create_client(self.settings.broker),
            self.settings,
            on_failure=on_connection_failure,
        )
        self.topology = TopologyManager(self.connection)
        self.tracker = DeliveryTracker(policy)
        self.publisher = Publisher(self.connection, self.topology, policy)
        self.consumer = Consumer(
            self.connection,
            self.tracker,
            self.topology,
            policy,
            prefetch_count=self.settings.prefetch_count,
            concurrency=concurrency,
            handler_timeout=handler_timeout,
        )
        self.status_reporter = StatusReporter(self.connection)

    async def connect(
        self,
        queues: Sequence[QueueLike] = (),
        exchanges: Sequence[ExchangeLike] = (),
        bindings: Mapping[str, Sequence[str]] | Sequence[BindingSpec] | None = None,
    ) -> None:
        """Connect, ensure the configured default queues, then apply the given topology.

        Default queues that already exist keep their parameters; one that is
        also listed in *queues* is declared only with the caller's parameters.
        """
        await self.connection.connect()
        given = {q.name if isinstance(q, QueueSpec) else q for q in queues}
        defaults = [
            self.settings.consume_queue,
            self.settings.publish_queue,
            self.settings.reject_queue,
            *self.settings.default_queues,
        ]
        for name in dict.fromkeys(defaults):
            if name not in given:
                await self.topology.ensure_queue(name)
        await self.topology.setup_topology(
            queues=queues,
            exchanges=exchanges,
            bindings=bindings,
        )

    async def consume(
        self,
        handler: Handler,
        queue: str | None = None,
        *,
        requeue_queue: str | None = None,
    ) -> None:
        await self.consumer.consume(handler, queue, requeue_queue=requeue_queue)

    async def stop_consuming(self) -> None:
        await self.consumer.stop()

    async def publish_to_queue(
        self,
        payload: Any,
        queue: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> Message:
        return await self.publisher.publish(payload, queue=queue, headers=headers)

    async def publish_to_exchange(
        self,
        payload: Any,
        exchange: str,
        headers: dict[str, Any] | None = None,
        routing_key: str = "",
        exchange_kind: ExchangeKind | str | None = None,
    ) -> Message:
        return await self.publisher.publish(
            payload,
            exchange=exchange,
            routing_key=routing_key,
            headers=headers,
            exchange_kind=exchange_kind,
        )

    async def publish_batch_to_queue(
        self,
        payloads: Iterable[Any],
        queue: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> BatchPublishResult:
        return await self.publisher.publish_batch(payloads, queue=queue, headers=headers)

    async def publish_batch_to_exchange(
        self,
        payloads: Iterable[Any],
        exchange: str,
        headers: dict[str, Any] | None = None,
        routing_key: str = "",
        exchange_kind: ExchangeKind | str | None = None,
    ) -> BatchPublishResult:
        return await self.publisher.publish_batch(
            payloads,
            exchange=exchange,
            routing_key=routing_key,
            headers=headers,
            exchange_kind=exchange_kind,
        )

    def get_status(self) -> BrokerStatus:
        return self.status_reporter.status()

    async def close(self) -> None:
        """Stop consuming, let in-flight deliveries settle, then disconnect."""
        await self.consumer.stop()
        await self.consumer.wait_stopped()
        await self.connection.close()

    async def __aenter__(self) -> MessageBroker:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
