"""Declarative queue/exchange/binding topology."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import BrokerConnectionError, InvalidTopologyError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .connection import BrokerConnection

logger = logging.getLogger("reliable_broker.topology")

MAX_NAME_BYTES = 255
RESERVED_PREFIX = "amq."


class ExchangeKind(str, Enum):
    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"
    HEADERS = "headers"


class QueueSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class ExchangeSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: ExchangeKind = ExchangeKind.FANOUT
    durable: bool = True
    auto_delete: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class BindingSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    exchange: str
    queue: str
    routing_key: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


QueueLike = Union[str, QueueSpec]
ExchangeLike = Union[str, ExchangeSpec]


def _validate_name(kind: str, name: Any, *, allow_reserved: bool = False) -> None:
    if not isinstance(name, str) or not name:
        raise InvalidTopologyError(f"{kind} name must be a non-empty string, got {name!r}")
    if len(name.encode("utf-8")) > MAX_NAME_BYTES:
        raise InvalidTopologyError(f"{kind} name {name[:32]!r}... exceeds {MAX_NAME_BYTES} bytes")
    if not allow_reserved and name.startswith(RESERVED_PREFIX):
        raise InvalidTopologyError(f"{kind} name {name!r} uses the reserved 'amq.' prefix")


class TopologyManager:
    """Declares queues, exchanges and bindings with declare-if-absent semantics.

    Declarations are remembered for the current connection epoch: repeating an
    identical declaration is a no-op, repeating one with different parameters
    is a caller error. A reconnect starts a fresh epoch and clears the memory.
    """

    def __init__(self, connection: BrokerConnection) -> None:
        self._connection = connection
        self._epoch = -1
        self._queues: dict[str, QueueSpec] = {}
        self._present: set[str] = set()
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._bindings: set[tuple[str, str, str, tuple[tuple[str, str], ...]]] = set()

    def _sync_epoch(self) -> None:
        if self._epoch != self._connection.epoch:
            self._epoch = self._connection.epoch
            self._queues.clear()
            self._present.clear()
            self._exchanges.clear()
            self._bindings.clear()

    async def declare_queue(
        self,
        name: str,
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> QueueSpec:
        _validate_name("Queue", name)
        spec = QueueSpec(
            name=name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments or {},
        )
        return await self.apply_queue(spec)

    async def apply_queue(self, spec: QueueSpec) -> QueueSpec:
        _validate_name("Queue", spec.name)
        self._sync_epoch()
        known = self._queues.get(spec.name)
        if known is not None:
            if known != spec:
                raise InvalidTopologyError(
                    f"Queue {spec.name!r} already declared with different parameters"
                )
            return known

        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.declare_queue(
                channel,
                spec.name,
                durable=spec.durable,
                exclusive=spec.exclusive,
                auto_delete=spec.auto_delete,
                arguments=dict(spec.arguments) or None,
            )
        except (BrokerConnectionError, InvalidTopologyError) as e:
            logger.error("declare_queue %r failed: %s", spec.name, e)
            raise
        self._queues[spec.name] = spec
        logger.debug("Declared queue %r", spec.name)
        return spec

    async def declare_exchange(
        self,
        name: str,
        kind: ExchangeKind | str = ExchangeKind.FANOUT,
        *,
        durable: bool = True,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> ExchangeSpec:
        _validate_name("Exchange", name)
        try:
            kind = ExchangeKind(kind)
        except ValueError as e:
            raise InvalidTopologyError(f"Unknown exchange type {kind!r}") from e
        spec = ExchangeSpec(
            name=name,
            kind=kind,
            durable=durable,
            auto_delete=auto_delete,
            arguments=arguments or {},
        )
        return await self.apply_exchange(spec)

    async def apply_exchange(self, spec: ExchangeSpec) -> ExchangeSpec:
        _validate_name("Exchange", spec.name)
        self._sync_epoch()
        known = self._exchanges.get(spec.name)
        if known is not None:
            if known != spec:
                raise InvalidTopologyError(
                    f"Exchange {spec.name!r} already declared with different parameters"
                )
            return known

        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.declare_exchange(
                channel,
                spec.name,
                spec.kind,
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                arguments=dict(spec.arguments) or None,
            )
        except (BrokerConnectionError, InvalidTopologyError) as e:
            logger.error("declare_exchange %r failed: %s", spec.name, e)
            raise
        self._exchanges[spec.name] = spec
        logger.debug("Declared %s exchange %r", spec.kind.value, spec.name)
        return spec

    async def ensure_queue(self, name: str) -> None:
        """Make sure *name* exists without imposing parameters on it.

        A queue declared through this manager or already present on the broker
        (checked passively) is left as it is; only a missing queue is declared,
        with default parameters.
        """
        _validate_name("Queue", name)
        self._sync_epoch()
        if name in self._queues or name in self._present:
            return
        await self._connection.ensure_channel()
        state = self._connection.state
        if state is None:
            raise BrokerConnectionError("Not connected to the broker; call connect() first")
        try:
            exists = await self._connection.client.queue_exists(state.connection, name)
        except BrokerConnectionError as e:
            logger.error("Existence check for queue %r failed: %s", name, e)
            raise
        if exists:
            self._present.add(name)
            return
        await self.declare_queue(name)

    async def ensure_exchange(
        self, name: str, kind: ExchangeKind | str | None = None
    ) -> ExchangeSpec:
        """Like ``ensure_queue``; *kind* only matters when the exchange is new."""
        if name.startswith(RESERVED_PREFIX):
            # broker-predeclared, never redeclared
            return ExchangeSpec(name=name, kind=kind or ExchangeKind.TOPIC)
        self._sync_epoch()
        known = self._exchanges.get(name)
        if known is not None and (kind is None or known.kind == kind):
            return known
        return await self.declare_exchange(name, kind or ExchangeKind.FANOUT)

    async def bind_queue(
        self,
        exchange: str,
        queue: str,
        routing_key: str = "",
        arguments: dict[str, Any] | None = None,
    ) -> BindingSpec:
        # binding to amq.* exchanges is allowed, declaring them is not
        _validate_name("Exchange", exchange, allow_reserved=True)
        _validate_name("Queue", queue)
        if not isinstance(routing_key, str):
            raise InvalidTopologyError(f"Routing key must be a string, got {routing_key!r}")
        binding = BindingSpec(
            exchange=exchange,
            queue=queue,
            routing_key=routing_key,
            arguments=arguments or {},
        )
        return await self.apply_binding(binding)

    async def apply_binding(self, binding: BindingSpec) -> BindingSpec:
        self._sync_epoch()
        key = (
            binding.exchange,
            binding.queue,
            binding.routing_key,
            tuple(sorted((k, repr(v)) for k, v in binding.arguments.items())),
        )
        if key in self._bindings:
            return binding

        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.bind_queue(
                channel,
                binding.exchange,
                binding.queue,
                binding.routing_key,
                dict(binding.arguments) or None,
            )
        except (BrokerConnectionError, InvalidTopologyError) as e:
            logger.error(
                "bind_queue %r -> %r (%r) failed: %s",
                binding.exchange,
                binding.queue,
                binding.routing_key,
                e,
            )
            raise
        self._bindings.add(key)
        return binding

    async def setup_topology(
        self,
        queues: Sequence[QueueLike] = (),
        exchanges: Sequence[ExchangeLike] = (),
        bindings: Mapping[str, Sequence[str]] | Sequence[BindingSpec] | None = None,
    ) -> None:
        """Apply a whole declarative set: queues, then exchanges, then bindings.

        ``bindings`` is either ``{exchange: [queue, ...]}`` (empty routing key)
        or a sequence of ``BindingSpec``.
        """
        for queue in queues:
            if isinstance(queue, QueueSpec):
                await self.apply_queue(queue)
            else:
                await self.declare_queue(queue)
        for exchange in exchanges:
            if isinstance(exchange, ExchangeSpec):
                await self.apply_exchange(exchange)
            else:
                await self.declare_exchange(exchange)
        for binding in _iter_bindings(bindings):
            await self.bind_queue(
                binding.exchange,
                binding.queue,
                binding.routing_key,
                dict(binding.arguments),
            )


def _iter_bindings(
    bindings: Mapping[str, Sequence[str]] | Sequence[BindingSpec] | None,
) -> list[BindingSpec]:
    if not bindings:
        return []
    if isinstance(bindings, Mapping):
        result: list[BindingSpec] = []
        for exchange, queues in bindings.items():
            if isinstance(queues, str):
                queues = [queues]
            result.extend(BindingSpec(exchange=exchange, queue=q) for q in queues)
        return result
    specs = list(bindings)
    for spec in specs:
        if not isinstance(spec, BindingSpec):
            raise InvalidTopologyError(f"Expected BindingSpec, got {spec!r}")
    return specs
