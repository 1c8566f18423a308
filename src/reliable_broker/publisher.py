"""Publisher — single publish and confirmed batch publish."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import (
    BrokerConnectionError,
    PublishConfirmError,
    PublishFailure,
)
from .serialization import PayloadCodec

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .connection import BrokerConnection
    from .message import Message
    from .settings import DeliveryPolicy
    from .topology import ExchangeKind, TopologyManager

logger = logging.getLogger("reliable_broker.publisher")


@dataclass(frozen=True)
class BatchPublishResult:
    """Every message of the batch was confirmed by the broker."""

    exchange: str
    routing_key: str
    messages: list[Message] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class _Target:
    exchange: str
    routing_key: str

    @property
    def label(self) -> str:
        if self.exchange:
            return f"exchange {self.exchange!r} (routing key {self.routing_key!r})"
        return f"queue {self.routing_key!r}"


class Publisher:
    """Publishes to a queue (through the default exchange) or to an exchange.

    Targets other than the default publish queue are declared on the fly.
    Batches run in confirm mode: everything is sent back to back, then a
    single wait collects the broker verdicts before the call returns.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        topology: TopologyManager,
        policy: DeliveryPolicy,
        *,
        codec: PayloadCodec | None = None,
    ) -> None:
        self._connection = connection
        self._topology = topology
        self._policy = policy
        self._codec = codec or PayloadCodec()

    async def _resolve_target(
        self,
        queue: str | None,
        exchange: str | None,
        routing_key: str,
        exchange_kind: ExchangeKind | str | None,
    ) -> _Target:
        if queue is not None and exchange:
            raise ValueError("Pass either queue or exchange, not both")
        if exchange:
            await self._topology.ensure_exchange(exchange, exchange_kind)
            return _Target(exchange=exchange, routing_key=routing_key)
        queue = queue or self._policy.publish_queue
        if queue != self._policy.publish_queue:
            await self._topology.ensure_queue(queue)
        return _Target(exchange="", routing_key=queue)

    async def publish(
        self,
        payload: Any,
        *,
        queue: str | None = None,
        exchange: str | None = None,
        routing_key: str = "",
        headers: dict[str, Any] | None = None,
        exchange_kind: ExchangeKind | str | None = None,
    ) -> Message:
        """Publish one message and return what was sent.

        Args:
            payload: ``Message``, ``RawBytes``, ``StructuredValue``, bytes or
                any JSON-serialisable value.
            queue: Target queue; defaults to the policy's publish queue.
            exchange: Target exchange instead of a queue.
            routing_key: Routing key when publishing to an exchange.
            headers: Application headers; replace a ``Message``'s own headers.
            exchange_kind: Type used if *exchange* has not been declared yet
                (fanout when omitted).

        Raises:
            PublishConfirmError: the broker nacked or returned the message.
            BrokerConnectionError: the connection is gone.
        """
        message = self._codec.to_message(payload, headers)
        target = await self._resolve_target(queue, exchange, routing_key, exchange_kind)
        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.publish(
                channel,
                message,
                exchange=target.exchange,
                routing_key=target.routing_key,
            )
        except PublishConfirmError as e:
            logger.error("Publish to %s not confirmed: %s", target.label, e)
            raise
        except (BrokerConnectionError, ConnectionError, OSError) as e:
            logger.error("Publish to %s failed: %s", target.label, e)
            if isinstance(e, BrokerConnectionError):
                raise
            raise BrokerConnectionError(f"Publish to {target.label} failed: {e}") from e
        logger.debug("Published %d byte(s) to %s", len(message.body), target.label)
        return message

    async def publish_batch(
        self,
        payloads: Iterable[Any],
        *,
        queue: str | None = None,
        exchange: str | None = None,
        routing_key: str = "",
        headers: dict[str, Any] | None = None,
        exchange_kind: ExchangeKind | str | None = None,
    ) -> BatchPublishResult:
        """Publish a batch in confirm mode.

        Raises:
            PublishConfirmError: one or more entries were nacked, returned or
                failed to send; ``failures`` identifies them by index.
            BrokerConnectionError: the connection is gone.
        """
        messages = [self._codec.to_message(p, headers) for p in payloads]
        target = await self._resolve_target(queue, exchange, routing_key, exchange_kind)
        if not messages:
            return BatchPublishResult(exchange=target.exchange, routing_key=target.routing_key)

        client = self._connection.client
        channel = await self._connection.ensure_channel()
        try:
            batch = await client.enable_confirm(channel)
            for message in messages:
                await client.publish(
                    channel,
                    message,
                    exchange=target.exchange,
                    routing_key=target.routing_key,
                    batch=batch,
                )
            confirmations = await client.wait_for_confirms(channel, batch)
        except (BrokerConnectionError, ConnectionError, OSError) as e:
            logger.error(
                "Batch publish of %d message(s) to %s failed: %s",
                len(messages),
                target.label,
                e,
            )
            if isinstance(e, BrokerConnectionError):
                raise
            raise BrokerConnectionError(f"Batch publish to {target.label} failed: {e}") from e

        failures = [
            PublishFailure(index=i, message=messages[i], reason=c.reason or "nack")
            for i, c in enumerate(confirmations)
            if not c.acked
        ]
        if len(confirmations) < len(messages):
            failures.extend(
                PublishFailure(index=i, message=messages[i], reason="no confirmation")
                for i in range(len(confirmations), len(messages))
            )
        if failures:
            error = PublishConfirmError(failures, total=len(messages))
            logger.error("Batch publish to %s not confirmed: %s", target.label, error)
            raise error

        logger.debug("Batch of %d message(s) confirmed by %s", len(messages), target.label)
        return BatchPublishResult(
            exchange=target.exchange,
            routing_key=target.routing_key,
            messages=messages,
        )
