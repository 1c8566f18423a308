"""Tests for Consumer: per-delivery settlement and the consume loop."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from reliable_broker.connection import BrokerConnection
from reliable_broker.consumer import Consumer, DeliveryOutcome
from reliable_broker.delivery import DeliveryTracker
from reliable_broker.exceptions import BrokerConnectionError, HandlerError, PublishConfirmError
from reliable_broker.memory import InMemoryBrokerClient
from reliable_broker.message import ATTEMPTS_HEADER, Message
from reliable_broker.settings import DeliveryPolicy
from reliable_broker.topology import TopologyManager

WaitUntil = Callable[..., Awaitable[None]]


async def _deliver(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    body: bytes = b"work",
    queue: str = "ingnotification",
    **headers: Any,
) -> Message:
    """Put a message on *queue* and pull it back as a delivery with a tag."""
    channel = await connection.ensure_channel()
    await client.publish(
        channel, Message(body=body, headers=headers), exchange="", routing_key=queue
    )
    delivered = await client.basic_get(channel, queue)
    assert delivered is not None
    return delivered


# -- process() ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_success_acks_once(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    message = await _deliver(connection, client)

    outcome = await consumer.process(message, lambda m: True)

    assert outcome is DeliveryOutcome.ACKNOWLEDGED
    assert client.acks == [message.delivery_tag]
    assert client.messages("ingnotification") == []


@pytest.mark.asyncio
async def test_async_handler_success(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    handler = AsyncMock(return_value=True)
    message = await _deliver(connection, client)

    assert await consumer.process(message, handler) is DeliveryOutcome.ACKNOWLEDGED
    handler.assert_awaited_once_with(message)


@pytest.mark.parametrize("result", [False, None, 0])
@pytest.mark.asyncio
async def test_falsy_result_requeues_with_bumped_counter(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    result: Any,
) -> None:
    message = await _deliver(connection, client, **{ATTEMPTS_HEADER: 3, "tenant": "acme"})

    outcome = await consumer.process(message, lambda m: result)

    assert outcome is DeliveryOutcome.RETRIED
    [retry] = client.messages("ingnotification")
    assert retry.body == b"work"
    assert retry.headers == {ATTEMPTS_HEADER: 4, "tenant": "acme"}
    assert client.acks == [message.delivery_tag]


@pytest.mark.asyncio
async def test_handler_exception_is_contained_and_requeued(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def explode(message: Message) -> bool:
        raise KeyError("missing field")

    message = await _deliver(connection, client)

    outcome = await consumer.process(message, explode)

    assert outcome is DeliveryOutcome.RETRIED
    assert client.messages("ingnotification")[0].headers[ATTEMPTS_HEADER] == 1
    assert client.acks == [message.delivery_tag]
    assert "KeyError" in caplog.text


@pytest.mark.asyncio
async def test_explicit_handler_error_is_requeued(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    async def reject(message: Message) -> bool:
        raise HandlerError("downstream unavailable", message)

    message = await _deliver(connection, client)

    assert await consumer.process(message, reject) is DeliveryOutcome.RETRIED


@pytest.mark.asyncio
async def test_requeue_to_another_queue(
    consumer: Consumer,
    connection: BrokerConnection,
    topology: TopologyManager,
    client: InMemoryBrokerClient,
) -> None:
    await topology.declare_queue("retry-later")
    message = await _deliver(connection, client)

    await consumer.process(message, lambda m: False, requeue_queue="retry-later")

    assert client.messages("ingnotification") == []
    assert client.messages("retry-later")[0].headers[ATTEMPTS_HEADER] == 1


@pytest.mark.asyncio
async def test_over_limit_is_quarantined_without_calling_handler(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    handler = AsyncMock(return_value=True)
    message = await _deliver(connection, client, body=b"poison", **{ATTEMPTS_HEADER: 31})

    outcome = await consumer.process(message, handler)

    assert outcome is DeliveryOutcome.QUARANTINED
    handler.assert_not_called()
    [rejected] = client.messages("notReach")
    assert rejected.body == b"poison"
    assert rejected.headers[ATTEMPTS_HEADER] == 31
    assert client.messages("ingnotification") == []
    assert client.acks == [message.delivery_tag]


@pytest.mark.asyncio
async def test_at_limit_is_still_processed(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    message = await _deliver(connection, client, **{ATTEMPTS_HEADER: 30})

    outcome = await consumer.process(message, lambda m: False)

    assert outcome is DeliveryOutcome.RETRIED
    assert client.messages("ingnotification")[0].headers[ATTEMPTS_HEADER] == 31


@pytest.mark.asyncio
async def test_empty_body_is_quarantined(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    handler = AsyncMock(return_value=True)
    message = await _deliver(connection, client, body=b"")

    assert await consumer.process(message, handler) is DeliveryOutcome.QUARANTINED
    handler.assert_not_called()
    assert [m.body for m in client.messages("notReach")] == [b""]


@pytest.mark.asyncio
async def test_quarantine_declares_missing_reject_queue(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    tracker: DeliveryTracker,
) -> None:
    policy = DeliveryPolicy(reject_queue="dead-letters")
    topology = TopologyManager(connection)
    await topology.declare_queue("ingnotification")
    consumer = Consumer(connection, tracker, topology, policy)
    message = await _deliver(connection, client, body=b"")

    await consumer.process(message, lambda m: True)

    assert len(client.messages("dead-letters")) == 1


@pytest.mark.asyncio
async def test_handler_timeout_counts_as_failure(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    tracker: DeliveryTracker,
    topology: TopologyManager,
    policy: DeliveryPolicy,
) -> None:
    consumer = Consumer(connection, tracker, topology, policy, handler_timeout=0.01)

    async def hang(message: Message) -> bool:
        await asyncio.sleep(10)
        return True

    message = await _deliver(connection, client)

    assert await consumer.process(message, hang) is DeliveryOutcome.RETRIED
    assert client.acks == [message.delivery_tag]


@pytest.mark.asyncio
async def test_undelivered_message_cannot_be_settled(consumer: Consumer) -> None:
    with pytest.raises(ValueError):
        await consumer.process(Message(body=b"x"), lambda m: True)


@pytest.mark.asyncio
async def test_connection_loss_during_settle_leaves_delivery_unacked(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    message = await _deliver(connection, client)

    def drop(m: Message) -> bool:
        client.drop_connections()
        return False

    with pytest.raises(BrokerConnectionError):
        await consumer.process(message, drop)

    assert client.acks == []
    # the broker put the unacked delivery back
    [redelivery] = client.messages("ingnotification")
    assert redelivery.redelivered


@pytest.mark.asyncio
async def test_unconfirmed_requeue_leaves_delivery_unacked(
    consumer: Consumer, connection: BrokerConnection, client: InMemoryBrokerClient
) -> None:
    message = await _deliver(connection, client)
    client.nack_when = lambda m: m.headers.get(ATTEMPTS_HEADER) == 1

    with pytest.raises(PublishConfirmError):
        await consumer.process(message, lambda m: False)

    assert client.acks == []


def test_invalid_concurrency(
    connection: BrokerConnection,
    tracker: DeliveryTracker,
    topology: TopologyManager,
    policy: DeliveryPolicy,
) -> None:
    with pytest.raises(ValueError):
        Consumer(connection, tracker, topology, policy, concurrency=0)


# -- consume() ---------------------------------------------------------------


async def _seed(connection: BrokerConnection, client: InMemoryBrokerClient, *bodies: bytes) -> None:
    channel = await connection.ensure_channel()
    for body in bodies:
        await client.publish(
            channel, Message(body=body), exchange="", routing_key="ingnotification"
        )


@pytest.mark.asyncio
async def test_consume_processes_in_order_until_stopped(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    wait_until: WaitUntil,
) -> None:
    await _seed(connection, client, b"1", b"2", b"3")
    seen: list[bytes] = []

    async def handler(message: Message) -> bool:
        seen.append(message.body)
        return True

    task = asyncio.create_task(consumer.consume(handler))
    await wait_until(lambda: len(client.acks) == 3)
    assert consumer.consuming

    await consumer.stop()
    await asyncio.wait_for(task, 1.0)

    assert seen == [b"1", b"2", b"3"]
    assert not consumer.consuming
    assert client.messages("ingnotification") == []


@pytest.mark.asyncio
async def test_sequential_by_default(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    wait_until: WaitUntil,
) -> None:
    await _seed(connection, client, b"a", b"b")
    running = 0
    peak = 0

    async def handler(message: Message) -> bool:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return True

    task = asyncio.create_task(consumer.consume(handler))
    await wait_until(lambda: len(client.acks) == 2)
    await consumer.stop()
    await task

    assert peak == 1


@pytest.mark.asyncio
async def test_failing_message_cycles_until_quarantined(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    topology: TopologyManager,
    wait_until: WaitUntil,
) -> None:
    policy = DeliveryPolicy(max_delivery_limit=2)
    consumer = Consumer(
        connection, DeliveryTracker(policy), topology, policy, liveness_interval=0.01
    )
    await _seed(connection, client, b"always-fails")
    calls: list[int] = []

    def handler(message: Message) -> bool:
        calls.append(int(message.headers.get(ATTEMPTS_HEADER, 0)))
        return False

    task = asyncio.create_task(consumer.consume(handler))
    await wait_until(lambda: len(client.messages("notReach")) == 1)
    await consumer.stop()
    await task

    # attempts 0, 1 and 2 are handled; 3 exceeds the limit
    assert calls == [0, 1, 2]
    [rejected] = client.messages("notReach")
    assert rejected.body == b"always-fails"
    assert rejected.headers[ATTEMPTS_HEADER] == 3
    assert len(client.acks) == 4


@pytest.mark.asyncio
async def test_concurrent_workers(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    tracker: DeliveryTracker,
    topology: TopologyManager,
    policy: DeliveryPolicy,
    wait_until: WaitUntil,
) -> None:
    consumer = Consumer(
        connection, tracker, topology, policy, concurrency=3, liveness_interval=0.01
    )
    await _seed(connection, client, b"1", b"2", b"3")
    gate = asyncio.Event()
    started = 0

    async def handler(message: Message) -> bool:
        nonlocal started
        started += 1
        await gate.wait()
        return True

    task = asyncio.create_task(consumer.consume(handler))
    await wait_until(lambda: started == 3)
    gate.set()
    await wait_until(lambda: len(client.acks) == 3)
    await consumer.stop()
    await task


@pytest.mark.asyncio
async def test_connection_drop_stops_consumption_with_error(
    consumer: Consumer,
    client: InMemoryBrokerClient,
    wait_until: WaitUntil,
) -> None:
    task = asyncio.create_task(consumer.consume(lambda m: True))
    await wait_until(lambda: consumer.consuming)

    client.drop_connections()

    with pytest.raises(BrokerConnectionError):
        await asyncio.wait_for(task, 1.0)
    assert not consumer.consuming


@pytest.mark.asyncio
async def test_consume_without_connection_raises(
    client: InMemoryBrokerClient, consumer: Consumer
) -> None:
    client.drop_connections()
    with pytest.raises(BrokerConnectionError):
        await consumer.consume(lambda m: True)


@pytest.mark.asyncio
async def test_graceful_stop_finishes_in_flight_delivery(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    wait_until: WaitUntil,
) -> None:
    await _seed(connection, client, b"slow")
    started = asyncio.Event()

    async def handler(message: Message) -> bool:
        started.set()
        await asyncio.sleep(0.05)
        return True

    task = asyncio.create_task(consumer.consume(handler))
    await started.wait()
    await consumer.stop()
    await task

    assert len(client.acks) == 1


@pytest.mark.asyncio
async def test_consume_twice_is_rejected(
    consumer: Consumer, wait_until: WaitUntil
) -> None:
    task = asyncio.create_task(consumer.consume(lambda m: True))
    await wait_until(lambda: consumer.consuming)

    with pytest.raises(RuntimeError):
        await consumer.consume(lambda m: True)

    await consumer.stop()
    await task


@pytest.mark.asyncio
async def test_consume_leaves_existing_queue_arguments_alone(
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
    tracker: DeliveryTracker,
    wait_until: WaitUntil,
) -> None:
    channel = await connection.ensure_channel()
    dead_letters = {"x-dead-letter-exchange": "dlx"}
    parked = {"x-message-ttl": 60000}
    await client.declare_queue(
        channel, "work", durable=True, exclusive=False, auto_delete=False, arguments=dead_letters
    )
    await client.declare_queue(
        channel, "parked", durable=True, exclusive=False, auto_delete=False, arguments=parked
    )
    await client.publish(channel, Message(body=b""), exchange="", routing_key="work")
    consumer = Consumer(
        connection,
        tracker,
        TopologyManager(connection),
        DeliveryPolicy(reject_queue="parked"),
        liveness_interval=0.01,
    )

    task = asyncio.create_task(consumer.consume(lambda m: True, "work"))
    await wait_until(lambda: len(client.messages("parked")) == 1)
    await consumer.stop()
    await task

    assert client.queue_arguments("work") == dead_letters
    assert client.queue_arguments("parked") == parked
    assert len(client.acks) == 1


@pytest.mark.asyncio
async def test_wait_stopped_returns_after_shutdown(
    consumer: Consumer,
    connection: BrokerConnection,
    client: InMemoryBrokerClient,
) -> None:
    assert await consumer.wait_stopped(timeout=0.01)
    await _seed(connection, client, b"slow")
    started = asyncio.Event()

    async def handler(message: Message) -> bool:
        started.set()
        await asyncio.sleep(0.05)
        return True

    task = asyncio.create_task(consumer.consume(handler))
    await started.wait()
    await consumer.stop()

    assert await consumer.wait_stopped()
    assert len(client.acks) == 1
    await task
