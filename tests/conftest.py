"""Shared fixtures: an in-memory broker and the components wired to it."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio

from reliable_broker.connection import BrokerConnection
from reliable_broker.consumer import Consumer
from reliable_broker.delivery import DeliveryTracker
from reliable_broker.memory import InMemoryBrokerClient
from reliable_broker.publisher import Publisher
from reliable_broker.settings import BrokerSettings, DeliveryPolicy
from reliable_broker.topology import TopologyManager


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(
        broker="memory",
        max_connection_retries=3,
        retry_delay_ms=3000,
        max_delivery_limit=30,
    )


@pytest.fixture
def policy(settings: BrokerSettings) -> DeliveryPolicy:
    return settings.policy


@pytest.fixture
def client() -> InMemoryBrokerClient:
    return InMemoryBrokerClient()


@pytest_asyncio.fixture
async def connection(
    client: InMemoryBrokerClient, settings: BrokerSettings
) -> AsyncIterator[BrokerConnection]:
    conn = BrokerConnection(client, settings)
    await conn.connect()
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def topology(connection: BrokerConnection, policy: DeliveryPolicy) -> TopologyManager:
    manager = TopologyManager(connection)
    await manager.setup_topology(
        queues=[policy.consume_queue, policy.publish_queue, policy.reject_queue]
    )
    return manager


@pytest.fixture
def tracker(policy: DeliveryPolicy) -> DeliveryTracker:
    return DeliveryTracker(policy)


@pytest.fixture
def publisher(
    connection: BrokerConnection, topology: TopologyManager, policy: DeliveryPolicy
) -> Publisher:
    return Publisher(connection, topology, policy)


@pytest.fixture
def consumer(
    connection: BrokerConnection,
    tracker: DeliveryTracker,
    topology: TopologyManager,
    policy: DeliveryPolicy,
) -> Consumer:
    return Consumer(
        connection,
        tracker,
        topology,
        policy,
        liveness_interval=0.01,
        graceful_timeout=1.0,
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate on the event loop until it holds or the timeout elapses."""
    return _wait_until
