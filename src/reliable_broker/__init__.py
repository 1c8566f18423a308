"""At-least-once delivery over AMQP: bounded reconnects, retry/quarantine, confirmed publish."""

from __future__ import annotations

from .broker import MessageBroker, create_client, register_client
from .client import BrokerClient, PublishConfirmation
from .connection import BrokerConnection, ConnectionState
from .consumer import Consumer, DeliveryOutcome
from .delivery import DeliveryTracker
from .exceptions import (
    BrokerConnectionError,
    BrokerError,
    ConnectionRetriesExhaustedError,
    HandlerError,
    InvalidBrokerNameError,
    InvalidTopologyError,
    PublishConfirmError,
    PublishFailure,
    SerializationError,
)
from .message import ATTEMPTS_HEADER, DeliveryMode, Message, RawBytes, StructuredValue
from .publisher import BatchPublishResult, Publisher
from .serialization import PayloadCodec
from .settings import BrokerSettings, DeliveryPolicy
from .status import BrokerStatus, StatusReporter
from .topology import BindingSpec, ExchangeKind, ExchangeSpec, QueueSpec, TopologyManager

__all__ = [
    "ATTEMPTS_HEADER",
    "BatchPublishResult",
    "BindingSpec",
    "BrokerClient",
    "BrokerConnection",
    "BrokerConnectionError",
    "BrokerError",
    "BrokerSettings",
    "BrokerStatus",
    "ConnectionRetriesExhaustedError",
    "ConnectionState",
    "Consumer",
    "DeliveryMode",
    "DeliveryOutcome",
    "DeliveryPolicy",
    "DeliveryTracker",
    "ExchangeKind",
    "ExchangeSpec",
    "HandlerError",
    "InvalidBrokerNameError",
    "InvalidTopologyError",
    "Message",
    "MessageBroker",
    "PayloadCodec",
    "PublishConfirmError",
    "PublishConfirmation",
    "PublishFailure",
    "Publisher",
    "QueueSpec",
    "RawBytes",
    "SerializationError",
    "StatusReporter",
    "StructuredValue",
    "TopologyManager",
    "create_client",
    "register_client",
]
