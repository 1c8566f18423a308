"""Broker reliability exceptions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .message import Message


class BrokerError(Exception):
    """Root exception for the reliable-broker toolkit."""


class BrokerConnectionError(BrokerError):
    """Raised when the broker is unreachable or the connection/channel is closed."""


class ConnectionRetriesExhaustedError(BrokerConnectionError):
    """Raised when ``connect()`` gives up after the configured number of attempts."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Could not connect to the broker after {attempts} attempt(s)"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)


class InvalidTopologyError(BrokerError):
    """Raised for malformed or conflicting queue/exchange/binding declarations."""


class HandlerError(BrokerError):
    """A message handler raised or reported failure.

    Handlers may raise this explicitly; the consumer also wraps any other
    handler exception in it before logging. It never leaves the consumer.
    """

    def __init__(self, reason: str, message: Message | None = None) -> None:
        self.message = message
        super().__init__(reason)


class SerializationError(BrokerError):
    """Raised when a payload cannot be encoded to bytes."""


@dataclass(frozen=True)
class PublishFailure:
    """One entry of a batch that the broker did not confirm."""

    index: int
    message: Message
    reason: str


class PublishConfirmError(BrokerError):
    """Raised when a confirmed batch publish gets a negative ack or a return."""

    def __init__(self, failures: list[PublishFailure], total: int) -> None:
        self.failures = failures
        self.total = total
        indexes = ", ".join(str(f.index) for f in failures)
        super().__init__(
            f"{len(failures)} of {total} message(s) were not confirmed "
            f"(indexes: {indexes})"
        )


class InvalidBrokerNameError(BrokerError):
    """Raised when no broker client is registered under the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown message broker {name!r}")
