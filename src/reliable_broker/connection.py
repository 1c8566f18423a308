"""BrokerConnection — connection/channel ownership with bounded, fixed-delay retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import BrokerConnectionError, ConnectionRetriesExhaustedError

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from .client import BrokerClient
    from .settings import BrokerSettings

logger = logging.getLogger("reliable_broker.connection")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    BrokerConnectionError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class ConnectionState:
    """A live (connection, channel) pair. Disconnected is represented by ``None``."""

    connection: Any
    channel: Any


class BrokerConnection:
    """Owns the single connection and channel shared by every component.

    Only this class replaces the state; the pair is always swapped as a whole,
    never a connection without a channel. Inject one instance into the
    topology manager, publisher and consumer; its lifetime belongs to the
    application's composition root.
    """

    def __init__(
        self,
        client: BrokerClient,
        settings: BrokerSettings,
        *,
        on_failure: Callable[[BaseException], Any] | None = None,
    ) -> None:
        """Configure the connection.

        Args:
            client: Broker client adapter doing the wire work.
            settings: Endpoint; its ``policy`` supplies the retry budget and delay.
            on_failure: Alert hook called with the final error when
                ``connect()`` exhausts its attempts.
        """
        self._client = client
        self._settings = settings
        self._policy = settings.policy
        self._on_failure = on_failure
        self._state: ConnectionState | None = None
        self._epoch = 0

    @property
    def client(self) -> BrokerClient:
        return self._client

    @property
    def state(self) -> ConnectionState | None:
        return self._state

    @property
    def epoch(self) -> int:
        """Incremented on every successful connect; topology caches key on it."""
        return self._epoch

    @property
    def max_attempts(self) -> int:
        return max(1, self._policy.max_connection_retries)

    @property
    def retry_delay(self) -> float:
        return self._policy.retry_delay

    async def connect(self) -> None:
        """Establish connection and channel, retrying with a fixed delay.

        Idempotent if already connected. Raises ``ConnectionRetriesExhaustedError``
        once every attempt has failed; nothing is rescheduled afterwards.
        """
        if self.is_connected() and self.is_channel_open():
            return
        await self.close()

        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._state = await self._open()
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "Connection attempt %d/%d to %s failed: %s",
                    attempt,
                    self.max_attempts,
                    self._client.name,
                    e,
                )
                if attempt < self.max_attempts:
                    await _sleep(self.retry_delay)
                continue
            self._epoch += 1
            logger.info(
                "Connected to %s (attempt %d, epoch %d)",
                self._client.name,
                attempt,
                self._epoch,
            )
            return

        error = ConnectionRetriesExhaustedError(self.max_attempts, last_error)
        logger.error("Giving up connecting to %s: %s", self._client.name, error)
        if self._on_failure is not None:
            try:
                self._on_failure(error)
            except Exception:  # noqa: BLE001
                logger.exception("Connection failure hook raised")
        raise error from last_error

    async def _open(self) -> ConnectionState:
        connection = await self._client.dial(self._settings)
        try:
            channel = await self._client.open_channel(connection)
        except BaseException:
            await self._safe_close(self._client.close_connection, connection)
            raise
        return ConnectionState(connection=connection, channel=channel)

    def is_connected(self) -> bool:
        if self._state is None:
            return False
        try:
            return bool(self._client.is_connected(self._state.connection))
        except Exception:  # noqa: BLE001
            return False

    def is_channel_open(self) -> bool:
        if self._state is None:
            return False
        try:
            return bool(self._client.is_channel_open(self._state.channel))
        except Exception:  # noqa: BLE001
            return False

    async def ensure_channel(self) -> Any:
        """Return a live channel, reopening it if the peer closed it.

        Raises ``BrokerConnectionError`` when there is no live connection;
        reconnecting is the caller's decision.
        """
        if self._state is None or not self.is_connected():
            raise BrokerConnectionError("Not connected to the broker; call connect() first")
        if self.is_channel_open():
            return self._state.channel

        logger.warning("Channel was closed by the broker; reopening it")
        try:
            channel = await self._client.open_channel(self._state.connection)
        except RETRYABLE_ERRORS as e:
            logger.error("Could not reopen channel: %s", e)
            raise BrokerConnectionError(f"Could not reopen channel: {e}") from e
        self._state = ConnectionState(connection=self._state.connection, channel=channel)
        return channel

    async def close(self) -> None:
        """Close channel then connection; tolerant of either being gone already."""
        state, self._state = self._state, None
        if state is None:
            return
        await self._safe_close(self._client.close_channel, state.channel)
        await self._safe_close(self._client.close_connection, state.connection)
        logger.info("Connection to %s closed", self._client.name)

    @staticmethod
    async def _safe_close(closer: Callable[[Any], Any], handle: Any) -> None:
        if handle is None:
            return
        try:
            await closer(handle)
        except Exception as e:  # noqa: BLE001
            logger.debug("Ignoring error while closing %r: %s", handle, e)

    async def __aenter__(self) -> BrokerConnection:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


async def _sleep(seconds: float) -> None:
    """Async sleep (overridable for tests)."""
    await asyncio.sleep(seconds)
