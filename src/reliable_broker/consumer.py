"""Consumer — per-delivery retry/quarantine state machine and the consume loop."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from inspect import isawaitable
from typing import TYPE_CHECKING, Any

from .exceptions import BrokerConnectionError, HandlerError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .connection import BrokerConnection
    from .delivery import DeliveryTracker
    from .message import Message
    from .settings import DeliveryPolicy
    from .topology import TopologyManager

    Handler = Callable[[Message], Awaitable[Any] | Any]

logger = logging.getLogger("reliable_broker.consumer")


class DeliveryOutcome(str, Enum):
    """Terminal state of one delivery; each ends in exactly one ack."""

    ACKNOWLEDGED = "acknowledged"
    RETRIED = "retried"
    QUARANTINED = "quarantined"


class _Verdict(str, Enum):
    QUARANTINE = "quarantine"
    SUCCESS = "success"
    FAILURE = "failure"


class Consumer:
    """Pulls deliveries from a queue and settles each of them exactly once.

    Per delivery:

    1. Not retryable (empty body, or attempts over the limit): publish the
       body unchanged to the reject queue, ack the original.
    2. Otherwise run the handler. Truthy result: ack.
    3. ``False``/``None``/exception/timeout: republish a copy with the attempt
       counter bumped onto the requeue queue, then ack the original.

    Handlers run on ``concurrency`` workers fed by a bounded queue; every
    publish/ack goes through one settling task, so the channel is only ever
    acknowledged from one place. With the default ``concurrency=1`` a delivery
    is completely settled before the next one is handed to the handler.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        tracker: DeliveryTracker,
        topology: TopologyManager,
        policy: DeliveryPolicy,
        *,
        prefetch_count: int = 1,
        concurrency: int = 1,
        handler_timeout: float | None = None,
        liveness_interval: float = 1.0,
        graceful_timeout: float = 30.0,
    ) -> None:
        """Configure the consumer.

        Args:
            connection: Shared broker connection.
            tracker: Reads/bumps the delivery-attempts header.
            topology: Declares the consumed queue and the reject queue.
            policy: Queue names and delivery limit.
            prefetch_count: Unacked deliveries the broker may push at once.
            concurrency: Number of handler workers.
            handler_timeout: Seconds before an async handler counts as failed.
            liveness_interval: Seconds between channel liveness checks.
            graceful_timeout: Seconds ``stop()`` waits for in-flight deliveries.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be >= 1")
        self._connection = connection
        self._tracker = tracker
        self._topology = topology
        self._policy = policy
        self._prefetch_count = max(prefetch_count, concurrency)
        self._concurrency = concurrency
        self._handler_timeout = handler_timeout
        self._liveness_interval = liveness_interval
        self._graceful_timeout = graceful_timeout

        self._stop_event: asyncio.Event | None = None
        self._consumer_tag: str | None = None
        self._failure: BaseException | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def consuming(self) -> bool:
        return self._consumer_tag is not None

    # -- per-delivery state machine ------------------------------------------

    async def process(
        self,
        message: Message,
        handler: Handler,
        *,
        requeue_queue: str | None = None,
    ) -> DeliveryOutcome:
        """Run one delivery through quarantine/handler/ack.

        Connection errors while republishing or acking, and a republish the
        broker did not confirm (``PublishConfirmError``), propagate and leave
        the original unacknowledged, so the broker will redeliver it.
        """
        verdict = await self._decide(message, handler)
        return await self._settle(message, verdict, requeue_queue or self._policy.consume_queue)

    async def _decide(self, message: Message, handler: Handler) -> _Verdict:
        if self._tracker.is_quarantine_candidate(message):
            return _Verdict.QUARANTINE
        if await self._run_handler(message, handler):
            return _Verdict.SUCCESS
        return _Verdict.FAILURE

    async def _run_handler(self, message: Message, handler: Handler) -> bool:
        attempts = self._tracker.get_attempts(message)
        try:
            result = handler(message)
            if isawaitable(result):
                if self._handler_timeout is not None:
                    result = await asyncio.wait_for(result, self._handler_timeout)
                else:
                    result = await result
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "Handler timed out after %.1fs (delivery %s, attempt %d)",
                self._handler_timeout,
                message.delivery_tag,
                attempts,
            )
            return False
        except Exception as e:  # noqa: BLE001
            error = e
            if not isinstance(error, HandlerError):
                error = HandlerError(f"{type(e).__name__}: {e}", message)
            logger.warning(
                "Could not process delivery %s (attempt %d): %s",
                message.delivery_tag,
                attempts,
                error,
                exc_info=e,
            )
            return False
        if not result:
            logger.info(
                "Handler reported failure for delivery %s (attempt %d)",
                message.delivery_tag,
                attempts,
            )
            return False
        return True

    async def _settle(
        self, message: Message, verdict: _Verdict, requeue_queue: str
    ) -> DeliveryOutcome:
        if message.delivery_tag is None:
            raise ValueError("Only delivered messages (with a delivery tag) can be settled")

        if verdict is _Verdict.QUARANTINE:
            await self._quarantine(message)
            outcome = DeliveryOutcome.QUARANTINED
        elif verdict is _Verdict.FAILURE:
            await self._requeue(message, requeue_queue)
            outcome = DeliveryOutcome.RETRIED
        else:
            outcome = DeliveryOutcome.ACKNOWLEDGED

        await self._ack(message.delivery_tag)
        return outcome

    async def _quarantine(self, message: Message) -> None:
        reject_queue = self._policy.reject_queue
        logger.error(
            "Rejecting delivery %s after %d attempt(s); moving it to %r",
            message.delivery_tag,
            self._tracker.get_attempts(message),
            reject_queue,
        )
        await self._topology.ensure_queue(reject_queue)
        await self._republish(self._tracker.prepare_for_quarantine(message), reject_queue)

    async def _requeue(self, message: Message, queue: str) -> None:
        retry = self._tracker.increment_attempts(message)
        logger.warning(
            "Requeuing delivery %s to %r for retry, attempt %d",
            message.delivery_tag,
            queue,
            self._tracker.get_attempts(retry),
        )
        await self._republish(retry, queue)

    async def _republish(self, message: Message, queue: str) -> None:
        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.publish(
                channel, message, exchange="", routing_key=queue
            )
        except (ConnectionError, OSError) as e:
            raise BrokerConnectionError(f"Republish to {queue!r} failed: {e}") from e

    async def _ack(self, delivery_tag: int) -> None:
        channel = await self._connection.ensure_channel()
        try:
            await self._connection.client.ack(channel, delivery_tag)
        except (ConnectionError, OSError) as e:
            raise BrokerConnectionError(f"Ack of delivery {delivery_tag} failed: {e}") from e

    # -- consume loop --------------------------------------------------------

    async def consume(
        self,
        handler: Handler,
        queue: str | None = None,
        *,
        requeue_queue: str | None = None,
    ) -> None:
        """Subscribe *handler* to *queue* and run until stopped.

        Returns after ``stop()`` or when the broker leaves no active
        subscription. A channel/connection failure is logged and re-raised as
        ``BrokerConnectionError``; the loop is never restarted from here.
        """
        if self._stop_event is not None:
            raise RuntimeError("Consumer is already running")
        queue = queue or self._policy.consume_queue
        requeue_queue = requeue_queue or queue

        stop_event = self._stop_event = asyncio.Event()
        self._idle.clear()
        self._failure = None
        deliveries: asyncio.Queue[Message] = asyncio.Queue(maxsize=self._concurrency)
        settlements: asyncio.Queue[tuple[Message, _Verdict, asyncio.Future[Any]]] = (
            asyncio.Queue()
        )
        tasks = [
            asyncio.create_task(self._worker(handler, deliveries, settlements))
            for _ in range(self._concurrency)
        ]
        tasks.append(asyncio.create_task(self._settler(requeue_queue, settlements)))
        client = self._connection.client
        channel: Any = None

        try:
            await self._topology.ensure_queue(queue)
            channel = await self._connection.ensure_channel()
            self._consumer_tag = await client.consume(
                channel, queue, deliveries.put, prefetch_count=self._prefetch_count
            )
            logger.info("Consuming from %r (consumer %s)", queue, self._consumer_tag)
            await self._watch(channel, stop_event)
        except BrokerConnectionError as e:
            self._fail(e)
        finally:
            await self._shutdown(channel, deliveries, tasks)

        if self._failure is not None:
            logger.error("Consumption of %r stopped: %s", queue, self._failure)
            raise self._failure
        logger.info("Consumption of %r finished", queue)

    async def _watch(self, channel: Any, stop_event: asyncio.Event) -> None:
        client = self._connection.client
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), self._liveness_interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                return
            if not self._connection.is_connected() or not self._connection.is_channel_open():
                self._fail(BrokerConnectionError("Channel closed while consuming"))
                return
            try:
                active = client.is_consuming(channel)
            except Exception:  # noqa: BLE001
                active = False
            if not active:
                logger.info("No active subscription left on the channel")
                return

    async def _worker(
        self,
        handler: Handler,
        deliveries: asyncio.Queue[Message],
        settlements: asyncio.Queue[tuple[Message, _Verdict, asyncio.Future[Any]]],
    ) -> None:
        loop = asyncio.get_running_loop()
        while True:
            message = await deliveries.get()
            try:
                verdict = await self._decide(message, handler)
                done: asyncio.Future[Any] = loop.create_future()
                await settlements.put((message, verdict, done))
                await done
            except BrokerConnectionError:
                return
            finally:
                deliveries.task_done()

    async def _settler(
        self,
        requeue_queue: str,
        settlements: asyncio.Queue[tuple[Message, _Verdict, asyncio.Future[Any]]],
    ) -> None:
        while True:
            message, verdict, done = await settlements.get()
            try:
                outcome = await self._settle(message, verdict, requeue_queue)
            except BrokerConnectionError as e:
                done.set_exception(e)
                self._fail(e)
                return
            except Exception as e:
                logger.exception("Could not settle delivery %s", message.delivery_tag)
                done.set_exception(BrokerConnectionError(str(e)))
                self._fail(BrokerConnectionError(f"Settling failed: {e}"))
                return
            done.set_result(outcome)

    def _fail(self, error: BaseException) -> None:
        if self._failure is None:
            self._failure = error
        if self._stop_event is not None:
            self._stop_event.set()

    async def _shutdown(
        self,
        channel: Any,
        deliveries: asyncio.Queue[Message],
        tasks: list[asyncio.Task[None]],
    ) -> None:
        tag, self._consumer_tag = self._consumer_tag, None
        if tag is not None and channel is not None and self._connection.is_channel_open():
            try:
                await self._connection.client.cancel(channel, tag)
            except Exception as e:  # noqa: BLE001
                logger.debug("Ignoring error while cancelling consumer %s: %s", tag, e)
        if self._failure is None:
            try:
                await asyncio.wait_for(deliveries.join(), self._graceful_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "%d delivery(ies) still in flight after %.1fs; they will be redelivered",
                    deliveries.qsize(),
                    self._graceful_timeout,
                )
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._stop_event = None
        self._idle.set()

    async def stop(self) -> None:
        """Ask a running ``consume()`` to cancel its subscription and return."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self, timeout: float | None = None) -> bool:
        """Wait for a running ``consume()`` to finish its shutdown.

        In-flight deliveries get up to ``graceful_timeout`` to settle; *timeout*
        defaults to that plus one liveness interval. Returns ``False`` if the
        consumer was still shutting down when the wait gave up.
        """
        if timeout is None:
            timeout = self._graceful_timeout + self._liveness_interval
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Consumer still shutting down after %.1fs", timeout)
            return False
        return True
