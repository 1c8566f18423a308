"""DeliveryTracker — retry counter carried in message headers."""

from __future__ import annotations

import logging

from .message import ATTEMPTS_HEADER, Message
from .settings import DeliveryPolicy

logger = logging.getLogger("reliable_broker.delivery")


class DeliveryTracker:
    """Reads and bumps the ``x-delivery-attempts`` header.

    The count lives in the message itself, so retry state survives process
    restarts and broker redelivery without any external storage. The tracker
    holds no state besides its policy.
    """

    def __init__(self, policy: DeliveryPolicy | None = None) -> None:
        self._policy = policy or DeliveryPolicy()

    @property
    def max_delivery_limit(self) -> int:
        return self._policy.max_delivery_limit

    def get_attempts(self, message: Message) -> int:
        """Return the attempt count; absent or unreadable headers count as 0."""
        raw = message.headers.get(ATTEMPTS_HEADER)
        if raw is None:
            return 0
        try:
            attempts = int(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed %s header: %r", ATTEMPTS_HEADER, raw)
            return 0
        return max(0, attempts)

    def increment_attempts(self, message: Message) -> Message:
        """Return an outgoing copy with the same body and ``attempts + 1``.

        Every other application header is kept.
        """
        headers = dict(message.headers)
        headers[ATTEMPTS_HEADER] = self.get_attempts(message) + 1
        return message.with_headers(headers)

    def is_retryable(self, message: Message) -> bool:
        if message.is_empty:
            return False
        return self.get_attempts(message) <= self._policy.max_delivery_limit

    def is_quarantine_candidate(self, message: Message) -> bool:
        return not self.is_retryable(message)

    def prepare_for_quarantine(self, message: Message) -> Message:
        """Outgoing copy for the dead-letter target; body is never changed."""
        headers = dict(message.headers)
        if self._policy.strip_attempts_on_quarantine:
            headers.pop(ATTEMPTS_HEADER, None)
        return message.with_headers(headers)
