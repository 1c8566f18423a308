"""StatusReporter — read-only connectivity snapshot."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from .connection import BrokerConnection

logger = logging.getLogger("reliable_broker.status")


class BrokerStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker_name: str
    connected: bool
    consuming: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "brokerName": self.broker_name,
            "connected": self.connected,
            "consuming": self.consuming,
        }


class StatusReporter:
    """Diagnostic probes; any error inside a probe is reported as ``False``."""

    def __init__(self, connection: BrokerConnection, broker_name: str | None = None) -> None:
        self._connection = connection
        self._broker_name = broker_name

    @property
    def broker_name(self) -> str:
        if self._broker_name is not None:
            return self._broker_name
        return str(getattr(self._connection.client, "name", "unknown"))

    def is_connected(self) -> bool:
        try:
            return self._connection.is_connected()
        except Exception:  # noqa: BLE001
            logger.debug("Connectivity probe failed", exc_info=True)
            return False

    def is_consuming(self) -> bool:
        try:
            state = self._connection.state
            if state is None:
                return False
            return bool(self._connection.client.is_consuming(state.channel))
        except Exception:  # noqa: BLE001
            logger.debug("Consuming probe failed", exc_info=True)
            return False

    def status(self) -> BrokerStatus:
        return BrokerStatus(
            broker_name=self.broker_name,
            connected=self.is_connected(),
            consuming=self.is_consuming(),
        )
