"""Message and payload models carried over the broker."""

from __future__ import annotations

from enum import IntEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

ATTEMPTS_HEADER = "x-delivery-attempts"


class DeliveryMode(IntEnum):
    NOT_PERSISTENT = 1
    PERSISTENT = 2


class RawBytes(BaseModel):
    """Payload that is already encoded and goes over the wire untouched."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["raw"] = "raw"
    data: bytes


class StructuredValue(BaseModel):
    """Arbitrary application data, JSON-encoded at publish time."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["structured"] = "structured"
    value: Any = None


Payload = Annotated[Union[RawBytes, StructuredValue], Field(discriminator="kind")]


class Message(BaseModel):
    """Immutable transport message.

    ``body`` and ``headers`` are application data. The delivery fields are
    filled in by the broker client for consumed messages and identify one
    specific delivery; they are ``None``/empty on outgoing messages.
    """

    model_config = ConfigDict(frozen=True)

    body: bytes = b""
    headers: dict[str, Any] = Field(default_factory=dict)
    content_type: str | None = None
    delivery_mode: DeliveryMode = DeliveryMode.PERSISTENT
    message_id: str | None = None

    delivery_tag: int | None = None
    redelivered: bool = False
    exchange: str = ""
    routing_key: str = ""

    @property
    def is_empty(self) -> bool:
        return len(self.body) == 0

    def with_headers(self, headers: dict[str, Any]) -> Message:
        """Return an outgoing copy with ``headers`` replacing the current ones."""
        return self.model_copy(
            update={
                "headers": dict(headers),
                "delivery_tag": None,
                "redelivered": False,
                "exchange": "",
                "routing_key": "",
            }
        )
