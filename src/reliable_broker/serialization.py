"""PayloadCodec — the single boundary where payloads become bytes."""

from __future__ import annotations

import json
from typing import Any

from .exceptions import SerializationError
from .message import Message, RawBytes, StructuredValue


def _json_default(obj: Any) -> Any:
    """Serialize datetime, pydantic models and other non-JSON types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class PayloadCodec:
    """Turn whatever the caller wants to publish into a transport ``Message``.

    Accepted inputs:

    * ``Message``: body kept; its own headers are kept unless ``headers``
      is given, in which case they replace them.
    * ``RawBytes`` / ``bytes`` / ``bytearray``: sent unchanged.
    * ``StructuredValue`` or any other value: JSON-encoded (UTF-8).
    """

    content_type = "application/json"

    def encode(self, value: Any) -> bytes:
        try:
            return json.dumps(value, default=_json_default).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e

    def decode(self, message: Message) -> Any:
        """Decode a JSON body back into Python data."""
        try:
            return json.loads(message.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SerializationError(str(e)) from e

    def to_message(
        self,
        payload: Any,
        headers: dict[str, Any] | None = None,
    ) -> Message:
        if isinstance(payload, Message):
            if headers is None:
                return payload.with_headers(payload.headers)
            return payload.with_headers(headers)
        if isinstance(payload, (bytes, bytearray)):
            payload = RawBytes(data=bytes(payload))
        elif not isinstance(payload, (RawBytes, StructuredValue)):
            payload = StructuredValue(value=payload)

        if isinstance(payload, RawBytes):
            return Message(body=payload.data, headers=dict(headers or {}))
        return Message(
            body=self.encode(payload.value),
            headers=dict(headers or {}),
            content_type=self.content_type,
        )
