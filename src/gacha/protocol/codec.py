"""Wire codec: `{"type", "payload", "correlation_id"?}` dicts <-> message variants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from gacha.protocol.messages import ALL_MESSAGES, Message, ProtocolError

_REGISTRY: Dict[str, Type[Message]] = {cls.TYPE: cls for cls in ALL_MESSAGES}


@dataclass(frozen=True)
class Envelope:
    message: Message
    correlation_id: Optional[str] = None

    @property
    def type(self) -> str:
        return self.message.TYPE


def encode_message(message: Message, *, correlation_id: Optional[str] = None) -> Dict[str, Any]:
    message_type = getattr(message, "TYPE", "")
    if message_type not in _REGISTRY or not isinstance(message, _REGISTRY[message_type]):
        raise ProtocolError("cannot encode {0}".format(type(message).__name__))
    data: Dict[str, Any] = {"type": message_type, "payload": message.payload()}
    if correlation_id:
        data["correlation_id"] = str(correlation_id)
    return data


def decode_message(data: Any) -> Envelope:
    if not isinstance(data, dict):
        raise ProtocolError("message must be an object")
    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise ProtocolError("message has no type")
    cls = _REGISTRY.get(message_type)
    if cls is None:
        raise ProtocolError("unknown message type: {0}".format(message_type))
    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError("payload of {0} must be an object".format(message_type))
    correlation_id = data.get("correlation_id")
    return Envelope(
        message=cls.from_payload(payload),
        correlation_id=str(correlation_id) if correlation_id else None,
    )


def message_types() -> Dict[str, Type[Message]]:
    return dict(_REGISTRY)
