"""Message variants and their wire codec."""

from gacha.protocol.codec import Envelope, decode_message, encode_message
from gacha.protocol.messages import (
    AgentEvent,
    AgentReady,
    ClearTaskContext,
    CommunicationError,
    ControllerResponse,
    ExecuteTask,
    GetState,
    InteractionFailed,
    Message,
    Ping,
    Pong,
    ProtocolError,
    SetDelay,
    StartBatch,
    StateUpdate,
    StatusChanged,
    Stop,
    Submitted,
    UiCommand,
)

__all__ = [
    "AgentEvent",
    "AgentReady",
    "ClearTaskContext",
    "CommunicationError",
    "ControllerResponse",
    "Envelope",
    "ExecuteTask",
    "GetState",
    "InteractionFailed",
    "Message",
    "Ping",
    "Pong",
    "ProtocolError",
    "SetDelay",
    "StartBatch",
    "StateUpdate",
    "StatusChanged",
    "Stop",
    "Submitted",
    "UiCommand",
    "decode_message",
    "encode_message",
]
