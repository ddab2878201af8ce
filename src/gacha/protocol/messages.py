"""Closed message families exchanged between controller, page and UI."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

from gacha.task.types import (
    Notification,
    RunPhase,
    RunState,
    Task,
    TaskStatus,
)


class ProtocolError(ValueError):
    """Raised when a wire message cannot be decoded into a known variant."""


def _text(data: Dict[str, Any], key: str, *, required: bool = False) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise ProtocolError("missing field: {0}".format(key))
        return None
    if not isinstance(value, (str, int, float)):
        raise ProtocolError("field {0} must be text".format(key))
    return str(value)


def _int(data: Dict[str, Any], key: str, default: int = 0) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        raise ProtocolError("field {0} must be an integer".format(key))
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("field {0} must be an integer".format(key)) from exc


def _task(raw: Any, key: str) -> Task:
    if not isinstance(raw, dict):
        raise ProtocolError("field {0} must be an object".format(key))
    try:
        return Task.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolError("invalid task in {0}: {1}".format(key, exc)) from exc


@dataclass(frozen=True)
class Message:
    TYPE: ClassVar[str] = ""

    def payload(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Message":
        return cls()


# UI -> Controller


@dataclass(frozen=True)
class StartBatch(Message):
    TYPE: ClassVar[str] = "StartBatch"

    prompts: Tuple[str, ...] = ()
    quantity: int = 1
    aspect_ratio: str = "1:1"

    def payload(self) -> Dict[str, Any]:
        return {
            "prompts": list(self.prompts),
            "quantity": self.quantity,
            "aspect_ratio": self.aspect_ratio,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StartBatch":
        prompts = data.get("prompts")
        if not isinstance(prompts, list):
            raise ProtocolError("field prompts must be a list")
        return cls(
            prompts=tuple(str(item) for item in prompts),
            quantity=_int(data, "quantity", 1),
            aspect_ratio=_text(data, "aspect_ratio") or "",
        )


@dataclass(frozen=True)
class Stop(Message):
    TYPE: ClassVar[str] = "Stop"


@dataclass(frozen=True)
class GetState(Message):
    TYPE: ClassVar[str] = "GetState"


@dataclass(frozen=True)
class SetDelay(Message):
    TYPE: ClassVar[str] = "SetDelay"

    seconds: int = 0

    def payload(self) -> Dict[str, Any]:
        return {"seconds": self.seconds}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SetDelay":
        return cls(seconds=_int(data, "seconds"))


# Controller -> UI


@dataclass(frozen=True)
class StateUpdate(Message):
    TYPE: ClassVar[str] = "StateUpdate"

    phase: RunPhase = RunPhase.IDLE
    tasks: Tuple[Task, ...] = ()
    active: Optional[Task] = None
    notification: Optional[Notification] = None
    delay_ms: int = 0
    resync: bool = False

    @classmethod
    def from_state(
        cls,
        state: RunState,
        notification: Optional[Notification] = None,
        *,
        resync: bool = False,
    ) -> "StateUpdate":
        return cls(
            phase=state.phase,
            tasks=tuple(state.queue),
            active=state.active,
            notification=notification,
            delay_ms=state.inter_task_delay_ms,
            resync=resync,
        )

    def with_resync(self) -> "StateUpdate":
        return StateUpdate(
            phase=self.phase,
            tasks=self.tasks,
            active=self.active,
            notification=self.notification,
            delay_ms=self.delay_ms,
            resync=True,
        )

    def payload(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "tasks": [task.as_dict() for task in self.tasks],
            "active": self.active.as_dict() if self.active is not None else None,
            "notification": self.notification.as_dict() if self.notification is not None else None,
            "delay_ms": self.delay_ms,
            "resync": self.resync,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StateUpdate":
        try:
            phase = RunPhase(str(data.get("phase") or RunPhase.IDLE.value))
        except ValueError as exc:
            raise ProtocolError("unknown phase: {0!r}".format(data.get("phase"))) from exc
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise ProtocolError("field tasks must be a list")
        raw_active = data.get("active")
        raw_notification = data.get("notification")
        notification = None
        if isinstance(raw_notification, dict):
            try:
                notification = Notification.from_dict(raw_notification)
            except (KeyError, TypeError, ValueError) as exc:
                raise ProtocolError("invalid notification: {0}".format(exc)) from exc
        return cls(
            phase=phase,
            tasks=tuple(_task(item, "tasks") for item in raw_tasks),
            active=_task(raw_active, "active") if raw_active is not None else None,
            notification=notification,
            delay_ms=_int(data, "delay_ms"),
            resync=bool(data.get("resync", False)),
        )


@dataclass(frozen=True)
class ControllerResponse(Message):
    TYPE: ClassVar[str] = "ControllerResponse"

    success: bool = True
    message: str = ""
    code: str = ""

    def payload(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "code": self.code}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ControllerResponse":
        return cls(
            success=bool(data.get("success", False)),
            message=str(data.get("message") or ""),
            code=str(data.get("code") or ""),
        )


@dataclass(frozen=True)
class CommunicationError(Message):
    """Bridge gave up delivering `original` to the controller."""

    TYPE: ClassVar[str] = "CommunicationError"

    reason: str = ""
    original: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "original": dict(self.original),
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CommunicationError":
        original = data.get("original") or {}
        if not isinstance(original, dict):
            raise ProtocolError("field original must be an object")
        return cls(
            reason=str(data.get("reason") or ""),
            original=original,
            correlation_id=_text(data, "correlation_id"),
        )


# Controller -> Agent


@dataclass(frozen=True)
class ExecuteTask(Message):
    TYPE: ClassVar[str] = "ExecuteTask"

    task: Optional[Task] = None

    def payload(self) -> Dict[str, Any]:
        return {"task": self.task.as_dict() if self.task is not None else None}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ExecuteTask":
        return cls(task=_task(data.get("task"), "task"))


@dataclass(frozen=True)
class ClearTaskContext(Message):
    TYPE: ClassVar[str] = "ClearTaskContext"


# Agent -> Controller


@dataclass(frozen=True)
class AgentReady(Message):
    TYPE: ClassVar[str] = "AgentReady"

    page_url: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {"page_url": self.page_url}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AgentReady":
        return cls(page_url=_text(data, "page_url"))


@dataclass(frozen=True)
class Submitted(Message):
    TYPE: ClassVar[str] = "Submitted"

    task_id: str = ""
    external_id: str = ""
    at: int = 0

    def payload(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "external_id": self.external_id, "at": self.at}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Submitted":
        return cls(
            task_id=_text(data, "task_id", required=True) or "",
            external_id=_text(data, "external_id", required=True) or "",
            at=_int(data, "at"),
        )


@dataclass(frozen=True)
class StatusChanged(Message):
    TYPE: ClassVar[str] = "StatusChanged"

    status: TaskStatus = TaskStatus.PENDING
    task_id: Optional[str] = None
    external_id: Optional[str] = None
    progress: Optional[float] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "task_id": self.task_id,
            "external_id": self.external_id,
            "progress": self.progress,
            "result_ref": self.result_ref,
            "error": self.error,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StatusChanged":
        try:
            status = TaskStatus(str(data.get("status") or ""))
        except ValueError as exc:
            raise ProtocolError("unknown status: {0!r}".format(data.get("status"))) from exc
        task_id = _text(data, "task_id")
        external_id = _text(data, "external_id")
        if task_id is None and external_id is None:
            raise ProtocolError("StatusChanged needs task_id or external_id")
        progress = data.get("progress")
        if progress is not None:
            if isinstance(progress, bool) or not isinstance(progress, (int, float)):
                raise ProtocolError("field progress must be a number")
            try:
                progress = float(progress)
            except OverflowError as exc:
                raise ProtocolError("field progress must be finite") from exc
            if not math.isfinite(progress):
                raise ProtocolError("field progress must be finite")
        return cls(
            status=status,
            task_id=task_id,
            external_id=external_id,
            progress=progress,
            result_ref=_text(data, "result_ref"),
            error=_text(data, "error"),
        )


@dataclass(frozen=True)
class InteractionFailed(Message):
    TYPE: ClassVar[str] = "InteractionFailed"

    task_id: str = ""
    error: str = ""

    def payload(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "error": self.error}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "InteractionFailed":
        return cls(
            task_id=_text(data, "task_id", required=True) or "",
            error=str(data.get("error") or ""),
        )


# Liveness


@dataclass(frozen=True)
class Ping(Message):
    TYPE: ClassVar[str] = "Ping"


@dataclass(frozen=True)
class Pong(Message):
    TYPE: ClassVar[str] = "Pong"


UiCommand = Union[StartBatch, Stop, GetState, SetDelay]
AgentEvent = Union[Submitted, StatusChanged, InteractionFailed]

UI_COMMANDS = (StartBatch, Stop, GetState, SetDelay)
AGENT_EVENTS = (Submitted, StatusChanged, InteractionFailed)

ALL_MESSAGES = (
    StartBatch,
    Stop,
    GetState,
    SetDelay,
    StateUpdate,
    ControllerResponse,
    CommunicationError,
    ExecuteTask,
    ClearTaskContext,
    AgentReady,
    Submitted,
    StatusChanged,
    InteractionFailed,
    Ping,
    Pong,
)
