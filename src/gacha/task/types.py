"""Task, run-state and notification primitives owned by the controller."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from gacha.kernel.types import new_id, now_ms


class TaskStatus(str, Enum):
    """Lifecycle of one generation request; ranks only ever increase."""

    PENDING = "PENDING"
    SUBMITTING = "SUBMITTING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.SUCCEEDED, TaskStatus.FAILED}

    @property
    def is_active(self) -> bool:
        return self in {TaskStatus.SUBMITTING, TaskStatus.IN_PROGRESS}

    def can_move_to(self, target: "TaskStatus") -> bool:
        if self.is_terminal:
            return False
        return target.rank > self.rank


_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.SUBMITTING: 1,
    TaskStatus.IN_PROGRESS: 2,
    TaskStatus.SUCCEEDED: 3,
    TaskStatus.FAILED: 3,
}


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT = "2:3"
    LANDSCAPE = "3:2"

    @classmethod
    def parse(cls, raw: object) -> Optional["AspectRatio"]:
        if isinstance(raw, AspectRatio):
            return raw
        text = str(raw or "").strip()
        for item in cls:
            if item.value == text:
                return item
        return None


class RunPhase(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CONFIGURING = "CONFIGURING"


class NotificationKind(str, Enum):
    """What just happened; the UI turns these into chat lines."""

    BATCH_STARTED = "BatchStarted"
    TASK_STARTED = "TaskStarted"
    TASK_UPDATED = "TaskUpdated"
    TASK_FINISHED = "TaskFinished"
    BATCH_COMPLETED = "BatchCompleted"
    BATCH_STOPPED = "BatchStopped"


@dataclass
class Task:
    id: str
    original_index: int
    prompt: str
    aspect_ratio: AspectRatio
    image_quantity: int
    status: TaskStatus = TaskStatus.PENDING
    external_id: Optional[str] = None
    progress: Optional[int] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def copy(self) -> "Task":
        return replace(self)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_index": self.original_index,
            "prompt": self.prompt,
            "aspect_ratio": self.aspect_ratio.value,
            "image_quantity": self.image_quantity,
            "status": self.status.value,
            "external_id": self.external_id,
            "progress": self.progress,
            "result_ref": self.result_ref,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        ratio = AspectRatio.parse(data.get("aspect_ratio"))
        if ratio is None:
            raise ValueError("unknown aspect ratio: {0!r}".format(data.get("aspect_ratio")))
        progress = data.get("progress")
        return cls(
            id=str(data["id"]),
            original_index=int(data.get("original_index") or 0),
            prompt=str(data.get("prompt") or ""),
            aspect_ratio=ratio,
            image_quantity=int(data.get("image_quantity") or 1),
            status=TaskStatus(str(data.get("status") or TaskStatus.PENDING.value)),
            external_id=_optional_text(data.get("external_id")),
            progress=int(progress) if progress is not None else None,
            result_ref=_optional_text(data.get("result_ref")),
            error=_optional_text(data.get("error")),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    subject_task_ref: Optional[str] = None
    task: Optional[Task] = None
    id: str = field(default_factory=lambda: new_id("ntf"))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "subject_task_ref": self.subject_task_ref,
            "task": self.task.as_dict() if self.task is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        raw_task = data.get("task")
        return cls(
            kind=NotificationKind(str(data.get("kind") or "")),
            subject_task_ref=_optional_text(data.get("subject_task_ref")),
            task=Task.from_dict(raw_task) if isinstance(raw_task, dict) else None,
            id=str(data.get("id") or new_id("ntf")),
        )


@dataclass
class RunState:
    """Read-only view handed out by `TaskQueueManager.snapshot()`."""

    phase: RunPhase = RunPhase.IDLE
    queue: List[Task] = field(default_factory=list)
    active: Optional[Task] = None
    inter_task_delay_ms: int = 0

    @property
    def in_flight(self) -> List[Task]:
        return [task for task in self.queue if task.status.is_active]

    @property
    def all_terminal(self) -> bool:
        return bool(self.queue) and all(task.status.is_terminal for task in self.queue)


@dataclass(frozen=True)
class CommandResult:
    success: bool
    message: str
    code: str = ""

    @classmethod
    def ok(cls, message: str) -> "CommandResult":
        return cls(success=True, message=message)

    @classmethod
    def rejected(cls, code: str, message: str) -> "CommandResult":
        return cls(success=False, message=message, code=code)


ALREADY_RUNNING = "already_running"
INVALID_BATCH = "invalid_batch"
COMMUNICATION_ERROR = "communication_error"


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text else None
