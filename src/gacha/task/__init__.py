"""Task queue primitives."""

from gacha.task.types import (
    AspectRatio,
    CommandResult,
    Notification,
    NotificationKind,
    RunPhase,
    RunState,
    Task,
    TaskStatus,
)

__all__ = [
    "AspectRatio",
    "CommandResult",
    "Notification",
    "NotificationKind",
    "RunPhase",
    "RunState",
    "Task",
    "TaskStatus",
]
