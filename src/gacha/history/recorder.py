"""Turns UI notifications into a persisted chat transcript."""

from __future__ import annotations

from typing import Callable, List, Optional

from gacha.history.store import ChatHistoryStore
from gacha.history.types import ChatMessage
from gacha.protocol.messages import StateUpdate
from gacha.task.types import Notification, NotificationKind, Task, TaskStatus

STATUS_LABELS = {
    TaskStatus.PENDING: "waiting",
    TaskStatus.SUBMITTING: "submitting",
    TaskStatus.IN_PROGRESS: "running",
    TaskStatus.SUCCEEDED: "done",
    TaskStatus.FAILED: "failed",
}


def task_status_line(task: Task) -> str:
    label = STATUS_LABELS.get(task.status, task.status.value)
    line = "Task #{0} {1}".format(task.original_index, label)
    if task.status == TaskStatus.IN_PROGRESS and task.progress:
        line += " ({0}%)".format(task.progress)
    if task.status == TaskStatus.FAILED and task.error:
        line += ": {0}".format(task.error)
    return line


class TranscriptRecorder:
    """Keeps one session's messages in memory and saves after every change."""

    def __init__(
        self,
        store: ChatHistoryStore,
        state_provider: Callable[[], Optional[StateUpdate]],
        *,
        session_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self._state_provider = state_provider
        self._session_id = session_id or store.create_session()
        existing = store.get_session(self._session_id)
        self._messages: List[ChatMessage] = list(existing.messages) if existing is not None else []

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def on_notification(self, notification: Notification) -> None:
        state = self._state_provider()
        tasks = list(state.tasks) if state is not None else []
        kind = notification.kind
        if kind == NotificationKind.BATCH_STARTED:
            if tasks:
                self._append(
                    ChatMessage(
                        kind="user",
                        content="Batch started (x{0}), prompt: {1}".format(len(tasks), tasks[0].prompt),
                    )
                )
        elif kind in {NotificationKind.TASK_STARTED, NotificationKind.TASK_UPDATED, NotificationKind.TASK_FINISHED}:
            task = notification.task or _find(tasks, notification.subject_task_ref)
            if task is not None:
                self._upsert_task(task)
        elif kind == NotificationKind.BATCH_COMPLETED:
            succeeded = sum(1 for task in tasks if task.status == TaskStatus.SUCCEEDED)
            failed = sum(1 for task in tasks if task.status == TaskStatus.FAILED)
            self._append(
                ChatMessage(
                    kind="summary",
                    content="Batch finished: total {0}, succeeded {1}, failed {2}".format(
                        len(tasks),
                        succeeded,
                        failed,
                    ),
                )
            )
        elif kind == NotificationKind.BATCH_STOPPED:
            self._append(ChatMessage(kind="system", content="Batch stopped"))
        self._store.save_messages(self._session_id, self._messages)

    def _append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def _upsert_task(self, task: Task) -> None:
        for message in self._messages:
            if message.kind == "task-status" and message.task_id == task.id:
                message.content = task_status_line(task)
                message.status = task.status.value
                message.progress = task.progress or 0
                return
        self._messages.append(
            ChatMessage(
                kind="task-status",
                content=task_status_line(task),
                task_id=task.id,
                status=task.status.value,
                progress=task.progress or 0,
            )
        )


def _find(tasks: List[Task], task_id: Optional[str]) -> Optional[Task]:
    if not task_id:
        return None
    return next((task for task in tasks if task.id == task_id), None)
