"""Presentation helpers for gacha CLI output."""

from __future__ import annotations

from typing import Iterable, Optional, TextIO

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from gacha.history.recorder import task_status_line
from gacha.history.types import ChatSession
from gacha.protocol.messages import StateUpdate
from gacha.task.types import Notification, NotificationKind, TaskStatus

_STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.SUBMITTING: "yellow",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "red",
}


def bilingual_text(zh: str, en: Optional[str] = None) -> str:
    if not en:
        return zh
    return "{0} ({1})".format(zh, en)


def render_notice(level: str, zh: str, en: Optional[str] = None) -> str:
    prefix_map = {
        "info": bilingual_text("提示", "Info"),
        "warn": bilingual_text("警告", "Warning"),
        "error": bilingual_text("错误", "Error"),
        "success": bilingual_text("成功", "Success"),
    }
    prefix = prefix_map.get(level, bilingual_text("提示", "Info"))
    return "{0}: {1}".format(prefix, bilingual_text(zh, en))


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False


def notification_line(notification: Notification, state: Optional[StateUpdate] = None) -> str:
    tasks = list(state.tasks) if state is not None else []
    kind = notification.kind
    if kind == NotificationKind.BATCH_STARTED:
        return bilingual_text("开始批量任务", "Batch started") + " x{0}".format(len(tasks))
    if kind == NotificationKind.BATCH_STOPPED:
        return bilingual_text("任务已停止", "Batch stopped")
    if kind == NotificationKind.BATCH_COMPLETED:
        succeeded = sum(1 for task in tasks if task.status == TaskStatus.SUCCEEDED)
        failed = sum(1 for task in tasks if task.status == TaskStatus.FAILED)
        return "{0}: total={1} succeeded={2} failed={3}".format(
            bilingual_text("任务完成统计", "Batch finished"),
            len(tasks),
            succeeded,
            failed,
        )
    task = notification.task
    if task is None and notification.subject_task_ref:
        task = next((item for item in tasks if item.id == notification.subject_task_ref), None)
    if task is None:
        return kind.value
    return task_status_line(task)


def render_notification(
    notification: Notification,
    state: Optional[StateUpdate],
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    line = notification_line(notification, state)
    if _is_tty(stream, is_tty):
        style = "bold"
        if notification.task is not None:
            style = _STATUS_STYLES.get(notification.task.status, "")
        Console(file=stream, highlight=False, soft_wrap=True).print(Text(line, style=style))
        return
    stream.write(line + "\n")
    stream.flush()


def build_task_table(state: StateUpdate) -> Table:
    table = Table(
        title=bilingual_text("任务队列", "Queue") + " [{0}]".format(state.phase.value),
        box=box.ROUNDED,
    )
    table.add_column("#", justify="right")
    table.add_column(bilingual_text("状态", "Status"))
    table.add_column(bilingual_text("进度", "Progress"), justify="right")
    table.add_column(bilingual_text("提示词", "Prompt"), overflow="fold")
    table.add_column(bilingual_text("结果", "Result"), overflow="fold")
    for task in state.tasks:
        progress = "{0}%".format(task.progress) if task.progress is not None else ""
        result = task.result_ref or task.error or ""
        table.add_row(
            str(task.original_index),
            Text(task.status.value, style=_STATUS_STYLES.get(task.status, "")),
            progress,
            task.prompt,
            result,
        )
    return table


def render_state(state: StateUpdate, stream: TextIO, is_tty: Optional[bool] = None) -> None:
    if _is_tty(stream, is_tty):
        Console(file=stream, highlight=False, soft_wrap=True).print(build_task_table(state))
        return
    stream.write("phase={0} tasks={1}\n".format(state.phase.value, len(state.tasks)))
    for task in state.tasks:
        stream.write("{0}\t{1}\n".format(task.status.value, task_status_line(task)))
        if task.result_ref:
            stream.write("\tresult={0}\n".format(task.result_ref))
    stream.flush()


def render_sessions(sessions: Iterable[ChatSession], stream: TextIO) -> None:
    rows = list(sessions)
    if not rows:
        stream.write(bilingual_text("暂无历史会话", "No sessions") + "\n")
        stream.flush()
        return
    for session in rows:
        stream.write("{0}\tcreated_at={1}\tmessages={2}\n".format(session.id, session.created_at, len(session.messages)))
    stream.flush()


def render_session(session: ChatSession, stream: TextIO) -> None:
    stream.write("session={0} created_at={1}\n".format(session.id, session.created_at))
    for message in session.messages:
        stream.write("[{0}] {1}\n".format(message.kind, message.content))
    stream.flush()
