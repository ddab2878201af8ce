"""Batch queue state machine: one active task, cancellable inter-task delay."""

from __future__ import annotations

import asyncio
import math
from dataclasses import replace
from typing import Callable, List, Optional, Protocol, Sequence

from gacha.kernel.types import EventSink, emit_safely, new_id, now_ms
from gacha.link.errors import LinkError
from gacha.protocol.messages import (
    AgentEvent,
    InteractionFailed,
    StatusChanged,
    Submitted,
)
from gacha.task.types import (
    ALREADY_RUNNING,
    INVALID_BATCH,
    AspectRatio,
    CommandResult,
    Notification,
    NotificationKind,
    RunPhase,
    RunState,
    Task,
    TaskStatus,
)

PAGE_CLOSED_ERROR = "Page context was closed."


class AgentPort(Protocol):
    """What the manager needs from whoever carries tasks to the page agent."""

    def is_available(self) -> bool:
        ...

    def execute(self, task: Task) -> None:
        """Hand one task to the agent; raises `LinkError` when undeliverable."""

    def clear_task_context(self) -> None:
        ...


StateBroadcaster = Callable[[RunState, Optional[Notification]], None]


class TaskQueueManager:
    """Owns `RunState` exclusively; every mutation goes through a method here."""

    def __init__(
        self,
        agent: AgentPort,
        *,
        delay_ms: int = 2000,
        broadcaster: Optional[StateBroadcaster] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._agent = agent
        self._broadcaster = broadcaster
        self._event_sink = event_sink
        self._phase = RunPhase.IDLE
        self._queue: List[Task] = []
        self._active: Optional[Task] = None
        self._delay_ms = max(0, int(delay_ms))
        self._pending_notification: Optional[Notification] = None
        self._delay_timer: Optional["asyncio.Future[None]"] = None
        self._advance_task: Optional["asyncio.Task[None]"] = None
        self._advance_again = False
        self._generation = 0

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def delay_pending(self) -> bool:
        return self._delay_timer is not None and not self._delay_timer.done()

    def snapshot(self) -> RunState:
        queue = [task.copy() for task in self._queue]
        active = None
        if self._active is not None:
            active = next((task for task in queue if task.id == self._active.id), self._active.copy())
        return RunState(
            phase=self._phase,
            queue=queue,
            active=active,
            inter_task_delay_ms=self._delay_ms,
        )

    async def start_batch(
        self,
        prompts: Sequence[str],
        quantity: int,
        aspect_ratio: object,
    ) -> CommandResult:
        if self._phase != RunPhase.IDLE:
            self._emit("queue.batch.rejected", {"reason": ALREADY_RUNNING, "phase": self._phase.value})
            return CommandResult.rejected(
                ALREADY_RUNNING,
                "Cannot start tasks while processing is active.",
            )
        cleaned = [str(item).strip() for item in prompts if str(item or "").strip()]
        ratio = AspectRatio.parse(aspect_ratio)
        if not cleaned:
            return CommandResult.rejected(INVALID_BATCH, "No prompts to submit.")
        if ratio is None:
            return CommandResult.rejected(
                INVALID_BATCH,
                "Unsupported aspect ratio: {0}".format(aspect_ratio),
            )
        try:
            image_quantity = int(quantity)
        except (TypeError, ValueError):
            image_quantity = 0
        if image_quantity < 1:
            return CommandResult.rejected(INVALID_BATCH, "Image quantity must be at least 1.")

        self._cancel_pending_advance()
        self._generation += 1
        ts = now_ms()
        self._queue = [
            Task(
                id=new_id("task"),
                original_index=index,
                prompt=prompt,
                aspect_ratio=ratio,
                image_quantity=image_quantity,
                created_at=ts,
                updated_at=ts,
            )
            for index, prompt in enumerate(cleaned, start=1)
        ]
        self._active = None
        self._phase = RunPhase.RUNNING
        self._emit(
            "queue.batch.started",
            {"task_count": len(self._queue), "delay_ms": self._delay_ms, "aspect_ratio": ratio.value},
        )
        self._notify(NotificationKind.BATCH_STARTED)
        self._request_advance()
        return CommandResult.ok("{0} tasks added to queue.".format(len(self._queue)))

    async def stop(self) -> CommandResult:
        cleared = len(self._queue)
        self._cancel_pending_advance()
        self._generation += 1
        self._notify(NotificationKind.BATCH_STOPPED, broadcast=False)
        self._clear_agent_context()
        self._queue = []
        self._active = None
        self._phase = RunPhase.IDLE
        self._emit("queue.batch.stopped", {"cleared": cleared})
        self._broadcast()
        return CommandResult.ok("Queue cleared of {0} tasks.".format(cleared))

    def set_delay(self, seconds: int) -> CommandResult:
        try:
            value = int(seconds)
        except (TypeError, ValueError):
            return CommandResult.rejected(INVALID_BATCH, "Delay must be a whole number of seconds.")
        if value < 0:
            return CommandResult.rejected(INVALID_BATCH, "Delay must not be negative.")
        self._delay_ms = value * 1000
        self._emit("queue.delay.changed", {"delay_ms": self._delay_ms})
        return CommandResult.ok("Task delay set to {0}s.".format(value))

    async def on_agent_event(self, event: AgentEvent) -> None:
        if isinstance(event, Submitted):
            self._on_submitted(event)
        elif isinstance(event, StatusChanged):
            self._on_status_changed(event)
        elif isinstance(event, InteractionFailed):
            self._on_interaction_failed(event)
        else:
            self._emit("queue.event.unhandled", {"type": type(event).__name__})

    async def on_agent_closed(self) -> None:
        """The page context holding the agent went away."""

        self._cancel_pending_advance()
        self._generation += 1
        if self._phase != RunPhase.RUNNING:
            self._emit("queue.agent.closed", {"phase": self._phase.value})
            return
        self._notify(NotificationKind.BATCH_STOPPED, broadcast=False)
        self._phase = RunPhase.IDLE
        active = self._active
        if active is not None and active.status.is_active:
            active.status = TaskStatus.FAILED
            active.error = PAGE_CLOSED_ERROR
            active.progress = None
            active.updated_at = now_ms()
        self._emit(
            "queue.agent.closed",
            {"phase": self._phase.value, "failed_task": active.id if active is not None else ""},
        )
        self._broadcast()

    def halt(self, reason: str) -> None:
        """Stop advancing without touching task statuses (link trouble, not task trouble)."""

        self._cancel_pending_advance()
        self._generation += 1
        if self._phase == RunPhase.IDLE:
            return
        self._phase = RunPhase.IDLE
        self._emit("queue.run.halted", {"reason": reason})
        self._broadcast()

    async def settle(self) -> None:
        """Wait until no advancement (including its delay) is in flight."""

        while True:
            task = self._advance_task
            if task is None or task.done():
                return
            await asyncio.wait({task})

    def _on_submitted(self, event: Submitted) -> None:
        task = self._find_by_id(event.task_id)
        if task is None:
            self._emit("queue.event.unmatched", {"type": "Submitted", "task_id": event.task_id})
            return
        if not self._is_current(task):
            self._emit(
                "queue.event.dropped",
                {"type": "Submitted", "task_id": task.id, "status": task.status.value, "reason": "not_active"},
            )
            return
        if not task.external_id and event.external_id:
            task.external_id = event.external_id
            self._emit("queue.task.external_id", {"task_id": task.id, "external_id": task.external_id})
        if task.status != TaskStatus.SUBMITTING:
            self._emit(
                "queue.event.dropped",
                {"type": "Submitted", "task_id": task.id, "status": task.status.value},
            )
            return
        task.status = TaskStatus.IN_PROGRESS
        task.updated_at = int(event.at or now_ms())
        self._emit("queue.task.submitted", {"task_id": task.id, "external_id": task.external_id})
        self._notify(NotificationKind.TASK_UPDATED, task)

    def _on_status_changed(self, event: StatusChanged) -> None:
        task: Optional[Task] = None
        if event.task_id:
            task = self._find_by_id(event.task_id)
        elif event.external_id:
            task = next((item for item in self._queue if item.external_id == event.external_id), None)
        if task is None:
            self._emit(
                "queue.event.unmatched",
                {"type": "StatusChanged", "task_id": event.task_id or "", "external_id": event.external_id or ""},
            )
            return
        if task.status != event.status and not task.status.can_move_to(event.status):
            self._emit(
                "queue.event.dropped",
                {
                    "type": "StatusChanged",
                    "task_id": task.id,
                    "from": task.status.value,
                    "to": event.status.value,
                },
            )
            return
        # Only the dispatched task may enter or stay in flight.
        if not self._is_current(task) and not (task.status.is_active and event.status.is_terminal):
            self._emit(
                "queue.event.dropped",
                {
                    "type": "StatusChanged",
                    "task_id": task.id,
                    "from": task.status.value,
                    "to": event.status.value,
                    "reason": "not_active",
                },
            )
            return
        progress: Optional[int] = None
        if event.status == TaskStatus.IN_PROGRESS and event.progress is not None:
            progress = _progress_percent(event.progress)
            if progress is None:
                self._emit(
                    "queue.event.dropped",
                    {"type": "StatusChanged", "task_id": task.id, "reason": "invalid_progress"},
                )
                return

        task.status = event.status
        task.updated_at = now_ms()
        if event.external_id and not task.external_id:
            task.external_id = event.external_id
        if event.result_ref:
            task.result_ref = event.result_ref
        if event.error:
            task.error = event.error
        if progress is not None:
            task.progress = progress
        elif task.status != TaskStatus.IN_PROGRESS:
            task.progress = None
        self._emit(
            "queue.task.status",
            {"task_id": task.id, "status": task.status.value, "progress": task.progress},
        )

        if task.status.is_terminal:
            self._finish_task(task)
        else:
            self._notify(NotificationKind.TASK_UPDATED, task)

    def _on_interaction_failed(self, event: InteractionFailed) -> None:
        task = self._find_by_id(event.task_id)
        if task is None:
            self._emit("queue.event.unmatched", {"type": "InteractionFailed", "task_id": event.task_id})
            return
        if task.status.is_terminal or not (self._is_current(task) or task.status.is_active):
            self._emit(
                "queue.event.dropped",
                {"type": "InteractionFailed", "task_id": task.id, "status": task.status.value},
            )
            return
        task.status = TaskStatus.FAILED
        task.error = "Page interaction failed: {0}".format(event.error)
        task.progress = None
        task.updated_at = now_ms()
        self._emit("queue.task.interaction_failed", {"task_id": task.id, "error": event.error})
        self._finish_task(task)

    def _finish_task(self, task: Task) -> None:
        self._emit("queue.task.finished", {"task_id": task.id, "status": task.status.value})
        self._notify(NotificationKind.TASK_FINISHED, task)
        if self._active is None or self._active.id == task.id:
            self._request_advance()

    def _request_advance(self) -> None:
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_again = True
            return
        self._advance_again = False
        self._advance_task = asyncio.get_running_loop().create_task(self._advance_loop())

    async def _advance_loop(self) -> None:
        while True:
            self._advance_again = False
            await self._advance_once()
            if not self._advance_again:
                return

    async def _advance_once(self) -> None:
        delayed = False
        while True:
            if self._phase != RunPhase.RUNNING:
                return
            candidate = self._next_pending()
            if candidate is None:
                self._complete_if_exhausted()
                return

            previous = self._active
            if not delayed and previous is not None and previous.status.is_terminal and self._delay_ms > 0:
                generation = self._generation
                self._emit("queue.delay.started", {"delay_ms": self._delay_ms, "next_task": candidate.id})
                fired = await self._wait_inter_task_delay(self._delay_ms)
                delayed = True
                if not fired or generation != self._generation:
                    self._emit("queue.delay.abandoned", {"next_task": candidate.id})
                    return
                if self._phase != RunPhase.RUNNING:
                    return
                if not self._queue:
                    self.halt("queue_cleared_during_delay")
                    return

            if not self._agent.is_available():
                self._emit("queue.agent.unavailable", {"task_id": candidate.id})
                self.halt("agent_unavailable")
                return

            current = self._find_by_id(candidate.id)
            if current is None or current.status != TaskStatus.PENDING:
                self._emit("queue.dispatch.revalidated", {"task_id": candidate.id})
                continue

            self._dispatch(current)
            return

    async def _wait_inter_task_delay(self, delay_ms: int) -> bool:
        timer = asyncio.ensure_future(asyncio.sleep(delay_ms / 1000.0))
        self._delay_timer = timer
        try:
            await asyncio.wait({timer})
        finally:
            if not timer.done():
                timer.cancel()
            if self._delay_timer is timer:
                self._delay_timer = None
        return not timer.cancelled()

    def _dispatch(self, task: Task) -> None:
        task.status = TaskStatus.SUBMITTING
        task.updated_at = now_ms()
        self._active = task
        self._emit("queue.task.dispatched", {"task_id": task.id, "index": task.original_index})
        self._notify(NotificationKind.TASK_STARTED, task)
        try:
            self._agent.execute(task.copy())
        except LinkError as exc:
            # ExecuteTask never left this context, so the task is still unsent.
            if self._active is task:
                self._active = None
            if task.status == TaskStatus.SUBMITTING:
                task.status = TaskStatus.PENDING
                task.updated_at = now_ms()
            self._emit("queue.dispatch.failed", {"task_id": task.id, "error": str(exc)})
            self.halt("dispatch_undeliverable")

    def _complete_if_exhausted(self) -> None:
        if self._active is not None and not self._active.status.is_terminal:
            return
        all_terminal = bool(self._queue) and all(task.status.is_terminal for task in self._queue)
        if all_terminal:
            self._emit(
                "queue.batch.completed",
                {
                    "succeeded": sum(1 for task in self._queue if task.status == TaskStatus.SUCCEEDED),
                    "failed": sum(1 for task in self._queue if task.status == TaskStatus.FAILED),
                },
            )
            self._notify(NotificationKind.BATCH_COMPLETED, broadcast=False)
            self._clear_agent_context()
        self._phase = RunPhase.IDLE
        self._active = None
        self._broadcast()

    def _cancel_pending_advance(self) -> None:
        timer = self._delay_timer
        if timer is not None and not timer.done():
            timer.cancel()
            self._emit("queue.delay.cancelled", {})
        self._delay_timer = None
        task = self._advance_task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        self._advance_task = None
        self._advance_again = False

    def _clear_agent_context(self) -> None:
        try:
            self._agent.clear_task_context()
        except LinkError as exc:
            self._emit("queue.agent.clear_failed", {"error": str(exc)})

    def _next_pending(self) -> Optional[Task]:
        return next((task for task in self._queue if task.status == TaskStatus.PENDING), None)

    def _is_current(self, task: Task) -> bool:
        return self._active is not None and self._active.id == task.id

    def _find_by_id(self, task_id: Optional[str]) -> Optional[Task]:
        if not task_id:
            return None
        return next((task for task in self._queue if task.id == task_id), None)

    def _notify(
        self,
        kind: NotificationKind,
        task: Optional[Task] = None,
        *,
        broadcast: bool = True,
    ) -> None:
        self._pending_notification = Notification(
            kind=kind,
            subject_task_ref=task.id if task is not None else None,
            task=replace(task) if task is not None else None,
        )
        if broadcast:
            self._broadcast()

    def _broadcast(self) -> None:
        notification = self._pending_notification
        snapshot = self.snapshot()
        # At most once per notification id: cleared before handing off.
        self._pending_notification = None
        if self._broadcaster is None:
            return
        try:
            self._broadcaster(snapshot, notification)
        except Exception as exc:
            self._emit("queue.broadcast.failed", {"error": str(exc)})

    def _emit(self, event_type: str, payload: dict) -> None:
        emit_safely(self._event_sink, event_type, payload)


def _progress_percent(value: float) -> Optional[int]:
    try:
        fraction = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(fraction):
        return None
    percent = int(round(fraction * 100))
    return max(0, min(100, percent))


def _current_task() -> Optional["asyncio.Task[object]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
