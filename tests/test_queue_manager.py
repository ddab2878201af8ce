from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from gacha.link.errors import LinkUnavailableError
from gacha.protocol.codec import decode_message
from gacha.protocol.messages import InteractionFailed, StatusChanged, Submitted
from gacha.task.queue_manager import PAGE_CLOSED_ERROR, TaskQueueManager
from gacha.task.types import (
    ALREADY_RUNNING,
    INVALID_BATCH,
    Notification,
    NotificationKind,
    RunPhase,
    RunState,
    Task,
    TaskStatus,
)


class _FakeAgent:
    def __init__(self) -> None:
        self.available = True
        self.fail_execute = False
        self.executed: List[Task] = []
        self.cleared = 0

    def is_available(self) -> bool:
        return self.available

    def execute(self, task: Task) -> None:
        if self.fail_execute:
            raise LinkUnavailableError("peer gone")
        self.executed.append(task)

    def clear_task_context(self) -> None:
        self.cleared += 1


class _Harness:
    def __init__(self, delay_ms: int = 0) -> None:
        self.agent = _FakeAgent()
        self.updates: List[Tuple[RunState, Optional[Notification]]] = []
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.manager = TaskQueueManager(
            self.agent,
            delay_ms=delay_ms,
            broadcaster=lambda state, notification: self.updates.append((state, notification)),
            event_sink=lambda event_type, payload: self.events.append((event_type, payload)),
        )

    @property
    def kinds(self) -> List[NotificationKind]:
        return [item.kind for _, item in self.updates if item is not None]

    @property
    def event_types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]

    async def finish(self, task: Task, status: TaskStatus = TaskStatus.SUCCEEDED) -> None:
        external_id = "ext-{0}".format(task.original_index)
        await self.manager.on_agent_event(Submitted(task_id=task.id, external_id=external_id))
        await self.manager.on_agent_event(
            StatusChanged(status=status, external_id=external_id, result_ref="img://{0}".format(external_id))
        )


async def _spin(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_batch_runs_tasks_one_at_a_time_in_order():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        result = await manager.start_batch(["a cat", "a dog", "a fox"], 2, "2:3")
        assert result.success
        assert result.message == "3 tasks added to queue."
        await manager.settle()
        assert [task.prompt for task in harness.agent.executed] == ["a cat"]
        assert manager.snapshot().active.status == TaskStatus.SUBMITTING

        for expected in range(1, 4):
            current = harness.agent.executed[-1]
            assert current.original_index == expected
            assert len(manager.snapshot().in_flight) == 1
            await harness.finish(current)
            await manager.settle()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert state.all_terminal
        assert [task.prompt for task in harness.agent.executed] == ["a cat", "a dog", "a fox"]
        assert all(task.image_quantity == 2 for task in harness.agent.executed)
        assert harness.agent.cleared == 1
        assert harness.kinds[0] == NotificationKind.BATCH_STARTED
        assert harness.kinds[-1] == NotificationKind.BATCH_COMPLETED
        assert harness.kinds.count(NotificationKind.TASK_FINISHED) == 3

    asyncio.run(_run())


def test_start_batch_rejects_invalid_input_and_concurrent_runs():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        empty = await manager.start_batch(["  ", ""], 1, "1:1")
        ratio = await manager.start_batch(["a"], 1, "16:9")
        quantity = await manager.start_batch(["a"], 0, "1:1")
        assert not empty.success and empty.code == INVALID_BATCH
        assert not ratio.success and "16:9" in ratio.message
        assert not quantity.success and quantity.code == INVALID_BATCH
        assert manager.phase == RunPhase.IDLE

        first = await manager.start_batch(["a"], 1, "1:1")
        second = await manager.start_batch(["b"], 1, "1:1")
        assert first.success
        assert not second.success
        assert second.code == ALREADY_RUNNING
        assert second.message == "Cannot start tasks while processing is active."
        assert [task.prompt for task in manager.snapshot().queue] == ["a"]
        await manager.stop()

    asyncio.run(_run())


def test_stop_during_delay_cancels_next_dispatch():
    async def _run():
        harness = _Harness(delay_ms=60_000)
        manager = harness.manager

        await manager.start_batch(["one", "two", "three"], 1, "1:1")
        await manager.settle()
        await harness.finish(harness.agent.executed[0])
        await _spin()
        assert manager.delay_pending

        result = await manager.stop()
        assert result.message == "Queue cleared of 3 tasks."
        assert not manager.delay_pending
        await manager.settle()
        await _spin()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert state.queue == []
        assert len(harness.agent.executed) == 1
        assert harness.agent.cleared == 1
        assert NotificationKind.BATCH_STOPPED in harness.kinds

    asyncio.run(_run())


def test_set_delay_applies_to_next_wait_only():
    async def _run():
        harness = _Harness(delay_ms=30)
        manager = harness.manager

        await manager.start_batch(["one", "two"], 1, "1:1")
        await manager.settle()
        await harness.finish(harness.agent.executed[0])
        await _spin()
        assert manager.delay_pending

        result = manager.set_delay(600)
        assert result.success
        assert result.message == "Task delay set to 600s."
        await asyncio.wait_for(manager.settle(), timeout=5)

        assert [task.prompt for task in harness.agent.executed] == ["one", "two"]
        assert manager.snapshot().inter_task_delay_ms == 600_000
        await manager.stop()

    asyncio.run(_run())


def test_set_delay_rejects_negative_values():
    harness = _Harness()
    result = harness.manager.set_delay(-1)
    assert not result.success
    assert harness.manager.snapshot().inter_task_delay_ms == 0


def test_status_updates_only_move_forward():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one", "two"], 1, "1:1")
        await manager.settle()
        task = harness.agent.executed[0]
        await manager.on_agent_event(Submitted(task_id=task.id, external_id="ext-1"))
        await manager.on_agent_event(
            StatusChanged(status=TaskStatus.IN_PROGRESS, external_id="ext-1", progress=0.5)
        )
        assert manager.snapshot().queue[0].progress == 50

        await manager.on_agent_event(StatusChanged(status=TaskStatus.SUBMITTING, task_id=task.id))
        assert manager.snapshot().queue[0].status == TaskStatus.IN_PROGRESS
        assert "queue.event.dropped" in harness.event_types

        await manager.on_agent_event(StatusChanged(status=TaskStatus.SUCCEEDED, task_id=task.id, result_ref="r"))
        await manager.on_agent_event(StatusChanged(status=TaskStatus.FAILED, task_id=task.id, error="late"))
        first = manager.snapshot().queue[0]
        assert first.status == TaskStatus.SUCCEEDED
        assert first.error is None
        assert first.progress is None
        assert first.external_id == "ext-1"
        await manager.stop()

    asyncio.run(_run())


def test_unmatched_external_id_is_logged_and_ignored():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()
        before = manager.snapshot()
        await manager.on_agent_event(StatusChanged(status=TaskStatus.SUCCEEDED, external_id="someone-else"))

        after = manager.snapshot()
        assert after.queue[0].status == before.queue[0].status
        assert after.phase == RunPhase.RUNNING
        assert "queue.event.unmatched" in harness.event_types
        await manager.stop()

    asyncio.run(_run())


def test_interaction_failure_fails_task_and_advances():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one", "two"], 1, "1:1")
        await manager.settle()
        first = harness.agent.executed[0]
        await manager.on_agent_event(InteractionFailed(task_id=first.id, error="button missing"))
        await manager.settle()

        state = manager.snapshot()
        assert state.queue[0].status == TaskStatus.FAILED
        assert state.queue[0].error == "Page interaction failed: button missing"
        assert [task.prompt for task in harness.agent.executed] == ["one", "two"]
        await manager.stop()

    asyncio.run(_run())


def test_closed_page_fails_active_task_and_idles():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one", "two"], 1, "1:1")
        await manager.settle()
        await manager.on_agent_closed()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert state.queue[0].status == TaskStatus.FAILED
        assert state.queue[0].error == PAGE_CLOSED_ERROR
        assert state.queue[1].status == TaskStatus.PENDING
        assert harness.kinds[-1] == NotificationKind.BATCH_STOPPED

    asyncio.run(_run())


def test_undeliverable_dispatch_rolls_task_back_to_pending():
    async def _run():
        harness = _Harness()
        harness.agent.fail_execute = True
        manager = harness.manager

        result = await manager.start_batch(["one", "two"], 1, "1:1")
        assert result.success
        await manager.settle()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert state.active is None
        assert [task.status for task in state.queue] == [TaskStatus.PENDING, TaskStatus.PENDING]
        assert "queue.dispatch.failed" in harness.event_types

    asyncio.run(_run())


def test_unavailable_agent_halts_without_failing_tasks():
    async def _run():
        harness = _Harness()
        harness.agent.available = False
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert state.queue[0].status == TaskStatus.PENDING
        assert harness.agent.executed == []
        assert ("queue.run.halted", {"reason": "agent_unavailable"}) in harness.events

    asyncio.run(_run())


def test_each_notification_is_broadcast_once():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()
        await harness.finish(harness.agent.executed[0])
        await manager.settle()

        ids = [item.id for _, item in harness.updates if item is not None]
        assert len(ids) == len(set(ids))
        assert len(ids) == len(harness.kinds)

    asyncio.run(_run())


def test_events_for_undispatched_tasks_cannot_put_them_in_flight():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one", "two", "three"], 1, "1:1")
        await manager.settle()
        first = harness.agent.executed[0]
        second = manager.snapshot().queue[1]

        await manager.on_agent_event(StatusChanged(status=TaskStatus.IN_PROGRESS, task_id=second.id, progress=0.3))
        await manager.on_agent_event(Submitted(task_id=second.id, external_id="stray"))
        await manager.on_agent_event(InteractionFailed(task_id=second.id, error="not mine"))

        state = manager.snapshot()
        assert [task.id for task in state.in_flight] == [first.id]
        assert state.queue[1].status == TaskStatus.PENDING
        assert state.queue[1].external_id is None
        dropped = [payload for event_type, payload in harness.events if event_type == "queue.event.dropped"]
        assert [payload.get("reason") for payload in dropped[:2]] == ["not_active", "not_active"]

        for _ in range(3):
            await harness.finish(harness.agent.executed[-1])
            await manager.settle()

        state = manager.snapshot()
        assert state.phase == RunPhase.IDLE
        assert [task.status for task in state.queue] == [TaskStatus.SUCCEEDED] * 3
        assert harness.kinds[-1] == NotificationKind.BATCH_COMPLETED

    asyncio.run(_run())


def test_non_finite_progress_is_dropped_without_touching_the_task():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()
        task = harness.agent.executed[0]
        await manager.on_agent_event(Submitted(task_id=task.id, external_id="ext-1"))
        await manager.on_agent_event(StatusChanged(status=TaskStatus.IN_PROGRESS, external_id="ext-1", progress=0.4))
        before = manager.snapshot().queue[0]

        await manager.on_agent_event(
            StatusChanged(status=TaskStatus.IN_PROGRESS, external_id="ext-1", progress=float("nan"))
        )
        await manager.on_agent_event(
            StatusChanged(status=TaskStatus.IN_PROGRESS, external_id="ext-1", progress=float("inf"))
        )

        after = manager.snapshot().queue[0]
        assert after.progress == 40
        assert after.updated_at == before.updated_at
        assert ("queue.event.dropped", {"type": "StatusChanged", "task_id": task.id, "reason": "invalid_progress"}) in (
            harness.events
        )
        await manager.stop()

    asyncio.run(_run())


def test_decoded_progress_outside_unit_range_is_clamped():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()
        task = harness.agent.executed[0]
        await manager.on_agent_event(Submitted(task_id=task.id, external_id="ext-1"))

        over = decode_message(
            {"type": "StatusChanged", "payload": {"external_id": "ext-1", "status": "IN_PROGRESS", "progress": 1.7}}
        )
        await manager.on_agent_event(over.message)
        assert manager.snapshot().queue[0].progress == 100

        under = decode_message(
            {"type": "StatusChanged", "payload": {"external_id": "ext-1", "status": "IN_PROGRESS", "progress": -0.2}}
        )
        await manager.on_agent_event(under.message)
        assert manager.snapshot().queue[0].progress == 0
        await manager.stop()

    asyncio.run(_run())


def test_late_submitted_still_records_external_id():
    async def _run():
        harness = _Harness()
        manager = harness.manager

        await manager.start_batch(["one"], 1, "1:1")
        await manager.settle()
        task = harness.agent.executed[0]

        await manager.on_agent_event(StatusChanged(status=TaskStatus.IN_PROGRESS, task_id=task.id))
        await manager.on_agent_event(Submitted(task_id=task.id, external_id="ext-late"))
        assert manager.snapshot().queue[0].external_id == "ext-late"
        assert manager.snapshot().queue[0].status == TaskStatus.IN_PROGRESS

        await manager.on_agent_event(StatusChanged(status=TaskStatus.SUCCEEDED, external_id="ext-late", result_ref="r"))
        await manager.settle()

        state = manager.snapshot()
        assert state.queue[0].status == TaskStatus.SUCCEEDED
        assert state.phase == RunPhase.IDLE
        assert harness.kinds[-1] == NotificationKind.BATCH_COMPLETED

    asyncio.run(_run())
