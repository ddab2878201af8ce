from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Tuple

import pytest

from gacha.agent.base import AgentInteractionError, PageAutomationAgent, TaskReporter
from gacha.agent.dryrun import DryRunAgent, load_agent
from gacha.agent.host import DEFAULT_INTERACTION_ERROR, AgentHost
from gacha.agent.status_map import UNKNOWN_PLATFORM_ERROR, map_platform_status, status_event_from_record
from gacha.protocol.messages import AgentReady, InteractionFailed, Message, StatusChanged, Submitted
from gacha.task.types import AspectRatio, Task, TaskStatus


def _task(prompt: str = "a red kite", index: int = 1) -> Task:
    return Task(
        id="task_{0}".format(index),
        original_index=index,
        prompt=prompt,
        aspect_ratio=AspectRatio.PORTRAIT,
        image_quantity=2,
    )


class _Outbox:
    def __init__(self) -> None:
        self.messages: List[Message] = []

    async def send(self, message: Message) -> bool:
        self.messages.append(message)
        return True


class _BrokenAgent(PageAutomationAgent):
    agent_id = "broken"

    def __init__(self, error: Exception) -> None:
        self._error = error

    async def execute(self, task: Task, reporter: TaskReporter) -> None:
        raise self._error


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("SUCCEEDED", TaskStatus.SUCCEEDED),
        ("completed", TaskStatus.SUCCEEDED),
        ("failed", TaskStatus.FAILED),
        ("internal_error", TaskStatus.FAILED),
        ("generating", TaskStatus.IN_PROGRESS),
        ("pending_processing", TaskStatus.IN_PROGRESS),
        ("pending_submission", TaskStatus.SUBMITTING),
        ("queued", TaskStatus.SUBMITTING),
        ("pending", TaskStatus.PENDING),
        ("mystery", None),
        (None, None),
    ],
)
def test_platform_status_mapping(raw, expected):
    assert map_platform_status(raw) == expected


def test_status_event_from_record_fills_result_and_errors():
    succeeded = status_event_from_record(
        {"id": "ext-1", "status": "succeeded", "generations": [{"url": "https://img/1"}, {"url": "https://img/2"}]}
    )
    failed = status_event_from_record({"id": "ext-2", "status": "failed"})
    running = status_event_from_record({"id": "ext-3", "status": "processing", "progress_pct": 0.4})

    assert succeeded.result_ref == "https://img/1"
    assert succeeded.external_id == "ext-1"
    assert failed.error == UNKNOWN_PLATFORM_ERROR
    assert running.progress == pytest.approx(0.4)
    assert running.result_ref is None
    assert status_event_from_record({"status": "failed"}) is None
    assert status_event_from_record({"id": "ext-4", "status": "??"}) is None


def test_dryrun_agent_reports_through_host():
    async def _run():
        outbox = _Outbox()
        agent = DryRunAgent(step_delay_ms=0)
        host = AgentHost(agent, outbox.send, page_url="local://page")

        assert await host.announce() is True
        host.execute(_task())
        await host.settle()

        messages = outbox.messages
        assert isinstance(messages[0], AgentReady)
        assert messages[0].page_url == "local://page"
        assert isinstance(messages[1], Submitted)
        assert messages[1].task_id == "task_1"
        statuses = [item.status for item in messages if isinstance(item, StatusChanged)]
        assert statuses == [TaskStatus.IN_PROGRESS] * 3 + [TaskStatus.SUCCEEDED]
        assert messages[-1].result_ref == "dryrun://{0}/0".format(messages[1].external_id)
        assert host.current_task is None
        assert agent.context == {"ratio": "2:3", "quantity": 2}

        host.clear_task_context()
        assert agent.context == {}

    asyncio.run(_run())


def test_dryrun_fail_marker_yields_platform_failure():
    async def _run():
        outbox = _Outbox()
        host = AgentHost(DryRunAgent(step_delay_ms=0), outbox.send)
        host.execute(_task("a broken vase [FAIL]"))
        await host.settle()

        last = outbox.messages[-1]
        assert isinstance(last, StatusChanged)
        assert last.status == TaskStatus.FAILED
        assert last.error == "Simulated failure"

    asyncio.run(_run())


@pytest.mark.parametrize(
    "error,expected",
    [
        (AgentInteractionError("prompt field not found"), "prompt field not found"),
        (RuntimeError(), DEFAULT_INTERACTION_ERROR),
    ],
)
def test_agent_exception_becomes_interaction_failed(error, expected):
    async def _run():
        outbox = _Outbox()
        host = AgentHost(_BrokenAgent(error), outbox.send)
        host.execute(_task())
        await host.settle()

        assert outbox.messages == [InteractionFailed(task_id="task_1", error=expected)]
        assert host.current_task is None

    asyncio.run(_run())


def test_submission_without_current_task_is_not_attributed():
    async def _run():
        outbox = _Outbox()
        events: List[Tuple[str, Dict[str, Any]]] = []
        host = AgentHost(
            DryRunAgent(step_delay_ms=0),
            outbox.send,
            event_sink=lambda event_type, payload: events.append((event_type, payload)),
        )

        await host.on_platform_submitted("ext-orphan")
        await host.on_platform_update([{"id": "ext-orphan", "status": "bogus"}, "junk"])

        assert outbox.messages == []
        assert ("agent.submitted.unattributed", {"external_id": "ext-orphan"}) in events
        assert any(event_type == "agent.status.unmapped" for event_type, _ in events)

    asyncio.run(_run())


def test_load_agent_resolves_dryrun_and_factories():
    assert isinstance(load_agent("dryrun"), DryRunAgent)
    assert isinstance(load_agent("gacha.agent.dryrun:DryRunAgent", options={"step_delay_ms": 1}), DryRunAgent)
    with pytest.raises(ValueError):
        load_agent("not-a-reference")
