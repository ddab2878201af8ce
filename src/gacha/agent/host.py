"""Runs a `PageAutomationAgent` inside the page context and reports for it."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from gacha.agent.base import PageAutomationAgent
from gacha.agent.status_map import status_event_from_record
from gacha.kernel.types import EventSink, emit_safely, now_ms
from gacha.protocol.messages import AgentReady, InteractionFailed, Message, Submitted
from gacha.task.types import Task

Sender = Callable[[Message], Awaitable[bool]]

DEFAULT_INTERACTION_ERROR = "Unknown error during page interaction."


class _BoundReporter:
    def __init__(self, host: "AgentHost", task: Task) -> None:
        self._host = host
        self._task = task

    async def submitted(self, external_id: str) -> None:
        await self._host.on_platform_submitted(external_id)

    async def platform_update(self, records: Iterable[Dict[str, Any]]) -> None:
        await self._host.on_platform_update(records)


class AgentHost:
    """Tracks the task currently on the page and turns agent outcomes into events."""

    def __init__(
        self,
        agent: PageAutomationAgent,
        send: Sender,
        *,
        page_url: Optional[str] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._agent = agent
        self._send = send
        self._page_url = page_url
        self._event_sink = event_sink
        self._current: Optional[Task] = None
        self._running: Set["asyncio.Task[None]"] = set()

    @property
    def agent(self) -> PageAutomationAgent:
        return self._agent

    @property
    def current_task(self) -> Optional[Task]:
        return self._current.copy() if self._current is not None else None

    async def announce(self) -> bool:
        delivered = await self._send(AgentReady(page_url=self._page_url))
        self._emit("agent.ready", {"page_url": self._page_url or "", "delivered": delivered})
        return delivered

    def execute(self, task: Task) -> None:
        """Start the page interaction in the background; outcomes flow as events."""

        self._current = task.copy()
        self._emit("agent.execute.started", {"task_id": task.id, "agent": self._agent.agent_id})
        job = asyncio.get_running_loop().create_task(self._run(task.copy()))
        self._running.add(job)
        job.add_done_callback(self._running.discard)

    def clear_task_context(self) -> None:
        self._current = None
        try:
            self._agent.clear_task_context()
        except Exception as exc:
            self._emit("agent.clear_context.failed", {"error": str(exc)})
            return
        self._emit("agent.context.cleared", {})

    async def on_platform_submitted(self, external_id: str) -> None:
        task = self._current
        if task is None or not external_id:
            self._emit("agent.submitted.unattributed", {"external_id": external_id or ""})
            return
        if not task.external_id:
            task.external_id = external_id
        await self._deliver(Submitted(task_id=task.id, external_id=external_id, at=now_ms()))

    async def on_platform_update(self, records: Iterable[Dict[str, Any]]) -> None:
        for record in records:
            if not isinstance(record, dict):
                continue
            event = status_event_from_record(record)
            if event is None:
                self._emit(
                    "agent.status.unmapped",
                    {"external_id": str(record.get("id") or ""), "status": str(record.get("status") or "")},
                )
                continue
            current = self._current
            if (
                current is not None
                and current.external_id == event.external_id
                and event.status.is_terminal
            ):
                self._current = None
            await self._deliver(event)

    async def close(self) -> None:
        for job in list(self._running):
            job.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()
        self._current = None
        await self._agent.close()

    async def settle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def _run(self, task: Task) -> None:
        try:
            await self._agent.execute(task, _BoundReporter(self, task))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or DEFAULT_INTERACTION_ERROR
            self._emit("agent.execute.failed", {"task_id": task.id, "error": error})
            if self._current is not None and self._current.id == task.id:
                self._current = None
            await self._deliver(InteractionFailed(task_id=task.id, error=error))
            return
        self._emit("agent.execute.finished", {"task_id": task.id})

    async def _deliver(self, message: Message) -> None:
        delivered = await self._send(message)
        if not delivered:
            self._emit("agent.event.undelivered", {"type": message.TYPE})

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)
