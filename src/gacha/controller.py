"""Controller context: routes link traffic into the queue manager and back out."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Type, cast

from gacha.kernel.eventbus import Subscription
from gacha.kernel.types import EventSink, emit_safely
from gacha.link.errors import LinkError, LinkUnavailableError, link_error_summary
from gacha.link.transport import Link
from gacha.protocol.codec import Envelope
from gacha.protocol.messages import (
    AgentReady,
    ClearTaskContext,
    ControllerResponse,
    ExecuteTask,
    GetState,
    InteractionFailed,
    Message,
    Ping,
    Pong,
    SetDelay,
    StartBatch,
    StateUpdate,
    StatusChanged,
    Stop,
    Submitted,
)
from gacha.task.queue_manager import TaskQueueManager
from gacha.task.types import CommandResult, Notification, RunPhase, RunState, Task

Handler = Callable[[Link, Message], Awaitable[Optional[Message]]]


@dataclass
class _Attachment:
    link: Link
    listener: Subscription
    on_close: Subscription


class ControllerService:
    """Owns the `TaskQueueManager` and the links to page contexts."""

    def __init__(
        self,
        *,
        delay_ms: int = 2000,
        on_delay_changed: Optional[Callable[[int], None]] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._event_sink = event_sink
        self._on_delay_changed = on_delay_changed
        self._attachments: Dict[str, _Attachment] = {}
        self._agent_link: Optional[Link] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self.queue = TaskQueueManager(
            self,
            delay_ms=delay_ms,
            broadcaster=self._broadcast,
            event_sink=event_sink,
        )
        self._handlers: Dict[Type[Message], Handler] = {
            StartBatch: self._on_start_batch,
            Stop: self._on_stop,
            GetState: self._on_get_state,
            SetDelay: self._on_set_delay,
            AgentReady: self._on_agent_ready,
            Submitted: self._on_agent_event,
            StatusChanged: self._on_agent_event,
            InteractionFailed: self._on_agent_event,
            Ping: self._on_ping,
        }

    @property
    def agent_link(self) -> Optional[Link]:
        return self._agent_link

    def attach(self, link: Link) -> None:
        """Start serving one page link; re-attaching replaces the old registration."""

        self.detach(link)

        async def listener(envelope: Envelope) -> Optional[Message]:
            return await self._handle(link, envelope)

        self._attachments[link.name] = _Attachment(
            link=link,
            listener=link.listen(listener),
            on_close=link.on_close(lambda: self._on_link_closed(link)),
        )
        self._emit("controller.link.attached", {"link": link.name})

    def detach(self, link: Link) -> None:
        attachment = self._attachments.pop(link.name, None)
        if attachment is None:
            return
        attachment.listener.cancel()
        attachment.on_close.cancel()
        if self._agent_link is link:
            self._agent_link = None
        self._emit("controller.link.detached", {"link": link.name})

    def is_available(self) -> bool:
        link = self._agent_link
        return link is not None and link.available

    def execute(self, task: Task) -> None:
        link = self._agent_link
        if link is None:
            raise LinkUnavailableError("no agent registered", message_type=ExecuteTask.TYPE)
        link.notify(ExecuteTask(task=task))

    def clear_task_context(self) -> None:
        link = self._agent_link
        if link is None:
            return
        link.notify(ClearTaskContext())

    async def close(self) -> None:
        for attachment in list(self._attachments.values()):
            self.detach(attachment.link)
        await self.queue.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    async def _handle(self, link: Link, envelope: Envelope) -> Optional[Message]:
        message = envelope.message
        handler = self._handlers.get(type(message))
        if handler is None:
            self._emit("controller.message.unhandled", {"link": link.name, "type": envelope.type})
            return None
        return await handler(link, message)

    async def _on_start_batch(self, link: Link, message: Message) -> Optional[Message]:
        batch = cast(StartBatch, message)
        result = await self.queue.start_batch(batch.prompts, batch.quantity, batch.aspect_ratio)
        return _response(result)

    async def _on_stop(self, link: Link, message: Message) -> Optional[Message]:
        return _response(await self.queue.stop())

    async def _on_get_state(self, link: Link, message: Message) -> Optional[Message]:
        return StateUpdate.from_state(self.queue.snapshot())

    async def _on_set_delay(self, link: Link, message: Message) -> Optional[Message]:
        seconds = cast(SetDelay, message).seconds
        result = self.queue.set_delay(seconds)
        if result.success and self._on_delay_changed is not None:
            try:
                self._on_delay_changed(int(seconds))
            except Exception as exc:
                self._emit("controller.settings.failed", {"error": str(exc)})
        return _response(result)

    async def _on_agent_ready(self, link: Link, message: Message) -> Optional[Message]:
        ready = cast(AgentReady, message)
        self._agent_link = link
        self._emit("controller.agent.ready", {"link": link.name, "page_url": ready.page_url or ""})
        return None

    async def _on_agent_event(self, link: Link, message: Message) -> Optional[Message]:
        if link is not self._agent_link:
            self._emit("controller.agent.foreign_event", {"link": link.name, "type": message.TYPE})
        await self.queue.on_agent_event(message)  # type: ignore[arg-type]
        return None

    async def _on_ping(self, link: Link, message: Message) -> Optional[Message]:
        return Pong()

    def _broadcast(self, state: RunState, notification: Optional[Notification]) -> None:
        update = StateUpdate.from_state(state, notification)
        for attachment in list(self._attachments.values()):
            link = attachment.link
            try:
                link.notify(update)
            except LinkUnavailableError as exc:
                self._emit(
                    "controller.broadcast.unavailable",
                    {"link": link.name, "error": link_error_summary(exc)},
                )
                if link is self._agent_link:
                    self._agent_link = None
                    self._schedule(self._halt_after_unreachable())
            except LinkError as exc:
                self._emit("controller.broadcast.failed", {"link": link.name, "error": link_error_summary(exc)})

    async def _halt_after_unreachable(self) -> None:
        if self.queue.phase == RunPhase.RUNNING:
            self.queue.halt("agent_unreachable")

    def _on_link_closed(self, link: Link) -> None:
        was_agent = link is self._agent_link
        attachment = self._attachments.pop(link.name, None)
        if attachment is not None:
            attachment.listener.cancel()
            attachment.on_close.cancel()
        self._emit("controller.link.closed", {"link": link.name, "agent": was_agent})
        if was_agent:
            self._agent_link = None
            self._schedule(self.queue.on_agent_closed())

    def _schedule(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)


def _response(result: CommandResult) -> ControllerResponse:
    return ControllerResponse(success=result.success, message=result.message, code=result.code)

