"""UI-side mirror of controller state, fed through the bridge."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Sequence, Set

from gacha.kernel.eventbus import EventBus, Subscription
from gacha.kernel.types import EventSink, emit_safely, new_id
from gacha.link.errors import LinkError, link_error_summary
from gacha.link.transport import Link
from gacha.protocol.codec import Envelope
from gacha.protocol.messages import (
    CommunicationError,
    ControllerResponse,
    GetState,
    Message,
    SetDelay,
    StartBatch,
    StateUpdate,
    Stop,
    UiCommand,
)
from gacha.task.types import COMMUNICATION_ERROR, CommandResult, Notification

TOPIC_STATE = "state"
TOPIC_NOTIFICATION = "notification"
TOPIC_COMMUNICATION_ERROR = "communication_error"

DEFAULT_COMMAND_TIMEOUT_MS = 60000


class UiClient:
    """Holds the last `StateUpdate` and applies each notification id once."""

    def __init__(
        self,
        link: Link,
        *,
        dedupe_capacity: int = 256,
        command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._link = link
        self._event_sink = event_sink
        self._command_timeout_ms = max(1, int(command_timeout_ms))
        self._bus = EventBus()
        self._state: Optional[StateUpdate] = None
        self._seen_order: Deque[str] = deque()
        self._seen: Set[str] = set()
        self._capacity = max(1, int(dedupe_capacity))
        self._pending: Dict[str, "asyncio.Future[Message]"] = {}
        self._subscription: Optional[Subscription] = None
        self._resync_epoch = 0

    @property
    def state(self) -> Optional[StateUpdate]:
        return self._state

    @property
    def resync_epoch(self) -> int:
        return self._resync_epoch

    def start(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
        self._subscription = self._link.listen(self._on_message)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> Subscription:
        return self._bus.subscribe(topic, handler)

    async def start_batch(
        self,
        prompts: Sequence[str],
        quantity: int = 1,
        aspect_ratio: str = "1:1",
    ) -> CommandResult:
        return await self.send(
            StartBatch(prompts=tuple(prompts), quantity=int(quantity), aspect_ratio=str(aspect_ratio))
        )

    async def stop(self) -> CommandResult:
        return await self.send(Stop())

    async def set_delay(self, seconds: int) -> CommandResult:
        return await self.send(SetDelay(seconds=int(seconds)))

    async def refresh(self) -> CommandResult:
        return await self.send(GetState())

    async def send(self, command: UiCommand) -> CommandResult:
        correlation_id = new_id("req")
        future: "asyncio.Future[Message]" = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        try:
            self._link.notify(command, correlation_id=correlation_id)
            reply = await asyncio.wait_for(future, timeout=self._command_timeout_ms / 1000.0)
        except LinkError as exc:
            self._emit("ui.command.undelivered", {"type": command.TYPE, "error": link_error_summary(exc)})
            return CommandResult.rejected(COMMUNICATION_ERROR, link_error_summary(exc))
        except asyncio.TimeoutError:
            self._emit("ui.command.timeout", {"type": command.TYPE})
            return CommandResult.rejected(COMMUNICATION_ERROR, "No response from controller.")
        finally:
            self._pending.pop(correlation_id, None)
        return _result_for(reply)

    async def _on_message(self, envelope: Envelope) -> Optional[Message]:
        message = envelope.message
        if isinstance(message, StateUpdate):
            self._apply_state(message)
        elif isinstance(message, CommunicationError):
            self._emit(
                "ui.communication.error",
                {"reason": message.reason, "correlation_id": message.correlation_id or ""},
            )
            if not envelope.correlation_id:
                self._bus.publish(TOPIC_COMMUNICATION_ERROR, message)
        elif not isinstance(message, ControllerResponse):
            self._emit("ui.message.unhandled", {"type": envelope.type})
            return None
        self._resolve(envelope.correlation_id, message)
        return None

    def _apply_state(self, update: StateUpdate) -> None:
        if update.resync:
            self._resync_epoch += 1
            self._emit("ui.state.resynced", {"epoch": self._resync_epoch, "phase": update.phase.value})
        self._state = update
        notification = update.notification
        if notification is not None and self._remember(notification):
            self._bus.publish(TOPIC_NOTIFICATION, notification)
        self._bus.publish(TOPIC_STATE, update)

    def _remember(self, notification: Notification) -> bool:
        if notification.id in self._seen:
            self._emit("ui.notification.duplicate", {"id": notification.id})
            return False
        self._seen.add(notification.id)
        self._seen_order.append(notification.id)
        while len(self._seen_order) > self._capacity:
            self._seen.discard(self._seen_order.popleft())
        return True

    def _resolve(self, correlation_id: Optional[str], message: Message) -> None:
        if not correlation_id:
            return
        future = self._pending.get(correlation_id)
        if future is None or future.done():
            return
        future.set_result(message)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)


def _result_for(reply: Message) -> CommandResult:
    if isinstance(reply, ControllerResponse):
        if reply.success:
            return CommandResult.ok(reply.message)
        return CommandResult.rejected(reply.code, reply.message)
    if isinstance(reply, CommunicationError):
        return CommandResult.rejected(COMMUNICATION_ERROR, reply.reason)
    if isinstance(reply, StateUpdate):
        return CommandResult.ok("State refreshed.")
    return CommandResult.rejected(COMMUNICATION_ERROR, "Unexpected reply: {0}".format(reply.TYPE))
