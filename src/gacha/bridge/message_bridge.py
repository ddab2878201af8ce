"""Page-side relay between the UI, the agent host and the controller.

The bridge keeps no business state. It forwards UI commands and agent
events to the controller with bounded retries, hands controller traffic
to the agent host or the UI, and uses a `ConnectionSupervisor` to notice
and repair a broken controller link.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from gacha.agent.base import PageAutomationAgent
from gacha.agent.host import AgentHost
from gacha.config import LinkSettings
from gacha.kernel.eventbus import Subscription
from gacha.kernel.types import EventSink, emit_safely
from gacha.link.errors import LinkError, LinkUnavailableError, link_error_summary
from gacha.link.supervisor import ConnectionSupervisor, ReconnectPolicy
from gacha.link.transport import Link
from gacha.protocol.codec import Envelope, encode_message
from gacha.protocol.messages import (
    UI_COMMANDS,
    ClearTaskContext,
    CommunicationError,
    ExecuteTask,
    GetState,
    Message,
    Ping,
    Pong,
    StateUpdate,
)

DEFAULT_COMMUNICATION_ERROR = "Failed to communicate with controller"


def supervisor_for(
    link: Link,
    settings: LinkSettings,
    **kwargs: Any,
) -> ConnectionSupervisor:
    policy = ReconnectPolicy(
        max_attempts=settings.max_reconnect_attempts,
        base_delay_ms=settings.backoff_base_ms,
        max_delay_ms=settings.backoff_cap_ms,
        cooldown_ms=settings.cooldown_ms,
    )
    return ConnectionSupervisor(
        link,
        policy=policy,
        probe_timeout_ms=settings.probe_timeout_ms,
        visible_interval_ms=settings.visible_interval_ms,
        hidden_interval_ms=settings.hidden_interval_ms,
        settle_delay_ms=settings.settle_delay_ms,
        failure_threshold=settings.rebuild_failure_threshold,
        **kwargs,
    )


class MessageBridge:
    """One per page context; `destroy()` before building a replacement."""

    def __init__(
        self,
        controller_link: Link,
        *,
        ui_link: Optional[Link] = None,
        agent: Optional[PageAutomationAgent] = None,
        page_url: Optional[str] = None,
        settings: Optional[LinkSettings] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._controller_link = controller_link
        self._ui_link = ui_link
        self._settings = settings or LinkSettings()
        self._event_sink = event_sink
        self._controller_sub: Optional[Subscription] = None
        self._ui_sub: Optional[Subscription] = None
        self._destroyed = False
        self._host: Optional[AgentHost] = None
        if agent is not None:
            self._host = AgentHost(
                agent,
                self.relay_to_controller,
                page_url=page_url,
                event_sink=event_sink,
            )
        self.supervisor = supervisor_for(
            controller_link,
            self._settings,
            relisten=self._relisten,
            on_resync=self._resync_from_supervisor,
            event_sink=event_sink,
        )

    @property
    def agent_host(self) -> Optional[AgentHost]:
        return self._host

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    async def start(self, *, visible: bool = True) -> None:
        self._listen_controller()
        if self._ui_link is not None:
            self._ui_sub = self._ui_link.listen(self._on_ui_message)
        self.supervisor.start(visible=visible)
        self._emit("bridge.started", {"link": self._controller_link.name, "visible": bool(visible)})
        if self._host is not None:
            await self._host.announce()

    async def relay_to_controller(self, message: Message, correlation_id: Optional[str] = None) -> bool:
        """Deliver one message to the controller, rebuilding the link between attempts."""

        policy = self.supervisor.policy
        retries = 0
        while True:
            if self._destroyed:
                return False
            try:
                reply = await self._controller_link.request(
                    message,
                    timeout_ms=self._settings.probe_timeout_ms,
                )
            except LinkError as exc:
                if retries >= policy.max_attempts:
                    self._give_up(message, correlation_id, exc)
                    return False
                retries += 1
                self._emit(
                    "bridge.relay.retry",
                    {"type": message.TYPE, "retry": retries, "error": link_error_summary(exc)},
                )
                if self.supervisor.state.is_reconnecting:
                    await self.supervisor.settled()
                else:
                    await self.supervisor.rebuild()
                continue

            self.supervisor.record_success()
            self._emit("bridge.relay.delivered", {"type": message.TYPE, "retries": retries})
            if reply is not None and isinstance(message, UI_COMMANDS):
                self.relay_to_ui(reply, correlation_id)
            return True

    def relay_to_ui(self, message: Message, correlation_id: Optional[str] = None) -> bool:
        link = self._ui_link
        if link is None:
            return False
        try:
            link.notify(message, correlation_id=correlation_id)
        except LinkUnavailableError as exc:
            self._emit("bridge.ui.unavailable", {"type": message.TYPE, "error": link_error_summary(exc)})
            return False
        return True

    async def resync(self) -> bool:
        """Fetch the controller's full state and hand it to the UI as authoritative."""

        try:
            reply = await self._controller_link.request(
                GetState(),
                timeout_ms=self._settings.probe_timeout_ms,
            )
        except LinkError as exc:
            self._emit("bridge.resync.failed", {"error": link_error_summary(exc)})
            return False
        if not isinstance(reply, StateUpdate):
            self._emit("bridge.resync.failed", {"error": "unexpected reply"})
            return False
        self._emit("bridge.resync.delivered", {"phase": reply.phase.value, "tasks": len(reply.tasks)})
        return self.relay_to_ui(reply.with_resync())

    async def on_visibility_change(self, visible: bool) -> None:
        await self.supervisor.on_visibility_change(visible)

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self._controller_sub is not None:
            self._controller_sub.cancel()
            self._controller_sub = None
        if self._ui_sub is not None:
            self._ui_sub.cancel()
            self._ui_sub = None
        self.supervisor.close()
        if self._host is not None:
            await self._host.close()
        self._emit("bridge.destroyed", {"link": self._controller_link.name})

    def _listen_controller(self) -> None:
        if self._controller_sub is not None:
            self._controller_sub.cancel()
        self._controller_sub = self._controller_link.listen(self._on_controller_message)

    def _relisten(self) -> None:
        if self._destroyed:
            return
        self._listen_controller()
        self._emit("bridge.listener.rebuilt", {"link": self._controller_link.name})

    async def _resync_from_supervisor(self) -> None:
        await self.resync()

    async def _on_controller_message(self, envelope: Envelope) -> Optional[Message]:
        message = envelope.message
        if isinstance(message, Ping):
            return Pong()
        if isinstance(message, StateUpdate):
            self.relay_to_ui(message, envelope.correlation_id)
            return None
        if isinstance(message, ExecuteTask):
            if self._host is None or message.task is None:
                self._emit("bridge.execute.dropped", {"reason": "no agent"})
                return None
            self._host.execute(message.task)
            return None
        if isinstance(message, ClearTaskContext):
            if self._host is not None:
                self._host.clear_task_context()
            return None
        self._emit("bridge.controller.unhandled", {"type": envelope.type})
        return None

    async def _on_ui_message(self, envelope: Envelope) -> Optional[Message]:
        message = envelope.message
        if isinstance(message, Ping):
            return Pong()
        if isinstance(message, UI_COMMANDS):
            await self.relay_to_controller(message, envelope.correlation_id)
            return None
        self._emit("bridge.ui.unhandled", {"type": envelope.type})
        return None

    def _give_up(self, message: Message, correlation_id: Optional[str], exc: LinkError) -> None:
        reason = str(exc) or DEFAULT_COMMUNICATION_ERROR
        self._emit(
            "bridge.relay.exhausted",
            {"type": message.TYPE, "error": link_error_summary(exc), "correlation_id": correlation_id or ""},
        )
        self.relay_to_ui(
            CommunicationError(
                reason=reason,
                original=encode_message(message),
                correlation_id=correlation_id,
            ),
            correlation_id,
        )

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)
