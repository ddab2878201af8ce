"""Wires controller, page context and UI together over local links."""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Sequence

from gacha.agent.base import PageAutomationAgent
from gacha.bridge.message_bridge import MessageBridge
from gacha.config import Settings, set_task_delay
from gacha.controller import ControllerService
from gacha.history.recorder import TranscriptRecorder
from gacha.history.store import ChatHistoryStore
from gacha.kernel.event_log import EventLogWriter
from gacha.kernel.eventbus import Subscription
from gacha.kernel.types import EventSink
from gacha.link.transport import LocalLink
from gacha.protocol.messages import StateUpdate
from gacha.task.types import CommandResult, Notification, RunPhase
from gacha.ui.client import TOPIC_NOTIFICATION, TOPIC_STATE, UiClient

DEFAULT_PAGE_URL = "local://page"

NotificationObserver = Callable[[Notification, Optional[StateUpdate]], None]


def build_event_log(settings: Settings) -> EventLogWriter:
    return EventLogWriter(
        logs_dir=settings.logs_dir,
        enabled=settings.logs_enabled,
        max_file_bytes=settings.logs_max_file_bytes,
        max_files=settings.logs_max_files,
        redaction=settings.logs_redaction,
    )


class BatchSession:
    """One controller, one page (agent + bridge) and one UI client."""

    def __init__(
        self,
        settings: Settings,
        agent: PageAutomationAgent,
        *,
        event_log: Optional[EventLogWriter] = None,
        history: Optional[ChatHistoryStore] = None,
        page_url: str = DEFAULT_PAGE_URL,
        persist_delay: bool = False,
    ) -> None:
        self._settings = settings
        self._agent = agent
        self._event_log = event_log
        self._history = history
        self._page_url = page_url
        self._persist_delay = persist_delay
        self.controller = ControllerService(
            delay_ms=settings.delay_ms,
            on_delay_changed=self._save_delay if persist_delay else None,
            event_sink=self._sink("controller"),
        )
        self._controller_end, self._page_end = LocalLink.pair(
            "controller<-page",
            "page->controller",
            event_sink=self._sink("link"),
        )
        self._ui_end, self._bridge_ui_end = LocalLink.pair(
            "ui->bridge",
            "bridge<-ui",
            event_sink=self._sink("link"),
        )
        self.bridge: Optional[MessageBridge] = None
        self.ui = UiClient(self._ui_end, event_sink=self._sink("ui"))
        self.recorder: Optional[TranscriptRecorder] = None
        self._subscriptions: List[Subscription] = []
        self._opened = False

    async def open(self, *, visible: bool = True) -> None:
        if self._opened:
            return
        self._opened = True
        self.controller.attach(self._controller_end)
        self.ui.start()
        if self._history is not None:
            self.recorder = TranscriptRecorder(self._history, lambda: self.ui.state)
            self._subscriptions.append(self.ui.subscribe(TOPIC_NOTIFICATION, self.recorder.on_notification))
        await self.reload_page(visible=visible)

    async def reload_page(self, *, visible: bool = True) -> MessageBridge:
        """Tear down the page's bridge (if any) and build a fresh one that re-announces the agent."""

        if self.bridge is not None:
            await self.bridge.destroy()
        self.bridge = MessageBridge(
            self._page_end,
            ui_link=self._bridge_ui_end,
            agent=self._agent,
            page_url=self._page_url,
            settings=self._settings.link,
            event_sink=self._sink("bridge"),
        )
        await self.bridge.start(visible=visible)
        return self.bridge

    def observe(self, observer: NotificationObserver) -> Subscription:
        return self.ui.subscribe(TOPIC_NOTIFICATION, lambda item: observer(item, self.ui.state))

    async def run_batch(
        self,
        prompts: Sequence[str],
        *,
        quantity: int = 1,
        aspect_ratio: str = "1:1",
    ) -> CommandResult:
        """Start a batch and wait until the controller returns to IDLE."""

        finished = asyncio.Event()
        seen_running = False

        def on_state(update: StateUpdate) -> None:
            nonlocal seen_running
            if update.phase == RunPhase.RUNNING:
                seen_running = True
            elif seen_running and update.phase == RunPhase.IDLE:
                finished.set()

        subscription = self.ui.subscribe(TOPIC_STATE, on_state)
        try:
            result = await self.ui.start_batch(prompts, quantity=quantity, aspect_ratio=aspect_ratio)
            if not result.success:
                return result
            await finished.wait()
            return result
        finally:
            subscription.cancel()

    async def stop(self) -> CommandResult:
        return await self.ui.stop()

    async def close_page(self) -> None:
        """Simulate the page context disappearing."""

        if self.bridge is not None:
            await self.bridge.destroy()
        self._page_end.close()
        await asyncio.sleep(0)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        if self.bridge is not None:
            await self.bridge.destroy()
        self.ui.close()
        await self.controller.close()
        self._controller_end.close()
        self._ui_end.close()

    def _save_delay(self, seconds: int) -> None:
        set_task_delay(seconds, workspace_dir=self._settings.project_root)

    def _sink(self, component: str) -> Optional[EventSink]:
        if self._event_log is None:
            return None
        return self._event_log.sink_for(component)
