"""Heartbeat, bounded reconnection and visibility-aware polling for one link."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from gacha.kernel.types import EventSink, emit_safely, monotonic_ms, now_ms
from gacha.link.errors import LinkError, link_error_summary
from gacha.link.transport import Link
from gacha.protocol.messages import Ping, Pong

Clock = Callable[[], int]
ResyncCallback = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    cooldown_ms: int = 60000

    def delay_for(self, attempt: int) -> int:
        exponent = max(0, int(attempt) - 1)
        return min(int(self.base_delay_ms) * (2 ** exponent), int(self.max_delay_ms))


@dataclass
class ConnectionState:
    consecutive_failures: int = 0
    reconnect_attempts: int = 0
    last_success_at: Optional[int] = None
    is_reconnecting: bool = False
    poll_interval_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConnectionSupervisor:
    """Keeps one link healthy; all timers live on the owning event loop."""

    def __init__(
        self,
        link: Link,
        *,
        policy: Optional[ReconnectPolicy] = None,
        probe_timeout_ms: int = 5000,
        visible_interval_ms: int = 30000,
        hidden_interval_ms: int = 60000,
        settle_delay_ms: int = 100,
        failure_threshold: int = 1,
        relisten: Optional[Callable[[], None]] = None,
        on_resync: Optional[ResyncCallback] = None,
        event_sink: Optional[EventSink] = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self._link = link
        self._policy = policy or ReconnectPolicy()
        self._probe_timeout_ms = max(1, int(probe_timeout_ms))
        self._visible_interval_ms = max(1, int(visible_interval_ms))
        self._hidden_interval_ms = max(1, int(hidden_interval_ms))
        self._settle_delay_ms = max(0, int(settle_delay_ms))
        self._failure_threshold = max(1, int(failure_threshold))
        self._relisten = relisten
        self._on_resync = on_resync
        self._event_sink = event_sink
        self._clock = clock
        self._state = ConnectionState()
        self._visible = True
        self._suppressed_since: Optional[int] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None
        self._rebuild_done: Optional["asyncio.Future[bool]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(**asdict(self._state))

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def suppressed(self) -> bool:
        return self._suppressed_since is not None

    def interval_for(self, visible: bool) -> int:
        return self._visible_interval_ms if visible else self._hidden_interval_ms

    def start(self, *, visible: bool = True) -> None:
        self._closed = False
        self._visible = bool(visible)
        self.record_success()
        self.schedule_polling(self.interval_for(self._visible))

    async def probe(self) -> bool:
        try:
            reply = await self._link.request(Ping(), timeout_ms=self._probe_timeout_ms)
        except LinkError as exc:
            self._record_failure(link_error_summary(exc))
            return False
        if not isinstance(reply, Pong):
            self._record_failure("unexpected probe reply: {0}".format(type(reply).__name__))
            return False
        self._state.consecutive_failures = 0
        self._state.last_success_at = now_ms()
        self._emit("link.probe.ok", {"link": self._link.name})
        return True

    def record_success(self) -> None:
        """A message went through: the link is connected again."""

        restored = self._state.reconnect_attempts > 0 or self._suppressed_since is not None
        self._state.consecutive_failures = 0
        self._state.reconnect_attempts = 0
        self._state.last_success_at = now_ms()
        self._suppressed_since = None
        if restored:
            self._emit("link.restored", {"link": self._link.name})

    def schedule_polling(self, interval_ms: int) -> None:
        self._cancel_polling()
        interval = max(1, int(interval_ms))
        self._state.poll_interval_ms = interval
        if self._closed:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(interval))
        self._emit("link.polling.scheduled", {"link": self._link.name, "interval_ms": interval})

    async def rebuild(self) -> bool:
        """Re-register, back off, re-probe; returns True when the link is healthy again."""

        if self._state.is_reconnecting:
            self._emit("link.rebuild.skipped", {"link": self._link.name, "reason": "in_flight"})
            return False
        if self._suppressed_since is not None:
            elapsed = self._clock() - self._suppressed_since
            if elapsed < self._policy.cooldown_ms:
                self._emit(
                    "link.rebuild.suppressed",
                    {"link": self._link.name, "cooldown_left_ms": self._policy.cooldown_ms - elapsed},
                )
                return False
            self._suppressed_since = None
            self._state.reconnect_attempts = 0
            self._state.consecutive_failures = 0
            self._emit("link.rebuild.cooldown_over", {"link": self._link.name})

        self._state.is_reconnecting = True
        self._state.reconnect_attempts += 1
        attempt = self._state.reconnect_attempts
        done: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
        self._rebuild_done = done
        healthy = False
        try:
            delay_ms = self._policy.delay_for(attempt)
            self._emit(
                "link.rebuild.started",
                {"link": self._link.name, "attempt": attempt, "delay_ms": delay_ms},
            )
            if self._relisten is not None:
                self._relisten()
            await asyncio.sleep(delay_ms / 1000.0)
            healthy = await self.probe()
            if healthy:
                self._state.reconnect_attempts = 0
                self._state.consecutive_failures = 0
                self._emit("link.rebuild.succeeded", {"link": self._link.name, "attempt": attempt})
                await self._resync()
            else:
                self._emit("link.rebuild.failed", {"link": self._link.name, "attempt": attempt})
                if attempt >= self._policy.max_attempts:
                    self._suppressed_since = self._clock()
                    self._emit(
                        "link.rebuild.exhausted",
                        {"link": self._link.name, "cooldown_ms": self._policy.cooldown_ms},
                    )
        finally:
            self._state.is_reconnecting = False
            if self._rebuild_done is done:
                self._rebuild_done = None
            if not done.done():
                done.set_result(healthy)
        return healthy

    async def settled(self) -> None:
        """Wait for an in-flight rebuild, if any."""

        done = self._rebuild_done
        if done is not None and not done.done():
            await asyncio.wait({done})

    async def on_visibility_change(self, visible: bool) -> None:
        was_visible = self._visible
        self._visible = bool(visible)
        if self._visible and not was_visible:
            self._emit("link.visibility.foreground", {"link": self._link.name})
            try:
                await asyncio.sleep(self._settle_delay_ms / 1000.0)
                if await self.probe():
                    await self._resync()
                else:
                    await self.rebuild()
            finally:
                self.schedule_polling(self.interval_for(True))
        elif was_visible and not self._visible:
            self._emit("link.visibility.background", {"link": self._link.name})
            self.schedule_polling(self.interval_for(False))

    def notify_unreachable(self, reason: str = "") -> None:
        """The transport reported the counterpart as gone; rebuild in the background."""

        self._record_failure(reason or "counterpart unreachable")
        if self._closed or self._state.is_reconnecting:
            return
        task = asyncio.get_running_loop().create_task(self.rebuild())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def close(self) -> None:
        self._closed = True
        self._cancel_polling()
        for task in list(self._background):
            if not task.done():
                task.cancel()
        self._background.clear()
        self._state = ConnectionState()
        self._suppressed_since = None
        self._emit("link.supervisor.closed", {"link": self._link.name})

    async def _poll_loop(self, interval_ms: int) -> None:
        while not self._closed:
            await asyncio.sleep(interval_ms / 1000.0)
            if await self.probe():
                if self._state.reconnect_attempts > 0 or self._suppressed_since is not None:
                    self.record_success()
                continue
            if self._state.consecutive_failures >= self._failure_threshold:
                await self.rebuild()

    async def _resync(self) -> None:
        if self._on_resync is None:
            return
        try:
            await self._on_resync()
        except LinkError as exc:
            self._emit("link.resync.failed", {"link": self._link.name, "error": link_error_summary(exc)})

    def _record_failure(self, reason: str) -> None:
        self._state.consecutive_failures += 1
        self._emit(
            "link.probe.failed",
            {
                "link": self._link.name,
                "consecutive_failures": self._state.consecutive_failures,
                "reason": reason,
            },
        )

    def _cancel_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)
