"""In-process link between two contexts with request/notify semantics.

Only encoded dicts cross the link, so neither side ever holds the other's
objects. Each endpoint has one inbox drained in order by a pump task; a
request carries a reply future that the pump resolves with whatever the
listener returns.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from gacha.kernel.eventbus import Subscription
from gacha.kernel.types import EventSink, emit_safely
from gacha.link.errors import LinkError, LinkTimeoutError, LinkUnavailableError
from gacha.protocol.codec import Envelope, decode_message, encode_message
from gacha.protocol.messages import Message, ProtocolError

Listener = Callable[[Envelope], Awaitable[Optional[Message]]]
CloseCallback = Callable[[], None]

DEFAULT_REQUEST_TIMEOUT_MS = 5000


class Link(Protocol):
    """What supervisors, bridges and controllers expect from a transport."""

    name: str

    @property
    def available(self) -> bool:
        ...

    async def request(self, message: Message, *, timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS) -> Optional[Message]:
        ...

    def notify(self, message: Message, *, correlation_id: Optional[str] = None) -> None:
        ...

    def listen(self, handler: Listener) -> Subscription:
        ...

    def on_close(self, callback: CloseCallback) -> Subscription:
        ...

    def close(self) -> None:
        ...


class LocalLink:
    """One end of an in-process link; create both ends with `LocalLink.pair`."""

    def __init__(self, name: str, *, event_sink: Optional[EventSink] = None) -> None:
        self.name = str(name)
        self._event_sink = event_sink
        self._peer: Optional["LocalLink"] = None
        self._listener: Optional[Listener] = None
        self._inbox: "Optional[asyncio.Queue[Tuple[Dict[str, Any], Optional[asyncio.Future[Any]]]]]" = None
        self._pump: Optional["asyncio.Task[None]"] = None
        self._closed = False
        self._close_callbacks: Dict[int, CloseCallback] = {}
        self._callback_ids = itertools.count(1)
        self._listener_ids = itertools.count(1)
        self._listener_token = 0

    @classmethod
    def pair(
        cls,
        name_a: str,
        name_b: str,
        *,
        event_sink: Optional[EventSink] = None,
    ) -> Tuple["LocalLink", "LocalLink"]:
        left = cls(name_a, event_sink=event_sink)
        right = cls(name_b, event_sink=event_sink)
        left._peer = right
        right._peer = left
        return left, right

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listening(self) -> bool:
        return self._listener is not None and not self._closed

    @property
    def available(self) -> bool:
        peer = self._peer
        return not self._closed and peer is not None and peer.listening

    def listen(self, handler: Listener) -> Subscription:
        if self._closed:
            raise LinkUnavailableError("link is closed", link=self.name)
        self._listener = handler
        token = next(self._listener_ids)
        self._listener_token = token
        self._emit("link.listener.registered", {"link": self.name})

        def revoke() -> None:
            if self._listener_token != token:
                return
            self._listener = None
            self._listener_token = 0
            self._emit("link.listener.revoked", {"link": self.name})

        return Subscription(revoke)

    def on_close(self, callback: CloseCallback) -> Subscription:
        key = next(self._callback_ids)
        self._close_callbacks[key] = callback
        return Subscription(lambda: self._close_callbacks.pop(key, None))

    def notify(self, message: Message, *, correlation_id: Optional[str] = None) -> None:
        peer = self._require_peer(message)
        peer._enqueue(encode_message(message, correlation_id=correlation_id), None)

    async def request(
        self,
        message: Message,
        *,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ) -> Optional[Message]:
        peer = self._require_peer(message)
        reply: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        peer._enqueue(encode_message(message), reply)
        try:
            return await asyncio.wait_for(reply, timeout=max(0, int(timeout_ms)) / 1000.0)
        except asyncio.TimeoutError as exc:
            self._emit(
                "link.request.timeout",
                {"link": self.name, "message_type": message.TYPE, "timeout_ms": int(timeout_ms)},
            )
            raise LinkTimeoutError(
                "request timed out",
                link=self.name,
                message_type=message.TYPE,
                timeout_ms=int(timeout_ms),
            ) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener = None
        self._drain_inbox(LinkUnavailableError("link closed", link=self.name))
        pump = self._pump
        self._pump = None
        if pump is not None and not pump.done() and pump is not _current_task():
            pump.cancel()
        self._emit("link.closed", {"link": self.name})
        self._fire_close_callbacks()
        peer = self._peer
        if peer is not None and not peer._closed:
            peer._fire_close_callbacks()

    def _require_peer(self, message: Message) -> "LocalLink":
        peer = self._peer
        if self._closed:
            raise LinkUnavailableError("link is closed", link=self.name, message_type=message.TYPE)
        if peer is None or peer._closed:
            raise LinkUnavailableError(
                "counterpart is closed",
                link=self.name,
                message_type=message.TYPE,
            )
        if peer._listener is None:
            raise LinkUnavailableError(
                "counterpart has no listener",
                link=self.name,
                message_type=message.TYPE,
            )
        return peer

    def _enqueue(self, data: Dict[str, Any], reply: "Optional[asyncio.Future[Any]]") -> None:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        self._inbox.put_nowait((data, reply))
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._run_pump())

    async def _run_pump(self) -> None:
        inbox = self._inbox
        if inbox is None:
            return
        while not self._closed:
            try:
                data, reply = inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._deliver(data, reply)

    async def _deliver(self, data: Dict[str, Any], reply: "Optional[asyncio.Future[Any]]") -> None:
        try:
            envelope = decode_message(data)
        except ProtocolError as exc:
            self._emit("link.message.dropped", {"link": self.name, "error": str(exc)})
            _settle(reply, error=LinkError("malformed message: {0}".format(exc), link=self.name))
            return

        handler = self._listener
        if handler is None:
            self._emit("link.message.unavailable", {"link": self.name, "message_type": envelope.type})
            _settle(
                reply,
                error=LinkUnavailableError("listener went away", link=self.name, message_type=envelope.type),
            )
            return

        try:
            result = await handler(envelope)
        except asyncio.CancelledError:
            _settle(reply, error=LinkUnavailableError("link closed", link=self.name))
            raise
        except Exception as exc:
            self._emit(
                "link.handler.failed",
                {"link": self.name, "message_type": envelope.type, "error": str(exc)},
            )
            _settle(reply, error=LinkError("handler failed: {0}".format(exc), link=self.name))
            return

        if reply is None:
            return
        if result is None:
            _settle(reply, value=None)
            return
        try:
            # Replies cross the boundary encoded, like every other message.
            _settle(reply, value=decode_message(encode_message(result)).message)
        except ProtocolError as exc:
            _settle(reply, error=LinkError("malformed reply: {0}".format(exc), link=self.name))

    def _drain_inbox(self, error: LinkError) -> None:
        inbox = self._inbox
        if inbox is None:
            return
        while True:
            try:
                _, reply = inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            _settle(reply, error=error)

    def _fire_close_callbacks(self) -> None:
        for callback in list(self._close_callbacks.values()):
            try:
                callback()
            except Exception as exc:
                self._emit("link.close_callback.failed", {"link": self.name, "error": str(exc)})

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        emit_safely(self._event_sink, event_type, payload)


def _settle(
    reply: "Optional[asyncio.Future[Any]]",
    *,
    value: Any = None,
    error: Optional[BaseException] = None,
) -> None:
    if reply is None or reply.done():
        return
    if error is not None:
        reply.set_exception(error)
    else:
        reply.set_result(value)


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
