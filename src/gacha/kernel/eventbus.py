"""In-process pub-sub with revocable subscription handles."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional

Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by every `listen`/`subscribe`; `cancel` is idempotent."""

    def __init__(self, revoke: Optional[Callable[[], None]] = None) -> None:
        self._revoke = revoke
        self._active = revoke is not None

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        revoke = self._revoke
        self._revoke = None
        if revoke is not None:
            revoke()


class EventBus:
    """Topic-keyed handlers scoped to one context."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        self._subscribers[topic].append(handler)

        def revoke() -> None:
            handlers = self._subscribers.get(topic)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return

        return Subscription(revoke)

    def publish(self, topic: str, value: Any) -> None:
        handlers = list(self._subscribers.get(topic, []))
        handlers += list(self._subscribers.get("*", []))
        for handler in handlers:
            try:
                handler(value)
            except Exception:
                # Observers are isolated from the publishing context.
                continue

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))
