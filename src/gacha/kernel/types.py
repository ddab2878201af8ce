"""Small typed helpers shared by every context."""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, Optional

EventSink = Callable[[str, Dict[str, Any]], None]


def now_ms() -> int:
    return int(time.time() * 1000)


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def new_id(prefix: str) -> str:
    return "{0}_{1}".format(prefix, uuid.uuid4().hex)


def emit_safely(sink: Optional[EventSink], event_type: str, payload: Dict[str, Any]) -> None:
    """Deliver one diagnostic event; sink failures never reach the caller."""

    if sink is None:
        return
    try:
        sink(str(event_type), dict(payload))
    except Exception:
        return
