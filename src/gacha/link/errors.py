"""Link-level exceptions shared by transports, supervisor and bridge."""

from __future__ import annotations

from typing import Any, Dict


class LinkError(RuntimeError):
    """Raised when a message cannot travel over a link."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


class LinkUnavailableError(LinkError):
    """Raised when the counterpart is closed or has no listener."""


class LinkTimeoutError(LinkError, TimeoutError):
    """Raised when one request exceeds its timeout."""


def link_error_summary(exc: BaseException) -> str:
    detail = exc.details if isinstance(exc, LinkError) else {}
    segments = [str(exc) or type(exc).__name__]
    for key in ("link", "message_type", "timeout_ms"):
        value = detail.get(key)
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)
