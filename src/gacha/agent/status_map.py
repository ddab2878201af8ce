"""Translate platform status records into controller events."""

from __future__ import annotations

from typing import Any, Dict, Optional

from gacha.protocol.messages import StatusChanged
from gacha.task.types import TaskStatus

UNKNOWN_PLATFORM_ERROR = "Unknown error from platform"

# Order matters: the first rule whose needle occurs in the status wins.
_RULES = (
    (("succeeded", "completed"), TaskStatus.SUCCEEDED),
    (("failed", "error"), TaskStatus.FAILED),
    (("processing", "generating", "pending_processing", "running"), TaskStatus.IN_PROGRESS),
    (("pending_submission", "queued"), TaskStatus.SUBMITTING),
    (("pending",), TaskStatus.PENDING),
)


def map_platform_status(raw: Optional[str]) -> Optional[TaskStatus]:
    if not raw:
        return None
    status = str(raw).lower()
    for needles, mapped in _RULES:
        if any(needle in status for needle in needles):
            return mapped
    return None


def status_event_from_record(record: Dict[str, Any]) -> Optional[StatusChanged]:
    """Build a `StatusChanged` keyed by external id, or None when unusable."""

    external_id = str(record.get("id") or "").strip()
    if not external_id:
        return None
    status = map_platform_status(record.get("status"))
    if status is None:
        return None

    progress = record.get("progress_pct")
    if isinstance(progress, bool) or not isinstance(progress, (int, float)):
        progress = None

    result_ref = None
    if status == TaskStatus.SUCCEEDED:
        generations = record.get("generations")
        if isinstance(generations, list) and generations and isinstance(generations[0], dict):
            url = generations[0].get("url")
            result_ref = str(url) if url else None

    error = record.get("failure_reason") or None
    if status == TaskStatus.FAILED and not error:
        error = UNKNOWN_PLATFORM_ERROR

    return StatusChanged(
        status=status,
        external_id=external_id,
        progress=float(progress) if progress is not None else None,
        result_ref=result_ref,
        error=str(error) if error else None,
    )
