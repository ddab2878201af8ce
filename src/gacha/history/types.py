"""Chat transcript records kept for UI replay."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gacha.kernel.types import new_id, now_ms

MESSAGE_KINDS = ("user", "system", "task-status", "summary")
MAX_SESSION_MESSAGES = 100


@dataclass
class ChatMessage:
    kind: str
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    timestamp: int = field(default_factory=now_ms)
    task_id: Optional[str] = None
    status: Optional[str] = None
    progress: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "content": self.content,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
            "status": self.status,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        kind = str(data.get("kind") or "system")
        progress = data.get("progress")
        return cls(
            kind=kind if kind in MESSAGE_KINDS else "system",
            content=str(data.get("content") or ""),
            id=str(data.get("id") or new_id("msg")),
            timestamp=int(data.get("timestamp") or 0),
            task_id=str(data["task_id"]) if data.get("task_id") else None,
            status=str(data["status"]) if data.get("status") else None,
            progress=int(progress) if progress is not None else None,
        )


@dataclass
class ChatSession:
    id: str
    created_at: int
    messages: List[ChatMessage] = field(default_factory=list)
