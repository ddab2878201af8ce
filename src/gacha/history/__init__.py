"""Persisted chat transcripts."""

from gacha.history.recorder import TranscriptRecorder, task_status_line
from gacha.history.store import ChatHistoryStore
from gacha.history.types import ChatMessage, ChatSession

__all__ = [
    "ChatHistoryStore",
    "ChatMessage",
    "ChatSession",
    "TranscriptRecorder",
    "task_status_line",
]
