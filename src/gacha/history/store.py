"""SQLite persistence for chat transcripts."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import List, Optional

from gacha.history.types import MAX_SESSION_MESSAGES, ChatMessage, ChatSession
from gacha.kernel.types import now_ms


class ChatHistoryStore:
    """One row per session holding its capped message list, plus the current-session pointer."""

    def __init__(self, db_path: Path, *, max_messages: int = MAX_SESSION_MESSAGES) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._max_messages = max(1, int(max_messages))
        self._init_db()

    def _init_db(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_session (
                session_id TEXT PRIMARY KEY,
                created_at_ms INTEGER NOT NULL,
                messages_json TEXT NOT NULL DEFAULT '[]',
                updated_at_ms INTEGER NOT NULL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_chat_session_created
            ON chat_session(created_at_ms)
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_session(self) -> str:
        session_id = uuid.uuid4().hex
        ts = now_ms()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO chat_session (session_id, created_at_ms, messages_json, updated_at_ms)
                VALUES (?, ?, '[]', ?)
                """,
                (session_id, ts, ts),
            )
            self._set_current_locked(session_id)
            self._conn.commit()
        return session_id

    def current_session_id(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM chat_meta WHERE key = 'current_session_id'",
        ).fetchone()
        if row is None or not row["value"]:
            return None
        return str(row["value"])

    def set_current_session(self, session_id: str) -> None:
        with self._lock:
            self._set_current_locked(session_id)
            self._conn.commit()

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        row = self._conn.execute(
            "SELECT * FROM chat_session WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return ChatSession(
            id=str(row["session_id"]),
            created_at=int(row["created_at_ms"]),
            messages=_decode_messages(row["messages_json"]),
        )

    def save_messages(self, session_id: str, messages: List[ChatMessage]) -> bool:
        """Overwrite the session's transcript with the latest `max_messages` entries."""

        kept = list(messages)[-self._max_messages:]
        payload = json.dumps([item.as_dict() for item in kept], ensure_ascii=False)
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE chat_session
                SET messages_json = ?, updated_at_ms = ?
                WHERE session_id = ?
                """,
                (payload, now_ms(), session_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def append_message(self, session_id: str, message: ChatMessage) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        return self.save_messages(session_id, session.messages + [message])

    def list_sessions(self) -> List[ChatSession]:
        rows = self._conn.execute(
            "SELECT * FROM chat_session ORDER BY created_at_ms DESC, rowid DESC",
        ).fetchall()
        return [
            ChatSession(
                id=str(row["session_id"]),
                created_at=int(row["created_at_ms"]),
                messages=_decode_messages(row["messages_json"]),
            )
            for row in rows
        ]

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM chat_session WHERE session_id = ?",
                (session_id,),
            )
            if self._current_locked() == session_id:
                self._conn.execute("DELETE FROM chat_meta WHERE key = 'current_session_id'")
            self._conn.commit()
        return cursor.rowcount > 0

    def _current_locked(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM chat_meta WHERE key = 'current_session_id'",
        ).fetchone()
        return str(row["value"]) if row is not None and row["value"] else None

    def _set_current_locked(self, session_id: str) -> None:
        self._conn.execute(
            """
            INSERT INTO chat_meta (key, value) VALUES ('current_session_id', ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (session_id,),
        )


def _decode_messages(raw: object) -> List[ChatMessage]:
    try:
        items = json.loads(str(raw or "[]"))
    except json.JSONDecodeError:
        return []
    if not isinstance(items, list):
        return []
    return [ChatMessage.from_dict(item) for item in items if isinstance(item, dict)]
