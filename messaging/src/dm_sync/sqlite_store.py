from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Callable

from .channel import BroadcastChannel
from .errors import WriteError
from .keys import key_participants
from .models import Message, MessageDraft, new_server_id
from .scheduling import now_ms
from .store import validate_draft


class SQLiteBackend:
    """Owns a shared SQLite connection and applies message store migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute("PRAGMA user_version = 1")
        elif user_version != 1:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                rowid_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_key TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                participant_a TEXT NOT NULL,
                participant_b TEXT NOT NULL,
                content TEXT NOT NULL,
                media_url TEXT,
                reactions_json TEXT,
                created_at INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_by_conv ON messages (conversation_key, created_at, rowid_seq)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_by_a ON messages (participant_a, created_at)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_by_b ON messages (participant_b, created_at)"
        )


_COLUMNS = "id, conversation_key, sender_id, content, created_at, media_url, reactions_json"


def _row_to_message(row: sqlite3.Row) -> Message:
    reactions = None
    if row["reactions_json"]:
        reactions = {emoji: tuple(users) for emoji, users in json.loads(row["reactions_json"]).items()}
    return Message(
        id=row["id"],
        conversation_key=row["conversation_key"],
        sender_id=row["sender_id"],
        content=row["content"],
        created_at=row["created_at"],
        media_url=row["media_url"],
        reactions=reactions,
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        channel: BroadcastChannel | None = None,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self._backend = backend
        self._channel = channel
        self._now = now_func

    async def list_messages(self, conversation_key: str) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE conversation_key=? ORDER BY created_at ASC, rowid_seq ASC",
                (conversation_key,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    async def create_message(self, draft: MessageDraft) -> Message:
        validate_draft(draft)
        participant_a, participant_b = key_participants(draft.conversation_key)
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                last = cursor.execute("SELECT MAX(created_at) FROM messages").fetchone()[0] or 0
                message = Message(
                    id=new_server_id(),
                    conversation_key=draft.conversation_key,
                    sender_id=draft.sender_id,
                    content=draft.content,
                    created_at=max(self._now(), int(last)),
                    media_url=draft.media_url,
                )
                cursor.execute(
                    """
                    INSERT INTO messages (
                        id, conversation_key, sender_id, participant_a, participant_b,
                        content, media_url, reactions_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (
                        message.id,
                        message.conversation_key,
                        message.sender_id,
                        participant_a,
                        participant_b,
                        message.content,
                        message.media_url,
                        message.created_at,
                    ),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise WriteError(f"sqlite write failed: {exc}") from exc
            finally:
                cursor.close()
        if self._channel is not None:
            self._channel.publish_message(message)
        return message

    async def list_recent(self, user_id: str, limit: int = 50) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE participant_a=? OR participant_b=?
                ORDER BY created_at DESC, rowid_seq DESC
                LIMIT ?
                """,
                (user_id, user_id, max(limit, 0)),
            ).fetchall()
        return [_row_to_message(row) for row in rows]
