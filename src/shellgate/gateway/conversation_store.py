"""Conversation Store · conversation history for the orchestrator.

Two implementations of the same async interface:

  InMemoryConversationStore -- process-local, for development and tests
  SqliteConversationStore   -- survives restarts

Tabellen (SQLite):
  conversations  -- Konversationen mit Token-Summe und Metadaten
  messages       -- Nachrichten pro Konversation, append-only
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from shellgate.core.errors import ConversationNotFoundError
from shellgate.models import (
    ChatMessage,
    Conversation,
    ConversationMessage,
    MessageRole,
    estimate_tokens,
)

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def create(self, metadata: dict[str, Any] | None = None) -> Conversation: ...

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        tokens: int = 0,
    ) -> ConversationMessage:
        """Appends a message. Raises ConversationNotFoundError for unknown ids."""
        ...

    async def get_messages_for_context(
        self, conversation_id: str, max_tokens: int
    ) -> list[ChatMessage]:
        """Most recent messages that fit into ``max_tokens``, oldest first."""
        ...

    async def delete(self, conversation_id: str) -> bool: ...

    async def list(self) -> list[Conversation]: ...


def _message_tokens(message: ConversationMessage) -> int:
    return message.tokens or estimate_tokens(message.content)


def trim_to_budget(messages: list[ConversationMessage], max_tokens: int) -> list[ChatMessage]:
    """Walks backwards from the newest message until the budget is exhausted."""
    selected: list[ChatMessage] = []
    used = 0
    for message in reversed(messages):
        cost = _message_tokens(message)
        if used + cost > max_tokens:
            break
        selected.append(message.to_chat())
        used += cost
    selected.reverse()
    return selected


# ============================================================================
# In-Memory
# ============================================================================


class InMemoryConversationStore:
    """Conversations in a dict. Lost on restart."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    async def create(self, metadata: dict[str, Any] | None = None) -> Conversation:
        conversation = Conversation(metadata=dict(metadata or {}))
        self._conversations[conversation.id] = conversation
        logger.debug("Konversation angelegt: %s", conversation.id)
        return conversation

    async def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        tokens: int = 0,
    ) -> ConversationMessage:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        message = ConversationMessage(role=role, content=content, tokens=tokens)
        conversation.messages.append(message)
        conversation.updated_at = message.created_at
        conversation.total_tokens += tokens
        return message

    async def get_messages_for_context(
        self, conversation_id: str, max_tokens: int
    ) -> list[ChatMessage]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        return trim_to_budget(conversation.messages, max_tokens)

    async def delete(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None

    async def list(self) -> list[Conversation]:
        return list(self._conversations.values())


# ============================================================================
# SQLite
# ============================================================================

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL,
    total_tokens    INTEGER NOT NULL DEFAULT 0,
    metadata        TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS messages (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id      TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    role            TEXT NOT NULL,
    content         TEXT NOT NULL,
    tokens          INTEGER NOT NULL DEFAULT 0,
    created_at      REAL NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id)
        ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, seq);
"""


def _ts(dt: datetime) -> float:
    """datetime → Unix-Timestamp."""
    return dt.timestamp()


def _from_ts(ts: float) -> datetime:
    """Unix-Timestamp → datetime (UTC)."""
    return datetime.fromtimestamp(ts, tz=UTC)


class SqliteConversationStore:
    """SQLite-basierte Konversations-Persistenz.

    Idempotent -- kann beliebig oft auf dieselbe Datei instanziiert werden.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        """Lazy-initialisiert die DB-Verbindung und Schema."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(_SCHEMA)
        return self._conn

    def _load_messages(self, conversation_id: str) -> list[ConversationMessage]:
        rows = self.conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq",
            (conversation_id,),
        ).fetchall()
        return [
            ConversationMessage(
                id=row["message_id"],
                role=MessageRole(row["role"]),
                content=row["content"],
                tokens=row["tokens"],
                created_at=_from_ts(row["created_at"]),
            )
            for row in rows
        ]

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["conversation_id"],
            messages=self._load_messages(row["conversation_id"]),
            created_at=_from_ts(row["created_at"]),
            updated_at=_from_ts(row["updated_at"]),
            total_tokens=row["total_tokens"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    async def create(self, metadata: dict[str, Any] | None = None) -> Conversation:
        conversation = Conversation(metadata=dict(metadata or {}))
        self.conn.execute(
            """
            INSERT INTO conversations
                (conversation_id, created_at, updated_at, total_tokens, metadata)
            VALUES (?, ?, ?, 0, ?)
            """,
            (
                conversation.id,
                _ts(conversation.created_at),
                _ts(conversation.updated_at),
                json.dumps(conversation.metadata, default=str),
            ),
        )
        self.conn.commit()
        return conversation

    async def get(self, conversation_id: str) -> Conversation | None:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()
        return self._row_to_conversation(row) if row else None

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        tokens: int = 0,
    ) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content, tokens=tokens)
        now = _ts(message.created_at)
        cursor = self.conn.execute(
            """
            UPDATE conversations
            SET updated_at = ?, total_tokens = total_tokens + ?
            WHERE conversation_id = ?
            """,
            (now, tokens, conversation_id),
        )
        if cursor.rowcount == 0:
            self.conn.rollback()
            raise ConversationNotFoundError(conversation_id)
        self.conn.execute(
            """
            INSERT INTO messages
                (message_id, conversation_id, role, content, tokens, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (message.id, conversation_id, str(message.role), content, tokens, now),
        )
        self.conn.commit()
        return message

    async def get_messages_for_context(
        self, conversation_id: str, max_tokens: int
    ) -> list[ChatMessage]:
        return trim_to_budget(self._load_messages(conversation_id), max_tokens)

    async def delete(self, conversation_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def list(self) -> list[Conversation]:
        rows = self.conn.execute(
            "SELECT * FROM conversations ORDER BY updated_at DESC"
        ).fetchall()
        return [self._row_to_conversation(row) for row in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def create_conversation_store(backend: str, sqlite_path: Path) -> ConversationStore:
    if backend == "sqlite":
        return SqliteConversationStore(sqlite_path)
    return InMemoryConversationStore()


__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "SqliteConversationStore",
    "create_conversation_store",
    "trim_to_budget",
]
