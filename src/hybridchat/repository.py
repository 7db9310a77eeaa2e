"""SQLite-backed repository for chat threads, messages, documents, and models."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence
from uuid import uuid4

import aiosqlite

from .schemas.chat import (
    BlockedMetadata,
    ChatDocument,
    ChatMessage,
    ChatThread,
    Citation,
    ModelConfig,
)

logger = logging.getLogger(__name__)

SOFT_DELETE_CONCURRENCY = 8


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


def _new_id() -> str:
    return uuid4().hex


def _thread_from_row(row: aiosqlite.Row) -> ChatThread:
    try:
        extension = json.loads(row["extension"] or "[]")
    except json.JSONDecodeError:
        extension = []
    return ChatThread(
        id=row["id"],
        user_id=row["user_id"],
        user_name=row["user_name"],
        name=row["name"],
        persona_message=row["persona_message"] or "",
        persona_message_title=row["persona_message_title"] or "",
        model_id=row["model_id"],
        image_model_id=row["image_model_id"],
        extension=[str(item) for item in extension if item],
        bookmarked=bool(row["bookmarked"]),
        is_deleted=bool(row["is_deleted"]),
        created_at=_normalize_db_timestamp(row["created_at"]),
        last_message_at=_normalize_db_timestamp(row["last_message_at"]),
    )


def _message_from_row(row: aiosqlite.Row) -> ChatMessage:
    blocked: BlockedMetadata | None = None
    raw_blocked = row["blocked"]
    if raw_blocked:
        try:
            blocked = BlockedMetadata.model_validate(json.loads(raw_blocked))
        except (json.JSONDecodeError, ValueError):
            logger.warning("Discarding unreadable blocked metadata on %s", row["id"])
    return ChatMessage(
        id=row["id"],
        thread_id=row["thread_id"],
        user_id=row["user_id"],
        role=row["role"],
        name=row["name"] or "",
        content=row["content"] or "",
        multi_modal_image=row["multi_modal_image"],
        model_id=row["model_id"],
        model_name=row["model_name"],
        blocked=blocked,
        is_deleted=bool(row["is_deleted"]),
        created_at=_normalize_db_timestamp(row["created_at"]),
    )


def _model_from_row(row: aiosqlite.Row) -> ModelConfig:
    return ModelConfig(
        id=row["id"],
        friendly_name=row["friendly_name"],
        instance_name=row["instance_name"],
        deployment_name=row["deployment_name"],
        api_version=row["api_version"],
        api_key=row["api_key"] or "",
        enabled=bool(row["enabled"]),
        is_default=bool(row["is_default"]),
        sort_order=row["sort_order"] if row["sort_order"] is not None else 100,
        description=row["description"],
    )


class ChatRepository:
    """Persist chat threads, messages, documents, citations, and model configs."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                user_name TEXT,
                name TEXT NOT NULL DEFAULT 'New Chat',
                persona_message TEXT,
                persona_message_title TEXT,
                model_id TEXT,
                image_model_id TEXT,
                extension TEXT,
                bookmarked INTEGER NOT NULL DEFAULT 0,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                last_message_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES threads(id),
                user_id TEXT,
                role TEXT NOT NULL,
                name TEXT,
                content TEXT,
                multi_modal_image TEXT,
                model_id TEXT,
                model_name TEXT,
                blocked TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES threads(id),
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS citations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS models (
                id TEXT PRIMARY KEY,
                friendly_name TEXT NOT NULL,
                instance_name TEXT NOT NULL,
                deployment_name TEXT NOT NULL,
                api_version TEXT NOT NULL,
                api_key TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                is_default INTEGER NOT NULL DEFAULT 0,
                sort_order INTEGER DEFAULT 100,
                description TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_threads_user_id ON threads(user_id);
            CREATE INDEX IF NOT EXISTS idx_messages_thread_id ON messages(thread_id);
            CREATE INDEX IF NOT EXISTS idx_documents_thread_id ON documents(thread_id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # Threads -----------------------------------------------------------

    async def create_thread(
        self,
        user_id: str,
        *,
        user_name: str | None = None,
        name: str | None = None,
        persona_message: str = "",
        persona_message_title: str = "",
        model_id: str | None = None,
        image_model_id: str | None = None,
        extension: Sequence[str] = (),
    ) -> ChatThread:
        """Insert a new thread and return it."""

        assert self._connection is not None
        thread_id = _new_id()
        async with self._write_lock:
            await self._connection.execute(
                """
                INSERT INTO threads(
                    id, user_id, user_name, name, persona_message,
                    persona_message_title, model_id, image_model_id, extension
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    user_id,
                    user_name,
                    name or "New Chat",
                    persona_message,
                    persona_message_title,
                    model_id,
                    image_model_id,
                    json.dumps(list(extension)),
                ),
            )
            await self._connection.commit()
        thread = await self.get_thread(thread_id)
        assert thread is not None
        return thread

    async def get_thread(
        self, thread_id: str, *, user_id: str | None = None
    ) -> ChatThread | None:
        """Return a non-deleted thread, optionally scoped to its owner."""

        assert self._connection is not None
        query = "SELECT * FROM threads WHERE id = ? AND is_deleted = 0"
        params: tuple[Any, ...] = (thread_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (thread_id, user_id)
        cursor = await self._connection.execute(query + " LIMIT 1", params)
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _thread_from_row(row)

    async def update_thread(self, thread: ChatThread) -> ChatThread:
        """Write every mutable field of ``thread`` (last write wins)."""

        assert self._connection is not None
        async with self._write_lock:
            await self._connection.execute(
                """
                UPDATE threads
                SET name = ?, persona_message = ?, persona_message_title = ?,
                    model_id = ?, image_model_id = ?, extension = ?, bookmarked = ?
                WHERE id = ?
                """,
                (
                    thread.name,
                    thread.persona_message,
                    thread.persona_message_title,
                    thread.model_id,
                    thread.image_model_id,
                    json.dumps(thread.extension),
                    int(thread.bookmarked),
                    thread.id,
                ),
            )
            await self._connection.commit()
        return thread

    async def update_image_model(
        self, thread_id: str, image_model_id: str | None
    ) -> None:
        assert self._connection is not None
        async with self._write_lock:
            await self._connection.execute(
                "UPDATE threads SET image_model_id = ? WHERE id = ?",
                (image_model_id, thread_id),
            )
            await self._connection.commit()

    async def soft_delete_thread(
        self, thread_id: str, *, concurrency: int = SOFT_DELETE_CONCURRENCY
    ) -> int:
        """Soft-delete a thread with all of its messages and documents.

        Rows are flagged in a bounded-concurrency batch that is fully awaited
        and committed before returning. Returns the number of rows flagged.
        """

        assert self._connection is not None
        message_ids = await self._ids_for_thread("messages", thread_id)
        document_ids = await self._ids_for_thread("documents", thread_id)

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _flag(table: str, row_id: str) -> None:
            assert self._connection is not None
            async with semaphore:
                await self._connection.execute(
                    f"UPDATE {table} SET is_deleted = 1 WHERE id = ?",
                    (row_id,),
                )

        async with self._write_lock:
            await asyncio.gather(
                *(_flag("messages", row_id) for row_id in message_ids),
                *(_flag("documents", row_id) for row_id in document_ids),
            )
            await self._connection.execute(
                "UPDATE threads SET is_deleted = 1 WHERE id = ?", (thread_id,)
            )
            await self._connection.commit()

        flagged = len(message_ids) + len(document_ids) + 1
        logger.info(
            "Soft-deleted thread %s (%d messages, %d documents)",
            thread_id,
            len(message_ids),
            len(document_ids),
        )
        return flagged

    async def _ids_for_thread(self, table: str, thread_id: str) -> list[str]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            f"SELECT id FROM {table} WHERE thread_id = ? AND is_deleted = 0",
            (thread_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [row["id"] for row in rows]

    # Messages ----------------------------------------------------------

    async def create_message(
        self,
        thread_id: str,
        role: str,
        name: str,
        content: str,
        *,
        user_id: str | None = None,
        model_id: str | None = None,
        model_name: str | None = None,
        multi_modal_image: str | None = None,
        blocked: BlockedMetadata | None = None,
    ) -> ChatMessage:
        """Persist a single chat message and touch the thread timestamp."""

        assert self._connection is not None
        message_id = _new_id()
        blocked_json = (
            json.dumps(blocked.model_dump(by_alias=True, exclude_none=True))
            if blocked is not None
            else None
        )
        async with self._write_lock:
            await self._connection.execute(
                """
                INSERT INTO messages(
                    id, thread_id, user_id, role, name, content,
                    multi_modal_image, model_id, model_name, blocked
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    thread_id,
                    user_id,
                    role,
                    name,
                    content,
                    multi_modal_image,
                    model_id,
                    model_name,
                    blocked_json,
                ),
            )
            await self._connection.execute(
                "UPDATE threads SET last_message_at = CURRENT_TIMESTAMP WHERE id = ?",
                (thread_id,),
            )
            await self._connection.commit()

        cursor = await self._connection.execute(
            "SELECT * FROM messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        assert row is not None
        return _message_from_row(row)

    async def find_top_messages(
        self, thread_id: str, limit: int
    ) -> list[ChatMessage]:
        """Return the ``limit`` most recent messages, newest first."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT * FROM messages
            WHERE thread_id = ? AND is_deleted = 0
            ORDER BY rowid DESC
            LIMIT ?
            """,
            (thread_id, limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_message_from_row(row) for row in rows]

    async def list_messages(self, thread_id: str) -> list[ChatMessage]:
        """Return every non-deleted message in insertion order."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT * FROM messages
            WHERE thread_id = ? AND is_deleted = 0
            ORDER BY rowid ASC
            """,
            (thread_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_message_from_row(row) for row in rows]

    # Documents and citations ------------------------------------------

    async def add_document(
        self, thread_id: str, user_id: str, name: str
    ) -> ChatDocument:
        assert self._connection is not None
        document_id = _new_id()
        async with self._write_lock:
            await self._connection.execute(
                "INSERT INTO documents(id, thread_id, user_id, name) VALUES (?, ?, ?, ?)",
                (document_id, thread_id, user_id, name),
            )
            await self._connection.commit()
        return ChatDocument(
            id=document_id, thread_id=thread_id, user_id=user_id, name=name
        )

    async def find_documents(self, thread_id: str) -> list[ChatDocument]:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT * FROM documents
            WHERE thread_id = ? AND is_deleted = 0
            ORDER BY rowid ASC
            """,
            (thread_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            ChatDocument(
                id=row["id"],
                thread_id=row["thread_id"],
                user_id=row["user_id"],
                name=row["name"],
                is_deleted=bool(row["is_deleted"]),
                created_at=_normalize_db_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    async def create_citations(
        self, user_id: str, citations: Iterable[Citation]
    ) -> None:
        assert self._connection is not None
        rows = [
            (
                citation.id,
                user_id,
                json.dumps(citation.model_dump(by_alias=True, exclude_none=True)),
            )
            for citation in citations
        ]
        if not rows:
            return
        async with self._write_lock:
            await self._connection.executemany(
                "INSERT OR REPLACE INTO citations(id, user_id, content) VALUES (?, ?, ?)",
                rows,
            )
            await self._connection.commit()

    async def get_citation(self, citation_id: str, user_id: str) -> Citation | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT content FROM citations WHERE id = ? AND user_id = ? LIMIT 1",
            (citation_id, user_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return Citation.model_validate(json.loads(row["content"]))

    # Models ------------------------------------------------------------

    async def list_models(self) -> list[ModelConfig]:
        assert self._connection is not None
        cursor = await self._connection.execute("SELECT * FROM models")
        rows = await cursor.fetchall()
        await cursor.close()
        return [_model_from_row(row) for row in rows]

    async def get_model(self, model_id: str) -> ModelConfig | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT * FROM models WHERE id = ? LIMIT 1", (model_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return _model_from_row(row)

    async def upsert_model(self, config: ModelConfig) -> None:
        assert self._connection is not None
        async with self._write_lock:
            if config.is_default:
                await self._connection.execute(
                    "UPDATE models SET is_default = 0 WHERE id != ?", (config.id,)
                )
            await self._connection.execute(
                """
                INSERT INTO models(
                    id, friendly_name, instance_name, deployment_name, api_version,
                    api_key, enabled, is_default, sort_order, description
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    friendly_name = excluded.friendly_name,
                    instance_name = excluded.instance_name,
                    deployment_name = excluded.deployment_name,
                    api_version = excluded.api_version,
                    api_key = excluded.api_key,
                    enabled = excluded.enabled,
                    is_default = excluded.is_default,
                    sort_order = excluded.sort_order,
                    description = excluded.description,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    config.id,
                    config.friendly_name,
                    config.instance_name,
                    config.deployment_name,
                    config.api_version,
                    config.api_key,
                    int(config.enabled),
                    int(config.is_default),
                    config.sort_order,
                    config.description,
                ),
            )
            await self._connection.commit()

    async def set_default_model(self, model_id: str) -> None:
        assert self._connection is not None
        async with self._write_lock:
            await self._connection.execute(
                "UPDATE models SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END",
                (model_id,),
            )
            await self._connection.commit()

    async def delete_model(self, model_id: str) -> bool:
        assert self._connection is not None
        async with self._write_lock:
            cursor = await self._connection.execute(
                "DELETE FROM models WHERE id = ?", (model_id,)
            )
            deleted = cursor.rowcount > 0
            await cursor.close()
            await self._connection.commit()
        return deleted


__all__ = ["ChatRepository"]
