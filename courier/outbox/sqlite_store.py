"""
SQLite-backed Outbox Store.

Single-host deployments (and the test-suite) use this instead of the REST
store. WAL mode lets several dispatcher processes share one database file;
claims are a single conditional UPDATE, so at most one of them wins.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import aiosqlite

from ..exceptions import TransientStoreError
from ..models import AuditEntry, MessageDraft, MessageId, MessageRecord, MessageStatus
from .store import OutboxStore, next_status

logger = logging.getLogger(__name__)


_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS chats (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    address    TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id           INTEGER REFERENCES chats(id),
    sender            TEXT NOT NULL,
    destination       TEXT NOT NULL,
    body              TEXT,
    media_url         TEXT,
    status            TEXT NOT NULL,
    in_progress       INTEGER NOT NULL DEFAULT 0,
    attempt_count     INTEGER NOT NULL DEFAULT 0,
    remote_message_id TEXT,
    claimed_at        TEXT,
    created_at        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_claimable
    ON messages(status, in_progress, created_at);

CREATE TABLE IF NOT EXISTS audit_log (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    event      TEXT NOT NULL,
    message_id INTEGER,
    details    TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteOutboxStore(OutboxStore):
    """Outbox Store on a local SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open connection and run DDL."""
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(_DDL)
        await self._conn.commit()
        logger.info("Outbox database initialised: %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the shared connection, translating sqlite errors."""
        if self._conn is None:
            raise RuntimeError("SqliteOutboxStore not initialised, call init() first")
        try:
            yield self._conn
        except aiosqlite.Error as e:
            raise TransientStoreError(f"sqlite: {e}") from e

    async def list_claimable(self, limit: int, max_attempts: int) -> list[MessageRecord]:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                """
                SELECT * FROM messages
                WHERE status = ? AND in_progress = 0 AND attempt_count < ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (MessageStatus.APPROVED.value, max_attempts, limit),
            )
        return [self._row_to_record(row) for row in rows]

    async def claim(self, message_id: MessageId) -> MessageRecord | None:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                """
                UPDATE messages
                SET in_progress = 1, claimed_at = ?
                WHERE id = ? AND status = ? AND in_progress = 0
                RETURNING *
                """,
                (_now(), message_id, MessageStatus.APPROVED.value),
            )
            await conn.commit()
        return self._row_to_record(rows[0]) if rows else None

    async def mark_sent(self, message_id: MessageId, remote_message_id: str | None) -> None:
        async with self.get_connection() as conn:
            # A late replay must not overwrite a row that already went terminal.
            cursor = await conn.execute(
                """
                UPDATE messages
                SET status = ?, in_progress = 0, claimed_at = NULL,
                    remote_message_id = COALESCE(?, remote_message_id)
                WHERE id = ? AND status = ?
                """,
                (MessageStatus.SENT.value, remote_message_id, message_id, MessageStatus.APPROVED.value),
            )
            await conn.commit()
        if cursor.rowcount == 0:
            logger.warning("Message %s not marked as sent: no longer approved", message_id)
        else:
            logger.debug("Message %s marked as sent", message_id)

    async def mark_failed_attempt(
        self,
        message_id: MessageId,
        new_attempt_count: int,
        max_attempts: int,
    ) -> None:
        status = next_status(new_attempt_count, max_attempts)
        async with self.get_connection() as conn:
            # Terminal rows are left alone; attempt_count never goes backwards.
            await conn.execute(
                """
                UPDATE messages
                SET status = ?, in_progress = 0, claimed_at = NULL,
                    attempt_count = MAX(attempt_count, ?)
                WHERE id = ? AND status = ?
                """,
                (status.value, new_attempt_count, message_id, MessageStatus.APPROVED.value),
            )
            await conn.commit()

    async def release_stale_claims(self, older_than: float) -> int:
        """Clear claims held longer than ``older_than`` seconds (crashed dispatchers)."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than)).isoformat()
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE messages
                SET in_progress = 0, claimed_at = NULL
                WHERE in_progress = 1 AND status = ? AND claimed_at < ?
                """,
                (MessageStatus.APPROVED.value, cutoff),
            )
            await conn.commit()
            return cursor.rowcount

    async def insert_message(self, draft: MessageDraft) -> MessageRecord:
        created_at = _now()
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO messages
                    (chat_id, sender, destination, body, media_url, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.chat_id,
                    draft.sender.value,
                    draft.destination,
                    draft.body,
                    draft.media_url,
                    draft.status.value,
                    created_at,
                ),
            )
            await conn.commit()
            message_id = cursor.lastrowid
        return MessageRecord(
            id=message_id,
            created_at=datetime.fromisoformat(created_at),
            **draft.model_dump(),
        )

    async def insert_audit(self, entry: AuditEntry) -> None:
        async with self.get_connection() as conn:
            await conn.execute(
                "INSERT INTO audit_log (event, message_id, details, created_at) VALUES (?, ?, ?, ?)",
                (
                    entry.event,
                    entry.message_id,
                    json.dumps(entry.details),
                    entry.created_at.isoformat(),
                ),
            )
            await conn.commit()

    async def find_or_create_chat(self, address: str) -> MessageId:
        async with self.get_connection() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO chats (address, created_at) VALUES (?, ?)",
                (address, _now()),
            )
            await conn.commit()
            rows = await conn.execute_fetchall(
                "SELECT id FROM chats WHERE address = ?", (address,)
            )
        return rows[0]["id"]

    async def get_message(self, message_id: MessageId) -> MessageRecord | None:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            )
        return self._row_to_record(rows[0]) if rows else None

    async def list_audit(self, message_id: MessageId) -> list[AuditEntry]:
        async with self.get_connection() as conn:
            rows = await conn.execute_fetchall(
                "SELECT * FROM audit_log WHERE message_id = ? ORDER BY id ASC",
                (message_id,),
            )
        return [
            AuditEntry(
                event=row["event"],
                message_id=row["message_id"],
                details=json.loads(row["details"] or "{}"),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            chat_id=row["chat_id"],
            sender=row["sender"],
            destination=row["destination"],
            body=row["body"],
            media_url=row["media_url"],
            status=row["status"],
            in_progress=bool(row["in_progress"]),
            attempt_count=row["attempt_count"],
            remote_message_id=row["remote_message_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
