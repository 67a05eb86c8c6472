"""Embedded webhook store on SQLite, sharing one long-lived connection."""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite

from hookrelay.errors import StorageError
from hookrelay.models import Webhook, validate_webhook
from hookrelay.store.base import COLUMNS, WebhookStore, row_to_webhook, webhook_params
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

# SQLite has no boolean type; flags are stored as 0/1
_SCHEMA = """
CREATE TABLE IF NOT EXISTS webhooks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_code TEXT NOT NULL,
    sender TEXT,
    post_url TEXT NOT NULL,
    auth_header TEXT NOT NULL DEFAULT '',
    include_info INTEGER NOT NULL DEFAULT 0,
    include_chat INTEGER NOT NULL DEFAULT 0,
    include_contact INTEGER NOT NULL DEFAULT 0,
    include_quoted_message INTEGER NOT NULL DEFAULT 0,
    include_order INTEGER NOT NULL DEFAULT 0,
    include_group_mentions INTEGER NOT NULL DEFAULT 0,
    include_mentions INTEGER NOT NULL DEFAULT 0,
    include_payment INTEGER NOT NULL DEFAULT 0,
    include_reactions INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_webhooks_event_code ON webhooks (event_code);
"""

# OverflowError: integers beyond 64 bits; UnicodeError: text with lone surrogates
_ENGINE_ERRORS = (aiosqlite.Error, OSError, OverflowError, UnicodeError)

_INSERT = (
    f"INSERT INTO webhooks ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in COLUMNS)})"
)


class SqliteWebhookStore(WebhookStore):
    """Opens a single connection on first use and keeps it for the process lifetime.

    aiosqlite funnels every statement through one worker thread per
    connection, so statements never run in parallel. Writes still hold
    ``_write_lock`` so a rollback after a failed insert cannot discard
    another coroutine's uncommitted row.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def _connection(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        async with self._open_lock:
            if self._db is None:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                db = await aiosqlite.connect(str(self._db_path))
                db.row_factory = aiosqlite.Row
                self._db = db
        return self._db

    async def initialize(self) -> None:
        try:
            db = await self._connection()
            await db.executescript(_SCHEMA)
            await db.commit()
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_table_create_failed", path=str(self._db_path))
            raise StorageError("error creating webhooks table") from exc
        log.info("webhook_table_ready", backend="sqlite", path=str(self._db_path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def insert(self, webhook: Webhook) -> Webhook:
        validate_webhook(webhook)
        async with self._write_lock:
            try:
                db = await self._connection()
                cursor = await db.execute(_INSERT, webhook_params(webhook))
                await db.commit()
            except _ENGINE_ERRORS as exc:
                await self._rollback()
                log.exception("webhook_insert_failed", event_code=webhook.event_code)
                raise StorageError("error inserting webhook") from exc
        webhook_id = cursor.lastrowid
        log.info(
            "webhook_inserted",
            id=webhook_id,
            event_code=webhook.event_code,
            post_url=webhook.post_url,
        )
        return Webhook(**{**webhook.to_dict(), "id": webhook_id})

    async def remove(self, webhook_id: int) -> None:
        if not self.id_in_range(webhook_id):
            log.info("webhook_remove_out_of_range", id=webhook_id)
            return
        async with self._write_lock:
            try:
                db = await self._connection()
                cursor = await db.execute("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
                await db.commit()
            except _ENGINE_ERRORS as exc:
                await self._rollback()
                log.exception("webhook_remove_failed", id=webhook_id)
                raise StorageError("error removing webhook") from exc
        log.info("webhook_removed", id=webhook_id, deleted=cursor.rowcount)

    async def find_all(self) -> list[Webhook]:
        return await self._select("SELECT * FROM webhooks", ())

    async def find_by_event_code(self, event_code: str) -> list[Webhook]:
        # = on TEXT uses the BINARY collation, which is case-sensitive
        return await self._select(
            "SELECT * FROM webhooks WHERE event_code = ?", (event_code,)
        )

    async def _select(self, query: str, params: tuple[object, ...]) -> list[Webhook]:
        try:
            db = await self._connection()
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_fetch_failed")
            raise StorageError("error fetching webhooks") from exc
        return [row_to_webhook(row) for row in rows]

    async def _rollback(self) -> None:
        if self._db is None:
            return
        try:
            await self._db.rollback()
        except aiosqlite.Error:
            log.exception("webhook_rollback_failed")
