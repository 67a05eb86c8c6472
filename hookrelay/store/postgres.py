"""PostgreSQL webhook store that opens a fresh connection per operation."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from hookrelay.errors import StorageError
from hookrelay.models import Webhook, validate_webhook
from hookrelay.store.base import COLUMNS, WebhookStore, row_to_webhook, webhook_params
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS webhooks (
    id SERIAL PRIMARY KEY,
    event_code TEXT NOT NULL,
    sender TEXT,
    post_url TEXT NOT NULL,
    auth_header TEXT NOT NULL DEFAULT '',
    include_info BOOLEAN NOT NULL DEFAULT FALSE,
    include_chat BOOLEAN NOT NULL DEFAULT FALSE,
    include_contact BOOLEAN NOT NULL DEFAULT FALSE,
    include_quoted_message BOOLEAN NOT NULL DEFAULT FALSE,
    include_order BOOLEAN NOT NULL DEFAULT FALSE,
    include_group_mentions BOOLEAN NOT NULL DEFAULT FALSE,
    include_mentions BOOLEAN NOT NULL DEFAULT FALSE,
    include_payment BOOLEAN NOT NULL DEFAULT FALSE,
    include_reactions BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS idx_webhooks_event_code ON webhooks (event_code);
"""

_INSERT = (
    f"INSERT INTO webhooks ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(COLUMNS) + 1))}) "
    "RETURNING id"
)

# UnicodeError: text with lone surrogates cannot be encoded for the wire
_ENGINE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, UnicodeError)


class PostgresWebhookStore(WebhookStore):
    """Every call connects, runs one statement and disconnects.

    Nothing is shared between calls, so concurrent operations cannot
    interfere with each other, at the cost of a connection handshake each.
    """

    # SERIAL is a 32-bit integer column
    max_id = 2**31 - 1

    def __init__(self, dsn: str, connect_timeout: float = 10.0) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        try:
            yield conn
        finally:
            await conn.close()

    async def initialize(self) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(_SCHEMA)
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_table_create_failed")
            raise StorageError("error creating webhooks table") from exc
        log.info("webhook_table_ready", backend="postgres")

    async def close(self) -> None:
        # No connection outlives a single operation
        return None

    async def insert(self, webhook: Webhook) -> Webhook:
        validate_webhook(webhook)
        try:
            async with self._connect() as conn:
                webhook_id = await conn.fetchval(_INSERT, *webhook_params(webhook))
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_insert_failed", event_code=webhook.event_code)
            raise StorageError("error inserting webhook") from exc
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
        try:
            async with self._connect() as conn:
                status = await conn.execute("DELETE FROM webhooks WHERE id = $1", webhook_id)
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_remove_failed", id=webhook_id)
            raise StorageError("error removing webhook") from exc
        # asyncpg returns strings like "DELETE 1"
        log.info("webhook_removed", id=webhook_id, status=status)

    async def find_all(self) -> list[Webhook]:
        return await self._select("SELECT * FROM webhooks")

    async def find_by_event_code(self, event_code: str) -> list[Webhook]:
        return await self._select("SELECT * FROM webhooks WHERE event_code = $1", event_code)

    async def _select(self, query: str, *args: object) -> list[Webhook]:
        try:
            async with self._connect() as conn:
                rows = await conn.fetch(query, *args)
        except _ENGINE_ERRORS as exc:
            log.exception("webhook_fetch_failed")
            raise StorageError("error fetching webhooks") from exc
        return [row_to_webhook(row) for row in rows]
