"""Webhook subscription storage backends."""

from hookrelay.config import Settings
from hookrelay.store.base import WebhookStore
from hookrelay.store.postgres import PostgresWebhookStore
from hookrelay.store.sqlite import SqliteWebhookStore


def create_store(settings: Settings) -> WebhookStore:
    """Pick the storage backend named in settings.storage.backend."""
    if settings.storage.backend == "postgres":
        return PostgresWebhookStore(settings.storage.postgres_dsn)
    return SqliteWebhookStore(settings.get_sqlite_path())


__all__ = [
    "WebhookStore",
    "SqliteWebhookStore",
    "PostgresWebhookStore",
    "create_store",
]
