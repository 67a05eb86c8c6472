"""Storage contract for webhook subscriptions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from hookrelay.models import INCLUDE_FLAGS, Webhook, to_bool

COLUMNS: tuple[str, ...] = (
    "event_code",
    "sender",
    "post_url",
    "auth_header",
    *INCLUDE_FLAGS,
)


def webhook_params(webhook: Webhook) -> tuple[Any, ...]:
    """Insert parameters in COLUMNS order."""
    return tuple(getattr(webhook, column) for column in COLUMNS)


def row_to_webhook(row: Mapping[str, Any]) -> Webhook:
    """Convert a stored row to a Webhook, normalizing 0/1 flags to bool."""
    return Webhook(
        id=int(row["id"]),
        event_code=row["event_code"],
        post_url=row["post_url"],
        sender=row["sender"] or None,
        auth_header=row["auth_header"] or "",
        **{name: to_bool(row[name]) for name in INCLUDE_FLAGS},
    )


class WebhookStore(ABC):
    """Durable CRUD over webhook subscriptions.

    Every operation either succeeds or raises StorageError (ValidationError
    for insert). There is no update: changing a subscription is a remove
    followed by an insert.
    """

    # Largest id the backing column can hold; ids beyond it cannot exist
    max_id: int = 2**63 - 1

    def id_in_range(self, webhook_id: int) -> bool:
        return -self.max_id - 1 <= webhook_id <= self.max_id

    @abstractmethod
    async def initialize(self) -> None:
        """Create the webhooks table if it is missing. Safe on every start."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def insert(self, webhook: Webhook) -> Webhook:
        """Persist a new subscription and return it with its assigned id."""

    @abstractmethod
    async def remove(self, webhook_id: int) -> None:
        """Delete by id. Removing an unknown id is a no-op."""

    @abstractmethod
    async def find_all(self) -> list[Webhook]: ...

    @abstractmethod
    async def find_by_event_code(self, event_code: str) -> list[Webhook]:
        """Exact, case-sensitive match on event_code."""
