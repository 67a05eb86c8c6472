"""Fetching the optional payload fields a subscription asks for."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from hookrelay.errors import EnrichmentFetchError
from hookrelay.models import INCLUDE_FLAGS
from hookrelay.sources.base import SourceMessage
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

# Payload key -> SourceMessage coroutine method
_FETCHERS: dict[str, str] = {
    "info": "get_info",
    "chat": "get_chat",
    "contact": "get_contact",
    "quotedMessage": "get_quoted_message",
    "order": "get_order",
    "groupMentions": "get_group_mentions",
    "mentions": "get_mentions",
    "payment": "get_payment",
    "reactions": "get_reactions",
}


@dataclass
class EnrichmentResult:
    # Always carries every payload key; unselected or failed fields are None
    fields: dict[str, Any]
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def empty_enrichments() -> dict[str, Any]:
    return {key: None for key in INCLUDE_FLAGS.values()}


async def fetch_field(
    name: str,
    fetch: Callable[[], Awaitable[Any]],
    timeout: float | None = None,
) -> Any:
    """Run one fetch, converting any failure into EnrichmentFetchError."""
    try:
        if timeout:
            return await asyncio.wait_for(fetch(), timeout=timeout)
        return await fetch()
    except asyncio.TimeoutError as exc:
        raise EnrichmentFetchError(name, f"timed out after {timeout}s") from exc
    except EnrichmentFetchError:
        raise
    except Exception as exc:
        raise EnrichmentFetchError(name, str(exc) or type(exc).__name__) from exc


async def resolve_enrichments(
    message: SourceMessage | None,
    flags: Mapping[str, bool],
    timeout: float | None = None,
) -> EnrichmentResult:
    """Fetch every flagged enrichment concurrently.

    One failed fetch leaves its field None and is reported in ``errors``;
    the other fields are still fetched.
    """
    fields = empty_enrichments()
    if message is None:
        return EnrichmentResult(fields)

    selected = [key for flag, key in INCLUDE_FLAGS.items() if flags.get(flag)]
    outcomes = await asyncio.gather(
        *(fetch_field(key, getattr(message, _FETCHERS[key]), timeout) for key in selected),
        return_exceptions=True,
    )

    errors: dict[str, str] = {}
    for key, outcome in zip(selected, outcomes):
        if isinstance(outcome, EnrichmentFetchError):
            errors[key] = outcome.message
            log.warning("enrichment_fetch_failed", field=key, error=outcome.message)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            fields[key] = outcome
    return EnrichmentResult(fields, errors)
