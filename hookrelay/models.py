"""Webhook subscription record and the constructor that validates untyped input."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

from hookrelay.errors import ValidationError

# Enrichment flag column -> payload key
INCLUDE_FLAGS: dict[str, str] = {
    "include_info": "info",
    "include_chat": "chat",
    "include_contact": "contact",
    "include_quoted_message": "quotedMessage",
    "include_order": "order",
    "include_group_mentions": "groupMentions",
    "include_mentions": "mentions",
    "include_payment": "payment",
    "include_reactions": "reactions",
}

_TRUE_STRINGS = frozenset({"1", "true", "t", "on", "yes", "y"})


@dataclass
class Webhook:
    event_code: str
    post_url: str
    sender: str | None = None
    auth_header: str = ""
    include_info: bool = False
    include_chat: bool = False
    include_contact: bool = False
    include_quoted_message: bool = False
    include_order: bool = False
    include_group_mentions: bool = False
    include_mentions: bool = False
    include_payment: bool = False
    include_reactions: bool = False
    id: int | None = None

    def flags(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in INCLUDE_FLAGS}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def to_bool(value: Any) -> bool:
    """Normalize a stored or submitted boolean.

    Engines that lack a native boolean hand back 0/1 integers, and form posts
    send "on". A stored "0" must never read back as True.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _required_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    text = str(value) if value is not None else ""
    # Blank is rejected, but the value is kept verbatim: event codes match exactly
    if not text.strip():
        raise ValidationError(f"{name} is a required parameter")
    return text


def validate_webhook(webhook: Webhook) -> None:
    """Raise ValidationError unless event_code and post_url are non-empty."""
    if not webhook.event_code or not webhook.event_code.strip():
        raise ValidationError("event_code is a required parameter")
    if not webhook.post_url or not webhook.post_url.strip():
        raise ValidationError("post_url is a required parameter")


def make_webhook(data: Mapping[str, Any]) -> Webhook:
    """Build a Webhook from an untyped input bag (JSON body, form data, DB row).

    Every include_* flag defaults to False. The id is ignored; the store
    assigns it.
    """
    sender = data.get("sender")
    sender = str(sender).strip() if sender is not None else ""
    auth_header = data.get("auth_header")
    return Webhook(
        event_code=_required_str(data, "event_code"),
        post_url=_required_str(data, "post_url"),
        sender=sender or None,
        auth_header=str(auth_header).strip() if auth_header else "",
        **{name: to_bool(data.get(name)) for name in INCLUDE_FLAGS},
    )
