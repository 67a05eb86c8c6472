"""Shared-secret API key check."""

from __future__ import annotations

import hmac
from typing import Mapping

from hookrelay.errors import AuthError

API_KEY_HEADER = "X-API-Key"


def check_api_key(headers: Mapping[str, str], configured: str) -> None:
    """Raise AuthError unless the request carries the configured key.

    An empty configured key rejects everything.
    """
    provided = headers.get(API_KEY_HEADER, "")
    if not provided:
        raise AuthError("Missing API key header")
    if not configured or not hmac.compare_digest(provided.encode(), configured.encode()):
        raise AuthError("Invalid API key")
