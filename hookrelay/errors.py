"""Exception types shared by the store, dispatcher and registry API."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base exception for hookrelay."""

    def __init__(self, code: str, message: str, status_code: int = 500) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(RelayError):
    """Missing or malformed subscription fields or request parameters."""

    def __init__(self, message: str) -> None:
        super().__init__("VALIDATION_ERROR", message, status_code=400)


class AuthError(RelayError):
    """Missing or invalid API key."""

    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__("AUTH_ERROR", message, status_code=401)


class NotFoundError(RelayError):
    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__("NOT_FOUND", f"{resource} '{resource_id}' not found", status_code=404)


class SourceNotReadyError(RelayError):
    """The messaging source cannot answer lookups until it is paired."""

    def __init__(self, message: str = "Messaging source is not ready") -> None:
        super().__init__("SOURCE_NOT_READY", message, status_code=503)


class SourceError(RelayError):
    """A lookup or send against the messaging source failed."""

    def __init__(self, message: str) -> None:
        super().__init__("SOURCE_ERROR", message, status_code=502)


class StorageError(RelayError):
    """The persistence backend failed. The engine error is chained as __cause__."""

    def __init__(self, message: str) -> None:
        super().__init__("STORAGE_ERROR", message, status_code=500)


class DeliveryError(RelayError):
    """A single webhook POST failed (network fault or non-2xx response)."""

    def __init__(
        self,
        url: str,
        message: str,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.url = url
        self.status = status
        # {code, message, hint} from the subscriber's error body, when parseable
        self.details = details or {}
        super().__init__("DELIVERY_ERROR", message, status_code=502)


class EnrichmentFetchError(RelayError):
    """Fetching one optional payload field from the messaging source failed."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__("ENRICHMENT_FETCH_ERROR", message, status_code=502)
