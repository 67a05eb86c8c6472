"""Decoding of the stored auth_header string into HTTP headers."""

from __future__ import annotations


def decode_auth_header(raw: str | None) -> dict[str, str]:
    """Parse ``"Key Value,Key2 Value2"`` into a header mapping.

    Each comma-separated segment is stripped and split on its first run of
    whitespace: the first token is the header name and the rest of the
    segment, stripped, is the value. ``"Authorization Bearer tok"`` gives
    ``{"Authorization": "Bearer tok"}``. Segments without both parts are
    dropped. A repeated name keeps its last value.
    """
    headers: dict[str, str] = {}
    if not raw:
        return headers
    for segment in raw.split(","):
        parts = segment.strip().split(None, 1)
        if len(parts) != 2:
            continue
        key, value = parts[0], parts[1].strip()
        if key and value:
            headers[key] = value
    return headers


def build_delivery_headers(auth_header: str | None) -> dict[str, str]:
    """JSON content type plus the decoded entries, which win on collision."""
    decoded = decode_auth_header(auth_header)
    headers = {"Content-Type": "application/json"}
    if any(key.lower() == "content-type" for key in decoded):
        del headers["Content-Type"]
    headers.update(decoded)
    return headers
