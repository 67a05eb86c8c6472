"""Matching source events to webhooks and delivering them."""

from hookrelay.dispatch.dispatcher import DeliveryResult, EventDispatcher
from hookrelay.dispatch.enrichment import EnrichmentResult, resolve_enrichments
from hookrelay.dispatch.headers import build_delivery_headers, decode_auth_header

__all__ = [
    "DeliveryResult",
    "EventDispatcher",
    "EnrichmentResult",
    "resolve_enrichments",
    "build_delivery_headers",
    "decode_auth_header",
]
