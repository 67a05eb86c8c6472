"""Matches each source event to its webhooks and delivers the payloads concurrently."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from hookrelay.config import RelayConfig
from hookrelay.core.bus import Event, SourceEventReceived
from hookrelay.dispatch.enrichment import fetch_field, resolve_enrichments
from hookrelay.dispatch.headers import build_delivery_headers
from hookrelay.errors import DeliveryError, EnrichmentFetchError, StorageError
from hookrelay.models import Webhook
from hookrelay.sources.base import BROADCAST_ADDRESS, SourceMessage
from hookrelay.store.base import WebhookStore
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

_ERROR_BODY_KEYS = ("code", "message", "hint")


@dataclass
class DeliveryResult:
    webhook_id: int | None
    url: str
    status: int | None = None
    error: str | None = None
    enrichment_errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


class EventDispatcher:
    """Fire-and-forget fan-out of source events to matching webhooks.

    ``dispatch`` returns once one delivery task per matching webhook has
    been spawned; it never waits on HTTP round-trips. Each task owns its own
    failure handling, so one subscriber cannot block, cancel or retry
    another. Deliveries are best-effort: no retries.
    """

    def __init__(
        self,
        store: WebhookStore,
        config: RelayConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._config = config or RelayConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.delivery_timeout)
        )
        self._tasks: set[asyncio.Task[DeliveryResult]] = set()
        self._media_tasks: set[asyncio.Task[Any]] = set()
        limit = self._config.max_concurrent_deliveries
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """Bus handler for SourceEventReceived."""
        if not isinstance(event, SourceEventReceived):
            return
        await self.dispatch(event.event_code, event.message)

    async def dispatch(
        self, event_code: str, message: SourceMessage | None = None
    ) -> list[asyncio.Task[DeliveryResult]]:
        origin = message.origin if message is not None else None
        if origin == BROADCAST_ADDRESS:
            log.info("broadcast_dropped", event_code=event_code)
            return []

        try:
            webhooks = await self._store.find_by_event_code(event_code)
        except StorageError:
            log.error("dispatch_lookup_failed", event_code=event_code)
            return []

        if not webhooks:
            log.info("dispatch_no_subscribers", event_code=event_code)
            return []

        matched = [w for w in webhooks if self._sender_matches(w, origin)]
        log.info(
            "dispatch_matched",
            event_code=event_code,
            subscribers=len(webhooks),
            matched=len(matched),
        )
        if not matched:
            return []

        media = self._start_media_download(message)
        return [
            self._spawn(self._deliver(event_code, webhook, message, media), webhook)
            for webhook in matched
        ]

    @staticmethod
    def _sender_matches(webhook: Webhook, origin: str | None) -> bool:
        # No sender means any origin; an event without an origin only
        # reaches senderless webhooks
        return not webhook.sender or webhook.sender == origin

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any, webhook: Webhook) -> asyncio.Task[DeliveryResult]:
        task = asyncio.create_task(coro, name=f"deliver-{webhook.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _start_media_download(
        self, message: SourceMessage | None
    ) -> asyncio.Task[Any] | None:
        """Download media once per event; every delivery shares the result."""
        if message is None or not message.has_media:
            return None
        task = asyncio.create_task(
            fetch_field("media", message.download_media, self._config.enrichment_timeout),
            name="media-download",
        )
        self._media_tasks.add(task)
        task.add_done_callback(self._media_done)
        return task

    def _media_done(self, task: asyncio.Task[Any]) -> None:
        self._media_tasks.discard(task)
        # Deliveries read the outcome through shield(); mark it retrieved even
        # when every delivery was cancelled before getting there
        if not task.cancelled():
            task.exception()

    async def close(self, grace: float | None = None) -> None:
        """Wait up to ``grace`` seconds for in-flight deliveries, then cancel the rest."""
        if grace is None:
            grace = self._config.shutdown_grace
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                log.warning("deliveries_cancelled", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        # Downloads nobody is waiting on any more
        media = [t for t in self._media_tasks if not t.done()]
        for task in media:
            task.cancel()
        if media:
            await asyncio.gather(*media, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(
        self,
        event_code: str,
        webhook: Webhook,
        message: SourceMessage | None,
        media: asyncio.Task[Any] | None,
    ) -> DeliveryResult:
        if self._semaphore is None:
            return await self._deliver_one(event_code, webhook, message, media)
        async with self._semaphore:
            return await self._deliver_one(event_code, webhook, message, media)

    async def _deliver_one(
        self,
        event_code: str,
        webhook: Webhook,
        message: SourceMessage | None,
        media: asyncio.Task[Any] | None,
    ) -> DeliveryResult:
        result = DeliveryResult(webhook_id=webhook.id, url=webhook.post_url)
        try:
            payload, result.enrichment_errors = await self.build_payload(
                event_code, webhook, message, media
            )
            if result.enrichment_errors and self._config.enrichment_policy == "fail_closed":
                raise DeliveryError(
                    webhook.post_url,
                    "enrichment failed: " + ", ".join(sorted(result.enrichment_errors)),
                )
            result.status = await self._post(
                webhook.post_url, build_delivery_headers(webhook.auth_header), payload
            )
        except DeliveryError as exc:
            result.status = exc.status
            result.error = exc.message
            log.error(
                "webhook_delivery_failed",
                webhook_id=webhook.id,
                event_code=event_code,
                url=webhook.post_url,
                status=exc.status,
                error=exc.message,
                **exc.details,
            )
            return result
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            log.exception(
                "webhook_delivery_error",
                webhook_id=webhook.id,
                event_code=event_code,
                url=webhook.post_url,
            )
            return result

        log.info(
            "webhook_delivered",
            webhook_id=webhook.id,
            event_code=event_code,
            status=result.status,
            enrichment_errors=len(result.enrichment_errors),
        )
        return result

    async def build_payload(
        self,
        event_code: str,
        webhook: Webhook,
        message: SourceMessage | None,
        media: asyncio.Task[Any] | None = None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        """Return the JSON envelope and any enrichment fetch errors.

        Events without a message degrade to ``{"eventCode": ...}``.
        """
        if message is None:
            return {"eventCode": event_code}, {}

        enrichment = await resolve_enrichments(
            message, webhook.flags(), timeout=self._config.enrichment_timeout
        )
        errors = dict(enrichment.errors)

        media_data = None
        if media is not None:
            try:
                # Shielded: a cancelled delivery must not cancel the shared download
                media_data = await asyncio.shield(media)
            except EnrichmentFetchError as exc:
                errors["media"] = exc.message

        payload = {
            "eventCode": event_code,
            "message": message.raw_data,
            "media": media_data,
            **enrichment.fields,
        }
        return payload, errors

    async def _post(self, url: str, headers: dict[str, str], payload: dict[str, Any]) -> int:
        body = json.dumps(payload, default=str).encode("utf-8")
        try:
            resp = await asyncio.wait_for(
                self._client.post(url, content=body, headers=headers),
                timeout=self._config.delivery_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DeliveryError(
                url, f"timed out after {self._config.delivery_timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(url, f"{type(exc).__name__}: {exc}") from exc

        if not resp.is_success:
            raise DeliveryError(
                url,
                f"HTTP {resp.status_code}",
                status=resp.status_code,
                details=_error_details(resp),
            )
        return resp.status_code


def _error_details(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    return {f"error_{key}": body[key] for key in _ERROR_BODY_KEYS if key in body}
