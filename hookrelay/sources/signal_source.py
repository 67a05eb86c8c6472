"""Signal messaging source via signal-cli-rest-api (HTTP)."""

from __future__ import annotations

import asyncio
import base64
from typing import Any
from urllib.parse import quote

import httpx

from hookrelay.config import SignalConfig
from hookrelay.core.bus import EventBus
from hookrelay.errors import NotFoundError, SourceError
from hookrelay.sources.base import BROADCAST_ADDRESS, MessagingSource, SourceMessage
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)


def classify_envelope(envelope: dict[str, Any]) -> str | None:
    """Map a signal-cli envelope to an event code, or None to ignore it."""
    if "receiptMessage" in envelope:
        return "message_ack"
    if "storyMessage" in envelope:
        return "message"
    sync = envelope.get("syncMessage") or {}
    if "sentMessage" in sync:
        return "message_create"
    data = envelope.get("dataMessage")
    if data is None:
        return None
    if "reaction" in data:
        return "message_reaction"
    if "remoteDelete" in data:
        return "message_revoke_everyone"
    return "message"


class SignalMessage(SourceMessage):
    def __init__(self, envelope: dict[str, Any], source: SignalSource) -> None:
        self._envelope = envelope
        self._source = source

    @property
    def raw_data(self) -> dict[str, Any]:
        return self._envelope

    @property
    def origin(self) -> str | None:
        if "storyMessage" in self._envelope:
            return BROADCAST_ADDRESS
        env = self._envelope
        return env.get("sourceNumber") or env.get("source") or env.get("sourceUuid")

    @property
    def _data(self) -> dict[str, Any]:
        data = self._envelope.get("dataMessage")
        if data is None:
            data = (self._envelope.get("syncMessage") or {}).get("sentMessage")
        return data or {}

    @property
    def _group_id(self) -> str:
        group_info = self._data.get("groupInfo") or {}
        return group_info.get("groupId", "")

    @property
    def has_media(self) -> bool:
        return bool(self._data.get("attachments"))

    async def download_media(self) -> dict[str, Any] | None:
        attachments = self._data.get("attachments") or []
        if not attachments:
            return None
        attachment = attachments[0]
        content = await self._source.fetch_attachment(attachment["id"])
        return {
            "mimetype": attachment.get("contentType", "application/octet-stream"),
            "data": base64.b64encode(content).decode("ascii"),
            "filename": attachment.get("filename"),
        }

    async def get_info(self) -> Any:
        env = self._envelope
        return {
            "timestamp": env.get("timestamp"),
            "serverReceivedTimestamp": env.get("serverReceivedTimestamp"),
            "serverDeliveredTimestamp": env.get("serverDeliveredTimestamp"),
            "sourceDevice": env.get("sourceDevice"),
        }

    async def get_chat(self) -> Any:
        if self._group_id:
            return await self._source.get_group(self._group_id)
        return {"id": self.origin, "isGroup": False}

    async def get_contact(self) -> Any:
        if not self.origin:
            return None
        return await self._source.get_contact_by_id(self.origin)

    async def get_quoted_message(self) -> Any:
        return self._data.get("quote")

    async def get_mentions(self) -> Any:
        return self._data.get("mentions") or []

    async def get_payment(self) -> Any:
        return self._data.get("payment")

    async def get_reactions(self) -> Any:
        reaction = self._data.get("reaction")
        return [reaction] if reaction else []


class SignalSource(MessagingSource):
    def __init__(
        self,
        config: SignalConfig,
        bus: EventBus,
        events: list[str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(bus, events)
        self._config = config
        self._running = False
        self._receive_task: asyncio.Task[None] | None = None
        self._http_client = client

    @property
    def platform_name(self) -> str:
        return "signal"

    @property
    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._config.rest_api_url.rstrip("/"),
                timeout=30,
            )
        return self._http_client

    async def start(self) -> None:
        self._running = True
        self._receive_task = asyncio.create_task(self._poll_rest_api(), name="signal-rest-poller")
        log.info("signal_source_started", url=self._config.rest_api_url)

    async def stop(self) -> None:
        self._running = False
        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        log.info("signal_source_stopped")

    # ------------------------------------------------------------------
    # Pairing and polling
    # ------------------------------------------------------------------

    def pairing_link(self) -> str:
        base = self._config.rest_api_url.rstrip("/")
        return f"{base}/v1/qrcodelink?device_name={quote(self._config.device_name)}"

    async def refresh_state(self) -> None:
        """Ready once the configured number is a registered account."""
        resp = await self._client.get("/v1/accounts")
        resp.raise_for_status()
        accounts = resp.json() or []
        if self._config.phone_number in accounts:
            await self.mark_ready()
        elif self.ready_state.ready:
            await self.mark_disconnected()
        else:
            await self.mark_awaiting_pairing(self.pairing_link())

    async def _poll_rest_api(self) -> None:
        number = self._config.phone_number
        while self._running:
            try:
                if not self.ready_state.ready:
                    await self.refresh_state()
                    if not self.ready_state.ready:
                        await asyncio.sleep(self._config.poll_interval * 5)
                        continue
                resp = await self._client.get(f"/v1/receive/{number}")
                if resp.status_code == 200:
                    for envelope in resp.json():
                        await self.process_envelope(envelope)
            except httpx.ConnectError:
                log.warning("signal_rest_api_unavailable")
                await self.mark_disconnected()
                await asyncio.sleep(10)
            except Exception:
                log.exception("signal_rest_poll_error")
                await asyncio.sleep(5)
            else:
                await asyncio.sleep(self._config.poll_interval)

    async def process_envelope(self, envelope: dict[str, Any]) -> None:
        env = envelope.get("envelope", envelope)
        event_code = classify_envelope(env)
        if event_code is None:
            return
        await self.emit(event_code, SignalMessage(env, self))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, what: str) -> Any:
        try:
            resp = await self._client.get(path)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("signal_lookup_failed", what=what, error=str(exc))
            raise SourceError(f"error fetching {what}") from exc
        return resp.json()

    async def fetch_attachment(self, attachment_id: str) -> bytes:
        try:
            resp = await self._client.get(f"/v1/attachments/{attachment_id}")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise SourceError(f"error fetching attachment {attachment_id}") from exc
        return resp.content

    async def get_contacts(self) -> list[dict[str, Any]]:
        self.require_ready()
        rows = await self._get_json(f"/v1/contacts/{self._config.phone_number}", "contacts")
        log.info("contacts_fetched", count=len(rows))
        return [self._contact(row) for row in rows]

    async def get_contact_by_id(self, contact_id: str) -> dict[str, Any]:
        for contact in await self.get_contacts():
            if contact_id in (contact["id"], contact["number"], contact["uuid"]):
                return contact
        raise NotFoundError("contact", contact_id)

    async def get_groups(self) -> list[dict[str, Any]]:
        self.require_ready()
        rows = await self._get_json(f"/v1/groups/{self._config.phone_number}", "groups")
        log.info("groups_fetched", count=len(rows))
        return [self._group(row) for row in rows]

    async def get_group(self, group_id: str) -> dict[str, Any]:
        for group in await self.get_groups():
            if group_id in (group["id"], group["internalId"]):
                return group
        raise NotFoundError("group", group_id)

    async def send_message(self, recipient: str, content: str) -> None:
        self.require_ready()
        body = {
            "message": content,
            "number": self._config.phone_number,
            "recipients": [recipient],
        }
        try:
            resp = await self._client.post("/v2/send", json=body)
        except httpx.HTTPError as exc:
            raise SourceError("error sending message") from exc
        if resp.status_code not in (200, 201):
            log.error("signal_rest_send_error", status=resp.status_code, body=resp.text[:200])
            raise SourceError("error sending message")
        log.info("message_sent", recipient=recipient)

    def _contact(self, row: dict[str, Any]) -> dict[str, Any]:
        number = row.get("number") or ""
        return {
            "id": number or row.get("uuid", ""),
            "number": number,
            "uuid": row.get("uuid", ""),
            "name": row.get("name") or "",
            "pushname": row.get("profile_name") or "",
            "isBlocked": bool(row.get("blocked")),
            "isGroup": False,
            "isMe": number == self._config.phone_number,
        }

    @staticmethod
    def _group(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row.get("id", ""),
            "internalId": row.get("internal_id", ""),
            "name": row.get("name", ""),
            "isGroup": True,
            "isBlocked": bool(row.get("blocked")),
            "members": row.get("members") or [],
            "admins": row.get("admins") or [],
        }
