"""Registry HTTP API using aiohttp."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from aiohttp import web

from hookrelay.api.auth import check_api_key
from hookrelay.config import ApiConfig, RelayConfig
from hookrelay.errors import RelayError, SourceNotReadyError, StorageError, ValidationError
from hookrelay.models import make_webhook
from hookrelay.sources.base import MessagingSource
from hookrelay.sources.state import ReadyState
from hookrelay.store.base import WebhookStore
from hookrelay.utils.logging import get_logger

log = get_logger(__name__)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class RegistryServer:
    """CRUD over webhook subscriptions plus a thin proxy to the messaging source.

    Every ``/api/`` route requires the X-API-Key header; the check runs
    before any store or source access.
    """

    def __init__(
        self,
        config: ApiConfig,
        store: WebhookStore,
        source: MessagingSource | None = None,
        relay: RelayConfig | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._source = source
        self._relay = relay or RelayConfig()
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.api_key:
            log.warning(
                "api_key_not_configured",
                msg="No API key configured - all /api requests will be rejected.",
            )
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.bind, self._config.port)
        await site.start()
        log.info("registry_server_started", bind=self._config.bind, port=self._config.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("registry_server_stopped")

    # ------------------------------------------------------------------
    # App construction
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._error_middleware(), self._auth_middleware()])
        app.router.add_get("/api/webhook", self._list_webhooks)
        app.router.add_post("/api/webhook", self._add_webhook)
        app.router.add_delete("/api/webhook/{id}", self._remove_webhook)
        app.router.add_get("/api/status", self._status)
        app.router.add_get("/api/contact", self._contacts)
        app.router.add_get("/api/contact/{id}", self._contact)
        app.router.add_get("/api/groups", self._groups)
        app.router.add_post("/api/message", self._send_message)
        return app

    def _error_middleware(self) -> Any:
        @web.middleware
        async def middleware(request: web.Request, handler: _Handler) -> web.StreamResponse:
            try:
                return await handler(request)
            except web.HTTPException:
                raise
            except StorageError:
                # Already logged with its cause by the store
                return _error("Internal Server Error", 500)
            except RelayError as exc:
                if exc.status_code >= 500:
                    log.error("api_request_failed", path=request.path, code=exc.code)
                return _error(exc.message, exc.status_code)
            except Exception:
                log.exception("api_request_error", path=request.path, method=request.method)
                return _error("Internal Server Error", 500)

        return middleware

    def _auth_middleware(self) -> Any:
        @web.middleware
        async def middleware(request: web.Request, handler: _Handler) -> web.StreamResponse:
            if request.path.startswith("/api/"):
                check_api_key(request.headers, self._config.api_key)
            return await handler(request)

        return middleware

    # ------------------------------------------------------------------
    # Webhook registry
    # ------------------------------------------------------------------

    async def _list_webhooks(self, request: web.Request) -> web.Response:
        event_code = request.query.get("event_code")
        if event_code is None:
            webhooks = await self._store.find_all()
        elif not event_code:
            raise ValidationError("Parameter event_code is empty")
        else:
            webhooks = await self._store.find_by_event_code(event_code)
        return web.json_response([w.to_dict() for w in webhooks])

    async def _add_webhook(self, request: web.Request) -> web.Response:
        data = await self._read_body(request)
        webhook = await self._store.insert(make_webhook(data))
        log.info("webhook_added", id=webhook.id, event_code=webhook.event_code)
        return web.json_response(webhook.to_dict(), status=201)

    async def _remove_webhook(self, request: web.Request) -> web.Response:
        raw_id = request.match_info.get("id", "")
        try:
            webhook_id = int(raw_id)
        except ValueError:
            raise ValidationError("Parameter id must be an integer") from None
        await self._store.remove(webhook_id)
        return web.json_response({})

    # ------------------------------------------------------------------
    # Messaging source proxy
    # ------------------------------------------------------------------

    def _require_source(self) -> MessagingSource:
        if self._source is None:
            raise SourceNotReadyError("No messaging source configured")
        return self._source

    async def _status(self, request: web.Request) -> web.Response:
        state = self._source.ready_state if self._source else ReadyState()
        body = state.to_dict()
        body["platform"] = self._source.platform_name if self._source else None
        return web.json_response(body)

    async def _contacts(self, request: web.Request) -> web.Response:
        return web.json_response(await self._require_source().get_contacts())

    async def _contact(self, request: web.Request) -> web.Response:
        contact_id = request.match_info.get("id", "")
        return web.json_response(await self._require_source().get_contact_by_id(contact_id))

    async def _groups(self, request: web.Request) -> web.Response:
        return web.json_response(await self._require_source().get_groups())

    async def _send_message(self, request: web.Request) -> web.Response:
        data = await self._read_body(request)
        recipient = str(data.get("recipient") or "").strip()
        message = str(data.get("message") or "")
        if not recipient:
            raise ValidationError("recipient is a required parameter")
        if not message:
            raise ValidationError("message is a required parameter")
        break_char = self._relay.break_char
        if break_char and message.startswith(break_char):
            raise ValidationError("break character found")

        source = self._require_source()
        text = f"{break_char} {message}" if break_char else message
        await source.send_message(recipient, text)
        return web.json_response({})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any]:
        if request.content_type == "application/json":
            try:
                data = await request.json()
            except ValueError:
                raise ValidationError("Invalid request body") from None
        else:
            data = dict(await request.post())
        if not isinstance(data, dict):
            raise ValidationError("Invalid request body")
        return data
