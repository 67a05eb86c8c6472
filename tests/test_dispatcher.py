"""Tests for event dispatch: matching, payloads, headers and isolated concurrent delivery."""

import asyncio
import json

import httpx
import pytest

from hookrelay.config import RelayConfig
from hookrelay.core.bus import SourceEventReceived
from hookrelay.dispatch.dispatcher import EventDispatcher
from hookrelay.errors import StorageError
from hookrelay.models import INCLUDE_FLAGS, Webhook
from hookrelay.sources.base import BROADCAST_ADDRESS, SourceMessage
from hookrelay.store import SqliteWebhookStore

URL_A = "https://a.example.com/hook"
URL_B = "https://b.example.com/hook"


class FakeMessage(SourceMessage):
    def __init__(self, origin="A", media=False, failing=(), media_gate=None):
        self._origin = origin
        self._media = media
        self.media_gate = media_gate
        self.failing = set(failing)
        self.media_downloads = 0

    @property
    def raw_data(self):
        return {"from": self._origin, "body": "hello"}

    @property
    def origin(self):
        return self._origin

    @property
    def has_media(self):
        return self._media

    async def download_media(self):
        self.media_downloads += 1
        if self.media_gate is not None:
            await self.media_gate.wait()
        await asyncio.sleep(0)
        return {"mimetype": "image/png", "data": "aGk=", "filename": "a.png"}

    async def get_chat(self):
        if "chat" in self.failing:
            raise RuntimeError("chat unavailable")
        return {"id": self._origin, "isGroup": False}

    async def get_contact(self):
        return {"id": self._origin, "name": "Alice"}


class Recorder:
    """httpx.MockTransport handler that records requests and answers per URL."""

    def __init__(self):
        self.requests = []
        self.responses = {}
        self.gate = None
        self.active = 0
        self.max_active = 0

    async def __call__(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0.01)
            self.requests.append(request)
            respond = self.responses.get(str(request.url))
            if callable(respond):
                return respond(request)
            if respond is not None:
                return respond
            return httpx.Response(200, json={})
        finally:
            self.active -= 1

    def bodies_for(self, url):
        return [json.loads(r.content) for r in self.requests if str(r.url) == url]


@pytest.fixture
async def store(tmp_path):
    s = SqliteWebhookStore(tmp_path / "webhooks.db")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
async def client(recorder):
    c = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    yield c
    await c.aclose()


@pytest.fixture
def make_dispatcher(store, client):
    created = []

    def factory(**config):
        dispatcher = EventDispatcher(store, RelayConfig(**config), client=client)
        created.append(dispatcher)
        return dispatcher

    return factory


@pytest.fixture
def dispatcher(make_dispatcher):
    return make_dispatcher()


async def _run(tasks):
    return await asyncio.gather(*tasks)


class TestMatching:
    async def test_broadcast_dropped(self, store, dispatcher, recorder):
        for _ in range(3):
            await store.insert(Webhook(event_code="message", post_url=URL_A))
        tasks = await dispatcher.dispatch("message", FakeMessage(origin=BROADCAST_ADDRESS))
        assert tasks == []
        assert recorder.requests == []

    async def test_no_subscribers(self, dispatcher, recorder):
        assert await dispatcher.dispatch("message", FakeMessage()) == []
        assert recorder.requests == []

    async def test_only_matching_event_code(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message_ack", post_url=URL_B))
        await _run(await dispatcher.dispatch("message", FakeMessage()))
        assert len(recorder.bodies_for(URL_A)) == 1
        assert recorder.bodies_for(URL_B) == []

    async def test_sender_scoped_and_senderless(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A, sender="A"))
        await store.insert(Webhook(event_code="message", post_url=URL_B))

        results = await _run(await dispatcher.dispatch("message", FakeMessage(origin="A")))
        assert len(results) == 2
        assert len(recorder.bodies_for(URL_A)) == 1
        assert len(recorder.bodies_for(URL_B)) == 1

        results = await _run(await dispatcher.dispatch("message", FakeMessage(origin="B")))
        assert len(results) == 1
        assert len(recorder.bodies_for(URL_A)) == 1
        assert len(recorder.bodies_for(URL_B)) == 2

    async def test_event_without_message_skips_sender_scoped(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="change_state", post_url=URL_A, sender="A"))
        await store.insert(Webhook(event_code="change_state", post_url=URL_B, include_chat=True))

        await _run(await dispatcher.dispatch("change_state", None))
        assert recorder.bodies_for(URL_A) == []
        assert recorder.bodies_for(URL_B) == [{"eventCode": "change_state"}]

    async def test_lookup_failure_is_contained(self, client):
        class BrokenStore(SqliteWebhookStore):
            async def find_by_event_code(self, event_code):
                raise StorageError("error fetching webhooks")

        dispatcher = EventDispatcher(BrokenStore(None), client=client)
        assert await dispatcher.dispatch("message", FakeMessage()) == []


class TestPayload:
    async def test_no_flags_only_event_code_and_message(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await _run(await dispatcher.dispatch("message", FakeMessage()))

        [body] = recorder.bodies_for(URL_A)
        assert body["eventCode"] == "message"
        assert body["message"] == {"from": "A", "body": "hello"}
        populated = {k for k, v in body.items() if v is not None}
        assert populated == {"eventCode", "message"}
        # Shape is stable: every enrichment key is present
        assert set(INCLUDE_FLAGS.values()) <= set(body)
        assert "media" in body

    async def test_flagged_enrichments_attached(self, store, dispatcher, recorder):
        await store.insert(
            Webhook(event_code="message", post_url=URL_A, include_chat=True, include_contact=True)
        )
        await _run(await dispatcher.dispatch("message", FakeMessage()))

        [body] = recorder.bodies_for(URL_A)
        assert body["chat"] == {"id": "A", "isGroup": False}
        assert body["contact"] == {"id": "A", "name": "Alice"}
        assert body["reactions"] is None

    async def test_media_downloaded_once_per_event(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message", post_url=URL_B))
        message = FakeMessage(media=True)

        await _run(await dispatcher.dispatch("message", message))

        assert message.media_downloads == 1
        for url in (URL_A, URL_B):
            [body] = recorder.bodies_for(url)
            assert body["media"]["mimetype"] == "image/png"

    async def test_enrichment_failure_fail_open(self, store, dispatcher, recorder):
        await store.insert(
            Webhook(event_code="message", post_url=URL_A, include_chat=True, include_contact=True)
        )
        [result] = await _run(
            await dispatcher.dispatch("message", FakeMessage(failing={"chat"}))
        )

        assert result.ok
        assert "chat" in result.enrichment_errors
        [body] = recorder.bodies_for(URL_A)
        assert body["chat"] is None
        assert body["contact"] == {"id": "A", "name": "Alice"}

    async def test_enrichment_failure_fail_closed(self, store, make_dispatcher, recorder):
        dispatcher = make_dispatcher(enrichment_policy="fail_closed")
        await store.insert(Webhook(event_code="message", post_url=URL_A, include_chat=True))
        [result] = await _run(
            await dispatcher.dispatch("message", FakeMessage(failing={"chat"}))
        )

        assert not result.ok
        assert "enrichment failed" in result.error
        assert recorder.requests == []


class TestHeaders:
    async def test_auth_header_sent(self, store, dispatcher, recorder):
        await store.insert(
            Webhook(
                event_code="message",
                post_url=URL_A,
                auth_header="Authorization Bearer tok,X-Foo bar",
            )
        )
        await _run(await dispatcher.dispatch("message", FakeMessage()))

        [request] = recorder.requests
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["X-Foo"] == "bar"


class TestDeliveryIsolation:
    async def test_server_error_does_not_block_other_webhook(self, store, dispatcher, recorder):
        recorder.responses[URL_A] = httpx.Response(
            500, json={"code": "E1", "message": "boom", "hint": "retry later"}
        )
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message", post_url=URL_B))

        results = await _run(await dispatcher.dispatch("message", FakeMessage()))
        by_url = {r.url: r for r in results}

        assert by_url[URL_A].status == 500
        assert by_url[URL_A].error == "HTTP 500"
        assert by_url[URL_B].ok
        assert by_url[URL_B].status == 200
        assert len(recorder.bodies_for(URL_B)) == 1

    async def test_network_error_is_contained(self, store, dispatcher, recorder):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        recorder.responses[URL_A] = refuse
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message", post_url=URL_B))

        results = await _run(await dispatcher.dispatch("message", FakeMessage()))
        by_url = {r.url: r for r in results}

        assert "ConnectError" in by_url[URL_A].error
        assert by_url[URL_A].status is None
        assert by_url[URL_B].ok

    async def test_delivery_timeout(self, store, make_dispatcher, recorder):
        dispatcher = make_dispatcher(delivery_timeout=0.05)
        recorder.gate = asyncio.Event()
        await store.insert(Webhook(event_code="message", post_url=URL_A))

        [result] = await _run(await dispatcher.dispatch("message", FakeMessage()))
        assert "timed out" in result.error


class TestConcurrency:
    async def test_dispatch_does_not_wait_for_responses(self, store, dispatcher, recorder):
        recorder.gate = asyncio.Event()
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message", post_url=URL_B))

        tasks = await dispatcher.dispatch("message", FakeMessage())
        assert len(tasks) == 2
        assert not any(t.done() for t in tasks)
        assert dispatcher.in_flight == 2

        recorder.gate.set()
        results = await _run(tasks)
        assert all(r.ok for r in results)
        await asyncio.sleep(0)
        assert dispatcher.in_flight == 0

    async def test_deliveries_run_concurrently(self, store, dispatcher, recorder):
        for _ in range(5):
            await store.insert(Webhook(event_code="message", post_url=URL_A))
        await _run(await dispatcher.dispatch("message", FakeMessage()))
        assert recorder.max_active == 5

    async def test_concurrency_limit(self, store, make_dispatcher, recorder):
        dispatcher = make_dispatcher(max_concurrent_deliveries=1)
        for _ in range(4):
            await store.insert(Webhook(event_code="message", post_url=URL_A))
        results = await _run(await dispatcher.dispatch("message", FakeMessage()))
        assert len(results) == 4
        assert recorder.max_active == 1

    async def test_close_cancels_hung_deliveries(self, store, dispatcher, recorder):
        recorder.gate = asyncio.Event()
        await store.insert(Webhook(event_code="message", post_url=URL_A))

        tasks = await dispatcher.dispatch("message", FakeMessage())
        await dispatcher.close(grace=0.05)

        assert all(t.cancelled() for t in tasks)
        assert dispatcher.in_flight == 0

    async def test_handle_event_from_bus(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await dispatcher.handle_event(
            SourceEventReceived(event_code="message", message=FakeMessage())
        )
        await asyncio.sleep(0.1)
        assert len(recorder.bodies_for(URL_A)) == 1

    async def test_close_cancels_hung_media_download(self, store, dispatcher, recorder):
        await store.insert(Webhook(event_code="message", post_url=URL_A))
        await store.insert(Webhook(event_code="message", post_url=URL_B))
        message = FakeMessage(media=True, media_gate=asyncio.Event())

        tasks = await dispatcher.dispatch("message", message)
        await asyncio.sleep(0.01)
        await dispatcher.close(grace=0.05)

        assert all(t.cancelled() for t in tasks)
        leftover = [
            t for t in asyncio.all_tasks()
            if t.get_name() == "media-download" and not t.done()
        ]
        assert leftover == []
        assert recorder.requests == []

    async def test_failed_media_download_still_delivers(self, store, dispatcher, recorder):
        class BrokenMedia(FakeMessage):
            async def download_media(self):
                raise RuntimeError("attachment gone")

        await store.insert(Webhook(event_code="message", post_url=URL_A))
        [result] = await _run(await dispatcher.dispatch("message", BrokenMedia(media=True)))

        assert result.ok
        assert "media" in result.enrichment_errors
        [body] = recorder.bodies_for(URL_A)
        assert body["media"] is None
