from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from avatar_relay.core.storage.history import InMemoryAuditLog
from avatar_relay.domain.models import AvatarSession
from avatar_relay.providers.avatar.heygen import AvatarAPIError, HeyGenStreamingAvatarClient

BASE_URL = "https://api.heygen.test/v1"


def _client(handler, audit: InMemoryAuditLog | None = None):
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    client = HeyGenStreamingAvatarClient(
        api_key="hg-key", base_url=BASE_URL + "/", audit=audit, http=http
    )
    return client, http, seen


def _ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json={"code": 100, "data": data})


def test_client_validates_inputs():
    with pytest.raises(ValueError):
        HeyGenStreamingAvatarClient(api_key="")
    with pytest.raises(ValueError):
        HeyGenStreamingAvatarClient(api_key="k", timeout_s=0)


def test_create_session_creates_and_starts():
    async def run():
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/streaming.new"):
                return _ok({"session_id": "hg-1", "url": "wss://livekit", "access_token": "tok"})
            return _ok({})

        audit = InMemoryAuditLog()
        client, http, seen = _client(handler, audit)
        session = await client.create_session("Marianne_CasualLook_public", voice_id="v-1")

        assert session == AvatarSession(session_id="hg-1", url="wss://livekit", access_token="tok")
        assert [r.url.path for r in seen] == ["/v1/streaming.new", "/v1/streaming.start"]
        assert seen[0].headers["Authorization"] == "Bearer hg-key"
        assert json.loads(seen[0].content) == {
            "version": "v2",
            "avatar_id": "Marianne_CasualLook_public",
            "voice_id": "v-1",
        }
        assert json.loads(seen[1].content) == {"session_id": "hg-1"}
        assert [c.endpoint for c in audit.calls] == ["streaming.new", "streaming.start"]
        assert all(c.service == "heygen" for c in audit.calls)
        await http.aclose()

    asyncio.run(run())


def test_create_session_requires_session_fields():
    async def run():
        client, http, _ = _client(lambda _r: _ok({"session_id": "hg-1"}))
        with pytest.raises(AvatarAPIError):
            await client.create_session("avatar")
        await http.aclose()

    asyncio.run(run())


def test_start_failure_still_returns_session():
    async def run():
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/streaming.new"):
                return _ok({"session_id": "hg-1", "url": "wss://x", "access_token": "t"})
            return httpx.Response(500, json={"message": "busy"})

        audit = InMemoryAuditLog()
        client, http, _ = _client(handler, audit)
        session = await client.create_session("avatar")

        assert session.session_id == "hg-1"
        assert [e.endpoint for e in audit.errors] == ["streaming.start"]
        await http.aclose()

    asyncio.run(run())


def test_speak_sends_repeat_task():
    async def run():
        client, http, seen = _client(lambda _r: _ok({"task_id": "t-1"}))
        await client.speak("hg-1", "Namaste!")

        assert seen[0].url.path == "/v1/streaming.task"
        assert json.loads(seen[0].content) == {
            "session_id": "hg-1",
            "task_type": "repeat",
            "text": "Namaste!",
        }
        await http.aclose()

    asyncio.run(run())


def test_non_2xx_raises_and_is_audited():
    async def run():
        audit = InMemoryAuditLog()
        client, http, _ = _client(
            lambda _r: httpx.Response(401, json={"message": "bad key"}), audit
        )

        with pytest.raises(AvatarAPIError) as info:
            await client.interrupt("hg-1")

        assert info.value.status_code == 401
        assert info.value.endpoint == "streaming.interrupt"
        assert audit.calls[0].status_code == 401
        assert audit.calls[0].notes == "failed"
        assert audit.errors[0].error_type == "http_error"
        await http.aclose()

    asyncio.run(run())


def test_transport_error_becomes_avatar_error():
    async def run():
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        audit = InMemoryAuditLog()
        client, http, _ = _client(handler, audit)

        with pytest.raises(AvatarAPIError) as info:
            await client.stop("hg-1")

        assert info.value.status_code is None
        assert audit.errors[0].error_type == "ConnectError"
        assert audit.calls == []
        await http.aclose()

    asyncio.run(run())


def test_stop_returns_payload_and_close_keeps_injected_client():
    async def run():
        client, http, _ = _client(lambda _r: _ok({"status": "stopped"}))
        result = await client.stop("hg-1")
        assert result["data"] == {"status": "stopped"}

        await client.close()
        assert not http.is_closed
        await http.aclose()

    asyncio.run(run())
