from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx

from avatar_relay.app.http_api import create_http_app
from avatar_relay.core.llm.provider import FALLBACK_SPEECH_TEXT, ReplyPlanningError
from avatar_relay.core.reply.dispatch import ReplyDispatcher
from avatar_relay.core.storage.history import InMemoryAuditLog, InMemoryHistoryStore
from avatar_relay.domain.models import AvatarSession, ReplyPlan, UIAction
from avatar_relay.providers.avatar.heygen import AvatarAPIError

ORIGIN = "https://tutor.example.com"


@dataclass(slots=True)
class FakePlanner:
    fail: bool = False
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def plan(self, *, session_id: str, text: str, history) -> ReplyPlan:
        self.calls.append((session_id, text))
        if self.fail:
            raise ReplyPlanningError("upstream 503")
        return ReplyPlan(
            speech_text=f"You said {text}",
            hindi_line="आपने कहा",
            ui_action=UIAction(action="SHOW_TEXT", payload={"text": text}),
        )

    async def generate_title(self, *, session_id: str, text: str) -> str:
        return "Title"

    async def close(self) -> None:
        return None


@dataclass(slots=True)
class FakeAvatar:
    fail: bool = False
    created: list[tuple[str, str | None]] = field(default_factory=list)
    interrupted: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    spoken: list[tuple[str, str]] = field(default_factory=list)

    async def create_session(self, avatar_id: str, *, voice_id: str | None = None) -> AvatarSession:
        if self.fail:
            raise AvatarAPIError("streaming.new", 401, {"message": "bad key"})
        self.created.append((avatar_id, voice_id))
        return AvatarSession(session_id="hg-1", url="wss://livekit", access_token="tok")

    async def interrupt(self, session_id: str) -> dict:
        if self.fail:
            raise AvatarAPIError("streaming.interrupt", 500)
        self.interrupted.append(session_id)
        return {"code": 100, "data": {}}

    async def stop(self, session_id: str) -> dict:
        if self.fail:
            raise AvatarAPIError("streaming.stop", 500)
        self.stopped.append(session_id)
        return {"code": 100, "data": {}}

    async def speak(self, session_id: str, text: str) -> None:
        self.spoken.append((session_id, text))

    async def close(self) -> None:
        return None


def _app(*, planner: FakePlanner | None = None, avatar: FakeAvatar | None = None, origins=()):
    planner = planner or FakePlanner()
    dispatcher = ReplyDispatcher(
        planner=planner,
        history=InMemoryHistoryStore(),
        avatar=avatar,
        audit=InMemoryAuditLog(),
    )
    app = create_http_app(
        dispatcher=dispatcher,
        avatar=avatar,
        allowed_origins=list(origins),
        default_avatar_id="Marianne_CasualLook_public",
        default_voice_id="v-default",
    )
    return app, dispatcher, planner


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def test_health():
    async def run():
        app, _, _ = _app()
        async with _client(app) as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    asyncio.run(run())


def test_talk_returns_reply_and_speaks():
    async def run():
        avatar = FakeAvatar()
        app, dispatcher, planner = _app(avatar=avatar)
        async with _client(app) as client:
            response = await client.post(
                "/api/talk", json={"userText": " book a flight ", "session_id": "hg-1"}
            )

        assert response.status_code == 200
        assert response.json() == {
            "spoken": "You said book a flight",
            "hindiLine": "आपने कहा",
            "ui": {"action": "SHOW_TEXT", "payload": {"text": "book a flight"}},
        }
        assert planner.calls == [("hg-1", "book a flight")]
        await dispatcher.drain()
        assert avatar.spoken == [("hg-1", "You said book a flight")]

    asyncio.run(run())


def test_talk_planner_failure_returns_fallback():
    async def run():
        app, _, _ = _app(planner=FakePlanner(fail=True))
        async with _client(app) as client:
            response = await client.post("/api/talk", json={"userText": "hi", "session_id": "s1"})

        assert response.status_code == 200
        body = response.json()
        assert body["spoken"] == FALLBACK_SPEECH_TEXT
        assert body["ui"] == {"action": "NONE", "payload": {}}

    asyncio.run(run())


def test_talk_requires_text_and_session():
    async def run():
        app, _, planner = _app()
        async with _client(app) as client:
            missing_text = await client.post("/api/talk", json={"session_id": "s1"})
            missing_session = await client.post("/api/talk", json={"userText": "hi"})
            blank = await client.post("/api/talk", json={"userText": "  ", "session_id": "s1"})

        for response in (missing_text, missing_session, blank):
            assert response.status_code == 400
            assert response.json() == {"error": "userText and session_id required"}
        assert planner.calls == []

    asyncio.run(run())


def test_avatar_session_uses_defaults_and_overrides():
    async def run():
        avatar = FakeAvatar()
        app, _, _ = _app(avatar=avatar)
        async with _client(app) as client:
            default = await client.post("/api/heygen/session", json={})
            custom = await client.post(
                "/api/heygen/session", json={"avatar_id": "Other", "voice_id": "v-2"}
            )

        assert default.status_code == 200
        assert default.json() == {"session_id": "hg-1", "url": "wss://livekit", "access_token": "tok"}
        assert custom.status_code == 200
        assert avatar.created == [("Marianne_CasualLook_public", "v-default"), ("Other", "v-2")]

    asyncio.run(run())


def test_avatar_interrupt_and_stop():
    async def run():
        avatar = FakeAvatar()
        app, _, _ = _app(avatar=avatar)
        async with _client(app) as client:
            interrupted = await client.post("/api/heygen/interrupt", json={"session_id": "hg-1"})
            stopped = await client.post("/api/heygen/stop", json={"session_id": "hg-1"})
            missing = await client.post("/api/heygen/stop", json={})

        assert interrupted.status_code == 200
        assert interrupted.json() == {"code": 100, "data": {}}
        assert stopped.status_code == 200
        assert avatar.interrupted == ["hg-1"]
        assert avatar.stopped == ["hg-1"]
        assert missing.status_code == 400

    asyncio.run(run())


def test_avatar_errors_map_to_500():
    async def run():
        app, _, _ = _app(avatar=FakeAvatar(fail=True))
        async with _client(app) as client:
            session = await client.post("/api/heygen/session", json={})
            interrupted = await client.post("/api/heygen/interrupt", json={"session_id": "hg-1"})
            stopped = await client.post("/api/heygen/stop", json={"session_id": "hg-1"})

        assert session.status_code == 500
        assert session.json() == {"error": "Failed to create/start HeyGen session"}
        assert interrupted.status_code == 500
        assert interrupted.json() == {"error": "Failed to interrupt"}
        assert stopped.status_code == 500

    asyncio.run(run())


def test_avatar_routes_unavailable_when_disabled():
    async def run():
        app, _, _ = _app(avatar=None)
        async with _client(app) as client:
            response = await client.post("/api/heygen/session", json={})
        assert response.status_code == 503

    asyncio.run(run())


def test_allowed_origins_are_enforced():
    async def run():
        app, _, planner = _app(origins=[ORIGIN])
        body = {"userText": "hi", "session_id": "s1"}
        async with _client(app) as client:
            allowed = await client.post("/api/talk", json=body, headers={"Origin": ORIGIN})
            no_origin = await client.post("/api/talk", json=body)
            rejected = await client.post(
                "/api/talk", json=body, headers={"Origin": "https://evil.example.com"}
            )
            preflight = await client.options(
                "/api/talk",
                headers={"Origin": ORIGIN, "Access-Control-Request-Method": "POST"},
            )

        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == ORIGIN
        assert no_origin.status_code == 200
        assert rejected.status_code == 403
        assert rejected.json() == {"error": "Origin not allowed"}
        assert "access-control-allow-origin" not in rejected.headers
        assert preflight.status_code == 200
        assert preflight.headers["access-control-allow-origin"] == ORIGIN
        assert len(planner.calls) == 2

    asyncio.run(run())
