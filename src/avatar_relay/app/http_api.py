"""HTTP API for browser clients.

Mirrors the relay's reply path for typed input and exposes the avatar
session lifecycle so a browser never holds the HeyGen key.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from avatar_relay import __version__
from avatar_relay.core.reply.dispatch import ReplyDispatcher
from avatar_relay.domain.models import AvatarSession, FinalizedUtterance
from avatar_relay.providers.avatar.heygen import AvatarAPIError

logger = logging.getLogger(__name__)


class AvatarSessions(Protocol):
    async def create_session(self, avatar_id: str, *, voice_id: str | None = None) -> AvatarSession: ...
    async def interrupt(self, session_id: str) -> dict[str, Any]: ...
    async def stop(self, session_id: str) -> dict[str, Any]: ...


class AvatarSessionRequest(BaseModel):
    avatar_id: str | None = None
    voice_id: str | None = None


class AvatarSessionRef(BaseModel):
    session_id: str = ""


class TalkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_text: str = Field(default="", alias="userText")
    session_id: str = ""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_http_app(
    *,
    dispatcher: ReplyDispatcher,
    avatar: AvatarSessions | None,
    allowed_origins: list[str] | None = None,
    default_avatar_id: str = "",
    default_voice_id: str = "",
) -> FastAPI:
    """Build the FastAPI app.

    With `allowed_origins` set, requests carrying any other Origin header are
    rejected with 403; requests without an Origin (curl, server-to-server)
    pass. An empty list allows every origin.
    """
    origins = list(allowed_origins or [])

    app = FastAPI(
        title="Avatar Relay API",
        description="Typed-utterance replies and avatar session control",
        version=__version__,
    )

    @app.middleware("http")
    async def reject_unknown_origins(request: Request, call_next):
        origin = request.headers.get("origin")
        if origins and origin is not None and origin not in origins:
            logger.warning(f"[HTTP] Rejected request from origin {origin}")
            return _error(403, "Origin not allowed")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=bool(origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/talk")
    async def talk(body: TalkRequest):
        text = body.user_text.strip()
        session_id = body.session_id.strip()
        if not text or not session_id:
            return _error(400, "userText and session_id required")
        logger.info(f"[HTTP] Talk request for session {session_id[:8]}")
        response = await dispatcher.dispatch(FinalizedUtterance(text=text, session_id=session_id))
        return response.to_dict()

    @app.post("/api/heygen/session")
    async def create_avatar_session(body: AvatarSessionRequest):
        if avatar is None:
            return _error(503, "Avatar is disabled")
        avatar_id = body.avatar_id or default_avatar_id
        if not avatar_id:
            return _error(400, "avatar_id required")
        try:
            session = await avatar.create_session(
                avatar_id, voice_id=body.voice_id or default_voice_id or None
            )
        except AvatarAPIError as exc:
            logger.error(f"[HTTP] Avatar session failed: {exc}")
            return _error(500, "Failed to create/start HeyGen session")
        logger.info(f"[HTTP] Avatar session {session.session_id[:8]} started")
        return session.to_dict()

    @app.post("/api/heygen/interrupt")
    async def interrupt_avatar(body: AvatarSessionRef):
        if avatar is None:
            return _error(503, "Avatar is disabled")
        if not body.session_id:
            return _error(400, "session_id required")
        try:
            return await avatar.interrupt(body.session_id)
        except AvatarAPIError as exc:
            logger.error(f"[HTTP] Avatar interrupt failed: {exc}")
            return _error(500, "Failed to interrupt")

    @app.post("/api/heygen/stop")
    async def stop_avatar(body: AvatarSessionRef):
        if avatar is None:
            return _error(503, "Avatar is disabled")
        if not body.session_id:
            return _error(400, "session_id required")
        try:
            return await avatar.stop(body.session_id)
        except AvatarAPIError as exc:
            logger.error(f"[HTTP] Avatar stop failed: {exc}")
            return _error(500, "Failed to stop")

    return app
