"""HeyGen streaming-avatar REST client.

Covers the session lifecycle used by the relay: create+start, interrupt,
stop, and submitting text for the avatar to speak (`task_type=repeat`).
Every call is recorded to the audit log; non-2xx responses raise
`AvatarAPIError` after being recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from avatar_relay.core.clock import Stopwatch
from avatar_relay.core.storage.history import (
    ApiCallRecord,
    ApiErrorRecord,
    AuditLog,
    audit_call,
    audit_error,
)
from avatar_relay.domain.models import AvatarSession

logger = logging.getLogger(__name__)

HEYGEN_API_URL = "https://api.heygen.com/v1"


class AvatarAPIError(RuntimeError):
    def __init__(self, endpoint: str, status_code: int | None, body: Any = None) -> None:
        super().__init__(f"HeyGen {endpoint} failed (status={status_code}): {body}")
        self.endpoint = endpoint
        self.status_code = status_code
        self.body = body


@dataclass(slots=True)
class HeyGenStreamingAvatarClient:
    api_key: str
    base_url: str = HEYGEN_API_URL
    timeout_s: float = 15.0
    audit: AuditLog | None = None
    http: httpx.AsyncClient | None = None
    _owned_http: httpx.AsyncClient | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key must be non-empty")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.base_url = self.base_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        if self.http is not None:
            return self.http
        if self._owned_http is None:
            self._owned_http = httpx.AsyncClient(timeout=self.timeout_s)
        return self._owned_http

    async def create_session(self, avatar_id: str, *, voice_id: str | None = None) -> AvatarSession:
        body: dict[str, Any] = {"version": "v2", "avatar_id": avatar_id}
        if voice_id:
            body["voice_id"] = voice_id

        data = await self._post("streaming.new", body, session_id=None)
        info = data.get("data") if isinstance(data, dict) else None
        if not isinstance(info, dict) or not all(
            info.get(key) for key in ("session_id", "url", "access_token")
        ):
            raise AvatarAPIError("streaming.new", 200, "missing url/token/session_id")

        session = AvatarSession(
            session_id=str(info["session_id"]),
            url=str(info["url"]),
            access_token=str(info["access_token"]),
        )
        logger.info(f"[Avatar] Session created: {session.session_id[:8]}")

        try:
            await self._post("streaming.start", {"session_id": session.session_id}, session.session_id)
        except AvatarAPIError as exc:
            # The session exists; the client can still attach and retry.
            logger.error(f"[Avatar] Failed to start session {session.session_id[:8]}: {exc}")
        return session

    async def interrupt(self, session_id: str) -> dict[str, Any]:
        return await self._post("streaming.interrupt", {"session_id": session_id}, session_id)

    async def stop(self, session_id: str) -> dict[str, Any]:
        return await self._post("streaming.stop", {"session_id": session_id}, session_id)

    async def speak(self, session_id: str, text: str) -> None:
        body = {"session_id": session_id, "task_type": "repeat", "text": text}
        await self._post("streaming.task", body, session_id)
        logger.info(f"[Avatar] Sent text to session {session_id[:8]} for speaking")

    async def close(self) -> None:
        if self._owned_http is not None:
            await self._owned_http.aclose()
            self._owned_http = None

    async def _post(
        self, endpoint: str, body: dict[str, Any], session_id: str | None
    ) -> dict[str, Any]:
        watch = Stopwatch()
        try:
            response = await self._client().post(
                f"{self.base_url}/{endpoint}",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            watch.stop()
            await audit_error(
                self.audit,
                ApiErrorRecord(
                    service="heygen",
                    endpoint=endpoint,
                    session_id=session_id,
                    error_type=type(exc).__name__,
                    error_message=str(exc) or f"Exception in {endpoint}",
                    elapsed_ms=watch.elapsed_ms,
                    request=body,
                ),
            )
            raise AvatarAPIError(endpoint, None, str(exc)) from exc
        watch.stop()

        try:
            data = response.json()
        except ValueError:
            data = {"data": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        await audit_call(
            self.audit,
            ApiCallRecord(
                service="heygen",
                endpoint=endpoint,
                session_id=session_id,
                status_code=response.status_code,
                elapsed_ms=watch.elapsed_ms,
                started_at=watch.started_at,
                finished_at=watch.finished_at,
                request=body,
                response=data,
                notes="ok" if response.is_success else "failed",
            ),
        )

        if not response.is_success:
            logger.error(f"[Avatar] {endpoint} error: {response.status_code} {response.text[:200]}")
            await audit_error(
                self.audit,
                ApiErrorRecord(
                    service="heygen",
                    endpoint=endpoint,
                    session_id=session_id,
                    error_type="http_error",
                    error_message=response.text[:1000] or f"Non-2xx from {endpoint}",
                    status_code=response.status_code,
                    elapsed_ms=watch.elapsed_ms,
                    request=body,
                    response=data,
                ),
            )
            raise AvatarAPIError(endpoint, response.status_code, data)
        return data
