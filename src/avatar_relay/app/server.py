"""Relay Channel server.

One websocket connection per client session. Binary frames are PCM16LE audio
forwarded to the session's upstream recognizer; text frames are control
messages. Captions, finalized utterances and replies flow back as JSON text.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import Server, serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from avatar_relay.core.reply.dispatch import ReplyDispatcher, SessionReplyWorker
from avatar_relay.core.storage.history import AuditLog
from avatar_relay.core.stt.backend import STTBackend
from avatar_relay.core.stt.finalizer import DEFAULT_FALLBACK_DELAY_S, UtteranceFinalizer
from avatar_relay.core.stt.session import DEFAULT_KEEPALIVE_INTERVAL_S, TranscriptionSession
from avatar_relay.domain.messages import decode_client_text
from avatar_relay.domain.models import FinalizedUtterance

logger = logging.getLogger(__name__)


def session_id_from_path(path: str | None) -> str:
    query = parse_qs(urlsplit(path or "").query)
    values = [v.strip() for v in query.get("session_id", []) if v.strip()]
    if values:
        return values[0]
    return uuid.uuid4().hex


@dataclass(slots=True)
class WebSocketRelayClient:
    websocket: Any
    _closed: bool = field(init=False, default=False)

    @property
    def is_open(self) -> bool:
        return not self._closed and self.websocket.state is State.OPEN

    async def send_text(self, message: str) -> None:
        await self.websocket.send(message)

    def mark_closed(self) -> None:
        self._closed = True


@dataclass(slots=True)
class RelayServer:
    backend: STTBackend
    dispatcher: ReplyDispatcher
    audit: AuditLog | None = None
    host: str = "0.0.0.0"
    port: int = 8787
    allowed_origins: list[str] = field(default_factory=list)
    keepalive_interval_s: float = DEFAULT_KEEPALIVE_INTERVAL_S
    fallback_delay_s: float = DEFAULT_FALLBACK_DELAY_S

    _server: Server | None = field(init=False, default=None, repr=False)
    _sessions: list[TranscriptionSession] = field(init=False, default_factory=list, repr=False)
    _draining: set[asyncio.Task[None]] = field(init=False, default_factory=set, repr=False)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def _origins(self) -> list[str | None] | None:
        if not self.allowed_origins:
            return None
        # Non-browser clients (the capture adapter) send no Origin header.
        return [*self.allowed_origins, None]

    async def start(self) -> Server:
        if self._server is None:
            self._server = await serve(
                self.handle_connection,
                self.host,
                self.port,
                origins=self._origins(),
            )
            logger.info(f"[Relay] Listening on ws://{self.host}:{self.port}")
        return self._server

    async def serve_forever(self) -> None:
        try:
            server = await self.start()
            await server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            await server.wait_closed()
        for session in list(self._sessions):
            await session.close()
        while self._draining:
            await asyncio.gather(*list(self._draining), return_exceptions=True)
        await self.dispatcher.close()

    async def handle_connection(self, websocket: Any) -> None:
        request = getattr(websocket, "request", None)
        session_id = session_id_from_path(getattr(request, "path", ""))
        client = WebSocketRelayClient(websocket=websocket)

        worker = SessionReplyWorker(
            session_id=session_id, dispatcher=self.dispatcher, client=client
        )
        worker.start()

        def _on_utterance(utterance: FinalizedUtterance) -> None:
            logger.info(f"[Relay] Utterance finalized for {session_id[:8]}: '{utterance.text[:60]}'")
            worker.submit(utterance)

        finalizer = UtteranceFinalizer(
            session_id=session_id,
            on_utterance=_on_utterance,
            fallback_delay_s=self.fallback_delay_s,
        )
        session = TranscriptionSession(
            session_id=session_id,
            backend=self.backend,
            client=client,
            finalizer=finalizer,
            audit=self.audit,
            keepalive_interval_s=self.keepalive_interval_s,
        )
        self._sessions.append(session)
        logger.info(f"[Relay] Client connected: session {session_id[:8]}")

        # Frames that arrive during the upstream handshake are dropped.
        open_task = asyncio.create_task(session.open())
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    await session.forward_audio(message)
                else:
                    self._handle_text(session_id, message, worker)
        except ConnectionClosed as exc:
            logger.info(f"[Relay] Connection for {session_id[:8]} closed abnormally: {exc}")
        finally:
            client.mark_closed()
            await session.close()
            if not open_task.done():
                open_task.cancel()
            await asyncio.gather(open_task, return_exceptions=True)
            worker.close()
            self._drain_worker(worker)
            with contextlib.suppress(ValueError):
                self._sessions.remove(session)
            logger.info(f"[Relay] Client disconnected: session {session_id[:8]}")

    def _handle_text(self, session_id: str, message: str, worker: SessionReplyWorker) -> None:
        try:
            command = decode_client_text(message)
        except ValueError as exc:
            logger.warning(f"[Relay] Ignoring client message for {session_id[:8]}: {exc}")
            return
        if command is None:
            return
        worker.submit(FinalizedUtterance(text=command.text, session_id=session_id))

    def _drain_worker(self, worker: SessionReplyWorker) -> None:
        task = asyncio.create_task(worker.wait_closed())
        self._draining.add(task)
        task.add_done_callback(self._draining.discard)
