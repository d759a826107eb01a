"""Deepgram live transcription over a raw WebSocket.

Streams linear16 PCM to `/v1/listen` with interim results and server-side
endpointing enabled, and surfaces each `Results` message as a
`RecognitionEvent` carrying both `is_final` and `speech_final`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosedOK

from avatar_relay.core.stt.backend import STTBackend, STTBackendSession, STTStreamOptions
from avatar_relay.domain.models import RecognitionEvent

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_API_URL = "https://api.deepgram.com/v1"

Connector = Callable[..., Awaitable[Any]]


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_listen_url(options: STTStreamOptions, *, endpoint: str = DEEPGRAM_LISTEN_URL) -> str:
    params: dict[str, Any] = {
        "model": options.model,
        "language": options.language,
        "encoding": options.encoding,
        "sample_rate": options.sample_rate_hz,
        "channels": options.channels,
        "punctuate": _flag(options.punctuate),
        "smart_format": _flag(options.smart_format),
        "interim_results": _flag(options.interim_results),
        "endpointing": options.endpointing_ms if options.endpointing_ms > 0 else "false",
    }
    return f"{endpoint}?{urlencode(params)}"


def parse_deepgram_message(message: str | bytes) -> RecognitionEvent | None:
    """Translate one Deepgram message; None for anything that is not a transcript."""
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="ignore")
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        logger.debug("[STT] Deepgram message parse error")
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type", "Results")
    if msg_type != "Results":
        logger.debug(f"[STT] Deepgram {msg_type} message")
        return None

    channel = data.get("channel")
    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives") or []
    if not isinstance(alternatives, list) or not alternatives:
        return None
    first = alternatives[0]
    if not isinstance(first, dict):
        return None

    transcript = first.get("transcript") or ""
    if not isinstance(transcript, str):
        return None
    return RecognitionEvent(
        text=transcript,
        is_final=bool(data.get("is_final", False)),
        speech_final=bool(data.get("speech_final", False)),
    )


@dataclass(slots=True)
class DeepgramRealtimeSTTBackend(STTBackend):
    """Deepgram live-transcription backend using the `websockets` client."""

    api_key: str
    options: STTStreamOptions = field(default_factory=STTStreamOptions)
    endpoint: str = DEEPGRAM_LISTEN_URL
    open_timeout_s: float = 5.0
    service_name: str = "deepgram"
    connect: Connector | None = None

    async def open_session(self) -> STTBackendSession:
        self.options.validate()
        if not self.api_key:
            raise ValueError("api_key must be non-empty")
        if self.open_timeout_s <= 0:
            raise ValueError("open_timeout_s must be > 0")

        connect = self.connect or websockets.connect

        url = build_listen_url(self.options, endpoint=self.endpoint)
        ws = await connect(
            url,
            additional_headers={"Authorization": f"Token {self.api_key}"},
            ping_interval=None,
            open_timeout=self.open_timeout_s,
        )
        session = _DeepgramSession(ws=ws)
        session.start()
        logger.info(
            f"[STT] Deepgram connection opened (model={self.options.model}, "
            f"language={self.options.language}, endpointing={self.options.endpointing_ms}ms)"
        )
        return session

    @staticmethod
    async def verify_api_key(api_key: str) -> bool:
        if not api_key:
            return False
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(
                    f"{DEEPGRAM_API_URL}/projects",
                    headers={"Authorization": f"Token {api_key}"},
                )
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Connection failed: {exc}") from exc
        if response.status_code == 200:
            return True
        if response.status_code in (401, 403):
            return False
        raise RuntimeError(f"HTTP {response.status_code}: {response.reason_phrase}")


@dataclass(slots=True)
class _DeepgramSession(STTBackendSession):
    ws: Any

    _events: asyncio.Queue[RecognitionEvent | BaseException | None] = field(
        init=False, repr=False
    )
    _recv_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _open: bool = field(init=False, default=True)
    _finished: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._events = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._open

    def start(self) -> None:
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def _recv_loop(self) -> None:
        try:
            async for message in self.ws:
                event = parse_deepgram_message(message)
                if event is not None:
                    self._events.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            return
        except Exception as exc:
            logger.warning(f"[STT] Deepgram receive loop error: {exc}")
            self._events.put_nowait(exc)
        finally:
            self._open = False
            self._events.put_nowait(None)

    async def send_audio(self, pcm16le: bytes) -> None:
        if not self._open or self._finished:
            return
        await self.ws.send(pcm16le)

    async def keepalive(self) -> None:
        if not self._open:
            return
        await self.ws.send(json.dumps({"type": "KeepAlive"}))

    async def finish(self) -> None:
        if not self._open or self._finished:
            return
        self._finished = True
        await self.ws.send(json.dumps({"type": "CloseStream"}))

    async def close(self) -> None:
        self._open = False
        try:
            await self.ws.close()
        finally:
            if self._recv_task is not None:
                self._recv_task.cancel()
                await asyncio.gather(self._recv_task, return_exceptions=True)
                self._recv_task = None

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        while True:
            item = await self._events.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
