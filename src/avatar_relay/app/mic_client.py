from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from avatar_relay.config.settings import AudioSettings
from avatar_relay.core.audio.format import Pcm16Framer, normalize_audio_f32
from avatar_relay.core.audio.source import (
    AudioSource,
    SoundDeviceAudioSource,
    resolve_input_device,
)
from avatar_relay.domain.messages import RelayMessageType

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "ws://127.0.0.1:8787"

Connector = Callable[..., Awaitable[Any]]


def build_relay_url(url: str, session_id: str | None) -> str:
    if not session_id:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "session_id"]
    query.append(("session_id", session_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


def format_server_message(message: str) -> str | None:
    """Render one relay message as a console line; None for nothing to show."""
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type")
    if msg_type == RelayMessageType.UTTERANCE.value:
        return f"You: {data.get('text', '')}"
    if msg_type == RelayMessageType.REPLY.value:
        line = f"Avatar: {data.get('spoken', '')}"
        hindi = data.get("hindiLine")
        if hindi:
            line += f"  [{hindi}]"
        ui = data.get("ui") or {}
        if isinstance(ui, dict) and ui.get("action", "NONE") != "NONE":
            line += f"  <{ui.get('action')}>"
        return line

    results = data.get("results")
    if isinstance(results, list) and results:
        first = results[0] if isinstance(results[0], dict) else {}
        alternatives = first.get("alternatives") or [{}]
        transcript = alternatives[0].get("transcript", "") if alternatives else ""
        if not transcript:
            return None
        marker = "*" if first.get("speechFinal") else ("." if first.get("isFinal") else "~")
        return f"  {marker} {transcript}"
    return None


@dataclass(slots=True)
class MicRelayClient:
    """Headless capture adapter: microphone -> 16 kHz mono PCM16LE -> relay."""

    audio: AudioSettings
    url: str = DEFAULT_RELAY_URL
    session_id: str | None = None
    greeting: str | None = None
    open_timeout_s: float = 5.0
    source_factory: Callable[[], AudioSource] | None = None
    connect: Connector | None = None
    output: Callable[[str], None] = print

    _frames_sent: int = field(init=False, default=0)

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    def _create_source(self) -> AudioSource:
        if self.source_factory is not None:
            return self.source_factory()
        return SoundDeviceAudioSource(
            sample_rate_hz=None,
            channels=self.audio.channels,
            device=resolve_input_device(self.audio.input_device),
        )

    async def run(self) -> int:
        url = build_relay_url(self.url, self.session_id)
        connect = self.connect or websockets.connect
        try:
            ws = await connect(url, open_timeout=self.open_timeout_s)
        except Exception as exc:
            logger.error(f"[Mic] Failed to connect to relay {url}: {exc}")
            return 2
        logger.info(f"[Mic] Connected to relay {url}")

        source = self._create_source()
        receiver = asyncio.create_task(self._receive(ws))
        try:
            if self.greeting:
                await ws.send(json.dumps({"type": "utterance", "text": self.greeting}))
            await self._stream_audio(source, ws)
        except ConnectionClosed as exc:
            logger.info(f"[Mic] Relay closed the connection: {exc}")
        finally:
            with contextlib.suppress(Exception):
                await source.close()
            with contextlib.suppress(Exception):
                await ws.close()
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)
            logger.info(f"[Mic] Stopped after {self._frames_sent} frame(s)")
        return 0

    async def _stream_audio(self, source: AudioSource, ws: Any) -> None:
        framer = Pcm16Framer(frame_samples=self.audio.frame_samples)
        async for frame in source.frames():
            normalized = normalize_audio_f32(
                frame.samples,
                input_sample_rate_hz=frame.sample_rate_hz,
                target_sample_rate_hz=self.audio.sample_rate_hz,
            )
            for chunk in framer.push(normalized.samples):
                await ws.send(chunk)
                self._frames_sent += 1

        tail = framer.flush()
        if tail is not None:
            await ws.send(tail)
            self._frames_sent += 1

    async def _receive(self, ws: Any) -> None:
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    continue
                line = format_server_message(message)
                if line is not None:
                    self.output(line)
        except ConnectionClosed:
            return
