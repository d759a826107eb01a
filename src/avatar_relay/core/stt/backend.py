from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from avatar_relay.domain.models import RecognitionEvent


@dataclass(frozen=True, slots=True)
class STTStreamOptions:
    sample_rate_hz: int = 16000
    channels: int = 1
    encoding: str = "linear16"
    model: str = "nova-3"
    language: str = "multi"
    punctuate: bool = True
    smart_format: bool = True
    interim_results: bool = True
    endpointing_ms: int = 100

    def validate(self) -> None:
        if self.sample_rate_hz not in (8000, 16000):
            raise ValueError("sample_rate_hz must be 8000 or 16000")
        if self.channels != 1:
            raise ValueError("channels must be 1 (mono)")
        if self.endpointing_ms < 0:
            raise ValueError("endpointing_ms must be >= 0")


class STTBackendSession(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_audio(self, pcm16le: bytes) -> None: ...
    async def keepalive(self) -> None: ...
    async def finish(self) -> None: ...
    async def close(self) -> None: ...
    def events(self) -> AsyncIterator[RecognitionEvent]: ...


class STTBackend(Protocol):
    async def open_session(self) -> STTBackendSession: ...
