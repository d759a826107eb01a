from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

from avatar_relay.core.clock import Clock, Stopwatch, SystemClock, utc_iso
from avatar_relay.core.storage.history import (
    ApiCallRecord,
    ApiErrorRecord,
    AuditLog,
    audit_call,
    audit_error,
)
from avatar_relay.core.stt.backend import STTBackend, STTBackendSession
from avatar_relay.core.stt.finalizer import UtteranceFinalizer
from avatar_relay.domain.messages import encode_transcript
from avatar_relay.domain.models import RecognitionEvent

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_INTERVAL_S = 10.0


class RelayClient(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, message: str) -> None: ...


@dataclass(slots=True)
class TranscriptionSession:
    """Bridges one relay client to one upstream streaming-recognition session.

    Audio is forwarded fire-and-forget: frames that arrive while the upstream
    is not open are dropped, never buffered. Failing to open the upstream
    leaves the session alive but silent.

    Recognition events reach the finalizer as soon as they are read. Captions
    and per-event audit rows go out on a separate outbox task so a slow
    client never delays finalization.
    """

    session_id: str
    backend: STTBackend
    client: RelayClient
    finalizer: UtteranceFinalizer
    audit: AuditLog | None = None
    keepalive_interval_s: float = DEFAULT_KEEPALIVE_INTERVAL_S
    clock: Clock = field(default_factory=SystemClock)

    _upstream: STTBackendSession | None = field(init=False, default=None, repr=False)
    _consumer_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _keepalive_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _outbox: asyncio.Queue[tuple[str | None, ApiCallRecord] | None] = field(
        init=False, default_factory=asyncio.Queue, repr=False
    )
    _outbox_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _last_audio_at: float | None = field(init=False, default=None)
    _last_audio_iso: str | None = field(init=False, default=None)
    _closed: bool = field(init=False, default=False)
    _upstream_shut: bool = field(init=False, default=False)
    _frames_forwarded: int = field(init=False, default=0)
    _frames_dropped: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.keepalive_interval_s <= 0:
            raise ValueError("keepalive_interval_s must be > 0")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def upstream_open(self) -> bool:
        return self._upstream is not None and not self._upstream_shut and self._upstream.is_open

    @property
    def frames_forwarded(self) -> int:
        return self._frames_forwarded

    @property
    def frames_dropped(self) -> int:
        return self._frames_dropped

    @property
    def _service(self) -> str:
        return str(getattr(self.backend, "service_name", "stt"))

    async def open(self) -> bool:
        watch = Stopwatch(self.clock)
        try:
            upstream = await self.backend.open_session()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            watch.stop()
            logger.error(f"[STT] Failed to open upstream for session {self.session_id[:8]}: {exc}")
            await audit_error(
                self.audit,
                ApiErrorRecord(
                    service=self._service,
                    endpoint="listen.live.open",
                    session_id=self.session_id,
                    error_type="websocket_error",
                    error_message=str(exc) or type(exc).__name__,
                    elapsed_ms=watch.elapsed_ms,
                ),
            )
            return False

        watch.stop()
        if self._closed:
            # Client went away while the handshake was in progress.
            with contextlib.suppress(Exception):
                await upstream.close()
            return False

        self._upstream = upstream
        self._outbox_task = asyncio.create_task(self._outbox_loop())
        self._consumer_task = asyncio.create_task(self._consume(upstream))
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(upstream))
        logger.info(
            f"[STT] Upstream opened for session {self.session_id[:8]} ({watch.elapsed_ms} ms)"
        )
        await audit_call(
            self.audit,
            ApiCallRecord(
                service=self._service,
                endpoint="listen.live.open",
                session_id=self.session_id,
                elapsed_ms=watch.elapsed_ms,
                started_at=watch.started_at,
                finished_at=watch.finished_at,
                notes="WebSocket handshake open",
            ),
        )
        return True

    async def forward_audio(self, frame: bytes) -> bool:
        upstream = self._upstream
        if self._closed or upstream is None or self._upstream_shut or not upstream.is_open:
            self._frames_dropped += 1
            if self._frames_dropped == 1:
                logger.warning(
                    f"[STT] Upstream not open for session {self.session_id[:8]}; dropping audio"
                )
            return False

        try:
            await upstream.send_audio(frame)
        except Exception as exc:
            self._frames_dropped += 1
            logger.debug(f"[STT] Failed to forward audio: {exc}")
            return False

        self._frames_forwarded += 1
        self._last_audio_at = self.clock.now()
        self._last_audio_iso = utc_iso(time.time())
        if self._frames_forwarded == 1:
            logger.info(f"[STT] First audio frame forwarded ({len(frame)} bytes)")
        elif self._frames_forwarded % 50 == 0:
            logger.debug(f"[STT] Audio frames forwarded: {self._frames_forwarded}")
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.finalizer.close()
        await self._shutdown_upstream(from_consumer=False, notes="closed by client")
        if self._outbox_task is not None:
            self._outbox_task.cancel()
            await asyncio.gather(self._outbox_task, return_exceptions=True)
            self._outbox_task = None
        logger.info(
            f"[STT] Session {self.session_id[:8]} closed "
            f"(forwarded={self._frames_forwarded}, dropped={self._frames_dropped}, "
            f"utterances={self.finalizer.emitted_count})"
        )

    async def _consume(self, upstream: STTBackendSession) -> None:
        notes = "closed by provider"
        try:
            async for event in upstream.events():
                await self._handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            notes = f"provider error: {exc}"
            logger.warning(f"[STT] Upstream error for session {self.session_id[:8]}: {exc}")
            await audit_error(
                self.audit,
                ApiErrorRecord(
                    service=self._service,
                    endpoint="listen.live",
                    session_id=self.session_id,
                    error_type="websocket_error",
                    error_message=str(exc) or type(exc).__name__,
                ),
            )

        # Provider side ended: tear down upstream resources, keep the client.
        self.finalizer.close()
        # Let queued captions drain; the outbox task exits on the sentinel.
        self._outbox.put_nowait(None)
        await self._shutdown_upstream(from_consumer=True, notes=notes)

    async def _handle_event(self, event: RecognitionEvent) -> None:
        if not isinstance(event, RecognitionEvent):
            logger.debug(f"[STT] Ignoring unexpected upstream item: {event!r}")
            return

        self.finalizer.handle_event(event)

        caption = encode_transcript(event) if event.text.strip() else None
        self._outbox.put_nowait((caption, self._transcript_record(event)))

    def _transcript_record(self, event: RecognitionEvent) -> ApiCallRecord:
        since_audio_ms = None
        if self._last_audio_at is not None:
            since_audio_ms = int(round((self.clock.now() - self._last_audio_at) * 1000))
        return ApiCallRecord(
            service=self._service,
            endpoint="listen.live.transcript",
            session_id=self.session_id,
            elapsed_ms=since_audio_ms,
            started_at=self._last_audio_iso,
            finished_at=utc_iso(time.time()),
            response={
                "is_final": event.is_final,
                "speech_final": event.speech_final,
                "transcript_len": len(event.text),
            },
        )

    async def _outbox_loop(self) -> None:
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            caption, record = item
            if caption is not None and self.client.is_open:
                try:
                    await self.client.send_text(caption)
                except Exception as exc:
                    logger.debug(f"[STT] Failed to send caption to client: {exc}")
            await audit_call(self.audit, record)

    async def _keepalive_loop(self, upstream: STTBackendSession) -> None:
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval_s)
                if self._upstream_shut or not upstream.is_open:
                    return
                await upstream.keepalive()
                logger.debug("[STT] KeepAlive sent")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(f"[STT] KeepAlive failed: {exc}")

    async def _shutdown_upstream(self, *, from_consumer: bool, notes: str) -> None:
        if self._upstream_shut:
            return
        self._upstream_shut = True

        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            await asyncio.gather(self._keepalive_task, return_exceptions=True)
            self._keepalive_task = None

        if not from_consumer and self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
        self._consumer_task = None

        upstream = self._upstream
        if upstream is None:
            return

        if upstream.is_open:
            with contextlib.suppress(Exception):
                await upstream.finish()
        with contextlib.suppress(Exception):
            await upstream.close()

        logger.info(f"[STT] Upstream closed for session {self.session_id[:8]} ({notes})")
        await audit_call(
            self.audit,
            ApiCallRecord(
                service=self._service,
                endpoint="listen.live.close",
                session_id=self.session_id,
                notes=notes,
            ),
        )
