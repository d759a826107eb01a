from __future__ import annotations

import contextlib
import logging
import queue
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

import janus
import numpy as np

from avatar_relay.core.audio.format import AudioFrameF32

logger = logging.getLogger(__name__)


class AudioSource(Protocol):
    def frames(self) -> AsyncIterator[AudioFrameF32]: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class SoundDeviceAudioSource:
    """Microphone capture via sounddevice/PortAudio.

    The PortAudio callback thread hands blocks to the event loop through a
    janus queue. When the consumer falls behind, blocks are dropped rather
    than blocking the audio thread. `sample_rate_hz=None` opens the device at
    its default rate; callers resample.
    """

    sample_rate_hz: int | None = None
    channels: int = 1
    device: int | str | None = None
    blocksize: int | None = None
    max_queue_frames: int = 64

    _queue: janus.Queue[np.ndarray | None] = field(init=False, repr=False)
    _stream: object = field(init=False, repr=False)
    _closed: bool = field(init=False, default=False)
    _dropped: int = field(init=False, default=0)
    _actual_sample_rate_hz: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.sample_rate_hz is not None and self.sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be > 0 or None")
        if self.channels <= 0:
            raise ValueError("channels must be > 0")
        if self.max_queue_frames <= 0:
            raise ValueError("max_queue_frames must be > 0")

        import sounddevice as sd  # type: ignore

        self._queue = janus.Queue(maxsize=self.max_queue_frames)

        def _callback(indata, _frames, _time, status):  # PortAudio thread
            if self._closed:
                return
            if status:
                logger.warning("[Audio] Input status: %s", status)
            try:
                self._queue.sync_q.put_nowait(np.asarray(indata, dtype=np.float32).copy())
            except queue.Full:
                self._dropped += 1

        stream = sd.InputStream(
            samplerate=self.sample_rate_hz,
            channels=self.channels,
            dtype="float32",
            callback=_callback,
            device=self.device,
            blocksize=self.blocksize or 0,
        )
        stream.start()
        self._stream = stream
        self._actual_sample_rate_hz = int(stream.samplerate)
        logger.info(f"[Audio] Capturing at {self._actual_sample_rate_hz} Hz, {self.channels} ch")

    async def frames(self) -> AsyncIterator[AudioFrameF32]:
        while True:
            item = await self._queue.async_q.get()
            if item is None:
                return
            yield AudioFrameF32(samples=item, sample_rate_hz=self._actual_sample_rate_hz)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        stream = self._stream
        with contextlib.suppress(Exception):
            stream.stop()
        with contextlib.suppress(Exception):
            stream.close()

        with contextlib.suppress(queue.Full):
            self._queue.sync_q.put_nowait(None)

        self._queue.close()
        await self._queue.wait_closed()
        if self._dropped:
            logger.info(f"[Audio] Dropped {self._dropped} block(s) while the consumer lagged")


def resolve_input_device(device: str = "") -> int | str | None:
    """Map the configured device to a sounddevice selector; "" is the default input."""
    device = (device or "").strip()
    if not device:
        return None
    with contextlib.suppress(ValueError):
        return int(device)
    return device
