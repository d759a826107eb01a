"""Utterance finalization.

Turns the stream of recognition events for one session into discrete
utterances. The provider's speech-final (endpointing) flag finalizes
immediately; otherwise a one-shot fallback timer, re-armed on every event,
finalizes once the stream goes quiet.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from avatar_relay.domain.models import FinalizedUtterance, RecognitionEvent

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_DELAY_S = 0.5

UtteranceCallback = Callable[[FinalizedUtterance], None]


class FinalizeReason(str, Enum):
    SPEECH_FINAL = "speech_final"
    FALLBACK_TIMEOUT = "fallback_timeout"


@dataclass(slots=True)
class UtteranceAccumulator:
    committed_text: str = ""
    pending_text: str = ""
    pending_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def candidate(self) -> str:
        return f"{self.committed_text} {self.pending_text}".strip()

    @property
    def is_idle(self) -> bool:
        return not self.committed_text and not self.pending_text and self.pending_timer is None

    def apply(self, event: RecognitionEvent) -> None:
        fragment = event.text.strip()
        if event.is_final:
            self.committed_text = f"{self.committed_text} {fragment}".strip()
            self.pending_text = ""
        else:
            # Providers resend the growing hypothesis; the latest one wins.
            self.pending_text = fragment

    def arm(
        self,
        loop: asyncio.AbstractEventLoop,
        delay_s: float,
        callback: Callable[[], None],
    ) -> None:
        self.cancel_if_armed()
        self.pending_timer = loop.call_later(delay_s, callback)

    def cancel_if_armed(self) -> bool:
        timer = self.pending_timer
        if timer is None:
            return False
        self.pending_timer = None
        timer.cancel()
        return True

    def reset(self) -> None:
        self.cancel_if_armed()
        self.committed_text = ""
        self.pending_text = ""


@dataclass(slots=True)
class UtteranceFinalizer:
    session_id: str
    on_utterance: UtteranceCallback
    fallback_delay_s: float = DEFAULT_FALLBACK_DELAY_S
    accumulator: UtteranceAccumulator = field(default_factory=UtteranceAccumulator)

    _closed: bool = field(init=False, default=False)
    _emitted: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.fallback_delay_s <= 0:
            raise ValueError("fallback_delay_s must be > 0")

    @property
    def emitted_count(self) -> int:
        return self._emitted

    @property
    def closed(self) -> bool:
        return self._closed

    def handle_event(self, event: RecognitionEvent) -> FinalizedUtterance | None:
        """Apply one recognition event; return the utterance if it finalized one.

        Must be called from within the running event loop that owns the session.
        """
        if self._closed:
            return None
        if not isinstance(event, RecognitionEvent) or not isinstance(event.text, str):
            logger.debug(f"[Finalizer] Ignoring malformed event: {event!r}")
            return None
        if not event.text.strip():
            return None

        self.accumulator.apply(event)

        if event.speech_final:
            return self._finalize(FinalizeReason.SPEECH_FINAL)

        if self.accumulator.candidate:
            self.accumulator.arm(
                asyncio.get_running_loop(), self.fallback_delay_s, self._on_fallback_timeout
            )
        return None

    def cancel_if_armed(self) -> bool:
        return self.accumulator.cancel_if_armed()

    def close(self) -> None:
        """Stop the finalizer; an utterance still in flight is dropped."""
        if self._closed:
            return
        self._closed = True
        dropped = self.accumulator.candidate
        self.accumulator.reset()
        if dropped:
            logger.info(
                f"[Finalizer] Session {self.session_id[:8]} closed with unfinished utterance "
                f"({len(dropped)} chars dropped)"
            )

    def _on_fallback_timeout(self) -> None:
        # The handle has fired; forget it so reset() does not cancel a spent timer.
        self.accumulator.pending_timer = None
        if self._closed:
            return
        self._finalize(FinalizeReason.FALLBACK_TIMEOUT)

    def _finalize(self, reason: FinalizeReason) -> FinalizedUtterance | None:
        text = self.accumulator.candidate
        self.accumulator.reset()
        if not text:
            return None

        utterance = FinalizedUtterance(text=text, session_id=self.session_id)
        self._emitted += 1
        logger.info(
            f"[Finalizer] Utterance #{self._emitted} finalized by {reason.value}: '{text[:60]}' "
            f"session={self.session_id[:8]}"
        )
        self.on_utterance(utterance)
        return utterance
