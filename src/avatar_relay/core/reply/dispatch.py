from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from avatar_relay.core.llm.provider import (
    FALLBACK_SPEECH_TEXT,
    ReplyParseError,
    ReplyPlanner,
)
from avatar_relay.core.storage.history import (
    ApiErrorRecord,
    AuditLog,
    HistoryStore,
    audit_error,
)
from avatar_relay.core.stt.session import RelayClient
from avatar_relay.domain.messages import encode_reply, encode_utterance
from avatar_relay.domain.models import (
    ConversationTurn,
    FinalizedUtterance,
    ReplyPlan,
    ReplyResponse,
)

logger = logging.getLogger(__name__)


class AvatarSpeaker(Protocol):
    async def speak(self, session_id: str, text: str) -> None: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class ReplyDispatcher:
    """Turns one finalized utterance into one displayable reply.

    Never raises for collaborator failures: a failed or unparseable plan
    becomes the fixed apology text, exactly once, with no retry. The avatar
    is asked to speak in the background; the returned reply does not wait
    for it.
    """

    planner: ReplyPlanner
    history: HistoryStore
    avatar: AvatarSpeaker | None = None
    audit: AuditLog | None = None
    timeout_s: float = 30.0
    generate_titles: bool = True
    fallback_text: str = FALLBACK_SPEECH_TEXT

    _background: set[asyncio.Task[None]] = field(init=False, default_factory=set, repr=False)

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        if not self.fallback_text.strip():
            raise ValueError("fallback_text must be non-empty")

    async def dispatch(self, utterance: FinalizedUtterance) -> ReplyResponse:
        session_id = utterance.session_id
        history = await self._read_history(session_id)

        is_fallback = False
        try:
            plan = await asyncio.wait_for(
                self.planner.plan(session_id=session_id, text=utterance.text, history=history),
                timeout=self.timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            is_fallback = True
            plan = ReplyPlan(speech_text=self.fallback_text)
            await self._record_planner_failure(session_id, exc)

        await self._append_turn(session_id, utterance.text, plan)

        if not history and self.generate_titles and not is_fallback:
            self._spawn(self._generate_title(session_id, utterance.text))
        if self.avatar is not None:
            self._spawn(self._speak(session_id, plan.speech_text))

        logger.info(
            f"[Reply] session={session_id[:8]} fallback={is_fallback} "
            f"action={plan.ui_action.action} spoken='{plan.speech_text[:60]}'"
        )
        return ReplyResponse(
            spoken=plan.speech_text,
            hindi_line=plan.hindi_line,
            ui=plan.ui_action,
            is_fallback=is_fallback,
        )

    async def drain(self) -> None:
        """Wait for background avatar/title requests started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.planner.close()
        if self.avatar is not None:
            await self.avatar.close()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _read_history(self, session_id: str) -> list[ConversationTurn]:
        try:
            return await self.history.read_history(session_id)
        except Exception as exc:
            logger.error(f"[Reply] Failed to read history for {session_id[:8]}: {exc}")
            return []

    async def _append_turn(self, session_id: str, user_text: str, plan: ReplyPlan) -> None:
        try:
            await self.history.append_turn(session_id, user_text, plan.speech_text, model=plan.model)
        except Exception as exc:
            logger.error(f"[Reply] Failed to store turn for {session_id[:8]}: {exc}")

    async def _record_planner_failure(self, session_id: str, exc: Exception) -> None:
        if isinstance(exc, ReplyParseError):
            error_type = "client_parse_error"
            response = {"content": exc.raw[:1000]}
        elif isinstance(exc, asyncio.TimeoutError):
            error_type = "timeout"
            response = {}
        else:
            error_type = "provider_error"
            response = {}
        message = str(exc) or type(exc).__name__
        logger.error(f"[Reply] Reply planning failed ({error_type}): {message}")
        await audit_error(
            self.audit,
            ApiErrorRecord(
                service="reply_planner",
                endpoint="plan",
                session_id=session_id,
                error_type=error_type,
                error_message=message,
                response=response,
            ),
        )

    async def _generate_title(self, session_id: str, text: str) -> None:
        try:
            title = await self.planner.generate_title(session_id=session_id, text=text)
            await self.history.set_title(session_id, title)
            logger.info(f"[Reply] Saved title for session {session_id[:8]}: '{title}'")
        except Exception as exc:
            logger.error(f"[Reply] Title generation failed for {session_id[:8]}: {exc}")

    async def _speak(self, session_id: str, text: str) -> None:
        try:
            await self.avatar.speak(session_id, text)  # type: ignore[union-attr]
        except Exception as exc:
            logger.error(f"[Reply] Avatar speak failed for {session_id[:8]}: {exc}")


@dataclass(slots=True)
class SessionReplyWorker:
    """Dispatches one session's utterances strictly in finalization order.

    Closing drops utterances that have not started; a dispatch already in
    flight completes, and its reply is only sent if the client is still open.
    """

    session_id: str
    dispatcher: ReplyDispatcher
    client: RelayClient

    _queue: asyncio.Queue[FinalizedUtterance | None] = field(
        init=False, default_factory=asyncio.Queue, repr=False
    )
    _task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _closed: bool = field(init=False, default=False)
    _dispatched: int = field(init=False, default=0)

    @property
    def dispatched_count(self) -> int:
        return self._dispatched

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def submit(self, utterance: FinalizedUtterance) -> bool:
        if self._closed:
            logger.debug(f"[Reply] Worker closed; dropping utterance for {self.session_id[:8]}")
            return False
        self._queue.put_nowait(utterance)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            if self._queue.get_nowait() is not None:
                dropped += 1
        if dropped:
            logger.info(f"[Reply] Dropped {dropped} queued utterance(s) for {self.session_id[:8]}")
        self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            utterance = await self._queue.get()
            if utterance is None:
                return
            try:
                await self._send(encode_utterance(utterance))
                response = await self.dispatcher.dispatch(utterance)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    f"[Reply] Dispatch failed for session {self.session_id[:8]}: {exc}"
                )
                continue
            self._dispatched += 1
            if not self.client.is_open:
                logger.info(f"[Reply] Session {self.session_id[:8]} ended; discarding reply")
                continue
            await self._send(encode_reply(response))

    async def _send(self, message: str) -> None:
        if not self.client.is_open:
            return
        try:
            await self.client.send_text(message)
        except Exception as exc:
            logger.debug(f"[Reply] Failed to send to client: {exc}")
