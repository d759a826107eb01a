from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

from avatar_relay.core.storage.history import history_to_messages
from avatar_relay.domain.models import ConversationTurn, ReplyPlan, UIAction

FALLBACK_SPEECH_TEXT = "I'm sorry, I had a little trouble thinking of a response."
DEFAULT_TITLE = "New Conversation"


class ReplyPlanningError(RuntimeError):
    """The reply planner could not produce a reply."""


class ReplyParseError(ReplyPlanningError):
    """The reply planner answered, but not with a usable JSON object."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class ReplyPlanner(Protocol):
    async def plan(
        self,
        *,
        session_id: str,
        text: str,
        history: list[ConversationTurn],
    ) -> ReplyPlan: ...

    async def generate_title(self, *, session_id: str, text: str) -> str: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class SemaphoreReplyPlanner:
    inner: ReplyPlanner
    semaphore: asyncio.Semaphore

    async def plan(
        self,
        *,
        session_id: str,
        text: str,
        history: list[ConversationTurn],
    ) -> ReplyPlan:
        async with self.semaphore:
            return await self.inner.plan(session_id=session_id, text=text, history=history)

    async def generate_title(self, *, session_id: str, text: str) -> str:
        async with self.semaphore:
            return await self.inner.generate_title(session_id=session_id, text=text)

    async def close(self) -> None:
        await self.inner.close()


def build_chat_messages(
    system_prompt: str, history: list[ConversationTurn], text: str
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(history_to_messages(history))
    messages.append({"role": "user", "content": text})
    return messages


def _parse_ui_action(value: Any) -> UIAction:
    if not isinstance(value, dict):
        return UIAction()
    action = value.get("action")
    payload = value.get("payload")
    return UIAction(
        action=str(action) if action else "NONE",
        payload=payload if isinstance(payload, dict) else {},
    )


def parse_reply_json(raw: str | None, *, model: str | None = None) -> ReplyPlan:
    """Parse the planner's JSON answer.

    Expected shape: {"speech_text", "hindi_line_to_read", "ui_action": {"action", "payload"}}.
    Missing fields fall back to the apology text / an empty line / a NONE action.
    """
    content = (raw or "").strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
        content = content.strip()
    if not content:
        raise ReplyParseError("Assistant returned empty content", raw=raw or "")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ReplyParseError(f"Failed to parse assistant JSON: {exc}", raw=raw or "") from exc
    if not isinstance(data, dict):
        raise ReplyParseError("Assistant JSON is not an object", raw=raw or "")

    speech = data.get("speech_text")
    hindi = data.get("hindi_line_to_read")
    return ReplyPlan(
        speech_text=str(speech).strip() if speech else FALLBACK_SPEECH_TEXT,
        hindi_line=str(hindi) if hindi else "",
        ui_action=_parse_ui_action(data.get("ui_action")),
        model=model,
    )


def request_meta(messages: list[dict[str, str]], **extra: Any) -> dict[str, Any]:
    last_user = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
    meta: dict[str, Any] = dict(extra)
    meta["message_count"] = len(messages)
    meta["last_user_preview"] = last_user[:160]
    return meta
