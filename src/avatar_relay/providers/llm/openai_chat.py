from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from avatar_relay.config.prompts import TITLE_SYSTEM_PROMPT, TUTOR_SYSTEM_PROMPT
from avatar_relay.core.clock import Stopwatch
from avatar_relay.core.llm.provider import (
    DEFAULT_TITLE,
    ReplyPlanningError,
    build_chat_messages,
    parse_reply_json,
    request_meta,
)
from avatar_relay.core.storage.history import ApiCallRecord, AuditLog, audit_call
from avatar_relay.domain.models import ConversationTurn, ReplyPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChatCompletionResult:
    content: str
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    response_id: str | None = None
    finish_reason: str | None = None


class OpenAIChatClient(Protocol):
    async def complete(
        self, *, messages: list[dict[str, str]], json_mode: bool = False
    ) -> ChatCompletionResult: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class OpenAIReplyPlanner:
    api_key: str
    model: str = "gpt-5-chat-latest"
    system_prompt: str = TUTOR_SYSTEM_PROMPT
    timeout_s: float = 30.0
    audit: AuditLog | None = None
    client: OpenAIChatClient | None = None
    _internal_client: OpenAIChatClient | None = field(init=False, default=None, repr=False)

    def _get_client(self) -> OpenAIChatClient:
        if self.client is not None:
            return self.client
        if self._internal_client is None:
            self._internal_client = AsyncOpenAIChatClient(
                api_key=self.api_key, model=self.model, timeout_s=self.timeout_s
            )
        return self._internal_client

    async def plan(
        self,
        *,
        session_id: str,
        text: str,
        history: list[ConversationTurn],
    ) -> ReplyPlan:
        messages = build_chat_messages(self.system_prompt, history, text)
        logger.info(f"[LLM] Request: '{text[:80]}' with {len(history)} previous turns")

        watch = Stopwatch()
        try:
            result = await self._get_client().complete(messages=messages, json_mode=True)
        except Exception as exc:
            raise ReplyPlanningError(f"OpenAI chat completion failed: {exc}") from exc
        watch.stop()
        logger.info(f"[LLM] Response in {watch.elapsed_ms} ms")

        plan = parse_reply_json(result.content, model=result.model or self.model)
        await audit_call(
            self.audit,
            ApiCallRecord(
                service="open_ai",
                endpoint="chat.completions",
                session_id=session_id,
                status_code=200,
                elapsed_ms=watch.elapsed_ms,
                started_at=watch.started_at,
                finished_at=watch.finished_at,
                model=result.model or self.model,
                usage=result.usage,
                request=request_meta(messages, response_format={"type": "json_object"}),
                response={
                    "id": result.response_id,
                    "model": result.model,
                    "finish_reason": result.finish_reason,
                    "content_preview": result.content[:160],
                },
                notes="success",
            ),
        )
        return plan

    async def generate_title(self, *, session_id: str, text: str) -> str:
        messages = [
            {"role": "system", "content": TITLE_SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ]
        watch = Stopwatch()
        try:
            result = await self._get_client().complete(messages=messages)
        except Exception as exc:
            logger.error(f"[LLM] Title generation failed: {exc}")
            return DEFAULT_TITLE
        watch.stop()

        title = result.content.strip().strip('"') or DEFAULT_TITLE
        await audit_call(
            self.audit,
            ApiCallRecord(
                service="open_ai",
                endpoint="chat.completions",
                session_id=session_id,
                status_code=200,
                elapsed_ms=watch.elapsed_ms,
                started_at=watch.started_at,
                finished_at=watch.finished_at,
                model=result.model or self.model,
                usage=result.usage,
                request=request_meta(messages),
                response={"id": result.response_id, "content_preview": title[:160]},
                notes="title generation",
            ),
        )
        logger.info(f"[LLM] Generated title: '{title}' in {watch.elapsed_ms} ms")
        return title

    async def close(self) -> None:
        if self._internal_client is not None:
            await self._internal_client.close()
            self._internal_client = None

    @staticmethod
    async def verify_api_key(api_key: str) -> bool:
        if not api_key:
            return False
        try:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=5.0)
            try:
                await client.models.list()
            finally:
                await client.close()
            return True
        except Exception:
            return False


@dataclass(slots=True)
class AsyncOpenAIChatClient:
    api_key: str
    model: str
    timeout_s: float = 30.0
    _client: Any = field(init=False, default=None, repr=False)

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            # One attempt per utterance; the dispatcher substitutes a fallback on failure.
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_s, max_retries=0)
        return self._client

    async def complete(
        self, *, messages: list[dict[str, str]], json_mode: bool = False
    ) -> ChatCompletionResult:
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._get_client().chat.completions.create(
            model=self.model, messages=messages, **kwargs
        )
        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice is not None and choice.message else None
        usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
        return ChatCompletionResult(
            content=content or "",
            model=getattr(response, "model", None),
            usage=usage,
            response_id=getattr(response, "id", None),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
