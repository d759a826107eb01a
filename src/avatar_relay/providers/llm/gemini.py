from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from avatar_relay.config.prompts import TITLE_SYSTEM_PROMPT, TUTOR_SYSTEM_PROMPT
from avatar_relay.core.clock import Stopwatch
from avatar_relay.core.llm.provider import (
    DEFAULT_TITLE,
    ReplyPlanningError,
    parse_reply_json,
    request_meta,
)
from avatar_relay.core.storage.history import ApiCallRecord, AuditLog, audit_call
from avatar_relay.domain.models import ConversationTurn, ReplyPlan

logger = logging.getLogger(__name__)


class GeminiClient(Protocol):
    async def generate(
        self,
        *,
        system_prompt: str,
        contents: list[dict[str, Any]],
        json_mode: bool = False,
    ) -> str: ...

    async def close(self) -> None: ...


def history_to_contents(history: list[ConversationTurn], text: str) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for turn in history:
        if turn.user_text:
            contents.append({"role": "user", "parts": [{"text": turn.user_text}]})
        if turn.ai_text:
            contents.append({"role": "model", "parts": [{"text": turn.ai_text}]})
    contents.append({"role": "user", "parts": [{"text": text}]})
    return contents


@dataclass(slots=True)
class GeminiReplyPlanner:
    api_key: str
    model: str = "gemini-3-flash-preview"
    system_prompt: str = TUTOR_SYSTEM_PROMPT
    audit: AuditLog | None = None
    client: GeminiClient | None = None
    _internal_client: GeminiClient | None = field(init=False, default=None, repr=False)

    def _get_client(self) -> GeminiClient:
        if self.client is not None:
            return self.client
        if self._internal_client is None:
            self._internal_client = GoogleGenaiGeminiClient(api_key=self.api_key, model=self.model)
        return self._internal_client

    async def plan(
        self,
        *,
        session_id: str,
        text: str,
        history: list[ConversationTurn],
    ) -> ReplyPlan:
        contents = history_to_contents(history, text)
        logger.info(f"[LLM] Request: '{text[:80]}' with {len(history)} previous turns")

        watch = Stopwatch()
        try:
            raw = await self._get_client().generate(
                system_prompt=self.system_prompt, contents=contents, json_mode=True
            )
        except Exception as exc:
            raise ReplyPlanningError(f"Gemini generate_content failed: {exc}") from exc
        watch.stop()

        plan = parse_reply_json(raw, model=self.model)
        await audit_call(
            self.audit,
            ApiCallRecord(
                service="gemini",
                endpoint="models.generate_content",
                session_id=session_id,
                status_code=200,
                elapsed_ms=watch.elapsed_ms,
                started_at=watch.started_at,
                finished_at=watch.finished_at,
                model=self.model,
                request=request_meta([{"role": "user", "content": text}], turns=len(history)),
                response={"content_preview": raw[:160]},
                notes="success",
            ),
        )
        return plan

    async def generate_title(self, *, session_id: str, text: str) -> str:
        _ = session_id
        try:
            raw = await self._get_client().generate(
                system_prompt=TITLE_SYSTEM_PROMPT,
                contents=[{"role": "user", "parts": [{"text": text}]}],
            )
        except Exception as exc:
            logger.error(f"[LLM] Title generation failed: {exc}")
            return DEFAULT_TITLE
        return raw.strip().strip('"') or DEFAULT_TITLE

    async def close(self) -> None:
        if self._internal_client is not None:
            await self._internal_client.close()
            self._internal_client = None

    @staticmethod
    async def verify_api_key(api_key: str) -> bool:
        if not api_key:
            return False
        try:
            from google import genai  # type: ignore

            client = genai.Client(api_key=api_key)
            async for _ in await client.aio.models.list(config={"page_size": 1}):
                break
            return True
        except Exception:
            return False


@dataclass(slots=True)
class GoogleGenaiGeminiClient:
    api_key: str
    model: str
    _client: Any = field(init=False, default=None, repr=False)

    def _get_client(self) -> Any:
        if self._client is None:
            from google import genai  # type: ignore

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def generate(
        self,
        *,
        system_prompt: str,
        contents: list[dict[str, Any]],
        json_mode: bool = False,
    ) -> str:
        from google.genai import types  # type: ignore

        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            response_mime_type="application/json" if json_mode else None,
        )
        response = await self._get_client().aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )
        if getattr(response, "text", None):
            return str(response.text).strip()
        logger.error("[LLM] No text in response")
        raise RuntimeError("Gemini response did not contain text")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        aio = getattr(client, "aio", None)
        aclose = getattr(aio, "aclose", None)
        if aclose is not None:
            await aclose()
