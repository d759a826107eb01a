from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from avatar_relay.domain.models import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ApiCallRecord:
    service: str
    endpoint: str
    session_id: str | None
    status_code: int | None = None
    elapsed_ms: int | None = None
    started_at: str | None = None
    finished_at: str | None = None
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    request: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)
    notes: str = ""


@dataclass(frozen=True, slots=True)
class ApiErrorRecord:
    service: str
    endpoint: str
    session_id: str | None
    error_type: str
    error_message: str
    status_code: int | None = None
    error_code: str | None = None
    elapsed_ms: int | None = None
    request: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)
    stack_trace: str | None = None


class HistoryStore(Protocol):
    async def append_turn(
        self, session_id: str, user_text: str, ai_text: str, *, model: str | None = None
    ) -> None: ...

    async def read_history(self, session_id: str) -> list[ConversationTurn]: ...
    async def set_title(self, session_id: str, title: str) -> None: ...
    async def get_title(self, session_id: str) -> str | None: ...


class AuditLog(Protocol):
    async def record_call(self, record: ApiCallRecord) -> None: ...
    async def record_error(self, record: ApiErrorRecord) -> None: ...


@dataclass(slots=True)
class InMemoryHistoryStore:
    _turns: dict[str, list[ConversationTurn]] = field(init=False, default_factory=dict)
    _titles: dict[str, str] = field(init=False, default_factory=dict)

    async def append_turn(
        self, session_id: str, user_text: str, ai_text: str, *, model: str | None = None
    ) -> None:
        _ = model
        turn = ConversationTurn(user_text=user_text, ai_text=ai_text, created_at=time.time())
        self._turns.setdefault(session_id, []).append(turn)

    async def read_history(self, session_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(session_id, ()))

    async def set_title(self, session_id: str, title: str) -> None:
        self._titles[session_id] = title

    async def get_title(self, session_id: str) -> str | None:
        return self._titles.get(session_id)


@dataclass(slots=True)
class InMemoryAuditLog:
    calls: list[ApiCallRecord] = field(default_factory=list)
    errors: list[ApiErrorRecord] = field(default_factory=list)

    async def record_call(self, record: ApiCallRecord) -> None:
        self.calls.append(record)

    async def record_error(self, record: ApiErrorRecord) -> None:
        self.errors.append(record)


async def audit_call(audit: AuditLog | None, record: ApiCallRecord) -> None:
    if audit is None:
        return
    try:
        await audit.record_call(record)
    except Exception as exc:
        logger.error(f"[Store] Failed to log {record.service} call {record.endpoint}: {exc}")


async def audit_error(audit: AuditLog | None, record: ApiErrorRecord) -> None:
    if audit is None:
        return
    try:
        await audit.record_error(record)
    except Exception as exc:
        logger.error(f"[Store] Failed to log {record.service} error {record.endpoint}: {exc}")


def history_to_messages(turns: list[ConversationTurn]) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for turn in turns:
        messages.extend(turn.as_messages())
    return messages
