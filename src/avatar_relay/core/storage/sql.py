"""SQLAlchemy-backed conversation history and API audit log.

Writes are append-only and keyed by chat session id; calls run in a worker
thread so the event loop keeps servicing audio while the database is busy.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from avatar_relay.core.storage.history import ApiCallRecord, ApiErrorRecord
from avatar_relay.domain.models import ConversationTurn

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

chats = Table(
    "chats",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chat_session_id", String(128), nullable=False, index=True),
    Column("user_message", Text, nullable=False),
    Column("ai_response", Text, nullable=False),
    Column("ai_model", String(128)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

chats_title = Table(
    "chats_title",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chat_session_id", String(128), nullable=False, unique=True),
    Column("title", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

api_call_log = Table(
    "api_call_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service", String(64), nullable=False),
    Column("endpoint", String(128), nullable=False),
    Column("chat_session_id", String(128), index=True),
    Column("http_status_code", Integer),
    Column("elapsed_ms", Integer),
    Column("started_at", String(32)),
    Column("finished_at", String(32)),
    Column("model", String(128)),
    Column("prompt_tokens", Integer),
    Column("completion_tokens", Integer),
    Column("total_tokens", Integer),
    Column("request_payload", JSON),
    Column("response_payload", JSON),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)

third_party_error_log = Table(
    "third_party_error_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service_by", String(64), nullable=False),
    Column("provider_endpoint", String(128), nullable=False),
    Column("chat_session_id", String(128), index=True),
    Column("http_status_code", Integer),
    Column("error_code", String(128)),
    Column("error_type", String(128)),
    Column("error_message", Text),
    Column("request_payload", JSON),
    Column("response_payload", JSON),
    Column("stack_trace", Text),
    Column("elapsed_ms", Integer),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
)


def _json_safe(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value or {}, default=str))


def _token(usage: dict[str, Any], key: str) -> int | None:
    value = usage.get(key)
    return int(value) if isinstance(value, (int, float)) else None


@dataclass(slots=True)
class SqlStore:
    """History store and audit log over one SQLAlchemy engine."""

    database_url: str
    echo: bool = False
    _engine: Engine = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must be non-empty")

        kwargs: dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(self.database_url, **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        metadata.create_all(self._engine)
        logger.info("[Store] Database schema ready")

    def dispose(self) -> None:
        self._engine.dispose()

    # History

    async def append_turn(
        self, session_id: str, user_text: str, ai_text: str, *, model: str | None = None
    ) -> None:
        await asyncio.to_thread(self._append_turn_sync, session_id, user_text, ai_text, model)

    async def read_history(self, session_id: str) -> list[ConversationTurn]:
        return await asyncio.to_thread(self._read_history_sync, session_id)

    async def set_title(self, session_id: str, title: str) -> None:
        await asyncio.to_thread(self._set_title_sync, session_id, title)

    async def get_title(self, session_id: str) -> str | None:
        return await asyncio.to_thread(self._get_title_sync, session_id)

    # Audit

    async def record_call(self, record: ApiCallRecord) -> None:
        await asyncio.to_thread(self._record_call_sync, record)

    async def record_error(self, record: ApiErrorRecord) -> None:
        await asyncio.to_thread(self._record_error_sync, record)

    def _append_turn_sync(
        self, session_id: str, user_text: str, ai_text: str, model: str | None
    ) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(chats).values(
                    chat_session_id=session_id,
                    user_message=user_text,
                    ai_response=ai_text,
                    ai_model=model,
                )
            )

    def _read_history_sync(self, session_id: str) -> list[ConversationTurn]:
        query = (
            select(chats.c.user_message, chats.c.ai_response, chats.c.created_at)
            .where(chats.c.chat_session_id == session_id)
            .order_by(chats.c.id)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(query).all()
        return [
            ConversationTurn(
                user_text=row.user_message or "",
                ai_text=row.ai_response or "",
                created_at=row.created_at.timestamp() if row.created_at else None,
            )
            for row in rows
        ]

    def _set_title_sync(self, session_id: str, title: str) -> None:
        with self._engine.begin() as conn:
            existing = conn.execute(
                select(chats_title.c.id).where(chats_title.c.chat_session_id == session_id)
            ).first()
            if existing is None:
                conn.execute(insert(chats_title).values(chat_session_id=session_id, title=title))
            else:
                conn.execute(
                    update(chats_title)
                    .where(chats_title.c.id == existing.id)
                    .values(title=title, updated_at=_utcnow())
                )

    def _get_title_sync(self, session_id: str) -> str | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(chats_title.c.title).where(chats_title.c.chat_session_id == session_id)
            ).first()
        return row.title if row is not None else None

    def _record_call_sync(self, record: ApiCallRecord) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(api_call_log).values(
                    service=record.service,
                    endpoint=record.endpoint,
                    chat_session_id=record.session_id,
                    http_status_code=record.status_code,
                    elapsed_ms=record.elapsed_ms,
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                    model=record.model,
                    prompt_tokens=_token(record.usage, "prompt_tokens"),
                    completion_tokens=_token(record.usage, "completion_tokens"),
                    total_tokens=_token(record.usage, "total_tokens"),
                    request_payload=_json_safe(record.request),
                    response_payload=_json_safe(record.response),
                    notes=record.notes,
                )
            )

    def _record_error_sync(self, record: ApiErrorRecord) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(third_party_error_log).values(
                    service_by=record.service,
                    provider_endpoint=record.endpoint,
                    chat_session_id=record.session_id,
                    http_status_code=record.status_code,
                    error_code=record.error_code,
                    error_type=record.error_type,
                    error_message=record.error_message,
                    request_payload=_json_safe(record.request),
                    response_payload=_json_safe(record.response),
                    stack_trace=record.stack_trace,
                    elapsed_ms=record.elapsed_ms,
                )
            )
