from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from avatar_relay.core.storage.history import ApiCallRecord, ApiErrorRecord
from avatar_relay.core.storage.sql import SqlStore, api_call_log, third_party_error_log


def _store(tmp_path) -> SqlStore:
    store = SqlStore(database_url=f"sqlite:///{tmp_path / 'history.db'}")
    store.create_schema()
    return store


def test_store_requires_url():
    with pytest.raises(ValueError):
        SqlStore(database_url="")


def test_history_is_ordered_and_keyed_by_session(tmp_path):
    async def run():
        store = _store(tmp_path)
        await store.append_turn("s1", "Hello", "Namaste!", model="gpt-test")
        await store.append_turn("s2", "Other", "Different session")
        await store.append_turn("s1", "I want tea", "Mujhe chai chahiye")

        turns = await store.read_history("s1")
        assert [(t.user_text, t.ai_text) for t in turns] == [
            ("Hello", "Namaste!"),
            ("I want tea", "Mujhe chai chahiye"),
        ]
        assert all(t.created_at is not None for t in turns)
        assert await store.read_history("missing") == []
        store.dispose()

    asyncio.run(run())


def test_title_upsert(tmp_path):
    async def run():
        store = _store(tmp_path)
        assert await store.get_title("s1") is None

        await store.set_title("s1", "New Conversation")
        await store.set_title("s1", "Ordering Tea")
        assert await store.get_title("s1") == "Ordering Tea"
        store.dispose()

    asyncio.run(run())


def test_audit_records_are_persisted(tmp_path):
    async def run():
        store = _store(tmp_path)
        await store.record_call(
            ApiCallRecord(
                service="open_ai",
                endpoint="chat.completions",
                session_id="s1",
                status_code=200,
                elapsed_ms=123,
                model="gpt-test",
                usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
                request={"message_count": 3},
                response={"id": "chatcmpl-1"},
                notes="success",
            )
        )
        await store.record_error(
            ApiErrorRecord(
                service="heygen",
                endpoint="streaming.task",
                session_id="s1",
                error_type="http_error",
                error_message="bad key",
                status_code=401,
                response={"message": "bad key"},
            )
        )

        with store.engine.connect() as conn:
            call = conn.execute(select(api_call_log)).one()
            error = conn.execute(select(third_party_error_log)).one()

        assert call.service == "open_ai"
        assert call.total_tokens == 15
        assert call.request_payload == {"message_count": 3}
        assert error.service_by == "heygen"
        assert error.http_status_code == 401
        assert error.response_payload == {"message": "bad key"}
        store.dispose()

    asyncio.run(run())


def test_in_memory_sqlite_shares_one_connection():
    async def run():
        store = SqlStore(database_url="sqlite://")
        store.create_schema()
        await store.append_turn("s1", "a", "b")
        assert len(await store.read_history("s1")) == 1
        store.dispose()

    asyncio.run(run())
