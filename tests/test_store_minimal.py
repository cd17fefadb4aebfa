from __future__ import annotations

from pathlib import Path

import pytest

from cra.schema import ContentBlock, ConversationTurn, Session, SessionOptions, TurnRole
from cra.store import InMemorySessionStore, SQLiteSessionStore


def _session(session_id: str = "sess-1") -> Session:
    return Session(
        session_id=session_id,
        workspace_uri="file:///tmp/ws",
        session_options=SessionOptions(persist_history=True, enable_git_ops=True, context_files=["README.md"]),
        agent_context={"repository": "acme/widgets", "automation": {"mode": "commit-only"}},
        message_history=[ConversationTurn(role=TurnRole.USER, content=[ContentBlock(type="text", text="hi")])],
    )


def test_sqlite_store_round_trip(tmp_path: Path) -> None:
    db_path = tmp_path / "db" / "sessions.sqlite"

    with SQLiteSessionStore(db_path) as store:
        store.put_session(_session())
        loaded = store.get_session("sess-1")

    assert loaded is not None
    assert loaded.agent_context == {"repository": "acme/widgets", "automation": {"mode": "commit-only"}}
    assert loaded.session_options.context_files == ["README.md"]
    assert loaded.message_history[0].content[0].text == "hi"
    assert loaded.created_at.tzinfo is not None


def test_sqlite_store_updates_and_lists(tmp_path: Path) -> None:
    with SQLiteSessionStore(tmp_path / "sessions.sqlite") as store:
        session = _session()
        store.put_session(session)
        session.state = "archived"
        store.put_session(session)
        store.put_session(_session("sess-2"))

        assert store.get_session("sess-1").state == "archived"
        assert sorted(store.list_session_ids()) == ["sess-1", "sess-2"]
        assert store.get_session("unknown") is None


def test_sqlite_store_rejects_use_after_close(tmp_path: Path) -> None:
    store = SQLiteSessionStore(tmp_path / "sessions.sqlite")
    store.close()

    with pytest.raises(RuntimeError):
        store.get_session("sess-1")


@pytest.mark.asyncio
async def test_sqlite_store_async_api(tmp_path: Path) -> None:
    with SQLiteSessionStore(tmp_path / "sessions.sqlite") as store:
        await store.save(_session())
        loaded = await store.load("sess-1")

    assert loaded is not None
    assert loaded.session_id == "sess-1"


@pytest.mark.asyncio
async def test_in_memory_store_returns_independent_copies() -> None:
    store = InMemorySessionStore([_session()])

    first = await store.load("sess-1")
    assert first is not None
    first.message_history.clear()
    second = await store.load("sess-1")

    assert second is not None
    assert len(second.message_history) == 1
    assert store.save_count == 0

    await store.save(first)
    assert store.save_count == 1
    assert (await store.load("sess-1")).message_history == []
    assert await store.load("missing") is None
