"""Key-value store backend tests."""

import pytest

from agentloop.config import AgentLoopConfig, StoreConfig
from agentloop.store import InMemoryKeyValueStore, SQLiteKeyValueStore, get_store


@pytest.mark.asyncio
async def test_inmemory_store_compare_and_set():
    store = InMemoryKeyValueStore()

    assert await store.get("workflow:a") == (None, 0)
    assert await store.put("workflow:a", {"n": 1}, 0)
    # Create-only: a second create loses.
    assert not await store.put("workflow:a", {"n": 2}, 0)

    value, version = await store.get("workflow:a")
    assert value == {"n": 1}
    assert version == 1

    assert await store.put("workflow:a", {"n": 2}, 1)
    assert not await store.put("workflow:a", {"n": 3}, 1)
    assert await store.get("workflow:a") == ({"n": 2}, 2)


@pytest.mark.asyncio
async def test_inmemory_store_returns_copies():
    store = InMemoryKeyValueStore()
    await store.put("k", {"items": [1]}, 0)
    value, _ = await store.get("k")
    value["items"].append(2)
    assert await store.get("k") == ({"items": [1]}, 1)


@pytest.mark.asyncio
async def test_inmemory_store_list_by_prefix():
    store = InMemoryKeyValueStore()
    await store.put("workflow:b", {"id": "b"}, 0)
    await store.put("workflow:a", {"id": "a"}, 0)
    await store.put("agent:x", {"id": "x"}, 0)

    entries = await store.list_by_prefix("workflow:")
    assert [e.key for e in entries] == ["workflow:a", "workflow:b"]
    assert all(e.version == 1 for e in entries)


@pytest.mark.asyncio
async def test_sqlite_store_compare_and_set(tmp_path):
    store = SQLiteKeyValueStore(tmp_path / "kv.db")

    assert await store.get("workflow:a") == (None, 0)
    assert await store.put("workflow:a", {"phase": "plan_review"}, 0)
    assert not await store.put("workflow:a", {"phase": "other"}, 0)
    assert await store.put("workflow:a", {"phase": "plan_accepted"}, 1)
    assert not await store.put("workflow:a", {"phase": "stale"}, 1)

    value, version = await store.get("workflow:a")
    assert value == {"phase": "plan_accepted"}
    assert version == 2
    await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_persists_and_lists(tmp_path):
    db_path = tmp_path / "kv.db"
    store = SQLiteKeyValueStore(db_path)
    await store.put("workflow:1", {"id": "1"}, 0)
    await store.put("workflow:2", {"id": "2"}, 0)
    await store.put("agent:j", {"id": "j"}, 0)
    await store.close()

    reopened = SQLiteKeyValueStore(db_path)
    entries = await reopened.list_by_prefix("workflow:")
    assert [(e.key, e.value) for e in entries] == [
        ("workflow:1", {"id": "1"}),
        ("workflow:2", {"id": "2"}),
    ]
    # LIKE wildcards in a prefix are matched literally.
    assert await reopened.list_by_prefix("workflow%") == []
    await reopened.close()


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("AGENTLOOP_STORE", raising=False)
    config = AgentLoopConfig(
        store=StoreConfig(backend="sqlite", database_url=f"sqlite://{tmp_path / 'kv.db'}")
    )
    assert isinstance(get_store(config=config), SQLiteKeyValueStore)
    assert isinstance(get_store("inmemory", config=config), InMemoryKeyValueStore)

    with pytest.raises(ValueError):
        get_store("postgres", config=AgentLoopConfig())


def test_redis_store_import():
    """Redis store can be imported and configured without a running server."""
    from agentloop.store.redis import RedisKeyValueStore

    store = RedisKeyValueStore(host="cache", port=6380)
    assert store.host == "cache"
    assert store.port == 6380
    assert store.namespace == "agentloop:"
