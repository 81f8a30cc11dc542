"""Tests for the memory and SQLite storage backends."""

import asyncio
import time

import pytest
import pytest_asyncio

from moperator.storage import MemoryStorage, SqliteStorage, StorageConflictError


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    store = SqliteStorage(str(tmp_path / "backend.db"))
    await store.init_db()
    return store


@pytest.mark.asyncio
async def test_put_get_delete(backend):
    assert await backend.get("missing") is None
    await backend.put("k", b"v1")
    assert await backend.get("k") == b"v1"
    await backend.put("k", b"v2")
    assert await backend.get("k") == b"v2"
    await backend.delete("k")
    assert await backend.get("k") is None
    await backend.delete("k")


@pytest.mark.asyncio
async def test_list_prefix_is_sorted_and_literal(backend):
    for key in ("retry:2", "retry:1", "dead:1", "retry_x", "ratelimit:a%b"):
        await backend.put(key, b"x")
    assert await backend.list("retry:") == ["retry:1", "retry:2"]
    assert await backend.list("ratelimit:a%") == ["ratelimit:a%b"]
    assert len(await backend.list()) == 5


@pytest.mark.asyncio
async def test_ttl_expiry(backend, monkeypatch):
    await backend.put("short", b"1", ttl=10)
    await backend.put("forever", b"2")
    assert await backend.get("short") == b"1"

    real_time = time.time
    monkeypatch.setattr(time, "time", lambda: real_time() + 11)
    assert await backend.get("short") is None
    assert await backend.list() == ["forever"]
    assert await backend.compare_and_set("short", None, b"new")
    assert await backend.get("short") == b"new"


@pytest.mark.asyncio
async def test_compare_and_set(backend):
    assert await backend.compare_and_set("k", None, b"a") is True
    assert await backend.compare_and_set("k", None, b"b") is False
    assert await backend.compare_and_set("k", b"x", b"b") is False
    assert await backend.compare_and_set("k", b"a", b"b") is True
    assert await backend.get("k") == b"b"


@pytest.mark.asyncio
async def test_update_applies_mutation(backend):
    def bump(raw):
        return str(int(raw or b"0") + 1).encode()

    assert await backend.update("n", bump) == b"1"
    assert await backend.update("n", bump) == b"2"
    assert await backend.update("n", lambda raw: None) == b"2"
    assert await backend.update("absent", lambda raw: None) is None


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_lose_increments(backend):
    def bump(raw):
        return str(int(raw or b"0") + 1).encode()

    await asyncio.gather(*(backend.update("n", bump) for _ in range(8)))
    assert await backend.get("n") == b"8"


@pytest.mark.asyncio
async def test_update_gives_up_when_always_beaten(storage):
    calls = []

    async def racing_cas(key, expected, value, ttl=None):
        calls.append(key)
        return False

    storage.compare_and_set = racing_cas
    with pytest.raises(StorageConflictError) as excinfo:
        await storage.update("k", lambda raw: b"v", max_attempts=3)
    assert excinfo.value.attempts == 3
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_sqlite_purge_expired(sqlite_storage, monkeypatch):
    await sqlite_storage.put("a", b"1", ttl=5)
    await sqlite_storage.put("b", b"2")
    real_time = time.time
    monkeypatch.setattr(time, "time", lambda: real_time() + 6)
    assert await sqlite_storage.purge_expired() == 1
    assert await sqlite_storage.purge_expired() == 0
    assert await sqlite_storage.get("b") == b"2"


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(sqlite_storage):
    await sqlite_storage.put("k", b"v")
    other = SqliteStorage(sqlite_storage.db_path)
    await other.init_db()
    assert await other.get("k") == b"v"
