"""StorageEngine behaviour, run against both the SQLite and the key-value file backend."""

from __future__ import annotations

import asyncio

import pytest

from identity_vault.errors import StorageWriteError, UnknownIndexError, UnknownPartitionError
from identity_vault.fallback import KeyValueFileBackend
from identity_vault.schema import CACHE, CREDENTIALS, HANDSHAKE, PROFILE
from identity_vault.storage import SQLiteBackend


@pytest.mark.asyncio
async def test_init_selects_expected_backend(engine, backend_kind):
    await engine.init()
    assert engine.backend_name == backend_kind
    assert engine.is_fallback is (backend_kind == "fallback")


@pytest.mark.asyncio
async def test_concurrent_init_opens_once(engine, monkeypatch):
    opens: list[str] = []

    def counting(backend_cls):
        original = backend_cls.open

        async def open_and_count(self):
            opens.append(self.name)
            await asyncio.sleep(0)
            await original(self)

        monkeypatch.setattr(backend_cls, "open", open_and_count)

    counting(SQLiteBackend)
    counting(KeyValueFileBackend)

    await asyncio.gather(*(engine.init() for _ in range(5)))
    await engine.init()

    assert opens == [engine.backend_name]


@pytest.mark.asyncio
async def test_set_then_get_returns_payload_with_version_one(engine, clock):
    credential = {"id": "c1", "type": "degree", "status": "active", "issuer": "uni"}
    await engine.set(CREDENTIALS, "c1", credential)

    assert await engine.get(CREDENTIALS, "c1") == credential
    item = await engine.get_item(CREDENTIALS, "c1")
    assert item is not None
    assert item.version == 1
    assert item.timestamp == clock.now
    assert item.ttl is None


@pytest.mark.asyncio
async def test_set_overwrites_existing_item(engine):
    await engine.set(PROFILE, "name", {"first": "Ada"})
    await engine.set(PROFILE, "name", {"first": "Grace"}, version=2)

    item = await engine.get_item(PROFILE, "name")
    assert item is not None
    assert item.data == {"first": "Grace"}
    assert item.version == 2
    assert await engine.get_all(PROFILE) == [{"first": "Grace"}]


@pytest.mark.asyncio
async def test_missing_item_returns_none(engine):
    assert await engine.get(CREDENTIALS, "nope") is None
    assert await engine.get_item(CREDENTIALS, "nope") is None


@pytest.mark.asyncio
async def test_ttl_expiry_hides_and_deletes_item(engine, clock):
    await engine.set(CACHE, "k", {"key": "k", "data": 1}, ttl=1_000)
    await engine.set(CACHE, "other", {"key": "other", "data": 2})

    clock.advance(1_000)
    # Still live exactly at the boundary
    assert await engine.get(CACHE, "k") == {"key": "k", "data": 1}

    clock.advance(1)
    assert await engine.get(CACHE, "k") is None
    assert await engine.get_all(CACHE) == [{"key": "other", "data": 2}]
    # Lazy deletion already removed the row, nothing left to purge
    assert await engine.purge_expired() == 0


@pytest.mark.asyncio
async def test_zero_ttl_never_expires(engine, clock):
    await engine.set(PROFILE, "p", {"v": 1}, ttl=0)
    clock.advance(10**9)
    assert await engine.get(PROFILE, "p") == {"v": 1}


@pytest.mark.asyncio
async def test_negative_ttl_rejected(engine):
    with pytest.raises(ValueError):
        await engine.set(PROFILE, "p", {"v": 1}, ttl=-5)


@pytest.mark.asyncio
async def test_get_all_is_ordered_by_id(engine):
    for item_id in ("b", "c", "a"):
        await engine.set(CREDENTIALS, item_id, {"id": item_id})
    assert [entry["id"] for entry in await engine.get_all(CREDENTIALS)] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_partitions_are_isolated(engine):
    await engine.set(CREDENTIALS, "x", {"id": "x"})
    await engine.set(HANDSHAKE, "x", {"id": "x", "status": "pending"})

    await engine.clear(CREDENTIALS)

    assert await engine.get_all(CREDENTIALS) == []
    assert await engine.get(HANDSHAKE, "x") == {"id": "x", "status": "pending"}


@pytest.mark.asyncio
async def test_query_by_payload_index(engine):
    await engine.set(CREDENTIALS, "c3", {"id": "c3", "type": "degree"})
    await engine.set(CREDENTIALS, "c1", {"id": "c1", "type": "degree"})
    await engine.set(CREDENTIALS, "c2", {"id": "c2", "type": "license"})
    await engine.set(CREDENTIALS, "c4", {"id": "c4"})

    results = await engine.query(CREDENTIALS, "type", "degree")
    assert [entry["id"] for entry in results] == ["c1", "c3"]
    assert await engine.query(CREDENTIALS, "type", "passport") == []


@pytest.mark.asyncio
async def test_query_pagination_applies_after_ttl_filter(engine, clock):
    await engine.set(HANDSHAKE, "h1", {"id": "h1", "status": "pending"}, ttl=10)
    for item_id in ("h2", "h3", "h4"):
        await engine.set(HANDSHAKE, item_id, {"id": item_id, "status": "pending"})
    clock.advance(11)

    page = await engine.query(HANDSHAKE, "status", "pending", limit=2, offset=1)
    assert [entry["id"] for entry in page] == ["h3", "h4"]


@pytest.mark.asyncio
async def test_query_by_envelope_timestamp(engine, clock):
    await engine.set(CREDENTIALS, "early", {"id": "early"})
    stamp = clock.advance(500)
    await engine.set(CREDENTIALS, "late", {"id": "late"})

    assert await engine.query(CREDENTIALS, "timestamp", stamp) == [{"id": "late"}]


@pytest.mark.asyncio
async def test_query_by_timestamp_rejects_numeric_string(engine, clock):
    await engine.set(CREDENTIALS, "c1", {"id": "c1"})

    with pytest.raises(ValueError):
        await engine.query(CREDENTIALS, "timestamp", str(clock.now))
    with pytest.raises(ValueError):
        await engine.query(CREDENTIALS, "timestamp", True)
    assert await engine.query(CREDENTIALS, "timestamp", clock.now) == [{"id": "c1"}]


@pytest.mark.asyncio
async def test_payload_index_does_not_coerce_between_text_and_numbers(engine):
    await engine.set(CREDENTIALS, "text", {"id": "text", "type": "5"})
    await engine.set(CREDENTIALS, "number", {"id": "number", "type": 5})

    assert await engine.query(CREDENTIALS, "type", "5") == [{"id": "text", "type": "5"}]
    assert await engine.query(CREDENTIALS, "type", 5) == [{"id": "number", "type": 5}]


@pytest.mark.asyncio
async def test_query_rejects_null_value(engine):
    with pytest.raises(ValueError):
        await engine.query(CREDENTIALS, "type", None)


@pytest.mark.asyncio
async def test_unknown_partition_and_index(engine):
    with pytest.raises(UnknownPartitionError):
        await engine.set("nope", "x", {})
    with pytest.raises(UnknownIndexError):
        await engine.query(PROFILE, "type", "x")
    with pytest.raises(ValueError):
        await engine.get_all("nope")


@pytest.mark.asyncio
async def test_unique_cache_key_index_rejects_duplicates(engine):
    await engine.set(CACHE, "a", {"key": "shared", "data": 1})
    with pytest.raises(StorageWriteError):
        await engine.set(CACHE, "b", {"key": "shared", "data": 2})
    # Rewriting the same id is an update, not a duplicate
    await engine.set(CACHE, "a", {"key": "shared", "data": 3})
    assert await engine.get(CACHE, "a") == {"key": "shared", "data": 3}


@pytest.mark.asyncio
async def test_delete_removes_only_target(engine):
    await engine.set(CREDENTIALS, "a", {"id": "a"})
    await engine.set(CREDENTIALS, "b", {"id": "b"})
    await engine.delete(CREDENTIALS, "a")
    await engine.delete(CREDENTIALS, "missing")
    assert await engine.get_all(CREDENTIALS) == [{"id": "b"}]


@pytest.mark.asyncio
async def test_purge_expired_counts_across_partitions(engine, clock):
    await engine.set(CACHE, "c", {"key": "c"}, ttl=5)
    await engine.set(PROFILE, "p", {"v": 1}, ttl=5)
    await engine.set(PROFILE, "keep", {"v": 2})
    clock.advance(6)

    assert await engine.purge_expired() == 2
    assert await engine.get_all(PROFILE) == [{"v": 2}]


@pytest.mark.asyncio
async def test_stats_report_live_items(engine, clock, backend_kind):
    await engine.set(CREDENTIALS, "c1", {"id": "c1"})
    await engine.set(CACHE, "gone", {"key": "gone"}, ttl=1)
    last = clock.advance(10)
    await engine.set(PROFILE, "p", {"v": 1})

    stats = await engine.get_stats()
    assert stats.backend == backend_kind
    assert stats.total_items == 2
    assert stats.per_partition[CREDENTIALS] == 1
    assert stats.per_partition[CACHE] == 0
    assert stats.last_modified == last
    assert stats.storage_size == len('{"id":"c1"}') + len('{"v":1}')
    assert set(stats.partitions) == {"credentials", "handshake", "profile", "cache", "sync"}


@pytest.mark.asyncio
async def test_data_survives_reopen(engine):
    await engine.set(CREDENTIALS, "c1", {"id": "c1"})
    await engine.close()
    assert await engine.get(CREDENTIALS, "c1") == {"id": "c1"}
