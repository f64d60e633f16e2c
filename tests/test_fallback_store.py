"""Fallback selection and the key-value file backend's own guarantees."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from identity_vault.config import clear_settings_cache, get_settings
from identity_vault.errors import StorageWriteError
from identity_vault.fallback import KeyValueFileBackend
from identity_vault.models import StoredItem
from identity_vault.schema import CREDENTIALS, PROFILE
from identity_vault.storage import StorageEngine


@pytest.mark.asyncio
async def test_unopenable_database_falls_back(isolated_env, tmp_path: Path, monkeypatch, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{blocker / 'vault.sqlite3'}")
    clear_settings_cache()
    engine = StorageEngine(get_settings(), clock=clock)
    try:
        await engine.init()
        assert engine.is_fallback
        assert engine.backend_name == "fallback"

        await engine.set(CREDENTIALS, "c1", {"id": "c1"})
        assert await engine.get(CREDENTIALS, "c1") == {"id": "c1"}
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_fallback_file_uses_prefixed_keys(isolated_env, tmp_path: Path, clock):
    settings = get_settings()
    settings = replace(settings, storage=replace(settings.storage, force_fallback=True))
    engine = StorageEngine(settings, clock=clock)
    try:
        await engine.set(CREDENTIALS, "c1", {"id": "c1"}, ttl=50)
    finally:
        await engine.close()

    raw = json.loads((tmp_path / "fallback.kv.json").read_text(encoding="utf-8"))
    assert list(raw) == ["idvault_credentials_c1"]
    envelope = json.loads(raw["idvault_credentials_c1"])
    assert envelope == {"id": "c1", "data": {"id": "c1"}, "timestamp": clock.now, "version": 1, "ttl": 50}


@pytest.mark.asyncio
async def test_in_memory_fallback_when_no_path(isolated_env, tmp_path: Path, clock):
    settings = get_settings()
    settings = replace(settings, storage=replace(settings.storage, force_fallback=True, fallback_path=""))
    engine = StorageEngine(settings, clock=clock)
    try:
        await engine.set(PROFILE, "p", {"v": 1})
        assert await engine.get(PROFILE, "p") == {"v": 1}
    finally:
        await engine.close()
    assert not (tmp_path / "fallback.kv.json").exists()


@pytest.mark.asyncio
async def test_corrupt_entry_degrades_to_missing(tmp_path: Path):
    path = tmp_path / "kv.json"
    good = StoredItem(id="a", data={"v": 1}, timestamp=1).to_dict()
    path.write_text(
        json.dumps({"idvault_profile_a": json.dumps(good), "idvault_profile_b": "{not json"}),
        encoding="utf-8",
    )
    backend = KeyValueFileBackend(path)
    await backend.open()

    assert await backend.fetch(PROFILE, "b") is None
    assert [item.id for item in await backend.fetch_all(PROFILE)] == ["a"]


@pytest.mark.asyncio
async def test_undecodable_file_starts_empty(tmp_path: Path):
    path = tmp_path / "kv.json"
    path.write_text("[[[", encoding="utf-8")
    backend = KeyValueFileBackend(path)
    await backend.open()
    assert await backend.fetch_all(PROFILE) == []


@pytest.mark.asyncio
async def test_write_failure_raises_and_keeps_memory_consistent(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    backend = KeyValueFileBackend(blocker / "kv.json")
    await backend.open()

    with pytest.raises(StorageWriteError) as excinfo:
        await backend.put(PROFILE, StoredItem(id="p", data={"v": 1}, timestamp=1))
    assert excinfo.value.partition == PROFILE
    assert excinfo.value.item_id == "p"
    assert await backend.fetch(PROFILE, "p") is None


@pytest.mark.asyncio
async def test_other_prefixes_are_ignored(tmp_path: Path):
    path = tmp_path / "kv.json"
    foreign = StoredItem(id="a", data={"v": "foreign"}, timestamp=1).to_dict()
    path.write_text(json.dumps({"otherapp_profile_a": json.dumps(foreign)}), encoding="utf-8")
    backend = KeyValueFileBackend(path, key_prefix="idvault")
    await backend.open()

    assert await backend.fetch_all(PROFILE) == []
    await backend.clear(PROFILE)
    assert "otherapp_profile_a" in json.loads(path.read_text(encoding="utf-8"))
