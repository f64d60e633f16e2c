from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from identity_vault.config import DatabaseSettings, clear_settings_cache, get_settings
from identity_vault.db import build_engine, ensure_schema, get_database_path, retry_on_db_lock


def _operational(message: str) -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception(message))


@pytest.mark.asyncio
async def test_retry_on_db_lock_retries_until_success():
    attempts = {"count": 0}

    @retry_on_db_lock(max_retries=3, base_delay=0.001, max_delay=0.002)
    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise _operational("database is locked")
        return "ok"

    assert await flaky() == "ok"
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retry_on_db_lock_gives_up_after_max_retries():
    attempts = {"count": 0}

    @retry_on_db_lock(max_retries=2, base_delay=0.001, max_delay=0.002)
    async def always_locked() -> None:
        attempts["count"] += 1
        raise _operational("database is busy")

    with pytest.raises(OperationalError):
        await always_locked()
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retry_on_db_lock_does_not_retry_open_failures():
    attempts = {"count": 0}

    @retry_on_db_lock(max_retries=5, base_delay=0.001)
    async def unopenable() -> None:
        attempts["count"] += 1
        raise _operational("unable to open database file")

    with pytest.raises(OperationalError):
        await unopenable()
    assert attempts["count"] == 1


def test_build_engine_rejects_non_sqlite_url():
    with pytest.raises(ValueError):
        build_engine(DatabaseSettings(url="postgresql+asyncpg://localhost/db", echo=False, pool_size=None, pool_timeout=None))


@pytest.mark.asyncio
async def test_ensure_schema_creates_table_and_expression_indexes(isolated_env, tmp_path: Path):
    engine = build_engine(get_settings().database)
    try:
        await ensure_schema(engine)
        # Idempotent
        await ensure_schema(engine)
        async with engine.connect() as conn:
            rows = await conn.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'stored_items'")
            )
            names = {row[0] for row in rows}
            journal = (await conn.execute(text("PRAGMA journal_mode"))).scalar_one()
    finally:
        await engine.dispose()

    assert {
        "idx_credentials_type",
        "idx_credentials_status",
        "idx_credentials_issuer",
        "idx_handshake_status",
        "idx_handshake_requester",
        "idx_cache_key",
        "idx_cache_expires",
        "idx_stored_items_partition_timestamp",
    } <= names
    assert str(journal).lower() == "wal"
    assert (tmp_path / "test.sqlite3").exists()


def test_get_database_path(isolated_env, tmp_path: Path):
    assert get_database_path(get_settings()) == tmp_path / "test.sqlite3"


def test_get_database_path_for_memory(monkeypatch, isolated_env):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    clear_settings_cache()
    assert get_database_path() is None
