from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
import pytest_asyncio

from identity_vault.config import clear_settings_cache, get_settings
from identity_vault.storage import StorageEngine

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated storage settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("STORAGE_FALLBACK_PATH", str(tmp_path / "fallback.kv.json"))
    monkeypatch.setenv("STORAGE_FORCE_FALLBACK", "false")
    monkeypatch.setenv("STORAGE_KEY_PREFIX", "idvault")
    monkeypatch.setenv("QUEUE_MAX_RETRIES", "3")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    try:
        yield
    finally:
        clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["sqlite", "fallback"])
def backend_kind(request) -> str:
    return request.param


@pytest_asyncio.fixture
async def engine(isolated_env, clock, backend_kind):
    """A StorageEngine on each backend in turn, closed after the test."""
    settings = get_settings()
    if backend_kind == "fallback":
        settings = replace(settings, storage=replace(settings.storage, force_fallback=True))
    storage = StorageEngine(settings, clock=clock)
    try:
        yield storage
    finally:
        await storage.close()


@pytest_asyncio.fixture
async def sqlite_engine(isolated_env, clock):
    storage = StorageEngine(get_settings(), clock=clock)
    try:
        yield storage
    finally:
        await storage.close()
