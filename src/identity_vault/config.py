"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Primary (SQLite) storage connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class StorageSettings:
    """Fallback key-value store configuration."""

    # Empty string keeps the fallback store purely in memory
    fallback_path: str
    force_fallback: bool
    key_prefix: str


@dataclass(slots=True, frozen=True)
class QueueSettings:
    """Offline mutation queue behaviour."""

    max_retries: int


@dataclass(slots=True, frozen=True)
class ConnectivitySettings:
    """HTTP reachability probe used to derive the online/offline signal.

    Example .env:
        CONNECTIVITY_PROBE_URL=https://vault.example.com/health
        CONNECTIVITY_PROBE_INTERVAL_SECONDS=30
    """

    probe_url: str
    probe_interval_seconds: float
    probe_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    database: DatabaseSettings
    storage: StorageSettings
    queue: QueueSettings
    connectivity: ConnectivitySettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./identity_vault.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    storage_settings = StorageSettings(
        fallback_path=_decouple_config("STORAGE_FALLBACK_PATH", default="./identity_vault.kv.json").strip(),
        force_fallback=_bool(_decouple_config("STORAGE_FORCE_FALLBACK", default="false"), default=False),
        key_prefix=_decouple_config("STORAGE_KEY_PREFIX", default="idvault").strip() or "idvault",
    )

    max_retries = _int(_decouple_config("QUEUE_MAX_RETRIES", default="3"), default=3)
    queue_settings = QueueSettings(max_retries=max_retries if max_retries > 0 else 3)

    connectivity_settings = ConnectivitySettings(
        probe_url=_decouple_config("CONNECTIVITY_PROBE_URL", default="").strip(),
        probe_interval_seconds=_float(_decouple_config("CONNECTIVITY_PROBE_INTERVAL_SECONDS", default="30"), default=30.0),
        probe_timeout_seconds=_float(_decouple_config("CONNECTIVITY_PROBE_TIMEOUT_SECONDS", default="5"), default=5.0),
    )

    return Settings(
        environment=environment,
        database=database_settings,
        storage=storage_settings,
        queue=queue_settings,
        connectivity=connectivity_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
