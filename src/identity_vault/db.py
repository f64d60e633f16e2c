"""Async SQLite engine construction and schema management for the primary store.

Key invariants:
- One table (``stored_items``) holds every partition, keyed by (partition, item_id)
- Payload indices are SQLite expression indexes over ``json_extract(data, '$.<field>')``
- WAL mode with NORMAL sync; one writer at a time, concurrent readers allowed
- Only transient lock contention is retried; every other error surfaces at once
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, get_settings
from .models import StoredRecord
from .schema import INDEXES

_logger = logging.getLogger(__name__)


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(phrase in lower_msg for phrase in ("database is locked", "database is busy"))


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
) -> Callable[..., Any]:
    """Decorator to retry async functions on SQLite lock errors with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds

    Non-lock OperationalErrors (missing directory, unreadable file, corrupt
    database) are re-raised immediately so callers can fall back without
    waiting out the backoff schedule.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__name__", getattr(func, "__qualname__", "<callable>"))
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    if not _is_lock_error(error_msg) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    # Add ±25% jitter to prevent thundering herd
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)
                    _logger.warning(
                        "db.locked",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _is_memory_url(url: str) -> bool:
    try:
        parsed = make_url(url)
    except Exception:
        return False
    return not parsed.database or parsed.database == ":memory:"


def build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build an async SQLAlchemy engine tuned for a single-process local store.

    - WAL mode: concurrent readers while one writer commits
    - NORMAL sync: durable with WAL, much cheaper than FULL
    - busy_timeout=30s: writers wait out short checkpoints instead of failing
    - foreign_keys=ON: kept for parity with future relational tables
    """
    if "sqlite" not in settings.url.lower():
        raise ValueError(f"primary store requires a SQLite URL, got {settings.url!r}")

    in_memory = _is_memory_url(settings.url)
    if not in_memory:
        # SQLite returns "unable to open database file" when the directory is missing.
        try:
            parsed = make_url(settings.url)
            if parsed.database:
                Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            # Leave the failure to the first connect so init() can fall back.
            pass

    engine_kwargs: dict[str, Any] = {
        "echo": settings.echo,
        "future": True,
        "connect_args": {"timeout": 30.0, "check_same_thread": False},
    }
    if not in_memory:
        engine_kwargs["pool_pre_ping"] = True
        if settings.pool_size is not None:
            engine_kwargs["pool_size"] = settings.pool_size
        if settings.pool_timeout is not None:
            engine_kwargs["pool_timeout"] = settings.pool_timeout

    engine = create_async_engine(settings.url, **engine_kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        try:
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA temp_store=MEMORY")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return engine


def _setup_indexes(connection: Any) -> None:
    """Create one expression index per declared payload index."""
    table = StoredRecord.__tablename__
    for partition, specs in INDEXES.items():
        for spec in specs:
            field_name = spec.payload_field
            if field_name is None:
                # Envelope timestamp is covered by idx_stored_items_partition_timestamp
                continue
            index_name = f"idx_{partition}_{spec.name}"
            expression = f"json_extract(data, '$.{field_name}')"
            if spec.unique:
                connection.exec_driver_sql(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {index_name} "
                    f"ON {table}({expression}) WHERE partition = '{partition}'"
                )
            else:
                connection.exec_driver_sql(
                    f"CREATE INDEX IF NOT EXISTS {index_name} ON {table}(partition, {expression})"
                )


@retry_on_db_lock(max_retries=5, base_delay=0.1, max_delay=2.0)
async def ensure_schema(engine: AsyncEngine) -> None:
    """Create the envelope table and its indices if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=[StoredRecord.__table__])
        await conn.run_sync(_setup_indexes)


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Extract the filesystem path to the SQLite database file from settings.

    Returns None when the URL is not SQLite, is in-memory, or cannot be parsed.
    """
    resolved = settings or get_settings()
    try:
        parsed = make_url(resolved.database.url)
    except Exception:
        return None

    if parsed.get_backend_name() != "sqlite":
        return None

    db_path = parsed.database
    if not db_path or db_path == ":memory:":
        return None

    return Path(db_path)
