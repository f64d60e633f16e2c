"""Partitioned, versioned key-value storage with TTL and secondary indices.

The engine owns the envelope rules (timestamps, versions, TTL, lazy expiry,
pagination) and delegates raw persistence to one of two backends chosen once
at ``init()``:

- ``SQLiteBackend``: SQLAlchemy async engine over aiosqlite (primary)
- ``KeyValueFileBackend``: flat ordered key-value map mirrored to a JSON file

Both backends resolve index key paths the same way, so a query returns the
same payloads in the same order whichever one is active.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Optional, Protocol

from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import Settings, get_settings
from .db import build_engine, ensure_schema
from .errors import StorageReadError, StorageUnavailableError, StorageWriteError
from .fallback import KeyValueFileBackend
from .models import StorageStats, StoredItem, StoredRecord
from .schema import PARTITIONS, IndexSpec, check_partition, get_index
from .utils import Clock, estimate_size, now_ms

_logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, int, float, bool)


class StorageBackend(Protocol):
    """Raw persistence used by StorageEngine; knows nothing about TTL."""

    name: str

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def put(self, partition: str, item: StoredItem) -> None: ...

    async def fetch(self, partition: str, item_id: str) -> Optional[StoredItem]: ...

    async def fetch_all(self, partition: str) -> list[StoredItem]: ...

    async def fetch_by_index(self, partition: str, spec: IndexSpec, value: Any) -> list[StoredItem]: ...

    async def remove(self, partition: str, item_ids: Sequence[str]) -> None: ...

    async def clear(self, partition: str) -> None: ...

    async def purge_expired(self, now: int) -> int: ...


class SQLiteBackend:
    """Primary backend: one ``stored_items`` table, JSON payloads, expression indexes."""

    name = "sqlite"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def open(self) -> None:
        try:
            engine = build_engine(self._settings.database)
        except (ValueError, SQLAlchemyError) as exc:
            raise StorageUnavailableError(str(exc)) from exc
        try:
            await ensure_schema(engine)
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            raise StorageUnavailableError(str(exc)) from exc
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise StorageUnavailableError("sqlite backend is not open")
        return self._session_factory

    async def put(self, partition: str, item: StoredItem) -> None:
        values = {
            "partition": partition,
            "item_id": item.id,
            "data": item.data,
            "timestamp": item.timestamp,
            "version": item.version,
            "ttl": item.ttl,
            "expires_at": item.expires_at,
        }
        stmt = sqlite_insert(StoredRecord.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["partition", "item_id"],
            set_={key: stmt.excluded[key] for key in ("data", "timestamp", "version", "ttl", "expires_at")},
        )
        try:
            async with self._sessions()() as session:
                await session.execute(stmt)
                await session.commit()
        except IntegrityError as exc:
            raise StorageWriteError(partition, item.id, f"constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageWriteError(partition, item.id, str(exc)) from exc

    async def _select(self, partition: str, *criteria: Any) -> list[StoredItem]:
        stmt = (
            select(StoredRecord)
            .where(StoredRecord.partition == partition, *criteria)
            .order_by(StoredRecord.item_id)
        )
        try:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                return [StoredItem.from_record(record) for record in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageReadError(partition, str(exc)) from exc

    async def fetch(self, partition: str, item_id: str) -> Optional[StoredItem]:
        items = await self._select(partition, StoredRecord.item_id == item_id)
        return items[0] if items else None

    async def fetch_all(self, partition: str) -> list[StoredItem]:
        return await self._select(partition)

    async def fetch_by_index(self, partition: str, spec: IndexSpec, value: Any) -> list[StoredItem]:
        field_name = spec.payload_field
        if field_name is None:
            column: Any = getattr(StoredRecord, spec.key_path)
        else:
            column = func.json_extract(StoredRecord.data, f"$.{field_name}")
        # Equality match: every row shares the indexed value, so id order is (value, id) order.
        return await self._select(partition, column == value)

    async def remove(self, partition: str, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        stmt = sa_delete(StoredRecord).where(
            StoredRecord.partition == partition,
            StoredRecord.item_id.in_(list(item_ids)),
        )
        try:
            async with self._sessions()() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            target = item_ids[0] if len(item_ids) == 1 else None
            raise StorageWriteError(partition, target, str(exc)) from exc

    async def clear(self, partition: str) -> None:
        try:
            async with self._sessions()() as session:
                await session.execute(sa_delete(StoredRecord).where(StoredRecord.partition == partition))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageWriteError(partition, None, str(exc)) from exc

    async def purge_expired(self, now: int) -> int:
        stmt = sa_delete(StoredRecord).where(
            StoredRecord.expires_at.is_not(None),
            StoredRecord.expires_at < now,
        )
        try:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                await session.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise StorageWriteError("*", None, str(exc)) from exc


class StorageEngine:
    """Lazily-opened storage facade shared by the persistence layer and the offline queue."""

    def __init__(self, settings: Settings | None = None, *, clock: Clock = now_ms) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._backend: StorageBackend | None = None
        self._init_lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def backend_name(self) -> str | None:
        return self._backend.name if self._backend is not None else None

    @property
    def is_fallback(self) -> bool:
        return isinstance(self._backend, KeyValueFileBackend)

    def now(self) -> int:
        return self._clock()

    async def init(self) -> None:
        """Open the primary store, or the fallback when the primary cannot be opened.

        Safe to call from many coroutines at once; only the first performs the open.
        """
        if self._backend is not None:
            return
        async with self._init_lock:
            if self._backend is not None:
                return
            if not self._settings.storage.force_fallback:
                primary = SQLiteBackend(self._settings)
                try:
                    await primary.open()
                except (StorageUnavailableError, SQLAlchemyError, OSError) as exc:
                    _logger.warning(
                        "storage.primary_unavailable",
                        extra={"url": self._settings.database.url, "error": str(exc)[:200]},
                    )
                else:
                    self._backend = primary
                    _logger.info("storage.opened", extra={"backend": primary.name})
                    return
            fallback = KeyValueFileBackend(
                self._settings.storage.fallback_path or None,
                key_prefix=self._settings.storage.key_prefix,
            )
            await fallback.open()
            self._backend = fallback
            _logger.info(
                "storage.opened",
                extra={"backend": fallback.name, "path": self._settings.storage.fallback_path or ":memory:"},
            )

    async def _ready(self) -> StorageBackend:
        await self.init()
        assert self._backend is not None
        return self._backend

    async def close(self) -> None:
        async with self._init_lock:
            backend, self._backend = self._backend, None
        if backend is not None:
            await backend.close()

    async def _live(self, backend: StorageBackend, partition: str, items: list[StoredItem]) -> list[StoredItem]:
        now = self._clock()
        live: list[StoredItem] = []
        expired: list[str] = []
        for item in items:
            if item.is_expired(now):
                expired.append(item.id)
            else:
                live.append(item)
        if expired:
            try:
                await backend.remove(partition, expired)
            except StorageWriteError as exc:
                # Expired rows stay invisible; the next read or purge retries the delete.
                _logger.warning(
                    "storage.expire_failed",
                    extra={"partition": partition, "count": len(expired), "error": str(exc)},
                )
        return live

    async def set(
        self,
        partition: str,
        item_id: str,
        data: Any,
        *,
        ttl: Optional[int] = None,
        version: Optional[int] = None,
    ) -> StoredItem:
        """Wrap ``data`` in a fresh envelope and upsert it."""
        check_partition(partition)
        if ttl is not None and ttl < 0:
            raise ValueError(f"ttl must be non-negative, got {ttl}")
        backend = await self._ready()
        item = StoredItem(
            id=str(item_id),
            data=data,
            timestamp=self._clock(),
            version=version if version is not None else 1,
            ttl=ttl or None,
        )
        await backend.put(partition, item)
        return item

    async def get_item(self, partition: str, item_id: str) -> Optional[StoredItem]:
        check_partition(partition)
        backend = await self._ready()
        item = await backend.fetch(partition, str(item_id))
        if item is None:
            return None
        live = await self._live(backend, partition, [item])
        return live[0] if live else None

    async def get(self, partition: str, item_id: str) -> Any:
        item = await self.get_item(partition, item_id)
        return item.data if item is not None else None

    async def get_all_items(self, partition: str) -> list[StoredItem]:
        check_partition(partition)
        backend = await self._ready()
        return await self._live(backend, partition, await backend.fetch_all(partition))

    async def get_all(self, partition: str) -> list[Any]:
        return [item.data for item in await self.get_all_items(partition)]

    async def query(
        self,
        partition: str,
        index_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Any]:
        """Return payloads whose indexed key path equals ``value``.

        Expired items are dropped before ``offset``/``limit`` are applied.
        """
        spec = get_index(partition, index_name)
        if value is None or not isinstance(value, _SCALAR_TYPES):
            raise ValueError(f"index value must be a string or number, got {value!r}")
        if spec.payload_field is None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            # Envelope columns are INTEGER; SQLite affinity would coerce numeric strings.
            raise ValueError(f"{index_name} index value must be a number, got {value!r}")
        if limit is not None and limit < 0:
            raise ValueError("limit must be non-negative")
        if offset is not None and offset < 0:
            raise ValueError("offset must be non-negative")
        backend = await self._ready()
        items = await self._live(backend, partition, await backend.fetch_by_index(partition, spec, value))
        start = offset or 0
        end = start + limit if limit is not None else None
        return [item.data for item in items[start:end]]

    async def delete(self, partition: str, item_id: str) -> None:
        check_partition(partition)
        backend = await self._ready()
        await backend.remove(partition, [str(item_id)])

    async def clear(self, partition: str) -> None:
        check_partition(partition)
        backend = await self._ready()
        await backend.clear(partition)

    async def purge_expired(self) -> int:
        backend = await self._ready()
        removed = await backend.purge_expired(self._clock())
        if removed:
            _logger.info("storage.purged", extra={"removed": removed})
        return removed

    async def get_stats(self) -> StorageStats:
        backend = await self._ready()
        now = self._clock()
        per_partition: dict[str, int] = {}
        total_size = 0
        last_modified = 0
        for partition in PARTITIONS:
            live = [item for item in await backend.fetch_all(partition) if not item.is_expired(now)]
            per_partition[partition] = len(live)
            for item in live:
                total_size += estimate_size(item.data)
                last_modified = max(last_modified, item.timestamp)
        return StorageStats(
            backend=backend.name,
            partitions=PARTITIONS,
            total_items=sum(per_partition.values()),
            storage_size=total_size,
            last_modified=last_modified,
            per_partition=per_partition,
        )
