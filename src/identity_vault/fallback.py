"""Fallback backend: a flat key-value map mirrored to a JSON file.

Every envelope lives under ``<prefix>_<partition>_<id>`` as a JSON string, the
same shape browsers keep in local storage. The whole map is held in memory and
rewritten atomically (temp file + ``os.replace``) under a ``SoftFileLock`` on
every mutation. With no path configured the map is purely in-memory.

Reads never raise: an undecodable entry or file is logged and skipped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Optional

from filelock import SoftFileLock, Timeout

from .errors import StorageWriteError
from .models import StoredItem
from .schema import INDEXES, IndexSpec
from .utils import dumps_compact, is_missing, resolve_key_path

_logger = logging.getLogger(__name__)


async def _to_thread(func: Any, /, *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


class KeyValueFileBackend:
    """Same envelope, ordering and index semantics as the SQLite backend, without SQL."""

    name = "fallback"

    def __init__(
        self,
        path: str | Path | None,
        *,
        key_prefix: str = "idvault",
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self._path = Path(path).expanduser() if path else None
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout_seconds
        self._entries: dict[str, str] = {}
        self._mutex = asyncio.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def _key(self, partition: str, item_id: str) -> str:
        return f"{self._prefix}_{partition}_{item_id}"

    def _partition_prefix(self, partition: str) -> str:
        return f"{self._prefix}_{partition}_"

    def _file_lock(self) -> SoftFileLock:
        assert self._path is not None
        return SoftFileLock(str(self._path) + ".lock", timeout=self._lock_timeout)

    def _load_sync(self) -> dict[str, str]:
        assert self._path is not None
        if not self._path.exists():
            return {}
        with self._file_lock():
            raw = self._path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        loaded = json.loads(raw)
        if not isinstance(loaded, dict):
            raise ValueError("fallback file must hold a JSON object")
        return {str(key): value for key, value in loaded.items() if isinstance(value, str)}

    def _write_sync(self, entries: dict[str, str]) -> None:
        assert self._path is not None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        with self._file_lock():
            tmp_path.write_text(json.dumps(entries, sort_keys=True, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)

    async def open(self) -> None:
        if self._path is None:
            return
        try:
            self._entries = await _to_thread(self._load_sync)
        except (OSError, ValueError, Timeout) as exc:
            _logger.error(
                "fallback.load_failed",
                extra={"path": str(self._path), "error": str(exc)[:200]},
            )
            self._entries = {}

    async def close(self) -> None:
        # Every mutation is already flushed; nothing is buffered.
        return None

    def _decode(self, key: str, raw: str) -> Optional[StoredItem]:
        try:
            return StoredItem.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            _logger.error("fallback.decode_failed", extra={"key": key, "error": str(exc)[:200]})
            return None

    def _scan(self, partition: str) -> list[StoredItem]:
        prefix = self._partition_prefix(partition)
        items: list[StoredItem] = []
        for key in sorted(self._entries):
            if not key.startswith(prefix):
                continue
            item = self._decode(key, self._entries[key])
            if item is not None:
                items.append(item)
        return items

    async def _commit(self, entries: dict[str, str], partition: str, item_id: str | None) -> None:
        if self._path is not None:
            try:
                await _to_thread(self._write_sync, entries)
            except (OSError, Timeout) as exc:
                raise StorageWriteError(partition, item_id, str(exc)) from exc
        self._entries = entries

    def _check_unique(self, partition: str, item: StoredItem) -> None:
        envelope = item.to_dict()
        for spec in INDEXES.get(partition, ()):
            if not spec.unique:
                continue
            value = resolve_key_path(envelope, spec.key_path)
            if is_missing(value) or value is None:
                continue
            for other in self._scan(partition):
                if other.id != item.id and resolve_key_path(other.to_dict(), spec.key_path) == value:
                    raise StorageWriteError(
                        partition, item.id, f"constraint violated: unique index {spec.name!r}"
                    )

    async def put(self, partition: str, item: StoredItem) -> None:
        try:
            encoded = dumps_compact(item.to_dict())
        except (TypeError, ValueError) as exc:
            raise StorageWriteError(partition, item.id, str(exc)) from exc
        async with self._mutex:
            self._check_unique(partition, item)
            entries = dict(self._entries)
            entries[self._key(partition, item.id)] = encoded
            await self._commit(entries, partition, item.id)

    async def fetch(self, partition: str, item_id: str) -> Optional[StoredItem]:
        key = self._key(partition, item_id)
        raw = self._entries.get(key)
        if raw is None:
            return None
        return self._decode(key, raw)

    async def fetch_all(self, partition: str) -> list[StoredItem]:
        return self._scan(partition)

    async def fetch_by_index(self, partition: str, spec: IndexSpec, value: Any) -> list[StoredItem]:
        matches = []
        for item in self._scan(partition):
            resolved = resolve_key_path(item.to_dict(), spec.key_path)
            if not is_missing(resolved) and resolved is not None and resolved == value:
                matches.append(item)
        return matches

    async def remove(self, partition: str, item_ids: Sequence[str]) -> None:
        async with self._mutex:
            keys = [self._key(partition, item_id) for item_id in item_ids]
            if not any(key in self._entries for key in keys):
                return
            entries = {key: raw for key, raw in self._entries.items() if key not in keys}
            target = item_ids[0] if len(item_ids) == 1 else None
            await self._commit(entries, partition, target)

    async def clear(self, partition: str) -> None:
        prefix = self._partition_prefix(partition)
        async with self._mutex:
            entries = {key: raw for key, raw in self._entries.items() if not key.startswith(prefix)}
            if len(entries) == len(self._entries):
                return
            await self._commit(entries, partition, None)

    async def purge_expired(self, now: int) -> int:
        prefix = f"{self._prefix}_"
        async with self._mutex:
            expired = []
            for key, raw in self._entries.items():
                if not key.startswith(prefix):
                    continue
                item = self._decode(key, raw)
                if item is not None and item.is_expired(now):
                    expired.append(key)
            if not expired:
                return 0
            entries = {key: raw for key, raw in self._entries.items() if key not in expired}
            await self._commit(entries, "*", None)
            return len(expired)
