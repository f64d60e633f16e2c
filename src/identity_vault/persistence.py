"""Entity-aware persistence: optimistic versioning, a tagged cache, batches and backups."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from .errors import ImportFormatError, NotFoundError, VaultError
from .models import StoredItem
from .schema import CACHE, CREDENTIALS, HANDSHAKE, PROFILE
from .storage import StorageEngine

_logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


def _entity_id(entity: Mapping[str, Any]) -> str:
    try:
        item_id = entity["id"]
    except (KeyError, TypeError) as exc:
        raise ValueError("entity must be a mapping with an 'id'") from exc
    if item_id is None or item_id == "":
        raise ValueError("entity id must not be empty")
    return str(item_id)


class PersistenceService:
    """Versioned entity persistence on top of a StorageEngine.

    Generic operations raise on failure. The per-entity convenience getters
    mirror what a UI wants: a failed read is logged and reported as missing.
    """

    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> StorageEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def save(
        self,
        partition: str,
        entity: Mapping[str, Any],
        *,
        ttl: Optional[int] = None,
        version: Optional[int] = None,
    ) -> StoredItem:
        item_id = _entity_id(entity)
        if version is None:
            version = 1
        return await self._engine.set(partition, item_id, dict(entity), ttl=ttl, version=version)

    async def get(self, partition: str, item_id: str) -> Any:
        return await self._engine.get(partition, item_id)

    async def get_item(self, partition: str, item_id: str) -> Optional[StoredItem]:
        return await self._engine.get_item(partition, item_id)

    async def update(
        self,
        partition: str,
        item_id: str,
        changes: Mapping[str, Any],
        *,
        ttl: Optional[int] = None,
    ) -> dict[str, Any]:
        """Shallow-merge ``changes`` into the stored payload and bump its version by one.

        Raises NotFoundError (and writes nothing) when the id is absent or expired,
        and ValueError when the stored payload is not a mapping.
        Read failures propagate unchanged.
        """
        current = await self._engine.get_item(partition, item_id)
        if current is None:
            raise NotFoundError(partition, str(item_id))
        if not isinstance(current.data, Mapping):
            raise ValueError(f"cannot merge into non-mapping payload at {partition}/{item_id}")
        merged = {**current.data, **dict(changes)}
        effective_ttl = ttl if ttl is not None else current.ttl
        await self._engine.set(partition, item_id, merged, ttl=effective_ttl, version=current.version + 1)
        return merged

    async def delete(self, partition: str, item_id: str) -> None:
        await self._engine.delete(partition, item_id)

    async def get_all(self, partition: str) -> list[Any]:
        return await self._engine.get_all(partition)

    async def query_by_field(
        self,
        partition: str,
        field: str,
        value: Any,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Any]:
        return await self._engine.query(partition, field, value, limit=limit, offset=offset)

    async def save_batch(
        self,
        partition: str,
        entities: Iterable[Mapping[str, Any]],
        *,
        ttl: Optional[int] = None,
    ) -> int:
        """Write each entity independently; returns how many were written."""
        written = 0
        for entity in entities:
            try:
                await self.save(partition, entity, ttl=ttl)
            except (VaultError, ValueError) as exc:
                _logger.error(
                    "persistence.batch_item_failed",
                    extra={"partition": partition, "error": str(exc)},
                )
                continue
            written += 1
        return written

    async def _get_or_none(self, partition: str, item_id: str) -> Any:
        try:
            return await self._engine.get(partition, item_id)
        except VaultError as exc:
            _logger.error("persistence.read_failed", extra={"partition": partition, "id": item_id, "error": str(exc)})
            return None

    async def _list_or_empty(self, partition: str) -> list[Any]:
        try:
            return await self._engine.get_all(partition)
        except VaultError as exc:
            _logger.error("persistence.read_failed", extra={"partition": partition, "error": str(exc)})
            return []

    async def _query_or_empty(self, partition: str, index_name: str, value: Any) -> list[Any]:
        try:
            return await self._engine.query(partition, index_name, value)
        except VaultError as exc:
            _logger.error(
                "persistence.query_failed",
                extra={"partition": partition, "index": index_name, "error": str(exc)},
            )
            return []

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def save_credential(self, credential: Mapping[str, Any], *, ttl: Optional[int] = None) -> StoredItem:
        return await self.save(CREDENTIALS, credential, ttl=ttl)

    async def get_credential(self, credential_id: str) -> Optional[dict[str, Any]]:
        return await self._get_or_none(CREDENTIALS, credential_id)

    async def get_all_credentials(self) -> list[dict[str, Any]]:
        return await self._list_or_empty(CREDENTIALS)

    async def update_credential(self, credential_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        return await self.update(CREDENTIALS, credential_id, changes)

    async def delete_credential(self, credential_id: str) -> None:
        await self.delete(CREDENTIALS, credential_id)

    async def query_credentials_by_type(self, credential_type: str) -> list[dict[str, Any]]:
        return await self._query_or_empty(CREDENTIALS, "type", credential_type)

    async def query_credentials_by_status(self, status: str) -> list[dict[str, Any]]:
        return await self._query_or_empty(CREDENTIALS, "status", status)

    async def query_credentials_by_issuer(self, issuer: str) -> list[dict[str, Any]]:
        return await self._query_or_empty(CREDENTIALS, "issuer", issuer)

    async def save_credentials_batch(self, credentials: Iterable[Mapping[str, Any]]) -> int:
        return await self.save_batch(CREDENTIALS, credentials)

    # ------------------------------------------------------------------
    # Handshake requests
    # ------------------------------------------------------------------

    async def save_handshake_request(self, request: Mapping[str, Any], *, ttl: Optional[int] = None) -> StoredItem:
        return await self.save(HANDSHAKE, request, ttl=ttl)

    async def get_handshake_request(self, request_id: str) -> Optional[dict[str, Any]]:
        return await self._get_or_none(HANDSHAKE, request_id)

    async def get_all_handshake_requests(self) -> list[dict[str, Any]]:
        return await self._list_or_empty(HANDSHAKE)

    async def update_handshake_request(self, request_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        return await self.update(HANDSHAKE, request_id, changes)

    async def delete_handshake_request(self, request_id: str) -> None:
        await self.delete(HANDSHAKE, request_id)

    async def query_handshake_requests_by_status(self, status: str) -> list[dict[str, Any]]:
        return await self._query_or_empty(HANDSHAKE, "status", status)

    async def query_handshake_requests_by_requester(self, requester: str) -> list[dict[str, Any]]:
        return await self._query_or_empty(HANDSHAKE, "requester", requester)

    async def save_handshake_requests_batch(self, requests: Iterable[Mapping[str, Any]]) -> int:
        return await self.save_batch(HANDSHAKE, requests)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def save_profile_data(self, key: str, data: Any, *, ttl: Optional[int] = None) -> StoredItem:
        return await self._engine.set(PROFILE, key, data, ttl=ttl)

    async def get_profile_data(self, key: str) -> Any:
        return await self._get_or_none(PROFILE, key)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def set_cache(
        self,
        key: str,
        data: Any,
        *,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        entry = {
            "key": key,
            "data": data,
            "expires": self._engine.now() + ttl if ttl else None,
            "tags": list(tags or ()),
        }
        try:
            await self._engine.set(CACHE, key, entry, ttl=ttl)
        except (VaultError, ValueError) as exc:
            _logger.error("persistence.cache_write_failed", extra={"key": key, "error": str(exc)})

    async def get_cache(self, key: str) -> Any:
        entry = await self._get_or_none(CACHE, key)
        if not isinstance(entry, Mapping):
            return None
        return entry.get("data")

    async def invalidate_cache_tag(self, tag: str) -> int:
        removed = 0
        for entry in await self._list_or_empty(CACHE):
            if isinstance(entry, Mapping) and tag in (entry.get("tags") or ()):
                await self._engine.delete(CACHE, str(entry["key"]))
                removed += 1
        return removed

    async def clear_cache(self) -> None:
        await self._engine.clear(CACHE)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_storage_stats(self) -> dict[str, Any]:
        stats = await self._engine.get_stats()
        payload = stats.to_dict()
        payload.update(
            {
                "credentials": stats.per_partition.get(CREDENTIALS, 0),
                "handshake_requests": stats.per_partition.get(HANDSHAKE, 0),
                "profile": stats.per_partition.get(PROFILE, 0),
                "cache": stats.per_partition.get(CACHE, 0),
            }
        )
        return payload

    async def cleanup_expired_data(self) -> int:
        return await self._engine.purge_expired()

    async def export_data(self) -> str:
        """Serialize credentials, handshake requests and profile data to a JSON document."""
        profile_items = await self._engine.get_all_items(PROFILE)
        document = {
            "version": EXPORT_FORMAT_VERSION,
            "timestamp": self._engine.now(),
            "credentials": await self._engine.get_all(CREDENTIALS),
            "handshake_requests": await self._engine.get_all(HANDSHAKE),
            "profile_data": {item.id: item.data for item in profile_items},
        }
        return json.dumps(document, indent=2, ensure_ascii=False)

    async def import_data(self, document: str) -> dict[str, int]:
        """Re-save every entity of an exported document; returns written counts per section."""
        try:
            parsed = json.loads(document)
        except (TypeError, ValueError) as exc:
            raise ImportFormatError(f"invalid export document: {exc}") from exc
        if not isinstance(parsed, Mapping):
            raise ImportFormatError("export document must be a JSON object")

        credentials = parsed.get("credentials") or []
        handshakes = parsed.get("handshake_requests") or []
        profile = parsed.get("profile_data") or {}
        if not isinstance(credentials, list) or not isinstance(handshakes, list) or not isinstance(profile, Mapping):
            raise ImportFormatError("export document sections have the wrong shape")

        counts = {
            "credentials": await self.save_credentials_batch(credentials),
            "handshake_requests": await self.save_handshake_requests_batch(handshakes),
            "profile_data": 0,
        }
        for key, data in profile.items():
            await self.save_profile_data(str(key), data)
            counts["profile_data"] += 1
        _logger.info("persistence.imported", extra=counts)
        return counts
