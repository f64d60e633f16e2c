"""Persisted FIFO of remote mutations replayed when connectivity returns.

Key invariants:
- Items are dispatched oldest first; a success removes the item, a failure
  bumps ``retry_count`` and records ``last_error``
- An item with ``retry_count >= max_retries`` is failed and skipped until
  ``retry_failed_items()`` resets it
- At most one drain runs at a time; the flag is set before the first await
- Items and ``last_sync`` survive restarts as one document in the ``sync`` partition
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Union

import structlog

from .connectivity import ConnectivityObserver, Unsubscribe
from .dispatch import Dispatcher
from .errors import VaultError
from .models import DrainResult, MutationType, QueueItem, QueueState, ResourceKind, SyncStatus
from .schema import SYNC
from .storage import StorageEngine
from .utils import Clock, generate_queue_id

QUEUE_DOCUMENT_ID = "offline_queue"

_log = structlog.get_logger("offline_queue")


class OfflineMutationQueue:
    """Coordinates the offline queue: enqueue, drain, retry and status."""

    def __init__(
        self,
        engine: StorageEngine,
        connectivity: ConnectivityObserver,
        dispatcher: Dispatcher,
        *,
        max_retries: Optional[int] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._engine = engine
        self._connectivity = connectivity
        self._dispatcher = dispatcher
        self._max_retries = max_retries if max_retries is not None else engine.settings.queue.max_retries
        if self._max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._clock = clock or engine.now
        self._state = QueueState()
        self._unsubscribe: Unsubscribe | None = None
        self._drain_tasks: set[asyncio.Task[DrainResult]] = set()
        self._persist_lock = asyncio.Lock()
        self._started = False

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self._state.is_online,
            last_sync=self._state.last_sync,
            pending_items=len(self._state.items),
            failed_items=self._state.failed_count(self._max_retries),
            is_processing_queue=self._state.is_processing,
        )

    @property
    def items(self) -> tuple[QueueItem, ...]:
        return tuple(self._state.items)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self._load()
        self._state.is_online = bool(self._connectivity.is_online())
        self._state.is_processing = False
        self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        self._started = True
        _log.info(
            "queue_started",
            pending=len(self._state.items),
            online=self._state.is_online,
            last_sync=self._state.last_sync,
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.wait_for_drain()
        self._started = False

    async def _load(self) -> None:
        try:
            document = await self._engine.get(SYNC, QUEUE_DOCUMENT_ID)
        except VaultError as exc:
            _log.error("queue_load_failed", error=str(exc))
            return
        if not isinstance(document, Mapping):
            return
        items: list[QueueItem] = []
        for raw in document.get("items") or []:
            try:
                items.append(QueueItem.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                _log.warning("queue_item_discarded", error=str(exc))
        self._state.items = items
        last_sync = document.get("last_sync")
        self._state.last_sync = int(last_sync) if last_sync is not None else None

    async def _persist(self) -> None:
        # Snapshot under the lock so writes land in call order with the newest state last.
        async with self._persist_lock:
            await self._engine.set(SYNC, QUEUE_DOCUMENT_ID, self._state.to_document())

    async def _persist_quietly(self) -> None:
        try:
            await self._persist()
        except VaultError as exc:
            _log.error("queue_persist_failed", error=str(exc), pending=len(self._state.items))

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        self.set_online(online)

    def set_online(self, online: bool) -> Optional[asyncio.Task[DrainResult]]:
        """Record a connectivity change; coming back online schedules a drain.

        The drain is scheduled on the running event loop. Called from a thread
        without one, the change is recorded and the drain is left to the next
        explicit ``process_queue()``.
        """
        was_online = self._state.is_online
        self._state.is_online = bool(online)
        if online and not was_online:
            _log.info("queue_online", pending=len(self._state.items))
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                _log.warning(
                    "queue_drain_not_scheduled",
                    reason="no running event loop",
                    pending=len(self._state.items),
                )
                return None
            task = loop.create_task(self.process_queue())
            self._drain_tasks.add(task)
            task.add_done_callback(self._drain_tasks.discard)
            return task
        if not online and was_online:
            _log.info("queue_offline", pending=len(self._state.items))
        return None

    async def wait_for_drain(self) -> Optional[DrainResult]:
        """Wait for every scheduled drain, including ones scheduled while waiting.

        Returns the first pass that actually ran, else the last skipped one, or
        None when nothing was outstanding.
        """
        result: Optional[DrainResult] = None
        while self._drain_tasks:
            for outcome in await asyncio.gather(*list(self._drain_tasks)):
                if result is None or result.skipped:
                    result = outcome
            # Done callbacks run on the next loop iteration.
            await asyncio.sleep(0)
        return result

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_to_queue(
        self,
        mutation: Union[MutationType, str],
        resource: Union[ResourceKind, str],
        data: Any,
    ) -> QueueItem:
        now = self._clock()
        item = QueueItem(
            id=generate_queue_id(now),
            type=MutationType(mutation),
            resource=ResourceKind(resource),
            data=data,
            timestamp=now,
        )
        self._state.items.append(item)
        try:
            await self._persist()
        except VaultError:
            self._state.items.remove(item)
            raise
        _log.info("queue_item_added", id=item.id, type=item.type.value, resource=item.resource.value)
        return item

    async def add_bulk_to_queue(self, entries: Iterable[Mapping[str, Any]]) -> list[str]:
        """Enqueue ``{"type", "resource", "data"}`` entries; returns their ids in order."""
        now = self._clock()
        new_items = [
            QueueItem(
                id=generate_queue_id(now),
                type=MutationType(entry["type"]),
                resource=ResourceKind(entry["resource"]),
                data=entry.get("data"),
                timestamp=now,
            )
            for entry in entries
        ]
        if not new_items:
            return []
        self._state.items.extend(new_items)
        try:
            await self._persist()
        except VaultError:
            for item in new_items:
                self._state.items.remove(item)
            raise
        _log.info("queue_bulk_added", count=len(new_items))
        return [item.id for item in new_items]

    async def remove_from_queue(self, item_ids: Iterable[str]) -> int:
        targets = set(item_ids)
        before = len(self._state.items)
        self._state.items = [item for item in self._state.items if item.id not in targets]
        removed = before - len(self._state.items)
        if removed:
            await self._persist()
        return removed

    async def clear_queue(self) -> None:
        self._state.items = []
        await self._persist()
        _log.info("queue_cleared")

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def process_queue(self) -> DrainResult:
        """Dispatch every eligible item once, oldest first.

        Returns a skipped result when offline, already draining, or empty.
        Dispatch errors are recorded on the item and never raised.
        """
        if not self._state.is_online or self._state.is_processing or not self._state.items:
            return DrainResult(skipped=True)
        self._state.is_processing = True
        attempted = succeeded = failed = 0
        try:
            snapshot = [item for item in self._state.items if not item.is_failed(self._max_retries)]
            for item in snapshot:
                if self._state.find(item.id) is None:
                    continue
                attempted += 1
                try:
                    await self._dispatcher(item)
                except Exception as exc:
                    failed += 1
                    item.retry_count += 1
                    item.last_error = str(exc) or type(exc).__name__
                    _log.warning(
                        "queue_item_failed",
                        id=item.id,
                        retry_count=item.retry_count,
                        max_retries=self._max_retries,
                        error=item.last_error,
                    )
                else:
                    succeeded += 1
                    self._state.items = [other for other in self._state.items if other.id != item.id]
                await self._persist_quietly()
            self._state.last_sync = self._clock()
            await self._persist_quietly()
        finally:
            self._state.is_processing = False
        _log.info(
            "queue_processed",
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            pending=len(self._state.items),
        )
        return DrainResult(attempted=attempted, succeeded=succeeded, failed=failed)

    async def retry_failed_items(self) -> DrainResult:
        reset = 0
        for item in self._state.items:
            if item.is_failed(self._max_retries):
                item.retry_count = 0
                item.last_error = None
                reset += 1
        if reset:
            await self._persist()
            _log.info("queue_failed_reset", count=reset)
        return await self.process_queue()

    def get_queue_stats(self) -> dict[str, Any]:
        by_resource = Counter(item.resource.value for item in self._state.items)
        by_type = Counter(item.type.value for item in self._state.items)
        status = self.status
        return {
            "total": status.pending_items,
            "failed": status.failed_items,
            "by_resource": dict(by_resource),
            "by_type": dict(by_type),
            "last_sync": status.last_sync,
        }
