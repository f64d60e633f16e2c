"""Local-first storage and offline synchronization for the identity wallet."""

from __future__ import annotations

from .connectivity import ConnectivityObserver, HttpConnectivityProbe, ManualConnectivity
from .dispatch import DispatchRegistry
from .errors import (
    DispatchError,
    ImportFormatError,
    NotFoundError,
    StorageReadError,
    StorageUnavailableError,
    StorageWriteError,
    UnknownIndexError,
    UnknownPartitionError,
    VaultError,
)
from .models import DrainResult, MutationType, QueueItem, ResourceKind, StorageStats, StoredItem, SyncStatus
from .offline_queue import OfflineMutationQueue
from .persistence import PersistenceService
from .storage import StorageEngine

__all__ = [
    "ConnectivityObserver",
    "DispatchError",
    "DispatchRegistry",
    "DrainResult",
    "HttpConnectivityProbe",
    "ImportFormatError",
    "ManualConnectivity",
    "MutationType",
    "NotFoundError",
    "OfflineMutationQueue",
    "PersistenceService",
    "QueueItem",
    "ResourceKind",
    "StorageEngine",
    "StorageReadError",
    "StorageStats",
    "StorageUnavailableError",
    "StorageWriteError",
    "StoredItem",
    "SyncStatus",
    "UnknownIndexError",
    "UnknownPartitionError",
    "VaultError",
]
