"""
Swap coordination for atomicswap.

Drives HTLC swaps across two chains: watchers observe, the coordinator
decides, the signer submits, the store remembers.
"""

from .watcher import LockWatcher, WatcherConfig, WatchState
from .store import PersistenceStore, MemoryStore, JsonFileStore
from .coordinator import SwapCoordinator, CoordinatorConfig

__all__ = [
    "LockWatcher", "WatcherConfig", "WatchState",
    "PersistenceStore", "MemoryStore", "JsonFileStore",
    "SwapCoordinator", "CoordinatorConfig",
]
