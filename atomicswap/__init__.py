"""
atomicswap - HTLC cross-chain swap coordination engine

Coordinates a trustless transfer between a source and a destination chain
through Hash Time-Locked Contracts, with an untrusted counterparty (solver)
providing liquidity on the destination side.

Usage:
    from atomicswap import (
        ChainConfig, EVMChainReader, HttpSigner, JsonFileStore, SwapCoordinator,
    )

    readers = {
        "base": EVMChainReader(ChainConfig.from_env("SOURCE")),
        "arbitrum": EVMChainReader(ChainConfig.from_env("DEST")),
    }
    coordinator = SwapCoordinator(readers, HttpSigner(url), JsonFileStore(path))
    coordinator.resume()

    swap = coordinator.initiate("base", "arbitrum", 100_000_000,
                                source_timelock, dest_timelock,
                                solver_address, my_address)
"""

from .core import (
    SwapState,
    SwapRole,
    SwapRecord,
    ChainRef,
    LockObservation,
    SwapError,
    ConfigurationError,
    TransientChainError,
    ValidationError,
    SwapTimeoutError,
    SignerError,
    SecretConflictError,
    TIMELOCK_SAFETY_MARGIN_SECONDS,
)

from .chains.base import ChainConfig, ChainReader, ChainTip, BlockRef, LogEntry
from .chains.evm import EVMChainReader

from .htlc.hashlock import HashlockCodec, generate_swap_id
from .htlc.signer import Signer, SignerIntent, SignerAction, HttpSigner
from .htlc.evm import EVMSigner

from .swap.watcher import LockWatcher, WatcherConfig, WatchState
from .swap.store import PersistenceStore, MemoryStore, JsonFileStore
from .swap.coordinator import SwapCoordinator, CoordinatorConfig

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapState",
    "SwapRole",
    "SwapRecord",
    "ChainRef",
    "LockObservation",
    # Errors
    "SwapError",
    "ConfigurationError",
    "TransientChainError",
    "ValidationError",
    "SwapTimeoutError",
    "SignerError",
    "SecretConflictError",
    "TIMELOCK_SAFETY_MARGIN_SECONDS",
    # Chains
    "ChainConfig",
    "ChainReader",
    "ChainTip",
    "BlockRef",
    "LogEntry",
    "EVMChainReader",
    # HTLC
    "HashlockCodec",
    "generate_swap_id",
    "Signer",
    "SignerIntent",
    "SignerAction",
    "HttpSigner",
    "EVMSigner",
    # Swap
    "LockWatcher",
    "WatcherConfig",
    "WatchState",
    "PersistenceStore",
    "MemoryStore",
    "JsonFileStore",
    "SwapCoordinator",
    "CoordinatorConfig",
]
