"""Chain readers."""

from .base import (
    ChainConfig, ChainReader, ChainTip, BlockRef, LogEntry,
    EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND,
)
from .evm import EVMChainReader

__all__ = [
    "ChainConfig", "ChainReader", "ChainTip", "BlockRef", "LogEntry",
    "EVENT_LOCK", "EVENT_REDEEM", "EVENT_REFUND",
    "EVMChainReader",
]
