"""
Chain reader interface for the atomicswap engine.

A reader answers three questions for one chain:
- Where is the tip, and which part of it is final?
- Which HTLC events happened in a block range?
- Is the node reachable at all?

Readers are polled, never subscribed.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from ..core import ConfigurationError, ChainRef
from ..htlc.hashlock import HASH_SHA256, FAMILY_EVM, SUPPORTED_HASHES

log = logging.getLogger(__name__)

EVENT_LOCK = "lock"
EVENT_REDEEM = "redeem"
EVENT_REFUND = "refund"


@dataclass
class ChainConfig:
    """Per-chain connection settings. One instance per ChainReader."""
    chain_id: str
    rpc_url: str
    htlc_contract: str
    hash_function: str = HASH_SHA256
    family: str = FAMILY_EVM
    confirmations: int = 12            # Depth at which a log counts as final
    finality_tag: Optional[str] = None  # "finalized" / "safe" where the node supports it
    deterministic_finality: bool = False
    request_timeout: int = 15          # seconds
    max_block_range: int = 2000        # eth_getLogs chunk size

    def validate(self):
        """Reject settings that would treat unconfirmed data as final."""
        if self.hash_function not in SUPPORTED_HASHES:
            raise ConfigurationError(f"{self.chain_id}: unsupported hash {self.hash_function}")
        if self.confirmations < 0:
            raise ConfigurationError(f"{self.chain_id}: confirmations must be >= 0")
        if (self.confirmations == 0 and not self.deterministic_finality
                and not self.finality_tag):
            raise ConfigurationError(
                f"{self.chain_id}: latest block cannot be treated as final "
                f"without deterministic finality"
            )
        if not self.htlc_contract:
            raise ConfigurationError(f"{self.chain_id}: HTLC contract address not set")
        if self.max_block_range < 1:
            raise ConfigurationError(f"{self.chain_id}: max_block_range must be >= 1")

    def ref(self) -> ChainRef:
        return ChainRef(chain_id=self.chain_id, htlc_contract=self.htlc_contract)

    @classmethod
    def from_env(cls, prefix: str) -> "ChainConfig":
        """
        Build from environment variables, e.g. SOURCE_CHAIN_ID, SOURCE_RPC_URL,
        SOURCE_HTLC_CONTRACT, SOURCE_CONFIRMATIONS, SOURCE_FINALITY_TAG.
        """
        env = os.environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            return env.get(f"{prefix}_{name}", default)

        chain_id = get("CHAIN_ID")
        rpc_url = get("RPC_URL")
        if not chain_id or not rpc_url:
            raise ConfigurationError(f"{prefix}_CHAIN_ID and {prefix}_RPC_URL are required")

        return cls(
            chain_id=chain_id,
            rpc_url=rpc_url,
            htlc_contract=get("HTLC_CONTRACT", ""),
            hash_function=get("HASH_FUNCTION", HASH_SHA256),
            family=get("FAMILY", FAMILY_EVM),
            confirmations=int(get("CONFIRMATIONS", "12")),
            finality_tag=get("FINALITY_TAG") or None,
            deterministic_finality=get("DETERMINISTIC_FINALITY", "false").lower() == "true",
            request_timeout=int(get("REQUEST_TIMEOUT", "15")),
            max_block_range=int(get("MAX_BLOCK_RANGE", "2000")),
        )


@dataclass
class BlockRef:
    """A block marker."""
    number: int
    hash: str = ""
    timestamp: int = 0


@dataclass
class ChainTip:
    """Latest block plus the newest block considered irreversible."""
    latest: BlockRef
    safe: BlockRef


@dataclass
class LogEntry:
    """Decoded HTLC contract event."""
    event: str                # lock / redeem / refund
    swap_id: str              # 0x-prefixed bytes32, lowercase
    block_number: int
    tx_hash: str
    log_index: int = 0
    block_hash: str = ""
    contract: str = ""
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        """Identity of the log across re-scans."""
        return (self.tx_hash.lower(), self.log_index)


class ChainReader:
    """
    Read-only view of one chain's HTLC contract.

    Subclasses implement get_tip, get_logs and is_healthy. Any RPC failure
    must surface as TransientChainError, never as an empty result.
    """

    def __init__(self, config: ChainConfig):
        config.validate()
        self.config = config

    @property
    def chain_id(self) -> str:
        return self.config.chain_id

    def safe_number(self, latest: int) -> int:
        """Newest block at the configured confirmation depth."""
        if self.config.deterministic_finality:
            return latest
        return max(latest - self.config.confirmations + 1, -1)

    def get_tip(self) -> ChainTip:
        raise NotImplementedError

    def get_logs(self, contract: str, from_block: int, to_block: int) -> List[LogEntry]:
        raise NotImplementedError

    def is_healthy(self) -> bool:
        raise NotImplementedError
