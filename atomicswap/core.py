"""
Core types and interfaces for the atomicswap engine.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


class SwapState(Enum):
    """Swap lifecycle states."""
    CREATED = "created"                  # Record exists, first lock not yet confirmed
    SOURCE_LOCKED = "source_locked"      # Source-chain lock confirmed
    DEST_LOCKED = "dest_locked"          # Counter-lock observed and valid
    SECRET_REVEALED = "secret_revealed"  # Secret is public (reveal submitted or observed)
    REDEEMED = "redeemed"                # Counter-redeem observed, swap complete
    TIMED_OUT = "timed_out"              # Timelock elapsed, refund pending
    REFUNDED = "refunded"                # Refund confirmed on-chain
    FAILED = "failed"                    # Validation error (refund path may still run)


class SwapRole(Enum):
    """Which side of the swap this process drives."""
    INITIATOR = "initiator"        # Holds the secret, locks on source first
    COUNTERPARTY = "counterparty"  # Solver, locks on dest after the initiator


TERMINAL_STATES = (SwapState.REDEEMED, SwapState.REFUNDED, SwapState.FAILED)

# States in which a timelock expiry moves the swap to TIMED_OUT
PRE_REVEAL_STATES = (SwapState.CREATED, SwapState.SOURCE_LOCKED, SwapState.DEST_LOCKED)


@dataclass
class ChainRef:
    """Chain identifier plus the HTLC contract deployed on it."""
    chain_id: str
    htlc_contract: str

    def to_dict(self) -> Dict[str, Any]:
        return {"chain_id": self.chain_id, "htlc_contract": self.htlc_contract}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainRef":
        return cls(chain_id=data["chain_id"], htlc_contract=data["htlc_contract"])


@dataclass
class LockObservation:
    """A lock event as seen on-chain."""
    block_number: int
    tx_hash: str
    hashlock: str
    amount: int
    timelock: int
    receiver: str = ""
    confirmed: bool = False
    log_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "hashlock": self.hashlock,
            "amount": self.amount,
            "timelock": self.timelock,
            "receiver": self.receiver,
            "confirmed": self.confirmed,
            "log_index": self.log_index,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LockObservation"]:
        if data is None:
            return None
        return cls(
            block_number=int(data["block_number"]),
            tx_hash=data["tx_hash"],
            hashlock=data["hashlock"],
            amount=int(data["amount"]),
            timelock=int(data["timelock"]),
            receiver=data.get("receiver", ""),
            confirmed=bool(data.get("confirmed", False)),
            log_index=int(data.get("log_index", 0)),
        )


@dataclass
class SwapRecord:
    """
    Durable state of one swap attempt.

    Only SwapCoordinator mutates a record. ``hashlock`` is fixed at
    creation and ``secret`` can be written once.
    """
    swap_id: str
    role: SwapRole
    hashlock: str
    source: ChainRef
    dest: ChainRef
    amount: int                 # Smallest unit of the source asset
    source_timelock: int        # Unix timestamp
    dest_timelock: int          # Unix timestamp
    source_recipient: str       # Claims the source lock with the secret
    dest_recipient: str         # Claims the dest lock with the secret
    state: SwapState = SwapState.CREATED
    secret: Optional[str] = None
    min_dest_amount: Optional[int] = None

    # Timing
    created_at: int = 0
    transitions: Dict[str, int] = field(default_factory=dict)
    closed_at: Optional[int] = None

    # Submitted transactions (signer references)
    lock_tx: Optional[str] = None
    reveal_tx: Optional[str] = None
    redeem_tx: Optional[str] = None
    refund_tx: Optional[str] = None
    refund_attempts: int = 0

    # On-chain observations
    observed_source_lock: Optional[LockObservation] = None
    observed_dest_lock: Optional[LockObservation] = None

    # Resume cursors, never ahead of the finalized tip
    source_scan_from: int = 0
    dest_scan_from: int = 0

    funds_locked: bool = False
    error: Optional[str] = None
    watch_fault: Optional[str] = None

    def __post_init__(self):
        if self.min_dest_amount is None:
            self.min_dest_amount = self.amount

    # -------------------------------------------------------------------------
    # Role helpers
    # -------------------------------------------------------------------------

    @property
    def own_lock_chain(self) -> ChainRef:
        """Chain where this process locks its own funds."""
        return self.source if self.role == SwapRole.INITIATOR else self.dest

    @property
    def counter_lock_chain(self) -> ChainRef:
        """Chain where the other party locks."""
        return self.dest if self.role == SwapRole.INITIATOR else self.source

    @property
    def own_timelock(self) -> int:
        return self.source_timelock if self.role == SwapRole.INITIATOR else self.dest_timelock

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_active(self) -> bool:
        """True while the coordinator still has work to do for this record."""
        return self.closed_at is None

    def set_secret(self, secret: str):
        """Write the secret once. A differing second write is rejected."""
        secret = secret.lower().replace("0x", "")
        if self.secret is not None and self.secret != secret:
            raise SecretConflictError(f"Secret already set for swap {self.swap_id}")
        self.secret = secret

    def secret_is_public(self) -> bool:
        return self.state in (SwapState.SECRET_REVEALED, SwapState.REDEEMED) or (
            self.role == SwapRole.COUNTERPARTY and self.secret is not None
        )

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        """Full record as a JSON-safe dict. ``redact`` hides an unrevealed secret."""
        secret = self.secret
        if redact and not self.secret_is_public():
            secret = None
        return {
            "swap_id": self.swap_id,
            "role": self.role.value,
            "hashlock": self.hashlock,
            "secret": secret,
            "source": self.source.to_dict(),
            "dest": self.dest.to_dict(),
            "amount": self.amount,
            "min_dest_amount": self.min_dest_amount,
            "source_timelock": self.source_timelock,
            "dest_timelock": self.dest_timelock,
            "source_recipient": self.source_recipient,
            "dest_recipient": self.dest_recipient,
            "state": self.state.value,
            "created_at": self.created_at,
            "transitions": dict(self.transitions),
            "closed_at": self.closed_at,
            "lock_tx": self.lock_tx,
            "reveal_tx": self.reveal_tx,
            "redeem_tx": self.redeem_tx,
            "refund_tx": self.refund_tx,
            "refund_attempts": self.refund_attempts,
            "observed_source_lock": (
                self.observed_source_lock.to_dict() if self.observed_source_lock else None
            ),
            "observed_dest_lock": (
                self.observed_dest_lock.to_dict() if self.observed_dest_lock else None
            ),
            "source_scan_from": self.source_scan_from,
            "dest_scan_from": self.dest_scan_from,
            "funds_locked": self.funds_locked,
            "error": self.error,
            "watch_fault": self.watch_fault,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        return cls(
            swap_id=data["swap_id"],
            role=SwapRole(data["role"]),
            hashlock=data["hashlock"],
            secret=data.get("secret"),
            source=ChainRef.from_dict(data["source"]),
            dest=ChainRef.from_dict(data["dest"]),
            amount=int(data["amount"]),
            min_dest_amount=int(data["min_dest_amount"]),
            source_timelock=int(data["source_timelock"]),
            dest_timelock=int(data["dest_timelock"]),
            source_recipient=data["source_recipient"],
            dest_recipient=data["dest_recipient"],
            state=SwapState(data["state"]),
            created_at=int(data["created_at"]),
            transitions={k: int(v) for k, v in data.get("transitions", {}).items()},
            closed_at=data.get("closed_at"),
            lock_tx=data.get("lock_tx"),
            reveal_tx=data.get("reveal_tx"),
            redeem_tx=data.get("redeem_tx"),
            refund_tx=data.get("refund_tx"),
            refund_attempts=int(data.get("refund_attempts", 0)),
            observed_source_lock=LockObservation.from_dict(data.get("observed_source_lock")),
            observed_dest_lock=LockObservation.from_dict(data.get("observed_dest_lock")),
            source_scan_from=int(data.get("source_scan_from", 0)),
            dest_scan_from=int(data.get("dest_scan_from", 0)),
            funds_locked=bool(data.get("funds_locked", False)),
            error=data.get("error"),
            watch_fault=data.get("watch_fault"),
        )


# =============================================================================
# Errors
# =============================================================================

class SwapError(Exception):
    """Base class for swap engine errors."""


class ConfigurationError(SwapError):
    """Setup is unsafe (hash mismatch, timelock margin, finality). Fatal, no funds move."""


class TransientChainError(SwapError):
    """RPC timeout, unreachable node, reorg. Retried with backoff."""


class ValidationError(SwapError):
    """Observed counter-lock failed parameter checks. Never authorizes a reveal."""


class SwapTimeoutError(SwapError):
    """A timelock elapsed before the swap progressed."""


class SignerError(SwapError):
    """The external signer refused or failed to submit a transaction."""


class SecretConflictError(SwapError):
    """A second, different secret was written to a record."""


# =============================================================================
# Constants
# =============================================================================

# Minimum gap between dest and source timelocks (seconds).
# The initiator's lock must outlive the counterparty's.
TIMELOCK_SAFETY_MARGIN_SECONDS = 1800  # 30 min

# Do not reveal when the counter-lock expires within this window (seconds)
REVEAL_BUFFER_SECONDS = 300

# How long to wait for a submitted refund to confirm before resubmitting
REFUND_CONFIRM_WINDOW_SECONDS = 1800
MAX_REFUND_ATTEMPTS = 3

# Default polling
DEFAULT_POLL_INTERVAL = 10  # seconds

SECRET_BYTES = 32
