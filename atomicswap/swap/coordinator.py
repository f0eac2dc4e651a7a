"""
Swap Coordinator for the atomicswap engine.

Drives SwapRecords through the HTLC lifecycle. All chain observation goes
through LockWatchers and all transactions go through the Signer.

Initiator flow (locks on source, holds the secret):
1. CREATED          submit source lock, watch source for it
2. SOURCE_LOCKED    watch dest for the counter-lock, validate every sighting
3. DEST_LOCKED      wait for confirmation, then reveal (redeem on dest)
4. SECRET_REVEALED  watch dest until our reveal (redeem) confirms
5. REDEEMED

Counterparty flow (solver, locks on dest):
1. CREATED          watch source for the initiator's lock, validate it
2. SOURCE_LOCKED    submit dest lock, watch dest for it
3. DEST_LOCKED      watch dest for the initiator's redeem (secret)
4. SECRET_REVEALED  redeem source with the secret
5. REDEEMED

Any pre-reveal state whose timelock elapses moves to TIMED_OUT and refunds
the side we locked. So does an initiator reveal that is still unconfirmed
when the counter-lock expires. A validation failure moves to FAILED and still refunds
if our funds are locked.
"""

import time
import hmac
import logging
import threading
from typing import Dict, List, Callable, Optional, Tuple
from dataclasses import dataclass

from ..core import (
    SwapRecord, SwapState, SwapRole, ChainRef, LockObservation,
    PRE_REVEAL_STATES, TERMINAL_STATES,
    ConfigurationError, ValidationError, SignerError, SwapTimeoutError,
    TIMELOCK_SAFETY_MARGIN_SECONDS, REVEAL_BUFFER_SECONDS,
    REFUND_CONFIRM_WINDOW_SECONDS, MAX_REFUND_ATTEMPTS,
)
from ..chains.base import ChainReader, LogEntry, EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND
from ..htlc.hashlock import HashlockCodec, generate_swap_id, normalize_hex32
from ..htlc.signer import Signer, SignerIntent, SignerAction
from .watcher import LockWatcher, WatcherConfig
from .store import PersistenceStore

log = logging.getLogger(__name__)

# Watch purposes (at most one watcher per chain per record)
WATCH_OWN_LOCK = "own_lock"
WATCH_COUNTER_LOCK = "counter_lock"
WATCH_SECRET = "secret"
WATCH_REDEEM = "redeem"
WATCH_REFUND = "refund"


@dataclass
class CoordinatorConfig:
    """Coordinator configuration."""
    safety_margin: int = TIMELOCK_SAFETY_MARGIN_SECONDS  # dest + margin <= source
    reveal_buffer: int = REVEAL_BUFFER_SECONDS           # no reveal this close to counter timelock
    refund_confirm_window: int = REFUND_CONFIRM_WINDOW_SECONDS
    max_refund_attempts: int = MAX_REFUND_ATTEMPTS
    watcher_restart_delay: float = 30.0  # seconds after a watcher ERRORED
    signer_retry_delay: float = 30.0     # seconds after a SignerError
    lookback_blocks: int = 256           # initial scan starts this far behind the safe tip


def _same_hex(a: str, b: str) -> bool:
    try:
        return hmac.compare_digest(normalize_hex32(a), normalize_hex32(b))
    except (ValueError, TypeError):
        return False


class SwapCoordinator:
    """
    Owns the swap state machines.

    Args:
        readers: chain_id -> ChainReader
        signer: Transaction submission collaborator
        store: PersistenceStore for records
        codec: HashlockCodec shared by both chains
        background: Run watchers and timers in threads. With False the caller
            drives everything through poll().
    """

    def __init__(self, readers: Dict[str, ChainReader], signer: Signer,
                 store: PersistenceStore, codec: HashlockCodec = None,
                 config: CoordinatorConfig = None, watcher_config: WatcherConfig = None,
                 clock: Callable[[], float] = time.time, background: bool = True):
        self.readers = readers
        self.signer = signer
        self.store = store
        self.codec = codec or HashlockCodec()
        self.config = config or CoordinatorConfig()
        self.watcher_config = watcher_config or WatcherConfig()
        self.clock = clock
        self.background = background

        # Callbacks
        self.on_state_change: Optional[Callable[[SwapRecord, SwapState], None]] = None

        # State
        self.records: Dict[str, SwapRecord] = {}
        self._record_locks: Dict[str, threading.RLock] = {}
        self._watchers: Dict[Tuple[str, str], Tuple[str, LockWatcher]] = {}
        self._timers: Dict[str, Tuple[float, Optional[threading.Timer]]] = {}
        self._registry_lock = threading.Lock()
        self._shutdown = False

    def _now(self) -> int:
        return int(self.clock())

    # =========================================================================
    # Public API
    # =========================================================================

    def initiate(self, source_chain: str, dest_chain: str, amount: int,
                 source_timelock: int, dest_timelock: int,
                 source_recipient: str, dest_recipient: str,
                 min_dest_amount: Optional[int] = None,
                 role: SwapRole = SwapRole.INITIATOR,
                 hashlock: Optional[str] = None, swap_id: Optional[str] = None,
                 source_from_block: Optional[int] = None,
                 dest_from_block: Optional[int] = None,
                 start: bool = True) -> SwapRecord:
        """
        Create a swap record and start driving it.

        The initiator gets a fresh secret/hashlock. The counterparty must pass
        the hashlock and swap id announced by the initiator.

        Raises:
            ConfigurationError: unsafe parameters; nothing is locked
        """
        if self._shutdown:
            raise ConfigurationError("Coordinator is shut down")

        source_reader = self._reader(source_chain)
        dest_reader = self._reader(dest_chain)
        if source_chain == dest_chain:
            raise ConfigurationError("Source and destination chains must differ")

        self.codec.ensure_compatible(source_reader.config.hash_function,
                                     dest_reader.config.hash_function)

        if min_dest_amount is None:
            min_dest_amount = amount
        for name, value in (("amount", amount), ("min_dest_amount", min_dest_amount)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{name} must be an integer in the smallest unit")
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive")

        for name, value in (("source_timelock", source_timelock), ("dest_timelock", dest_timelock)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{name} must be an integer unix timestamp")

        now = self._now()
        if dest_timelock + self.config.safety_margin > source_timelock:
            raise ConfigurationError(
                f"dest_timelock + {self.config.safety_margin}s must not exceed source_timelock "
                f"({dest_timelock} + {self.config.safety_margin} > {source_timelock})"
            )
        if dest_timelock <= now:
            raise ConfigurationError("dest_timelock is already in the past")

        secret = None
        if role == SwapRole.INITIATOR:
            if hashlock is not None:
                raise ConfigurationError("Initiator generates its own hashlock")
            secret, hashlock = self.codec.new_pair()
            swap_id = normalize_hex32(swap_id) if swap_id else generate_swap_id()
        else:
            if not hashlock or not swap_id:
                raise ConfigurationError("Counterparty needs the initiator's hashlock and swap id")
            try:
                hashlock = normalize_hex32(hashlock)[2:]
                swap_id = normalize_hex32(swap_id)
            except ValueError as e:
                raise ConfigurationError(f"Invalid hashlock or swap id: {e}") from e

        with self._registry_lock:
            if swap_id in self.records or self.store.load(swap_id) is not None:
                raise ConfigurationError(f"Swap {swap_id} already exists")

        record = SwapRecord(
            swap_id=swap_id,
            role=role,
            hashlock=hashlock,
            secret=secret,
            source=source_reader.config.ref(),
            dest=dest_reader.config.ref(),
            amount=amount,
            min_dest_amount=min_dest_amount,
            source_timelock=source_timelock,
            dest_timelock=dest_timelock,
            source_recipient=source_recipient,
            dest_recipient=dest_recipient,
            created_at=now,
            transitions={SwapState.CREATED.value: now},
            source_scan_from=self._start_block(source_reader, source_from_block),
            dest_scan_from=self._start_block(dest_reader, dest_from_block),
        )

        self.store.save(record)
        self._register(record)
        log.info(f"Swap {swap_id[:18]}... created as {role.value}: "
                 f"{source_chain} -> {dest_chain}, amount={amount}, hashlock={hashlock[:16]}...")

        if start:
            self.start(swap_id)
        return record

    def start(self, swap_id: str) -> bool:
        """Begin (or continue) driving a registered record."""
        record = self.records.get(swap_id)
        if not record:
            return False
        with self._lock_for(swap_id):
            self._drive(record)
        return True

    def resume(self) -> List[SwapRecord]:
        """Reload every active record from the store and drive it again."""
        resumed = []
        for record in self.store.list_active():
            if record.swap_id in self.records:
                continue
            if record.source.chain_id not in self.readers or record.dest.chain_id not in self.readers:
                log.error(f"Cannot resume swap {record.swap_id[:18]}...: no reader for its chains")
                continue
            self._register(record)
            log.info(f"Resuming swap {record.swap_id[:18]}... in state {record.state.value}")
            self.start(record.swap_id)
            resumed.append(record)
        return resumed

    def get_swap(self, swap_id: str) -> Optional[SwapRecord]:
        record = self.records.get(swap_id)
        if record is None:
            record = self.store.load(swap_id)
        return record

    def list_swaps(self, active_only: bool = False) -> List[SwapRecord]:
        records = list(self.records.values())
        if active_only:
            records = [r for r in records if r.is_active()]
        return records

    def wait_for(self, swap_id: str, timeout: float,
                 states: Tuple[SwapState, ...] = TERMINAL_STATES,
                 interval: float = 1.0) -> SwapRecord:
        """
        Block until a swap reaches one of ``states`` or is closed.

        Blocking call - use for CLI or testing.

        Raises:
            SwapTimeoutError: ``timeout`` seconds passed first
        """
        deadline = time.monotonic() + timeout
        while True:
            record = self.get_swap(swap_id)
            if record is None:
                raise ValueError(f"Swap {swap_id} not found")
            if record.state in states or not record.is_active():
                return record
            if time.monotonic() >= deadline:
                raise SwapTimeoutError(
                    f"Swap {swap_id[:18]}... still {record.state.value} after {timeout}s"
                )
            time.sleep(interval)

    def watcher_status(self, swap_id: str) -> Dict[str, dict]:
        """Per-chain watcher state for a swap, to tell "waiting" from "stale"."""
        status = {}
        for (sid, chain_id), (purpose, watcher) in list(self._watchers.items()):
            if sid == swap_id:
                status[chain_id] = dict(watcher.status(), purpose=purpose)
        return status

    def stop_swap(self, swap_id: str) -> bool:
        """Stop watching a swap without closing it; resume() picks it up again."""
        record = self.records.get(swap_id)
        if not record:
            return False
        with self._lock_for(swap_id):
            self._cancel_timer(swap_id)
            self._stop_watchers(record)
            self.store.save(record)
        log.info(f"Swap {swap_id[:18]}... stopped in state {record.state.value}")
        return True

    def shutdown(self):
        """Stop all watchers and timers, then persist every record."""
        self._shutdown = True
        for swap_id, (_, timer) in list(self._timers.items()):
            if timer:
                timer.cancel()
        self._timers.clear()

        watchers = list(self._watchers.items())
        self._watchers.clear()
        for (swap_id, chain_id), (_, watcher) in watchers:
            watcher.stop()
            record = self.records.get(swap_id)
            if record:
                self._sync_cursor(record, chain_id, watcher)

        for record in list(self.records.values()):
            self.store.save(record)
        log.info(f"Coordinator shut down, {len(self.records)} records persisted")

    def poll(self):
        """
        Run due timers and one poll of every watcher.

        Only meaningful with background=False.
        """
        now = self.clock()
        for swap_id, (due, timer) in list(self._timers.items()):
            if timer is None and due <= now:
                self._run_timer(swap_id, None)
        for _, watcher in list(self._watchers.values()):
            if watcher.is_running():
                watcher.poll_once()

    # =========================================================================
    # Registry helpers
    # =========================================================================

    def _reader(self, chain_id: str) -> ChainReader:
        reader = self.readers.get(chain_id)
        if reader is None:
            raise ConfigurationError(f"No chain reader configured for {chain_id}")
        return reader

    def _start_block(self, reader: ChainReader, explicit: Optional[int]) -> int:
        if explicit is not None:
            return max(int(explicit), 0)
        tip = reader.get_tip()
        return max(tip.safe.number + 1 - self.config.lookback_blocks, 0)

    def _register(self, record: SwapRecord):
        with self._registry_lock:
            self.records[record.swap_id] = record
            self._record_locks.setdefault(record.swap_id, threading.RLock())

    def _lock_for(self, swap_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._record_locks.setdefault(swap_id, threading.RLock())

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, record: SwapRecord, state: SwapState, reason: str = "") -> bool:
        """Move ``record`` to ``state`` and persist. Terminal states only allow FAILED -> REFUNDED."""
        current = record.state
        if current in (SwapState.REDEEMED, SwapState.REFUNDED):
            log.warning(f"Swap {record.swap_id[:18]}...: ignoring {state.value}, already {current.value}")
            return False
        if current == SwapState.FAILED and state != SwapState.REFUNDED:
            log.warning(f"Swap {record.swap_id[:18]}...: ignoring {state.value}, swap failed")
            return False

        record.state = state
        record.transitions[state.value] = self._now()
        record.watch_fault = None
        self.store.save(record)

        suffix = f" ({reason})" if reason else ""
        log.info(f"Swap {record.swap_id[:18]}...: {current.value} -> {state.value}{suffix}")

        if self.on_state_change:
            try:
                self.on_state_change(record, current)
            except Exception as e:
                log.error(f"on_state_change handler error: {e}")
        return True

    def _close(self, record: SwapRecord, reason: str = ""):
        """Stop driving ``record``. Its state stays as it is."""
        if record.closed_at is not None:
            return
        record.closed_at = self._now()
        self._cancel_timer(record.swap_id)
        self._stop_watchers(record)
        self.store.save(record)
        suffix = f": {reason}" if reason else ""
        log.info(f"Swap {record.swap_id[:18]}... closed in state {record.state.value}{suffix}")

    def _fail(self, record: SwapRecord, reason: str):
        """FAILED, then refund if our funds are locked."""
        record.error = reason
        log.warning(f"Swap {record.swap_id[:18]}... failed: {reason}")
        self._stop_watchers(record)
        if not self._transition(record, SwapState.FAILED, reason):
            return
        if self._funds_at_risk(record):
            self._refund_path(record)
        else:
            self._close(record, "no funds locked")

    @staticmethod
    def _funds_at_risk(record: SwapRecord) -> bool:
        return bool(record.lock_tx) or record.funds_locked

    # =========================================================================
    # Drive: (re)derive the next step from the record's state
    # =========================================================================

    def _drive(self, record: SwapRecord):
        if not record.is_active() or self._shutdown:
            return

        state = record.state
        if state in (SwapState.REDEEMED, SwapState.REFUNDED):
            self._close(record)
        elif state == SwapState.FAILED:
            if self._funds_at_risk(record):
                self._refund_path(record)
            else:
                self._close(record, "no funds locked")
        elif state == SwapState.TIMED_OUT:
            self._refund_path(record)
        elif record.role == SwapRole.INITIATOR:
            self._drive_initiator(record)
        else:
            self._drive_counterparty(record)

    def _drive_initiator(self, record: SwapRecord):
        state = record.state

        if state == SwapState.CREATED:
            if not record.lock_tx:
                if self._now() + self.config.reveal_buffer >= record.dest_timelock:
                    self._fail(record, "too close to dest_timelock to lock")
                    return
                if not self._submit_lock(record):
                    return
            self._watch(record, record.source, WATCH_OWN_LOCK,
                        match=self._lock_match(record),
                        deadline=record.source_timelock,
                        on_observed=self._on_own_lock_observed,
                        on_found=self._on_own_lock,
                        on_timeout=self._on_timeout)

        elif state in (SwapState.SOURCE_LOCKED, SwapState.DEST_LOCKED):
            obs = record.observed_dest_lock
            if state == SwapState.DEST_LOCKED and obs and obs.confirmed:
                self._reveal(record)
                return
            self._watch(record, record.dest, WATCH_COUNTER_LOCK,
                        match=lambda e: e.event == EVENT_LOCK,
                        deadline=record.source_timelock,
                        known=self._known(record, record.dest, obs),
                        on_observed=lambda r, e: self._on_counter_lock(r, e, confirmed=False),
                        on_found=lambda r, e: self._on_counter_lock(r, e, confirmed=True),
                        on_retracted=self._on_counter_lock_retracted,
                        on_timeout=self._on_timeout)

        elif state == SwapState.SECRET_REVEALED:
            # Our reveal is the redeem of the counter-lock; done once it confirms on dest
            self._watch(record, record.dest, WATCH_REDEEM,
                        match=lambda e: e.event == EVENT_REDEEM,
                        deadline=self._counter_timelock(record),
                        on_found=self._on_redeemed,
                        on_timeout=self._on_reveal_unconfirmed)

    def _drive_counterparty(self, record: SwapRecord):
        state = record.state

        if state == SwapState.CREATED:
            self._watch(record, record.source, WATCH_COUNTER_LOCK,
                        match=lambda e: e.event == EVENT_LOCK,
                        deadline=record.dest_timelock,
                        known=self._known(record, record.source, record.observed_source_lock),
                        on_observed=lambda r, e: self._on_counter_lock(r, e, confirmed=False),
                        on_found=lambda r, e: self._on_counter_lock(r, e, confirmed=True),
                        on_retracted=self._on_counter_lock_retracted,
                        on_timeout=self._on_timeout)

        elif state == SwapState.SOURCE_LOCKED:
            if not record.lock_tx:
                if self._now() + self.config.reveal_buffer >= record.dest_timelock:
                    self._fail(record, "too close to dest_timelock to lock")
                    return
                if not self._submit_lock(record):
                    return
            self._watch(record, record.dest, WATCH_OWN_LOCK,
                        match=self._lock_match(record),
                        deadline=record.dest_timelock,
                        on_observed=self._on_own_lock_observed,
                        on_found=self._on_own_lock,
                        on_timeout=self._on_timeout)

        elif state == SwapState.DEST_LOCKED:
            self._watch(record, record.dest, WATCH_SECRET,
                        match=lambda e: e.event == EVENT_REDEEM,
                        deadline=record.dest_timelock,
                        on_observed=self._on_secret_seen,
                        on_found=self._on_secret_seen,
                        on_timeout=self._on_timeout)

        elif state == SwapState.SECRET_REVEALED:
            if not record.redeem_tx and self._now() >= record.source_timelock:
                self._on_redeem_window_closed(record)
                return
            # Watcher first so its deadline also bounds signer retries
            self._watch(record, record.source, WATCH_REDEEM,
                        match=lambda e: e.event == EVENT_REDEEM,
                        deadline=record.source_timelock,
                        on_found=self._on_redeemed,
                        on_timeout=self._on_redeem_window_closed)
            if not record.redeem_tx:
                self._submit_redeem(record)

    # =========================================================================
    # Signer intents
    # =========================================================================

    def _submit(self, record: SwapRecord, action: SignerAction, chain: ChainRef,
                params: dict) -> Optional[str]:
        """Submit an intent. On SignerError, schedule a retry and return None."""
        intent = SignerIntent(action=action, swap_id=record.swap_id,
                              chain_id=chain.chain_id, params=params)
        try:
            tx_hash = self.signer.submit(intent)
        except SignerError as e:
            record.error = str(e)
            self.store.save(record)
            log.error(f"Swap {record.swap_id[:18]}...: {action.value} failed, "
                      f"retry in {self.config.signer_retry_delay}s: {e}")
            self._schedule(record, self.config.signer_retry_delay)
            return None
        record.error = None
        return tx_hash

    def _submit_lock(self, record: SwapRecord) -> bool:
        if record.role == SwapRole.INITIATOR:
            chain, timelock = record.source, record.source_timelock
            receiver, amount = record.source_recipient, record.amount
        else:
            chain, timelock = record.dest, record.dest_timelock
            receiver, amount = record.dest_recipient, record.min_dest_amount

        tx_hash = self._submit(record, SignerAction.LOCK, chain, {
            "hashlock": record.hashlock,
            "timelock": timelock,
            "receiver": receiver,
            "amount": amount,
        })
        if not tx_hash:
            return False
        record.lock_tx = tx_hash
        self.store.save(record)
        log.info(f"Swap {record.swap_id[:18]}...: lock submitted on {chain.chain_id} tx={tx_hash}")
        return True

    def _submit_redeem(self, record: SwapRecord) -> bool:
        tx_hash = self._submit(record, SignerAction.REDEEM, record.source,
                               {"secret": record.secret})
        if not tx_hash:
            return False
        record.redeem_tx = tx_hash
        self.store.save(record)
        log.info(f"Swap {record.swap_id[:18]}...: redeem submitted on "
                 f"{record.source.chain_id} tx={tx_hash}")
        return True

    def _reveal(self, record: SwapRecord):
        """Redeem the confirmed counter-lock with our secret."""
        obs = record.observed_dest_lock
        if record.state != SwapState.DEST_LOCKED or not obs or not obs.confirmed:
            return
        if self._now() + self.config.reveal_buffer >= obs.timelock:
            self._fail(record, f"counter-lock expires within {self.config.reveal_buffer}s, not revealing")
            return

        tx_hash = self._submit(record, SignerAction.REVEAL, record.dest, {"secret": record.secret})
        if not tx_hash:
            return
        record.reveal_tx = tx_hash
        self._stop_watchers(record)
        self._transition(record, SwapState.SECRET_REVEALED, f"reveal tx={tx_hash}")
        self._drive(record)

    # =========================================================================
    # Lock validation
    # =========================================================================

    def _lock_match(self, record: SwapRecord) -> Callable[[LogEntry], bool]:
        hashlock = record.hashlock
        return lambda e: e.event == EVENT_LOCK and _same_hex(e.args.get("hashlock", ""), hashlock)

    def _validate_lock(self, record: SwapRecord, entry: LogEntry):
        """
        Check the other party's lock against the agreed parameters.

        Raises:
            ValidationError: never reveal or lock against this lock
        """
        args = entry.args
        if not _same_hex(args.get("hashlock", ""), record.hashlock):
            raise ValidationError("hashlock mismatch")

        amount = args.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError(f"non-integer amount {amount!r}")

        timelock = args.get("timelock")
        if not isinstance(timelock, int) or isinstance(timelock, bool):
            raise ValidationError(f"non-integer timelock {timelock!r}")

        receiver = str(args.get("receiver", "")).lower()
        margin = self.config.safety_margin

        if record.role == SwapRole.INITIATOR:
            if amount < record.min_dest_amount:
                raise ValidationError(f"amount {amount} below minimum {record.min_dest_amount}")
            if receiver != record.dest_recipient.lower():
                raise ValidationError(f"receiver {receiver} is not {record.dest_recipient}")
            if timelock + margin > record.source_timelock:
                raise ValidationError(
                    f"counter-lock timelock {timelock} leaves less than {margin}s "
                    f"before source_timelock {record.source_timelock}"
                )
        else:
            if amount < record.amount:
                raise ValidationError(f"amount {amount} below agreed {record.amount}")
            if receiver != record.source_recipient.lower():
                raise ValidationError(f"receiver {receiver} is not {record.source_recipient}")
            if timelock < record.dest_timelock + margin:
                raise ValidationError(
                    f"source timelock {timelock} leaves less than {margin}s "
                    f"after dest_timelock {record.dest_timelock}"
                )

    @staticmethod
    def _observation(entry: LogEntry, confirmed: bool) -> LockObservation:
        return LockObservation(
            block_number=entry.block_number,
            tx_hash=entry.tx_hash,
            hashlock=normalize_hex32(entry.args["hashlock"])[2:],
            amount=entry.args["amount"],
            timelock=entry.args["timelock"],
            receiver=entry.args.get("receiver", ""),
            confirmed=confirmed,
            log_index=entry.log_index,
        )

    @staticmethod
    def _known(record: SwapRecord, chain: ChainRef, obs: Optional[LockObservation]) -> List[LogEntry]:
        """An unconfirmed lock from the record, so a restarted watcher can detect its retraction."""
        if obs is None or obs.confirmed:
            return []
        return [LogEntry(
            event=EVENT_LOCK,
            swap_id=record.swap_id,
            block_number=obs.block_number,
            tx_hash=obs.tx_hash,
            log_index=obs.log_index,
            contract=chain.htlc_contract,
            args={
                "hashlock": obs.hashlock,
                "amount": obs.amount,
                "timelock": obs.timelock,
                "receiver": obs.receiver,
            },
        )]

    @staticmethod
    def _counter_timelock(record: SwapRecord) -> int:
        obs = record.observed_dest_lock
        return obs.timelock if obs else record.dest_timelock

    @staticmethod
    def _check_own_lock(record: SwapRecord, obs: LockObservation):
        """Warn when our confirmed lock differs from the intent we submitted."""
        if record.role == SwapRole.INITIATOR:
            amount, timelock = record.amount, record.source_timelock
        else:
            amount, timelock = record.min_dest_amount, record.dest_timelock
        if obs.amount < amount or obs.timelock != timelock:
            log.warning(f"Swap {record.swap_id[:18]}...: own lock tx={obs.tx_hash} has "
                        f"amount={obs.amount} timelock={obs.timelock}, "
                        f"submitted amount={amount} timelock={timelock}")

    # =========================================================================
    # Watcher event handlers (called with the record lock held)
    # =========================================================================

    def _on_own_lock_observed(self, record: SwapRecord, entry: LogEntry):
        if not record.funds_locked:
            record.funds_locked = True
            self.store.save(record)

    def _on_own_lock(self, record: SwapRecord, entry: LogEntry):
        obs = self._observation(entry, confirmed=True)
        record.funds_locked = True
        self._check_own_lock(record, obs)
        if record.role == SwapRole.INITIATOR and record.state == SwapState.CREATED:
            record.observed_source_lock = obs
            self._transition(record, SwapState.SOURCE_LOCKED, f"own lock at block {entry.block_number}")
        elif record.role == SwapRole.COUNTERPARTY and record.state == SwapState.SOURCE_LOCKED:
            record.observed_dest_lock = obs
            self._transition(record, SwapState.DEST_LOCKED, f"own lock at block {entry.block_number}")
        else:
            return
        self._release_watcher(record, WATCH_OWN_LOCK)
        self._drive(record)

    def _on_counter_lock(self, record: SwapRecord, entry: LogEntry, confirmed: bool):
        if record.role == SwapRole.INITIATOR:
            expected = (SwapState.SOURCE_LOCKED, SwapState.DEST_LOCKED)
        else:
            expected = (SwapState.CREATED,)
        if record.state not in expected:
            return

        try:
            self._validate_lock(record, entry)
        except ValidationError as e:
            self._fail(record, f"invalid counter-lock tx={entry.tx_hash}: {e}")
            return

        obs = self._observation(entry, confirmed)

        if record.role == SwapRole.COUNTERPARTY:
            record.observed_source_lock = obs
            if not confirmed:
                self.store.save(record)
                return
            self._release_watcher(record, WATCH_COUNTER_LOCK)
            self._transition(record, SwapState.SOURCE_LOCKED,
                             f"initiator lock at block {entry.block_number}")
            self._drive(record)
            return

        record.observed_dest_lock = obs
        if record.state == SwapState.SOURCE_LOCKED:
            self._transition(record, SwapState.DEST_LOCKED,
                             f"counter-lock at block {entry.block_number}"
                             f"{'' if confirmed else ', unconfirmed'}")
        else:
            self.store.save(record)

        if confirmed:
            self._release_watcher(record, WATCH_COUNTER_LOCK)
            self._reveal(record)

    def _on_counter_lock_retracted(self, record: SwapRecord, entry: LogEntry):
        if record.role == SwapRole.INITIATOR:
            obs = record.observed_dest_lock
            if record.state != SwapState.DEST_LOCKED or not obs or obs.confirmed:
                return
            if obs.tx_hash.lower() != entry.tx_hash.lower():
                return
            record.observed_dest_lock = None
            self._transition(record, SwapState.SOURCE_LOCKED, "counter-lock retracted by reorg")
        else:
            obs = record.observed_source_lock
            if record.state != SwapState.CREATED or not obs or obs.confirmed:
                return
            if obs.tx_hash.lower() != entry.tx_hash.lower():
                return
            record.observed_source_lock = None
            self.store.save(record)
            log.warning(f"Swap {record.swap_id[:18]}...: initiator lock retracted by reorg")

    def _on_secret_seen(self, record: SwapRecord, entry: LogEntry):
        """Counterparty: the initiator redeemed our dest lock, so the secret is public."""
        if record.state not in (SwapState.DEST_LOCKED, SwapState.TIMED_OUT):
            return
        secret = entry.args.get("secret")
        if not secret or not self.codec.verify(secret, record.hashlock):
            log.warning(f"Swap {record.swap_id[:18]}...: redeem tx={entry.tx_hash} "
                        f"carries a secret that does not match the hashlock")
            return

        record.set_secret(secret)
        self._cancel_timer(record.swap_id)
        self._stop_watchers(record)
        self._transition(record, SwapState.SECRET_REVEALED, f"secret seen in tx={entry.tx_hash}")
        self._drive(record)

    def _on_redeemed(self, record: SwapRecord, entry: LogEntry):
        if record.state != SwapState.SECRET_REVEALED:
            return
        if record.role == SwapRole.COUNTERPARTY:
            record.redeem_tx = record.redeem_tx or entry.tx_hash
        if self._transition(record, SwapState.REDEEMED, f"redeem tx={entry.tx_hash}"):
            self._close(record)

    def _on_redeem_window_closed(self, record: SwapRecord):
        """Counterparty: source_timelock passed before our source redeem confirmed."""
        if record.state != SwapState.SECRET_REVEALED:
            return
        record.error = "source_timelock passed before our redeem confirmed"
        log.error(f"Swap {record.swap_id[:18]}...: {record.error}")
        self._close(record, "source_timelock passed without observed redeem")

    def _on_reveal_unconfirmed(self, record: SwapRecord):
        """Initiator: the counter-lock expired before our reveal confirmed, so refund source."""
        if record.state != SwapState.SECRET_REVEALED:
            return
        record.error = f"reveal tx={record.reveal_tx} not confirmed before counter-lock timelock"
        log.error(f"Swap {record.swap_id[:18]}...: {record.error}")
        self._stop_watchers(record)
        if self._transition(record, SwapState.TIMED_OUT, "reveal unconfirmed"):
            self._refund_path(record)

    def _on_timeout(self, record: SwapRecord):
        if record.state not in PRE_REVEAL_STATES:
            return
        self._stop_watchers(record)
        if not self._funds_at_risk(record):
            record.error = "timelock expired before any funds were locked"
            if self._transition(record, SwapState.FAILED, record.error):
                self._close(record)
            return
        if self._transition(record, SwapState.TIMED_OUT, f"own timelock {record.own_timelock} reached"):
            self._refund_path(record)

    # =========================================================================
    # Refund path
    # =========================================================================

    def _refund_path(self, record: SwapRecord):
        """Refund our lock at its timelock while watching for a late redeem."""
        chain = record.own_lock_chain
        timelock = record.own_timelock
        now = self._now()

        if record.refund_tx is None:
            if now < timelock:
                self._schedule(record, timelock - now)
            else:
                self._submit_refund(record)

        deadline = max(timelock, now) + self.config.refund_confirm_window
        self._watch(record, chain, WATCH_REFUND,
                    match=lambda e: e.event in (EVENT_REDEEM, EVENT_REFUND),
                    deadline=deadline,
                    prefer=(EVENT_REDEEM, EVENT_REFUND),
                    on_observed=self._on_refund_path_observed,
                    on_found=self._on_refund_path_event,
                    on_timeout=self._on_refund_unconfirmed)

    def _submit_refund(self, record: SwapRecord) -> bool:
        chain = record.own_lock_chain
        tx_hash = self._submit(record, SignerAction.REFUND, chain, {})
        if not tx_hash:
            return False
        record.refund_tx = tx_hash
        record.refund_attempts += 1
        self.store.save(record)
        log.info(f"Swap {record.swap_id[:18]}...: refund #{record.refund_attempts} submitted on "
                 f"{chain.chain_id} tx={tx_hash}")
        # Fresh confirmation window for this submission
        self._release_watcher(record, WATCH_REFUND)
        return True

    def _on_refund_path_observed(self, record: SwapRecord, entry: LogEntry):
        if entry.event == EVENT_REDEEM and record.role == SwapRole.COUNTERPARTY:
            self._on_secret_seen(record, entry)

    def _on_refund_path_event(self, record: SwapRecord, entry: LogEntry):
        if entry.event == EVENT_REDEEM:
            if record.role == SwapRole.COUNTERPARTY:
                self._on_secret_seen(record, entry)
                return
            # Our lock was claimed with the secret
            if record.state == SwapState.TIMED_OUT and self._transition(
                    record, SwapState.REDEEMED, f"redeem tx={entry.tx_hash}"):
                self._close(record)
            else:
                record.error = f"own lock redeemed by tx={entry.tx_hash}"
                self._close(record, record.error)
            return

        record.refund_tx = record.refund_tx or entry.tx_hash
        if self._transition(record, SwapState.REFUNDED, f"refund tx={entry.tx_hash}"):
            self._close(record)

    def _on_refund_unconfirmed(self, record: SwapRecord):
        if record.state not in (SwapState.TIMED_OUT, SwapState.FAILED):
            return
        if record.refund_tx and record.refund_attempts < self.config.max_refund_attempts:
            log.warning(f"Swap {record.swap_id[:18]}...: refund tx={record.refund_tx} "
                        f"unconfirmed after {self.config.refund_confirm_window}s, resubmitting")
            record.refund_tx = None
        elif record.refund_tx:
            record.error = f"refund unconfirmed after {record.refund_attempts} attempts"
            log.error(f"Swap {record.swap_id[:18]}...: {record.error}, still watching")
        self.store.save(record)
        self._release_watcher(record, WATCH_REFUND)
        self._refund_path(record)

    # =========================================================================
    # Watchers
    # =========================================================================

    def _watch(self, record: SwapRecord, chain: ChainRef, purpose: str,
               match: Callable[[LogEntry], bool], deadline: Optional[float],
               prefer=(), known=(), on_observed=None, on_found=None, on_retracted=None,
               on_timeout=None):
        """Start a watcher for ``purpose`` on ``chain`` unless one is already running."""
        key = (record.swap_id, chain.chain_id)
        existing = self._watchers.get(key)
        if existing:
            existing_purpose, existing_watcher = existing
            if existing_purpose == purpose and existing_watcher.is_running():
                return
            self._release_watcher(record, existing_purpose, chain.chain_id)

        reader = self._reader(chain.chain_id)
        watcher = LockWatcher(
            reader, self.watcher_config, clock=self.clock,
            name=f"{record.role.value}-{record.swap_id[2:10]}-{chain.chain_id}-{purpose}",
        )
        swap_id = record.swap_id

        def bind(handler):
            if handler is None:
                return None
            return lambda *args: self._dispatch(swap_id, key, watcher, handler, *args)

        watcher.on_observed = bind(on_observed)
        watcher.on_found = bind(on_found)
        watcher.on_retracted = bind(on_retracted)
        watcher.on_timeout = bind(on_timeout)
        watcher.on_error = bind(lambda r, exc: self._on_watch_error(r, purpose, chain.chain_id, exc))

        self._watchers[key] = (purpose, watcher)
        watcher.start(swap_id, chain.htlc_contract, match,
                      from_block=self._cursor(record, chain.chain_id),
                      deadline=deadline, prefer=prefer, known=known,
                      background=self.background)

    def _dispatch(self, swap_id: str, key, watcher: LockWatcher, handler, *args):
        """Run a watcher callback under the record lock if the watcher is still current."""
        record = self.records.get(swap_id)
        if record is None:
            return
        with self._lock_for(swap_id):
            current = self._watchers.get(key)
            if current is None or current[1] is not watcher:
                return
            if not record.is_active() or self._shutdown:
                return
            handler(record, *args)

    def _on_watch_error(self, record: SwapRecord, purpose: str, chain_id: str, exc: Exception):
        self._release_watcher(record, purpose, chain_id)
        record.watch_fault = f"{chain_id}: {exc}"
        self.store.save(record)
        log.error(f"Swap {record.swap_id[:18]}...: watcher fault on {chain_id}, "
                  f"restarting in {self.config.watcher_restart_delay}s: {exc}")
        self._schedule(record, self.config.watcher_restart_delay)

    def _cursor(self, record: SwapRecord, chain_id: str) -> int:
        if chain_id == record.source.chain_id:
            return record.source_scan_from
        return record.dest_scan_from

    def _sync_cursor(self, record: SwapRecord, chain_id: str, watcher: LockWatcher):
        if chain_id == record.source.chain_id:
            record.source_scan_from = max(record.source_scan_from, watcher.cursor)
        else:
            record.dest_scan_from = max(record.dest_scan_from, watcher.cursor)

    def _release_watcher(self, record: SwapRecord, purpose: str, chain_id: Optional[str] = None):
        """Stop and forget the watcher serving ``purpose`` (on ``chain_id`` if given)."""
        for key, (p, watcher) in list(self._watchers.items()):
            if key[0] != record.swap_id or p != purpose:
                continue
            if chain_id is not None and key[1] != chain_id:
                continue
            self._watchers.pop(key, None)
            watcher.stop(wait=False)
            self._sync_cursor(record, key[1], watcher)

    def _stop_watchers(self, record: SwapRecord):
        for key, (_, watcher) in list(self._watchers.items()):
            if key[0] != record.swap_id:
                continue
            self._watchers.pop(key, None)
            watcher.stop(wait=False)
            self._sync_cursor(record, key[1], watcher)

    # =========================================================================
    # Timers: one pending re-drive per record, earliest wins
    # =========================================================================

    def _schedule(self, record: SwapRecord, delay: float):
        swap_id = record.swap_id
        due = self.clock() + max(delay, 0)
        existing = self._timers.get(swap_id)
        if existing and existing[0] <= due:
            return
        self._cancel_timer(swap_id)

        timer = None
        if self.background:
            timer = threading.Timer(max(delay, 0), self._on_timer, args=(swap_id,))
            timer.daemon = True
        self._timers[swap_id] = (due, timer)
        if timer:
            timer.start()

    def _cancel_timer(self, swap_id: str):
        entry = self._timers.pop(swap_id, None)
        if entry and entry[1]:
            entry[1].cancel()

    def _on_timer(self, swap_id: str):
        self._run_timer(swap_id, threading.current_thread())

    def _run_timer(self, swap_id: str, timer: Optional[threading.Timer]):
        record = self.records.get(swap_id)
        if record is None or self._shutdown:
            return
        with self._lock_for(swap_id):
            entry = self._timers.get(swap_id)
            if not entry or entry[1] is not timer:
                # Cancelled or superseded
                return
            self._timers.pop(swap_id, None)
            self._drive(record)
