"""
Lock Watcher for the atomicswap engine.

Watches one chain for one swap's HTLC event:
- counter-lock / own-lock confirmation
- redeem (secret reveal) and refund logs
- the swap's deadline

Each watcher polls in its own daemon thread:
    IDLE -> POLLING -> FOUND | TIMED_OUT | ERRORED
    any  -> STOPPED (stop())

The scan cursor only moves up to the chain's safe tip + 1, so blocks that
can still reorg are scanned again on every poll. A log seen unconfirmed that
disappears on a later poll is reported through on_retracted.
"""

import time
import logging
import threading
from enum import Enum
from typing import Dict, List, Callable, Optional, Sequence
from dataclasses import dataclass

from ..core import DEFAULT_POLL_INTERVAL, TransientChainError
from ..chains.base import ChainReader, LogEntry

log = logging.getLogger(__name__)


class WatchState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    FOUND = "found"            # Confirmed match delivered
    TIMED_OUT = "timed_out"    # Deadline passed with no confirmed match
    ERRORED = "errored"        # Too many consecutive RPC failures
    STOPPED = "stopped"


FINISHED_STATES = (WatchState.FOUND, WatchState.TIMED_OUT, WatchState.ERRORED, WatchState.STOPPED)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = DEFAULT_POLL_INTERVAL  # seconds
    backoff_base: float = 2.0                     # first retry delay after a failure
    backoff_max: float = 60.0                     # retry delay cap
    max_failures: int = 5                         # consecutive failures before ERRORED
    join_timeout: float = 5.0


class LockWatcher:
    """
    Polls a ChainReader for the first confirmed log matching a predicate.

    Callbacks (all optional, run on the watcher thread):
    - on_observed(entry):  match seen for the first time, not yet confirmed
    - on_retracted(entry): a previously observed match vanished (reorg)
    - on_found(entry):     confirmed match; the watcher is finished
    - on_timeout():        deadline passed; the watcher is finished
    - on_error(exc):       max_failures exceeded; the watcher is finished
    """

    def __init__(self, reader: ChainReader, config: WatcherConfig = None,
                 clock: Callable[[], float] = time.time, name: str = ""):
        self.reader = reader
        self.config = config or WatcherConfig()
        self.clock = clock
        self.name = name or f"watch-{reader.chain_id}"

        # Callbacks
        self.on_observed: Optional[Callable[[LogEntry], None]] = None
        self.on_retracted: Optional[Callable[[LogEntry], None]] = None
        self.on_found: Optional[Callable[[LogEntry], None]] = None
        self.on_timeout: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None

        # State
        self.state = WatchState.IDLE
        self.swap_id: Optional[str] = None
        self.contract: Optional[str] = None
        self.cursor = 0
        self.deadline: Optional[float] = None
        self.failures = 0
        self.last_error: Optional[str] = None
        self.found: Optional[LogEntry] = None

        self._match: Callable[[LogEntry], bool] = lambda entry: True
        self._prefer: Sequence[str] = ()
        self._observed: Dict[tuple, LogEntry] = {}
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, swap_id: str, contract: str, match: Callable[[LogEntry], bool],
              from_block: int, deadline: Optional[float] = None,
              prefer: Sequence[str] = (), known: Sequence[LogEntry] = (),
              background: bool = True):
        """
        Begin watching.

        Args:
            swap_id: Only logs for this swap id are considered
            contract: HTLC contract address to scan
            match: Predicate on LogEntry (event kind, args)
            from_block: First block to scan
            deadline: Unix time after which the watch times out
            prefer: Event kinds in priority order when several match in one poll
            known: Matches already reported before a restart; one that is gone
                from the chain is retracted on the first poll
            background: Poll in a daemon thread (False: caller drives poll_once)
        """
        with self._lock:
            if self.state != WatchState.IDLE:
                raise RuntimeError(f"{self.name}: already started ({self.state.value})")
            self.swap_id = swap_id.lower()
            self.contract = contract
            self._match = match
            self.cursor = max(int(from_block), 0)
            self.deadline = deadline
            self._prefer = tuple(prefer)
            self._observed = {e.key: e for e in known if e.block_number >= self.cursor}
            self.state = WatchState.POLLING

        log.info(f"{self.name}: watching swap {self.swap_id[:18]}... from block {self.cursor}")

        if background:
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, wait: bool = True):
        """
        Stop watching. Idempotent and safe to call from a callback.

        With ``wait`` the polling thread is joined (bounded by join_timeout).
        """
        with self._lock:
            if self.state not in FINISHED_STATES:
                self.state = WatchState.STOPPED
        self._stop.set()

        thread = self._thread
        if wait and thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout)

    def is_running(self) -> bool:
        return self.state == WatchState.POLLING

    def status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "cursor": self.cursor,
            "deadline": self.deadline,
            "failures": self.failures,
            "last_error": self.last_error,
            "observed": len(self._observed),
        }

    def _run(self):
        while not self._stop.is_set():
            delay = self.poll_once()
            if self.state != WatchState.POLLING:
                break
            self._stop.wait(delay)

    # =========================================================================
    # Polling
    # =========================================================================

    def poll_once(self) -> float:
        """
        Run one scan.

        Returns:
            Seconds to wait before the next scan (0 once finished)
        """
        if self.state != WatchState.POLLING:
            return 0

        try:
            if not self.reader.is_healthy():
                raise TransientChainError(f"{self.reader.chain_id}: node unhealthy")
            tip = self.reader.get_tip()
            entries = self.reader.get_logs(self.contract, self.cursor, tip.latest.number)
        except Exception as e:
            delay = self._record_failure(e)
            if delay is None:
                return 0
        else:
            self.failures = 0
            if self._process(entries, tip.safe.number):
                return 0
            delay = self.config.poll_interval

        if self.deadline is not None:
            remaining = self.deadline - self.clock()
            if remaining <= 0:
                self._timeout()
                return 0
            delay = min(delay, remaining)
        return delay

    def _process(self, entries: List[LogEntry], safe: int) -> bool:
        """Handle one scan's logs. Returns True when a confirmed match finished the watch."""
        matches = [e for e in entries if e.swap_id.lower() == self.swap_id and self._match(e)]
        if self._prefer:
            rank = {event: i for i, event in enumerate(self._prefer)}
            matches.sort(key=lambda e: (rank.get(e.event, len(rank)), e.block_number, e.log_index))

        confirmed = [e for e in matches if e.block_number <= safe]
        if confirmed:
            entry = confirmed[0]
            if not self._finish(WatchState.FOUND):
                return True
            self.found = entry
            log.info(f"{self.name}: {entry.event} confirmed at block {entry.block_number} "
                     f"tx={entry.tx_hash}")
            self._fire(self.on_found, entry)
            return True

        seen = {e.key for e in matches}
        for key, entry in list(self._observed.items()):
            if key not in seen:
                del self._observed[key]
                log.warning(f"{self.name}: {entry.event} at block {entry.block_number} "
                            f"retracted (reorg) tx={entry.tx_hash}")
                self._fire(self.on_retracted, entry)

        for entry in matches:
            if entry.key not in self._observed:
                self._observed[entry.key] = entry
                log.info(f"{self.name}: {entry.event} observed at block {entry.block_number}, "
                         f"awaiting confirmation")
                self._fire(self.on_observed, entry)

        # Never move past an unconfirmed match or the safe tip
        next_cursor = safe + 1
        if matches:
            next_cursor = min(next_cursor, min(e.block_number for e in matches))
        self.cursor = max(self.cursor, next_cursor)
        return False

    def _record_failure(self, exc: Exception) -> Optional[float]:
        """Count a failed poll. Returns the backoff delay, or None once ERRORED."""
        self.failures += 1
        self.last_error = str(exc)

        if self.failures > self.config.max_failures:
            if self._finish(WatchState.ERRORED):
                log.error(f"{self.name}: giving up after {self.failures} failures: {exc}")
                self._fire(self.on_error, exc)
            return None

        delay = min(self.config.backoff_base * 2 ** (self.failures - 1), self.config.backoff_max)
        log.warning(f"{self.name}: poll failed ({self.failures}/{self.config.max_failures}), "
                    f"retry in {delay:.1f}s: {exc}")
        return delay

    def _timeout(self):
        if self._finish(WatchState.TIMED_OUT):
            log.info(f"{self.name}: deadline passed for swap {self.swap_id[:18]}...")
            self._fire(self.on_timeout)

    def _finish(self, state: WatchState) -> bool:
        """Move to a final state unless already finished (e.g. stopped)."""
        with self._lock:
            if self.state != WatchState.POLLING:
                return False
            self.state = state
        self._stop.set()
        return True

    def _fire(self, callback: Optional[Callable], *args):
        if not callback:
            return
        try:
            callback(*args)
        except Exception as e:
            log.exception(f"{self.name}: callback error: {e}")
