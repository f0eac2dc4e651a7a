#!/usr/bin/env python3
"""
LockWatcher Tests

Drives the watcher one poll at a time against FakeChainReader:
1. Confirmed match -> FOUND
2. Deadline -> TIMED_OUT (a same-poll match wins)
3. RPC failures -> backoff, then ERRORED
4. Reorg -> on_retracted, including matches carried over from a restart
5. stop() idempotence
"""

import sys
import os
import time
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomicswap.chains.base import EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND
from atomicswap.swap.watcher import LockWatcher, WatcherConfig, WatchState
from fakes import FakeChainReader, ManualClock, SOURCE_HTLC, T0

SWAP_ID = "0x00" + "ab" * 31
HASHLOCK = "cd" * 32


def any_lock(entry):
    return entry.event == EVENT_LOCK


class WatcherTestCase(unittest.TestCase):

    def setUp(self):
        self.reader = FakeChainReader("source", SOURCE_HTLC, confirmations=3)
        self.clock = ManualClock()
        self.config = WatcherConfig(poll_interval=10, backoff_base=2, backoff_max=8, max_failures=3)
        self.watcher = LockWatcher(self.reader, self.config, clock=self.clock)
        self.events = []
        self.watcher.on_observed = lambda e: self.events.append(("observed", e))
        self.watcher.on_found = lambda e: self.events.append(("found", e))
        self.watcher.on_retracted = lambda e: self.events.append(("retracted", e))
        self.watcher.on_timeout = lambda: self.events.append(("timeout", None))
        self.watcher.on_error = lambda exc: self.events.append(("error", exc))

    def start(self, match=any_lock, deadline=None, prefer=(), from_block=0, known=()):
        self.watcher.start(SWAP_ID, SOURCE_HTLC, match, from_block=from_block,
                           deadline=deadline, prefer=prefer, known=known, background=False)

    def kinds(self):
        return [kind for kind, _ in self.events]


class TestFound(WatcherTestCase):

    def test_unconfirmed_then_confirmed(self):
        """A match is observed first and only found once at the safe tip."""
        self.start()
        entry = self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")

        self.assertEqual(self.watcher.poll_once(), 10)
        self.assertEqual(self.kinds(), ["observed"])
        self.assertEqual(self.watcher.state, WatchState.POLLING)

        self.reader.confirm()
        self.assertEqual(self.watcher.poll_once(), 0)
        self.assertEqual(self.kinds(), ["observed", "found"])
        self.assertEqual(self.watcher.state, WatchState.FOUND)
        self.assertIs(self.watcher.found, entry)

    def test_observed_fires_once(self):
        """Re-scanning an unconfirmed block does not repeat on_observed."""
        self.start()
        self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.watcher.poll_once()
        self.watcher.poll_once()
        self.assertEqual(self.kinds(), ["observed"])

    def test_other_swap_ignored(self):
        """Logs for a different swap id never match."""
        self.start()
        self.reader.add_lock("0x00" + "ef" * 31, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.reader.confirm()
        self.watcher.poll_once()
        self.assertEqual(self.events, [])

    def test_predicate_filters(self):
        """Only entries accepted by the predicate are reported."""
        self.start(match=lambda e: e.event == EVENT_REDEEM)
        self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.reader.confirm()
        self.watcher.poll_once()
        self.assertEqual(self.events, [])

    def test_prefer_ranks_same_poll_matches(self):
        """Redeem is reported before an earlier refund in the same poll."""
        self.start(match=lambda e: e.event in (EVENT_REDEEM, EVENT_REFUND),
                   prefer=(EVENT_REDEEM, EVENT_REFUND))
        self.reader.add_refund(SWAP_ID)
        redeem = self.reader.add_redeem(SWAP_ID, "11" * 32, HASHLOCK)
        self.reader.confirm()

        self.watcher.poll_once()
        self.assertEqual(self.kinds(), ["found"])
        self.assertIs(self.events[0][1], redeem)

    def test_cursor_stays_behind_unconfirmed(self):
        """The cursor never passes an unconfirmed match or the safe tip."""
        self.start()
        self.watcher.poll_once()
        self.assertEqual(self.watcher.cursor, self.reader.safe_number(self.reader.latest) + 1)

        entry = self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.reader.mine(1)
        self.watcher.poll_once()
        self.assertLessEqual(self.watcher.cursor, entry.block_number)


class TestDeadline(WatcherTestCase):

    def test_times_out(self):
        """Passing the deadline with no match ends in TIMED_OUT."""
        self.start(deadline=T0 + 60)
        self.watcher.poll_once()
        self.assertEqual(self.watcher.state, WatchState.POLLING)

        self.clock.advance(61)
        self.assertEqual(self.watcher.poll_once(), 0)
        self.assertEqual(self.watcher.state, WatchState.TIMED_OUT)
        self.assertEqual(self.kinds(), ["timeout"])

    def test_delay_capped_by_deadline(self):
        """The next poll is never scheduled after the deadline."""
        self.start(deadline=T0 + 4)
        self.assertEqual(self.watcher.poll_once(), 4)

    def test_match_in_same_poll_wins(self):
        """A confirmed match found in the deadline poll is FOUND, not TIMED_OUT."""
        self.start(deadline=T0 + 60)
        self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.reader.confirm()
        self.clock.advance(120)

        self.watcher.poll_once()
        self.assertEqual(self.watcher.state, WatchState.FOUND)
        self.assertEqual(self.kinds(), ["found"])

    def test_deadline_checked_after_failed_poll(self):
        """An unreachable chain still times out at the deadline."""
        self.start(deadline=T0 + 60)
        self.reader.fail_next = 1
        self.clock.advance(61)
        self.watcher.poll_once()
        self.assertEqual(self.watcher.state, WatchState.TIMED_OUT)


class TestFailures(WatcherTestCase):

    def test_backoff_then_errored(self):
        """Consecutive failures back off exponentially, then ERRORED with a diagnosis."""
        self.start()
        self.reader.fail_next = 10

        delays = [self.watcher.poll_once() for _ in range(3)]
        self.assertEqual(delays, [2, 4, 8])
        self.assertEqual(self.watcher.state, WatchState.POLLING)

        self.watcher.poll_once()
        self.assertEqual(self.watcher.state, WatchState.ERRORED)
        self.assertIn("rpc timeout", self.watcher.last_error)
        self.assertEqual(self.kinds(), ["error"])

    def test_success_resets_failures(self):
        """A good poll clears the failure count."""
        self.start()
        self.reader.fail_next = 2
        self.watcher.poll_once()
        self.watcher.poll_once()
        self.assertEqual(self.watcher.failures, 2)
        self.watcher.poll_once()
        self.assertEqual(self.watcher.failures, 0)

    def test_unhealthy_is_not_no_event(self):
        """An unhealthy reader is a failure, never an empty scan."""
        self.start()
        self.reader.healthy = False
        self.watcher.poll_once()
        self.assertEqual(self.watcher.failures, 1)
        self.assertEqual(self.reader.log_calls, [])
        self.assertIn("unhealthy", self.watcher.status()["last_error"])


class TestReorg(WatcherTestCase):

    def test_retracted_log(self):
        """An observed log that vanishes is reported as retracted."""
        self.start()
        entry = self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.watcher.poll_once()
        self.reader.remove(entry)
        self.watcher.poll_once()

        self.assertEqual(self.kinds(), ["observed", "retracted"])
        self.assertIs(self.events[1][1], entry)
        self.assertEqual(self.watcher.state, WatchState.POLLING)

    def test_known_entry_retracted(self):
        """A match reported before a restart that is gone now is retracted on the first poll."""
        entry = self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.reader.remove(entry)
        self.start(known=[entry])
        self.watcher.poll_once()

        self.assertEqual(self.kinds(), ["retracted"])
        self.assertIs(self.events[0][1], entry)

    def test_known_entry_still_present(self):
        """A carried-over match still on chain is not reported as observed again."""
        entry = self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.start(known=[entry])
        self.watcher.poll_once()
        self.assertEqual(self.events, [])

        self.reader.confirm()
        self.watcher.poll_once()
        self.assertEqual(self.kinds(), ["found"])


class TestStop(WatcherTestCase):

    def test_stop_idempotent(self):
        """Stopping twice is a no-op the second time."""
        self.start()
        self.watcher.stop()
        self.watcher.stop()
        self.assertEqual(self.watcher.state, WatchState.STOPPED)
        self.assertEqual(self.watcher.poll_once(), 0)

    def test_stop_before_start(self):
        """An idle watcher can be stopped."""
        self.watcher.stop()
        self.assertEqual(self.watcher.state, WatchState.STOPPED)

    def test_stop_keeps_final_state(self):
        """Stopping a finished watcher does not overwrite its result."""
        self.start(deadline=T0)
        self.watcher.poll_once()
        self.watcher.stop()
        self.assertEqual(self.watcher.state, WatchState.TIMED_OUT)

    def test_stop_from_callback(self):
        """A callback may stop its own watcher."""
        self.watcher.on_observed = lambda e: self.watcher.stop()
        self.start()
        self.reader.add_lock(SWAP_ID, HASHLOCK, 100, T0 + 3600, "0xabc")
        self.watcher.poll_once()
        self.assertEqual(self.watcher.state, WatchState.STOPPED)

    def test_background_thread_stops(self):
        """stop() ends the polling thread promptly."""
        watcher = LockWatcher(self.reader, WatcherConfig(poll_interval=0.01))
        watcher.start(SWAP_ID, SOURCE_HTLC, any_lock, from_block=0)
        time.sleep(0.05)
        watcher.stop()
        self.assertFalse(watcher._thread.is_alive())
        self.assertEqual(watcher.state, WatchState.STOPPED)

    def test_double_start_rejected(self):
        """A watcher serves a single watch."""
        self.start()
        with self.assertRaises(RuntimeError):
            self.start()


if __name__ == "__main__":
    unittest.main(verbosity=2)
