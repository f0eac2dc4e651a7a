#!/usr/bin/env python3
"""
Swap API Tests

Runs the swap routes on a bare FastAPI app with a coordinator over fake
chains, the way server.py wires them at startup.
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi import FastAPI
from fastapi.testclient import TestClient

from atomicswap.htlc.hashlock import HashlockCodec
from atomicswap.swap.coordinator import SwapCoordinator
from atomicswap.swap.store import MemoryStore
from routes import swaps as swap_routes
from fakes import (
    FakeChainReader, RecordingSigner, ManualClock,
    SOURCE_HTLC, DEST_HTLC, SOLVER, USER, T0,
)

SWAP_ID = "0x00" + "5a" * 31


class TestSwapRoutes(unittest.TestCase):

    def setUp(self):
        self.source = FakeChainReader("source", SOURCE_HTLC)
        self.dest = FakeChainReader("dest", DEST_HTLC)
        self.coord = SwapCoordinator(
            {"source": self.source, "dest": self.dest},
            RecordingSigner(),
            MemoryStore(),
            clock=ManualClock(),
            background=False,
        )
        swap_routes.configure(self.coord, dest_timelock_gap=3600)

        app = FastAPI()
        app.include_router(swap_routes.router)
        self.client = TestClient(app)
        _, self.hashlock = HashlockCodec().new_pair()

    def tearDown(self):
        self.coord.shutdown()
        swap_routes.configure(None)

    def notify(self, **overrides):
        body = {
            "swap_id": SWAP_ID,
            "hashlock": "0x" + self.hashlock,
            "source_chain": "source",
            "dest_chain": "dest",
            "amount": 1_000_000,
            "min_dest_amount": 990_000,
            "source_timelock": T0 + 7200,
            "source_recipient": SOLVER,
            "dest_recipient": USER,
            "block_number": 90,
        }
        body.update(overrides)
        return self.client.post("/api/swap/notify-lock", json=body)

    def test_status(self):
        """Health check reports each chain and swap counts."""
        self.source.healthy = False
        resp = self.client.get("/api/status")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["chains"], {"source": {"healthy": False}, "dest": {"healthy": True}})
        self.assertEqual(data["swaps"], 0)

    def test_not_configured(self):
        swap_routes.configure(None)
        self.assertEqual(self.client.get("/api/status").status_code, 503)

    def test_notify_lock(self):
        """notify-lock starts a counterparty swap watching the source chain."""
        resp = self.notify()
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["swap_id"], SWAP_ID)
        self.assertEqual(data["state"], "created")
        self.assertEqual(data["dest_timelock"], T0 + 3600)

        swap = self.client.get(f"/api/swap/{SWAP_ID}").json()
        self.assertEqual(swap["role"], "counterparty")
        self.assertEqual(swap["hashlock"], self.hashlock)
        self.assertEqual(swap["source_scan_from"], 90)
        self.assertEqual(swap["watchers"]["source"]["purpose"], "counter_lock")
        self.assertEqual(swap["watchers"]["source"]["state"], "polling")

    def test_notify_lock_rejected(self):
        """Unsafe timelocks are a 400 and nothing is tracked."""
        resp = self.notify(dest_timelock=T0 + 7000)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/api/swaps").json()["count"], 0)

    def test_notify_lock_duplicate(self):
        self.assertEqual(self.notify().status_code, 200)
        self.assertEqual(self.notify().status_code, 400)

    def test_notify_lock_bad_amount(self):
        self.assertEqual(self.notify(amount=0).status_code, 422)

    def test_swap_not_found(self):
        self.assertEqual(self.client.get("/api/swap/0x00" + "00" * 31).status_code, 404)

    def test_secret_redacted(self):
        """An initiator's unrevealed secret never appears in API responses."""
        record = self.coord.initiate("source", "dest", 1_000_000, T0 + 7200, T0 + 3600, SOLVER, USER)
        swap = self.client.get(f"/api/swap/{record.swap_id}").json()
        self.assertIsNone(swap["secret"])
        listing = self.client.get("/api/swaps").text
        self.assertNotIn(record.secret, listing)

    def test_list_filters(self):
        self.notify()
        self.assertEqual(self.client.get("/api/swaps?status=created").json()["count"], 1)
        self.assertEqual(self.client.get("/api/swaps?status=redeemed").json()["count"], 0)
        self.assertEqual(self.client.get("/api/swaps?active=true").json()["count"], 1)

    def test_unknown_status(self):
        self.assertEqual(self.client.get("/api/swaps?status=bogus").status_code, 400)


if __name__ == "__main__":
    unittest.main(verbosity=2)
