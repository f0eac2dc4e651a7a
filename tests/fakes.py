"""
In-process fakes for coordinator and watcher tests.

FakeChainReader keeps a list of LogEntry objects and a block height that
tests move forward (mine) or rewrite (reorg by removing entries).
"""

import sys
import os
from typing import List

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomicswap.core import SignerError, TransientChainError
from atomicswap.chains.base import (
    ChainConfig, ChainReader, ChainTip, BlockRef, LogEntry,
    EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND,
)
from atomicswap.htlc.signer import Signer, SignerIntent

SOURCE_HTLC = "0x1111111111111111111111111111111111111111"
DEST_HTLC = "0x2222222222222222222222222222222222222222"
SOLVER = "0x000000000000000000000000000000000000a11c"
USER = "0x000000000000000000000000000000000000b0b0"

T0 = 1_700_000_000


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeChainReader(ChainReader):
    """ChainReader over an in-memory log list."""

    def __init__(self, chain_id: str, htlc_contract: str, confirmations: int = 3,
                 hash_function: str = "sha256", latest: int = 100):
        super().__init__(ChainConfig(
            chain_id=chain_id,
            rpc_url="http://fake",
            htlc_contract=htlc_contract,
            hash_function=hash_function,
            confirmations=confirmations,
        ))
        self.latest = latest
        self.logs: List[LogEntry] = []
        self.healthy = True
        self.fail_next = 0
        self.log_calls = []
        self._tx = 0

    # ChainReader

    def get_tip(self) -> ChainTip:
        return ChainTip(latest=BlockRef(self.latest), safe=BlockRef(self.safe_number(self.latest)))

    def get_logs(self, contract: str, from_block: int, to_block: int) -> List[LogEntry]:
        self.log_calls.append((from_block, to_block))
        if self.fail_next:
            self.fail_next -= 1
            raise TransientChainError(f"{self.chain_id}: rpc timeout")
        return [
            e for e in self.logs
            if from_block <= e.block_number <= to_block and e.contract.lower() == contract.lower()
        ]

    def is_healthy(self) -> bool:
        return self.healthy

    # Test helpers

    def mine(self, blocks: int = 1):
        self.latest += blocks

    def confirm(self):
        """Mine until every current log is at the safe tip."""
        self.mine(self.config.confirmations)

    def remove(self, entry: LogEntry):
        self.logs.remove(entry)

    def _add(self, event: str, swap_id: str, args: dict, block: int = None) -> LogEntry:
        self._tx += 1
        if block is None:
            block = self.latest + 1
            self.latest = block
        entry = LogEntry(
            event=event,
            swap_id=swap_id.lower(),
            block_number=block,
            tx_hash="0x" + f"{self.chain_id}:{self._tx}".encode().hex().ljust(64, "0"),
            log_index=0,
            contract=self.config.htlc_contract,
            args=args,
        )
        self.logs.append(entry)
        return entry

    def add_lock(self, swap_id: str, hashlock: str, amount: int, timelock: int,
                 receiver: str, block: int = None) -> LogEntry:
        return self._add(EVENT_LOCK, swap_id, {
            "hashlock": hashlock.lower().replace("0x", ""),
            "sender": "0x" + "99" * 20,
            "receiver": receiver,
            "amount": amount,
            "timelock": timelock,
            "token": "0x" + "77" * 20,
        }, block)

    def add_redeem(self, swap_id: str, secret: str, hashlock: str, block: int = None) -> LogEntry:
        return self._add(EVENT_REDEEM, swap_id, {
            "secret": secret,
            "hashlock": hashlock.lower().replace("0x", ""),
            "redeemer": "0x" + "88" * 20,
        }, block)

    def add_refund(self, swap_id: str, block: int = None) -> LogEntry:
        return self._add(EVENT_REFUND, swap_id, {}, block)


class RecordingSigner(Signer):
    """Records intents and returns fake tx hashes. Actions in ``failing`` raise SignerError."""

    def __init__(self):
        self.intents: List[SignerIntent] = []
        self.failing = set()

    def submit(self, intent: SignerIntent) -> str:
        if intent.action in self.failing:
            raise SignerError(f"signer refused {intent.action.value}")
        self.intents.append(intent)
        return "0x%064x" % (0xabc000 + len(self.intents))

    def actions(self):
        return [i.action for i in self.intents]
