#!/usr/bin/env python3
"""
EVM Chain Reader Tests

web3 is mocked at the RPC boundary; event decoding goes through the
contract's process_log as in production.
"""

import sys
import os
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomicswap.core import ConfigurationError, TransientChainError
from atomicswap.chains.base import ChainConfig, EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND
from atomicswap.chains.evm import EVMChainReader
from atomicswap.htlc.evm import event_topic, event_signature
from fakes import SOURCE_HTLC, USER

SWAP_ID = bytes.fromhex("00" + "ab" * 31)
HASHLOCK = bytes.fromhex("cd" * 32)
TX_HASH = bytes.fromhex("ee" * 32)
BLOCK_HASH = bytes.fromhex("bb" * 32)


def make_block(number):
    return {"number": number, "hash": BLOCK_HASH, "timestamp": 1_700_000_000 + number}


class ReaderTestCase(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.htlc = MagicMock()
        self.w3.eth.contract.return_value = self.htlc
        self.config = ChainConfig(
            chain_id="base",
            rpc_url="http://localhost:8545",
            htlc_contract=SOURCE_HTLC,
            confirmations=3,
            max_block_range=10,
        )
        self.reader = EVMChainReader(self.config, w3=self.w3)

    def raw_log(self, name, block=50, log_index=0):
        return {
            "topics": [bytes.fromhex(event_topic(name)[2:]), SWAP_ID],
            "blockNumber": block,
            "transactionHash": TX_HASH,
            "logIndex": log_index,
        }

    def decoded(self, args, block=50, log_index=0):
        return {
            "args": dict(args, Id=SWAP_ID),
            "blockNumber": block,
            "transactionHash": TX_HASH,
            "logIndex": log_index,
            "blockHash": BLOCK_HASH,
        }


class TestConfig(unittest.TestCase):

    def base(self, **overrides):
        fields = dict(chain_id="base", rpc_url="http://x", htlc_contract=SOURCE_HTLC)
        fields.update(overrides)
        return ChainConfig(**fields)

    def test_latest_not_final(self):
        """Zero confirmations needs deterministic finality or a finality tag."""
        with self.assertRaises(ConfigurationError):
            self.base(confirmations=0).validate()
        self.base(confirmations=0, deterministic_finality=True).validate()
        self.base(confirmations=0, finality_tag="finalized").validate()

    def test_other_rejections(self):
        for overrides in ({"hash_function": "md5"}, {"htlc_contract": ""},
                          {"confirmations": -1}, {"max_block_range": 0}):
            with self.assertRaises(ConfigurationError):
                self.base(**overrides).validate()

    def test_from_env(self):
        env = {
            "SRC_CHAIN_ID": "base",
            "SRC_RPC_URL": "http://node",
            "SRC_HTLC_CONTRACT": SOURCE_HTLC,
            "SRC_CONFIRMATIONS": "5",
            "SRC_FINALITY_TAG": "safe",
        }
        old = dict(os.environ)
        os.environ.update(env)
        try:
            config = ChainConfig.from_env("SRC")
        finally:
            os.environ.clear()
            os.environ.update(old)
        self.assertEqual(config.confirmations, 5)
        self.assertEqual(config.finality_tag, "safe")
        self.assertEqual(config.ref().htlc_contract, SOURCE_HTLC)

    def test_from_env_requires_rpc(self):
        with self.assertRaises(ConfigurationError):
            ChainConfig.from_env("UNSET_PREFIX_FOR_TEST")


class TestTip(ReaderTestCase):

    def test_confirmation_depth(self):
        """Without a finality tag the safe tip is latest - confirmations + 1."""
        self.w3.eth.get_block.return_value = make_block(100)
        tip = self.reader.get_tip()
        self.assertEqual(tip.latest.number, 100)
        self.assertEqual(tip.safe.number, 98)
        self.assertEqual(tip.latest.hash, "0x" + "bb" * 32)

    def test_finality_tag(self):
        """With a finality tag the node decides the safe tip."""
        self.config.finality_tag = "finalized"
        blocks = {"latest": make_block(100), "finalized": make_block(64)}
        self.w3.eth.get_block.side_effect = lambda tag: blocks[tag]
        tip = self.reader.get_tip()
        self.assertEqual(tip.safe.number, 64)

    def test_rpc_error_is_transient(self):
        """RPC failures surface as TransientChainError, never as a default tip."""
        self.w3.eth.get_block.side_effect = ConnectionError("refused")
        with self.assertRaises(TransientChainError):
            self.reader.get_tip()


class TestLogs(ReaderTestCase):

    def test_chunked_by_max_block_range(self):
        """Ranges are split into max_block_range chunks."""
        self.w3.eth.get_logs.return_value = []
        self.assertEqual(self.reader.get_logs(SOURCE_HTLC, 0, 25), [])
        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"])
                  for c in self.w3.eth.get_logs.call_args_list]
        self.assertEqual(ranges, [(0, 9), (10, 19), (20, 25)])

    def test_empty_range(self):
        self.assertEqual(self.reader.get_logs(SOURCE_HTLC, 10, 9), [])
        self.w3.eth.get_logs.assert_not_called()

    def test_rpc_error_is_not_empty(self):
        """A failed getLogs raises instead of reporting no events."""
        self.w3.eth.get_logs.side_effect = TimeoutError("timed out")
        with self.assertRaises(TransientChainError):
            self.reader.get_logs(SOURCE_HTLC, 0, 5)

    def test_decode_lock(self):
        """TokenLocked becomes a lock entry with native-int amount and timelock."""
        self.w3.eth.get_logs.return_value = [self.raw_log("TokenLocked")]
        self.htlc.events.TokenLocked.return_value.process_log.return_value = self.decoded({
            "hashlock": HASHLOCK,
            "sender": "0x" + "99" * 20,
            "srcReceiver": USER,
            "amount": 1_000_000,
            "timelock": 1_700_003_600,
            "tokenContract": "0x" + "77" * 20,
        })

        entries = self.reader.get_logs(SOURCE_HTLC, 50, 55)
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry.event, EVENT_LOCK)
        self.assertEqual(entry.swap_id, "0x00" + "ab" * 31)
        self.assertEqual(entry.args["hashlock"], "cd" * 32)
        self.assertEqual(entry.args["amount"], 1_000_000)
        self.assertEqual(entry.args["timelock"], 1_700_003_600)
        self.assertEqual(entry.args["receiver"], USER)
        self.assertEqual(entry.block_number, 50)
        self.assertEqual(entry.tx_hash, "0x" + "ee" * 32)
        self.assertEqual(entry.contract, SOURCE_HTLC)

    def test_decode_redeem(self):
        """TokenRedeemed carries the secret as uint256; it comes back as 32-byte hex."""
        self.w3.eth.get_logs.return_value = [self.raw_log("TokenRedeemed")]
        self.htlc.events.TokenRedeemed.return_value.process_log.return_value = self.decoded({
            "redeemAddress": USER,
            "secret": 255,
            "hashlock": HASHLOCK,
        })
        entry = self.reader.get_logs(SOURCE_HTLC, 50, 55)[0]
        self.assertEqual(entry.event, EVENT_REDEEM)
        self.assertEqual(entry.args["secret"], "00" * 31 + "ff")
        self.assertEqual(entry.args["hashlock"], "cd" * 32)

    def test_decode_refund_and_order(self):
        """Entries are returned in (block, log index) order."""
        self.w3.eth.get_logs.return_value = [
            self.raw_log("TokenRefunded", block=52),
            self.raw_log("TokenRefunded", block=51),
        ]
        self.htlc.events.TokenRefunded.return_value.process_log.side_effect = [
            self.decoded({}, block=52),
            self.decoded({}, block=51),
        ]
        entries = self.reader.get_logs(SOURCE_HTLC, 50, 55)
        self.assertEqual([e.event for e in entries], [EVENT_REFUND, EVENT_REFUND])
        self.assertEqual([e.block_number for e in entries], [51, 52])

    def test_unknown_topic_skipped(self):
        """Logs from other events on the contract are ignored."""
        self.w3.eth.get_logs.return_value = [
            {"topics": [bytes(32)], "blockNumber": 50, "transactionHash": TX_HASH, "logIndex": 0},
            {"topics": [], "blockNumber": 50, "transactionHash": TX_HASH, "logIndex": 1},
        ]
        self.assertEqual(self.reader.get_logs(SOURCE_HTLC, 50, 55), [])

    def test_topics_match_signatures(self):
        self.assertEqual(event_signature("TokenRefunded"), "TokenRefunded(bytes32)")
        self.assertTrue(event_topic("TokenLocked").startswith("0x"))
        self.assertEqual(len(event_topic("TokenLocked")), 66)


class TestHealth(ReaderTestCase):

    def test_healthy(self):
        self.w3.is_connected.return_value = True
        self.assertTrue(self.reader.is_healthy())

    def test_connection_error(self):
        self.w3.is_connected.side_effect = OSError("no route")
        self.assertFalse(self.reader.is_healthy())


if __name__ == "__main__":
    unittest.main(verbosity=2)
