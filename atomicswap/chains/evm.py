"""
EVM chain reader for the atomicswap engine.

Reads HTLC events from an EVM chain (Base, Ethereum, etc.) through web3:
- eth_getLogs over the HTLC contract, chunked by max_block_range
- latest / finalized block tags for the safe tip
"""

import logging
from typing import Optional, List, Dict, Any

from web3 import Web3

from ..core import TransientChainError
from ..htlc.evm import HTLC_ABI, event_topic
from ..htlc.hashlock import normalize_hex32, uint256_to_secret
from .base import (
    ChainConfig, ChainReader, ChainTip, BlockRef, LogEntry,
    EVENT_LOCK, EVENT_REDEEM, EVENT_REFUND,
)

log = logging.getLogger(__name__)

# ABI event name -> engine event
EVENTS = {
    "TokenLocked": EVENT_LOCK,
    "TokenRedeemed": EVENT_REDEEM,
    "TokenRefunded": EVENT_REFUND,
}


def _hex(value) -> str:
    """0x-prefixed lowercase hex from HexBytes/bytes/str."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


class EVMChainReader(ChainReader):
    """
    web3-backed ChainReader.

    Any RPC failure is raised as TransientChainError so the watcher can back
    off and retry. An empty list always means "no events in range".
    """

    def __init__(self, config: ChainConfig, w3: Optional[Web3] = None):
        super().__init__(config)
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.request_timeout},
        ))
        self.htlc_address = Web3.to_checksum_address(config.htlc_contract)
        self.htlc = self.w3.eth.contract(address=self.htlc_address, abi=HTLC_ABI)
        self._topics = {event_topic(name): name for name in EVENTS}

    # =========================================================================
    # ChainReader
    # =========================================================================

    def get_tip(self) -> ChainTip:
        try:
            block = self.w3.eth.get_block("latest")
            latest = BlockRef(
                number=int(block["number"]),
                hash=_hex(block["hash"]),
                timestamp=int(block["timestamp"]),
            )
            if self.config.finality_tag:
                final = self.w3.eth.get_block(self.config.finality_tag)
                safe = BlockRef(
                    number=int(final["number"]),
                    hash=_hex(final["hash"]),
                    timestamp=int(final["timestamp"]),
                )
            else:
                safe = BlockRef(number=self.safe_number(latest.number))
        except Exception as e:
            raise TransientChainError(f"{self.chain_id}: get_tip failed: {e}") from e

        return ChainTip(latest=latest, safe=safe)

    def get_logs(self, contract: str, from_block: int, to_block: int) -> List[LogEntry]:
        if to_block < from_block:
            return []

        address = Web3.to_checksum_address(contract)
        entries: List[LogEntry] = []
        start = from_block
        while start <= to_block:
            end = min(start + self.config.max_block_range - 1, to_block)
            try:
                raw_logs = self.w3.eth.get_logs({
                    "address": address,
                    "fromBlock": start,
                    "toBlock": end,
                })
            except Exception as e:
                raise TransientChainError(
                    f"{self.chain_id}: get_logs {start}-{end} failed: {e}"
                ) from e

            for raw in raw_logs:
                entry = self._decode(raw, contract)
                if entry:
                    entries.append(entry)
            start = end + 1

        entries.sort(key=lambda e: (e.block_number, e.log_index))
        return entries

    def is_healthy(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except Exception as e:
            log.warning(f"{self.chain_id}: health check failed: {e}")
            return False

    # =========================================================================
    # Decoding
    # =========================================================================

    def _decode(self, raw: Dict[str, Any], contract: str) -> Optional[LogEntry]:
        topics = raw.get("topics") or []
        if not topics:
            return None
        name = self._topics.get(_hex(topics[0]))
        if not name:
            return None

        try:
            decoded = getattr(self.htlc.events, name)().process_log(raw)
        except Exception as e:
            log.warning(f"{self.chain_id}: undecodable {name} log in {_hex(raw.get('transactionHash', b''))}: {e}")
            return None

        args = decoded["args"]
        event = EVENTS[name]
        if event == EVENT_LOCK:
            parsed = {
                "hashlock": _hex(args["hashlock"])[2:],
                "sender": args["sender"],
                "receiver": args["srcReceiver"],
                "amount": int(args["amount"]),
                "timelock": int(args["timelock"]),
                "token": args["tokenContract"],
            }
        elif event == EVENT_REDEEM:
            parsed = {
                "secret": uint256_to_secret(int(args["secret"])),
                "hashlock": _hex(args["hashlock"])[2:],
                "redeemer": args["redeemAddress"],
            }
        else:
            parsed = {}

        return LogEntry(
            event=event,
            swap_id=normalize_hex32(_hex(args["Id"])),
            block_number=int(decoded["blockNumber"]),
            tx_hash=_hex(decoded["transactionHash"]),
            log_index=int(decoded["logIndex"]),
            block_hash=_hex(decoded["blockHash"]),
            contract=contract,
            args=parsed,
        )
