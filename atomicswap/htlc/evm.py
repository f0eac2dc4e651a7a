"""
EVM HTLC contract binding.

Interacts with the Train-style HashedTimelockERC20 contract:
- lock(Id, hashlock, timelock, srcReceiver, amount, tokenContract)
- redeem(Id, secret)      secret passed as uint256
- refund(Id)

Events emitted (consumed by EVMChainReader):
- TokenLocked(bytes32 indexed Id, bytes32 hashlock, ...)
- TokenRedeemed(bytes32 indexed Id, address redeemAddress, uint256 secret, bytes32 hashlock)
- TokenRefunded(bytes32 indexed Id)
"""

import logging
import threading
from typing import Optional, Dict, Any

from web3 import Web3
from eth_account import Account

from ..core import SignerError
from .hashlock import to_bytes32, secret_to_uint256
from .signer import Signer, SignerIntent, SignerAction

log = logging.getLogger(__name__)

# Contract ABI (minimal - only what the coordinator uses)
HTLC_ABI = [
    {
        "name": "lock",
        "type": "function",
        "inputs": [
            {"name": "Id", "type": "bytes32"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint48"},
            {"name": "srcReceiver", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "tokenContract", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "bytes32"}]
    },
    {
        "name": "redeem",
        "type": "function",
        "inputs": [
            {"name": "Id", "type": "bytes32"},
            {"name": "secret", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "Id", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "getHTLCDetails",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "Id", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "amount", "type": "uint256"},
                    {"name": "hashlock", "type": "bytes32"},
                    {"name": "secret", "type": "uint256"},
                    {"name": "tokenContract", "type": "address"},
                    {"name": "timelock", "type": "uint48"},
                    {"name": "claimed", "type": "uint8"},
                    {"name": "sender", "type": "address"},
                    {"name": "srcReceiver", "type": "address"}
                ]
            }
        ]
    },
    {
        "name": "TokenLocked",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "Id", "type": "bytes32", "indexed": True},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "srcReceiver", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "timelock", "type": "uint48", "indexed": False},
            {"name": "tokenContract", "type": "address", "indexed": False}
        ]
    },
    {
        "name": "TokenRedeemed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "Id", "type": "bytes32", "indexed": True},
            {"name": "redeemAddress", "type": "address", "indexed": False},
            {"name": "secret", "type": "uint256", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False}
        ]
    },
    {
        "name": "TokenRefunded",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "Id", "type": "bytes32", "indexed": True}
        ]
    }
]

# ERC20 ABI (approve, allowance, balanceOf)
ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

# getHTLCDetails().claimed
CLAIM_PENDING = 0
CLAIM_REDEEMED = 1
CLAIM_REFUNDED = 2

MAX_UINT256 = 2**256 - 1


def event_signature(name: str) -> str:
    """Canonical signature, e.g. TokenRefunded(bytes32)."""
    for item in HTLC_ABI:
        if item["type"] == "event" and item["name"] == name:
            types = ",".join(inp["type"] for inp in item["inputs"])
            return f"{name}({types})"
    raise ValueError(f"Event {name} not found in ABI")


def event_topic(name: str) -> str:
    """topic0 for an HTLC event (0x-prefixed, lowercase)."""
    return "0x" + bytes(Web3.keccak(text=event_signature(name))).hex()


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(to_bytes32(value)[2:])


class EVMSigner(Signer):
    """
    Local-key signer for one EVM chain.

    Builds, signs and broadcasts HTLC transactions with eth_account and waits
    for the receipt. Lock intents check the token balance and approve first
    when the allowance is short. Nonces are assigned under a lock so concurrent
    swaps never reuse one.

    Args:
        chain_id: Swap-level chain identifier this signer serves
        w3: Connected Web3 instance
        private_key: Hex private key
        htlc_contract: HTLC contract address
        token: ERC20 token the HTLC locks
    """

    def __init__(self, chain_id: str, w3: Web3, private_key: str, htlc_contract: str,
                 token: str, receipt_timeout: int = 120):
        self.chain_id = chain_id
        self.w3 = w3
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        self.account = Account.from_key(private_key)
        self.htlc_address = Web3.to_checksum_address(htlc_contract)
        self.token = Web3.to_checksum_address(token)
        self.receipt_timeout = receipt_timeout
        self.htlc = w3.eth.contract(address=self.htlc_address, abi=HTLC_ABI)
        self.erc20 = w3.eth.contract(address=self.token, abi=ERC20_ABI)
        self._nonce_lock = threading.Lock()
        self._next_nonce = 0

    @property
    def address(self) -> str:
        return self.account.address

    def submit(self, intent: SignerIntent) -> str:
        if intent.chain_id != self.chain_id:
            raise SignerError(f"Signer for {self.chain_id} got intent for {intent.chain_id}")

        swap_id = _bytes32(intent.swap_id)
        params = intent.params
        try:
            if intent.action == SignerAction.LOCK:
                amount = int(params["amount"])
                self._check_balance(amount)
                self._ensure_allowance(amount)
                fn = self.htlc.functions.lock(
                    swap_id,
                    _bytes32(params["hashlock"]),
                    int(params["timelock"]),
                    Web3.to_checksum_address(params["receiver"]),
                    amount,
                    self.token,
                )
                gas = 300000
            elif intent.action in (SignerAction.REVEAL, SignerAction.REDEEM):
                fn = self.htlc.functions.redeem(swap_id, secret_to_uint256(params["secret"]))
                gas = 150000
            elif intent.action == SignerAction.REFUND:
                fn = self.htlc.functions.refund(swap_id)
                gas = 100000
            else:
                raise SignerError(f"Unsupported action: {intent.action}")

            return self._send(fn, gas, intent.describe())

        except SignerError:
            raise
        except Exception as e:
            raise SignerError(f"{intent.describe()} failed: {e}") from e

    def get_details(self, swap_id: str) -> Optional[Dict[str, Any]]:
        """On-chain HTLC state, or None if no lock exists for ``swap_id``."""
        details = self.htlc.functions.getHTLCDetails(_bytes32(swap_id)).call()
        amount, hashlock, secret, token, timelock, claimed, sender, receiver = details
        if int(sender, 16) == 0:
            return None
        return {
            "amount": amount,
            "hashlock": bytes(hashlock).hex(),
            "secret": secret,
            "token": token,
            "timelock": timelock,
            "claimed": claimed,
            "sender": sender,
            "receiver": receiver,
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_balance(self, amount: int):
        balance = self.erc20.functions.balanceOf(self.address).call()
        if balance < amount:
            raise SignerError(f"Insufficient token balance: {balance} < {amount}")

    def _ensure_allowance(self, amount: int):
        current = self.erc20.functions.allowance(self.address, self.htlc_address).call()
        if current >= amount:
            return

        log.info(f"Current allowance: {current}, approving max amount")
        self._send(self.erc20.functions.approve(self.htlc_address, MAX_UINT256), 100000, "approve")

    def _send(self, fn, gas: int, label: str) -> str:
        # Held until the node has the tx; the receipt wait runs unlocked
        with self._nonce_lock:
            pending = self.w3.eth.get_transaction_count(self.address, 'pending')
            nonce = max(pending, self._next_nonce)
            gas_price = int(self.w3.eth.gas_price * 1.1)  # 10% buffer

            tx = fn.build_transaction({
                'from': self.address,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'chainId': self.w3.eth.chain_id,
            })

            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            self._next_nonce = nonce + 1
        tx_hex = "0x" + bytes(tx_hash).hex()
        log.info(f"{label} TX: {tx_hex}")

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt['status'] != 1:
            raise SignerError(f"{label} reverted: {tx_hex}")
        return tx_hex
