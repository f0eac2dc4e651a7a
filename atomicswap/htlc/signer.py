"""
Signer contract for the swap coordinator.

The coordinator never signs anything itself. Every on-chain side effect is
expressed as a SignerIntent and handed to a Signer, which returns the
submitted transaction hash or raises SignerError.

Actions:
- lock:   create our HTLC (hashlock, timelock, receiver, amount)
- reveal: initiator redeems the counter-lock, making the secret public
- redeem: counterparty redeems with the already-public secret
- refund: reclaim our HTLC after its timelock
"""

import logging
from enum import Enum
from typing import Dict, Any
from dataclasses import dataclass, field

import httpx

from ..core import SignerError
from .hashlock import encode_for_family, FAMILY_EVM

log = logging.getLogger(__name__)


class SignerAction(Enum):
    LOCK = "lock"
    REVEAL = "reveal"
    REDEEM = "redeem"
    REFUND = "refund"


@dataclass
class SignerIntent:
    """One transaction the coordinator wants submitted."""
    action: SignerAction
    swap_id: str
    chain_id: str
    params: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """Log-safe summary. Never includes params (the reveal carries the secret)."""
        return f"{self.action.value} swap={self.swap_id[:18]}... chain={self.chain_id}"


class Signer:
    """Base signer. Subclasses implement submit()."""

    def submit(self, intent: SignerIntent) -> str:
        """Submit the transaction for ``intent``. Returns the tx hash."""
        raise NotImplementedError


class HttpSigner(Signer):
    """
    Forwards intents to an external signing service over HTTP.

    The service receives POST {url}/intent with a JSON body
    {"action", "swap_id", "chain_id", "params"} and answers {"tx_hash": ...}.
    Hashlocks and secrets are encoded per chain family before sending.
    """

    # Params that carry a hashlock/secret value
    ENCODED_PARAMS = ("hashlock", "secret")

    def __init__(self, url: str, families: Dict[str, str] = None, timeout: float = 30.0,
                 client: httpx.Client = None):
        self.url = url.rstrip("/")
        self.families = families or {}
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def _encode(self, intent: SignerIntent) -> Dict[str, Any]:
        family = self.families.get(intent.chain_id, FAMILY_EVM)
        params = dict(intent.params)
        for name in self.ENCODED_PARAMS:
            if params.get(name) is not None:
                params[name] = encode_for_family(params[name], family)
        return {
            "action": intent.action.value,
            "swap_id": intent.swap_id,
            "chain_id": intent.chain_id,
            "params": params,
        }

    def submit(self, intent: SignerIntent) -> str:
        try:
            resp = self._client.post(f"{self.url}/intent", json=self._encode(intent))
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise SignerError(f"Signer request failed ({intent.describe()}): {e}") from e
        except ValueError as e:
            raise SignerError(f"Signer returned invalid JSON ({intent.describe()}): {e}") from e

        tx_hash = data.get("tx_hash")
        if not tx_hash:
            raise SignerError(f"Signer refused {intent.describe()}: {data.get('error', 'no tx_hash')}")

        log.info(f"Signer submitted {intent.describe()} tx={tx_hash}")
        return tx_hash

    def close(self):
        self._client.close()
