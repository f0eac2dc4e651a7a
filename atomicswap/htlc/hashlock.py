"""
Hashlock codec for HTLC swaps.

Generates secrets, derives hashlocks and converts both into the native
representation each chain family expects:
- EVM: bytes32 hex hashlock, uint256 secret
- Field chains (e.g. Aztec): u128 high/low halves

The hash construction must match the deployed HTLC contracts on both
chains. SHA256 is the default since it is what the HTLC contracts use
for cross-chain compatibility with Bitcoin-style scripts.
"""

import hashlib
import hmac
import secrets
from typing import Tuple

from web3 import Web3

from ..core import ConfigurationError, SECRET_BYTES

HASH_SHA256 = "sha256"
HASH_KECCAK256 = "keccak256"
SUPPORTED_HASHES = (HASH_SHA256, HASH_KECCAK256)

FAMILY_EVM = "evm"
FAMILY_FIELD = "field"

U128_MASK = (1 << 128) - 1


def _strip(value: str) -> str:
    return value.lower().replace("0x", "")


def _to_bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(_strip(value))


class HashlockCodec:
    """
    Secret/hashlock generation and verification for one hash construction.

    Args:
        hash_function: "sha256" or "keccak256"
    """

    def __init__(self, hash_function: str = HASH_SHA256):
        if hash_function not in SUPPORTED_HASHES:
            raise ConfigurationError(f"Unsupported hash function: {hash_function}")
        self.hash_function = hash_function

    def generate_secret(self) -> str:
        """Random 256-bit secret (hex, no 0x) from the OS CSPRNG."""
        return secrets.token_bytes(SECRET_BYTES).hex()

    def commit(self, secret) -> str:
        """Hashlock for ``secret`` (hex, no 0x)."""
        data = _to_bytes(secret)
        if len(data) != SECRET_BYTES:
            raise ValueError(f"Secret must be {SECRET_BYTES} bytes, got {len(data)}")
        if self.hash_function == HASH_SHA256:
            return hashlib.sha256(data).hexdigest()
        return bytes(Web3.keccak(data)).hex()

    def verify(self, secret, hashlock) -> bool:
        """Constant-time check that commit(secret) == hashlock."""
        try:
            actual = bytes.fromhex(self.commit(secret))
            expected = _to_bytes(hashlock)
        except (ValueError, TypeError):
            return False
        return hmac.compare_digest(actual, expected)

    def new_pair(self) -> Tuple[str, str]:
        """(secret, hashlock)"""
        secret = self.generate_secret()
        return secret, self.commit(secret)

    def ensure_compatible(self, *hash_functions: str):
        """
        Raise ConfigurationError unless every chain uses this codec's hash.

        Must run before any lock is submitted: a mismatch makes one side
        unredeemable.
        """
        for name in hash_functions:
            if name != self.hash_function:
                raise ConfigurationError(
                    f"Hash function mismatch: codec uses {self.hash_function}, chain uses {name}"
                )


# =============================================================================
# Native encodings
# =============================================================================

def to_bytes32(value) -> str:
    """0x-prefixed 32-byte hex."""
    raw = _to_bytes(value) if not isinstance(value, int) else value.to_bytes(32, "big")
    if len(raw) > 32:
        raise ValueError(f"Value exceeds 32 bytes: {len(raw)}")
    return "0x" + raw.rjust(32, b"\x00").hex()


def secret_to_uint256(secret: str) -> int:
    """EVM redeem argument."""
    return int(_strip(secret), 16)


def uint256_to_secret(value: int) -> str:
    """Secret hex (no 0x) from a redeem event's uint256."""
    return value.to_bytes(32, "big").hex()


def split_u128(value: str) -> Tuple[int, int]:
    """(high, low) 128-bit halves of a 32-byte hex value."""
    full = int(_strip(value), 16)
    return full >> 128, full & U128_MASK


def join_u128(high: int, low: int) -> str:
    """Inverse of split_u128 (hex, no 0x)."""
    if high > U128_MASK or low > U128_MASK:
        raise ValueError("u128 half out of range")
    return ((high << 128) | low).to_bytes(32, "big").hex()


def generate_swap_id() -> str:
    """Random swap id, 31 bytes so it fits a field element, as bytes32 hex."""
    return to_bytes32(secrets.token_bytes(31))


def normalize_hex32(value: str) -> str:
    """Canonical 0x-prefixed lowercase bytes32 form used for comparisons."""
    return to_bytes32(value).lower()


def encode_for_family(value: str, family: str):
    """Hashlock/secret in the chain family's native form."""
    if family == FAMILY_EVM:
        return to_bytes32(value)
    if family == FAMILY_FIELD:
        high, low = split_u128(value)
        return {"high": str(high), "low": str(low)}
    raise ConfigurationError(f"Unknown chain family: {family}")
