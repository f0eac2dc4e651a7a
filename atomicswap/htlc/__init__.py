"""HTLC helpers: hashlock codec, signer contract, EVM contract binding."""

from .hashlock import HashlockCodec, generate_swap_id
from .signer import Signer, SignerIntent, SignerAction, HttpSigner
from .evm import EVMSigner, HTLC_ABI

__all__ = [
    "HashlockCodec", "generate_swap_id",
    "Signer", "SignerIntent", "SignerAction", "HttpSigner",
    "EVMSigner", "HTLC_ABI",
]
