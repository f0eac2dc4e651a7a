#!/usr/bin/env python3
"""
atomicswap Server
HTLC swap coordination between a source and a destination chain.

Runs the SwapCoordinator as the counterparty (solver): initiators announce
their source lock through /api/swap/notify-lock and the coordinator takes it
from there (validate, lock on dest, learn the secret, redeem on source).

Endpoints:
  GET  /api/status             - Health check
  GET  /api/swaps              - List swaps
  GET  /api/swap/{id}          - Get swap status
  POST /api/swap/notify-lock   - Track a new swap

Environment:
  SOURCE_CHAIN_ID, SOURCE_RPC_URL, SOURCE_HTLC_CONTRACT, SOURCE_CONFIRMATIONS, ...
  DEST_CHAIN_ID,   DEST_RPC_URL,   DEST_HTLC_CONTRACT,   DEST_CONFIRMATIONS, ...
  SIGNER_URL        - External signing service
  SWAP_DB_PATH      - JSON swap store (default ~/.atomicswap/swaps.json)
  POLL_INTERVAL     - Watcher poll interval in seconds
  PORT              - HTTP port
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atomicswap import (
    ChainConfig, EVMChainReader, HashlockCodec, HttpSigner, JsonFileStore,
    SwapCoordinator, CoordinatorConfig, WatcherConfig, ConfigurationError,
)
from atomicswap.core import DEFAULT_POLL_INTERVAL
from routes import swaps as swap_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

SWAP_DB_PATH = os.environ.get("SWAP_DB_PATH", "~/.atomicswap/swaps.json")
SIGNER_URL = os.environ.get("SIGNER_URL", "http://127.0.0.1:3002")
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", DEFAULT_POLL_INTERVAL))
DEST_TIMELOCK_GAP = int(os.environ.get("DEST_TIMELOCK_GAP", 3600))

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="atomicswap",
    description="HTLC cross-chain swap coordinator",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(swap_routes.router)

_coordinator: Optional[SwapCoordinator] = None
_signer: Optional[HttpSigner] = None


def build_coordinator() -> SwapCoordinator:
    """Wire readers, signer and store from the environment."""
    global _signer

    source = ChainConfig.from_env("SOURCE")
    dest = ChainConfig.from_env("DEST")
    if source.hash_function != dest.hash_function:
        raise ConfigurationError(
            f"Hash function mismatch: {source.chain_id}={source.hash_function}, "
            f"{dest.chain_id}={dest.hash_function}"
        )

    readers = {
        source.chain_id: EVMChainReader(source),
        dest.chain_id: EVMChainReader(dest),
    }
    _signer = HttpSigner(SIGNER_URL, families={
        source.chain_id: source.family,
        dest.chain_id: dest.family,
    })

    return SwapCoordinator(
        readers,
        _signer,
        JsonFileStore(SWAP_DB_PATH),
        codec=HashlockCodec(source.hash_function),
        config=CoordinatorConfig(),
        watcher_config=WatcherConfig(poll_interval=POLL_INTERVAL),
    )


# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize coordinator and resume persisted swaps."""
    global _coordinator
    _coordinator = build_coordinator()
    swap_routes.configure(_coordinator, dest_timelock_gap=DEST_TIMELOCK_GAP)

    resumed = _coordinator.resume()
    log.info(f"Swap coordinator started - {len(resumed)} active swaps resumed")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop watchers and persist state."""
    if _coordinator:
        _coordinator.shutdown()
    if _signer:
        _signer.close()
    log.info("Swap coordinator stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting atomicswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
