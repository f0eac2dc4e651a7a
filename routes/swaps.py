"""
Swap status and notification endpoints.

The counterparty (solver) learns about a new swap when the initiator posts
to /api/swap/notify-lock after locking on the source chain. Everything the
solver then does is driven by on-chain observation, never by the request.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from atomicswap.core import SwapRole, SwapState, ConfigurationError, TransientChainError

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Coordinator set by server.py at init
# ---------------------------------------------------------------------------

_coordinator = None
_dest_timelock_gap = 3600  # solver lock expires this long before the initiator's


def configure(coordinator, dest_timelock_gap: int = 3600):
    """Configure swap routes. Called once at startup by server.py."""
    global _coordinator, _dest_timelock_gap
    _coordinator = coordinator
    _dest_timelock_gap = dest_timelock_gap


def _require_coordinator():
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not initialized")
    return _coordinator


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class NotifyLockRequest(BaseModel):
    swap_id: str = Field(..., description="bytes32 swap id used on both chains")
    hashlock: str = Field(..., description="bytes32 hashlock of the initiator's lock")
    source_chain: str
    dest_chain: str
    amount: int = Field(..., gt=0, description="Source lock amount, smallest unit")
    min_dest_amount: Optional[int] = Field(None, gt=0, description="Amount the solver locks on dest")
    source_timelock: int
    dest_timelock: Optional[int] = None
    source_recipient: str = Field(..., description="Solver address on the source chain")
    dest_recipient: str = Field(..., description="Initiator address on the dest chain")
    block_number: Optional[int] = Field(None, ge=0, description="Source block of the lock, if known")


class NotifyLockResponse(BaseModel):
    swap_id: str
    state: str
    dest_timelock: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/api/status")
def get_status():
    """Health check: chain reachability and swap counts."""
    coordinator = _require_coordinator()
    chains = {}
    for chain_id, reader in coordinator.readers.items():
        chains[chain_id] = {"healthy": reader.is_healthy()}
    swaps = coordinator.list_swaps()
    return {
        "status": "ok",
        "chains": chains,
        "swaps": len(swaps),
        "active_swaps": len([s for s in swaps if s.is_active()]),
    }


@router.get("/api/swaps")
def list_swaps(status: Optional[str] = Query(None), active: bool = Query(False)):
    """List swaps (secrets redacted)."""
    coordinator = _require_coordinator()
    if status is not None:
        try:
            SwapState(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    swaps = coordinator.list_swaps(active_only=active)
    if status is not None:
        swaps = [s for s in swaps if s.state.value == status]
    swaps.sort(key=lambda s: s.created_at, reverse=True)
    return {"swaps": [s.to_dict(redact=True) for s in swaps], "count": len(swaps)}


@router.get("/api/swap/{swap_id}")
def get_swap(swap_id: str):
    """Swap record (secret redacted until public) plus watcher state."""
    coordinator = _require_coordinator()
    record = coordinator.get_swap(swap_id.lower())
    if record is None:
        raise HTTPException(status_code=404, detail="Swap not found")
    data = record.to_dict(redact=True)
    data["watchers"] = coordinator.watcher_status(record.swap_id)
    return data


@router.post("/api/swap/notify-lock", response_model=NotifyLockResponse)
def notify_lock(req: NotifyLockRequest):
    """Start tracking a swap the initiator has locked on the source chain."""
    coordinator = _require_coordinator()
    dest_timelock = req.dest_timelock or req.source_timelock - _dest_timelock_gap

    try:
        record = coordinator.initiate(
            source_chain=req.source_chain,
            dest_chain=req.dest_chain,
            amount=req.amount,
            min_dest_amount=req.min_dest_amount,
            source_timelock=req.source_timelock,
            dest_timelock=dest_timelock,
            source_recipient=req.source_recipient,
            dest_recipient=req.dest_recipient,
            role=SwapRole.COUNTERPARTY,
            hashlock=req.hashlock,
            swap_id=req.swap_id,
            source_from_block=req.block_number,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientChainError as e:
        raise HTTPException(status_code=503, detail=str(e))

    log.info(f"Tracking swap {record.swap_id[:18]}... from notify-lock")
    return NotifyLockResponse(
        swap_id=record.swap_id,
        state=record.state.value,
        dest_timelock=record.dest_timelock,
    )
