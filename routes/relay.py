"""
Relayer HTTP endpoints.

    POST /resolve             - Resolve a signed claim
    GET  /swap/{swap_id}      - Swap leg as observed by the monitors
    GET  /swaps               - List swap legs
    POST /webhook/{chain}     - Push a swap event (bypasses polling)
    GET  /stats               - Relayer statistics
    GET  /health              - Health check
"""

import time
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from relayer.core import Chain, ClaimRequest, SwapStatus
from relayer.errors import ValidationError
from relayer.relay import Relayer

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Module state, set by server.py at startup
# ---------------------------------------------------------------------------

_relayer: Optional[Relayer] = None
_rate_limit = 60          # /resolve requests per client per window
_rate_window = 60.0       # seconds
_requests: Dict[str, deque] = defaultdict(deque)
_requests_lock = threading.Lock()

ERROR_STATUS = {
    "validation": 400,
    "not_found": 404,
    "replay": 409,
    "execution": 502,
    "transient": 503,
}


def configure(relayer: Relayer, rate_limit: int = 60, rate_window: float = 60.0):
    """Configure routes. Called once at startup by server.py."""
    global _relayer, _rate_limit, _rate_window
    _relayer = relayer
    _rate_limit = rate_limit
    _rate_window = rate_window
    with _requests_lock:
        _requests.clear()


def _get_relayer() -> Relayer:
    if _relayer is None:
        raise HTTPException(503, "Relayer not initialized")
    return _relayer


def _check_rate_limit(client_ip: str):
    now = time.time()
    with _requests_lock:
        window = _requests[client_ip]
        while window and now - window[0] > _rate_window:
            window.popleft()
        if len(window) >= _rate_limit:
            raise HTTPException(429, "Too many resolve requests, slow down")
        window.append(now)


class ResolveRequest(BaseModel):
    swap_id: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=64, max_length=66)
    claim_amount: str = Field(..., min_length=1)
    claimer: str = Field(..., min_length=42, max_length=42)
    signature: str = Field(..., min_length=1)
    timestamp: int
    nonce: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/resolve")
def resolve(req: ResolveRequest, request: Request):
    """Validate a signed claim and execute it on the counterparty chain."""
    relayer = _get_relayer()
    _check_rate_limit(request.client.host if request.client else "unknown")

    if not req.claim_amount.isdigit():
        raise HTTPException(400, "claim_amount must be a positive integer string")

    result = relayer.resolver.resolve_swap(ClaimRequest(
        swap_id=req.swap_id,
        secret=req.secret,
        claim_amount=req.claim_amount,
        claimer=req.claimer,
        signature=req.signature,
        timestamp=req.timestamp,
        nonce=req.nonce,
    ))
    status = 200 if result.success else ERROR_STATUS.get(result.error_code, 500)
    return JSONResponse(status_code=status, content=result.to_dict())


@router.get("/swap/{swap_id}")
def get_swap(swap_id: str):
    swap = _get_relayer().registry.get(swap_id)
    if swap is None:
        raise HTTPException(404, f"Swap {swap_id} not found")
    return swap.to_dict()


@router.get("/swaps")
def list_swaps(status: Optional[str] = Query(None)):
    try:
        wanted = SwapStatus(status) if status else None
    except ValueError:
        raise HTTPException(400, f"Unknown status: {status}")
    swaps = _get_relayer().registry.list(wanted)
    return {"count": len(swaps), "swaps": [s.to_dict() for s in swaps]}


@router.post("/webhook/{chain}")
def webhook(chain: str, payload: Dict[str, Any]):
    """Push a swap event from an external indexer."""
    try:
        source = Chain(chain)
    except ValueError:
        raise HTTPException(404, f"Unknown chain: {chain}")
    try:
        accepted = _get_relayer().ingest_webhook(source, payload)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    return {"accepted": accepted}


@router.get("/stats")
def stats():
    return _get_relayer().get_status()


@router.get("/health")
def health():
    relayer = _get_relayer()
    monitors = {m.chain.value: m.state.value for m in relayer.monitors.values()}
    return {
        "status": "ok" if all(s == "polling" for s in monitors.values()) else "degraded",
        "monitors": monitors,
        "timestamp": int(time.time()),
    }
