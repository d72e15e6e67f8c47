#!/usr/bin/env python3
"""
HTLC Relayer Server
Ethereum <-> NEAR atomic swap relayer with a claim resolver API.

Endpoints:
  POST /resolve            - Resolve a signed third-party claim
  GET  /swap/{id}          - Swap leg status
  GET  /swaps              - List swap legs
  POST /webhook/{chain}    - Push a swap event
  GET  /stats              - Relayer statistics
  GET  /health             - Health check

Configuration comes from environment variables (see relayer/config.py).
NEAR writes need a signer: set NEAR_SIGNER to a "package.module:factory"
import path, or embed the app and call build_relayer(near_signer=...).
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relayer import Chain, EVMClient, NearClient, NearSigner, Relayer, load_config
from relayer.config import load_signer
from routes import relay as relay_routes

# =============================================================================
# CONFIGURATION
# =============================================================================

CONFIG = load_config()

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="HTLC Relayer",
    description="Ethereum <-> NEAR atomic swap relayer",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(relay_routes.router)

_relayer: Optional[Relayer] = None


def build_relayer(near_signer: Optional[NearSigner] = None) -> Relayer:
    """Create the relayer from CONFIG. NEAR writes need a signer."""
    if not CONFIG.evm.contract_address:
        log.warning("HTLC_CONTRACT_ADDRESS not set")
    if near_signer is None and CONFIG.near_signer:
        near_signer = load_signer(CONFIG.near_signer, CONFIG.near)
        log.info(f"NEAR signer loaded from {CONFIG.near_signer}")
    if near_signer is None:
        log.warning("No NEAR signer configured - NEAR locks/claims/refunds will fail")

    return Relayer(
        {
            Chain.ETHEREUM: EVMClient(CONFIG.evm),
            Chain.NEAR: NearClient(CONFIG.near, signer=near_signer),
        },
        monitor_config=CONFIG.monitor,
        executor_config=CONFIG.executor,
        resolver_config=CONFIG.resolver,
        config=CONFIG.relay,
    )


@app.on_event("startup")
async def startup_event():
    global _relayer
    _relayer = build_relayer()
    relay_routes.configure(
        _relayer,
        rate_limit=int(os.environ.get("RESOLVE_RATE_LIMIT", 60)),
    )
    _relayer.start()
    log.info("Relayer service started")


@app.on_event("shutdown")
async def shutdown_event():
    if _relayer is not None:
        _relayer.stop()
    log.info("Relayer service stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = CONFIG.port
    log.info(f"Starting HTLC relayer on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
