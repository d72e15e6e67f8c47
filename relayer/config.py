"""
Environment configuration.

    ETHEREUM_RPC_URL        chain A JSON-RPC endpoint
    ETHEREUM_CHAIN_ID       chain A id (default 11155111, Sepolia)
    HTLC_CONTRACT_ADDRESS   chain A HTLC contract
    PRIVATE_KEY             chain A relayer key
    NEAR_RPC_URL            chain B JSON-RPC endpoint
    NEAR_NETWORK_ID         testnet | mainnet
    NEAR_CONTRACT_ID        chain B HTLC contract (default fusion-htlc.testnet)
    NEAR_ACCOUNT_ID         chain B relayer account
    NEAR_SIGNER             "package.module:factory" returning a NearSigner;
                            called with the NearConfig (NEAR writes fail without one)
    POLL_INTERVAL           monitor poll interval, milliseconds (default 5000)
    CONFIRMATION_DEPTH      blocks behind head treated as final (default 0)
    MIN_CLAIM_AMOUNT        smallest claim the resolver accepts
    FRESHNESS_WINDOW        max claim request age, milliseconds (default 300000)
    TIMELOCK_MARGIN         counterparty lock expires this much earlier, seconds
    RESOLVER_PORT           HTTP port (default 3001)
    LOG_LEVEL               logging level (default INFO)
"""

import os
import importlib
from dataclasses import dataclass, field

from .chains.evm import EVMConfig
from .chains.near import NearConfig, NearSigner
from .executor import ExecutorConfig
from .monitor import MonitorConfig
from .relay import RelayConfig
from .resolver import ResolverConfig


@dataclass
class AppConfig:
    evm: EVMConfig = field(default_factory=EVMConfig)
    near: NearConfig = field(default_factory=NearConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    near_signer: str = ""
    port: int = 3001
    log_level: str = "INFO"


def _int(env, name: str, default: int) -> int:
    value = env.get(name)
    return int(value) if value not in (None, "") else default


def load_config(env=None) -> AppConfig:
    """Build AppConfig from environment variables (or any mapping)."""
    env = os.environ if env is None else env
    near_network = env.get("NEAR_NETWORK_ID", "testnet")

    return AppConfig(
        evm=EVMConfig(
            rpc_url=env.get("ETHEREUM_RPC_URL", EVMConfig.rpc_url),
            chain_id=_int(env, "ETHEREUM_CHAIN_ID", EVMConfig.chain_id),
            contract_address=env.get("HTLC_CONTRACT_ADDRESS", ""),
            private_key=env.get("PRIVATE_KEY") or None,
        ),
        near=NearConfig(
            rpc_url=env.get("NEAR_RPC_URL", f"https://rpc.{near_network}.near.org"),
            network_id=near_network,
            contract_id=env.get("NEAR_CONTRACT_ID", NearConfig.contract_id),
            account_id=env.get("NEAR_ACCOUNT_ID", ""),
        ),
        monitor=MonitorConfig(
            poll_interval=_int(env, "POLL_INTERVAL", 5000) / 1000,
            confirmation_depth=_int(env, "CONFIRMATION_DEPTH", 0),
        ),
        executor=ExecutorConfig(
            timelock_margin=_int(env, "TIMELOCK_MARGIN", ExecutorConfig.timelock_margin),
        ),
        resolver=ResolverConfig(
            freshness_window_ms=_int(env, "FRESHNESS_WINDOW", ResolverConfig.freshness_window_ms),
            min_claim_amount=_int(env, "MIN_CLAIM_AMOUNT", ResolverConfig.min_claim_amount),
        ),
        near_signer=env.get("NEAR_SIGNER", ""),
        port=_int(env, "RESOLVER_PORT", 3001),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )


def load_signer(path: str, near: NearConfig) -> NearSigner:
    """Import "package.module:factory" and build the NEAR signer with it."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"NEAR_SIGNER must look like 'package.module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    signer = factory(near)
    if not isinstance(signer, NearSigner):
        raise TypeError(f"{path} returned {type(signer).__name__}, not a NearSigner")
    return signer
