"""
relayer - HTLC cross-chain swap relayer (Ethereum <-> NEAR).

Watches HTLC contracts on both chains, mirrors locks, claims and refunds
to the counterparty chain, recovers secrets from Ethereum transactions and
authorizes signed third-party claims exactly once per nonce.

Usage:
    from relayer import Relayer, EVMClient, EVMConfig, NearClient, NearConfig, Chain

    relayer = Relayer({
        Chain.ETHEREUM: EVMClient(EVMConfig(rpc_url=..., contract_address=...)),
        Chain.NEAR: NearClient(NearConfig(contract_id=...), signer=my_signer),
    })
    relayer.start()

    result = relayer.resolver.resolve_swap(claim_request)
"""

from .core import (
    Chain,
    SwapStatus,
    SwapEvent,
    ClaimRequest,
    LockState,
    ExecutionReceipt,
    ResolutionResult,
    generate_secret,
    hash_secret,
    verify_preimage,
    is_valid_secret,
)
from .errors import (
    RelayerError,
    TransientChainError,
    NotFoundError,
    ValidationError,
    ReplayError,
    ExecutionError,
)

from .chains.evm import EVMClient, EVMConfig
from .chains.near import NearClient, NearConfig, NearSigner

from .extractor import SecretExtractor
from .monitor import ChainMonitor, MonitorConfig, MonitorState
from .executor import CounterpartyExecutor, ExecutorConfig
from .resolver import Resolver, ResolverConfig, verify_personal_signature
from .relay import Relayer, RelayConfig
from .config import AppConfig, load_config
from .client import ResolverClient, sign_claim_request

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Chain",
    "SwapStatus",
    "SwapEvent",
    "ClaimRequest",
    "LockState",
    "ExecutionReceipt",
    "ResolutionResult",
    # Utilities
    "generate_secret",
    "hash_secret",
    "verify_preimage",
    "is_valid_secret",
    # Errors
    "RelayerError",
    "TransientChainError",
    "NotFoundError",
    "ValidationError",
    "ReplayError",
    "ExecutionError",
    # Clients
    "EVMClient",
    "EVMConfig",
    "NearClient",
    "NearConfig",
    "NearSigner",
    # Components
    "SecretExtractor",
    "ChainMonitor",
    "MonitorConfig",
    "MonitorState",
    "CounterpartyExecutor",
    "ExecutorConfig",
    "Resolver",
    "ResolverConfig",
    "verify_personal_signature",
    "Relayer",
    "RelayConfig",
    "AppConfig",
    "load_config",
    # Claim client
    "ResolverClient",
    "sign_claim_request",
]
