"""Chain clients."""

from .base import ChainClient, LogSubscription
from .evm import EVMClient, EVMConfig
from .near import NearClient, NearConfig, NearSigner

__all__ = [
    "ChainClient",
    "LogSubscription",
    "EVMClient",
    "EVMConfig",
    "NearClient",
    "NearConfig",
    "NearSigner",
]
