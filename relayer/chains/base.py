"""
Chain client interface.

Everything chain specific (RPC shape, event encoding, timelock unit,
transaction signing) lives behind this interface. Monitors, the executor
and the extractor only talk to a ChainClient.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core import Chain, LockState, SwapEvent


class LogSubscription(ABC):
    """Push-style feed of new contract logs (e.g. an eth_newFilter)."""

    @abstractmethod
    def get_new_events(self) -> List[SwapEvent]:
        """Events since the last call. Raises TransientChainError if the feed dropped."""
        ...

    def close(self):
        pass


class ChainClient(ABC):
    """Read and write access to the HTLC contract on one chain."""

    chain: Chain

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_block_number(self) -> int:
        ...

    @abstractmethod
    def get_swap_events(self, from_block: int, to_block: int) -> List[SwapEvent]:
        """All HTLC events in [from_block, to_block], in block and log order."""
        ...

    @abstractmethod
    def get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        """Transaction with at least `input` (hex) and `to`, or None if unknown."""
        ...

    @abstractmethod
    def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        """Receipt with `logs` (each: address, topics, data, logIndex), or None if not mined."""
        ...

    def trace_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        """Call tree (callTracer shape) or None when tracing is unsupported."""
        return None

    @abstractmethod
    def get_lock(self, secret_hash: str) -> Optional[LockState]:
        """Current lock under secret_hash, or None if the contract has none."""
        ...

    def subscribe(self) -> Optional[LogSubscription]:
        """Open a real-time feed, or None if the chain has none."""
        return None

    # -------------------------------------------------------------------------
    # Writes (return tx ref without waiting for confirmation)
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_lock(self, recipient: str, secret_hash: str, timelock: int,
                    amount: int, token: str = "") -> str:
        ...

    @abstractmethod
    def claim(self, secret_hash: str, secret: str, amount: int) -> str:
        ...

    @abstractmethod
    def refund(self, secret_hash: str) -> str:
        ...
