"""
In-memory chain client and fixtures for offline tests.
"""

import hashlib
from typing import Any, Dict, List, Optional

from relayer.chains.base import ChainClient, LogSubscription
from relayer.chains.near import NearConfig, NearSigner
from relayer.core import Chain, LockState, SwapEvent, SwapStatus, swap_id_for

SECRET = "0x" + "ab" * 32
SECRET_HASH = "0x" + hashlib.sha256(bytes.fromhex("ab" * 32)).hexdigest()


def make_event(chain: Chain = Chain.ETHEREUM, status: SwapStatus = SwapStatus.LOCKED,
               secret_hash: str = SECRET_HASH, amount: str = "5000000000000000000",
               timelock: int = 1_700_003_600, block: int = 1, log_index: int = 0,
               tx_ref: Optional[str] = None, secret: Optional[str] = None,
               recipient: str = "bob.testnet") -> SwapEvent:
    return SwapEvent(
        id=swap_id_for(chain, secret_hash),
        source_chain=chain,
        dest_chain=chain.counterparty,
        source_token="0x0000000000000000000000000000000000000000",
        dest_token="near",
        amount=amount,
        recipient=recipient,
        secret_hash=secret_hash,
        timelock=timelock,
        status=status,
        tx_ref=tx_ref if tx_ref is not None else f"0x{block:04x}{log_index:04x}",
        block_ref=block,
        log_index=log_index,
        secret=secret,
    )


class FakeSubscription(LogSubscription):

    def __init__(self):
        self.batches: List[List[SwapEvent]] = []
        self.closed = False

    def get_new_events(self) -> List[SwapEvent]:
        return self.batches.pop(0) if self.batches else []

    def close(self):
        self.closed = True


class FakeChainClient(ChainClient):
    """Scriptable ChainClient. Writes are recorded in `calls`."""

    def __init__(self, chain: Chain = Chain.ETHEREUM, head: int = 100):
        self.chain = chain
        self.head = head
        self.events: List[SwapEvent] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.traces: Dict[str, Dict[str, Any]] = {}
        self.locks: Dict[str, LockState] = {}
        self.calls: List[tuple] = []
        self.fetches: List[tuple] = []

        # Failure injection
        self.head_error: Optional[Exception] = None
        self.events_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.lock_error: Optional[Exception] = None
        self.subscription: Optional[LogSubscription] = None

    def get_block_number(self) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    def get_swap_events(self, from_block: int, to_block: int) -> List[SwapEvent]:
        self.fetches.append((from_block, to_block))
        if self.events_error:
            raise self.events_error
        found = [e for e in self.events if from_block <= e.block_ref <= to_block]
        return sorted(found, key=lambda e: (e.block_ref, e.log_index))

    def get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(tx_ref)

    def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_ref)

    def trace_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        return self.traces.get(tx_ref)

    def get_lock(self, secret_hash: str) -> Optional[LockState]:
        if self.lock_error:
            raise self.lock_error
        return self.locks.get(secret_hash)

    def subscribe(self) -> Optional[LogSubscription]:
        return self.subscription

    def _write(self, *call) -> str:
        if self.write_error:
            raise self.write_error
        self.calls.append(call)
        return f"0x{len(self.calls):064x}"

    def create_lock(self, recipient: str, secret_hash: str, timelock: int,
                    amount: int, token: str = "") -> str:
        return self._write("create_lock", recipient, secret_hash, timelock, amount, token)

    def claim(self, secret_hash: str, secret: str, amount: int) -> str:
        return self._write("claim", secret_hash, secret, amount)

    def refund(self, secret_hash: str) -> str:
        return self._write("refund", secret_hash)



class FakeNearSigner(NearSigner):
    """Returns a fixed base64 payload instead of a signed transaction."""

    def __init__(self, config: NearConfig):
        self.config = config

    def sign_function_call(self, receiver_id: str, method_name: str, args: bytes,
                           gas: int, deposit: int) -> str:
        return "c2lnbmVk"


def make_near_signer(config: NearConfig) -> FakeNearSigner:
    return FakeNearSigner(config)
