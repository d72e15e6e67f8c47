"""
Secret Extractor - recovers HTLC secrets from chain A transactions.

Different HTLC contracts reveal the secret differently, so extraction
tries strategies in a fixed order and returns the first plausible hit:

1. Event logs with a known "secret revealed" signature
2. Calldata decoded against known claim function signatures
3. Raw calldata scan (32-byte window at every byte offset)
4. Internal calls from debug_traceTransaction (best effort)

Results are cached per transaction in a bounded LRU.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .abi import parse_signature, decode_log, decode_call, to_bytes
from .chains.base import ChainClient
from .core import is_valid_secret, normalize_hex, verify_preimage
from .errors import NotFoundError, TransientChainError
from .store import SecretCache

log = logging.getLogger(__name__)

SECRET_FIELDS = ("secret", "preimage")

# Order matters: first match wins
SECRET_EVENTS = [parse_signature(s) for s in (
    "SwapClaimed(bytes32 indexed secretHash, bytes32 secret)",
    "SecretRevealed(bytes32 indexed hash, bytes32 secret)",
    "ClaimWithSecret(bytes32 secret)",
    "Claim(bytes32 secret)",
    "SecretUsed(bytes32 secret)",
    "UnlockWithSecret(bytes32 indexed lockId, bytes32 secret)",
)]

CLAIM_FUNCTIONS = [parse_signature(s) for s in (
    "claim(bytes32 secret)",
    "claimSwap(bytes32 secret, uint256 amount)",
    "unlock(bytes32 secret)",
    "reveal(bytes32 secret)",
    "claimHTLC(bytes32 secret)",
    "claimWithSecret(bytes32 lockId, bytes32 secret)",
    "claim(bytes32 secretHash, bytes32 secret)",
)]

Accept = Callable[[str], bool]


class SecretSource(Enum):
    """Where a secret was found."""
    CACHE = "cache"
    EVENT_LOG = "event_log"
    CALL_DATA = "call_data"
    CALLDATA_SCAN = "calldata_scan"
    TRACE = "trace"


def _pick(fields: Dict[str, Any], accept: Accept) -> Optional[str]:
    for name in SECRET_FIELDS:
        value = fields.get(name)
        if isinstance(value, str) and accept(value):
            return value
    return None


def find_in_logs(logs: List[Dict[str, Any]], accept: Accept) -> Optional[str]:
    for sig in SECRET_EVENTS:
        for entry in logs:
            fields = decode_log(sig, entry.get("topics") or [], entry.get("data"))
            if fields:
                secret = _pick(fields, accept)
                if secret:
                    return secret
    return None


def find_in_call(calldata: str, accept: Accept) -> Optional[str]:
    for sig in CLAIM_FUNCTIONS:
        fields = decode_call(sig, calldata)
        if fields:
            secret = _pick(fields, accept)
            if secret:
                return secret
    return None


def scan_calldata(calldata: str, accept: Accept) -> Optional[str]:
    """Try every 32-byte window after the 4-byte selector."""
    try:
        raw = to_bytes(calldata or b"")
    except ValueError:
        return None
    for offset in range(4, len(raw) - 31):
        candidate = "0x" + raw[offset:offset + 32].hex()
        if accept(candidate):
            return candidate
    return None


def iter_calls(node: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Depth-first walk over a callTracer result."""
    yield node
    for child in node.get("calls") or []:
        yield from iter_calls(child)


class SecretExtractor:
    """Recovers the secret revealed by a chain A claim transaction."""

    def __init__(self, client: ChainClient, cache: Optional[SecretCache] = None,
                 use_trace: bool = True):
        self.client = client
        self.cache = cache or SecretCache()
        self.use_trace = use_trace

    def extract(self, tx_ref: str, secret_hash: Optional[str] = None) -> str:
        """
        Recover the secret from a transaction.

        Args:
            tx_ref: Transaction hash
            secret_hash: If given, only a secret hashing to it is accepted

        Returns:
            0x-prefixed 32-byte secret

        Raises:
            NotFoundError: retryable=True if the tx is not (yet) mined,
                           retryable=False if no strategy found a secret
            TransientChainError: RPC failure
        """
        def accept(candidate: str) -> bool:
            if not is_valid_secret(candidate):
                return False
            return secret_hash is None or verify_preimage(candidate, secret_hash)

        key = normalize_hex(tx_ref)
        cached = self.cache.get(key)
        if cached and accept(cached):
            return cached

        tx = self.client.get_transaction(tx_ref)
        if tx is None:
            raise NotFoundError(f"Transaction {tx_ref} not found", retryable=True)
        receipt = self.client.get_receipt(tx_ref)
        if receipt is None:
            raise NotFoundError(f"Transaction {tx_ref} not mined yet", retryable=True)

        secret, source = self._search(tx_ref, tx, receipt, accept)
        if secret is None:
            raise NotFoundError(f"No secret found in {tx_ref}")

        secret = normalize_hex(secret)
        self.cache.put(key, secret)
        log.info(f"Extracted secret from {tx_ref} via {source.value}")
        return secret

    def _search(self, tx_ref: str, tx: Dict[str, Any], receipt: Dict[str, Any], accept: Accept):
        secret = find_in_logs(receipt.get("logs") or [], accept)
        if secret:
            return secret, SecretSource.EVENT_LOG

        calldata = tx.get("input") or ""
        secret = find_in_call(calldata, accept)
        if secret:
            return secret, SecretSource.CALL_DATA

        secret = scan_calldata(calldata, accept)
        if secret:
            return secret, SecretSource.CALLDATA_SCAN

        if self.use_trace:
            secret = self._search_trace(tx_ref, accept)
            if secret:
                return secret, SecretSource.TRACE

        return None, None

    def _search_trace(self, tx_ref: str, accept: Accept) -> Optional[str]:
        try:
            trace = self.client.trace_transaction(tx_ref)
        except TransientChainError as e:
            log.debug(f"Trace for {tx_ref} failed: {e}")
            return None
        if not trace:
            return None

        for call in iter_calls(trace):
            calldata = call.get("input") or ""
            secret = find_in_call(calldata, accept) or scan_calldata(calldata, accept)
            if secret:
                return secret
        return None

    def clear_cache(self):
        self.cache.clear()

    def get_cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()
