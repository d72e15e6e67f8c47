"""
Shared relayer state.

All stores are in-memory and guarded by a lock. The abstract bases are the
seams for persistent backends (a nonce or checkpoint store that survives
restarts only needs to implement the same methods).
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .core import Chain, SwapEvent, SwapStatus, TERMINAL_STATUSES, can_transition, normalize_hex
from .errors import ValidationError

log = logging.getLogger(__name__)


# =============================================================================
# Secret cache
# =============================================================================

class SecretCache:
    """Bounded LRU of tx_ref -> secret."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._items: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, tx_ref: str) -> Optional[str]:
        with self._lock:
            secret = self._items.get(tx_ref)
            if secret is None:
                self.misses += 1
                return None
            self._items.move_to_end(tx_ref)
            self.hits += 1
            return secret

    def put(self, tx_ref: str, secret: str):
        with self._lock:
            self._items[tx_ref] = secret
            self._items.move_to_end(tx_ref)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def clear(self):
        with self._lock:
            self._items.clear()

    def __len__(self):
        with self._lock:
            return len(self._items)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
            }


class SeenSet:
    """Bounded insertion-ordered set used for event dedupe."""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._items: "OrderedDict[tuple, None]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, key: tuple) -> bool:
        """Add key. Returns False if it was already present."""
        with self._lock:
            if key in self._items:
                return False
            self._items[key] = None
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)
            return True

    def __contains__(self, key):
        with self._lock:
            return key in self._items

    def __len__(self):
        with self._lock:
            return len(self._items)


# =============================================================================
# Nonce store
# =============================================================================

class NonceStore(ABC):
    """Consumed claim nonces."""

    @abstractmethod
    def contains(self, nonce: str) -> bool:
        ...

    @abstractmethod
    def add_if_absent(self, nonce: str, now: Optional[float] = None) -> bool:
        """Atomically record nonce. Returns False if it was already consumed."""
        ...

    @abstractmethod
    def cleanup(self, now: float, retention: float, max_entries: int) -> int:
        """Evict old nonces. Returns number evicted."""
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemoryNonceStore(NonceStore):

    def __init__(self):
        self._nonces: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def contains(self, nonce: str) -> bool:
        with self._lock:
            return nonce in self._nonces

    def add_if_absent(self, nonce: str, now: Optional[float] = None) -> bool:
        with self._lock:
            if nonce in self._nonces:
                return False
            self._nonces[nonce] = now if now is not None else time.time()
            return True

    def cleanup(self, now: float, retention: float, max_entries: int) -> int:
        """
        Drop nonces recorded more than `retention` seconds ago, then trim the
        oldest while over `max_entries`. Nonces younger than `retention` are
        never evicted, even when over the cap.
        """
        evicted = 0
        with self._lock:
            while self._nonces:
                nonce, recorded_at = next(iter(self._nonces.items()))
                too_old = now - recorded_at > retention
                over_cap = len(self._nonces) > max_entries
                if not too_old:
                    if over_cap:
                        log.warning(
                            f"Nonce store over cap ({len(self._nonces)} > {max_entries}) "
                            f"but all entries are inside the retention window"
                        )
                    break
                self._nonces.popitem(last=False)
                evicted += 1
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)


# =============================================================================
# Checkpoint store
# =============================================================================

class CheckpointStore(ABC):
    """Last fully processed block per chain."""

    @abstractmethod
    def get(self, chain: Chain) -> Optional[int]:
        ...

    @abstractmethod
    def set(self, chain: Chain, block: int):
        ...


class InMemoryCheckpointStore(CheckpointStore):

    def __init__(self, initial: Optional[Dict[Chain, int]] = None):
        self._blocks: Dict[Chain, int] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, chain: Chain) -> Optional[int]:
        with self._lock:
            return self._blocks.get(chain)

    def set(self, chain: Chain, block: int):
        with self._lock:
            self._blocks[chain] = block


# =============================================================================
# Swap registry
# =============================================================================

class SwapRegistry:
    """
    Swap legs keyed by id. The monitors are the only writers.

    Enforces one swap id per (chain, secret hash), forward-only status and
    immutable amounts.
    """

    def __init__(self):
        self._swaps: Dict[str, SwapEvent] = {}
        self._by_hash: Dict[Tuple[Chain, str], str] = {}
        self._lock = threading.Lock()

    def apply(self, event: SwapEvent, rollback: bool = False) -> bool:
        """
        Record an observed event.

        Returns True if the registry changed. Out-of-order or repeated
        transitions are ignored. Raises ValidationError if the event
        conflicts with an existing swap.
        """
        key = (event.source_chain, normalize_hex(event.secret_hash))
        with self._lock:
            owner = self._by_hash.get(key)
            if owner is not None and owner != event.id:
                raise ValidationError(
                    f"secret hash {event.secret_hash} already used by {owner}",
                    ["secret_hash"],
                )

            current = self._swaps.get(event.id)
            if current is None:
                self._swaps[event.id] = event
                self._by_hash[key] = event.id
                return True

            if current.status == event.status:
                return False

            if current.status in TERMINAL_STATUSES:
                log.debug(f"Swap {event.id} is {current.status.value}, ignoring {event.status.value}")
                return False

            if not can_transition(current.status, event.status, rollback=rollback):
                log.debug(
                    f"Ignoring transition {current.status.value} -> {event.status.value} for {event.id}"
                )
                return False

            # Amount and terms come from the first full observation
            self._swaps[event.id] = current.with_status(
                event.status,
                tx_ref=event.tx_ref or current.tx_ref,
                block_ref=event.block_ref or current.block_ref,
                log_index=event.log_index,
                secret=event.secret or current.secret,
            )
            return True

    def get(self, swap_id: str) -> Optional[SwapEvent]:
        with self._lock:
            return self._swaps.get(swap_id)

    def find(self, chain: Chain, secret_hash: str) -> Optional[SwapEvent]:
        with self._lock:
            swap_id = self._by_hash.get((chain, normalize_hex(secret_hash)))
            return self._swaps.get(swap_id) if swap_id else None

    def list(self, status: Optional[SwapStatus] = None) -> List[SwapEvent]:
        with self._lock:
            swaps = list(self._swaps.values())
        if status is not None:
            swaps = [s for s in swaps if s.status == status]
        return swaps

    def __len__(self):
        with self._lock:
            return len(self._swaps)
