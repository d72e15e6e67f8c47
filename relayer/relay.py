"""
Relayer service - wires monitors, executors and the resolver together.

Events from each chain's monitor go through the mirror path:

    chain X locked   (no leg on Y yet)     -> create lock on Y
    chain X released (leg on Y is locked)  -> claim lock on Y
    chain X refunded (leg on Y is locked)  -> refund lock on Y

The gating on the other leg's state keeps the relayer from mirroring its
own counterparty locks back. Mirror actions run on a worker pool with
exponential backoff so one stuck swap never blocks a monitor.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .chains.base import ChainClient
from .core import Chain, ExecutionReceipt, SwapEvent, SwapStatus
from .errors import ExecutionError, ValidationError
from .executor import CounterpartyExecutor, ExecutorConfig
from .extractor import SecretExtractor
from .monitor import ChainMonitor, MonitorConfig
from .resolver import Resolver, ResolverConfig
from .scheduler import Ticker, backoff_delay
from .store import (
    CheckpointStore, InMemoryCheckpointStore, InMemoryNonceStore,
    NonceStore, SecretCache, SwapRegistry,
)

log = logging.getLogger(__name__)


@dataclass
class RelayConfig:
    """Mirror path configuration."""
    auto_mirror: bool = True
    mirror_workers: int = 4
    mirror_max_attempts: int = 5
    mirror_backoff: float = 2.0          # seconds, doubled per attempt
    mirror_backoff_cap: float = 60.0
    nonce_cleanup_interval: float = 60.0
    secret_cache_size: int = 1000


class Relayer:
    """Long-running relayer: two monitors, two executors, one resolver."""

    def __init__(self, clients: Dict[Chain, ChainClient],
                 monitor_config: MonitorConfig = None,
                 executor_config: ExecutorConfig = None,
                 resolver_config: ResolverConfig = None,
                 config: RelayConfig = None,
                 nonces: Optional[NonceStore] = None,
                 checkpoints: Optional[CheckpointStore] = None,
                 clock: Callable[[], float] = time.time):
        self.clients = dict(clients)
        self.config = config or RelayConfig()
        self.clock = clock
        self.registry = SwapRegistry()
        self.checkpoints = checkpoints or InMemoryCheckpointStore()

        cache = SecretCache(self.config.secret_cache_size)
        self.extractors = {
            chain: SecretExtractor(client, cache) for chain, client in self.clients.items()
        }
        # Claims on chain Y need the secret revealed on chain X
        self.executors = {
            chain: CounterpartyExecutor(
                client,
                extractor=self.extractors.get(chain.counterparty),
                config=executor_config,
                clock=clock,
            )
            for chain, client in self.clients.items()
        }
        self.monitors = {
            chain: ChainMonitor(client, self.handle_event, self.checkpoints,
                                self.registry, monitor_config)
            for chain, client in self.clients.items()
        }
        self.resolver = Resolver(
            self.registry, self.executors,
            nonces=nonces or InMemoryNonceStore(),
            config=resolver_config,
            clock=clock,
        )

        self.mirrored = 0
        self.mirror_failures = 0
        self._stop = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._cleanup = Ticker(self.resolver.cleanup_nonces, self.config.nonce_cleanup_interval,
                               name="nonce-cleanup")
        self.started_at: Optional[float] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        if self._pool is not None:
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.config.mirror_workers,
                                        thread_name_prefix="mirror")
        for monitor in self.monitors.values():
            monitor.start()
        self._cleanup.start()
        self.started_at = self.clock()
        log.info(f"Relayer started ({', '.join(c.value for c in self.monitors)})")

    def stop(self):
        self._stop.set()
        for monitor in self.monitors.values():
            monitor.stop()
        self._cleanup.stop()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        log.info("Relayer stopped")

    # =========================================================================
    # Mirror path
    # =========================================================================

    def should_mirror(self, event: SwapEvent) -> bool:
        """Decide whether an event needs a counterparty action."""
        if event.dest_chain not in self.executors:
            return False
        other_leg = self.registry.find(event.dest_chain, event.secret_hash)

        if event.status == SwapStatus.LOCKED:
            # A leg already exists: this event is that leg's mirror
            return other_leg is None
        if event.status in (SwapStatus.RELEASED, SwapStatus.REFUNDED):
            return other_leg is not None and other_leg.status == SwapStatus.LOCKED
        return False

    def handle_event(self, event: SwapEvent):
        """Monitor consumer."""
        if not self.config.auto_mirror or not self.should_mirror(event):
            return
        if self._pool is None:
            # Not started (tests, one-shot use): run inline
            self.mirror(event)
            return
        self._pool.submit(self.mirror, event)

    def mirror(self, event: SwapEvent) -> Optional[ExecutionReceipt]:
        """Execute the counterparty action with retries. Returns None on failure."""
        executor = self.executors[event.dest_chain]
        for attempt in range(1, self.config.mirror_max_attempts + 1):
            try:
                receipt = executor.execute(event)
                self.mirrored += 1
                return receipt
            except ExecutionError as e:
                if not e.retryable:
                    self.mirror_failures += 1
                    log.error(f"Mirror {e.action_key} failed: {e}")
                    return None
                delay = backoff_delay(attempt, self.config.mirror_backoff,
                                      self.config.mirror_backoff_cap)
                if e.not_before:
                    delay = max(delay, e.not_before - self.clock())
                if attempt == self.config.mirror_max_attempts:
                    break
                log.warning(f"Mirror {e.action_key} attempt {attempt} failed: {e}; retry in {delay:.0f}s")
                if self._stop.wait(delay):
                    return None

        self.mirror_failures += 1
        log.error(f"Mirror for {event.id} ({event.status.value}) gave up "
                  f"after {self.config.mirror_max_attempts} attempts")
        return None

    # =========================================================================
    # Push path and status
    # =========================================================================

    def ingest_webhook(self, chain: Chain, payload: Dict[str, Any]) -> bool:
        """Deliver an externally pushed event. Returns False for duplicates."""
        monitor = self.monitors.get(chain)
        if monitor is None:
            raise ValidationError(f"Chain {chain.value} is not monitored", ["source_chain"])
        data = dict(payload)
        data.setdefault("source_chain", chain.value)
        return monitor.ingest(SwapEvent.from_dict(data))

    def get_status(self) -> Dict[str, Any]:
        cache = next(iter(self.extractors.values())).get_cache_stats() if self.extractors else {}
        return {
            "running": self._pool is not None,
            "uptime": self.clock() - self.started_at if self.started_at else 0,
            "swaps": len(self.registry),
            "monitors": [m.get_status() for m in self.monitors.values()],
            "resolver": self.resolver.get_stats(),
            "secret_cache": cache,
            "mirror": {
                "submitted": self.mirrored,
                "failed": self.mirror_failures,
            },
        }
