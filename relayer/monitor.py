"""
Chain Monitor - turns HTLC contract activity on one chain into SwapEvents.

    STOPPED --start()--> POLLING <--> DEGRADED --stop()--> STOPPED

Each poll tick fetches every event between the checkpoint and the head and
only then advances the checkpoint, so a failed tick is simply retried.
A real-time log subscription (where the client has one) wakes the poller
as soon as new logs arrive; polling stays the source of truth.
Webhook events enter through ingest() and share the same dedupe gate.
"""

import time
import logging
import threading
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .chains.base import ChainClient, LogSubscription
from .core import SwapEvent
from .errors import TransientChainError, ValidationError
from .scheduler import Ticker
from .store import CheckpointStore, SeenSet, SwapRegistry

log = logging.getLogger(__name__)


class MonitorState(Enum):
    STOPPED = "stopped"
    POLLING = "polling"
    DEGRADED = "degraded"


@dataclass
class MonitorConfig:
    """Monitor configuration."""
    poll_interval: float = 5.0          # seconds
    subscription_interval: float = 1.0  # seconds between filter polls
    confirmation_depth: int = 0         # blocks behind head treated as final
    start_offset_blocks: int = 10       # first start: begin this far behind head
    max_blocks_per_tick: int = 500
    dedupe_size: int = 10000
    use_subscription: bool = True


class ChainMonitor:
    """
    Watches one chain's HTLC contract and forwards events to a consumer.

    The consumer is called from the monitor's threads, in block order.
    Consumer exceptions are logged and do not stop the monitor.
    """

    def __init__(self, client: ChainClient, consumer: Callable[[SwapEvent], None],
                 checkpoints: CheckpointStore, registry: SwapRegistry,
                 config: MonitorConfig = None):
        self.client = client
        self.chain = client.chain
        self.consumer = consumer
        self.checkpoints = checkpoints
        self.registry = registry
        self.config = config or MonitorConfig()

        self.state = MonitorState.STOPPED
        self.last_error: Optional[str] = None
        self.last_tick_at: float = 0
        self.delivered = 0
        self.duplicates = 0

        self._seen = SeenSet(self.config.dedupe_size)
        self._tick_lock = threading.Lock()
        self._deliver_lock = threading.Lock()
        self._ticker = Ticker(self.poll_once, self.config.poll_interval,
                              name=f"{self.chain.value}-monitor")
        self._sub_stop = threading.Event()
        self._sub_thread: Optional[threading.Thread] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        """Start polling (and the subscription, if enabled) in background threads."""
        if self._ticker.running:
            return
        self.state = MonitorState.POLLING
        self._ticker.start()

        if self.config.use_subscription:
            self._sub_stop.clear()
            self._sub_thread = threading.Thread(
                target=self._subscription_loop,
                name=f"{self.chain.value}-subscription",
                daemon=True,
            )
            self._sub_thread.start()
        log.info(f"{self.chain.value} monitor started")

    def stop(self):
        """Stop both loops. A tick already in progress completes first."""
        self._sub_stop.set()
        self._ticker.stop()
        if self._sub_thread:
            self._sub_thread.join(timeout=5)
            self._sub_thread = None
        self.state = MonitorState.STOPPED
        log.info(f"{self.chain.value} monitor stopped")

    # =========================================================================
    # Polling
    # =========================================================================

    def poll_once(self) -> int:
        """
        Run one tick. Returns the number of events delivered.

        The checkpoint advances only if every block in the range was fetched.
        """
        with self._tick_lock:
            try:
                head = self.client.get_block_number() - self.config.confirmation_depth
                checkpoint = self.checkpoints.get(self.chain)
                if checkpoint is None:
                    checkpoint = max(0, head - self.config.start_offset_blocks)
                    self.checkpoints.set(self.chain, checkpoint)
                    log.info(f"{self.chain.value} monitor starting at block {checkpoint}")

                if head <= checkpoint:
                    self._mark_healthy()
                    return 0

                to_block = min(head, checkpoint + self.config.max_blocks_per_tick)
                events = self.client.get_swap_events(checkpoint + 1, to_block)
            except TransientChainError as e:
                self._mark_degraded(str(e))
                return 0
            except Exception as e:
                log.exception(f"{self.chain.value} poll failed")
                self._mark_degraded(str(e))
                return 0

            delivered = 0
            for event in events:
                if self._deliver(event):
                    delivered += 1

            self.checkpoints.set(self.chain, to_block)
            self._mark_healthy()
            if events:
                log.info(
                    f"{self.chain.value} blocks {checkpoint + 1}-{to_block}: "
                    f"{len(events)} events, {delivered} new"
                )
            return delivered

    def _mark_healthy(self):
        self.last_tick_at = time.time()
        if self.state == MonitorState.DEGRADED:
            log.info(f"{self.chain.value} monitor recovered")
        self.state = MonitorState.POLLING
        self.last_error = None

    def _mark_degraded(self, error: str):
        if self.state != MonitorState.DEGRADED:
            log.warning(f"{self.chain.value} monitor degraded: {error}")
        self.state = MonitorState.DEGRADED
        self.last_error = error

    # =========================================================================
    # Delivery
    # =========================================================================

    def _deliver(self, event: SwapEvent) -> bool:
        with self._deliver_lock:
            if not self._seen.add(event.dedupe_key()):
                self.duplicates += 1
                return False

            try:
                self.registry.apply(event)
            except ValidationError as e:
                log.warning(f"Rejected {event.id} from {event.tx_ref}: {e}")
                return False

            self.delivered += 1
            try:
                self.consumer(event)
            except Exception as e:
                log.error(f"Consumer failed for {event.id} ({event.status.value}): {e}")
            return True

    def ingest(self, event: SwapEvent) -> bool:
        """
        Push-path delivery (webhooks). Returns False for duplicates.

        Raises ValidationError if the event is for another chain.
        """
        if event.source_chain != self.chain:
            raise ValidationError(
                f"{event.source_chain.value} event sent to {self.chain.value} monitor",
                ["source_chain"],
            )
        return self._deliver(event)

    # =========================================================================
    # Subscription
    # =========================================================================

    def _subscription_loop(self):
        subscription = None
        while not self._sub_stop.is_set():
            if subscription is None:
                try:
                    subscription = self.client.subscribe()
                except TransientChainError as e:
                    log.debug(f"{self.chain.value} subscribe failed: {e}")
                except Exception as e:
                    log.warning(f"{self.chain.value} subscribe error: {type(e).__name__}: {e}")
                else:
                    if subscription is None:
                        log.info(f"{self.chain.value} has no log subscription, polling only")
                        return

            if subscription is not None:
                try:
                    if subscription.get_new_events():
                        self._ticker.wake()
                except TransientChainError as e:
                    log.debug(f"{self.chain.value} subscription dropped: {e}")
                    self._close_subscription(subscription)
                    subscription = None
                except Exception as e:
                    log.warning(f"{self.chain.value} subscription error: {type(e).__name__}: {e}")
                    self._close_subscription(subscription)
                    subscription = None

            self._sub_stop.wait(self.config.subscription_interval)

        if subscription is not None:
            self._close_subscription(subscription)

    def _close_subscription(self, subscription: LogSubscription):
        try:
            subscription.close()
        except Exception as e:
            log.debug(f"{self.chain.value} subscription close failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "state": self.state.value,
            "checkpoint": self.checkpoints.get(self.chain),
            "last_tick_at": self.last_tick_at,
            "last_error": self.last_error,
            "delivered": self.delivered,
            "duplicates": self.duplicates,
        }
