"""
Counterparty Executor - performs the mirrored HTLC action on the
destination chain of a swap event.

    locked   -> create the counterparty lock (same hash, earlier timelock)
    released -> claim the counterparty lock with the revealed secret
    refunded -> refund the counterparty lock once its timelock has passed

Calls return as soon as the transaction is broadcast. The destination
contract rejects duplicate actions, so retries are safe to submit.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .chains.base import ChainClient
from .core import (
    ExecutionReceipt, LockState, SwapEvent, SwapStatus,
    from_epoch_seconds, to_epoch_seconds, verify_preimage,
)
from .errors import ExecutionError, NotFoundError, TransientChainError
from .extractor import SecretExtractor

log = logging.getLogger(__name__)


@dataclass
class ExecutorConfig:
    """Executor configuration."""
    timelock_margin: int = 1800          # counterparty lock expires this much earlier (seconds)
    min_timelock_remaining: int = 600    # refuse to mirror a lock expiring sooner than this


ACTIONS = {
    SwapStatus.LOCKED: "create",
    SwapStatus.RELEASED: "claim",
    SwapStatus.REFUNDED: "refund",
}


class CounterpartyExecutor:
    """Executes mirrored actions against one destination chain."""

    def __init__(self, client: ChainClient, extractor: Optional[SecretExtractor] = None,
                 config: ExecutorConfig = None, clock: Callable[[], float] = time.time):
        self.client = client
        self.chain = client.chain
        self.extractor = extractor
        self.config = config or ExecutorConfig()
        self.clock = clock
        self._attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def execute(self, event: SwapEvent) -> ExecutionReceipt:
        """
        Submit the counterparty action for an event.

        Raises:
            ExecutionError: retryable=True for RPC failures and unknown
                            outcomes, False when the action cannot succeed
        """
        action = ACTIONS.get(event.status)
        action_key = f"{event.id}:{action or event.status.value}"
        if action is None:
            raise ExecutionError(
                f"No counterparty action for status {event.status.value}",
                action_key=action_key,
            )
        if event.dest_chain != self.chain:
            raise ExecutionError(
                f"Event for {event.dest_chain.value} sent to {self.chain.value} executor",
                action_key=action_key,
            )

        attempt = self._record_attempt(action_key)
        if attempt > 1:
            log.info(f"Resubmitting {action_key} (attempt {attempt})")

        handler = getattr(self, f"_{action}")
        try:
            tx_ref = handler(event, action_key)
        except ExecutionError:
            raise
        except TransientChainError as e:
            raise ExecutionError(f"{action} failed: {e}", retryable=True, action_key=action_key) from e
        except NotFoundError as e:
            raise ExecutionError(f"{action} failed: {e}", retryable=e.retryable, action_key=action_key) from e
        except Exception as e:
            raise ExecutionError(f"{action} failed: {e}", action_key=action_key) from e

        log.info(f"{action_key} submitted on {self.chain.value}: {tx_ref}")
        return ExecutionReceipt(tx_ref=tx_ref, action_key=action_key, chain=self.chain, action=action)

    def _record_attempt(self, action_key: str) -> int:
        with self._lock:
            self._attempts[action_key] = self._attempts.get(action_key, 0) + 1
            return self._attempts[action_key]

    def attempts(self, action_key: str) -> int:
        with self._lock:
            return self._attempts.get(action_key, 0)

    def get_lock_state(self, event: SwapEvent) -> Optional[LockState]:
        """Counterparty lock for the event's secret hash, if it exists."""
        return self.client.get_lock(event.secret_hash)

    # =========================================================================
    # Actions
    # =========================================================================

    def _create(self, event: SwapEvent, action_key: str) -> str:
        expiry = event.timelock_seconds() - self.config.timelock_margin
        remaining = expiry - self.clock()
        if remaining < self.config.min_timelock_remaining:
            raise ExecutionError(
                f"Source lock leaves {int(remaining)}s for the counterparty lock",
                action_key=action_key,
            )
        return self.client.create_lock(
            recipient=event.recipient,
            secret_hash=event.secret_hash,
            timelock=from_epoch_seconds(self.chain, expiry),
            amount=event.amount_int(),
            token=event.dest_token,
        )

    def _claim(self, event: SwapEvent, action_key: str) -> str:
        secret = event.secret
        if not secret:
            if self.extractor is None or not event.tx_ref:
                raise ExecutionError(f"No secret available for {event.id}", action_key=action_key)
            secret = self.extractor.extract(event.tx_ref, event.secret_hash)

        if not verify_preimage(secret, event.secret_hash):
            raise ExecutionError(f"Secret does not match {event.secret_hash}", action_key=action_key)

        amount = event.amount_int()
        if amount == 0:
            # Claim events may not carry the amount
            lock = self.client.get_lock(event.secret_hash)
            amount = lock.amount_remaining if lock else 0
        return self.client.claim(event.secret_hash, secret, amount)

    def _refund(self, event: SwapEvent, action_key: str) -> str:
        lock = self.client.get_lock(event.secret_hash)
        if lock is not None:
            if lock.is_completed or lock.is_refunded:
                raise ExecutionError(f"Counterparty lock for {event.id} already settled",
                                     action_key=action_key)
            expiry = to_epoch_seconds(self.chain, lock.timelock)
        else:
            expiry = event.timelock_seconds()

        now = self.clock()
        if now < expiry:
            raise ExecutionError(
                f"Timelock not expired ({int(expiry - now)}s left)",
                retryable=True, action_key=action_key, not_before=expiry,
            )
        return self.client.refund(event.secret_hash)
