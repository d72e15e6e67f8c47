"""
Resolver - authorizes third-party claims against observed swaps.

A claim is executed only if every condition passes:

    signature  claimer signed the canonical message (EIP-191 personal_sign)
    timelock   lock not expired, request fresh and not from the future
    amount     0 < claim_amount <= amount remaining on the lock
    secret     sha256(secret) == secret_hash
    business   lock still open, claim above the minimum

All conditions are evaluated so the caller sees every failure at once.
Each nonce authorizes at most one execution; it is consumed just before
the executor is called, and stays consumed if execution fails.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .core import (
    ClaimRequest, LockState, ResolutionResult, SwapEvent, SwapStatus,
    normalize_hex, parse_amount, to_epoch_seconds, verify_preimage,
)
from .errors import ExecutionError, TransientChainError
from .executor import CounterpartyExecutor
from .store import NonceStore, SwapRegistry, InMemoryNonceStore

log = logging.getLogger(__name__)

# (message, signature, claimer) -> valid
SignatureVerifier = Callable[[str, str, str], bool]


def verify_personal_signature(message: str, signature: str, claimer: str) -> bool:
    """Recover the EIP-191 signer and compare with claimer (case-insensitive)."""
    from eth_account import Account
    from eth_account.messages import encode_defunct

    recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    return recovered.lower() == claimer.lower()


@dataclass
class ResolverConfig:
    """Resolver configuration."""
    freshness_window_ms: int = 300_000   # max request age
    max_clock_skew_ms: int = 60_000      # max request timestamp ahead of now
    min_claim_amount: int = 10 ** 12     # smallest unit
    nonce_retention: int = 3600          # seconds; never below the freshness window plus skew
    max_nonces: int = 100000


@dataclass
class SwapView:
    """A registered swap plus its counterparty lock, as seen by the conditions."""
    event: SwapEvent
    lock: Optional[LockState]

    @property
    def expiry(self) -> int:
        if self.lock is not None:
            return to_epoch_seconds(self.event.dest_chain, self.lock.timelock)
        return self.event.timelock_seconds()

    @property
    def amount_remaining(self) -> int:
        if self.lock is not None:
            return self.lock.amount_remaining
        return self.event.amount_int()


Check = Callable[[ClaimRequest, SwapView, float], Optional[str]]


class Resolver:
    """Validates signed claim requests and triggers the counterparty claim."""

    def __init__(self, registry: SwapRegistry, executors: Dict, nonces: NonceStore = None,
                 config: ResolverConfig = None, verifier: SignatureVerifier = verify_personal_signature,
                 clock: Callable[[], float] = time.time):
        self.registry = registry
        # dest chain -> CounterpartyExecutor
        self.executors: Dict = dict(executors)
        self.nonces = nonces or InMemoryNonceStore()
        self.config = config or ResolverConfig()
        self.verifier = verifier
        self.clock = clock

        self.conditions: List[Tuple[str, Check]] = [
            ("signature", self._check_signature),
            ("timelock", self._check_timelock),
            ("amount", self._check_amount),
            ("secret", self._check_secret),
            ("business", self._check_business),
        ]

        self.started_at = clock()
        self.resolved = 0
        self.rejected = 0
        self.failed = 0

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_swap(self, request: ClaimRequest) -> ResolutionResult:
        started = time.monotonic()
        now = self.clock()

        def result(success: bool, **kwargs) -> ResolutionResult:
            return ResolutionResult(
                success=success,
                swap_id=request.swap_id,
                execution_time=time.monotonic() - started,
                **kwargs,
            )

        if self.nonces.contains(request.nonce):
            self.rejected += 1
            log.warning(f"Replay rejected for {request.swap_id}: nonce {request.nonce}")
            return result(False, failed_conditions=["nonce"],
                          error=f"Nonce {request.nonce} already used", error_code="replay")

        event = self.registry.get(request.swap_id)
        executor: Optional[CounterpartyExecutor] = self.executors.get(event.dest_chain) if event else None
        if event is None or executor is None:
            self.rejected += 1
            return result(False, error=f"Swap {request.swap_id} not found", error_code="not_found")

        try:
            lock = executor.get_lock_state(event)
        except TransientChainError as e:
            self.failed += 1
            log.warning(f"Lock lookup for {request.swap_id} failed: {e}")
            return result(False, error=str(e), error_code="transient")
        except Exception as e:
            # RPC error replies and undecodable responses
            self.failed += 1
            log.error(f"Lock lookup for {request.swap_id} errored: {type(e).__name__}: {e}")
            return result(False, error=f"lock lookup failed: {e}", error_code="transient")

        swap = SwapView(event=event, lock=lock)
        validated, failed, reasons = [], [], []
        for name, check in self.conditions:
            try:
                reason = check(request, swap, now)
            except Exception as e:
                reason = f"{name} check error: {e}"
            if reason:
                failed.append(name)
                reasons.append(reason)
            else:
                validated.append(name)

        if failed:
            self.rejected += 1
            log.info(f"Claim for {request.swap_id} rejected: {', '.join(failed)}")
            return result(False, validated_conditions=validated, failed_conditions=failed,
                          error="; ".join(reasons), error_code="validation")

        # Check-and-set: only one of two concurrent requests with this nonce gets past here
        if not self.nonces.add_if_absent(request.nonce, now):
            self.rejected += 1
            log.warning(f"Replay rejected for {request.swap_id}: nonce {request.nonce} raced")
            return result(False, validated_conditions=validated, failed_conditions=["nonce"],
                          error=f"Nonce {request.nonce} already used", error_code="replay")

        claim_event = event.with_status(
            SwapStatus.RELEASED,
            secret=normalize_hex(request.secret),
            amount=str(parse_amount(request.claim_amount)),
        )
        try:
            receipt = executor.execute(claim_event)
        except ExecutionError as e:
            self.failed += 1
            log.error(f"Claim execution for {request.swap_id} failed: {e}")
            return result(False, validated_conditions=validated, error=str(e), error_code="execution")

        self.resolved += 1
        log.info(f"Resolved {request.swap_id} for {request.claimer}: {receipt.tx_ref}")
        return result(True, tx_ref=receipt.tx_ref, validated_conditions=validated)

    # =========================================================================
    # Conditions (return a failure reason, or None)
    # =========================================================================

    def _check_signature(self, request: ClaimRequest, swap: SwapView, now: float) -> Optional[str]:
        if not self.verifier(request.signing_message(), request.signature, request.claimer):
            return "signature does not match claimer"
        return None

    def _check_timelock(self, request: ClaimRequest, swap: SwapView, now: float) -> Optional[str]:
        if now >= swap.expiry:
            return f"timelock expired at {swap.expiry}"
        # Request timestamps are unix milliseconds
        age_ms = int(now * 1000) - int(request.timestamp)
        if age_ms > self.config.freshness_window_ms:
            return f"request is {age_ms // 1000}s old"
        if -age_ms > self.config.max_clock_skew_ms:
            return "request timestamp is in the future"
        return None

    def _check_amount(self, request: ClaimRequest, swap: SwapView, now: float) -> Optional[str]:
        amount = parse_amount(request.claim_amount)
        if amount <= 0:
            return "claim amount must be positive"
        if amount > swap.amount_remaining:
            return f"claim amount exceeds remaining {swap.amount_remaining}"
        return None

    def _check_secret(self, request: ClaimRequest, swap: SwapView, now: float) -> Optional[str]:
        if not verify_preimage(request.secret, swap.event.secret_hash):
            return "secret does not match hashlock"
        return None

    def _check_business(self, request: ClaimRequest, swap: SwapView, now: float) -> Optional[str]:
        if swap.event.status in (SwapStatus.REFUNDED, SwapStatus.FAILED):
            return f"swap is {swap.event.status.value}"
        if swap.lock is not None and (swap.lock.is_completed or swap.lock.is_refunded):
            return "counterparty lock already settled"
        if parse_amount(request.claim_amount) < self.config.min_claim_amount:
            return f"claim below minimum {self.config.min_claim_amount}"
        return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_nonces(self) -> int:
        """Evict nonces that can no longer be replayed (older than the freshness window)."""
        retention = max(
            self.config.nonce_retention,
            (self.config.freshness_window_ms + self.config.max_clock_skew_ms) / 1000,
        )
        evicted = self.nonces.cleanup(self.clock(), retention, self.config.max_nonces)
        if evicted:
            log.info(f"Evicted {evicted} expired nonces")
        return evicted

    def get_stats(self) -> Dict:
        return {
            "processed_nonces": len(self.nonces),
            "conditions": [name for name, _ in self.conditions],
            "resolved": self.resolved,
            "rejected": self.rejected,
            "failed": self.failed,
            "uptime": self.clock() - self.started_at,
        }
