"""
Core types and helpers for the HTLC relayer.

A swap is observed as one record per leg: the lock on the chain where it
was created and, once mirrored, the counterparty lock on the other chain.
Both legs share the same secret hash.
"""

import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List

from .errors import ValidationError


class Chain(Enum):
    """Chains served by the relayer."""
    ETHEREUM = "ethereum"   # chain A, EVM, timelocks in seconds
    NEAR = "near"           # chain B, timelocks in nanoseconds

    @property
    def timelock_units_per_second(self) -> int:
        return _TIMELOCK_UNITS[self]

    @property
    def counterparty(self) -> "Chain":
        return Chain.NEAR if self is Chain.ETHEREUM else Chain.ETHEREUM


_TIMELOCK_UNITS = {
    Chain.ETHEREUM: 1,
    Chain.NEAR: 10 ** 9,
}


class SwapStatus(Enum):
    """Lifecycle of one swap leg."""
    PENDING = "pending"       # Seen, not yet confirmed locked
    LOCKED = "locked"         # Funds locked under the hashlock
    RELEASED = "released"     # Claimed with the secret
    REFUNDED = "refunded"     # Timelock expired, funds returned
    FAILED = "failed"         # Lock transaction failed or was dropped


TERMINAL_STATUSES = frozenset({SwapStatus.RELEASED, SwapStatus.REFUNDED})

# Forward-only transitions. FAILED -> PENDING is only valid on rollback.
ALLOWED_TRANSITIONS = {
    SwapStatus.PENDING: {SwapStatus.LOCKED, SwapStatus.FAILED},
    SwapStatus.LOCKED: {SwapStatus.RELEASED, SwapStatus.REFUNDED, SwapStatus.FAILED},
    SwapStatus.FAILED: set(),
    SwapStatus.RELEASED: set(),
    SwapStatus.REFUNDED: set(),
}


def can_transition(current: SwapStatus, new: SwapStatus, rollback: bool = False) -> bool:
    """Check whether a leg may move from `current` to `new`."""
    if rollback:
        return current is SwapStatus.FAILED and new is SwapStatus.PENDING
    return new in ALLOWED_TRANSITIONS[current]


# =============================================================================
# Hex / amount helpers
# =============================================================================

def normalize_hex(value: str) -> str:
    """Lowercase 0x-prefixed hex."""
    value = value.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


def strip_0x(value: str) -> str:
    return value[2:] if value.lower().startswith("0x") else value


def parse_amount(value) -> int:
    """Parse a decimal amount string in the smallest unit. Rejects fractions."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"Invalid amount: {value!r}")
    return int(text)


def generate_secret() -> tuple:
    """
    Generate a random secret and its hash.

    Returns:
        (secret_hex, hash_hex) both 0x-prefixed, 32 bytes
    """
    secret = secrets.token_bytes(32)
    return "0x" + secret.hex(), "0x" + hashlib.sha256(secret).hexdigest()


def hash_secret(secret: str) -> str:
    """SHA256 of the raw secret bytes, 0x-prefixed."""
    return "0x" + hashlib.sha256(bytes.fromhex(strip_0x(secret))).hexdigest()


def verify_preimage(secret: str, secret_hash: str) -> bool:
    """Verify that the secret hashes to secret_hash."""
    try:
        return hash_secret(secret) == normalize_hex(secret_hash)
    except ValueError:
        return False


def is_valid_secret(candidate: str) -> bool:
    """
    Plausibility check for a recovered secret: exactly 32 bytes of hex
    and not a degenerate fill pattern (all 0, all 1, all f).
    """
    body = strip_0x(candidate).lower()
    if len(body) != 64:
        return False
    if any(c not in "0123456789abcdef" for c in body):
        return False
    return body not in ("0" * 64, "1" * 64, "f" * 64)


def to_epoch_seconds(chain: Chain, native: int) -> int:
    """Convert a chain-native timelock to unix seconds."""
    return int(native) // chain.timelock_units_per_second


def from_epoch_seconds(chain: Chain, seconds: int) -> int:
    """Convert unix seconds to the chain-native timelock unit."""
    return int(seconds) * chain.timelock_units_per_second


def swap_id_for(chain: Chain, secret_hash: str) -> str:
    return f"{chain.value}:{normalize_hex(secret_hash)}"


# =============================================================================
# Data model
# =============================================================================

@dataclass
class SwapEvent:
    """A lock lifecycle event observed on one chain."""
    id: str
    source_chain: Chain
    dest_chain: Chain
    source_token: str
    dest_token: str
    amount: str             # Smallest unit, decimal string
    recipient: str          # Destination-chain account
    secret_hash: str        # 0x + 64 hex
    timelock: int           # Chain-native unit of source_chain
    status: SwapStatus
    tx_ref: str = ""
    block_ref: int = 0
    log_index: int = 0
    observed_at: float = field(default_factory=time.time)

    # Set when the source event itself reveals the secret
    secret: Optional[str] = None

    def timelock_seconds(self) -> int:
        return to_epoch_seconds(self.source_chain, self.timelock)

    def amount_int(self) -> int:
        return parse_amount(self.amount)

    def dedupe_key(self) -> tuple:
        if self.tx_ref:
            return (self.tx_ref, self.log_index)
        return (self.id, self.status.value)

    def with_status(self, status: SwapStatus, **changes) -> "SwapEvent":
        return replace(self, status=status, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_chain": self.source_chain.value,
            "dest_chain": self.dest_chain.value,
            "source_token": self.source_token,
            "dest_token": self.dest_token,
            "amount": self.amount,
            "recipient": self.recipient,
            "secret_hash": self.secret_hash,
            "timelock": self.timelock,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "block_ref": self.block_ref,
            "log_index": self.log_index,
            "observed_at": self.observed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapEvent":
        """Build an event from an untrusted dict (webhooks, fixtures)."""
        try:
            source = Chain(data["source_chain"])
            dest = Chain(data.get("dest_chain") or source.counterparty.value)
            secret_hash = normalize_hex(data["secret_hash"])
            amount = str(parse_amount(data["amount"]))
            status = SwapStatus(data.get("status", SwapStatus.LOCKED.value))
            timelock = int(data["timelock"])
            bytes.fromhex(strip_0x(secret_hash))
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ValidationError(f"Malformed swap event: {e}", ["event"])

        if len(strip_0x(secret_hash)) != 64:
            raise ValidationError("secret_hash must be 32 bytes", ["event"])

        secret = data.get("secret")
        return cls(
            id=data.get("id") or swap_id_for(source, secret_hash),
            source_chain=source,
            dest_chain=dest,
            source_token=data.get("source_token", ""),
            dest_token=data.get("dest_token", ""),
            amount=amount,
            recipient=data.get("recipient", ""),
            secret_hash=secret_hash,
            timelock=timelock,
            status=status,
            tx_ref=data.get("tx_ref", ""),
            block_ref=int(data.get("block_ref", 0)),
            log_index=int(data.get("log_index", 0)),
            secret=normalize_hex(secret) if secret else None,
        )


SIGNING_MESSAGE_TEMPLATE = (
    "Fusion+ Swap Resolution\n"
    "Swap ID: {swap_id}\n"
    "Claimer: {claimer}\n"
    "Amount: {claim_amount}\n"
    "Timestamp: {timestamp}\n"
    "Nonce: {nonce}"
)


@dataclass
class ClaimRequest:
    """A signed request from a third party to claim a swap."""
    swap_id: str
    secret: str
    claim_amount: str
    claimer: str
    signature: str
    timestamp: int          # Unix milliseconds
    nonce: str

    def signing_message(self) -> str:
        """Canonical text the claimer signs (EIP-191 personal message)."""
        return SIGNING_MESSAGE_TEMPLATE.format(
            swap_id=self.swap_id,
            claimer=self.claimer,
            claim_amount=self.claim_amount,
            timestamp=self.timestamp,
            nonce=self.nonce,
        )


@dataclass
class LockState:
    """On-chain view of one HTLC lock, normalized across chains."""
    secret_hash: str
    amount: int
    amount_remaining: int
    timelock: int           # Chain-native
    recipient: str = ""
    is_completed: bool = False
    is_refunded: bool = False


@dataclass
class ExecutionReceipt:
    """Submitted counterparty action. Not yet confirmed."""
    tx_ref: str
    action_key: str
    chain: Chain
    action: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_ref": self.tx_ref,
            "action_key": self.action_key,
            "chain": self.chain.value,
            "action": self.action,
        }


@dataclass
class ResolutionResult:
    """Outcome of a claim resolution."""
    success: bool
    swap_id: str
    tx_ref: Optional[str] = None
    validated_conditions: List[str] = field(default_factory=list)
    failed_conditions: List[str] = field(default_factory=list)
    execution_time: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None   # replay | validation | not_found | transient | execution

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "swap_id": self.swap_id,
            "tx_ref": self.tx_ref,
            "validated_conditions": list(self.validated_conditions),
            "failed_conditions": list(self.failed_conditions),
            "execution_time": self.execution_time,
            "error": self.error,
            "error_code": self.error_code,
        }

    def raise_for_error(self):
        """Re-raise a failed result as its typed error."""
        if self.success:
            return
        from . import errors
        cls = {
            "replay": errors.ReplayError,
            "validation": errors.ValidationError,
            "not_found": errors.NotFoundError,
            "transient": errors.TransientChainError,
            "execution": errors.ExecutionError,
        }.get(self.error_code, errors.RelayerError)
        if cls is errors.ValidationError:
            raise cls(self.error or "validation failed", self.failed_conditions)
        raise cls(self.error or "resolution failed")
