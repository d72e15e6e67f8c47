"""
Relayer error taxonomy.

Monitors absorb TransientChainError and retry on the next tick.
The resolver never retries; it reports the error in its result.
"""

from typing import List, Optional


class RelayerError(Exception):
    """Base class for relayer errors."""


class TransientChainError(RelayerError):
    """RPC timeout, rate limit or temporary node unavailability."""


class NotFoundError(RelayerError):
    """Transaction, swap or secret not found."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        # True when the tx may simply not be mined yet
        self.retryable = retryable


class ValidationError(RelayerError):
    """One or more claim conditions failed."""

    def __init__(self, message: str, failed_conditions: Optional[List[str]] = None):
        super().__init__(message)
        self.failed_conditions = list(failed_conditions or [])


class ReplayError(RelayerError):
    """Nonce already consumed."""

    def __init__(self, message: str, nonce: str = ""):
        super().__init__(message)
        self.nonce = nonce


class ExecutionError(RelayerError):
    """Counterparty chain call failed or its outcome is unknown."""

    def __init__(self, message: str, retryable: bool = False, action_key: str = "",
                 not_before: Optional[float] = None):
        super().__init__(message)
        self.retryable = retryable
        self.action_key = action_key
        # Unix time before which a retry cannot succeed
        self.not_before = not_before
