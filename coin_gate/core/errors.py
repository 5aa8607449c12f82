"""
Error taxonomy for coin-gated generation.

Every failure surfaced to a caller carries a stable machine-readable kind,
a human message and whether resubmitting the same request may succeed.
"""

from typing import Any, Dict


class CoinGateError(Exception):
    """Base class for all failures raised by the generation core."""
    kind = "error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API or CLI output."""
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class InsufficientFunds(CoinGateError):
    """Balance is lower than the cost of the request."""
    kind = "insufficient_funds"

    def __init__(self, account_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient coins for {account_id}: "
            f"required {required}, available {available}"
        )
        self.account_id = account_id
        self.required = required
        self.available = available


class RateLimitTimeout(CoinGateError):
    """No rate limiter token became available before the deadline."""
    kind = "rate_limit_timeout"
    retryable = True


class ProviderRejected(CoinGateError):
    """Provider answered but reported a failure for the request."""
    kind = "provider_rejected"


class ProviderAuthFailed(CoinGateError):
    """Provider refused our credentials."""
    kind = "provider_auth_failed"


class ProviderUnavailable(CoinGateError):
    """Provider kept failing until the retry budget ran out."""
    kind = "provider_unavailable"
    retryable = True

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class StorageFailure(CoinGateError):
    """Artifact payload could not be written or read."""
    kind = "storage_failure"


class InternalError(CoinGateError):
    """Commit step failed; nothing was charged."""
    kind = "internal_error"
    retryable = True


class Gone(CoinGateError):
    """Artifact was already downloaded."""
    kind = "gone"


class NotFound(CoinGateError):
    """Account or artifact does not exist."""
    kind = "not_found"
