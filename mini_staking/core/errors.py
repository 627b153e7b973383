"""Error types for staking operations."""
from typing import Optional

REJECTION_MARKERS = ("user rejected", "user denied", "rejected by user")

REJECTED_MESSAGE = "Transaction was rejected. Please try again."
TIMEOUT_MESSAGE = (
    "Transaction was sent but not confirmed in time. "
    "It may still be mined; check your stakes before retrying."
)
GENERIC_FAILURE_MESSAGE = "Transaction failed. Please try again."


class StakingError(Exception):
    """Base class for all staking errors."""


class ConfigError(StakingError):
    """Configuration is missing or invalid."""


class StakeValidationError(StakingError):
    """A precondition failed before anything was sent to the ledger."""


class WithdrawalInProgress(StakeValidationError):
    """Another withdrawal request is still unresolved."""


class FlowBusy(StakeValidationError):
    """The same kind of transaction is already in flight."""


class UserRejectedError(StakingError):
    """The user declined to sign a transaction."""

    def __init__(self, message: str = "user rejected transaction signature"):
        super().__init__(message)


class TransactionFailed(StakingError):
    """A transaction was mined but reverted, or could not be confirmed."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeout(TransactionFailed):
    """No receipt arrived within the confirmation timeout."""


def is_user_rejection(exc: BaseException) -> bool:
    """Check whether an error means the user declined to sign."""
    if isinstance(exc, UserRejectedError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in REJECTION_MARKERS)


def describe_failure(exc: BaseException, fallback: str = GENERIC_FAILURE_MESSAGE) -> str:
    """Map an error to the message shown to the user.

    Args:
        exc: The error raised while submitting or confirming
        fallback: Message used when no specific classification applies

    Returns:
        User-facing error message
    """
    if isinstance(exc, StakeValidationError):
        return str(exc)
    if is_user_rejection(exc):
        return REJECTED_MESSAGE
    if isinstance(exc, ConfirmationTimeout):
        return TIMEOUT_MESSAGE
    return fallback
