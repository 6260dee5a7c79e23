"""Commission domain errors and store-failure translation."""
from contextlib import asynccontextmanager

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)


class CommissionError(Exception):
    """Base class for commission ledger errors."""
    retryable = False


class PartnerNotFound(CommissionError):
    """Calculation or statistics target does not exist. Callers skip."""

    def __init__(self, partner_id: str):
        super().__init__(f"Partner not found: {partner_id}")
        self.partner_id = partner_id


class TransientStoreFailure(CommissionError):
    """Network, timeout or contention against the document store."""
    retryable = True


class DataIntegrityViolation(CommissionError):
    """Stored data breaks an invariant (e.g. negative pending amount)."""


class InvalidReferralCode(CommissionError):
    """Referral code is unknown, inactive, expired or used up."""

    def __init__(self, code: str, reason: str):
        super().__init__(f"Referral code {code} rejected: {reason}")
        self.code = code
        self.reason = reason


class InvalidStatusTransition(CommissionError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid ledger status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


TRANSIENT_ERRORS = (
    AutoReconnect,
    NetworkTimeout,
    ServerSelectionTimeoutError,
    ExecutionTimeout,
    WTimeoutError,
    ConnectionFailure,
)


def is_transient(error: Exception) -> bool:
    if isinstance(error, TRANSIENT_ERRORS):
        return True
    # pymongo flags client-side operation timeouts (timeoutMS) this way
    return isinstance(error, PyMongoError) and bool(getattr(error, "timeout", False))


@asynccontextmanager
async def store_call(operation: str):
    """Translate retryable pymongo failures into TransientStoreFailure."""
    try:
        yield
    except PyMongoError as e:
        if is_transient(e):
            raise TransientStoreFailure(f"{operation} failed: {e}") from e
        raise
