"""Commission ledger models.

Money is always an integer number of minor currency units (cents).
Billing periods are half-open: [period_start, period_end).
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum


class LedgerStatus(str, Enum):
    CALCULATED = "calculated"  # transient, never persisted
    ACCRUED = "accrued"
    PAID = "paid"
    REVERSED = "reversed"


# accrued is the only non-terminal persisted state
VALID_STATUS_TRANSITIONS: Dict[LedgerStatus, frozenset] = {
    LedgerStatus.CALCULATED: frozenset({LedgerStatus.ACCRUED}),
    LedgerStatus.ACCRUED: frozenset({LedgerStatus.PAID, LedgerStatus.REVERSED}),
    LedgerStatus.PAID: frozenset(),
    LedgerStatus.REVERSED: frozenset(),
}

EARNED_STATUSES = (LedgerStatus.ACCRUED.value, LedgerStatus.PAID.value)


def can_transition(current: LedgerStatus, new: LedgerStatus) -> bool:
    return LedgerStatus(new) in VALID_STATUS_TRANSITIONS[LedgerStatus(current)]


def ledger_entry_key(invoice_id: str, partner_id: str) -> str:
    """Deterministic idempotency key for one invoice credited to one partner."""
    return f"{invoice_id}_{partner_id}"


class CommissionCalculation(BaseModel):
    """Value object produced by the calculator; has no side effects."""
    model_config = ConfigDict(use_enum_values=True)

    partner_id: str
    referral_id: str
    gross_amount: int
    commission_rate: float
    commission_amount: int
    currency: str
    status: LedgerStatus = LedgerStatus.CALCULATED
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StripeLedgerMetadata(BaseModel):
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    invoice_status: Optional[str] = None


class CommissionLedgerEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    ledger_entry_id: str
    partner_id: str
    referral_id: str
    stripe_invoice_id: str
    stripe_subscription_id: Optional[str] = None
    gross_amount: int
    commission_rate: float
    commission_amount: int
    currency: str
    period_start: datetime
    period_end: datetime
    status: LedgerStatus = LedgerStatus.ACCRUED
    stripe_metadata: StripeLedgerMetadata = Field(default_factory=StripeLedgerMetadata)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict:
        doc = self.model_dump()
        doc["_id"] = self.ledger_entry_id
        return doc


class LedgerWriteResult(BaseModel):
    """created=False is the idempotent replay case, not an error."""
    ledger_entry_id: str
    created: bool


class CommissionSummary(BaseModel):
    total_commissions: int
    total_earned: int
    total_paid: int
    pending_amount: int
    recent_entries: List[CommissionLedgerEntry] = Field(default_factory=list)


class ProcessErrorCode(str, Enum):
    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"
    TRANSIENT_STORE_FAILURE = "TRANSIENT_STORE_FAILURE"
    INVALID_INPUT = "INVALID_INPUT"
    STORE_ERROR = "STORE_ERROR"


class ProcessCommissionResult(BaseModel):
    """Two-phase outcome of processing one invoice for one partner."""
    model_config = ConfigDict(use_enum_values=True)

    ledger_entry_id: Optional[str] = None
    ledger_written: bool = False
    stats_updated: bool = False
    replayed: bool = False
    error_code: Optional[ProcessErrorCode] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.ledger_written
