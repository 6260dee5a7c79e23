"""Commission Ledger - idempotent accrual entries and the partner commission summary.

One ledger entry exists per (invoice, partner). The entry key doubles as the
document _id, so the store's primary-key uniqueness is what rejects a second
delivery of the same invoice; there is no read-then-write window.

Lifecycle: calculated (never stored) -> accrued -> paid | reversed.
Only the external payout/refund process moves an entry out of accrued, via
transition_status().
"""
from datetime import datetime, timezone
from typing import List, Optional
import logging

from pymongo.errors import DuplicateKeyError

from models import AuditAction, AuditResource
from models.commissions import (
    CommissionCalculation,
    CommissionLedgerEntry,
    CommissionSummary,
    EARNED_STATUSES,
    LedgerStatus,
    LedgerWriteResult,
    StripeLedgerMetadata,
    can_transition,
    ledger_entry_key,
)
from services.errors import DataIntegrityViolation, InvalidStatusTransition, store_call
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

RECENT_ENTRIES_LIMIT = 10


def window_filter(field: str, start: Optional[datetime], end: Optional[datetime]) -> dict:
    """Half-open [start, end) filter on a datetime field; open ends are unbounded."""
    bounds = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lt"] = end
    return {field: bounds} if bounds else {}


def most_recent(entries: List[CommissionLedgerEntry], limit: int = RECENT_ENTRIES_LIMIT) -> List[CommissionLedgerEntry]:
    """Newest first; equal timestamps ordered by ledger_entry_id."""
    by_id = sorted(entries, key=lambda e: e.ledger_entry_id)
    return sorted(by_id, key=lambda e: e.created_at, reverse=True)[:limit]


def summarize_entries(partner_id: str, entries: List[CommissionLedgerEntry]) -> CommissionSummary:
    total_earned = sum(e.commission_amount for e in entries if e.status in EARNED_STATUSES)
    total_paid = sum(e.commission_amount for e in entries if e.status == LedgerStatus.PAID.value)
    pending_amount = total_earned - total_paid

    if pending_amount < 0:
        logger.error(
            "DATA_INTEGRITY_VIOLATION partner_id=%s total_earned=%s total_paid=%s pending=%s",
            partner_id, total_earned, total_paid, pending_amount,
        )
        raise DataIntegrityViolation(
            f"Negative pending commission for partner {partner_id}: "
            f"earned={total_earned} paid={total_paid}"
        )

    return CommissionSummary(
        total_commissions=len(entries),
        total_earned=total_earned,
        total_paid=total_paid,
        pending_amount=pending_amount,
        recent_entries=most_recent(entries),
    )


class CommissionLedger:
    def __init__(self, db):
        self.db = db

    async def record(
        self,
        calculation: CommissionCalculation,
        invoice_id: str,
        subscription_id: Optional[str],
        period_start: datetime,
        period_end: datetime,
        stripe_metadata: Optional[dict] = None,
    ) -> LedgerWriteResult:
        """Persist an accrued entry for this invoice + partner, at most once.

        A replay returns the existing id with created=False and leaves the
        stored entry untouched.
        """
        if not invoice_id:
            raise ValueError("invoice_id is required")
        if period_end < period_start:
            raise ValueError(f"Billing period ends before it starts: {period_start} > {period_end}")

        ledger_entry_id = ledger_entry_key(invoice_id, calculation.partner_id)
        entry = CommissionLedgerEntry(
            ledger_entry_id=ledger_entry_id,
            partner_id=calculation.partner_id,
            referral_id=calculation.referral_id,
            stripe_invoice_id=invoice_id,
            stripe_subscription_id=subscription_id,
            gross_amount=calculation.gross_amount,
            commission_rate=calculation.commission_rate,
            commission_amount=calculation.commission_amount,
            currency=calculation.currency,
            period_start=period_start,
            period_end=period_end,
            status=LedgerStatus.ACCRUED,
            stripe_metadata=StripeLedgerMetadata(**(stripe_metadata or {})),
        )

        async with store_call("ledger insert"):
            try:
                await self.db.commission_ledger.insert_one(entry.to_document())
            except DuplicateKeyError:
                logger.info(f"Commission ledger entry already exists: {ledger_entry_id}")
                return LedgerWriteResult(ledger_entry_id=ledger_entry_id, created=False)

        logger.info(
            "COMMISSION_ACCRUED ledger_entry_id=%s partner_id=%s commission=%s currency=%s",
            ledger_entry_id, entry.partner_id, entry.commission_amount, entry.currency,
        )
        await create_audit_log(
            self.db,
            action=AuditAction.COMMISSION_ACCRUED,
            partner_id=entry.partner_id,
            resource_type=AuditResource.COMMISSION_LEDGER,
            resource_id=ledger_entry_id,
            metadata={
                "invoice_id": invoice_id,
                "commission_amount": entry.commission_amount,
                "currency": entry.currency,
            },
        )
        return LedgerWriteResult(ledger_entry_id=ledger_entry_id, created=True)

    async def get_entry(self, ledger_entry_id: str) -> Optional[CommissionLedgerEntry]:
        async with store_call("ledger lookup"):
            doc = await self.db.commission_ledger.find_one({"_id": ledger_entry_id}, {"_id": 0})
        return CommissionLedgerEntry(**doc) if doc else None

    async def transition_status(self, ledger_entry_id: str, new_status: LedgerStatus, actor_id: str = None) -> bool:
        """Move an accrued entry to paid or reversed.

        The update only matches while the entry is still accrued, so two
        concurrent transitions cannot both succeed. Returns False when the
        entry is missing or has already left accrued.
        """
        new_status = LedgerStatus(new_status)
        if not can_transition(LedgerStatus.ACCRUED, new_status):
            raise InvalidStatusTransition(LedgerStatus.ACCRUED.value, new_status.value)

        async with store_call("ledger status update"):
            result = await self.db.commission_ledger.update_one(
                {"_id": ledger_entry_id, "status": LedgerStatus.ACCRUED.value},
                {"$set": {"status": new_status.value, "updated_at": datetime.now(timezone.utc)}},
            )

        if result.modified_count != 1:
            logger.warning(f"Ledger entry {ledger_entry_id} not transitioned to {new_status.value}: missing or not accrued")
            return False

        await create_audit_log(
            self.db,
            action=AuditAction.COMMISSION_STATUS_CHANGED,
            actor_id=actor_id,
            resource_type=AuditResource.COMMISSION_LEDGER,
            resource_id=ledger_entry_id,
            before_state={"status": LedgerStatus.ACCRUED.value},
            after_state={"status": new_status.value},
        )
        return True

    async def list_entries(
        self,
        partner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CommissionLedgerEntry]:
        query = {"partner_id": partner_id}
        query.update(window_filter("created_at", start, end))

        async with store_call("ledger query"):
            docs = await self.db.commission_ledger.find(query, {"_id": 0}).to_list(length=None)
        return [CommissionLedgerEntry(**doc) for doc in docs]

    async def summarize(
        self,
        partner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CommissionSummary:
        """Commission totals for a partner over [start, end), all time when unbounded.

        Raises DataIntegrityViolation when paid exceeds earned.
        """
        entries = await self.list_entries(partner_id, start, end)
        return summarize_entries(partner_id, entries)
