"""Monthly Payout Report - groups a month's accrued commissions per partner.

Read-side only: entries stay accrued; the external payout run consumes the
report (and its transfer payloads) and flips statuses itself.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
import csv
import io
import logging

from models import AuditAction, AuditResource
from models.commissions import LedgerStatus
from models.payouts import (
    MonthlyPayoutReport,
    PartnerPayoutSummary,
    PayoutReportStatus,
    TransferPayload,
)
from services.commission_ledger import window_filter
from services.errors import store_call
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Partner ID",
    "Display Name",
    "Email",
    "Company",
    "Total Commission",
    "Currency",
    "Entry Count",
    "Stripe Connect ID",
    "Ledger Entries",
]


def month_range(report_month: str) -> Tuple[datetime, datetime]:
    """[first instant of month, first instant of next month) in UTC."""
    try:
        start = datetime.strptime(report_month, "%Y-%m").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValueError(f"report_month must be YYYY-MM, got {report_month!r}")
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def previous_month(now: datetime = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.month == 1:
        return f"{now.year - 1}-12"
    return f"{now.year}-{now.month - 1:02d}"


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


def build_transfer_payload(summary: PartnerPayoutSummary, report_month: str) -> TransferPayload:
    return TransferPayload(
        amount=summary.total_commission_amount,
        currency=summary.currency.lower(),
        destination=summary.stripe_connect_id,
        description=f"Partner commission payout for {report_month}",
        metadata={
            "partner_id": summary.partner_id,
            "report_month": report_month,
            "entry_count": str(summary.entry_count),
        },
    )


def render_csv(summaries: List[PartnerPayoutSummary]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for s in summaries:
        writer.writerow([
            s.partner_id,
            s.display_name,
            s.email,
            s.company_name or "",
            format_amount(s.total_commission_amount, s.currency),
            s.currency,
            s.entry_count,
            s.stripe_connect_id or "",
            ";".join(s.commission_entries),
        ])
    return buffer.getvalue()


class PayoutReportService:
    def __init__(self, db):
        self.db = db

    async def get_report(self, report_month: str) -> Optional[MonthlyPayoutReport]:
        async with store_call("payout report lookup"):
            doc = await self.db.payout_reports.find_one({"report_month": report_month}, {"_id": 0})
        return MonthlyPayoutReport(**doc) if doc else None

    async def generate_report(
        self,
        report_month: str = None,
        generated_by: str = "manual",
        regenerate: bool = False,
    ) -> MonthlyPayoutReport:
        """Build (or return the stored) payout report for a month, default the previous one."""
        report_month = report_month or previous_month()
        period_start, period_end = month_range(report_month)

        if not regenerate:
            existing = await self.get_report(report_month)
            if existing and existing.status == PayoutReportStatus.COMPLETED.value:
                logger.info(f"Payout report for {report_month} already completed")
                return existing

        query = {"status": LedgerStatus.ACCRUED.value}
        query.update(window_filter("created_at", period_start, period_end))
        async with store_call("payout ledger query"):
            entries = await self.db.commission_ledger.find(query, {"_id": 0}).sort("created_at", 1).to_list(length=None)

        by_partner: Dict[str, List[dict]] = {}
        for entry in entries:
            by_partner.setdefault(entry["partner_id"], []).append(entry)

        summaries: List[PartnerPayoutSummary] = []
        warning_count = 0
        for partner_id, partner_entries in by_partner.items():
            async with store_call("payout partner lookup"):
                partner = await self.db.partners.find_one({"partner_id": partner_id}, {"_id": 0})
            if not partner:
                logger.warning(f"Partner {partner_id} not found, excluded from payout report {report_month}")
                warning_count += 1
                continue

            currencies = {e["currency"] for e in partner_entries}
            if len(currencies) > 1:
                # TODO: split payouts per currency once partners can be paid in more than one
                logger.warning(f"Partner {partner_id} has mixed currencies {sorted(currencies)} in {report_month}")
                warning_count += 1

            summary = PartnerPayoutSummary(
                partner_id=partner_id,
                email=partner.get("email", ""),
                display_name=partner.get("display_name", ""),
                company_name=partner.get("company_name"),
                total_commission_amount=sum(e["commission_amount"] for e in partner_entries),
                currency=partner_entries[0]["currency"],
                entry_count=len(partner_entries),
                commission_entries=[e["ledger_entry_id"] for e in partner_entries],
                stripe_connect_id=partner.get("stripe_connect_id"),
            )
            if summary.stripe_connect_id:
                summary.transfer_payload = build_transfer_payload(summary, report_month)
            summaries.append(summary)

        summaries.sort(key=lambda s: (-s.total_commission_amount, s.partner_id))

        report = MonthlyPayoutReport(
            report_id=f"payout-{report_month}",
            report_month=report_month,
            period_start=period_start,
            period_end=period_end,
            total_partners=len(summaries),
            total_commission_amount=sum(s.total_commission_amount for s in summaries),
            total_entries=sum(s.entry_count for s in summaries),
            currencies=sorted({s.currency.upper() for s in summaries}),
            partner_summaries=summaries,
            csv_file_name=f"commissions-{report_month}.csv",
            csv_content=render_csv(summaries),
            status=PayoutReportStatus.COMPLETED,
            generated_by=generated_by,
            warning_count=warning_count,
        )

        async with store_call("payout report upsert"):
            await self.db.payout_reports.update_one(
                {"report_month": report_month},
                {"$set": report.model_dump()},
                upsert=True,
            )

        await create_audit_log(
            self.db,
            action=AuditAction.PAYOUT_REPORT_GENERATED,
            actor_id=generated_by,
            resource_type=AuditResource.PAYOUT_REPORT,
            resource_id=report.report_id,
            metadata={
                "total_partners": report.total_partners,
                "total_commission_amount": report.total_commission_amount,
                "total_entries": report.total_entries,
            },
        )
        logger.info(
            "PAYOUT_REPORT_GENERATED month=%s partners=%s entries=%s total=%s warnings=%s",
            report_month, report.total_partners, report.total_entries,
            report.total_commission_amount, warning_count,
        )
        return report
