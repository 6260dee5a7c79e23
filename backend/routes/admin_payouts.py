"""Admin Commission & Payout Routes.

Endpoints:
- POST /api/admin/payouts/reports?month=YYYY-MM - Generate (or return) a monthly payout report
- GET /api/admin/payouts/reports/{report_month} - Fetch a stored report
- GET /api/admin/payouts/reports/{report_month}/csv - Download the report CSV
- POST /api/admin/partners/{partner_id}/stats/rebuild - Recompute partner statistics from the ledger
- POST /api/admin/partners/{partner_id}/codes - Issue a referral code for a partner
- GET /api/admin/commissions/{ledger_entry_id} - Ledger entry with its audit history
- POST /api/admin/commissions/{ledger_entry_id}/status - Mark an accrued entry paid or reversed

Every write here is audit-logged by the service it calls.
"""
import io
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from database import get_db
from middleware import admin_route_guard
from models import AuditResource
from models.commissions import LedgerStatus
from services.commission_ledger import CommissionLedger
from services.errors import InvalidStatusTransition, PartnerNotFound, TransientStoreFailure
from services.partner_statistics import PartnerStatisticsService
from services.payout_report_service import PayoutReportService
from services.referral_attribution import ReferralAttributionService
from utils.audit import get_audit_logs_for_resource

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-payouts"])


class StatusTransitionRequest(BaseModel):
    status: LedgerStatus


class PartnerCodeRequest(BaseModel):
    code: Optional[str] = None
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None
    description: Optional[str] = None


def _unavailable(e: TransientStoreFailure) -> HTTPException:
    logger.warning(f"Store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Store temporarily unavailable, please retry"
    )


# =============================================================================
# Payout Reports
# =============================================================================

@router.post("/payouts/reports")
async def generate_payout_report(
    month: Optional[str] = None,
    regenerate: bool = False,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    """Generate the payout report for a month (default: previous month)."""
    try:
        report = await PayoutReportService(db).generate_report(
            report_month=month,
            generated_by=user.get("sub", "admin"),
            regenerate=regenerate,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TransientStoreFailure as e:
        raise _unavailable(e)
    return report.model_dump(mode="json", exclude={"csv_content"})


@router.get("/payouts/reports/{report_month}")
async def get_payout_report(
    report_month: str,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    try:
        report = await PayoutReportService(db).get_report(report_month)
    except TransientStoreFailure as e:
        raise _unavailable(e)
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout report not found")
    return report.model_dump(mode="json", exclude={"csv_content"})


@router.get("/payouts/reports/{report_month}/csv")
async def download_payout_report_csv(
    report_month: str,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    try:
        report = await PayoutReportService(db).get_report(report_month)
    except TransientStoreFailure as e:
        raise _unavailable(e)
    if not report or report.csv_content is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout report not found")

    return StreamingResponse(
        io.StringIO(report.csv_content),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={report.csv_file_name}"
        }
    )


# =============================================================================
# Partners
# =============================================================================

@router.post("/partners/{partner_id}/stats/rebuild")
async def rebuild_partner_stats(
    partner_id: str,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    """Recompute cumulative statistics from the ledger and tracking records."""
    try:
        stats = await PartnerStatisticsService(db).rebuild_from_ledger(partner_id, actor_id=user.get("sub"))
    except TransientStoreFailure as e:
        raise _unavailable(e)
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    return {"partner_id": partner_id, "stats": stats.model_dump(mode="json")}


@router.post("/partners/{partner_id}/codes", status_code=status.HTTP_201_CREATED)
async def create_partner_code(
    partner_id: str,
    body: PartnerCodeRequest,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    """Issue a referral code; omit code to have one generated from the partner name."""
    try:
        partner_code = await ReferralAttributionService(db).create_partner_code(
            partner_id,
            code=body.code,
            max_uses=body.max_uses,
            expires_at=body.expires_at,
            description=body.description,
            actor_id=user.get("sub"),
        )
    except PartnerNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Referral code already exists")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TransientStoreFailure as e:
        raise _unavailable(e)
    return partner_code.model_dump(mode="json")


# =============================================================================
# Ledger Entries
# =============================================================================

@router.get("/commissions/{ledger_entry_id}")
async def get_commission_entry(
    ledger_entry_id: str,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    try:
        entry = await CommissionLedger(db).get_entry(ledger_entry_id)
        if not entry:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ledger entry not found")
        history = await get_audit_logs_for_resource(db, AuditResource.COMMISSION_LEDGER, ledger_entry_id)
    except TransientStoreFailure as e:
        raise _unavailable(e)

    return {"entry": entry.model_dump(mode="json"), "audit_history": history}


@router.post("/commissions/{ledger_entry_id}/status")
async def transition_commission_status(
    ledger_entry_id: str,
    body: StatusTransitionRequest,
    user: dict = Depends(admin_route_guard),
    db=Depends(get_db),
):
    """Move an accrued entry to paid or reversed; used by the payout and refund runs."""
    ledger = CommissionLedger(db)
    try:
        transitioned = await ledger.transition_status(ledger_entry_id, body.status, actor_id=user.get("sub"))
        if not transitioned:
            entry = await ledger.get_entry(ledger_entry_id)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except TransientStoreFailure as e:
        raise _unavailable(e)

    if not transitioned:
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ledger entry not found")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Ledger entry is {entry.status}, only accrued entries can change status"
        )

    logger.info(f"Ledger entry {ledger_entry_id} marked {LedgerStatus(body.status).value} by {user.get('sub')}")
    return {"ledger_entry_id": ledger_entry_id, "status": LedgerStatus(body.status).value}
