"""Partner Dashboard Routes - commission summary, conversion analytics and funnel.

The dashboard endpoints are read-only and return a QueryResult envelope: store
outages and integrity problems come back as success=false with an error code,
so the dashboard can render a retry affordance instead of a raw failure.

POST /api/partners/referrals/attribute is the write side: a signed-in customer
is attributed to the partner owning the referral code captured at signup.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Tuple
import logging
import os

from database import get_db
from middleware import partner_route_guard, require_auth
from models.conversions import ConversionSource, TrackingMetadata
from models.responses import QueryErrorCode, QueryResult
from services.commission_ledger import CommissionLedger
from services.conversion_analytics import ConversionAnalyticsService
from services.errors import DataIntegrityViolation, InvalidReferralCode, PartnerNotFound, TransientStoreFailure
from services.referral_attribution import ReferralAttributionService
from utils.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/partners", tags=["partners"])

PARTNER_QUERY_RATE_LIMIT = int(os.getenv("PARTNER_QUERY_RATE_LIMIT", "60"))
DEFAULT_WINDOW_DAYS = 30


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_window(
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    default_days: Optional[int] = DEFAULT_WINDOW_DAYS,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Normalize a [start, end) query window; defaults to the last default_days days."""
    start, end = _as_utc(start_date), _as_utc(end_date)
    if default_days is not None:
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(days=default_days)
    if start is not None and end is not None and start >= end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must be before end_date"
        )
    return start, end


async def _rate_limited_user(user: dict = Depends(partner_route_guard)) -> dict:
    decision = rate_limiter.hit(
        f"partner_query:{user.get('sub')}",
        limit=PARTNER_QUERY_RATE_LIMIT,
        window=timedelta(minutes=1),
    )
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many dashboard queries, slow down",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )
    return user


async def run_query(description: str, partner_id: str, query: Callable[[], Awaitable]) -> QueryResult:
    try:
        data = await query()
    except DataIntegrityViolation as e:
        logger.error(f"{description} integrity violation for partner {partner_id}: {e}")
        return QueryResult.failed(QueryErrorCode.DATA_INTEGRITY_VIOLATION, str(e))
    except TransientStoreFailure as e:
        logger.warning(f"{description} unavailable for partner {partner_id}: {e}")
        return QueryResult.failed(
            QueryErrorCode.UNAVAILABLE,
            f"{description} is temporarily unavailable",
            retryable=True,
        )
    except Exception as e:
        logger.exception(f"{description} failed for partner {partner_id}: {e}")
        return QueryResult.failed(QueryErrorCode.INTERNAL_ERROR, f"Failed to retrieve {description.lower()}")

    if data is None:
        return QueryResult.failed(QueryErrorCode.NOT_FOUND, "Partner not found")
    if isinstance(data, list):
        return QueryResult.ok([item.model_dump(mode="json") for item in data])
    return QueryResult.ok(data.model_dump(mode="json"))


@router.get("/{partner_id}/commissions/summary", response_model=QueryResult)
async def get_partner_commission_summary(
    partner_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: dict = Depends(_rate_limited_user),
    db=Depends(get_db),
):
    """Commission totals and the ten most recent ledger entries; all time without dates."""
    start, end = resolve_window(start_date, end_date, default_days=None)
    logger.info(f"Commission summary requested by {user.get('sub')} for partner {partner_id}")
    return await run_query(
        "Commission summary",
        partner_id,
        lambda: CommissionLedger(db).summarize(partner_id, start, end),
    )


@router.get("/{partner_id}/conversions/analytics", response_model=QueryResult)
async def get_partner_conversion_analytics(
    partner_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: dict = Depends(_rate_limited_user),
    db=Depends(get_db),
):
    start, end = resolve_window(start_date, end_date)
    return await run_query(
        "Conversion analytics",
        partner_id,
        lambda: ConversionAnalyticsService(db).analytics(partner_id, start, end),
    )


@router.get("/{partner_id}/conversions/funnel", response_model=QueryResult)
async def get_partner_conversion_funnel(
    partner_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: dict = Depends(_rate_limited_user),
    db=Depends(get_db),
):
    start, end = resolve_window(start_date, end_date)
    return await run_query(
        "Conversion funnel",
        partner_id,
        lambda: ConversionAnalyticsService(db).funnel(partner_id, start, end),
    )


@router.get("/{partner_id}/conversions/summary", response_model=QueryResult)
async def get_partner_conversion_summary(
    partner_id: str,
    user: dict = Depends(_rate_limited_user),
    db=Depends(get_db),
):
    return await run_query(
        "Conversion summary",
        partner_id,
        lambda: ConversionAnalyticsService(db).partner_conversion_summary(partner_id),
    )


# =============================================================================
# Referral Attribution
# =============================================================================

class ReferralAttributionRequest(BaseModel):
    referral_code: str
    source: ConversionSource = ConversionSource.LINK
    metadata: Optional[TrackingMetadata] = None


@router.post("/referrals/attribute")
async def attribute_referral(
    body: ReferralAttributionRequest,
    user: dict = Depends(require_auth),
    db=Depends(get_db),
):
    """Attribute the signed-in customer to the partner owning a referral code."""
    try:
        attribution = await ReferralAttributionService(db).attribute(
            body.referral_code,
            customer_uid=user["sub"],
            source=body.source,
            metadata=body.metadata.model_dump(exclude_none=True) if body.metadata else None,
        )
    except (InvalidReferralCode, PartnerNotFound) as e:
        logger.warning(f"Referral attribution rejected for {user.get('sub')}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired referral code"
        )
    except TransientStoreFailure as e:
        logger.warning(f"Referral attribution unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store temporarily unavailable, please retry"
        )
    return attribution.model_dump()
