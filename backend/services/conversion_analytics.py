"""Conversion Analytics - read-side funnel, rates and trends for the partner dashboard.

Each tracking record counts at the furthest stage it reached (referral <
signup < conversion < subscription), and a stage's count includes every
record that reached it or went further. Counts therefore never increase
down the funnel, churned customers included.

Nothing here writes to the store.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging
import os

from models.conversions import (
    ConversionAnalytics,
    ConversionFunnelStep,
    ConversionStatus,
    ConversionTracking,
    ConversionTrends,
    FUNNEL_STAGES,
    FunnelStage,
    PartnerConversionSummary,
    PeriodStats,
    STAGE_TIMESTAMP_FIELDS,
    TrendDirection,
)
from services.commission_ledger import window_filter
from services.errors import store_call

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
CURRENT_PERIOD_DAYS = 30
RECENT_ACTIVITY_LIMIT = 10
CONVERSION_TRACKING_EPOCH = datetime.fromisoformat(
    os.getenv("CONVERSION_TRACKING_EPOCH", "2024-01-01")
).replace(tzinfo=timezone.utc)

# Furthest stage implied by status when a timestamp is missing
_STATUS_STAGE = {
    ConversionStatus.SIGNUP.value: FunnelStage.SIGNUP,
    ConversionStatus.CONVERTED.value: FunnelStage.CONVERSION,
    ConversionStatus.SUBSCRIBED.value: FunnelStage.SUBSCRIPTION,
}


def stage_reached(record: dict) -> int:
    """Index into FUNNEL_STAGES of the furthest stage the record reached."""
    reached = 0
    for index, stage in enumerate(FUNNEL_STAGES):
        if record.get(STAGE_TIMESTAMP_FIELDS[stage]):
            reached = index
    status_stage = _STATUS_STAGE.get(record.get("status"))
    if status_stage is not None:
        reached = max(reached, FUNNEL_STAGES.index(status_stage))
    return reached


def stage_counts(records: List[dict]) -> Dict[FunnelStage, int]:
    reached = [stage_reached(r) for r in records]
    return {
        stage: sum(1 for r in reached if r >= index)
        for index, stage in enumerate(FUNNEL_STAGES)
    }


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def average_days_between(records: List[dict], from_field: str, to_field: str) -> Optional[float]:
    deltas = [
        (r[to_field] - r[from_field]).total_seconds() / SECONDS_PER_DAY
        for r in records
        if r.get(from_field) and r.get(to_field)
    ]
    if not deltas:
        return None
    return sum(deltas) / len(deltas)


def build_funnel(records: List[dict]) -> List[ConversionFunnelStep]:
    """Funnel steps in fixed order; percentages are relative to the referral count."""
    counts = stage_counts(records)
    top = counts[FunnelStage.REFERRAL]

    steps = []
    for index, stage in enumerate(FUNNEL_STAGES):
        avg_to_next = None
        if index + 1 < len(FUNNEL_STAGES):
            avg_to_next = average_days_between(
                records,
                STAGE_TIMESTAMP_FIELDS[stage],
                STAGE_TIMESTAMP_FIELDS[FUNNEL_STAGES[index + 1]],
            )
        if top == 0:
            percentage = 0.0
        elif index == 0:
            percentage = 100.0
        else:
            percentage = counts[stage] / top * 100
        steps.append(ConversionFunnelStep(
            step=stage,
            count=counts[stage],
            percentage=percentage,
            avg_time_to_next_step_days=avg_to_next,
        ))
    return steps


def build_analytics(partner_id: str, records: List[dict], start: datetime, end: datetime) -> ConversionAnalytics:
    counts = stage_counts(records)
    signups = counts[FunnelStage.SIGNUP]
    conversions = counts[FunnelStage.CONVERSION]
    subscriptions = counts[FunnelStage.SUBSCRIPTION]

    total_value = sum(r.get("conversion_value") or 0 for r in records)
    total_commission = sum(r.get("commission_earned") or 0 for r in records)

    return ConversionAnalytics(
        partner_id=partner_id,
        period_start=start,
        period_end=end,
        total_referrals=counts[FunnelStage.REFERRAL],
        total_signups=signups,
        total_conversions=conversions,
        total_subscriptions=subscriptions,
        conversion_rate=_ratio(conversions, signups),
        subscription_rate=_ratio(subscriptions, conversions),
        total_conversion_value=total_value,
        total_commission_earned=total_commission,
        average_conversion_value=_ratio(total_value, conversions),
        average_commission_per_conversion=_ratio(total_commission, conversions),
        average_time_to_conversion_days=average_days_between(records, "signup_at", "converted_at"),
        average_time_to_subscription_days=average_days_between(records, "converted_at", "subscribed_at"),
    )


def trend(current: float, previous: float) -> TrendDirection:
    if current > previous:
        return TrendDirection.UP
    if current < previous:
        return TrendDirection.DOWN
    return TrendDirection.STABLE


def to_period_stats(analytics: ConversionAnalytics) -> PeriodStats:
    return PeriodStats(
        referrals=analytics.total_referrals,
        signups=analytics.total_signups,
        conversions=analytics.total_conversions,
        subscriptions=analytics.total_subscriptions,
        conversion_rate=analytics.conversion_rate,
        subscription_rate=analytics.subscription_rate,
        total_value=analytics.total_conversion_value,
        total_commission=analytics.total_commission_earned,
    )


class ConversionAnalyticsService:
    def __init__(self, db):
        self.db = db

    async def _records(self, partner_id: str, start: datetime, end: datetime) -> List[dict]:
        query = {"partner_id": partner_id}
        query.update(window_filter("created_at", start, end))
        async with store_call("conversion tracking query"):
            return await self.db.conversion_tracking.find(query, {"_id": 0}).to_list(length=None)

    async def analytics(self, partner_id: str, start: datetime, end: datetime) -> ConversionAnalytics:
        records = await self._records(partner_id, start, end)
        return build_analytics(partner_id, records, start, end)

    async def funnel(self, partner_id: str, start: datetime, end: datetime) -> List[ConversionFunnelStep]:
        records = await self._records(partner_id, start, end)
        return build_funnel(records)

    async def partner_conversion_summary(self, partner_id: str, now: datetime = None) -> Optional[PartnerConversionSummary]:
        """Dashboard summary: last 30 days, lifetime, recent activity and trends.

        Returns None when the partner does not exist.
        """
        async with store_call("partner lookup"):
            partner = await self.db.partners.find_one(
                {"partner_id": partner_id},
                {"_id": 0, "display_name": 1, "email": 1},
            )
        if not partner:
            logger.warning(f"Partner not found for conversion summary: {partner_id}")
            return None

        now = now or datetime.now(timezone.utc)
        current_start = now - timedelta(days=CURRENT_PERIOD_DAYS)
        previous_start = now - timedelta(days=2 * CURRENT_PERIOD_DAYS)

        current = await self.analytics(partner_id, current_start, now)
        previous = await self.analytics(partner_id, previous_start, current_start)
        historical = await self.analytics(partner_id, CONVERSION_TRACKING_EPOCH, now)

        async with store_call("recent activity query"):
            recent = await self.db.conversion_tracking.find(
                {"partner_id": partner_id}, {"_id": 0}
            ).sort("created_at", -1).limit(RECENT_ACTIVITY_LIMIT).to_list(length=RECENT_ACTIVITY_LIMIT)

        return PartnerConversionSummary(
            partner_id=partner_id,
            partner_name=partner.get("display_name", ""),
            partner_email=partner.get("email", ""),
            current_period=to_period_stats(current),
            historical=to_period_stats(historical),
            recent_activity=[ConversionTracking(**r) for r in recent],
            trends=ConversionTrends(
                conversion_rate_trend=trend(current.conversion_rate, previous.conversion_rate),
                subscription_rate_trend=trend(current.subscription_rate, previous.subscription_rate),
                value_trend=trend(current.average_conversion_value, previous.average_conversion_value),
            ),
        )
