"""Conversion Tracking - records a referred customer's journey from referral to subscription."""
from datetime import datetime, timezone
from typing import Optional
import logging

from models.conversions import (
    ConversionSource,
    ConversionStatus,
    ConversionTracking,
    TrackingMetadata,
)
from services.commission_calculator import compute_commission_amount, resolve_commission_rate
from services.errors import store_call
from services.partner_statistics import PartnerStatisticsService

logger = logging.getLogger(__name__)


class ConversionTrackingService:
    def __init__(self, db, statistics: PartnerStatisticsService = None):
        self.db = db
        self.statistics = statistics or PartnerStatisticsService(db)

    async def create_tracking(
        self,
        partner_id: str,
        referral_code: str,
        customer_uid: str,
        source: ConversionSource = ConversionSource.LINK,
        metadata: Optional[dict] = None,
        referral_captured_at: Optional[datetime] = None,
        currency: str = "USD",
    ) -> str:
        """Record a referred signup and count the referral on the partner."""
        now = datetime.now(timezone.utc)
        tracking = ConversionTracking(
            partner_id=partner_id,
            referral_code=referral_code,
            customer_uid=customer_uid,
            currency=currency.upper(),
            referral_captured_at=referral_captured_at or now,
            signup_at=now,
            status=ConversionStatus.SIGNUP,
            source=source,
            metadata=TrackingMetadata(**metadata) if metadata else None,
            created_at=now,
            updated_at=now,
        )

        async with store_call("conversion tracking insert"):
            await self.db.conversion_tracking.insert_one(tracking.model_dump())

        await self.statistics.record_referral(partner_id)

        logger.info(
            "CONVERSION_TRACKING_CREATED conversion_id=%s partner_id=%s referral_code=%s customer_uid=%s",
            tracking.conversion_id, partner_id, referral_code, customer_uid,
        )
        return tracking.conversion_id

    async def mark_conversion(
        self,
        customer_uid: str,
        stripe_customer_id: str,
        conversion_value: int,
        currency: str,
    ) -> bool:
        """Mark the customer's signup record as converted (first payment)."""
        async with store_call("conversion lookup"):
            record = await self.db.conversion_tracking.find_one(
                {"customer_uid": customer_uid, "status": ConversionStatus.SIGNUP.value},
                {"_id": 0},
            )
        if not record:
            logger.warning(f"No signup conversion tracking found for customer: {customer_uid}")
            return False

        async with store_call("partner rate lookup"):
            partner = await self.db.partners.find_one(
                {"partner_id": record["partner_id"]},
                {"_id": 0, "commission_rate": 1},
            )
        commission_rate = record.get("commission_rate")
        if commission_rate is None:
            commission_rate = resolve_commission_rate(partner or {})
        commission_earned = compute_commission_amount(conversion_value, commission_rate)

        now = datetime.now(timezone.utc)
        async with store_call("conversion update"):
            # Conditional on status so a concurrent mark cannot convert twice
            result = await self.db.conversion_tracking.update_one(
                {"conversion_id": record["conversion_id"], "status": ConversionStatus.SIGNUP.value},
                {"$set": {
                    "stripe_customer_id": stripe_customer_id,
                    "converted_at": now,
                    "status": ConversionStatus.CONVERTED.value,
                    "conversion_value": conversion_value,
                    "commission_earned": commission_earned,
                    "commission_rate": commission_rate,
                    "currency": currency.upper(),
                    "updated_at": now,
                }},
            )
        if result.modified_count != 1:
            return False

        logger.info(
            "CONVERSION_MARKED customer_uid=%s stripe_customer_id=%s value=%s commission=%s",
            customer_uid, stripe_customer_id, conversion_value, commission_earned,
        )
        return True

    async def mark_subscription(self, customer_uid: str, stripe_subscription_id: str, plan_id: Optional[str]) -> bool:
        """Mark a converted customer as subscribed."""
        async with store_call("subscription lookup"):
            record = await self.db.conversion_tracking.find_one(
                {
                    "customer_uid": customer_uid,
                    "status": {"$in": [ConversionStatus.CONVERTED.value, ConversionStatus.SUBSCRIBED.value]},
                },
                {"_id": 0},
            )
        if not record:
            logger.warning(f"No converted tracking found for customer: {customer_uid}")
            return False

        now = datetime.now(timezone.utc)
        update = {
            "stripe_subscription_id": stripe_subscription_id,
            "plan_id": plan_id,
            "status": ConversionStatus.SUBSCRIBED.value,
            "updated_at": now,
        }
        if not record.get("subscribed_at"):
            update["subscribed_at"] = now

        async with store_call("subscription update"):
            await self.db.conversion_tracking.update_one(
                {"conversion_id": record["conversion_id"]},
                {"$set": update},
            )
        logger.info(f"Subscription marked for customer {customer_uid}: {stripe_subscription_id} ({plan_id})")
        return True

    async def find_referral_for_invoice(
        self,
        customer_id: Optional[str],
        subscription_id: Optional[str],
        customer_uid: Optional[str] = None,
    ) -> Optional[dict]:
        """Resolve the tracking record behind an invoice.

        Lookup order: subscription id, Stripe customer id, then the app
        customer uid carried in invoice metadata (first payment, before the
        Stripe ids are linked).
        """
        async with store_call("referral lookup"):
            if subscription_id:
                record = await self.db.conversion_tracking.find_one(
                    {"stripe_subscription_id": subscription_id}, {"_id": 0}
                )
                if record:
                    return record
            if customer_id:
                record = await self.db.conversion_tracking.find_one(
                    {"stripe_customer_id": customer_id}, {"_id": 0}
                )
                if record:
                    return record
            if customer_uid:
                return await self.db.conversion_tracking.find_one(
                    {"customer_uid": customer_uid}, {"_id": 0}, sort=[("created_at", -1)]
                )
        return None
