"""Partner Statistics - cumulative counters on the partner document.

Every mutation is a single-document $inc, which MongoDB applies atomically,
so concurrent credits for the same partner cannot lose updates.
total_commission_paid is only written by rebuild_from_ledger(); the payout
path owns it otherwise.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from pymongo.errors import PyMongoError

from models import AuditAction, AuditResource
from models.commissions import EARNED_STATUSES, LedgerStatus
from models.partners import PartnerStats
from services.errors import store_call
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class PartnerStatisticsService:
    def __init__(self, db):
        self.db = db

    async def _increment(self, partner_id: str, increments: dict) -> bool:
        now = datetime.now(timezone.utc)
        result = await self.db.partners.update_one(
            {"partner_id": partner_id},
            {
                "$inc": increments,
                "$set": {"stats.last_calculated": now, "updated_at": now},
            },
        )
        if result.matched_count == 0:
            logger.warning(f"Partner not found for statistics update: {partner_id}")
            return False
        return True

    async def credit(self, partner_id: str, commission_amount: int, is_conversion: bool = True) -> bool:
        """Add one commission to the partner's counters.

        Returns False (never raises) when the partner is missing or the store
        fails; the ledger stays the source of truth and rebuild_from_ledger()
        repairs the counters.
        """
        increments = {"stats.total_commission_earned": commission_amount}
        if is_conversion:
            increments["stats.total_conversions"] = 1

        try:
            updated = await self._increment(partner_id, increments)
        except PyMongoError as e:
            logger.error(f"Error updating partner statistics for {partner_id}: {e}")
            return False

        if updated:
            logger.info(
                "PARTNER_STATS_CREDITED partner_id=%s commission=%s conversion=%s",
                partner_id, commission_amount, is_conversion,
            )
        return updated

    async def record_referral(self, partner_id: str) -> bool:
        try:
            return await self._increment(partner_id, {"stats.total_referrals": 1})
        except PyMongoError as e:
            logger.error(f"Error recording referral for {partner_id}: {e}")
            return False

    async def get_stats(self, partner_id: str) -> Optional[PartnerStats]:
        async with store_call("partner stats lookup"):
            partner = await self.db.partners.find_one({"partner_id": partner_id}, {"_id": 0, "stats": 1})
        if not partner:
            return None
        return PartnerStats(**(partner.get("stats") or {}))

    async def rebuild_from_ledger(self, partner_id: str, actor_id: str = None) -> Optional[PartnerStats]:
        """Recompute the partner's counters from the ledger and tracking records.

        Out-of-band repair for credits lost after a successful ledger write.
        """
        async with store_call("partner stats rebuild"):
            partner = await self.db.partners.find_one({"partner_id": partner_id}, {"_id": 0, "stats": 1})
            if not partner:
                logger.warning(f"Partner not found for statistics rebuild: {partner_id}")
                return None

            entries = await self.db.commission_ledger.find(
                {"partner_id": partner_id},
                {"_id": 0, "status": 1, "commission_amount": 1},
            ).to_list(length=None)
            total_referrals = await self.db.conversion_tracking.count_documents({"partner_id": partner_id})

            stats = PartnerStats(
                total_referrals=total_referrals,
                total_conversions=sum(1 for e in entries if e["status"] != LedgerStatus.REVERSED.value),
                total_commission_earned=sum(e["commission_amount"] for e in entries if e["status"] in EARNED_STATUSES),
                total_commission_paid=sum(e["commission_amount"] for e in entries if e["status"] == LedgerStatus.PAID.value),
                last_calculated=datetime.now(timezone.utc),
            )
            await self.db.partners.update_one(
                {"partner_id": partner_id},
                {"$set": {"stats": stats.model_dump(), "updated_at": stats.last_calculated}},
            )

        before = PartnerStats(**(partner.get("stats") or {}))
        await create_audit_log(
            self.db,
            action=AuditAction.PARTNER_STATS_REBUILT,
            actor_id=actor_id,
            partner_id=partner_id,
            resource_type=AuditResource.PARTNER,
            resource_id=partner_id,
            before_state=before.model_dump(exclude={"last_calculated"}),
            after_state=stats.model_dump(exclude={"last_calculated"}),
        )
        logger.info(f"Partner statistics rebuilt for {partner_id}: {stats.model_dump(exclude={'last_calculated'})}")
        return stats
