"""Commission processing: calculate -> record -> credit, for one paid invoice.

The ledger entry is the source of truth. Calculation and ledger failures
abort with a result value; a failed statistics credit is logged and reported
as stats_updated=False without undoing the ledger write. Replays of an
invoice already in the ledger never credit statistics again.
"""
from datetime import datetime
import logging

from pymongo.errors import PyMongoError

from models.commissions import ProcessCommissionResult, ProcessErrorCode
from services.commission_calculator import CommissionCalculator
from services.commission_ledger import CommissionLedger
from services.errors import TransientStoreFailure
from services.partner_statistics import PartnerStatisticsService

logger = logging.getLogger(__name__)


class CommissionService:
    def __init__(self, db):
        self.db = db
        self.calculator = CommissionCalculator(db)
        self.ledger = CommissionLedger(db)
        self.statistics = PartnerStatisticsService(db)

    async def process_commission(
        self,
        partner_id: str,
        referral_id: str,
        gross_amount: int,
        currency: str,
        invoice_id: str,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        stripe_metadata: dict = None,
    ) -> ProcessCommissionResult:
        try:
            calculation = await self.calculator.calculate(partner_id, gross_amount, currency, referral_id)
            if calculation is None:
                logger.warning(f"Commission skipped, partner not found: {partner_id}")
                return ProcessCommissionResult(error_code=ProcessErrorCode.PARTNER_NOT_FOUND)

            write = await self.ledger.record(
                calculation,
                invoice_id,
                subscription_id,
                period_start,
                period_end,
                stripe_metadata=stripe_metadata,
            )
        except TransientStoreFailure as e:
            logger.error(f"Commission processing failed for partner {partner_id}, invoice {invoice_id}: {e}")
            return ProcessCommissionResult(
                error_code=ProcessErrorCode.TRANSIENT_STORE_FAILURE,
                retryable=True,
            )
        except ValueError as e:
            logger.error(f"Invalid commission input for partner {partner_id}, invoice {invoice_id}: {e}")
            return ProcessCommissionResult(error_code=ProcessErrorCode.INVALID_INPUT)
        except PyMongoError as e:
            # Rejected by the server (validation, auth); redelivery cannot fix it
            logger.error(f"Store rejected commission write for partner {partner_id}, invoice {invoice_id}: {e}")
            return ProcessCommissionResult(error_code=ProcessErrorCode.STORE_ERROR)

        if not write.created:
            return ProcessCommissionResult(
                ledger_entry_id=write.ledger_entry_id,
                ledger_written=True,
                replayed=True,
            )

        stats_updated = await self.statistics.credit(partner_id, calculation.commission_amount, is_conversion=True)
        if not stats_updated:
            logger.warning(f"Failed to update partner statistics for partner: {partner_id}")

        logger.info(
            "COMMISSION_PROCESSED partner_id=%s referral_id=%s ledger_entry_id=%s commission=%s currency=%s stats_updated=%s",
            partner_id, referral_id, write.ledger_entry_id, calculation.commission_amount,
            calculation.currency, stats_updated,
        )
        return ProcessCommissionResult(
            ledger_entry_id=write.ledger_entry_id,
            ledger_written=True,
            stats_updated=stats_updated,
        )
