"""Commission Calculator - pure computation of a partner's commission on a payment.

Rounding rule: round-half-up to the nearest minor currency unit, computed in
Decimal so binary float error never decides a half cent. Every path that
needs a commission figure goes through compute_commission_amount so that
calculation and later reconciliation always agree.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import logging
import os

from models.commissions import CommissionCalculation
from services.errors import store_call

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = float(os.getenv("PARTNER_DEFAULT_COMMISSION_RATE", "0.10"))


def resolve_commission_rate(partner: dict) -> float:
    """Partner's configured rate, or the system default when unset."""
    rate = partner.get("commission_rate")
    if rate is None:
        return DEFAULT_COMMISSION_RATE
    return float(rate)


def validate_gross_amount(gross_amount: int) -> None:
    if isinstance(gross_amount, bool) or not isinstance(gross_amount, int):
        raise ValueError(f"gross_amount must be an integer number of minor units, got {gross_amount!r}")
    if gross_amount < 0:
        raise ValueError(f"gross_amount must be >= 0, got {gross_amount}")


def compute_commission_amount(gross_amount: int, commission_rate: float) -> int:
    validate_gross_amount(gross_amount)
    if not 0 <= commission_rate <= 1:
        raise ValueError(f"commission_rate must be within [0, 1], got {commission_rate}")

    amount = Decimal(gross_amount) * Decimal(str(commission_rate))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CommissionCalculator:
    def __init__(self, db):
        self.db = db

    async def calculate(
        self,
        partner_id: str,
        gross_amount: int,
        currency: str,
        referral_id: str,
    ) -> Optional[CommissionCalculation]:
        """Compute the commission for a payment.

        Returns None when the partner does not exist; the caller must not
        create a ledger entry in that case. Raises TransientStoreFailure when
        the partner lookup cannot reach the store.
        """
        validate_gross_amount(gross_amount)

        async with store_call("partner lookup"):
            partner = await self.db.partners.find_one(
                {"partner_id": partner_id},
                {"_id": 0, "partner_id": 1, "commission_rate": 1},
            )

        if not partner:
            logger.warning(f"Partner not found for commission calculation: {partner_id}")
            return None

        commission_rate = resolve_commission_rate(partner)
        commission_amount = compute_commission_amount(gross_amount, commission_rate)

        calculation = CommissionCalculation(
            partner_id=partner_id,
            referral_id=referral_id,
            gross_amount=gross_amount,
            commission_rate=commission_rate,
            commission_amount=commission_amount,
            currency=currency.upper(),
        )
        logger.info(
            "COMMISSION_CALCULATED partner_id=%s referral_id=%s gross=%s rate=%s commission=%s currency=%s",
            partner_id, referral_id, gross_amount, commission_rate, commission_amount, calculation.currency,
        )
        return calculation
