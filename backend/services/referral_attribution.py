"""Referral Attribution - turns a referral code captured at signup into a
conversion tracking record for the partner that owns the code.

Codes live in partner_codes (unique on code, stored upper-case). A code is
usable while it is active, unexpired and below max_uses, and only for an
approved partner. Attribution is first-touch: a customer that already has a
tracking record keeps it.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple
import logging
import re
import secrets

from pymongo.errors import DuplicateKeyError

from models import AuditAction, AuditResource
from models.conversions import ConversionSource, ReferralAttribution
from models.partners import PartnerCode, PartnerStatus
from services.conversion_tracking import ConversionTrackingService
from services.errors import InvalidReferralCode, PartnerNotFound, store_call
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")
MAX_CODE_ATTEMPTS = 5


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_code(display_name: str = "") -> str:
    """Up to six characters of the partner name plus a random suffix."""
    base = re.sub(r"[^A-Za-z0-9]", "", display_name or "").upper()[:6]
    if len(base) < 3:
        base = "REF"
    return base + secrets.token_hex(2).upper()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReferralAttributionService:
    def __init__(self, db, tracking: ConversionTrackingService = None):
        self.db = db
        self.tracking = tracking or ConversionTrackingService(db)

    async def _get_partner(self, partner_id: str) -> dict:
        async with store_call("partner lookup"):
            partner = await self.db.partners.find_one({"partner_id": partner_id}, {"_id": 0})
        if not partner:
            raise PartnerNotFound(partner_id)
        return partner

    async def create_partner_code(
        self,
        partner_id: str,
        code: Optional[str] = None,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PartnerCode:
        """Issue a referral code; a random one is generated when none is requested.

        Raises PartnerNotFound, ValueError for a malformed request and
        DuplicateKeyError when the requested code is taken.
        """
        partner = await self._get_partner(partner_id)

        expires_at = _as_utc(expires_at)
        if max_uses is not None and max_uses < 1:
            raise ValueError("max_uses must be at least 1")
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise ValueError("expires_at must be in the future")

        requested = normalize_code(code) if code else None
        if requested is not None and not CODE_PATTERN.match(requested):
            raise ValueError("Code must be 3-20 characters, letters and numbers only")

        attempts = 1 if requested else MAX_CODE_ATTEMPTS
        for attempt in range(attempts):
            partner_code = PartnerCode(
                code=requested or generate_code(partner.get("display_name", "")),
                partner_id=partner_id,
                max_uses=max_uses,
                expires_at=expires_at,
                description=description,
            )
            try:
                async with store_call("partner code insert"):
                    await self.db.partner_codes.insert_one(partner_code.model_dump())
                break
            except DuplicateKeyError:
                if requested or attempt == attempts - 1:
                    raise
                logger.info(f"Generated code {partner_code.code} collided, retrying")

        await create_audit_log(
            self.db,
            action=AuditAction.PARTNER_CODE_CREATED,
            actor_id=actor_id,
            partner_id=partner_id,
            resource_type=AuditResource.PARTNER_CODE,
            resource_id=partner_code.code,
            metadata={"max_uses": max_uses, "expires_at": expires_at.isoformat() if expires_at else None},
        )
        logger.info(f"Partner code {partner_code.code} created for partner {partner_id}")
        return partner_code

    async def resolve_code(self, referral_code: str) -> Tuple[PartnerCode, dict]:
        """Return the usable code and its partner.

        Raises InvalidReferralCode for an unusable code and PartnerNotFound
        when the owning partner is missing or not approved.
        """
        code = normalize_code(referral_code)
        async with store_call("partner code lookup"):
            doc = await self.db.partner_codes.find_one({"code": code}, {"_id": 0})
        if not doc:
            raise InvalidReferralCode(code, "not found")

        partner_code = PartnerCode(**doc)
        if not partner_code.active:
            raise InvalidReferralCode(code, "inactive")
        expires_at = _as_utc(partner_code.expires_at)
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise InvalidReferralCode(code, "expired")
        if partner_code.max_uses is not None and partner_code.uses >= partner_code.max_uses:
            raise InvalidReferralCode(code, "usage limit reached")

        partner = await self._get_partner(partner_code.partner_id)
        if partner.get("status") != PartnerStatus.APPROVED.value:
            logger.warning(f"Referral code {code} belongs to partner {partner_code.partner_id} with status {partner.get('status')}")
            raise PartnerNotFound(partner_code.partner_id)
        return partner_code, partner

    async def attribute(
        self,
        referral_code: str,
        customer_uid: str,
        source: ConversionSource = ConversionSource.LINK,
        metadata: Optional[dict] = None,
    ) -> ReferralAttribution:
        """Attribute a customer to the partner owning referral_code."""
        async with store_call("existing attribution lookup"):
            existing = await self.db.conversion_tracking.find_one(
                {"customer_uid": customer_uid}, {"_id": 0}, sort=[("created_at", 1)]
            )
        if existing:
            logger.info(
                "REFERRAL_ALREADY_ATTRIBUTED customer_uid=%s partner_id=%s conversion_id=%s",
                customer_uid, existing.get("partner_id"), existing.get("conversion_id"),
            )
            return ReferralAttribution(
                conversion_id=existing["conversion_id"],
                partner_id=existing["partner_id"],
                referral_code=existing["referral_code"],
                created=False,
            )

        partner_code, _ = await self.resolve_code(referral_code)

        conversion_id = await self.tracking.create_tracking(
            partner_id=partner_code.partner_id,
            referral_code=partner_code.code,
            customer_uid=customer_uid,
            source=source,
            metadata=metadata,
        )

        async with store_call("partner code usage"):
            await self.db.partner_codes.update_one(
                {"code": partner_code.code},
                {"$inc": {"uses": 1}, "$set": {"last_used_at": datetime.now(timezone.utc)}},
            )

        logger.info(
            "REFERRAL_ATTRIBUTED customer_uid=%s partner_id=%s code=%s conversion_id=%s",
            customer_uid, partner_code.partner_id, partner_code.code, conversion_id,
        )
        return ReferralAttribution(
            conversion_id=conversion_id,
            partner_id=partner_code.partner_id,
            referral_code=partner_code.code,
            created=True,
        )
