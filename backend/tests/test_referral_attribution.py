"""
Referral attribution: partner codes, first-touch attribution of customers,
and the path from a captured code to an accrued commission.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from pymongo.errors import DuplicateKeyError

from models import AuditAction, UserRole
from services.errors import InvalidReferralCode, PartnerNotFound
from services.referral_attribution import CODE_PATTERN, ReferralAttributionService


@pytest.mark.asyncio
async def test_attribute_creates_signup_tracking_and_counts_use(db, add_partner, add_partner_code):
    add_partner("partner_1")
    add_partner_code("ACME2025")

    attribution = await ReferralAttributionService(db).attribute(" acme2025 ", "cust_1")

    assert attribution.created is True
    assert attribution.partner_id == "partner_1"
    assert attribution.referral_code == "ACME2025"
    tracking = db.conversion_tracking.docs[0]
    assert tracking["conversion_id"] == attribution.conversion_id
    assert tracking["customer_uid"] == "cust_1"
    assert tracking["status"] == "signup"
    assert db.partner_codes.docs[0]["uses"] == 1
    assert db.partner_codes.docs[0]["last_used_at"] is not None
    assert db.partners.docs[0]["stats"]["total_referrals"] == 1


@pytest.mark.asyncio
async def test_first_touch_attribution_is_kept(db, add_partner, add_partner_code):
    add_partner("partner_1")
    add_partner("partner_2")
    add_partner_code("FIRST1", partner_id="partner_1")
    add_partner_code("SECOND2", partner_id="partner_2")
    service = ReferralAttributionService(db)

    first = await service.attribute("FIRST1", "cust_1")
    second = await service.attribute("SECOND2", "cust_1")

    assert second.created is False
    assert second.conversion_id == first.conversion_id
    assert second.partner_id == "partner_1"
    assert len(db.conversion_tracking.docs) == 1
    assert db.partner_codes.docs[1]["uses"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides, reason", [
    ({"active": False}, "inactive"),
    ({"expires_at": datetime.now(timezone.utc) - timedelta(days=1)}, "expired"),
    ({"max_uses": 2, "uses": 2}, "usage limit reached"),
])
async def test_unusable_code_is_rejected(db, add_partner, add_partner_code, overrides, reason):
    add_partner("partner_1")
    add_partner_code("ACME2025", **overrides)

    with pytest.raises(InvalidReferralCode) as exc:
        await ReferralAttributionService(db).attribute("ACME2025", "cust_1")

    assert exc.value.reason == reason
    assert db.conversion_tracking.docs == []


@pytest.mark.asyncio
async def test_unknown_code_is_rejected(db):
    with pytest.raises(InvalidReferralCode):
        await ReferralAttributionService(db).attribute("NOPE", "cust_1")


@pytest.mark.asyncio
async def test_code_of_unapproved_partner_is_rejected(db, add_partner, add_partner_code):
    add_partner("partner_1", status="suspended")
    add_partner_code("ACME2025")

    with pytest.raises(PartnerNotFound):
        await ReferralAttributionService(db).attribute("ACME2025", "cust_1")

    assert db.conversion_tracking.docs == []


@pytest.mark.asyncio
async def test_code_of_missing_partner_is_rejected(db, add_partner_code):
    add_partner_code("ORPHAN1", partner_id="ghost")

    with pytest.raises(PartnerNotFound):
        await ReferralAttributionService(db).attribute("ORPHAN1", "cust_1")


# =============================================================================
# Code issuance
# =============================================================================

@pytest.mark.asyncio
async def test_generated_code_uses_partner_name(db, add_partner):
    add_partner("partner_1", display_name="Acme Tools Ltd")

    partner_code = await ReferralAttributionService(db).create_partner_code("partner_1", actor_id="admin_1")

    assert partner_code.code.startswith("ACMETO")
    assert CODE_PATTERN.match(partner_code.code)
    assert db.partner_codes.docs[0]["code"] == partner_code.code
    audit = db.audit_logs.docs[0]
    assert audit["action"] == AuditAction.PARTNER_CODE_CREATED.value
    assert audit["resource_id"] == partner_code.code


@pytest.mark.asyncio
async def test_requested_code_is_normalized_and_unique(db, add_partner):
    add_partner("partner_1")
    service = ReferralAttributionService(db)

    created = await service.create_partner_code("partner_1", code="spring25")
    assert created.code == "SPRING25"

    with pytest.raises(DuplicateKeyError):
        await service.create_partner_code("partner_1", code="SPRING25")


@pytest.mark.asyncio
async def test_code_request_validation(db, add_partner):
    add_partner("partner_1")
    service = ReferralAttributionService(db)

    with pytest.raises(ValueError):
        await service.create_partner_code("partner_1", code="no spaces!")
    with pytest.raises(ValueError):
        await service.create_partner_code("partner_1", max_uses=0)
    with pytest.raises(ValueError):
        await service.create_partner_code("partner_1", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))
    with pytest.raises(PartnerNotFound):
        await service.create_partner_code("ghost")


# =============================================================================
# HTTP routes
# =============================================================================

def test_attribute_route_uses_token_subject(client, db, add_partner, add_partner_code, auth_headers):
    add_partner("partner_1")
    add_partner_code("ACME2025")

    response = client.post(
        "/api/partners/referrals/attribute",
        json={"referral_code": "acme2025", "metadata": {"landing_page": "/pricing"}},
        headers=auth_headers(UserRole.ROLE_CUSTOMER, sub="cust_42"),
    )

    assert response.status_code == 200
    assert response.json()["created"] is True
    tracking = db.conversion_tracking.docs[0]
    assert tracking["customer_uid"] == "cust_42"
    assert tracking["metadata"]["landing_page"] == "/pricing"


def test_attribute_route_requires_auth(client):
    response = client.post("/api/partners/referrals/attribute", json={"referral_code": "ACME2025"})

    assert response.status_code == 401


def test_attribute_route_rejects_invalid_code(client, add_partner, auth_headers):
    add_partner("partner_1")

    response = client.post(
        "/api/partners/referrals/attribute",
        json={"referral_code": "NOPE"},
        headers=auth_headers(UserRole.ROLE_CUSTOMER, sub="cust_42"),
    )

    assert response.status_code == 400


def test_admin_code_route(client, add_partner, auth_headers):
    add_partner("partner_1")
    admin = auth_headers(UserRole.ROLE_ADMIN, sub="admin_1")

    created = client.post("/api/admin/partners/partner_1/codes", json={"code": "LAUNCH", "max_uses": 100}, headers=admin)
    assert created.status_code == 201
    assert created.json()["code"] == "LAUNCH"

    duplicate = client.post("/api/admin/partners/partner_1/codes", json={"code": "launch"}, headers=admin)
    assert duplicate.status_code == 409

    missing = client.post("/api/admin/partners/ghost/codes", json={}, headers=admin)
    assert missing.status_code == 404

    partner = auth_headers(UserRole.ROLE_PARTNER, partner_id="partner_1")
    assert client.post("/api/admin/partners/partner_1/codes", json={}, headers=partner).status_code == 403


def test_attributed_customer_invoice_accrues_commission(client, db, add_partner, add_partner_code, auth_headers):
    add_partner("partner_1", commission_rate=0.20)
    add_partner_code("ACME2025")

    client.post(
        "/api/partners/referrals/attribute",
        json={"referral_code": "ACME2025"},
        headers=auth_headers(UserRole.ROLE_CUSTOMER, sub="cust_42"),
    )
    event = {
        "id": "evt_attr_1",
        "type": "invoice.paid",
        "data": {"object": {
            "id": "in_attr_1",
            "customer": "cus_attr_1",
            "subscription": "sub_attr_1",
            "amount_paid": 1050,
            "currency": "usd",
            "metadata": {"customer_uid": "cust_42"},
        }},
    }

    with patch("services.stripe_webhook_service._get_webhook_secret", return_value=""):
        response = client.post("/api/webhook/stripe", content=json.dumps(event).encode())

    assert response.status_code == 200
    assert db.commission_ledger.docs[0]["_id"] == "in_attr_1_partner_1"
    assert db.commission_ledger.docs[0]["commission_amount"] == 210
    assert db.conversion_tracking.docs[0]["status"] == "subscribed"
