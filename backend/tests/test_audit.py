"""Audit trail helpers."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import AutoReconnect

from models import AuditAction, AuditResource
from utils.audit import create_audit_log, get_audit_logs_for_resource, state_changes


def test_state_changes_reports_only_differing_fields():
    changes = state_changes(
        {"status": "accrued", "commission_amount": 150},
        {"status": "paid", "commission_amount": 150, "paid_at": "2025-02-01"},
    )

    assert changes == {
        "paid_at": {"from": None, "to": "2025-02-01"},
        "status": {"from": "accrued", "to": "paid"},
    }


@pytest.mark.asyncio
async def test_create_audit_log_stores_enum_values_and_changes(db):
    audit_id = await create_audit_log(
        db,
        action=AuditAction.COMMISSION_STATUS_CHANGED,
        actor_id="admin_1",
        partner_id="partner_1",
        resource_type=AuditResource.COMMISSION_LEDGER,
        resource_id="in_1_partner_1",
        before_state={"status": "accrued"},
        after_state={"status": "paid"},
    )

    stored = db.audit_logs.docs[0]
    assert stored["audit_id"] == audit_id
    assert stored["action"] == "COMMISSION_STATUS_CHANGED"
    assert stored["resource_type"] == "commission_ledger"
    assert stored["metadata"]["changes"] == {"status": {"from": "accrued", "to": "paid"}}


@pytest.mark.asyncio
async def test_create_audit_log_swallows_store_failure(db):
    db.audit_logs.insert_one = AsyncMock(side_effect=AutoReconnect("primary stepped down"))

    audit_id = await create_audit_log(
        db,
        action=AuditAction.PAYOUT_REPORT_GENERATED,
        resource_type=AuditResource.PAYOUT_REPORT,
        resource_id="payout-2025-01",
    )

    assert audit_id is None


@pytest.mark.asyncio
async def test_audit_history_is_newest_first_for_one_resource(db):
    now = datetime.now(timezone.utc)
    db.audit_logs.seed(
        {"audit_id": "a1", "action": "COMMISSION_ACCRUED", "resource_type": "commission_ledger",
         "resource_id": "in_1_partner_1", "timestamp": now - timedelta(days=2)},
        {"audit_id": "a2", "action": "COMMISSION_STATUS_CHANGED", "resource_type": "commission_ledger",
         "resource_id": "in_1_partner_1", "timestamp": now},
        {"audit_id": "a3", "action": "COMMISSION_ACCRUED", "resource_type": "commission_ledger",
         "resource_id": "in_2_partner_1", "timestamp": now},
    )

    history = await get_audit_logs_for_resource(db, AuditResource.COMMISSION_LEDGER, "in_1_partner_1")

    assert [h["audit_id"] for h in history] == ["a2", "a1"]
    assert all("_id" not in h for h in history)
