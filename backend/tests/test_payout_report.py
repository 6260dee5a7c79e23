"""
Monthly payout report and the admin commission routes.
"""
from datetime import datetime, timezone

import pytest

from models import AuditAction, UserRole
from models.commissions import LedgerStatus
from services.payout_report_service import (
    CSV_HEADERS,
    PayoutReportService,
    format_amount,
    month_range,
    previous_month,
)

JAN = datetime(2025, 1, 15, tzinfo=timezone.utc)
FEB = datetime(2025, 2, 3, tzinfo=timezone.utc)


def test_month_range_is_half_open_and_rolls_over_year():
    start, end = month_range("2025-12")
    assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_month_range_rejects_bad_format():
    with pytest.raises(ValueError):
        month_range("January")


def test_previous_month():
    assert previous_month(datetime(2025, 1, 10, tzinfo=timezone.utc)) == "2024-12"
    assert previous_month(datetime(2025, 7, 1, tzinfo=timezone.utc)) == "2025-06"


def test_format_amount():
    assert format_amount(12345, "usd") == "123.45 USD"


@pytest.fixture
def january_ledger(add_partner, add_ledger_entry):
    add_partner("partner_a", stripe_connect_id="acct_a", company_name="Acme")
    add_partner("partner_b")
    add_ledger_entry("in_1", partner_id="partner_a", commission_amount=100, created_at=JAN)
    add_ledger_entry("in_2", partner_id="partner_a", commission_amount=200, created_at=JAN)
    add_ledger_entry("in_3", partner_id="partner_b", commission_amount=500, created_at=JAN)
    add_ledger_entry("in_4", partner_id="partner_b", commission_amount=70, status=LedgerStatus.PAID, created_at=JAN)
    add_ledger_entry("in_5", partner_id="partner_a", commission_amount=900, created_at=FEB)
    add_ledger_entry("in_6", partner_id="partner_gone", commission_amount=40, created_at=JAN)


@pytest.mark.asyncio
async def test_generate_report_groups_accrued_entries(db, january_ledger):
    report = await PayoutReportService(db).generate_report("2025-01", generated_by="admin_1")

    assert report.status == "completed"
    assert report.total_partners == 2
    assert report.total_entries == 3
    assert report.total_commission_amount == 800
    assert report.currencies == ["USD"]
    assert report.warning_count == 1  # partner_gone

    b, a = report.partner_summaries
    assert (b.partner_id, b.total_commission_amount, b.entry_count) == ("partner_b", 500, 1)
    assert (a.partner_id, a.total_commission_amount, a.entry_count) == ("partner_a", 300, 2)
    assert sorted(a.commission_entries) == ["in_1_partner_a", "in_2_partner_a"]

    assert b.transfer_payload is None
    assert a.transfer_payload.destination == "acct_a"
    assert a.transfer_payload.amount == 300
    assert a.transfer_payload.currency == "usd"


@pytest.mark.asyncio
async def test_generate_report_leaves_ledger_statuses_untouched(db, january_ledger):
    await PayoutReportService(db).generate_report("2025-01")

    statuses = {d["stripe_invoice_id"]: d["status"] for d in db.commission_ledger.docs}
    assert statuses["in_1"] == "accrued"
    assert statuses["in_4"] == "paid"


@pytest.mark.asyncio
async def test_generate_report_renders_csv(db, january_ledger):
    report = await PayoutReportService(db).generate_report("2025-01")

    lines = report.csv_content.strip().splitlines()
    assert lines[0] == ",".join(CSV_HEADERS)
    assert lines[1].startswith("partner_b,")
    assert "3.00 USD" in lines[2]
    assert report.csv_file_name == "commissions-2025-01.csv"


@pytest.mark.asyncio
async def test_completed_report_is_returned_not_rebuilt(db, january_ledger, add_ledger_entry):
    service = PayoutReportService(db)
    first = await service.generate_report("2025-01")
    add_ledger_entry("in_late", partner_id="partner_a", commission_amount=1, created_at=JAN)

    again = await service.generate_report("2025-01")
    rebuilt = await service.generate_report("2025-01", regenerate=True)

    assert again.total_commission_amount == first.total_commission_amount
    assert rebuilt.total_commission_amount == first.total_commission_amount + 1
    assert len(db.payout_reports.docs) == 1
    assert db.audit_logs.docs[-1]["action"] == AuditAction.PAYOUT_REPORT_GENERATED


@pytest.mark.asyncio
async def test_empty_month_produces_empty_report(db):
    report = await PayoutReportService(db).generate_report("2024-06")

    assert report.total_partners == 0
    assert report.partner_summaries == []
    assert report.csv_content.strip() == ",".join(CSV_HEADERS)


# =============================================================================
# Admin routes
# =============================================================================

def _admin(auth_headers):
    return auth_headers(role=UserRole.ROLE_ADMIN, sub="admin_1")


def test_admin_routes_reject_partners(client, auth_headers):
    response = client.post("/api/admin/payouts/reports", params={"month": "2025-01"},
                           headers=auth_headers(partner_id="partner_a"))
    assert response.status_code == 403


def test_generate_and_fetch_report_over_http(client, january_ledger, auth_headers):
    created = client.post("/api/admin/payouts/reports", params={"month": "2025-01"}, headers=_admin(auth_headers))
    assert created.status_code == 200
    assert created.json()["total_commission_amount"] == 800
    assert "csv_content" not in created.json()

    fetched = client.get("/api/admin/payouts/reports/2025-01", headers=_admin(auth_headers))
    assert fetched.status_code == 200
    assert fetched.json()["generated_by"] == "admin_1"

    csv_response = client.get("/api/admin/payouts/reports/2025-01/csv", headers=_admin(auth_headers))
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert "commissions-2025-01.csv" in csv_response.headers["content-disposition"]
    assert csv_response.text.splitlines()[0] == ",".join(CSV_HEADERS)


def test_bad_month_is_400(client, auth_headers):
    response = client.post("/api/admin/payouts/reports", params={"month": "2025-13"}, headers=_admin(auth_headers))
    assert response.status_code == 400


def test_missing_report_is_404(client, auth_headers):
    assert client.get("/api/admin/payouts/reports/1999-01", headers=_admin(auth_headers)).status_code == 404


def test_rebuild_stats_route(client, db, add_partner, add_ledger_entry, auth_headers):
    add_partner("partner_a")
    add_ledger_entry("in_1", partner_id="partner_a", commission_amount=120)

    response = client.post("/api/admin/partners/partner_a/stats/rebuild", headers=_admin(auth_headers))

    assert response.status_code == 200
    assert response.json()["stats"]["total_commission_earned"] == 120
    assert client.post("/api/admin/partners/ghost/stats/rebuild", headers=_admin(auth_headers)).status_code == 404


def test_commission_status_transition_route(client, add_ledger_entry, auth_headers):
    entry = add_ledger_entry("in_1", partner_id="partner_a")
    url = f"/api/admin/commissions/{entry.ledger_entry_id}/status"

    paid = client.post(url, json={"status": "paid"}, headers=_admin(auth_headers))
    assert paid.status_code == 200
    assert paid.json()["status"] == "paid"

    assert client.post(url, json={"status": "reversed"}, headers=_admin(auth_headers)).status_code == 409
    assert client.post(url, json={"status": "accrued"}, headers=_admin(auth_headers)).status_code == 400
    assert client.post("/api/admin/commissions/in_x_partner_a/status", json={"status": "paid"},
                       headers=_admin(auth_headers)).status_code == 404

    detail = client.get(f"/api/admin/commissions/{entry.ledger_entry_id}", headers=_admin(auth_headers)).json()
    assert detail["entry"]["status"] == "paid"
    assert detail["audit_history"][0]["action"] == AuditAction.COMMISSION_STATUS_CHANGED.value
