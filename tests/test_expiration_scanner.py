"""
Tests: expiration scanner.

Window arithmetic (deadline = target month end + threshold, eligible once
the deadline is strictly in the past):

    regular 2025-06 → deadline 2025-09-28, expires from 2025-09-29
    mto/spo 2025-06 → deadline 2025-07-30, expires from 2025-07-31
"""

from datetime import date

import pytest
from sqlalchemy import func, select

from merchops.models import db as _db
from merchops.models.audit import AuditLog
from merchops.models.projection import ExpiredProjection, Projection
from merchops.services.expiration_scanner import check_expired_projections
from merchops.services.expired_verification import restore_expired_projection


def _expired_rows(projection_id=None) -> list[ExpiredProjection]:
    stmt = select(ExpiredProjection).order_by(ExpiredProjection.id)
    if projection_id is not None:
        stmt = stmt.where(ExpiredProjection.original_projection_id == projection_id)
    return list(_db.session.execute(stmt).scalars())


def _status(projection_id: int) -> str:
    _db.session.expire_all()
    return _db.session.get(Projection, projection_id).match_status


class TestEligibility:
    def test_regular_deadline_day_is_not_expired(self, make_projection):
        p = make_projection(month=6)
        result = check_expired_projections(today=date(2025, 9, 28))
        assert result["expiredCount"] == 0
        assert _status(p.id) == "unmatched"

    def test_regular_day_after_deadline_expires(self, make_projection):
        p = make_projection(month=6)

        result = check_expired_projections(today=date(2025, 9, 29))

        assert result == {"regularExpired": 1, "spoExpired": 0, "expiredCount": 1, "errors": []}
        assert _status(p.id) == "expired"
        [record] = _expired_rows(p.id)
        assert record.verification_status == "pending"
        assert record.match_status_at_expiry == "unmatched"
        assert record.threshold_days == 90
        assert record.target_month_end == date(2025, 6, 30)
        assert record.days_overdue == 1
        assert record.expiration_reason == "past_90_day_window: order window passed with no matching PO"
        assert record.sku == "ABC-100"
        assert record.quantity == 1000

    @pytest.mark.parametrize("order_type", ["mto", "spo"])
    def test_short_window_order_types(self, make_projection, order_type):
        p = make_projection(month=6, order_type=order_type)

        assert check_expired_projections(today=date(2025, 7, 30))["expiredCount"] == 0
        result = check_expired_projections(today=date(2025, 7, 31))

        assert result["spoExpired"] == 1
        assert result["regularExpired"] == 0
        assert _expired_rows(p.id)[0].threshold_days == 30

    def test_partial_projection_snapshot_keeps_actuals(self, make_projection):
        p = make_projection(
            month=6, match_status="partial", matched_po_number="001-1111111",
            actual_quantity=400, actual_value=200000,
        )

        check_expired_projections(today=date(2025, 10, 15))

        [record] = _expired_rows(p.id)
        assert record.match_status_at_expiry == "partial"
        assert record.matched_po_number == "001-1111111"
        assert record.actual_quantity == 400
        assert record.days_overdue == 17
        assert record.expiration_reason.endswith("partial PO coverage")

    @pytest.mark.parametrize("status", ["matched", "removed", "verified_unmatched"])
    def test_closed_projections_are_ignored(self, make_projection, status):
        make_projection(month=1, match_status=status)
        assert check_expired_projections(today=date(2025, 12, 31))["expiredCount"] == 0
        assert _expired_rows() == []

    def test_writes_audit_row(self, make_projection):
        p = make_projection(month=6)
        check_expired_projections(today=date(2025, 9, 29))
        log = _db.session.execute(
            select(AuditLog).where(AuditLog.action == "projection.expire")
        ).scalar_one()
        assert log.entity_id == str(p.id)
        assert log.diff["match_status"] == {"old": "unmatched", "new": "expired"}


class TestIdempotence:
    def test_second_run_creates_nothing(self, make_projection):
        make_projection(month=6)
        check_expired_projections(today=date(2025, 9, 29))

        again = check_expired_projections(today=date(2025, 9, 30))

        assert again["expiredCount"] == 0
        assert len(_expired_rows()) == 1

    @pytest.mark.parametrize("blocking", ["pending", "cancelled"])
    def test_open_record_blocks_new_snapshot(self, make_projection, blocking):
        p = make_projection(month=6)
        record = ExpiredProjection.snapshot_of(p, today=date(2025, 9, 29), reason="manual")
        record.verification_status = blocking
        if blocking == "cancelled":
            record.verified_by = "jane"
        _db.session.add(record)
        _db.session.commit()

        result = check_expired_projections(today=date(2025, 10, 1))

        assert result["expiredCount"] == 0
        assert _status(p.id) == "unmatched"

    def test_restored_projection_can_expire_again(self, make_projection):
        p = make_projection(month=6)
        check_expired_projections(today=date(2025, 9, 29))
        [first] = _expired_rows(p.id)
        restore_expired_projection(first.id, "jane")
        assert _status(p.id) == "unmatched"

        result = check_expired_projections(today=date(2025, 10, 1))

        assert result["expiredCount"] == 1
        rows = _expired_rows(p.id)
        assert [r.verification_status for r in rows] == ["restored", "pending"]
        assert rows[1].days_overdue == 3


class TestChunking:
    def test_all_chunks_are_scanned(self, make_projection):
        for i in range(5):
            make_projection(sku=f"SKU-{i}", month=6)
        make_projection(sku="LATE", month=9)

        result = check_expired_projections(today=date(2025, 9, 29), chunk_size=2)

        assert result["expiredCount"] == 5
        assert _db.session.scalar(select(func.count(ExpiredProjection.id))) == 5

    def test_chunk_size_defaults_from_config(self, app, make_projection):
        assert app.config["PROJECTION_SCAN_CHUNK_SIZE"] == 2
        for i in range(3):
            make_projection(sku=f"SKU-{i}", month=6, order_type="spo")
        assert check_expired_projections(today=date(2025, 8, 1))["spoExpired"] == 3


class TestConflicts:
    def test_concurrent_write_is_reported_not_raised(self, make_projection, bump_version):
        p = make_projection(month=6)
        bump_version(p)

        result = check_expired_projections(today=date(2025, 9, 29))

        assert result["expiredCount"] == 0
        assert len(result["errors"]) == 1
        assert f"Failed to expire projection {p.id}" in result["errors"][0]
        assert _expired_rows() == []

    def test_one_conflict_does_not_stop_the_run(self, make_projection, bump_version):
        stale = make_projection(sku="A", month=6)
        fresh = make_projection(sku="B", month=6)
        bump_version(stale)

        result = check_expired_projections(today=date(2025, 9, 29))

        assert result["expiredCount"] == 1
        assert len(result["errors"]) == 1
        assert _status(fresh.id) == "expired"


class TestCli:
    def test_command_reports_counts(self, app, make_projection):
        make_projection(month=6)
        runner = app.test_cli_runner()
        out = runner.invoke(args=["check-expired-projections", "--as-of", "2025-09-29"])
        assert out.exit_code == 0
        assert "Expired 1 projections (1 regular, 0 mto/spo), 0 errors" in out.output

    def test_bad_date_is_rejected(self, app):
        out = app.test_cli_runner().invoke(args=["check-expired-projections", "--as-of", "nope"])
        assert out.exit_code != 0
