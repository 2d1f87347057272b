"""
Tests: projection matching engine.

Covers:
  - automatic run: candidate rules, tie-break order, accumulation, summary counts
  - input problems: unknown vendor, missing fields, ambiguous candidates
  - manual overrides: match, unmatch, remove, order-type reclassification

All test data created via the conftest factories.
The `session` autouse fixture recreates the schema after every test.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

import merchops.services.projection_matching as svc
from merchops.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from merchops.models import db as _db
from merchops.models.audit import AuditLog, audit_trail, write_audit
from merchops.models.projection import Projection, ProjectionPoAllocation
from merchops.models.purchasing import POFact

NOW = datetime(2025, 3, 20, 12, 0, tzinfo=timezone.utc)


def _reload(projection_id: int) -> Projection:
    _db.session.expire_all()
    return _db.session.get(Projection, projection_id)


def _audit_actions(projection_id: int) -> list[str]:
    return [row.action for row in audit_trail("projection", projection_id)]


# ── Automatic run ─────────────────────────────────────────────────────────────


class TestAutomaticMatch:
    def test_partial_coverage_scores_variance(self, make_projection, make_po):
        p = make_projection()
        fact = make_po()

        summary = svc.match_projections_to_pos([fact], now=NOW)

        assert summary == {
            "processed": 1, "matched": 0, "partial": 1,
            "variances": 1, "skipped": 0, "errors": [],
        }
        p = _reload(p.id)
        assert p.match_status == "partial"
        assert p.matched_po_number == "001-1234567"
        assert p.actual_quantity == 850
        assert p.actual_value == 420000
        assert p.quantity_variance == -150
        assert p.value_variance == -80000
        assert p.variance_pct == -16
        assert [a.po_number for a in p.allocations] == ["001-1234567"]
        assert p.allocations[0].source == "auto"
        assert _audit_actions(p.id) == ["projection.match"]

    def test_ninety_percent_coverage_is_matched(self, make_projection, make_po):
        p = make_projection()
        fact = make_po(order_quantity=900, total_value=460000)

        summary = svc.match_projections_to_pos([fact], now=NOW)

        assert summary["matched"] == 1
        assert summary["partial"] == 0
        assert summary["variances"] == 0
        assert _reload(p.id).match_status == "matched"

    def test_dict_payload_with_camel_case_keys(self, make_projection):
        p = make_projection()

        summary = svc.match_projections_to_pos([{
            "poNumber": "001-7654321",
            "vendor": "riches furniture",
            "client": "cb",
            "sku": "abc-100",
            "orderQuantity": "1000",
            "totalValue": "500000",
            "originalShipDate": "2025-03-02",
        }], now=NOW)

        assert summary["matched"] == 1
        p = _reload(p.id)
        assert p.match_status == "matched"
        assert p.variance_pct == 0

    def test_po_date_used_when_ship_date_missing(self, make_projection, make_po):
        p = make_projection()
        fact = make_po(original_ship_date=None, po_date=date(2025, 3, 1))

        svc.match_projections_to_pos([fact], now=NOW)

        assert _reload(p.id).match_status == "partial"

    def test_top_up_accumulates_across_pos(self, make_projection, make_po):
        p = make_projection()
        first = make_po()
        second = make_po(po_number="001-1234568", order_quantity=100, total_value=50000)

        summary = svc.match_projections_to_pos([first, second], now=NOW)

        assert summary["partial"] == 1
        assert summary["matched"] == 1
        assert summary["variances"] == 0
        p = _reload(p.id)
        assert p.match_status == "matched"
        assert p.actual_quantity == 950
        assert p.actual_value == 470000
        assert p.variance_pct == -6
        assert p.matched_po_number == "001-1234568"
        assert sorted(a.po_number for a in p.allocations) == ["001-1234567", "001-1234568"]

    def test_rerun_is_idempotent(self, make_projection, make_po):
        p = make_projection()
        facts = [make_po(), make_po(po_number="001-1234568", order_quantity=100, total_value=50000)]
        svc.match_projections_to_pos(facts, now=NOW)

        again = svc.match_projections_to_pos(facts, now=NOW)

        assert again["skipped"] == 2
        assert again["matched"] == 0
        assert again["partial"] == 0
        p = _reload(p.id)
        assert p.actual_quantity == 950
        assert len(p.allocations) == 2

    def test_terminal_projections_are_never_candidates(self, make_projection, make_po):
        make_projection(match_status="removed", removal_reason="dropped")
        make_projection(match_status="expired")
        fact = make_po()

        summary = svc.match_projections_to_pos([fact], now=NOW)

        assert summary["skipped"] == 1
        assert summary["errors"] == []


class TestCandidateRules:
    def test_adjacent_month_is_in_window(self, make_projection, make_po):
        p = make_projection(month=2)
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(p.id).match_status == "partial"

    def test_window_crosses_year_boundary(self, make_projection, make_po):
        p = make_projection(year=2024, month=12)
        fact = make_po(original_ship_date=date(2025, 1, 10))
        svc.match_projections_to_pos([fact], now=NOW)
        assert _reload(p.id).match_status == "partial"

    def test_two_months_away_is_out_of_window(self, make_projection, make_po):
        p = make_projection(month=5)
        summary = svc.match_projections_to_pos([make_po()], now=NOW)
        assert summary["skipped"] == 1
        assert _reload(p.id).match_status == "unmatched"

    def test_brand_alias_ck_matches_c_and_k(self, make_projection, make_po):
        p = make_projection(brand="C&K")
        svc.match_projections_to_pos([make_po(client="CK")], now=NOW)
        assert _reload(p.id).match_status == "partial"

    def test_brand_mismatch_is_skipped(self, make_projection, make_po):
        p = make_projection(brand="CB2")
        summary = svc.match_projections_to_pos([make_po(client="CB")], now=NOW)
        assert summary["skipped"] == 1
        assert _reload(p.id).match_status == "unmatched"

    def test_po_without_client_ignores_brand(self, make_projection, make_po):
        p = make_projection(brand="CB2")
        svc.match_projections_to_pos([make_po(client=None)], now=NOW)
        assert _reload(p.id).match_status == "partial"

    def test_description_fallback_when_sku_differs(self, make_projection, make_po):
        p = make_projection()
        fact = make_po(sku="XYZ-999", sku_description="  aviator LOUNGE   chair natural ")
        svc.match_projections_to_pos([fact], now=NOW)
        assert _reload(p.id).match_status == "partial"

    def test_mto_collection_from_program_description(self, make_projection, make_po):
        regular = make_projection(sku="HX-1", sku_description=None, collection="hoxton")
        mto = make_projection(sku="HX-2", sku_description=None, collection="hoxton", order_type="mto")
        fact = make_po(sku="OTHER", program_description="MTO HOXTON FEB 2026")

        svc.match_projections_to_pos([fact], now=NOW)

        assert _reload(mto.id).match_status == "partial"
        assert _reload(regular.id).match_status == "unmatched"

    def test_sku_hit_wins_over_description_hit(self, make_projection, make_po):
        by_sku = make_projection(sku_description="Something Else")
        by_desc = make_projection(sku="ZZZ-1")
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(by_sku.id).match_status == "partial"
        assert _reload(by_desc.id).match_status == "unmatched"


class TestTieBreak:
    def test_exact_month_beats_adjacent(self, make_projection, make_po):
        adjacent = make_projection(month=4, projection_run_date=date(2024, 11, 1))
        exact = make_projection(month=3)
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(exact.id).match_status == "partial"
        assert _reload(adjacent.id).match_status == "unmatched"

    def test_oldest_run_date_wins(self, make_projection, make_po):
        newer = make_projection(projection_run_date=date(2025, 1, 5))
        older = make_projection(projection_run_date=date(2024, 12, 1))
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(older.id).match_status == "partial"
        assert _reload(newer.id).match_status == "unmatched"

    def test_missing_run_date_ranks_last(self, make_projection, make_po):
        undated = make_projection(projection_run_date=None)
        dated = make_projection()
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(dated.id).match_status == "partial"
        assert _reload(undated.id).match_status == "unmatched"

    def test_closest_remaining_quantity_wins(self, make_projection, make_po):
        far = make_projection(quantity=1000)
        close = make_projection(quantity=900, projection_value=450000)
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(close.id).match_status == "matched"
        assert _reload(far.id).match_status == "unmatched"

    def test_dead_heat_is_reported_and_skipped(self, make_projection, make_po):
        a = make_projection()
        b = make_projection()

        summary = svc.match_projections_to_pos([make_po()], now=NOW)

        assert summary["skipped"] == 1
        assert len(summary["errors"]) == 1
        assert "001-1234567" in summary["errors"][0]
        assert str(a.id) in summary["errors"][0] and str(b.id) in summary["errors"][0]
        assert _reload(a.id).match_status == "unmatched"
        assert _reload(b.id).match_status == "unmatched"


class TestInputProblems:
    def test_unknown_vendor_is_skipped_silently(self, make_projection, make_po):
        make_projection()
        summary = svc.match_projections_to_pos([make_po(vendor="Nobody Ltd")], now=NOW)
        assert summary["skipped"] == 1
        assert summary["errors"] == []

    def test_missing_ship_and_po_date_is_an_error(self, make_projection, make_po):
        make_projection()
        fact = make_po(original_ship_date=None, po_date=None)
        summary = svc.match_projections_to_pos([fact], now=NOW)
        assert summary["skipped"] == 1
        assert summary["errors"] == ["PO 001-1234567 has no ship date or PO date; skipped"]

    def test_missing_po_number_is_an_error(self, vendor):
        summary = svc.match_projections_to_pos([{"vendor": "Riches", "sku": "ABC-100"}], now=NOW)
        assert summary["processed"] == 1
        assert summary["errors"] == ["PO fact #1 has no po_number; skipped"]

    def test_missing_vendor_is_an_error(self, vendor):
        summary = svc.match_projections_to_pos([{"po_number": "X-1", "po_date": "2025-03-01"}], now=NOW)
        assert summary["errors"] == ["PO X-1 has no vendor; skipped"]

    @pytest.mark.parametrize("amounts,field", [
        ({"orderQuantity": "n/a", "totalValue": 420000}, "order_quantity"),
        ({"orderQuantity": 850, "totalValue": "bad"}, "total_value"),
        ({"orderQuantity": -100, "totalValue": 420000}, "order_quantity"),
    ])
    def test_malformed_amount_is_an_error(self, make_projection, amounts, field):
        p = make_projection()
        fact = {
            "poNumber": "001-1234567", "vendor": "Riches", "sku": "ABC-100",
            "originalShipDate": "2025-03-14", **amounts,
        }
        summary = svc.match_projections_to_pos([fact], now=NOW)

        assert summary["errors"] == [f"PO 001-1234567 has an invalid {field}; skipped"]
        assert summary["partial"] == 0
        assert _reload(p.id).match_status == "unmatched"

    def test_absent_amounts_read_as_zero(self, vendor):
        fact = POFact.from_dict({"po_number": "X-1", "vendor": "Riches", "po_date": "2025-03-01"})
        assert (fact.order_quantity, fact.total_value) == (0, 0)

    def test_empty_batch(self, vendor):
        summary = svc.match_projections_to_pos([], now=NOW)
        assert summary == {
            "processed": 0, "matched": 0, "partial": 0,
            "variances": 0, "skipped": 0, "errors": [],
        }


# ── Manual overrides ──────────────────────────────────────────────────────────


class TestManualMatch:
    def test_manual_match_records_actor_and_source(self, make_projection, make_po):
        p = make_projection()
        make_po()

        result = svc.manual_match_projection(p.id, " 001-1234567 ", actor="jane", now=NOW)

        assert result.match_status == "partial"
        assert result.allocations[0].source == "manual"
        log = _db.session.execute(
            select(AuditLog).where(AuditLog.action == "projection.manual_match")
        ).scalar_one()
        assert log.actor == "jane"
        assert log.diff["po_number"] == "001-1234567"
        assert log.diff["match_status"] == {"old": "unmatched", "new": "partial"}

    def test_manual_match_replaces_previous_match(self, make_projection, make_po):
        p = make_projection()
        svc.match_projections_to_pos([make_po()], now=NOW)
        make_po(po_number="001-9999999", order_quantity=950, total_value=480000)

        svc.manual_match_projection(p.id, "001-9999999", now=NOW)

        p = _reload(p.id)
        assert p.match_status == "matched"
        assert p.actual_quantity == 950
        assert p.matched_po_number == "001-9999999"
        assert [a.po_number for a in p.allocations] == ["001-9999999"]
        released = _db.session.execute(
            select(ProjectionPoAllocation).where(ProjectionPoAllocation.po_number == "001-1234567")
        ).scalar_one_or_none()
        assert released is None

    def test_rematching_same_po_is_allowed(self, make_projection, make_po):
        p = make_projection()
        svc.match_projections_to_pos([make_po()], now=NOW)
        svc.manual_match_projection(p.id, "001-1234567", now=NOW)
        p = _reload(p.id)
        assert p.actual_quantity == 850
        assert len(p.allocations) == 1

    def test_po_allocated_elsewhere_conflicts(self, make_projection, make_po):
        owner = make_projection()
        other = make_projection(sku="DEF-200")
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert _reload(owner.id).match_status == "partial"

        with pytest.raises(ConflictError):
            svc.manual_match_projection(other.id, "001-1234567", now=NOW)
        assert _reload(other.id).match_status == "unmatched"

    def test_blank_po_number(self, make_projection):
        p = make_projection()
        with pytest.raises(ValidationError):
            svc.manual_match_projection(p.id, "  ")

    def test_unknown_po(self, make_projection):
        p = make_projection()
        with pytest.raises(NotFoundError) as exc:
            svc.manual_match_projection(p.id, "NOPE-1")
        assert exc.value.resource == "PurchaseOrder"

    def test_unknown_projection(self, vendor):
        with pytest.raises(NotFoundError):
            svc.manual_match_projection(9999, "001-1234567")

    @pytest.mark.parametrize("status", ["removed", "expired", "verified_unmatched"])
    def test_closed_projection_cannot_be_matched(self, make_projection, make_po, status):
        p = make_projection(match_status=status)
        make_po()
        with pytest.raises(InvalidTransitionError) as exc:
            svc.manual_match_projection(p.id, "001-1234567")
        assert exc.value.current_status == status


class TestUnmatch:
    def test_unmatch_clears_match_and_frees_po(self, make_projection, make_po):
        p = make_projection()
        fact = make_po()
        svc.match_projections_to_pos([fact], now=NOW)

        svc.unmatch_projection(p.id, actor="jane")

        p = _reload(p.id)
        assert p.match_status == "unmatched"
        assert p.matched_po_number is None
        assert p.actual_quantity is None
        assert p.variance_pct is None
        assert p.allocations == []
        assert _audit_actions(p.id) == ["projection.match", "projection.unmatch"]

        # The released PO is available to the next run again.
        summary = svc.match_projections_to_pos([fact], now=NOW)
        assert summary["partial"] == 1

    def test_unmatch_of_unmatched_is_noop(self, make_projection):
        p = make_projection()
        version = p.version
        result = svc.unmatch_projection(p.id)
        assert result.match_status == "unmatched"
        assert result.version == version
        assert _audit_actions(p.id) == []

    @pytest.mark.parametrize("status", ["removed", "expired", "verified_unmatched"])
    def test_unmatch_closed_projection(self, make_projection, status):
        p = make_projection(match_status=status)
        with pytest.raises(InvalidTransitionError):
            svc.unmatch_projection(p.id)


class TestRemove:
    def test_remove_sets_reason_and_timestamp(self, make_projection):
        p = make_projection()
        result = svc.mark_projection_removed(p.id, "Vendor discontinued SKU", actor="jane", now=NOW)
        assert result.match_status == "removed"
        assert result.removal_reason == "Vendor discontinued SKU"
        assert result.removed_at is not None
        assert _audit_actions(p.id) == ["projection.remove"]

    def test_partial_projection_can_be_removed(self, make_projection, make_po):
        p = make_projection()
        svc.match_projections_to_pos([make_po()], now=NOW)
        assert svc.mark_projection_removed(p.id, "cancelled program").match_status == "removed"

    def test_reason_is_required(self, make_projection):
        p = make_projection()
        with pytest.raises(ValidationError):
            svc.mark_projection_removed(p.id, "   ")
        assert _reload(p.id).match_status == "unmatched"

    @pytest.mark.parametrize("status", ["matched", "removed", "expired", "verified_unmatched"])
    def test_only_open_projections_can_be_removed(self, make_projection, status):
        p = make_projection(match_status=status)
        with pytest.raises(InvalidTransitionError):
            svc.mark_projection_removed(p.id, "reason")


class TestOrderType:
    def test_reclassify_changes_threshold(self, make_projection):
        p = make_projection()
        assert p.threshold_days == 90
        result = svc.update_projection_order_type(p.id, "MTO", actor="jane")
        assert result.order_type == "mto"
        assert result.threshold_days == 30
        assert result.match_status == "unmatched"
        assert _audit_actions(p.id) == ["projection.order_type"]

    def test_same_type_is_noop(self, make_projection):
        p = make_projection()
        svc.update_projection_order_type(p.id, "regular")
        assert _audit_actions(p.id) == []

    def test_invalid_type(self, make_projection):
        p = make_projection()
        with pytest.raises(ValidationError):
            svc.update_projection_order_type(p.id, "bespoke")

    @pytest.mark.parametrize("status", ["removed", "verified_unmatched"])
    def test_terminal_projection_cannot_be_reclassified(self, make_projection, status):
        p = make_projection(match_status=status)
        with pytest.raises(InvalidTransitionError):
            svc.update_projection_order_type(p.id, "spo")


class TestAuditWriter:
    def test_action_must_belong_to_entity_type(self, make_projection):
        p = make_projection()
        with pytest.raises(ValueError):
            write_audit(entity_type="projection", entity_id=p.id, action="expired_projection.verify")
        with pytest.raises(ValueError):
            write_audit(entity_type="vendor", entity_id=1, action="projection.match")
