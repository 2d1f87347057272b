"""Projection reconciliation & lifecycle tables.

Revision ID: a1b2c3d4e501
Revises:
Create Date: 2025-03-03
"""

from alembic import op
import sqlalchemy as sa

revision = "a1b2c3d4e501"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Purchasing reference facts ──
    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), unique=True, nullable=False),
        sa.Column("vendor_code", sa.String(64), nullable=True, index=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "vendor_aliases",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("alias", sa.String(255), unique=True, nullable=False),
        sa.Column("vendor_id", sa.Integer, sa.ForeignKey("vendors.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_table(
        "po_headers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("po_number", sa.String(64), unique=True, nullable=False),
        sa.Column("vendor", sa.String(255), nullable=True),
        sa.Column("client", sa.String(64), nullable=True),
        sa.Column("sku", sa.String(64), nullable=True, index=True),
        sa.Column("sku_description", sa.Text, nullable=True),
        sa.Column("order_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("po_date", sa.Date, nullable=True),
        sa.Column("original_ship_date", sa.Date, nullable=True),
        sa.Column("program_description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── Projections ──
    op.create_table(
        "projections",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("vendor_id", sa.Integer, sa.ForeignKey("vendors.id", ondelete="RESTRICT"),
                  nullable=False, index=True),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("sku_description", sa.Text, nullable=True),
        sa.Column("collection", sa.String(100), nullable=True),
        sa.Column("brand", sa.String(64), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("month", sa.Integer, nullable=False),
        sa.Column("order_type", sa.String(20), nullable=False, server_default="regular"),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("projection_value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("import_batch_id", sa.String(64), nullable=True, index=True),
        sa.Column("projection_run_date", sa.Date, nullable=True),
        sa.Column("source_file", sa.String(255), nullable=True),
        sa.Column("match_status", sa.String(20), nullable=False, server_default="unmatched"),
        sa.Column("matched_po_number", sa.String(64), nullable=True),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_quantity", sa.Integer, nullable=True),
        sa.Column("actual_value", sa.BigInteger, nullable=True),
        sa.Column("quantity_variance", sa.Integer, nullable=True),
        sa.Column("value_variance", sa.BigInteger, nullable=True),
        sa.Column("variance_pct", sa.Integer, nullable=True),
        sa.Column("removal_reason", sa.Text, nullable=True),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_projection_month"),
        sa.CheckConstraint("quantity >= 0", name="ck_projection_quantity"),
        sa.CheckConstraint("projection_value >= 0", name="ck_projection_value"),
    )
    op.create_index("idx_projection_key", "projections",
                    ["vendor_id", "sku", "year", "month", "order_type"])
    op.create_index("idx_projection_status", "projections", ["match_status"])

    op.create_table(
        "projection_po_allocations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("projection_id", sa.Integer, sa.ForeignKey("projections.id", ondelete="CASCADE"),
                  nullable=False, index=True),
        sa.Column("po_number", sa.String(64), nullable=False, unique=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("source", sa.String(20), nullable=False, server_default="auto"),
        sa.Column("allocated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── Expired projections ──
    op.create_table(
        "expired_projections",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("original_projection_id", sa.Integer, nullable=False),
        sa.Column("vendor_id", sa.Integer, sa.ForeignKey("vendors.id", ondelete="RESTRICT"),
                  nullable=False, index=True),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("sku_description", sa.Text, nullable=True),
        sa.Column("collection", sa.String(100), nullable=True),
        sa.Column("brand", sa.String(64), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("month", sa.Integer, nullable=False),
        sa.Column("order_type", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("projection_value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("import_batch_id", sa.String(64), nullable=True),
        sa.Column("projection_run_date", sa.Date, nullable=True),
        sa.Column("source_file", sa.String(255), nullable=True),
        sa.Column("match_status_at_expiry", sa.String(20), nullable=False),
        sa.Column("matched_po_number", sa.String(64), nullable=True),
        sa.Column("actual_quantity", sa.Integer, nullable=True),
        sa.Column("actual_value", sa.BigInteger, nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expiration_reason", sa.Text, nullable=False),
        sa.Column("threshold_days", sa.Integer, nullable=False),
        sa.Column("target_month_end", sa.Date, nullable=False),
        sa.Column("days_overdue", sa.Integer, nullable=False),
        sa.Column("verification_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.String(255), nullable=True),
        sa.Column("verification_notes", sa.Text, nullable=True),
        sa.Column("restored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_by", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.CheckConstraint(
            "verification_status IN ('pending', 'verified', 'cancelled', 'restored')",
            name="ck_expired_verification_status",
        ),
        sa.CheckConstraint(
            "verification_status = 'restored' OR (restored_by IS NULL AND restored_at IS NULL)",
            name="ck_expired_restore_fields",
        ),
        sa.CheckConstraint(
            "verification_status IN ('verified', 'cancelled') OR (verified_by IS NULL AND verified_at IS NULL)",
            name="ck_expired_verify_fields",
        ),
    )
    op.create_index("idx_expired_original_status", "expired_projections",
                    ["original_projection_id", "verification_status"])

    # ── Forecast history ──
    op.create_table(
        "projection_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("projection_id", sa.Integer, nullable=False, index=True),
        sa.Column("vendor_id", sa.Integer, sa.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("vendor_code", sa.String(64), nullable=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("sku_description", sa.Text, nullable=True),
        sa.Column("collection", sa.String(100), nullable=True),
        sa.Column("brand", sa.String(64), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("month", sa.Integer, nullable=False),
        sa.Column("order_type", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("projection_value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("import_batch_id", sa.String(64), nullable=True),
        sa.Column("projection_run_date", sa.Date, nullable=True),
        sa.Column("match_status", sa.String(20), nullable=False),
        sa.Column("matched_po_number", sa.String(64), nullable=True),
        sa.Column("actual_quantity", sa.Integer, nullable=True),
        sa.Column("actual_value", sa.BigInteger, nullable=True),
        sa.Column("variance_pct", sa.Integer, nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_projection_history_vendor_sku", "projection_history", ["vendor_id", "sku", "year"])

    # ── Audit trail ──
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
        sa.Column("diff_json", sa.Text, server_default="{}"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_action", "audit_logs", ["action"])
    op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("projection_history")
    op.drop_table("expired_projections")
    op.drop_table("projection_po_allocations")
    op.drop_table("projections")
    op.drop_table("po_headers")
    op.drop_table("vendor_aliases")
    op.drop_table("vendors")
