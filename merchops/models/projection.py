"""
Merchandising Operations Platform
Projection domain models.

Models:
    - Projection: working row for one vendor forecast line (vendor, SKU,
      brand, target month, order type); the system of record
    - ProjectionPoAllocation: PO fact that contributed quantity/value to a
      projection (one PO → at most one projection)
    - ExpiredProjection: immutable snapshot taken when an open projection's
      order window lapses; owns the verification sub-lifecycle
    - ProjectionHistory: forecast values archived before a re-import
      overwrites them

Lifecycle (match_status):
    unmatched ⇄ partial / matched      (matching engine, manual match/unmatch)
    unmatched / partial → removed      (manual, terminal)
    unmatched / partial → expired      (expiration scanner)
    expired → unmatched                (restore)
    expired → verified_unmatched       (verify, terminal)
"""

from datetime import date, datetime, timedelta, timezone

from merchops.models import db
from merchops.utils.helpers import month_end


# ── Constants ────────────────────────────────────────────────────────────────

ORDER_TYPES = {"regular", "mto", "spo"}
SHORT_WINDOW_ORDER_TYPES = {"mto", "spo"}

MATCH_STATUSES = {"unmatched", "partial", "matched", "removed", "expired", "verified_unmatched"}
OPEN_MATCH_STATUSES = ("unmatched", "partial")
MATCHED_STATUSES = ("partial", "matched")

VERIFICATION_STATUSES = {"pending", "verified", "cancelled", "restored"}
VERIFICATION_DECISIONS = {"verified", "cancelled"}
# Snapshots in these states block a projection from being snapshotted again.
BLOCKING_VERIFICATION_STATUSES = ("pending", "cancelled")

# Days past the end of the target month before an open projection expires.
# Dashboard help text and the validation report both read this table.
EXPIRATION_THRESHOLD_DAYS = {
    "regular": 90,
    "mto": 30,
    "spo": 30,
}

# A projection counts as fully matched once actual quantity reaches 90%.
MATCH_COVERAGE_RATIO = 0.9

# |variance_pct| above this is flagged as a variance.
VARIANCE_ALERT_PCT = 10

PROJECTION_TRANSITIONS = {
    "unmatched": {"partial", "matched", "removed", "expired"},
    "partial": {"partial", "matched", "unmatched", "removed", "expired"},
    "matched": {"partial", "matched", "unmatched"},
    "expired": {"unmatched", "verified_unmatched"},
    "removed": set(),
    "verified_unmatched": set(),
}

VERIFICATION_TRANSITIONS = {
    "pending": {"verified", "cancelled", "restored"},
    "verified": set(),
    "cancelled": set(),
    "restored": set(),
}


def validate_projection_transition(old_status, new_status):
    """Return True if match_status may move from old_status to new_status."""
    return new_status in PROJECTION_TRANSITIONS.get(old_status, set())


def validate_verification_transition(old_status, new_status):
    """Return True if verification_status may move from old_status to new_status."""
    return new_status in VERIFICATION_TRANSITIONS.get(old_status, set())


def expiration_threshold_days(order_type: str | None) -> int:
    """Threshold in days for an order type; unknown types use the regular window."""
    return EXPIRATION_THRESHOLD_DAYS.get((order_type or "regular").lower(), EXPIRATION_THRESHOLD_DAYS["regular"])


def expiration_deadline(year: int, month: int, order_type: str | None) -> date:
    """Last day of the order window: target month end plus the threshold."""
    return month_end(year, month) + timedelta(days=expiration_threshold_days(order_type))


def _iso(value):
    return value.isoformat() if value else None


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECTION
# ═══════════════════════════════════════════════════════════════════════════

class Projection(db.Model):
    """
    A vendor's forecast for one (vendor, SKU, brand, year/month, order type).

    Writes go through the ``version`` optimistic lock: SQLAlchemy emits
    ``UPDATE ... WHERE id = ? AND version = ?`` and raises StaleDataError
    when another writer got there first.
    """

    __tablename__ = "projections"
    __table_args__ = (
        db.Index("idx_projection_key", "vendor_id", "sku", "year", "month", "order_type"),
        db.Index("idx_projection_status", "match_status"),
        db.CheckConstraint("month BETWEEN 1 AND 12", name="ck_projection_month"),
        db.CheckConstraint("quantity >= 0", name="ck_projection_quantity"),
        db.CheckConstraint("projection_value >= 0", name="ck_projection_value"),
    )

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(
        db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    vendor_code = db.Column(db.String(64), nullable=True)
    sku = db.Column(db.String(64), nullable=False)
    sku_description = db.Column(db.Text, nullable=True)
    collection = db.Column(db.String(100), nullable=True)
    brand = db.Column(db.String(64), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False, comment="1-12")
    order_type = db.Column(db.String(20), nullable=False, default="regular", comment="regular/mto/spo")
    quantity = db.Column(db.Integer, nullable=False, default=0)
    projection_value = db.Column(db.BigInteger, nullable=False, default=0, comment="cents")

    # Import provenance
    import_batch_id = db.Column(db.String(64), nullable=True, index=True)
    projection_run_date = db.Column(db.Date, nullable=True, comment="When the forecast was produced")
    source_file = db.Column(db.String(255), nullable=True)

    # Match state
    match_status = db.Column(db.String(20), nullable=False, default="unmatched")
    matched_po_number = db.Column(db.String(64), nullable=True)
    matched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_quantity = db.Column(db.Integer, nullable=True)
    actual_value = db.Column(db.BigInteger, nullable=True)
    quantity_variance = db.Column(db.Integer, nullable=True)
    value_variance = db.Column(db.BigInteger, nullable=True)
    variance_pct = db.Column(db.Integer, nullable=True)

    # Manual removal
    removal_reason = db.Column(db.Text, nullable=True)
    removed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    vendor = db.relationship("Vendor", lazy="joined")
    allocations = db.relationship(
        "ProjectionPoAllocation",
        back_populates="projection",
        cascade="all, delete-orphan",
        order_by="ProjectionPoAllocation.id",
    )

    # ── Derived values ───────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self.match_status in OPEN_MATCH_STATUSES

    @property
    def target_month_end(self) -> date:
        return month_end(self.year, self.month)

    @property
    def threshold_days(self) -> int:
        return expiration_threshold_days(self.order_type)

    @property
    def expiration_deadline(self) -> date:
        return expiration_deadline(self.year, self.month, self.order_type)

    def clear_match(self):
        """Drop every match attribute and contributing allocation."""
        # Collection first: its lazy load must not see this row dirty.
        self.allocations.clear()
        self.matched_po_number = None
        self.matched_at = None
        self.actual_quantity = None
        self.actual_value = None
        self.quantity_variance = None
        self.value_variance = None
        self.variance_pct = None

    def to_dict(self):
        data = {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "vendor_code": self.vendor_code,
            "vendor_name": self.vendor.name if self.vendor else None,
            "sku": self.sku,
            "sku_description": self.sku_description,
            "collection": self.collection,
            "brand": self.brand,
            "year": self.year,
            "month": self.month,
            "order_type": self.order_type,
            "quantity": self.quantity,
            "projection_value": self.projection_value,
            "import_batch_id": self.import_batch_id,
            "projection_run_date": _iso(self.projection_run_date),
            "source_file": self.source_file,
            "match_status": self.match_status,
            "threshold_days": self.threshold_days,
            "target_month_end": _iso(self.target_month_end),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        # Tagged by status: match block only while a PO is attached,
        # removal block only once removed.
        if self.match_status in MATCHED_STATUSES:
            data["match"] = {
                "matched_po_number": self.matched_po_number,
                "matched_at": _iso(self.matched_at),
                "actual_quantity": self.actual_quantity,
                "actual_value": self.actual_value,
                "quantity_variance": self.quantity_variance,
                "value_variance": self.value_variance,
                "variance_pct": self.variance_pct,
                "po_numbers": [a.po_number for a in self.allocations],
            }
        if self.match_status == "removed":
            data["removal"] = {
                "reason": self.removal_reason,
                "removed_at": _iso(self.removed_at),
            }
        return data

    def __repr__(self):
        return f"<Projection {self.id}: {self.sku} {self.year}-{self.month:02d} {self.match_status}>"


class ProjectionPoAllocation(db.Model):
    """A PO fact counted toward a projection's actual quantity/value."""

    __tablename__ = "projection_po_allocations"

    id = db.Column(db.Integer, primary_key=True)
    projection_id = db.Column(
        db.Integer, db.ForeignKey("projections.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    po_number = db.Column(db.String(64), nullable=False, unique=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    value = db.Column(db.BigInteger, nullable=False, default=0)
    source = db.Column(db.String(20), nullable=False, default="auto", comment="auto / manual")
    allocated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    projection = db.relationship("Projection", back_populates="allocations")

    def to_dict(self):
        return {
            "id": self.id,
            "projection_id": self.projection_id,
            "po_number": self.po_number,
            "quantity": self.quantity,
            "value": self.value,
            "source": self.source,
            "allocated_at": _iso(self.allocated_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  EXPIRED PROJECTION
# ═══════════════════════════════════════════════════════════════════════════

class ExpiredProjection(db.Model):
    """
    Snapshot of a projection whose order window passed while still open.

    ``original_projection_id`` is a back-reference only: the Projection row
    stays authoritative for audit, this row owns verification.
    """

    __tablename__ = "expired_projections"
    __table_args__ = (
        db.Index("idx_expired_original_status", "original_projection_id", "verification_status"),
        db.CheckConstraint(
            "verification_status IN ('pending', 'verified', 'cancelled', 'restored')",
            name="ck_expired_verification_status",
        ),
        db.CheckConstraint(
            "verification_status = 'restored' OR (restored_by IS NULL AND restored_at IS NULL)",
            name="ck_expired_restore_fields",
        ),
        db.CheckConstraint(
            "verification_status IN ('verified', 'cancelled') OR (verified_by IS NULL AND verified_at IS NULL)",
            name="ck_expired_verify_fields",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    original_projection_id = db.Column(db.Integer, nullable=False, comment="projections.id (not an FK)")

    # Snapshot of the projection at expiration time
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True)
    vendor_code = db.Column(db.String(64), nullable=True)
    sku = db.Column(db.String(64), nullable=False)
    sku_description = db.Column(db.Text, nullable=True)
    collection = db.Column(db.String(100), nullable=True)
    brand = db.Column(db.String(64), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    order_type = db.Column(db.String(20), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    projection_value = db.Column(db.BigInteger, nullable=False, default=0)
    import_batch_id = db.Column(db.String(64), nullable=True)
    projection_run_date = db.Column(db.Date, nullable=True)
    source_file = db.Column(db.String(255), nullable=True)
    match_status_at_expiry = db.Column(db.String(20), nullable=False, comment="unmatched / partial")
    matched_po_number = db.Column(db.String(64), nullable=True)
    actual_quantity = db.Column(db.Integer, nullable=True)
    actual_value = db.Column(db.BigInteger, nullable=True)

    # Expiration metadata
    expired_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expiration_reason = db.Column(db.Text, nullable=False)
    threshold_days = db.Column(db.Integer, nullable=False)
    target_month_end = db.Column(db.Date, nullable=False)
    days_overdue = db.Column(db.Integer, nullable=False)

    # Verification sub-lifecycle
    verification_status = db.Column(db.String(20), nullable=False, default="pending")
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(255), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)
    restored_at = db.Column(db.DateTime(timezone=True), nullable=True)
    restored_by = db.Column(db.String(255), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    def snapshot_of(cls, projection: Projection, *, today: date, reason: str) -> "ExpiredProjection":
        """Copy every forecast and match field of *projection* as of *today*."""
        deadline = projection.expiration_deadline
        return cls(
            original_projection_id=projection.id,
            vendor_id=projection.vendor_id,
            vendor_code=projection.vendor_code,
            sku=projection.sku,
            sku_description=projection.sku_description,
            collection=projection.collection,
            brand=projection.brand,
            year=projection.year,
            month=projection.month,
            order_type=projection.order_type,
            quantity=projection.quantity,
            projection_value=projection.projection_value,
            import_batch_id=projection.import_batch_id,
            projection_run_date=projection.projection_run_date,
            source_file=projection.source_file,
            match_status_at_expiry=projection.match_status,
            matched_po_number=projection.matched_po_number,
            actual_quantity=projection.actual_quantity,
            actual_value=projection.actual_value,
            expiration_reason=reason,
            threshold_days=projection.threshold_days,
            target_month_end=projection.target_month_end,
            days_overdue=(today - deadline).days,
            verification_status="pending",
        )

    def to_dict(self):
        data = {
            "id": self.id,
            "original_projection_id": self.original_projection_id,
            "vendor_id": self.vendor_id,
            "vendor_code": self.vendor_code,
            "sku": self.sku,
            "sku_description": self.sku_description,
            "collection": self.collection,
            "brand": self.brand,
            "year": self.year,
            "month": self.month,
            "order_type": self.order_type,
            "quantity": self.quantity,
            "projection_value": self.projection_value,
            "import_batch_id": self.import_batch_id,
            "projection_run_date": _iso(self.projection_run_date),
            "source_file": self.source_file,
            "match_status_at_expiry": self.match_status_at_expiry,
            "matched_po_number": self.matched_po_number,
            "actual_quantity": self.actual_quantity,
            "actual_value": self.actual_value,
            "expired_at": _iso(self.expired_at),
            "expiration_reason": self.expiration_reason,
            "threshold_days": self.threshold_days,
            "target_month_end": _iso(self.target_month_end),
            "days_overdue": self.days_overdue,
            "verification_status": self.verification_status,
            "version": self.version,
        }
        if self.verification_status in VERIFICATION_DECISIONS:
            data["verification"] = {
                "verified_at": _iso(self.verified_at),
                "verified_by": self.verified_by,
                "notes": self.verification_notes,
            }
        elif self.verification_status == "restored":
            data["restoration"] = {
                "restored_at": _iso(self.restored_at),
                "restored_by": self.restored_by,
            }
        return data

    def __repr__(self):
        return f"<ExpiredProjection {self.id} ← {self.original_projection_id}: {self.verification_status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECTION HISTORY
# ═══════════════════════════════════════════════════════════════════════════

class ProjectionHistory(db.Model):
    """Forecast values archived before an import overwrote them."""

    __tablename__ = "projection_history"
    __table_args__ = (
        db.Index("idx_projection_history_vendor_sku", "vendor_id", "sku", "year"),
    )

    id = db.Column(db.Integer, primary_key=True)
    projection_id = db.Column(db.Integer, nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False)
    vendor_code = db.Column(db.String(64), nullable=True)
    sku = db.Column(db.String(64), nullable=False)
    sku_description = db.Column(db.Text, nullable=True)
    collection = db.Column(db.String(100), nullable=True)
    brand = db.Column(db.String(64), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    order_type = db.Column(db.String(20), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    projection_value = db.Column(db.BigInteger, nullable=False, default=0)
    import_batch_id = db.Column(db.String(64), nullable=True)
    projection_run_date = db.Column(db.Date, nullable=True)
    match_status = db.Column(db.String(20), nullable=False)
    matched_po_number = db.Column(db.String(64), nullable=True)
    actual_quantity = db.Column(db.Integer, nullable=True)
    actual_value = db.Column(db.BigInteger, nullable=True)
    variance_pct = db.Column(db.Integer, nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @classmethod
    def archive_of(cls, projection: Projection) -> "ProjectionHistory":
        return cls(
            projection_id=projection.id,
            vendor_id=projection.vendor_id,
            vendor_code=projection.vendor_code,
            sku=projection.sku,
            sku_description=projection.sku_description,
            collection=projection.collection,
            brand=projection.brand,
            year=projection.year,
            month=projection.month,
            order_type=projection.order_type,
            quantity=projection.quantity,
            projection_value=projection.projection_value,
            import_batch_id=projection.import_batch_id,
            projection_run_date=projection.projection_run_date,
            match_status=projection.match_status,
            matched_po_number=projection.matched_po_number,
            actual_quantity=projection.actual_quantity,
            actual_value=projection.actual_value,
            variance_pct=projection.variance_pct,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "projection_id": self.projection_id,
            "vendor_id": self.vendor_id,
            "vendor_code": self.vendor_code,
            "sku": self.sku,
            "sku_description": self.sku_description,
            "collection": self.collection,
            "brand": self.brand,
            "year": self.year,
            "month": self.month,
            "order_type": self.order_type,
            "quantity": self.quantity,
            "projection_value": self.projection_value,
            "import_batch_id": self.import_batch_id,
            "projection_run_date": _iso(self.projection_run_date),
            "match_status": self.match_status,
            "matched_po_number": self.matched_po_number,
            "actual_quantity": self.actual_quantity,
            "actual_value": self.actual_value,
            "variance_pct": self.variance_pct,
            "archived_at": _iso(self.archived_at),
        }
