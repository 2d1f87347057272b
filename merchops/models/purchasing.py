"""
Merchandising Operations Platform
Purchasing reference models: read-only facts for the projection engine.

Models:
    - Vendor: canonical vendor record
    - VendorAlias: import name → canonical vendor (e.g. "Riches", "YC")
    - PurchaseOrder: PO header fact landed by the OS340 import pipeline

The projection engine reads these tables and never writes them; the import
pipeline and the PO subsystem own them.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone

from merchops.models import db
from merchops.utils.helpers import parse_date, parse_int


class Vendor(db.Model):
    """A canonical vendor."""

    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    vendor_code = db.Column(db.String(64), nullable=True, index=True, comment="CBH vendor code")
    status = db.Column(db.String(50), nullable=False, default="active")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    aliases = db.relationship("VendorAlias", back_populates="vendor", lazy="selectin")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "vendor_code": self.vendor_code,
            "status": self.status,
        }

    def __repr__(self):
        return f"<Vendor {self.id}: {self.name}>"


class VendorAlias(db.Model):
    """Maps a name seen in imports to the canonical vendor."""

    __tablename__ = "vendor_aliases"

    id = db.Column(db.Integer, primary_key=True)
    alias = db.Column(db.String(255), unique=True, nullable=False)
    vendor_id = db.Column(
        db.Integer, db.ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    notes = db.Column(db.Text, nullable=True)

    vendor = db.relationship("Vendor", back_populates="aliases")

    def __repr__(self):
        return f"<VendorAlias {self.alias!r} → {self.vendor_id}>"


class PurchaseOrder(db.Model):
    """PO header fact. Quantities are units, values integer cents."""

    __tablename__ = "po_headers"

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(64), unique=True, nullable=False)
    vendor = db.Column(db.String(255), nullable=True)
    client = db.Column(db.String(64), nullable=True, comment="Brand: CB / CB2 / C&K")
    sku = db.Column(db.String(64), nullable=True, index=True)
    sku_description = db.Column(db.Text, nullable=True)
    order_quantity = db.Column(db.Integer, nullable=False, default=0)
    total_value = db.Column(db.BigInteger, nullable=False, default=0)
    po_date = db.Column(db.Date, nullable=True)
    original_ship_date = db.Column(db.Date, nullable=True)
    program_description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "po_number": self.po_number,
            "vendor": self.vendor,
            "client": self.client,
            "sku": self.sku,
            "sku_description": self.sku_description,
            "order_quantity": self.order_quantity,
            "total_value": self.total_value,
            "po_date": self.po_date.isoformat() if self.po_date else None,
            "original_ship_date": self.original_ship_date.isoformat() if self.original_ship_date else None,
            "program_description": self.program_description,
        }

    def __repr__(self):
        return f"<PurchaseOrder {self.po_number}>"


def _amount(raw) -> int | None:
    if raw is None:
        return 0
    value = parse_int(raw)
    return value if value is not None and value >= 0 else None


@dataclass(frozen=True)
class POFact:
    """One incoming PO as seen by the matching engine."""

    po_number: str
    vendor: str | None
    sku: str | None
    order_quantity: int | None
    total_value: int | None
    po_date: date | None
    original_ship_date: date | None
    program_description: str | None = None
    client: str | None = None
    sku_description: str | None = None

    @property
    def ship_date(self) -> date | None:
        """Effective ship date: original ship date, falling back to PO date."""
        return self.original_ship_date or self.po_date

    @classmethod
    def from_dict(cls, data: dict) -> "POFact":
        """Build from an API payload; accepts snake_case or camelCase keys.

        An absent amount reads as 0; one that is not a non-negative integer
        stays None so the matching run can reject the fact.
        """
        def pick(*keys):
            for key in keys:
                if data.get(key) not in (None, ""):
                    return data[key]
            return None

        return cls(
            po_number=str(pick("po_number", "poNumber") or "").strip(),
            vendor=pick("vendor"),
            sku=pick("sku"),
            order_quantity=_amount(pick("order_quantity", "orderQuantity")),
            total_value=_amount(pick("total_value", "totalValue")),
            po_date=parse_date(pick("po_date", "poDate")),
            original_ship_date=parse_date(pick("original_ship_date", "originalShipDate")),
            program_description=pick("program_description", "programDescription"),
            client=pick("client", "brand"),
            sku_description=pick("sku_description", "skuDescription"),
        )

    @classmethod
    def from_model(cls, po: PurchaseOrder) -> "POFact":
        return cls(
            po_number=po.po_number,
            vendor=po.vendor,
            sku=po.sku,
            order_quantity=po.order_quantity or 0,
            total_value=po.total_value or 0,
            po_date=po.po_date,
            original_ship_date=po.original_ship_date,
            program_description=po.program_description,
            client=po.client,
            sku_description=po.sku_description,
        )
