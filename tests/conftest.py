"""
Shared pytest fixtures for the merchandising operations test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - vendor: Pre-created Vendor with an import alias
    - make_projection / make_po: row factories
    - bump_version: out-of-band version bump for optimistic-lock tests
"""

from datetime import date

import pytest
from sqlalchemy import update

from merchops import create_app
from merchops.models import db as _db
from merchops.models.projection import Projection
from merchops.models.purchasing import POFact, PurchaseOrder, Vendor, VendorAlias


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def vendor():
    """Vendor 'Riches Furniture' (code RCH) reachable through the alias 'Riches'."""
    v = Vendor(name="Riches Furniture", vendor_code="RCH")
    _db.session.add(v)
    _db.session.flush()
    _db.session.add(VendorAlias(alias="Riches", vendor_id=v.id))
    _db.session.commit()
    return v


@pytest.fixture()
def make_projection(vendor):
    """Factory: persist a projection for the default vendor and return it."""

    def _make(**overrides):
        fields = {
            "vendor_id": vendor.id,
            "vendor_code": vendor.vendor_code,
            "sku": "ABC-100",
            "sku_description": "Aviator Lounge Chair Natural",
            "brand": "CB",
            "year": 2025,
            "month": 3,
            "order_type": "regular",
            "quantity": 1000,
            "projection_value": 500000,
            "import_batch_id": "batch-1",
            "projection_run_date": date(2025, 1, 5),
            "match_status": "unmatched",
        }
        fields.update(overrides)
        projection = Projection(**fields)
        _db.session.add(projection)
        _db.session.commit()
        return projection

    return _make


@pytest.fixture()
def make_po(vendor):
    """Factory: persist a PO header and return it as a POFact."""

    def _make(**overrides):
        fields = {
            "po_number": "001-1234567",
            "vendor": "Riches",
            "client": "CB",
            "sku": "ABC-100",
            "order_quantity": 850,
            "total_value": 420000,
            "po_date": date(2025, 1, 20),
            "original_ship_date": date(2025, 3, 14),
        }
        fields.update(overrides)
        po = PurchaseOrder(**fields)
        _db.session.add(po)
        _db.session.commit()
        return POFact.from_model(po)

    return _make


@pytest.fixture()
def bump_version():
    """Simulate a concurrent writer: raise the row's version behind the ORM's back.

    The loaded instance keeps its old version, so its next UPDATE hits zero rows.
    """

    def _bump(instance):
        table = type(instance).__table__
        current = instance.version  # load before the bump
        _db.session.execute(
            update(table).where(table.c.id == instance.id).values(version=current + 1)
        )
        return current

    return _bump
