"""
Shared pytest fixtures for the Bookable Fulfillment Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created Tenant rows
    - sellable: "Studio session" template (prep → session → cleanup)
    - resource, location: registry rows for the default tenant
    - make_contract: factory for active standing reservation contracts
    - confirmed_order: BookingOrder ready for graph building
"""

from datetime import datetime, timezone

import pytest

from app import create_app
from app.models import db as _db

# Fixed reference clock: Sunday 2030-01-06 12:00 UTC.
# 2030-01-01 is a Tuesday, so weekly Tuesday slots fall on Jan 8, 15, 22, ...
NOW = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Registry fixtures ────────────────────────────────────────────────────


def _make_tenant(name: str, slug: str):
    from app.models.tenant import Tenant

    t = Tenant(name=name, slug=slug)
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def tenant():
    return _make_tenant("Acme Studio", "acme-studio")


@pytest.fixture()
def other_tenant():
    return _make_tenant("Other Studio", "other-studio")


@pytest.fixture()
def location(tenant):
    from app.models.catalog import Location

    loc = Location(tenant_id=tenant.id, name="Main Street", timezone="UTC")
    _db.session.add(loc)
    _db.session.commit()
    return loc


@pytest.fixture()
def resource(tenant):
    from app.models.catalog import Resource

    r = Resource(tenant_id=tenant.id, name="Alex", resource_type="staff")
    _db.session.add(r)
    _db.session.commit()
    return r


@pytest.fixture()
def second_resource(tenant):
    from app.models.catalog import Resource

    r = Resource(tenant_id=tenant.id, name="Sam", resource_type="staff")
    _db.session.add(r)
    _db.session.commit()
    return r


def make_sellable(tenant_id: int, *, slug: str = "studio-session"):
    """Sellable with three components laid out prep → session → cleanup.

    prep (30 min, required) ─fs─▶ session (60 min, required) ─fs─▶ cleanup (15 min, optional)
    """
    from app.models.catalog import ComponentRelationship, Sellable, SellableComponent

    s = Sellable(tenant_id=tenant_id, name="Studio session", slug=slug, default_duration_min=90)
    _db.session.add(s)
    _db.session.flush()

    prep = SellableComponent(tenant_id=tenant_id, sellable_id=s.id, name="Prep", slug="prep",
                             kind="service_task", mode="required", duration_min=30, sort_order=0)
    main = SellableComponent(tenant_id=tenant_id, sellable_id=s.id, name="Session", slug="session",
                             kind="service_task", mode="required", duration_min=60, sort_order=1)
    cleanup = SellableComponent(tenant_id=tenant_id, sellable_id=s.id, name="Cleanup", slug="cleanup",
                                kind="service_task", mode="optional", duration_min=15, sort_order=2)
    _db.session.add_all([prep, main, cleanup])
    _db.session.flush()

    _db.session.add_all([
        ComponentRelationship(tenant_id=tenant_id, sellable_id=s.id, predecessor_component_id=prep.id,
                              successor_component_id=main.id, dependency_type="finish_to_start"),
        ComponentRelationship(tenant_id=tenant_id, sellable_id=s.id, predecessor_component_id=main.id,
                              successor_component_id=cleanup.id, dependency_type="finish_to_start"),
    ])
    _db.session.commit()
    return s


@pytest.fixture()
def sellable(tenant):
    return make_sellable(tenant.id)


# ── Standing reservation fixtures ────────────────────────────────────────


@pytest.fixture()
def make_contract(tenant, sellable):
    """Factory: create (and by default activate) a weekly Tuesday 09:00 UTC contract."""
    from app.services import standing_reservation_service as srs

    def _make(activate: bool = True, **overrides):
        data = {
            "name": "Weekly Tuesday session",
            "sellable_id": sellable.id,
            "customer_user_ref": "user:42",
            "anchor_start_at": "2030-01-01T09:00:00Z",
            "recurrence_rule": "RRULE:FREQ=WEEKLY;BYDAY=TU",
            "timezone": "UTC",
            "default_duration_min": 60,
            "max_generated_ahead_days": 60,
        }
        data.update(overrides)
        contract = srs.create_contract(tenant.id, data)
        if activate:
            contract = srs.activate_contract(tenant.id, contract.id, now=NOW)
        return contract

    return _make


# ── Fulfillment fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def confirmed_order(tenant, sellable):
    """Confirmed order for 2030-01-08 09:00–12:00 UTC with the optional cleanup selected."""
    from app.models.fulfillment import BookingOrder

    order = BookingOrder(
        tenant_id=tenant.id,
        sellable_id=sellable.id,
        status="confirmed",
        requested_start_at=utc(2030, 1, 8, 9, 0),
        requested_end_at=utc(2030, 1, 8, 12, 0),
        confirmed_start_at=utc(2030, 1, 8, 9, 0),
        confirmed_end_at=utc(2030, 1, 8, 12, 0),
        selected_options={"components": ["cleanup"]},
    )
    _db.session.add(order)
    _db.session.commit()
    return order
