"""
Pytest fixtures for opscore backend tests.

Provides test database setup, seeded users, customers and stock lots, and a
test client. The storage gateway runs attempts inline (no worker thread) and
retries without sleeping.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from opscore import create_app
from opscore.extensions import db
from opscore.models import Customer, MaterialIntakeRecord, User
from opscore.services import notification_service
from opscore.services.integrity_service import _CONFIG_KEY
from opscore.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STORAGE_TIMEOUT_SECONDS': 0,
        'STORAGE_RETRY_BASE_DELAY': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema. Core deletes skip the append-only guards.
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        # Per-run state that lives on the app, not in the database.
        app.extensions.pop(_CONFIG_KEY, None)
        notification_service.drain()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.expunge_all()


def _user(session, username, role, **kwargs):
    user = User(
        username=username,
        email=f"{username}@opscore.test",
        name=kwargs.pop("name", username.replace("_", " ").title()),
        role=role,
        **kwargs,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    """The only admin unless second_admin is also requested."""
    return _user(db_session, "admin_one", "admin")


@pytest.fixture(scope='function')
def second_admin(db_session):
    return _user(db_session, "admin_two", "admin")


@pytest.fixture(scope='function')
def sales_manager(db_session):
    return _user(db_session, "sales_manager", "sales_manager")


@pytest.fixture(scope='function')
def production_user(db_session):
    return _user(db_session, "production_lead", "production")


@pytest.fixture(scope='function')
def viewer(db_session):
    return _user(db_session, "viewer", "viewer")


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Hilltop Dairy", tier="wholesale", channel="direct", city="Pune", payment_terms_days=15)
    db_session.add(customer)
    db_session.commit()
    return customer


def _make_lot(session, material_name="Sesame Seeds", quantity=100, *, cost_per_unit=2, intake_days_ago=10, **kwargs):
    """Create a stock lot whose balance matches what was received."""
    lot = MaterialIntakeRecord(
        material_name=material_name,
        lot_number=kwargs.pop("lot_number", None),
        quantity_received=Decimal(str(kwargs.pop("quantity_received", quantity))),
        remaining_quantity=Decimal(str(quantity)),
        cost_per_unit=Decimal(str(cost_per_unit)),
        intake_date=utcnow() - timedelta(days=intake_days_ago),
        **kwargs,
    )
    session.add(lot)
    session.commit()
    return lot


@pytest.fixture(scope='function')
def lot(db_session):
    return _make_lot(db_session, lot_number="SES-001")


@pytest.fixture(scope='function')
def second_lot(db_session):
    return _make_lot(db_session, lot_number="SES-002", quantity=40, intake_days_ago=5)


@pytest.fixture(scope='function')
def make_lot(db_session):
    """Factory for extra stock lots: make_lot("Jaggery", 25, cost_per_unit=4)."""
    def factory(material_name="Sesame Seeds", quantity=100, **kwargs):
        return _make_lot(db_session, material_name, quantity, **kwargs)
    return factory


@pytest.fixture(scope='function')
def headers_for():
    """Helper to create the upstream identity header for a user."""
    def build(user) -> dict:
        return {'X-Actor-Id': str(user.id)}
    return build


@pytest.fixture(scope='function')
def notifications():
    """Notifications collected so far, optionally at one level."""
    def collected(level=None) -> list[dict]:
        items = notification_service.collected()
        return [n for n in items if level is None or n["level"] == level]
    return collected
