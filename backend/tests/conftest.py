"""
Pytest fixtures for the material requisition backend.

Provides the test app on in-memory SQLite, a per-test table wipe, and the
reference data most workflow tests need: roles, users per role, a site, a
store, two priced materials.
"""

from decimal import Decimal

import pytest

from matreq import create_app
from matreq.extensions import db
from matreq.models import Site, Store, User, Unit, Material
from matreq.services.identity_service import create_default_roles, assign_role


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_ATTEMPTS': 3,
        'DIRECTOR_ESCALATION_LIMIT': '10000.00',
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
        # Clear all data but keep schema; Core deletes skip the append-only ORM guards
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def setup_roles(db_session):
    """Setup default roles."""
    create_default_roles()
    db_session.commit()


def make_user(session, username: str, *roles: str, is_active: bool = True) -> User:
    user = User(username=username, email=f"{username}@example.org", full_name=username.title(), is_active=is_active)
    session.add(user)
    session.commit()
    for role in roles:
        assign_role(user.id, role)
    session.commit()
    return user


def actor(user: User) -> dict:
    """Helper to create the gateway identity header."""
    return {'X-User-Id': str(user.id)}


@pytest.fixture(scope='function')
def requester(db_session, setup_roles):
    return make_user(db_session, "requester", "SITE_ENGINEER")


@pytest.fixture(scope='function')
def site_reviewer(db_session, setup_roles):
    """Level 1 reviewer."""
    return make_user(db_session, "dse", "DIOCESAN_SITE_ENGINEER")


@pytest.fixture(scope='function')
def padiri(db_session, setup_roles):
    """Level 2 reviewer."""
    return make_user(db_session, "padiri", "PADIRI")


@pytest.fixture(scope='function')
def director(db_session, setup_roles):
    """Level 3 reviewer."""
    return make_user(db_session, "director", "DIRECTOR")


@pytest.fixture(scope='function')
def storekeeper(db_session, setup_roles):
    return make_user(db_session, "storekeeper", "STOREKEEPER")


@pytest.fixture(scope='function')
def admin(db_session, setup_roles):
    return make_user(db_session, "admin", "ADMIN")


@pytest.fixture(scope='function')
def inactive_user(db_session, setup_roles):
    return make_user(db_session, "retired", "STOREKEEPER", "DIOCESAN_SITE_ENGINEER", is_active=False)


@pytest.fixture(scope='function')
def site(db_session):
    site = Site(name="Kabgayi Parish Hall", code="KAB-01", location="Kabgayi")
    db_session.add(site)
    db_session.commit()
    return site


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Central Store", code="CS-01", location="Muhanga")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def bag_unit(db_session):
    unit = Unit(code="BAG", name="Bag")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture(scope='function')
def cement(db_session, bag_unit):
    """Material A."""
    material = Material(code="CEM-42", name="Cement 42.5N", unit_id=bag_unit.id, unit_price=Decimal("10.00"))
    db_session.add(material)
    db_session.commit()
    return material


@pytest.fixture(scope='function')
def sand(db_session, bag_unit):
    """Material B."""
    material = Material(code="SND-01", name="River sand", unit_id=bag_unit.id, unit_price=Decimal("10.00"))
    db_session.add(material)
    db_session.commit()
    return material
