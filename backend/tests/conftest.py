"""
Pytest fixtures for OR series backend tests.

Provides in-memory database setup, users, and a series factory.
"""

from datetime import date

import pytest

from orseries import create_app
from orseries.extensions import db
from orseries.models import User
from orseries.services import series_service


BUSINESS_DATE = date(2025, 10, 5)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'OR_ALLOCATE_RETRY_BACKOFF': 0.0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _make_user(session, username, name=None):
    user = User(username=username, name=name, is_active=True)
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    """Administrator who configures series."""
    return _make_user(db_session, "admin", "Admin")


@pytest.fixture(scope='function')
def cashier_a(db_session):
    """First cashier."""
    return _make_user(db_session, "cashier_a", "Cashier A")


@pytest.fixture(scope='function')
def cashier_b(db_session):
    """Second cashier."""
    return _make_user(db_session, "cashier_b", "Cashier B")


@pytest.fixture(scope='function')
def make_series(db_session):
    """Factory: create a series through the registry service."""
    def _make(**overrides):
        payload = {
            "series_name": "2025 Main",
            "prefix": "CR",
            "start_number": 1,
            "end_number": 999_999,
            "format": "{PREFIX}{NUMBER:10}",
            "effective_from": date(2025, 1, 1),
            "is_active": True,
        }
        payload.update(overrides)
        return series_service.create_series(payload)
    return _make


@pytest.fixture(scope='function')
def series(make_series):
    """Active, open-ended series covering BUSINESS_DATE."""
    return make_series()
