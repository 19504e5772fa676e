"""
Pytest fixtures for territory engine tests.

Provides an in-memory database, a controllable engine clock, seeded reps
and accounts, the wired service objects and a test client.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from territory_engine import create_app
from territory_engine.extensions import db
from territory_engine.models import BusinessAccount, SalesRep
from territory_engine.services import build_services

NOW = datetime(2026, 9, 15, 12, 0, 0)

ACTOR_HEADERS = {"X-Actor-Id": "admin1"}


class FrozenClock:
    """Engine clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def reset(self) -> None:
        self.now = NOW


CLOCK = FrozenClock()


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ENGINE_CLOCK': CLOCK,
        'DB_RETRY_BACKOFF_BASE': 0,
        'COLLABORATOR_RETRY_BACKOFF_BASE': 0,
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
def clock():
    """The engine clock, reset to NOW for every test."""
    CLOCK.reset()
    yield CLOCK
    CLOCK.reset()


@pytest.fixture(scope='function')
def db_session(app, clock):
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


@pytest.fixture(scope='function')
def services(db_session):
    """Every service wired around the test session and clock."""
    return build_services()


@pytest.fixture(scope='function')
def reps(db_session):
    """Three reps; rep-1 carries a 5,000,000 cent monthly quota."""
    rows = [
        SalesRep(id="rep-1", first_name="Ada", commission_rate=Decimal("5"), monthly_quota_cents=5_000_000),
        SalesRep(id="rep-2", first_name="Bo", commission_rate=Decimal("4")),
        SalesRep(id="rep-3", first_name="Cy", commission_rate=Decimal("3")),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {rep.id: rep for rep in rows}


def make_account(session, account_id, *, postal_code=None, territory_id=None, rep_id=None,
                 age_days=365, status="active"):
    """Insert a business account created ``age_days`` before NOW."""
    account = BusinessAccount(
        id=account_id,
        name=f"Account {account_id}",
        postal_code=postal_code,
        territory_id=territory_id,
        sales_rep_id=rep_id,
        status=status,
        created_at=NOW - timedelta(days=age_days),
        updated_at=NOW - timedelta(days=age_days),
    )
    session.add(account)
    session.commit()
    return account


def territory_payload(name="North Manhattan", codes=("10001", "10002"), state="NY", **extra):
    payload = {"name": name, "state": state, "postal_codes": list(codes)}
    payload.update(extra)
    return payload
