import itertools
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core import config
from app.db.base import Base, configure_sqlite
from app.models.savings import Savings, SavingsTransaction
from app.services.accounting import sum_positive
from app.services.cycle import create_cycle
from app.services.member import create_member


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def audit_logs(tmp_path, monkeypatch):
    logs_dir = tmp_path / "logs"
    monkeypatch.setattr(config, "LOGS_DIR", logs_dir)
    return logs_dir


@pytest.fixture
def make_member(db):
    counter = itertools.count(1)

    def _make(name=None):
        return create_member(db, name or f"Member {next(counter)}")

    return _make


@pytest.fixture
def make_cycle(db, make_member):
    def _make(size=3, monthly_amount="1000.00", start_date=date(2024, 1, 1)):
        members = [make_member() for _ in range(size)]
        cycle = create_cycle(db, [m.id for m in members], Decimal(monthly_amount), start_date)
        return cycle, members

    return _make


def assert_savings_consistent(db, member_id):
    """Cached balance equals the sum of positive entries."""
    savings = db.query(Savings).filter(Savings.member_id == member_id).one()
    amounts = [
        row.amount for row in db.query(SavingsTransaction.amount).filter(
            SavingsTransaction.savings_id == savings.id
        ).all()
    ]
    assert savings.total_amount == sum_positive(amounts)
    return savings.total_amount
