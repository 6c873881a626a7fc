"""Pytest configuration and shared fixtures."""

import os

# Set test database URL BEFORE any imports from src
# This ensures the SessionLocal and engine use an in-memory database
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from datetime import date, datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.models import Base  # noqa: E402
from src.models.funding_contract import ContractStatus  # noqa: E402
from src.models.resident import ResidentStatus  # noqa: E402
from src.services.contract_service import ContractService, ContractTerms  # noqa: E402
from src.services.resident_service import ResidentService  # noqa: E402
from src.services.transaction_service import (  # noqa: E402
    TransactionCreateInput,
    TransactionService,
)

FIXED_NOW = datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc)
VALID_CODE = "01_001_0107_1_1"


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads (TestClient runs handlers in a pool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    """Fixed clock: 2024-07-01 10:00 UTC."""
    return lambda: FIXED_NOW


@pytest.fixture
def make_resident(db_session):
    """Factory creating residents (Active by default)."""

    def _make(first_name="Alex", last_name="Taylor", status=ResidentStatus.ACTIVE):
        return ResidentService(db_session).create_resident(
            first_name, last_name, actor="admin", status=status
        )

    return _make


@pytest.fixture
def make_contract(db_session, clock):
    """Factory creating contracts, activated unless activate=False."""

    def _make(
        resident,
        amount="1000.00",
        start=date(2024, 1, 1),
        end=date(2024, 12, 31),
        activate=True,
        **overrides,
    ):
        service = ContractService(db_session, clock=clock)
        terms = ContractTerms(
            original_amount=Decimal(amount), start_date=start, end_date=end, **overrides
        )
        contract = service.add_contract(resident.id, terms, "admin")
        if activate:
            service.update_contract_status(resident.id, contract.id, ContractStatus.ACTIVE, "admin")
        return contract

    return _make


@pytest.fixture
def make_drawdown(db_session, clock):
    """Factory creating draft drawdown transactions, posted when post=True."""

    def _make(
        contract,
        amount="100.00",
        quantity=1,
        service_item_code=VALID_CODE,
        occurred_at=None,
        post=False,
    ):
        service = TransactionService(db_session, clock=clock)
        transaction = service.create_transaction(
            TransactionCreateInput(
                resident_id=contract.resident_id,
                contract_id=contract.id,
                occurred_at=occurred_at or FIXED_NOW,
                quantity=quantity,
                unit_price=Decimal(amount),
                service_item_code=service_item_code,
                description="Daily personal care",
            ),
            "admin",
        )
        if post:
            service.post_transaction(transaction.id, "admin")
        return transaction

    return _make
