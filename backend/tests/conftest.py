"""
Shared fixtures for reconciliation tests.

Database tests run against a throwaway file-backed SQLite database
(aiosqlite), so concurrent sessions behave like separate connections.
"""

import os
from datetime import date
from decimal import Decimal

import pytest

os.environ.setdefault("ENVIRONMENT", "test")

from database import Base, build_engine, build_session_factory, ContactDB, OperatorDB
from ingestion.models import ParsedPayment, PaymentSource
from reconciliation.contacts import Contact, MembershipType
from reconciliation.repository import ReconciliationRepository

RENEWAL_FIELD = "renewal-field"
MEMBERSHIP_FIELD = "membership-field"


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def seeded(session_factory):
    """Two local contacts and one operator."""
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                ContactDB(
                    id="c-john",
                    first_name="John",
                    last_name="Smith",
                    email="john.smith@example.com",
                    postal_code="SW1A 1AA",
                    membership_type="Full",
                    custom_fields=[{"id": RENEWAL_FIELD, "value": "2024-01-10"}],
                    tags=["member"],
                    renewal_date=date(2024, 1, 10),
                ),
                ContactDB(
                    id="c-jane",
                    first_name="Jane",
                    last_name="Doe",
                    email="jane@example.com",
                    membership_type="Associate Membership",
                    custom_fields={RENEWAL_FIELD: None},
                ),
                OperatorDB(id="op-1", username="alice", email="alice@example.com"),
            ])
    return True


@pytest.fixture
def repository(session_factory, seeded):
    return ReconciliationRepository(session_factory)


@pytest.fixture
def make_payment():
    """Factory for ParsedPayment with sensible defaults."""
    def _make(**overrides):
        values = dict(
            transaction_fingerprint="fp-1",
            payment_date=date(2024, 3, 15),
            amount=Decimal("70.00"),
            source=PaymentSource.BANK_CSV,
            transaction_ref="J SMITH MEMBERSHIP",
            description="J SMITH MEMBERSHIP",
            hashed_account_identifier="a" * 64,
        )
        values.update(overrides)
        return ParsedPayment(**values)
    return _make


@pytest.fixture
def make_contact():
    """Factory for Contact with sensible defaults."""
    def _make(**overrides):
        values = dict(
            id="c-john",
            first_name="John",
            last_name="Smith",
            email="john.smith@example.com",
            postal_code="SW1A 1AA",
            membership_type=MembershipType.FULL,
            renewal_date=date(2024, 1, 10),
        )
        values.update(overrides)
        return Contact(**values)
    return _make
