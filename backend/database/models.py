"""
Membership Reconciliation - Database Models

Defines SQLAlchemy models for:
- Contact: local copy of CRM contacts (fallback directory)
- Operator: staff members who confirm matches
- ReconciliationLog: one row per reconciled payment (idempotency gate)
- PaymentSource: hashed bank account -> contact mapping

No raw account number or sort code is ever stored.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Date, DateTime, Numeric, JSON, ForeignKey, Index
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== CONTACTS ====================

class ContactDB(Base):
    """
    Contact Table - read-mostly mirror of the CRM directory.

    Used when the CRM is unreachable and as the target of
    reconciliation foreign keys.
    """
    __tablename__ = 'contacts'

    id = Column(String(64), primary_key=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True, index=True)
    display_name = Column(String(500), nullable=True)
    email = Column(String(320), nullable=True, index=True)
    phone = Column(String(64), nullable=True)
    postal_code = Column(String(16), nullable=True)
    membership_type = Column(String(64), nullable=True)

    # Either a list of {id, value} pairs or a flat map, as delivered by the CRM
    custom_fields = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=True)
    renewal_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = {'extend_existing': True}

    def __repr__(self):
        return f"<ContactDB(id={self.id}, last_name={self.last_name})>"


# ==================== OPERATORS ====================

class OperatorDB(Base):
    """Operator Table - staff who confirm reconciliation matches."""
    __tablename__ = 'operators'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    username = Column(String(255), nullable=False, unique=True)
    email = Column(String(320), nullable=True)
    role = Column(String(50), nullable=False, default='operator')
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = {'extend_existing': True}


# ==================== RECONCILIATION LOG ====================

class ReconciliationLogDB(Base):
    """
    Reconciliation Log Table - one row per reconciled payment.

    The unique fingerprint is the idempotency gate: a payment can be
    reconciled at most once. Rows are immutable apart from deletion
    during rollback.
    """
    __tablename__ = 'reconciliation_logs'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_fingerprint = Column(String(128), nullable=False, unique=True)

    # Payment snapshot
    payment_date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    source = Column(String(32), nullable=False)
    transaction_ref = Column(Text, nullable=True)

    contact_id = Column(String(64), ForeignKey('contacts.id'), nullable=False, index=True)
    operator_id = Column(String(64), ForeignKey('operators.id'), nullable=False)

    # confidence, reasoning, description, hashed account identifier
    details = Column('metadata', JSON, nullable=True)

    reconciled_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index('ix_reconciliation_logs_contact_reconciled', 'contact_id', 'reconciled_at'),
        {'extend_existing': True},
    )

    def __repr__(self):
        return f"<ReconciliationLogDB(id={self.id}, contact_id={self.contact_id})>"


# ==================== PAYMENT SOURCES ====================

class PaymentSourceDB(Base):
    """Payment Source Table - hashed account identifier to contact."""
    __tablename__ = 'payment_sources'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    hashed_identifier = Column(String(64), nullable=False, unique=True)
    source_type = Column(String(32), nullable=False)  # bank_account, card_source
    contact_id = Column(String(64), ForeignKey('contacts.id'), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = {'extend_existing': True}
