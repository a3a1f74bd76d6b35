"""
Reconciliation persistence.

All database access for ingestion dedup, candidate exclusion and the
reconciliation saga goes through ReconciliationRepository. Each write
method runs in its own transaction on a fresh session.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.models import (
    ContactDB, OperatorDB, PaymentSourceDB, ReconciliationLogDB
)
from ingestion.csv_parser import FingerprintStore
from ingestion.models import ParsedPayment, PaymentSource
from reconciliation.contacts import Contact, contact_from_db
from reconciliation.custom_fields import custom_field_reader
from reconciliation.errors import DuplicateError, NotFoundError

SOURCE_TYPE_BANK = "bank_account"
SOURCE_TYPE_CARD = "card_source"

# Keep IN (...) lists well under driver parameter limits
_FINGERPRINT_CHUNK = 500


@dataclass
class ReconciliationRecord:
    id: str
    transaction_fingerprint: str
    contact_id: str
    operator_id: str
    reconciled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_fingerprint": self.transaction_fingerprint,
            "contact_id": self.contact_id,
            "operator_id": self.operator_id,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
        }


class ReconciliationRepository(FingerprintStore):
    """
    Database gateway for reconciliation.

    Usage:
        repository = ReconciliationRepository(get_session_factory())
        record = await repository.create_reconciliation(payment, contact_id, operator_id, details)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        logger: Optional[logging.Logger] = None
    ):
        self.session_factory = session_factory
        self.logger = logger or logging.getLogger(__name__)

    # ==================== READS ====================

    async def existing_fingerprints(self, fingerprints: Iterable[str]) -> Set[str]:
        candidates = list(dict.fromkeys(fingerprints))
        found: Set[str] = set()
        if not candidates:
            return found

        async with self.session_factory() as session:
            for i in range(0, len(candidates), _FINGERPRINT_CHUNK):
                chunk = candidates[i:i + _FINGERPRINT_CHUNK]
                result = await session.execute(
                    select(ReconciliationLogDB.transaction_fingerprint)
                    .where(ReconciliationLogDB.transaction_fingerprint.in_(chunk))
                )
                found.update(result.scalars().all())
        return found

    async def recently_reconciled_contact_ids(self, days: int) -> Set[str]:
        """Contacts with a reconciliation inside the trailing window."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReconciliationLogDB.contact_id)
                .where(ReconciliationLogDB.reconciled_at >= cutoff)
                .distinct()
            )
            return set(result.scalars().all())

    async def list_local_contacts(self) -> List[Contact]:
        async with self.session_factory() as session:
            result = await session.execute(select(ContactDB).order_by(ContactDB.id))
            return [contact_from_db(row) for row in result.scalars().all()]

    async def get_local_contact(self, contact_id: str) -> Optional[Contact]:
        async with self.session_factory() as session:
            row = await session.get(ContactDB, contact_id)
            return contact_from_db(row) if row else None

    async def get_reconciliation(self, transaction_fingerprint: str) -> Optional[ReconciliationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReconciliationLogDB)
                .where(ReconciliationLogDB.transaction_fingerprint == transaction_fingerprint)
            )
            row = result.scalar_one_or_none()
            return self._record(row) if row else None

    # ==================== WRITES ====================

    async def create_reconciliation(
        self,
        payment: ParsedPayment,
        contact_id: str,
        operator_id: str,
        details: Dict[str, Any]
    ) -> ReconciliationRecord:
        """
        Persist the reconciliation record and payment-source mapping atomically.

        Raises:
            DuplicateError: the fingerprint is already reconciled, including
                when a concurrent confirmation wins the unique constraint
            NotFoundError: contact or operator does not exist
            IntegrityError: any other constraint violation
        """
        fingerprint = payment.transaction_fingerprint
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    existing = await session.execute(
                        select(ReconciliationLogDB.id)
                        .where(ReconciliationLogDB.transaction_fingerprint == fingerprint)
                    )
                    if existing.first() is not None:
                        raise DuplicateError(fingerprint)

                    if await session.get(ContactDB, contact_id) is None:
                        raise NotFoundError("Contact", contact_id)
                    if await session.get(OperatorDB, operator_id) is None:
                        raise NotFoundError("Operator", operator_id)

                    log = ReconciliationLogDB(
                        transaction_fingerprint=fingerprint,
                        payment_date=payment.payment_date,
                        amount=payment.amount,
                        source=payment.source.value,
                        transaction_ref=payment.transaction_ref,
                        contact_id=contact_id,
                        operator_id=operator_id,
                        details=details,
                        reconciled_at=datetime.now(timezone.utc),
                    )
                    session.add(log)

                    if payment.hashed_account_identifier:
                        await self._upsert_payment_source(session, payment, contact_id)

                    await session.flush()
                    record = self._record(log)
            except IntegrityError as e:
                integrity_error = e
            else:
                return record

        # Only a fingerprint that now exists means a concurrent confirmation won
        if await self.get_reconciliation(fingerprint) is None:
            raise integrity_error
        self.logger.info(
            "Unique constraint rejected concurrent reconciliation",
            extra={"transaction_fingerprint": fingerprint}
        )
        raise DuplicateError(fingerprint) from integrity_error

    async def _upsert_payment_source(self, session, payment: ParsedPayment, contact_id: str):
        source_type = SOURCE_TYPE_CARD if payment.source == PaymentSource.CARD_REPORT else SOURCE_TYPE_BANK
        result = await session.execute(
            select(PaymentSourceDB)
            .where(PaymentSourceDB.hashed_identifier == payment.hashed_account_identifier)
        )
        source = result.scalar_one_or_none()
        if source:
            source.contact_id = contact_id
            source.source_type = source_type
        else:
            session.add(PaymentSourceDB(
                hashed_identifier=payment.hashed_account_identifier,
                source_type=source_type,
                contact_id=contact_id,
            ))

    async def delete_reconciliation(self, reconciliation_id: str) -> bool:
        """Compensating delete; returns False when the row was already gone."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ReconciliationLogDB).where(ReconciliationLogDB.id == reconciliation_id)
                )
        return result.rowcount > 0

    async def update_local_renewal(
        self,
        contact_id: str,
        renewal_date: date,
        renewal_field_id: str
    ) -> bool:
        """Mirror the new renewal date onto the local contact, keeping its custom-field shape."""
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(ContactDB, contact_id)
                if row is None:
                    return False
                row.renewal_date = renewal_date
                row.custom_fields = custom_field_reader(row.custom_fields).with_value(
                    renewal_field_id, renewal_date.isoformat()
                )
        return True

    async def ping(self) -> bool:
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True

    @staticmethod
    def _record(row: ReconciliationLogDB) -> ReconciliationRecord:
        return ReconciliationRecord(
            id=row.id,
            transaction_fingerprint=row.transaction_fingerprint,
            contact_id=row.contact_id,
            operator_id=row.operator_id,
            reconciled_at=row.reconciled_at,
        )
