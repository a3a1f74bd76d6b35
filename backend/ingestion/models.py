"""
Payment Ingestion - Data Models

Defines the transient records produced by CSV ingestion:
- ParsedPayment: one normalized incoming payment
- ParseResult: outcome of parsing one file
- DateFormatDetection: file-wide date convention
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ==================== ENUMS ====================

class PaymentSource(str, Enum):
    """Origin of a payment record"""
    BANK_CSV = "BANK_CSV"
    CARD_REPORT = "CARD_REPORT"


class CsvDialect(str, Enum):
    """Supported export layouts"""
    BANK_STATEMENT = "bank_statement"
    CARD_PROCESSOR = "card_processor"

    @property
    def source(self) -> PaymentSource:
        if self is CsvDialect.BANK_STATEMENT:
            return PaymentSource.BANK_CSV
        return PaymentSource.CARD_REPORT


class DateFormat(str, Enum):
    DAY_FIRST = "DAY_FIRST"
    MONTH_FIRST = "MONTH_FIRST"
    ISO = "ISO"


class DetectionConfidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# ==================== RECORDS ====================

@dataclass
class DateFormatDetection:
    """File-wide date convention and the evidence behind it."""
    format: DateFormat
    confidence: DetectionConfidence
    day_first_count: int = 0
    month_first_count: int = 0
    ambiguous_count: int = 0
    iso_count: int = 0

    @property
    def conflicting(self) -> bool:
        return self.day_first_count > 0 and self.month_first_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format.value,
            "confidence": self.confidence.value,
            "day_first_count": self.day_first_count,
            "month_first_count": self.month_first_count,
            "ambiguous_count": self.ambiguous_count,
            "iso_count": self.iso_count,
            "conflicting": self.conflicting,
        }


@dataclass
class ParsedPayment:
    """
    A normalized incoming payment.

    Amounts are in major currency units and always positive.
    Raw account numbers never reach this record; only the
    SHA-256 of sort code + account number is kept.
    """
    transaction_fingerprint: str
    payment_date: date
    amount: Decimal
    source: PaymentSource
    transaction_ref: str
    description: Optional[str] = None
    hashed_account_identifier: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    billing_address_line1: Optional[str] = None
    billing_postal_code: Optional[str] = None
    date_low_confidence: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_fingerprint": self.transaction_fingerprint,
            "payment_date": self.payment_date.isoformat(),
            "amount": str(self.amount),
            "source": self.source.value,
            "transaction_ref": self.transaction_ref,
            "description": self.description,
            "hashed_account_identifier": self.hashed_account_identifier,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "billing_address_line1": self.billing_address_line1,
            "billing_postal_code": self.billing_postal_code,
            "date_low_confidence": self.date_low_confidence,
        }


@dataclass
class RowError:
    """A problem with one CSV row. Row numbers are 1-based file lines."""
    row: int
    message: str

    def __str__(self) -> str:
        if self.row:
            return f"Row {self.row}: {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "message": self.message}


@dataclass
class ParseResult:
    """
    Outcome of parsing one file.

    ``success`` is False only for structural failures (empty input,
    missing required columns); row-level problems land in ``errors``.
    ``skipped`` counts rows dropped without error (zero credits,
    already-reconciled or repeated fingerprints).
    """
    success: bool
    processed: int = 0
    skipped: int = 0
    errors: List[RowError] = field(default_factory=list)
    data: List[ParsedPayment] = field(default_factory=list)
    date_detection: Optional[DateFormatDetection] = None

    @classmethod
    def failure(cls, message: str) -> "ParseResult":
        return cls(success=False, errors=[RowError(0, message)])

    @property
    def error_messages(self) -> List[str]:
        return [str(e) for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.error_messages,
            "data": [p.to_dict() for p in self.data],
            "date_detection": self.date_detection.to_dict() if self.date_detection else None,
        }
