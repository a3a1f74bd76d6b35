"""
Payment Ingestion Module

Parses bank-statement and card-processor CSV exports into
normalized, deduplicated payments.
"""

from .models import (
    PaymentSource, CsvDialect, DateFormat, DetectionConfidence,
    DateFormatDetection, ParsedPayment, RowError, ParseResult
)
from .csv_parser import (
    PaymentCsvParser,
    FingerprintStore,
    InMemoryFingerprintStore,
    validate_payment,
    validate_payments
)

__all__ = [
    "PaymentSource",
    "CsvDialect",
    "DateFormat",
    "DetectionConfidence",
    "DateFormatDetection",
    "ParsedPayment",
    "RowError",
    "ParseResult",
    "PaymentCsvParser",
    "FingerprintStore",
    "InMemoryFingerprintStore",
    "validate_payment",
    "validate_payments",
]
