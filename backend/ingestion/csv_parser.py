"""
Payment CSV Parser

Turns bank-statement and card-processor exports into ParsedPayment
records:
- Header validation (bank) / flexible column resolution (card)
- Quote-aware tokenization
- File-wide date convention detection
- One-way fingerprints and hashed account identifiers
- Deduplication against the reconciliation log and within the file
- Field-level validation of parsed payments

Row problems never raise; they are collected on the ParseResult.
Raw account numbers and sort codes never appear in any output.
"""

import csv
import hashlib
import io
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ingestion.date_detection import (
    detect_date_format, is_ambiguous_date, parse_payment_date
)
from ingestion.models import (
    CsvDialect, DateFormat, DetectionConfidence, ParsedPayment,
    ParseResult, PaymentSource, RowError
)


# ==================== COLUMN DEFINITIONS ====================

BANK_REQUIRED_HEADERS = [
    "Transaction Date",
    "Account Number",
    "Transaction Description",
    "Credit Amount",
]
BANK_SORT_CODE_HEADER = "Sort Code"

# Ordered candidate spellings per logical field; earlier spellings win.
CARD_FIELD_CANDIDATES: Dict[str, List[str]] = {
    "id": ["id", "source_id", "transaction_id", "charge_id"],
    "amount": [
        "Amount", "amount", "gross", "Gross", "Customer_facing_amount",
        "customer_facing_amount", "total", "Total",
    ],
    "created": ["Created (UTC)", "created_utc", "created", "date", "Date", "timestamp"],
    "description": ["Description", "description", "memo", "note", "details"],
    "customer_name": [
        "customer_name", "Customer_name", "name", "Name",
        "customer name", "Customer Name",
    ],
    "customer_email": [
        "customer_email", "Customer_email", "Customer Email", "email",
        "Email", "receipt_email",
    ],
    "card_address_line1": [
        "card_address_line1", "address_line1", "billing_address_line1",
        "Card Address Line1", "address",
    ],
    "card_address_postal_code": [
        "card_address_postal_code", "postal_code", "postcode", "zip_code",
        "Card Address Zip", "zip",
    ],
}
CARD_REQUIRED_FIELDS = ["id", "amount", "created"]

# Short spellings such as "id" are only matched exactly.
MIN_CONTAINMENT_LENGTH = 4

# ==================== VALIDATION RULES ====================

MIN_EXPECTED_AMOUNT = Decimal("5")
MAX_EXPECTED_AMOUNT = Decimal("500")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UK_POSTCODE_PATTERN = re.compile(r"^[A-Z]{1,2}[0-9][A-Z0-9]?\s?[0-9][A-Z]{2}$")


# ==================== HELPERS ====================

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def amount_key(amount: Decimal) -> str:
    """Canonical amount text used inside fingerprints: 70.00 -> '70', 70.50 -> '70.5'."""
    normalized = amount.normalize()
    return format(normalized, "f")


def bank_fingerprint(raw_date: str, amount: Decimal, description: str) -> str:
    return sha256_hex(f"{raw_date}_{amount_key(amount)}_{description}")


def hash_account(sort_code: str, account_number: str) -> Optional[str]:
    sort_code = (sort_code or "").strip()
    account_number = (account_number or "").strip()
    if not sort_code and not account_number:
        return None
    return sha256_hex(sort_code + account_number)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount cell; None when empty or not numeric."""
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))

    if value is None:
        return None

    value_str = str(value).strip()
    value_str = re.sub(r"[$€£\s]", "", value_str)
    value_str = value_str.replace(",", "")
    if not value_str:
        return None

    if value_str.startswith("(") and value_str.endswith(")"):
        value_str = "-" + value_str[1:-1]

    try:
        amount = Decimal(value_str)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


def resolve_columns(
    headers: List[str],
    candidates: Dict[str, List[str]]
) -> Dict[str, int]:
    """
    Map logical fields to column indexes.

    Exact (case-insensitive) matches are tried first, then containment
    for longer spellings. A column is never assigned to two fields.
    """
    lowered = [h.strip().lower() for h in headers]
    resolved: Dict[str, int] = {}
    claimed: Set[int] = set()

    for field_name, spellings in candidates.items():
        for spelling in spellings:
            target = spelling.lower()
            index = next(
                (i for i, h in enumerate(lowered) if h == target and i not in claimed),
                None
            )
            if index is not None:
                resolved[field_name] = index
                claimed.add(index)
                break

    for field_name, spellings in candidates.items():
        if field_name in resolved:
            continue
        for spelling in spellings:
            target = spelling.lower()
            if len(target) < MIN_CONTAINMENT_LENGTH:
                continue
            index = next(
                (i for i, h in enumerate(lowered) if target in h and i not in claimed),
                None
            )
            if index is not None:
                resolved[field_name] = index
                claimed.add(index)
                break

    return resolved


def _cell(row: List[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    return row[index].strip()


# ==================== FINGERPRINT STORE ====================

class FingerprintStore(ABC):
    """Durable record of fingerprints that have already been reconciled."""

    @abstractmethod
    async def existing_fingerprints(self, fingerprints: Iterable[str]) -> Set[str]:
        """Return the subset of ``fingerprints`` already reconciled."""


class InMemoryFingerprintStore(FingerprintStore):
    """Set-backed store for local tooling and tests."""

    def __init__(self, fingerprints: Optional[Iterable[str]] = None):
        self._fingerprints = set(fingerprints or [])

    def add(self, fingerprint: str):
        self._fingerprints.add(fingerprint)

    async def existing_fingerprints(self, fingerprints: Iterable[str]) -> Set[str]:
        return {fp for fp in fingerprints if fp in self._fingerprints}


# ==================== PARSER ====================

@dataclass
class _Candidate:
    row: int
    payment: ParsedPayment


class PaymentCsvParser:
    """
    Parser for bank-statement and card-processor payment exports.

    Usage:
        parser = PaymentCsvParser(fingerprint_store=repository)
        result = await parser.parse(content, CsvDialect.BANK_STATEMENT)
    """

    def __init__(
        self,
        fingerprint_store: Optional[FingerprintStore] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.fingerprint_store = fingerprint_store
        self.logger = logger or logging.getLogger(__name__)

    async def parse(
        self,
        content: Union[str, bytes],
        dialect: Union[CsvDialect, str]
    ) -> ParseResult:
        dialect = CsvDialect(dialect)

        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8-sig")
            except UnicodeDecodeError:
                return ParseResult.failure("File is not valid UTF-8 text")

        if not content or not content.strip():
            return ParseResult.failure("File is empty")

        try:
            rows = [
                row for row in csv.reader(io.StringIO(content.lstrip("\ufeff")))
                if any(cell.strip() for cell in row)
            ]
        except csv.Error as e:
            return ParseResult.failure(f"Malformed CSV: {e}")

        if not rows:
            return ParseResult.failure("File is empty")

        headers = [h.strip() for h in rows[0]]
        body = list(enumerate(rows[1:], start=2))

        if dialect == CsvDialect.BANK_STATEMENT:
            result = self._parse_bank(headers, body)
        else:
            result = self._parse_card(headers, body)

        if result.success:
            await self._drop_known(result)

        self.logger.info(
            f"Parsed {dialect.value} export: {result.processed} payments",
            extra={
                "dialect": dialect.value,
                "processed": result.processed,
                "skipped": result.skipped,
                "error_count": len(result.errors),
                "date_format": result.date_detection.format.value if result.date_detection else None,
            }
        )
        return result

    # ==================== BANK STATEMENT ====================

    def _parse_bank(self, headers: List[str], body) -> ParseResult:
        index = {h.lower(): i for i, h in enumerate(headers)}
        missing = [h for h in BANK_REQUIRED_HEADERS if h.lower() not in index]
        if missing:
            return ParseResult.failure(f"Missing required headers: {', '.join(missing)}")

        date_idx = index["transaction date"]
        account_idx = index["account number"]
        description_idx = index["transaction description"]
        credit_idx = index["credit amount"]
        sort_code_idx = index.get(BANK_SORT_CODE_HEADER.lower())

        well_formed = [(n, row) for n, row in body if len(row) == len(headers)]
        detection = detect_date_format(row[date_idx] for _, row in well_formed)

        result = ParseResult(success=True, date_detection=detection)
        candidates: List[_Candidate] = []

        for row_num, row in body:
            if len(row) != len(headers):
                result.errors.append(RowError(row_num, "Column count mismatch"))
                continue

            credit_raw = _cell(row, credit_idx)
            if not credit_raw:
                result.skipped += 1
                continue
            amount = parse_amount(credit_raw)
            if amount is None:
                result.errors.append(RowError(row_num, "Invalid credit amount"))
                continue
            if amount <= 0:
                result.skipped += 1
                continue

            raw_date = _cell(row, date_idx)
            payment_date = parse_payment_date(raw_date, detection)
            if payment_date is None:
                result.errors.append(RowError(row_num, f"Invalid transaction date '{raw_date}'"))
                continue

            description = _cell(row, description_idx)
            payment = ParsedPayment(
                transaction_fingerprint=bank_fingerprint(raw_date, amount, description),
                payment_date=payment_date,
                amount=amount,
                source=PaymentSource.BANK_CSV,
                transaction_ref=description,
                description=description or None,
                hashed_account_identifier=hash_account(
                    _cell(row, sort_code_idx), _cell(row, account_idx)
                ),
                date_low_confidence=self._low_confidence(raw_date, detection),
            )
            candidates.append(_Candidate(row_num, payment))

        self._collect(result, candidates)
        return result

    # ==================== CARD PROCESSOR ====================

    def _parse_card(self, headers: List[str], body) -> ParseResult:
        columns = resolve_columns(headers, CARD_FIELD_CANDIDATES)
        missing = [f for f in CARD_REQUIRED_FIELDS if f not in columns]
        if missing:
            return ParseResult.failure(
                f"Missing required columns: {', '.join(missing)}"
            )

        detection = detect_date_format(
            _cell(row, columns["created"]) for _, row in body
        )
        result = ParseResult(success=True, date_detection=detection)
        candidates: List[_Candidate] = []

        for row_num, row in body:
            if len(row) != len(headers):
                result.errors.append(RowError(row_num, "Column count mismatch"))
                continue

            transaction_id = _cell(row, columns["id"])
            if not transaction_id:
                result.errors.append(RowError(row_num, "Missing transaction id"))
                continue

            amount = parse_amount(_cell(row, columns["amount"]))
            if amount is None:
                result.errors.append(RowError(row_num, "Invalid amount"))
                continue
            amount = abs(amount)
            if amount == 0:
                result.skipped += 1
                continue

            raw_date = _cell(row, columns["created"])
            payment_date = parse_payment_date(raw_date, detection)
            if payment_date is None:
                result.errors.append(RowError(row_num, f"Invalid created date '{raw_date}'"))
                continue

            description = _cell(row, columns.get("description")) or f"Card transaction {transaction_id}"
            payment = ParsedPayment(
                transaction_fingerprint=transaction_id,
                payment_date=payment_date,
                amount=amount,
                source=PaymentSource.CARD_REPORT,
                transaction_ref=transaction_id,
                description=description,
                customer_name=_cell(row, columns.get("customer_name")) or None,
                customer_email=_cell(row, columns.get("customer_email")) or None,
                billing_address_line1=_cell(row, columns.get("card_address_line1")) or None,
                billing_postal_code=_cell(row, columns.get("card_address_postal_code")) or None,
                date_low_confidence=self._low_confidence(raw_date, detection),
            )
            candidates.append(_Candidate(row_num, payment))

        self._collect(result, candidates)
        return result

    # ==================== SHARED STEPS ====================

    @staticmethod
    def _low_confidence(raw_date: str, detection) -> bool:
        if detection.format == DateFormat.ISO:
            return False
        if detection.confidence == DetectionConfidence.HIGH and not detection.conflicting:
            return False
        return is_ambiguous_date(raw_date)

    @staticmethod
    def _collect(result: ParseResult, candidates: List[_Candidate]):
        """Keep the first occurrence of each fingerprint within the file."""
        seen: Set[str] = set()
        for candidate in candidates:
            fingerprint = candidate.payment.transaction_fingerprint
            if fingerprint in seen:
                result.skipped += 1
                continue
            seen.add(fingerprint)
            result.data.append(candidate.payment)
        result.processed = len(result.data)

    async def _drop_known(self, result: ParseResult):
        """Drop payments whose fingerprint is already reconciled (one batch query)."""
        if not self.fingerprint_store or not result.data:
            return

        known = await self.fingerprint_store.existing_fingerprints(
            [p.transaction_fingerprint for p in result.data]
        )
        if not known:
            return

        result.data = [p for p in result.data if p.transaction_fingerprint not in known]
        result.skipped += len(known)
        result.processed = len(result.data)


# ==================== VALIDATION ====================

def validate_payment(payment: ParsedPayment) -> List[str]:
    """Collect every field-level problem with one parsed payment."""
    problems = []

    if not payment.transaction_fingerprint:
        problems.append("Missing transaction fingerprint")

    if not isinstance(payment.payment_date, date):
        problems.append("Invalid payment date")

    if payment.amount is None or payment.amount <= 0:
        problems.append("Amount must be greater than zero")
    elif not (MIN_EXPECTED_AMOUNT <= payment.amount <= MAX_EXPECTED_AMOUNT):
        problems.append(
            f"Amount {payment.amount} is outside the expected range "
            f"£{MIN_EXPECTED_AMOUNT}-£{MAX_EXPECTED_AMOUNT}"
        )

    if not isinstance(payment.source, PaymentSource):
        problems.append("Unknown payment source")

    if not payment.transaction_ref:
        problems.append("Missing transaction reference")

    if payment.customer_email and not EMAIL_PATTERN.match(payment.customer_email):
        problems.append("Invalid customer email format")

    if payment.billing_postal_code:
        postcode = payment.billing_postal_code.strip().upper()
        if not UK_POSTCODE_PATTERN.match(postcode) and not (3 <= len(postcode) <= 10):
            problems.append("Invalid postcode format")

    return problems


def validate_payments(payments: List[ParsedPayment]) -> Dict[str, Any]:
    """
    Validate a batch of parsed payments.

    Returns {"valid": bool, "errors": [{"transaction_fingerprint", "problems"}]}.
    """
    issues = []
    for payment in payments:
        problems = validate_payment(payment)
        if problems:
            issues.append({
                "transaction_fingerprint": payment.transaction_fingerprint,
                "problems": problems,
            })
    return {"valid": not issues, "errors": issues}
