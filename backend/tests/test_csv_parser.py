"""
Unit Tests for Payment CSV Ingestion

Tests:
- Date convention detection (day-first / month-first / ISO)
- Bank statement parsing, fingerprints and account hashing
- Card processor parsing with flexible column names
- Deduplication within a file and against reconciled fingerprints
- Field-level payment validation

Run with: pytest tests/test_csv_parser.py -v
"""

import hashlib
from datetime import date
from decimal import Decimal

import pytest

from ingestion.csv_parser import (
    PaymentCsvParser,
    InMemoryFingerprintStore,
    amount_key,
    bank_fingerprint,
    hash_account,
    parse_amount,
    resolve_columns,
    validate_payment,
    validate_payments,
    CARD_FIELD_CANDIDATES
)
from ingestion.date_detection import detect_date_format, is_ambiguous_date, parse_payment_date
from ingestion.models import (
    CsvDialect, DateFormat, DetectionConfidence, PaymentSource
)

BANK_HEADER = "Transaction Date,Sort Code,Account Number,Transaction Description,Credit Amount"


def bank_csv(*rows):
    return "\n".join([BANK_HEADER, *rows]) + "\n"


class TestDateDetection:
    """Test file-wide date convention detection."""

    def test_day_first_indicators(self):
        detection = detect_date_format(["25/03/2024", "13/04/2024", "31/01/2024", "05/06/2024"])
        assert detection.format == DateFormat.DAY_FIRST
        assert detection.confidence == DetectionConfidence.HIGH
        assert detection.day_first_count == 3
        assert detection.ambiguous_count == 1

    def test_month_first_indicators(self):
        detection = detect_date_format(["03/25/2024", "04/13/2024"])
        assert detection.format == DateFormat.MONTH_FIRST
        assert detection.confidence == DetectionConfidence.MEDIUM

    def test_all_ambiguous_defaults_to_day_first_low(self):
        detection = detect_date_format(["01/02/2024", "03/04/2024"])
        assert detection.format == DateFormat.DAY_FIRST
        assert detection.confidence == DetectionConfidence.LOW

    def test_iso_only(self):
        detection = detect_date_format(["2024-03-15 10:00:00", "2024-03-16"])
        assert detection.format == DateFormat.ISO
        assert detection.confidence == DetectionConfidence.HIGH

    def test_conflicting_indicators_resolve_to_majority_with_low_confidence(self):
        detection = detect_date_format(["25/03/2024", "26/03/2024", "03/27/2024"])
        assert detection.format == DateFormat.DAY_FIRST
        assert detection.confidence == DetectionConfidence.LOW
        assert detection.conflicting

    def test_parse_under_detected_convention(self):
        day_first = detect_date_format(["25/03/2024"])
        month_first = detect_date_format(["03/25/2024"])
        assert parse_payment_date("01/02/2024", day_first) == date(2024, 2, 1)
        assert parse_payment_date("01/02/2024", month_first) == date(2024, 1, 2)

    def test_invalid_dates_return_none(self):
        detection = detect_date_format(["25/03/2024"])
        assert parse_payment_date("31/02/2024", detection) is None
        assert parse_payment_date("not a date", detection) is None
        assert parse_payment_date("", detection) is None

    def test_ambiguity(self):
        assert is_ambiguous_date("01/02/2024")
        assert not is_ambiguous_date("02/02/2024")
        assert not is_ambiguous_date("13/02/2024")


class TestHelpers:
    """Test amount parsing, fingerprints and column resolution."""

    def test_parse_amount_formats(self):
        assert parse_amount("£1,234.50") == Decimal("1234.50")
        assert parse_amount("(20.00)") == Decimal("-20.00")
        assert parse_amount("") is None
        assert parse_amount("abc") is None

    def test_amount_key_is_canonical(self):
        assert amount_key(Decimal("70.00")) == "70"
        assert amount_key(Decimal("70.50")) == "70.5"

    def test_bank_fingerprint_is_sha256_of_raw_fields(self):
        expected = hashlib.sha256("15/03/2024_70_J SMITH MEMBERSHIP".encode()).hexdigest()
        assert bank_fingerprint("15/03/2024", Decimal("70.00"), "J SMITH MEMBERSHIP") == expected

    def test_hash_account(self):
        assert hash_account("20-00-00", "12345678") == hashlib.sha256(b"20-00-0012345678").hexdigest()
        assert hash_account("", "") is None

    def test_resolve_columns_never_claims_a_column_twice(self):
        headers = ["id", "Created (UTC)", "Amount", "Customer Name", "Customer Email", "Description"]
        columns = resolve_columns(headers, CARD_FIELD_CANDIDATES)
        assert columns["id"] == 0
        assert columns["created"] == 1
        assert columns["amount"] == 2
        assert columns["customer_name"] == 3
        assert columns["customer_email"] == 4
        assert columns["description"] == 5
        assert len(set(columns.values())) == len(columns)


class TestBankStatementParsing:
    """Test bank statement (dialect A) parsing."""

    @pytest.mark.asyncio
    async def test_parses_credit_rows(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv(
                "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00",
                "26/03/2024,20-00-00,87654321,DOE J RENEWAL,45.00",
            ),
            CsvDialect.BANK_STATEMENT,
        )

        assert result.success
        assert result.processed == 2
        payment = result.data[0]
        assert payment.source == PaymentSource.BANK_CSV
        assert payment.payment_date == date(2024, 3, 25)
        assert payment.amount == Decimal("70.00")
        assert payment.description == "J SMITH MEMBERSHIP"
        assert payment.hashed_account_identifier == hashlib.sha256(b"20-00-0012345678").hexdigest()

    @pytest.mark.asyncio
    async def test_raw_account_number_never_in_output(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv("25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00"),
            CsvDialect.BANK_STATEMENT,
        )
        assert "12345678" not in str(result.to_dict())

    @pytest.mark.asyncio
    async def test_missing_headers_fails(self):
        parser = PaymentCsvParser()
        result = await parser.parse("Date,Amount\n25/03/2024,70\n", CsvDialect.BANK_STATEMENT)
        assert not result.success
        assert "Missing required headers" in result.error_messages[0]

    @pytest.mark.asyncio
    async def test_empty_file_fails(self):
        parser = PaymentCsvParser()
        result = await parser.parse("   \n", CsvDialect.BANK_STATEMENT)
        assert not result.success
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_debits_and_blank_credits_are_skipped(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv(
                "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00",
                "25/03/2024,20-00-00,12345678,DIRECT DEBIT,",
                "25/03/2024,20-00-00,12345678,REFUND,0.00",
            ),
            CsvDialect.BANK_STATEMENT,
        )
        assert result.processed == 1
        assert result.skipped == 2
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_row_errors_are_collected_not_raised(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv(
                "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00",
                "25/03/2024,20-00-00,12345678,TOO FEW COLUMNS",
                "25/03/2024,20-00-00,12345678,BAD AMOUNT,abc",
                "31/02/2024,20-00-00,12345678,BAD DATE,10.00",
            ),
            CsvDialect.BANK_STATEMENT,
        )
        assert result.success
        assert result.processed == 1
        assert result.error_messages == [
            "Row 3: Column count mismatch",
            "Row 4: Invalid credit amount",
            "Row 5: Invalid transaction date '31/02/2024'",
        ]

    @pytest.mark.asyncio
    async def test_quoted_fields_keep_commas(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv('25/03/2024,20-00-00,12345678,"SMITH, JOHN MEMBERSHIP","1,070.00"'),
            CsvDialect.BANK_STATEMENT,
        )
        assert result.data[0].description == "SMITH, JOHN MEMBERSHIP"
        assert result.data[0].amount == Decimal("1070.00")

    @pytest.mark.asyncio
    async def test_duplicate_rows_within_file_are_collapsed(self):
        parser = PaymentCsvParser()
        row = "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00"
        result = await parser.parse(bank_csv(row, row), CsvDialect.BANK_STATEMENT)
        assert result.processed == 1
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_reconciled_fingerprints_are_dropped(self):
        fingerprint = bank_fingerprint("25/03/2024", Decimal("70.00"), "J SMITH MEMBERSHIP")
        parser = PaymentCsvParser(fingerprint_store=InMemoryFingerprintStore([fingerprint]))
        result = await parser.parse(
            bank_csv(
                "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00",
                "26/03/2024,20-00-00,12345678,DOE J RENEWAL,45.00",
            ),
            CsvDialect.BANK_STATEMENT,
        )
        assert result.processed == 1
        assert result.skipped == 1
        assert all(p.transaction_fingerprint != fingerprint for p in result.data)

    @pytest.mark.asyncio
    async def test_bom_and_bytes_input(self):
        parser = PaymentCsvParser()
        content = ("\ufeff" + bank_csv("25/03/2024,20-00-00,12345678,J SMITH,70.00")).encode("utf-8")
        result = await parser.parse(content, "bank_statement")
        assert result.success
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_ambiguous_dates_flagged_when_detection_is_weak(self):
        parser = PaymentCsvParser()
        result = await parser.parse(
            bank_csv(
                "01/02/2024,20-00-00,12345678,J SMITH,70.00",
                "25/02/2024,20-00-00,12345678,J DOE,45.00",
            ),
            CsvDialect.BANK_STATEMENT,
        )
        assert result.date_detection.confidence == DetectionConfidence.LOW
        by_description = {p.description: p for p in result.data}
        assert by_description["J SMITH"].date_low_confidence
        assert by_description["J SMITH"].payment_date == date(2024, 2, 1)
        assert not by_description["J DOE"].date_low_confidence


class TestCardProcessorParsing:
    """Test card processor report (dialect B) parsing."""

    @pytest.mark.asyncio
    async def test_parses_customer_fields(self):
        parser = PaymentCsvParser()
        content = (
            "id,Created (UTC),Amount,Description,Customer Name,Customer Email,Card Address Line1,Card Address Zip\n"
            "ch_1,2024-03-15 10:22:01,70.00,Membership,John Smith,john@example.com,1 High St,SW1A 1AA\n"
        )
        result = await parser.parse(content, CsvDialect.CARD_PROCESSOR)

        assert result.success
        payment = result.data[0]
        assert payment.transaction_fingerprint == "ch_1"
        assert payment.transaction_ref == "ch_1"
        assert payment.source == PaymentSource.CARD_REPORT
        assert payment.payment_date == date(2024, 3, 15)
        assert payment.customer_name == "John Smith"
        assert payment.customer_email == "john@example.com"
        assert payment.billing_address_line1 == "1 High St"
        assert payment.billing_postal_code == "SW1A 1AA"
        assert not payment.date_low_confidence

    @pytest.mark.asyncio
    async def test_alternative_column_spellings(self):
        parser = PaymentCsvParser()
        content = (
            "source_id,created,gross,customer_name,receipt_email\n"
            "ch_2,2024-03-15,45.00,Jane Doe,jane@example.com\n"
        )
        result = await parser.parse(content, CsvDialect.CARD_PROCESSOR)
        assert result.success
        assert result.data[0].amount == Decimal("45.00")
        assert result.data[0].customer_email == "jane@example.com"
        assert result.data[0].description == "Card transaction ch_2"

    @pytest.mark.asyncio
    async def test_missing_required_columns(self):
        parser = PaymentCsvParser()
        result = await parser.parse("Name,Email\nJohn,j@example.com\n", CsvDialect.CARD_PROCESSOR)
        assert not result.success
        assert "Missing required columns" in result.error_messages[0]

    @pytest.mark.asyncio
    async def test_missing_id_and_zero_amount(self):
        parser = PaymentCsvParser()
        content = (
            "id,created,amount\n"
            ",2024-03-15,70.00\n"
            "ch_3,2024-03-15,0.00\n"
            "ch_4,2024-03-15,-20.00\n"
        )
        result = await parser.parse(content, CsvDialect.CARD_PROCESSOR)
        assert result.error_messages == ["Row 2: Missing transaction id"]
        assert result.skipped == 1
        assert result.data[0].amount == Decimal("20.00")


class TestPaymentValidation:
    """Test field-level validation of parsed payments."""

    def test_valid_payment(self, make_payment):
        assert validate_payment(make_payment()) == []

    def test_collects_every_problem(self, make_payment):
        payment = make_payment(
            amount=Decimal("0"),
            transaction_ref="",
            customer_email="not-an-email",
        )
        problems = validate_payment(payment)
        assert "Amount must be greater than zero" in problems
        assert "Missing transaction reference" in problems
        assert "Invalid customer email format" in problems

    def test_out_of_range_amount(self, make_payment):
        problems = validate_payment(make_payment(amount=Decimal("900")))
        assert any("outside the expected range" in p for p in problems)

    def test_batch_summary(self, make_payment):
        summary = validate_payments([make_payment(), make_payment(transaction_fingerprint="fp-2", amount=Decimal("-1"))])
        assert not summary["valid"]
        assert summary["errors"][0]["transaction_fingerprint"] == "fp-2"
