"""
Date format detection for payment exports.

Bank and card exports mix UK (day-first) and US (month-first) numeric
dates. The convention is decided once per file from unambiguous values
(a component above 12), then every row is parsed under that decision.
"""

import re
from datetime import date
from typing import Iterable, Optional, Tuple

from dateutil import parser as date_parser

from ingestion.models import DateFormat, DateFormatDetection, DetectionConfidence

ISO_DATE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}")
NUMERIC_DATE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")

MIN_YEAR = 1900
MAX_YEAR = 2100


def _numeric_parts(value: str) -> Optional[Tuple[int, int, int]]:
    match = NUMERIC_DATE.match(value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def is_ambiguous_date(value: str) -> bool:
    """True for d/m/yyyy values where either order is a valid date."""
    parts = _numeric_parts(value or "")
    if not parts:
        return False
    first, second, _ = parts
    return first <= 12 and second <= 12 and first != second


def _confidence_for(indicators: int) -> DetectionConfidence:
    if indicators >= 3:
        return DetectionConfidence.HIGH
    if indicators == 2:
        return DetectionConfidence.MEDIUM
    return DetectionConfidence.LOW


def detect_date_format(values: Iterable[str]) -> DateFormatDetection:
    """
    Classify the date convention of a file.

    - first component > 12 is a day-first indicator
    - second component > 12 is a month-first indicator
    - ISO (yyyy-mm-dd) values are counted separately
    With no indicators the file defaults to day-first at LOW confidence,
    unless every date is ISO. Conflicting indicators resolve to the
    majority (day-first on a tie) at LOW confidence.
    """
    day_first = month_first = ambiguous = iso = 0

    for raw in values:
        value = (raw or "").strip()
        if not value:
            continue
        if ISO_DATE.match(value):
            iso += 1
            continue
        parts = _numeric_parts(value)
        if not parts:
            continue
        first, second, _ = parts
        if first > 12:
            day_first += 1
        elif second > 12:
            month_first += 1
        else:
            ambiguous += 1

    counts = dict(
        day_first_count=day_first,
        month_first_count=month_first,
        ambiguous_count=ambiguous,
        iso_count=iso,
    )

    if day_first == 0 and month_first == 0:
        if iso > 0 and ambiguous == 0:
            return DateFormatDetection(DateFormat.ISO, DetectionConfidence.HIGH, **counts)
        return DateFormatDetection(DateFormat.DAY_FIRST, DetectionConfidence.LOW, **counts)

    if day_first > 0 and month_first > 0:
        winner = DateFormat.MONTH_FIRST if month_first > day_first else DateFormat.DAY_FIRST
        return DateFormatDetection(winner, DetectionConfidence.LOW, **counts)

    if day_first > 0:
        return DateFormatDetection(DateFormat.DAY_FIRST, _confidence_for(day_first), **counts)
    return DateFormatDetection(DateFormat.MONTH_FIRST, _confidence_for(month_first), **counts)


def _in_range(day: int, month: int, year: int) -> bool:
    return 1 <= day <= 31 and 1 <= month <= 12 and MIN_YEAR <= year <= MAX_YEAR


def parse_payment_date(value: str, detection: DateFormatDetection) -> Optional[date]:
    """
    Parse one date string under the file-wide convention.
    Returns None when the value is not a valid calendar date.
    """
    value = (value or "").strip()
    if not value:
        return None

    if ISO_DATE.match(value):
        try:
            parsed = date_parser.isoparse(value).date()
        except ValueError:
            try:
                parsed = date_parser.parse(value, yearfirst=True, dayfirst=False).date()
            except (ValueError, OverflowError):
                return None
        return parsed if MIN_YEAR <= parsed.year <= MAX_YEAR else None

    parts = _numeric_parts(value)
    if parts:
        first, second, year = parts
        if detection.format == DateFormat.MONTH_FIRST:
            month, day = first, second
        else:
            day, month = first, second
        if not _in_range(day, month, year):
            return None
        try:
            return date(year, month, day)
        except ValueError:
            return None

    try:
        parsed = date_parser.parse(
            value, dayfirst=detection.format != DateFormat.MONTH_FIRST
        ).date()
    except (ValueError, OverflowError):
        return None
    return parsed if MIN_YEAR <= parsed.year <= MAX_YEAR else None
