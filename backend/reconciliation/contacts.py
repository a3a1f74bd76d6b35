"""
Contact value objects used by the directory and matching engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from dateutil import parser as date_parser

from reconciliation.custom_fields import CustomFieldReader, RawCustomFields, custom_field_reader


class MembershipType:
    """Canonical membership type names."""
    FULL = "Full"
    ASSOCIATE = "Associate"
    NEWSLETTER_ONLY = "Newsletter Only"
    EX_MEMBER = "Ex Member"


_MEMBERSHIP_PREFIXES = [
    ("full", MembershipType.FULL),
    ("associate", MembershipType.ASSOCIATE),
    ("newsletter", MembershipType.NEWSLETTER_ONLY),
]


def normalize_membership_type(value: Optional[str]) -> Optional[str]:
    """
    Canonicalize free-text membership types.

    "full member" -> "Full", "Associate Membership" -> "Associate",
    "newsletter" -> "Newsletter Only". Unknown values return None.
    """
    if not value:
        return None
    text = str(value).strip().lower()
    for suffix in ("membership", "member"):
        if text.endswith(suffix):
            text = text[: -len(suffix)].strip()
            break
    text = text.rstrip(" -")
    if not text:
        return None
    if text == "ex":
        return MembershipType.EX_MEMBER
    for prefix, canonical in _MEMBERSHIP_PREFIXES:
        if text.startswith(prefix):
            return canonical
    return None


def parse_renewal_date(value: Any) -> Optional[date]:
    """Parse a renewal date stored as ISO text or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        millis = int(value)
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).date()
    text = str(value).strip()
    # ISO first: dayfirst would read 2024-01-10 as 1 October
    try:
        return date_parser.isoparse(text).date()
    except ValueError:
        pass
    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class Contact:
    """A member as seen by the matching engine."""
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    postal_code: Optional[str] = None
    membership_type: Optional[str] = None
    renewal_date: Optional[date] = None
    custom_fields: RawCustomFields = field(default=None, compare=False, hash=False)
    tags: Tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        if self.first_name or self.last_name:
            return " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return (self.display_name or "").strip()

    def field_reader(self) -> CustomFieldReader:
        return custom_field_reader(self.custom_fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "display_name": self.display_name,
            "email": self.email,
            "postal_code": self.postal_code,
            "membership_type": self.membership_type,
            "renewal_date": self.renewal_date.isoformat() if self.renewal_date else None,
            "tags": list(self.tags),
        }


def contact_from_db(row) -> Contact:
    """Build a Contact from a ContactDB row."""
    return Contact(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        display_name=row.display_name,
        email=row.email,
        phone=row.phone,
        postal_code=row.postal_code,
        membership_type=normalize_membership_type(row.membership_type),
        renewal_date=row.renewal_date,
        custom_fields=row.custom_fields,
        tags=tuple(row.tags or ()),
    )
