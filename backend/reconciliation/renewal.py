"""
Membership renewal rules applied when a payment is reconciled.

- Renewal date moves to payment date + 1 year, never backwards
- Fee validation against the membership fee bands is advisory only
- A human-readable audit note is appended to the CRM contact
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta

from ingestion.models import ParsedPayment
from reconciliation.contacts import Contact, normalize_membership_type
from reconciliation.matching_rules.membership_rules import FEE_BANDS


def compute_renewal_date(payment_date: date, current_renewal: Optional[date]) -> date:
    """max(current renewal, payment date + 1 year); 29 Feb rolls to 28 Feb."""
    candidate = payment_date + relativedelta(years=1)
    if current_renewal and current_renewal >= candidate:
        return current_renewal
    return candidate


@dataclass
class FeeValidation:
    """Outcome of checking a payment against the member's fee band."""
    is_valid: bool
    membership_type: Optional[str]
    expected_amount: str
    actual_amount: Decimal
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "membership_type": self.membership_type,
            "expected_amount": self.expected_amount,
            "actual_amount": str(self.actual_amount),
            "warning": self.warning,
        }


def validate_membership_payment(contact: Contact, amount: Decimal) -> FeeValidation:
    """Compare a payment with the fee band of the contact's membership type."""
    membership_type = normalize_membership_type(contact.membership_type)

    if not membership_type:
        return FeeValidation(
            is_valid=False,
            membership_type=None,
            expected_amount="Unknown - no membership type recorded",
            actual_amount=amount,
            warning=f"Contact {contact.full_name or contact.id} has no membership type recorded",
        )

    band = FEE_BANDS.get(membership_type)
    if not band:
        return FeeValidation(
            is_valid=False,
            membership_type=membership_type,
            expected_amount="Unknown membership type",
            actual_amount=amount,
            warning=f"No fee band for membership type: {membership_type}",
        )

    low, high = band
    expected = f"£{low:g}-{high:g}"
    within = Decimal(str(low)) <= amount <= Decimal(str(high))
    return FeeValidation(
        is_valid=within,
        membership_type=membership_type,
        expected_amount=expected,
        actual_amount=amount,
        warning=None if within else f"Payment amount £{amount} is outside expected range {expected}",
    )


def build_reconciliation_note(
    payment: ParsedPayment,
    contact: Contact,
    validation: FeeValidation,
    renewal_date: date,
    now: Optional[datetime] = None
) -> str:
    """Plain-text audit note appended to the CRM contact."""
    now = now or datetime.now(timezone.utc)
    lines = [
        f"Payment Reconciliation - {now.strftime('%d/%m/%Y %H:%M')}",
        f"Payment: £{payment.amount} on {payment.payment_date.strftime('%d/%m/%Y')}",
        f"Reference: {payment.transaction_ref or payment.transaction_fingerprint}",
        f"Contact: {contact.full_name or contact.email or contact.id}",
    ]
    if payment.customer_name:
        lines.append(f"Customer Name: {payment.customer_name}")
    if payment.customer_email:
        lines.append(f"Customer Email: {payment.customer_email}")

    lines.append(f"Membership Type: {validation.membership_type or 'Unknown'}")
    lines.append(f"Expected Amount: {validation.expected_amount}")
    lines.append(f"Renewal Date: {renewal_date.strftime('%d/%m/%Y')}")
    if validation.warning:
        lines.append(f"Warning: {validation.warning}")
    if validation.is_valid:
        lines.append("Validation: Payment amount confirmed")
    else:
        lines.append("Validation: Payment amount does not match expected range")
    lines.append("Source: Automated reconciliation system")
    return "\n".join(lines)
