"""
Membership Payment Matching Rules

Scores one incoming payment against candidate member contacts.

Signals (each in [0, 1]):
- name: payer name (explicit field or extracted from the description)
  compared surname-first against the contact
- email: payer email against contact email
- postcode: billing postcode against contact postcode (UK structure)
- amount: payment amount against the fee band of the contact's
  membership type

Weights:
- name 0.40, email 0.25, postcode 0.10, amount 0.25
- email and postcode only count when the payment carries them; the
  weighted sum is divided by the weights in use

Suggestions below 0.3 are discarded, the rest sorted by confidence
(ties by contact id) and capped at 5.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ingestion.models import ParsedPayment
from reconciliation.contacts import Contact, MembershipType
from reconciliation.names import (
    DESCRIPTION_STOPWORDS, is_forename_abbreviation, name_tokens,
    similarity, surname_keys
)


# ==================== FEE BANDS ====================

FEE_BANDS: Dict[str, Tuple[float, float]] = {
    MembershipType.FULL: (60.0, 80.0),
    MembershipType.ASSOCIATE: (40.0, 60.0),
    MembershipType.NEWSLETTER_ONLY: (10.0, 20.0),
}

COMMON_AMOUNTS = [15, 20, 30, 40, 50, 60, 70, 80, 100]
COMMON_AMOUNT_TOLERANCE = 5

# ==================== NAME EXTRACTION ====================

_NAME_CHUNK = r"[A-Z][A-Z'\-]*"
_TRAILING_NAME = r"([A-Z][A-Z'\- ]*?)\s*$"
LABEL_PATTERNS = [
    re.compile(r"MEMBERSHIP\s*-\s*" + _TRAILING_NAME),
    re.compile(r"RENEWAL\s*-?\s*" + _TRAILING_NAME),
    re.compile(r"PAYMENT\s*-?\s*" + _TRAILING_NAME),
    re.compile(rf"({_NAME_CHUNK}\s+{_NAME_CHUNK})\s+MEMBERSHIP\b"),
    re.compile(rf"({_NAME_CHUNK}\s+{_NAME_CHUNK})\s+PAYMENT\b"),
]
MAX_NAME_TOKENS = 4


def extract_names(description: Optional[str]) -> List[List[str]]:
    """
    Candidate payer names (as token lists) found in a free-text description.

    Label-anchored patterns are tried first; otherwise the last two
    non-stopword tokens of two or more letters are used.
    """
    if not description:
        return []
    text = " ".join(description.upper().split())
    names: List[List[str]] = []

    for pattern in LABEL_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        tokens = [t for t in name_tokens(match.group(1)) if t not in DESCRIPTION_STOPWORDS]
        if 1 <= len(tokens) <= MAX_NAME_TOKENS and tokens not in names:
            names.append(tokens)

    if names:
        return names

    tokens = [
        t for t in name_tokens(text)
        if len(t) >= 2 and t not in DESCRIPTION_STOPWORDS
    ]
    if tokens:
        names.append(tokens[-2:])
    return names


def _name_pairs(payment: ParsedPayment) -> List[Tuple[Optional[str], str, str]]:
    """(forename, surname, source text) pairs to score against a contact."""
    pairs: List[Tuple[Optional[str], str, str]] = []

    explicit = [t for t in name_tokens(payment.customer_name) if t not in DESCRIPTION_STOPWORDS]
    if explicit:
        text = " ".join(explicit)
        if len(explicit) == 1:
            return [(None, explicit[0], text)]
        return [(explicit[0], explicit[-1], text), (explicit[-1], explicit[0], text)]

    for tokens in extract_names(payment.description):
        text = " ".join(tokens)
        if len(tokens) == 1:
            pairs.append((None, tokens[0], text))
            continue
        pairs.append((tokens[0], tokens[-1], text))
        pairs.append((tokens[-1], tokens[0], text))
    return pairs


def _contact_forename(contact: Contact) -> Optional[str]:
    if contact.first_name:
        return contact.first_name.split()[0].upper()
    if contact.display_name and len(contact.display_name.split()) > 1:
        return contact.display_name.split()[0].upper()
    return None


def _contact_surname(contact: Contact) -> Optional[str]:
    if contact.last_name:
        return contact.last_name
    if contact.display_name and len(contact.display_name.split()) > 1:
        return contact.display_name.split()[-1]
    return None


# ==================== POSTCODES ====================

UK_POSTCODE = re.compile(r"^([A-Z]{1,2})(\d[A-Z\d]?)(\d[A-Z]{2})$")


def normalize_postcode(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", (value or "").upper())


def postcode_parts(value: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """(area, district, outward) for a UK postcode, else None."""
    match = UK_POSTCODE.match(normalize_postcode(value))
    if not match:
        return None
    area, district_tail, _ = match.groups()
    outward = area + district_tail
    district = area + re.match(r"\d+", district_tail).group(0)
    return area, district, outward


# ==================== RESULT TYPES ====================

@dataclass
class MatchSuggestion:
    """A scored candidate contact with per-signal reasoning."""
    contact: Contact
    confidence: float
    reasoning: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact": self.contact.to_dict(),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class MatchingResult:
    suggestions: List[MatchSuggestion]
    total_evaluated: int
    elapsed_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "total_evaluated": self.total_evaluated,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


# ==================== RULES ====================

class MembershipMatchingRules:
    """
    Fixed heuristics for matching membership payments to contacts.

    Pure: no I/O, and identical inputs always give identical output.
    """

    # Scoring weights
    WEIGHT_NAME = 0.40
    WEIGHT_EMAIL = 0.25
    WEIGHT_POSTCODE = 0.10
    WEIGHT_AMOUNT = 0.25

    MIN_CONFIDENCE = 0.3
    MAX_SUGGESTIONS = 5

    def __init__(
        self,
        min_confidence: Optional[float] = None,
        max_suggestions: Optional[int] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.min_confidence = self.MIN_CONFIDENCE if min_confidence is None else min_confidence
        self.max_suggestions = self.MAX_SUGGESTIONS if max_suggestions is None else max_suggestions
        self.logger = logger or logging.getLogger(__name__)

    def find_matches(
        self,
        payment: ParsedPayment,
        contacts: Sequence[Contact]
    ) -> MatchingResult:
        """
        Rank candidate contacts for one payment.

        Never raises: an unexpected scoring error yields no suggestions.
        """
        start = time.perf_counter()
        try:
            scored = [self.score_contact(payment, contact) for contact in contacts]
            suggestions = sorted(
                (s for s in scored if s.confidence >= self.min_confidence),
                key=lambda s: (-s.confidence, s.contact.id)
            )[: self.max_suggestions]
        except Exception as e:
            self.logger.error(
                f"Matching failed for payment: {e}",
                extra={"transaction_fingerprint": payment.transaction_fingerprint},
                exc_info=True
            )
            suggestions = []

        return MatchingResult(
            suggestions=suggestions,
            total_evaluated=len(contacts),
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    def score_contact(self, payment: ParsedPayment, contact: Contact) -> MatchSuggestion:
        name = self.score_name(payment, contact)
        amount = self.score_amount(payment.amount, contact.membership_type)

        weights = {"name": self.WEIGHT_NAME, "amount": self.WEIGHT_AMOUNT}
        scores = {"name": name["score"], "amount": amount["score"]}
        reasoning: Dict[str, Any] = {"name": name, "amount": amount}

        if payment.customer_email:
            email = self.score_email(payment.customer_email, contact.email)
            weights["email"] = self.WEIGHT_EMAIL
            scores["email"] = email["score"]
            reasoning["email"] = email

        if payment.billing_postal_code:
            postcode = self.score_postcode(payment.billing_postal_code, contact.postal_code)
            weights["postcode"] = self.WEIGHT_POSTCODE
            scores["postcode"] = postcode["score"]
            reasoning["postcode"] = postcode

        total_weight = sum(weights.values())
        confidence = sum(scores[k] * weights[k] for k in weights) / total_weight
        reasoning["weights"] = weights

        return MatchSuggestion(
            contact=contact,
            confidence=round(confidence, 4),
            reasoning=reasoning,
        )

    # ==================== NAME ====================

    def score_name(self, payment: ParsedPayment, contact: Contact) -> Dict[str, Any]:
        contact_surname = _contact_surname(contact)
        best = {"score": 0.0, "extracted_name": "", "matched_against": contact.full_name}
        if not contact_surname:
            return best

        for forename, surname, text in _name_pairs(payment):
            score = self._score_name_pair(forename, surname, text, contact, contact_surname)
            if score > best["score"]:
                best = {
                    "score": round(score, 4),
                    "extracted_name": text,
                    "matched_against": contact.full_name,
                }
        return best

    def _score_name_pair(
        self,
        forename: Optional[str],
        surname: str,
        text: str,
        contact: Contact,
        contact_surname: str
    ) -> float:
        if not set(surname_keys(surname)) & set(surname_keys(contact_surname)):
            return 0.1 * similarity(text, contact.full_name)

        contact_forename = _contact_forename(contact)
        if not forename or not contact_forename:
            return 0.3

        forename = forename.upper()
        if forename == contact_forename:
            return 1.0
        if is_forename_abbreviation(forename, contact_forename):
            return 0.9
        forename_similarity = similarity(forename, contact_forename)
        if forename_similarity > 0.7:
            return 0.8 * forename_similarity
        return 0.3

    # ==================== EMAIL ====================

    def score_email(self, payment_email: str, contact_email: Optional[str]) -> Dict[str, Any]:
        result = {"score": 0.0, "payment_email": payment_email, "contact_email": contact_email}
        if not contact_email or "@" not in payment_email or "@" not in contact_email:
            return result

        a = payment_email.strip().lower()
        b = contact_email.strip().lower()
        if a == b:
            result["score"] = 1.0
            return result

        local_a, domain_a = a.rsplit("@", 1)
        local_b, domain_b = b.rsplit("@", 1)
        if domain_a == domain_b:
            result["score"] = round(0.7 * similarity(local_a, local_b), 4)
        return result

    # ==================== POSTCODE ====================

    def score_postcode(self, payment_postcode: str, contact_postcode: Optional[str]) -> Dict[str, Any]:
        result = {"score": 0.0, "payment_postcode": payment_postcode, "contact_postcode": contact_postcode}
        a = normalize_postcode(payment_postcode)
        b = normalize_postcode(contact_postcode)
        if not a or not b:
            return result
        if a == b:
            result["score"] = 1.0
            return result

        parts_a = postcode_parts(a)
        parts_b = postcode_parts(b)
        if not parts_a or not parts_b:
            return result

        area_a, district_a, outward_a = parts_a
        area_b, district_b, outward_b = parts_b
        if outward_a == outward_b:
            result["score"] = 0.8
        elif district_a == district_b:
            result["score"] = 0.5
        elif area_a == area_b:
            result["score"] = 0.3
        return result

    # ==================== AMOUNT ====================

    def score_amount(self, amount: Decimal, membership_type: Optional[str]) -> Dict[str, Any]:
        value = float(amount)
        band = FEE_BANDS.get(membership_type) if membership_type else None

        if not band:
            return {
                "score": self._generic_amount_score(value),
                "expected_range": "Unknown membership type",
                "actual_amount": value,
            }

        low, high = band
        midpoint = (low + high) / 2
        half_width = (high - low) / 2

        if low <= value <= high:
            score = max(0.7, 1 - abs(value - midpoint) / half_width)
        else:
            distance = low - value if value < low else value - high
            score = max(0.0, 0.7 * (1 - distance / half_width))

        return {
            "score": round(min(1.0, score), 4),
            "expected_range": f"£{low:g}-{high:g}",
            "actual_amount": value,
        }

    @staticmethod
    def _generic_amount_score(value: float) -> float:
        if any(abs(value - common) <= COMMON_AMOUNT_TOLERANCE for common in COMMON_AMOUNTS):
            return 0.4
        if 10 <= value <= 100:
            return 0.2
        return 0.0


# Singleton instance
membership_rules = MembershipMatchingRules()
