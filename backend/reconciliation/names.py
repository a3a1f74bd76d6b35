"""
Name normalization helpers shared by the surname index and matching rules.
"""

import re
from typing import Dict, List, Optional

from rapidfuzz.distance import Levenshtein

# Spelling variants folded onto one canonical surname
SURNAME_VARIATIONS: Dict[str, str] = {
    "MACDONALD": "MCDONALD",
    "MCDONELL": "MCDONNELL",
    "MCPHERSON": "MACPHERSON",
    "OCONNOR": "O'CONNOR",
    "OBRIEN": "O'BRIEN",
    "OMALLEY": "O'MALLEY",
    "SMYTH": "SMITH",
    "SMYTHE": "SMITH",
    "CLARKE": "CLARK",
    "GREY": "GRAY",
}

FORENAME_VARIATIONS: Dict[str, List[str]] = {
    "ALEXANDER": ["ALEX", "AL", "SANDY"],
    "ANTHONY": ["TONY", "ANT"],
    "BENJAMIN": ["BEN", "BENNY"],
    "CHRISTOPHER": ["CHRIS", "KIT"],
    "DANIEL": ["DAN", "DANNY"],
    "DAVID": ["DAVE", "DAVY"],
    "ELIZABETH": ["LIZ", "BETH", "BETTY", "LIBBY"],
    "FREDERICK": ["FRED", "FREDDY"],
    "GREGORY": ["GREG"],
    "JAMES": ["JIM", "JIMMY", "JAMIE"],
    "JENNIFER": ["JEN", "JENNY"],
    "JOHN": ["JACK", "JOHNNY"],
    "JONATHAN": ["JON", "JONNY"],
    "JOSEPH": ["JOE", "JOEY"],
    "KATHERINE": ["KATE", "KATHY", "KAT"],
    "KENNETH": ["KEN", "KENNY"],
    "MARGARET": ["MEG", "MAGGIE", "PEGGY"],
    "MATTHEW": ["MATT"],
    "MICHAEL": ["MIKE", "MICKY"],
    "NICHOLAS": ["NICK", "NICKY"],
    "PATRICIA": ["PAT", "PATTY"],
    "RICHARD": ["RICK", "DICK", "RICKY"],
    "ROBERT": ["BOB", "BOBBY", "ROB"],
    "STEPHEN": ["STEVE", "STEVIE"],
    "THOMAS": ["TOM", "TOMMY"],
    "WILLIAM": ["BILL", "BILLY", "WILL", "WILLY"],
}

_NAME_TOKEN = re.compile(r"[A-Z][A-Z'\-]*[A-Z]|[A-Z]")


def name_tokens(text: Optional[str]) -> List[str]:
    """Upper-case alphabetic tokens; apostrophes and hyphens are kept inside names."""
    if not text:
        return []
    return _NAME_TOKEN.findall(text.upper())


def normalize_surname(surname: Optional[str]) -> str:
    normalized = (surname or "").strip().upper()
    return SURNAME_VARIATIONS.get(normalized, normalized)


def surname_keys(surname: Optional[str]) -> List[str]:
    """Normalized forms under which a surname is indexed, hyphen parts included."""
    normalized = normalize_surname(surname)
    if not normalized:
        return []
    keys = [normalized]
    if "-" in normalized:
        keys.extend(normalize_surname(part) for part in normalized.split("-") if part.strip())
    return [k for k in dict.fromkeys(keys) if len(k) > 1]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    a = (a or "").upper().strip()
    b = (b or "").upper().strip()
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


def is_nickname(token: str, forename: str) -> bool:
    token = token.upper()
    forename = forename.upper()
    return (
        token in FORENAME_VARIATIONS.get(forename, [])
        or forename in FORENAME_VARIATIONS.get(token, [])
    )


def is_forename_abbreviation(token: str, forename: str) -> bool:
    """
    True when one name abbreviates the other: the shorter is an initial
    or at least three letters and prefixes the longer, or a known nickname.
    """
    token = token.upper().strip(".")
    forename = forename.upper()
    if not token or not forename or token == forename:
        return False

    shorter, longer = sorted((token, forename), key=len)
    if (len(shorter) == 1 or len(shorter) >= 3) and longer.startswith(shorter):
        return True
    return is_nickname(token, forename)


# Words in payment descriptions that are never part of a payer's name
DESCRIPTION_STOPWORDS = frozenset([
    "MEMBERSHIP", "MEMBER", "PAYMENT", "RENEWAL", "FEE", "FEES", "ANNUAL",
    "TRANSFER", "BANK", "SUBSCRIPTION", "SUBS", "FASTER", "PAYMENTS",
    "STANDING", "ORDER", "REF", "CARD", "TRANSACTION", "CREDIT", "BGC", "FPI", "SO",
])
