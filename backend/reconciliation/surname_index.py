"""
Surname Index

Immutable lookup from normalized surname to contacts, used to narrow the
candidate set before scoring. Built once per directory snapshot.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from reconciliation.contacts import Contact
from reconciliation.names import DESCRIPTION_STOPWORDS, name_tokens, surname_keys

FUZZY_THRESHOLD = 0.8


def contact_surnames(contact: Contact) -> List[str]:
    """Index keys for a contact: last name and last token of the display name."""
    raw = []
    if contact.last_name:
        raw.append(contact.last_name)
    if contact.display_name:
        parts = contact.display_name.split()
        if len(parts) > 1:
            raw.append(parts[-1])

    keys: List[str] = []
    for surname in raw:
        keys.extend(surname_keys(surname))
    return list(dict.fromkeys(keys))


class SurnameIndex:
    """Surname -> contacts map. Never mutated after construction."""

    def __init__(self, contacts: Iterable[Contact]):
        index: Dict[str, List[Contact]] = {}
        for contact in contacts:
            for key in contact_surnames(contact):
                bucket = index.setdefault(key, [])
                if all(c.id != contact.id for c in bucket):
                    bucket.append(contact)

        self._index: Dict[str, Tuple[Contact, ...]] = {k: tuple(v) for k, v in index.items()}
        self._keys: Tuple[str, ...] = tuple(sorted(self._index))

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, surname: str) -> bool:
        return any(key in self._index for key in surname_keys(surname))

    def lookup(self, surname: str) -> List[Contact]:
        """Contacts indexed under ``surname`` (exact after normalization)."""
        found: List[Contact] = []
        for key in surname_keys(surname):
            found.extend(self._index.get(key, ()))
        return _unique(found)

    def fuzzy_key(self, word: str, threshold: float = FUZZY_THRESHOLD) -> Optional[str]:
        """Closest indexed surname with similarity >= threshold."""
        keys = surname_keys(word)
        if not keys:
            return None
        if keys[0] in self._index:
            return keys[0]
        if not self._keys:
            return None
        best = process.extractOne(
            keys[0], self._keys,
            scorer=Levenshtein.normalized_similarity,
            score_cutoff=threshold,
        )
        return best[0] if best else None

    def search_description(
        self,
        text: Optional[str],
        threshold: float = FUZZY_THRESHOLD
    ) -> List[Contact]:
        """Contacts whose surname appears (exactly or fuzzily) in free text."""
        found: List[Contact] = []
        for word in name_tokens(text):
            if len(word) < 2 or word in DESCRIPTION_STOPWORDS:
                continue
            exact = [k for k in surname_keys(word) if k in self._index]
            if exact:
                for key in exact:
                    found.extend(self._index[key])
                continue
            key = self.fuzzy_key(word, threshold)
            if key:
                found.extend(self._index[key])
        return _unique(found)

    def stats(self) -> Dict[str, Any]:
        total = sum(len(v) for v in self._index.values())
        return {
            "total_surnames": len(self._index),
            "total_entries": total,
            "average_contacts_per_surname": total / len(self._index) if self._index else 0,
        }


def _unique(contacts: List[Contact]) -> List[Contact]:
    seen = set()
    result = []
    for contact in contacts:
        if contact.id not in seen:
            seen.add(contact.id)
            result.append(contact)
    return result
