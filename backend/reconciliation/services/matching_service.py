"""
Matching Service

Produces ranked contact suggestions for parsed payments:
- Loads the contact directory snapshot (CRM, or local fallback)
- Drops contacts reconciled within the exclusion window
- Narrows candidates through the surname index
- Scores with the membership matching rules

Matching never raises: when the directory or the exclusion lookup
fails, the error is logged and the payment gets no suggestions.
"""

import logging
import time
from typing import Dict, List, Optional, Set, Tuple

from ingestion.models import ParsedPayment
from reconciliation.directory import ContactDirectory, DirectorySnapshot
from reconciliation.matching_rules.membership_rules import (
    MatchingResult, MembershipMatchingRules, membership_rules
)
from reconciliation.repository import ReconciliationRepository


class MatchingService:
    """Suggest contacts for incoming payments."""

    def __init__(
        self,
        directory: ContactDirectory,
        repository: ReconciliationRepository,
        rules: Optional[MembershipMatchingRules] = None,
        exclusion_days: int = 30,
        logger: Optional[logging.Logger] = None
    ):
        self.directory = directory
        self.repository = repository
        self.rules = rules or membership_rules
        self.exclusion_days = exclusion_days
        self.logger = logger or logging.getLogger(__name__)

    async def _load(self) -> Optional[Tuple[DirectorySnapshot, Set[str]]]:
        """Directory snapshot and excluded contact ids, or None when either lookup fails."""
        try:
            snapshot = await self.directory.get()
            excluded = await self.repository.recently_reconciled_contact_ids(self.exclusion_days)
        except Exception as e:
            self.logger.error(
                f"Contact lookup failed, returning no suggestions: {e}",
                extra={"error_type": type(e).__name__},
                exc_info=True
            )
            return None
        return snapshot, excluded

    def _match(self, payment: ParsedPayment, snapshot: DirectorySnapshot, excluded: Set[str]) -> MatchingResult:
        candidates = [c for c in snapshot.candidates_for(payment) if c.id not in excluded]
        return self.rules.find_matches(payment, candidates)

    async def find_matches(self, payment: ParsedPayment) -> MatchingResult:
        start = time.perf_counter()
        loaded = await self._load()
        if loaded is None:
            return MatchingResult([], 0, (time.perf_counter() - start) * 1000)

        snapshot, excluded = loaded
        result = self._match(payment, snapshot, excluded)
        result.elapsed_ms = (time.perf_counter() - start) * 1000

        self.logger.info(
            f"Matched payment against {result.total_evaluated} candidates",
            extra={
                "transaction_fingerprint": payment.transaction_fingerprint,
                "directory_size": len(snapshot.contacts),
                "excluded": len(excluded),
                "suggestions": len(result.suggestions),
                "top_confidence": result.suggestions[0].confidence if result.suggestions else None,
            }
        )
        return result

    async def find_batch_matches(self, payments: List[ParsedPayment]) -> Dict[str, MatchingResult]:
        """Suggestions for several payments, keyed by fingerprint."""
        loaded = await self._load()
        if loaded is None:
            return {p.transaction_fingerprint: MatchingResult([], 0, 0.0) for p in payments}

        snapshot, excluded = loaded
        return {
            payment.transaction_fingerprint: self._match(payment, snapshot, excluded)
            for payment in payments
        }

    async def refresh_contacts(self) -> Dict:
        await self.directory.refresh()
        return self.directory.cache_info()
