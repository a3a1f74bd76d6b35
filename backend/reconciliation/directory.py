"""
Contact Directory Cache

Time-bounded cache of member contacts sourced from the CRM, falling back
to the local contacts table when the CRM is unavailable.

- Snapshots are immutable; a refresh builds a new snapshot and swaps
  the reference, so readers never wait on a lock
- At most one refresh runs at a time; concurrent callers await it
- Each snapshot carries a surname index for candidate narrowing
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ingestion.models import ParsedPayment
from reconciliation.contacts import Contact
from reconciliation.errors import ExternalServiceError
from reconciliation.matching_rules.membership_rules import extract_names
from reconciliation.names import name_tokens
from reconciliation.surname_index import SurnameIndex

SOURCE_CRM = "crm"
SOURCE_LOCAL = "local"


@dataclass(frozen=True)
class DirectorySnapshot:
    contacts: Tuple[Contact, ...]
    source: str
    built_at: float
    expires_at: float
    surname_index: SurnameIndex = field(compare=False)
    by_id: Dict[str, Contact] = field(compare=False)

    @classmethod
    def build(cls, contacts: Sequence[Contact], source: str, ttl_seconds: float) -> "DirectorySnapshot":
        now = time.monotonic()
        ordered = tuple(sorted(contacts, key=lambda c: c.id))
        return cls(
            contacts=ordered,
            source=source,
            built_at=now,
            expires_at=now + ttl_seconds,
            surname_index=SurnameIndex(ordered),
            by_id={c.id: c for c in ordered},
        )

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def candidates_for(self, payment: ParsedPayment) -> List[Contact]:
        """
        Narrow the directory to contacts plausibly named by the payment.

        Falls back to every contact when no surname or email hits.
        """
        found: Dict[str, Contact] = {}

        if payment.customer_name:
            tokens = name_tokens(payment.customer_name)
            if tokens:
                for contact in self.surname_index.lookup(tokens[-1]):
                    found[contact.id] = contact
                for contact in self.surname_index.lookup(tokens[0]):
                    found[contact.id] = contact

        for tokens in extract_names(payment.description):
            for contact in self.surname_index.search_description(" ".join(tokens)):
                found[contact.id] = contact

        if payment.customer_email:
            email = payment.customer_email.strip().lower()
            for contact in self.contacts:
                if contact.email and contact.email.strip().lower() == email:
                    found[contact.id] = contact

        if not found:
            return list(self.contacts)
        return [found[k] for k in sorted(found)]


class ContactDirectory:
    """
    Shared, refreshable contact cache.

    Usage:
        directory = ContactDirectory(crm_client.fetch_all_contacts, repository.list_local_contacts)
        snapshot = await directory.get()
    """

    def __init__(
        self,
        fetch_remote: Callable[[], Awaitable[List[Contact]]],
        fetch_local: Callable[[], Awaitable[List[Contact]]],
        ttl_seconds: float = 300,
        logger: Optional[logging.Logger] = None
    ):
        self.fetch_remote = fetch_remote
        self.fetch_local = fetch_local
        self.ttl_seconds = ttl_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._snapshot: Optional[DirectorySnapshot] = None
        self._refresh_task: Optional[asyncio.Task] = None

    async def get(self) -> DirectorySnapshot:
        """Current snapshot, rebuilding it first when missing or expired."""
        snapshot = self._snapshot
        if snapshot is not None and not snapshot.expired():
            return snapshot
        return await self._refresh_once()

    async def refresh(self) -> DirectorySnapshot:
        """Rebuild the snapshot. Readers keep the old one until the swap."""
        return await self._refresh_once()

    def cache_info(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        if snapshot is None:
            return {"cached": 0, "expires_in_seconds": 0, "source": None}
        return {
            "cached": len(snapshot.contacts),
            "expires_in_seconds": max(0.0, round(snapshot.expires_at - time.monotonic(), 1)),
            "source": snapshot.source,
            "surnames_indexed": len(snapshot.surname_index),
        }

    async def _refresh_once(self) -> DirectorySnapshot:
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._build())
            self._refresh_task = task
        # shield: one caller being cancelled must not cancel the shared refresh
        return await asyncio.shield(task)

    async def _build(self) -> DirectorySnapshot:
        try:
            contacts = await self.fetch_remote()
            source = SOURCE_CRM
        except (ExternalServiceError, ValueError) as e:
            self.logger.warning(
                f"CRM contact fetch failed, using local contacts: {e}",
                extra={"error_type": type(e).__name__}
            )
            contacts = await self.fetch_local()
            source = SOURCE_LOCAL

        snapshot = DirectorySnapshot.build(contacts, source, self.ttl_seconds)
        self._snapshot = snapshot
        self.logger.info(
            f"Contact directory refreshed: {len(snapshot.contacts)} contacts",
            extra={"source": source, **snapshot.surname_index.stats()}
        )
        return snapshot
