"""
CRM API Client

Thin async client for the membership CRM (contacts, custom fields, notes).
Every non-2xx response, network error or timeout surfaces as
ExternalServiceError; retrying is the caller's decision.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from reconciliation.contacts import (
    Contact, normalize_membership_type, parse_renewal_date
)
from reconciliation.custom_fields import custom_field_reader, extract_custom_fields
from reconciliation.errors import ExternalServiceError

PAID_TAG = "paid"
ACTIVE_TAG = "active"


@dataclass
class MembershipUpdate:
    """Fields pushed to the CRM when a payment is reconciled."""
    renewal_date: date
    payment_amount: Decimal
    payment_date: date
    membership_status: str = "active"
    paid_tag: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "renewal_date": self.renewal_date.isoformat(),
            "membership_status": self.membership_status,
            "paid_tag": self.paid_tag,
            "payment_amount": str(self.payment_amount),
            "payment_date": self.payment_date.isoformat(),
        }


def contact_from_crm(
    payload: Dict[str, Any],
    membership_field_id: str,
    renewal_field_id: str
) -> Contact:
    """
    Map a CRM contact payload to a Contact.

    Accepts the bare contact or a ``{"contact": {...}}`` envelope, and
    either custom-field shape.
    """
    data = payload.get("contact") if isinstance(payload.get("contact"), dict) else payload
    raw_fields = extract_custom_fields(data)
    reader = custom_field_reader(raw_fields)

    contact_id = data.get("id") or data.get("contact_id")
    if not contact_id:
        raise ValueError("CRM contact payload has no id")

    return Contact(
        id=str(contact_id),
        first_name=data.get("firstName") or data.get("first_name"),
        last_name=data.get("lastName") or data.get("last_name"),
        display_name=data.get("name") or data.get("contactName") or data.get("full_name"),
        email=data.get("email"),
        phone=data.get("phone"),
        postal_code=data.get("postalCode") or data.get("postal_code"),
        membership_type=normalize_membership_type(reader.get_str(membership_field_id)),
        renewal_date=parse_renewal_date(reader.get(renewal_field_id)),
        custom_fields=raw_fields,
        tags=tuple(data.get("tags") or ()),
    )


class CRMClient:
    """
    Async CRM client.

    Usage:
        client = CRMClient.from_settings(get_settings())
        contacts = await client.fetch_all_contacts()
    """

    SERVICE = "crm"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        location_id: str = "",
        membership_field_id: str = "",
        renewal_field_id: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.location_id = location_id
        self.membership_field_id = membership_field_id
        self.renewal_field_id = renewal_field_id
        self.timeout = timeout
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "CRMClient":
        return cls(
            base_url=settings.CRM_API_BASE,
            api_key=settings.CRM_API_KEY,
            location_id=settings.CRM_LOCATION_ID,
            membership_field_id=settings.CRM_FIELD_MEMBERSHIP_TYPE,
            renewal_field_id=settings.CRM_FIELD_RENEWAL_DATE,
            timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(self.SERVICE, f"CRM request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.SERVICE, f"CRM request failed: {method} {path}: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError.from_status(
                self.SERVICE,
                response.status_code,
                f"CRM returned {response.status_code} for {method} {path}",
            )

        if not response.content:
            return {}
        return response.json()

    def to_contact(self, payload: Dict[str, Any]) -> Contact:
        return contact_from_crm(payload, self.membership_field_id, self.renewal_field_id)

    # ==================== CONTACTS ====================

    async def list_contacts(self, page: int = 1, limit: int = 100) -> List[Dict[str, Any]]:
        params = {"page": page, "limit": limit, "include_custom_fields": "true"}
        if self.location_id:
            params["locationId"] = self.location_id
        data = await self._request("GET", "/contacts", params=params)
        return list(data.get("contacts") or [])

    async def fetch_all_contacts(self, page_size: int = 100, max_contacts: int = 1000) -> List[Contact]:
        """Walk the paged listing until a short page or ``max_contacts``."""
        contacts: List[Contact] = []
        page = 1
        while len(contacts) < max_contacts:
            batch = await self.list_contacts(page=page, limit=page_size)
            for item in batch:
                try:
                    contacts.append(self.to_contact(item))
                except ValueError:
                    self.logger.warning("Skipping CRM contact without id")
            if len(batch) < page_size:
                break
            page += 1

        self.logger.info(
            f"Fetched {len(contacts)} contacts from CRM",
            extra={"pages": page, "contact_count": len(contacts)}
        )
        return contacts[:max_contacts]

    async def get_contact(self, contact_id: str) -> Contact:
        data = await self._request("GET", f"/contacts/{contact_id}")
        return self.to_contact(data)

    async def update_membership(self, contact: Contact, update: MembershipUpdate) -> Dict[str, Any]:
        """Push renewal date, status and paid tag for one contact."""
        tags = list(contact.tags)
        if update.paid_tag and PAID_TAG not in tags:
            tags.append(PAID_TAG)
        if update.membership_status == "active" and ACTIVE_TAG not in tags:
            tags.append(ACTIVE_TAG)

        body = {
            "customField": {self.renewal_field_id: update.renewal_date.isoformat()},
            "tags": tags,
        }
        return await self._request("PUT", f"/contacts/{contact.id}", json=body)

    async def add_note(self, contact_id: str, body: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/contacts/{contact_id}/notes",
            json={"body": body, "contactId": contact_id}
        )

    async def health_check(self) -> bool:
        if not self.configured:
            return False
        try:
            await self.list_contacts(page=1, limit=1)
            return True
        except ExternalServiceError as e:
            self.logger.warning(f"CRM health check failed: {e}")
            return False
