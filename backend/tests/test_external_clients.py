"""
Unit Tests for CRM and CMS Clients

Uses httpx.MockTransport, so no network access is needed.

Tests:
- CRM contact mapping (both custom-field shapes), paging, updates, notes
- CRM error classification (retryable vs not)
- CMS user lookup, role sync, skipped/not-found outcomes, retries
- Custom field readers

Run with: pytest tests/test_external_clients.py -v
"""

import base64
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from cms_integration.client import CMSClient, CMSUpdateStatus, role_for_membership
from crm_integration.client import CRMClient, MembershipUpdate, contact_from_crm
from reconciliation.contacts import MembershipType, parse_renewal_date
from reconciliation.custom_fields import (
    ListCustomFieldReader, MapCustomFieldReader, custom_field_reader, extract_custom_fields
)
from reconciliation.errors import ExternalServiceError
from reconciliation.retry import RetryPolicy

MEMBERSHIP_FIELD = "membership-field"
RENEWAL_FIELD = "renewal-field"


def crm_contact(contact_id="c-john", **overrides):
    payload = {
        "id": contact_id,
        "firstName": "John",
        "lastName": "Smith",
        "email": "john.smith@example.com",
        "postalCode": "SW1A 1AA",
        "tags": ["member"],
        "customField": [
            {"id": MEMBERSHIP_FIELD, "value": "Full Member"},
            {"id": RENEWAL_FIELD, "value": "2024-01-10"},
        ],
    }
    payload.update(overrides)
    return payload


def make_crm(handler, api_key="secret"):
    return CRMClient(
        base_url="https://crm.example.com/v1",
        api_key=api_key,
        location_id="loc-1",
        membership_field_id=MEMBERSHIP_FIELD,
        renewal_field_id=RENEWAL_FIELD,
        transport=httpx.MockTransport(handler),
    )


def make_cms(handler, **overrides):
    values = dict(
        base_url="https://members.example.org",
        username="sync-bot",
        password="app-password",
        retry_policy=RetryPolicy(max_retries=1, initial_delay=0.0, timeout=None),
        transport=httpx.MockTransport(handler),
    )
    values.update(overrides)
    return CMSClient(**values)


class TestCustomFields:
    """Test custom field readers for both CRM shapes."""

    def test_list_shape(self):
        reader = custom_field_reader([{"id": "a", "value": "x"}, {"id": "b", "value": " "}])
        assert isinstance(reader, ListCustomFieldReader)
        assert reader.get("a") == "x"
        assert reader.get_str("b") is None
        assert reader.get("missing") is None

    def test_list_with_value_preserves_shape(self):
        reader = custom_field_reader([{"id": "a", "value": "x"}])
        assert reader.with_value("a", "y") == [{"id": "a", "value": "y"}]
        assert reader.with_value("b", "z") == [{"id": "a", "value": "x"}, {"id": "b", "value": "z"}]

    def test_map_shape(self):
        reader = custom_field_reader({"a": "x"})
        assert isinstance(reader, MapCustomFieldReader)
        assert reader.get("a") == "x"
        assert reader.with_value("b", 1) == {"a": "x", "b": 1}

    def test_missing_fields(self):
        assert custom_field_reader(None).get("a") is None

    def test_extract_from_either_key(self):
        assert extract_custom_fields({"customFields": {"a": 1}}) == {"a": 1}
        assert extract_custom_fields({"customField": [{"id": "a"}]}) == [{"id": "a"}]
        assert extract_custom_fields({}) is None


class TestContactMapping:
    """Test CRM payload -> Contact."""

    def test_list_custom_fields(self):
        contact = contact_from_crm(crm_contact(), MEMBERSHIP_FIELD, RENEWAL_FIELD)
        assert contact.id == "c-john"
        assert contact.full_name == "John Smith"
        assert contact.membership_type == MembershipType.FULL
        assert contact.renewal_date == date(2024, 1, 10)
        assert contact.tags == ("member",)

    def test_map_custom_fields_and_envelope(self):
        payload = {"contact": crm_contact(
            customField=None,
            customFields={MEMBERSHIP_FIELD: "associate", RENEWAL_FIELD: 1704844800000},
        )}
        contact = contact_from_crm(payload, MEMBERSHIP_FIELD, RENEWAL_FIELD)
        assert contact.membership_type == MembershipType.ASSOCIATE
        assert contact.renewal_date == date(2024, 1, 10)

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            contact_from_crm({"firstName": "No"}, MEMBERSHIP_FIELD, RENEWAL_FIELD)

    def test_renewal_date_formats(self):
        assert parse_renewal_date("2024-01-10") == date(2024, 1, 10)
        assert parse_renewal_date("10/01/2024") == date(2024, 1, 10)
        assert parse_renewal_date("1704844800000") == date(2024, 1, 10)
        assert parse_renewal_date("") is None
        assert parse_renewal_date("soon") is None


class TestCRMClient:
    """Test CRM HTTP calls."""

    @pytest.mark.asyncio
    async def test_fetch_all_contacts_pages_until_short_page(self):
        pages = {1: [crm_contact("c-1"), crm_contact("c-2")], 2: [crm_contact("c-3")]}
        seen = []

        def handler(request):
            assert request.headers["Authorization"] == "Bearer secret"
            page = int(request.url.params["page"])
            seen.append(page)
            return httpx.Response(200, json={"contacts": pages[page]})

        contacts = await make_crm(handler).fetch_all_contacts(page_size=2)

        assert [c.id for c in contacts] == ["c-1", "c-2", "c-3"]
        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_fetch_all_contacts_respects_max(self):
        def handler(request):
            return httpx.Response(200, json={"contacts": [crm_contact("c-1"), crm_contact("c-2")]})

        contacts = await make_crm(handler).fetch_all_contacts(page_size=2, max_contacts=3)
        assert len(contacts) == 3

    @pytest.mark.asyncio
    async def test_get_contact(self):
        def handler(request):
            assert request.url.path == "/v1/contacts/c-john"
            return httpx.Response(200, json={"contact": crm_contact()})

        contact = await make_crm(handler).get_contact("c-john")
        assert contact.email == "john.smith@example.com"

    @pytest.mark.asyncio
    async def test_update_membership_sets_renewal_and_tags(self):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"contact": {}})

        client = make_crm(handler)
        contact = client.to_contact(crm_contact())
        update = MembershipUpdate(
            renewal_date=date(2025, 3, 15),
            payment_amount=Decimal("70.00"),
            payment_date=date(2024, 3, 15),
        )
        await client.update_membership(contact, update)

        assert captured["method"] == "PUT"
        assert captured["path"] == "/v1/contacts/c-john"
        assert captured["body"]["customField"] == {RENEWAL_FIELD: "2025-03-15"}
        assert captured["body"]["tags"] == ["member", "paid", "active"]

    @pytest.mark.asyncio
    async def test_add_note(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"note": {"id": "n-1"}})

        await make_crm(handler).add_note("c-john", "Payment reconciled")
        assert captured["path"] == "/v1/contacts/c-john/notes"
        assert captured["body"]["body"] == "Payment reconciled"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = make_crm(lambda request: httpx.Response(503))
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_contact("c-john")
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        client = make_crm(lambda request: httpx.Response(404))
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_contact("c-missing")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_network_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalServiceError) as exc_info:
            await make_crm(handler).get_contact("c-john")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await make_crm(lambda request: httpx.Response(200, json={"contacts": []})).health_check()
        assert not await make_crm(lambda request: httpx.Response(500)).health_check()
        assert not await make_crm(lambda request: httpx.Response(200), api_key="").health_check()


class TestCMSClient:
    """Test CMS role synchronization."""

    @pytest.mark.asyncio
    async def test_sync_role_success(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "GET":
                assert request.url.params["search"] == "john.smith@example.com"
                return httpx.Response(200, json=[
                    {"id": 7, "username": "jsmith", "email": "John.Smith@example.com", "roles": ["subscriber"]}
                ])
            return httpx.Response(200, json={"id": 7})

        result = await make_cms(handler).sync_membership_role("john.smith@example.com", "Full")

        assert result.status == CMSUpdateStatus.SUCCESS
        assert result.user_id == 7
        assert result.role == "full_member"

        update = requests[-1]
        assert update.method == "POST"
        assert update.url.path == "/wp-json/wp/v2/users/7"
        body = json.loads(update.content)
        assert body["roles"] == ["full_member"]
        assert body["meta"]["membership_type"] == "Full"
        expected_auth = base64.b64encode(b"sync-bot:app-password").decode()
        assert update.headers["Authorization"] == f"Basic {expected_auth}"

    @pytest.mark.asyncio
    async def test_user_not_found(self):
        result = await make_cms(lambda request: httpx.Response(200, json=[])).sync_membership_role(
            "nobody@example.com", "Full"
        )
        assert result.status == CMSUpdateStatus.USER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_email(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await make_cms(handler).sync_membership_role(None, "Full")
        assert result.status == CMSUpdateStatus.USER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_configured_is_skipped(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await make_cms(handler, base_url="").sync_membership_role("a@example.com", "Full")
        assert result.status == CMSUpdateStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        with pytest.raises(ExternalServiceError):
            await make_cms(handler).sync_membership_role("john.smith@example.com", "Full")
        assert calls == 2

    def test_role_mapping(self):
        assert role_for_membership("Full") == "full_member"
        assert role_for_membership("Associate") == "associate_member"
        assert role_for_membership("Newsletter Only") == "subscriber"
        assert role_for_membership("Full", is_active=False) == "subscriber"
        assert role_for_membership(None) == "subscriber"
