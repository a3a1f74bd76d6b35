"""
API Tests for Reconciliation Endpoints

Drives the router in-process through httpx.ASGITransport, with the
SQLite-backed repository and mocked CRM/CMS clients.

Tests:
- POST /api/reconciliation/upload (multipart, dialect form field)
- POST /api/reconciliation/matches and /matches/batch
- POST /api/reconciliation/confirm status codes (200/404/409/422/502)
- POST /api/reconciliation/contacts/refresh
- GET /api/reconciliation/health

Run with: pytest tests/test_reconciliation_api.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI

from reconciliation.directory import ContactDirectory
from reconciliation.endpoints.reconciliation_api import (
    get_matching_service, get_reconciliation_service, get_repository, router
)
from reconciliation.errors import ExternalServiceError
from reconciliation.retry import RetryPolicy
from reconciliation.services.matching_service import MatchingService
from reconciliation.services.reconciliation_service import ReconciliationService

BANK_CSV = (
    "Transaction Date,Sort Code,Account Number,Transaction Description,Credit Amount\n"
    "25/03/2024,20-00-00,12345678,J SMITH MEMBERSHIP,70.00\n"
    "26/03/2024,20-00-00,87654321,DOE J RENEWAL,45.00\n"
)

PAYMENT_JSON = {
    "transaction_fingerprint": "fp-api-1",
    "payment_date": "2024-03-15",
    "amount": "70.00",
    "source": "BANK_CSV",
    "transaction_ref": "J SMITH MEMBERSHIP",
    "description": "J SMITH MEMBERSHIP",
    "hashed_account_identifier": "a" * 64,
}


async def no_sleep(delay):
    return None


@pytest.fixture
def crm(make_contact):
    crm = MagicMock()
    crm.renewal_field_id = "renewal-field"
    crm.get_contact = AsyncMock(return_value=make_contact())
    crm.update_membership = AsyncMock(return_value={})
    crm.add_note = AsyncMock(return_value={})
    crm.health_check = AsyncMock(return_value=True)
    return crm


@pytest.fixture
def app(repository, crm, make_contact):
    contacts = [
        make_contact(),
        make_contact(id="c-jane", first_name="Jane", last_name="Doe", email="jane@example.com"),
    ]
    directory = ContactDirectory(AsyncMock(return_value=contacts), AsyncMock(return_value=[]))
    reconciliation_service = ReconciliationService(
        repository, crm, None,
        retry_policy=RetryPolicy(max_retries=1, timeout=None),
        sleep=no_sleep,
    )

    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_matching_service] = lambda: MatchingService(directory, repository)
    app.dependency_overrides[get_reconciliation_service] = lambda: reconciliation_service
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def confirm(client, payment=None, contact_id="c-john", operator_id="op-1"):
    headers = {"X-Operator-Id": operator_id} if operator_id else {}
    return await client.post(
        "/api/reconciliation/confirm",
        json={"payment": payment or PAYMENT_JSON, "contact_id": contact_id, "confidence": 0.94},
        headers=headers,
    )


class TestUpload:
    """Test CSV upload."""

    @pytest.mark.asyncio
    async def test_bank_statement_upload(self, client):
        response = await client.post(
            "/api/reconciliation/upload",
            files={"file": ("statement.csv", BANK_CSV.encode(), "text/csv")},
            data={"dialect": "bank_statement"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["data"][0]["amount"] == "70.00"
        assert body["data"][0]["source"] == "BANK_CSV"
        assert body["validation"]["valid"]
        assert "12345678" not in response.text

    @pytest.mark.asyncio
    async def test_missing_columns_rejected(self, client):
        response = await client.post(
            "/api/reconciliation/upload",
            files={"file": ("statement.csv", b"Date,Amount\n25/03/2024,70\n", "text/csv")},
            data={"dialect": "bank_statement"},
        )
        assert response.status_code == 400
        assert "Missing required headers" in response.json()["detail"][0]

    @pytest.mark.asyncio
    async def test_unknown_dialect_rejected(self, client):
        response = await client.post(
            "/api/reconciliation/upload",
            files={"file": ("statement.csv", BANK_CSV.encode(), "text/csv")},
            data={"dialect": "spreadsheet"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_oversized_upload_rejected(self, client, monkeypatch):
        monkeypatch.setattr("reconciliation.endpoints.reconciliation_api.MAX_UPLOAD_BYTES", 64)
        response = await client.post(
            "/api/reconciliation/upload",
            files={"file": ("statement.csv", BANK_CSV.encode() + b" " * 64, "text/csv")},
            data={"dialect": "bank_statement"},
        )
        assert response.status_code == 413
        assert response.json()["detail"] == "File too large"


class TestMatches:
    """Test match suggestions."""

    @pytest.mark.asyncio
    async def test_single_payment(self, client):
        response = await client.post("/api/reconciliation/matches", json=PAYMENT_JSON)

        assert response.status_code == 200
        suggestions = response.json()["suggestions"]
        assert suggestions[0]["contact"]["id"] == "c-john"
        assert 0 <= suggestions[0]["confidence"] <= 1

    @pytest.mark.asyncio
    async def test_batch(self, client):
        second = {**PAYMENT_JSON, "transaction_fingerprint": "fp-api-2", "description": "JANE DOE PAYMENT"}
        response = await client.post(
            "/api/reconciliation/matches/batch", json={"payments": [PAYMENT_JSON, second]}
        )

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"fp-api-1", "fp-api-2"}
        assert body["fp-api-2"]["suggestions"][0]["contact"]["id"] == "c-jane"

    @pytest.mark.asyncio
    async def test_refresh_contacts(self, client):
        response = await client.post("/api/reconciliation/contacts/refresh")
        assert response.status_code == 200
        assert response.json()["cached"] == 2


class TestConfirm:
    """Test status codes of the confirm endpoint."""

    @pytest.mark.asyncio
    async def test_success(self, client, crm):
        response = await confirm(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"]
        assert body["reconciliation_id"]
        assert body["crm_update"]["renewal_date"] == "2025-03-15"
        assert body["steps"]["cms_update"] == "skipped"
        crm.add_note.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_returns_409(self, client):
        assert (await confirm(client)).status_code == 200

        response = await confirm(client)
        assert response.status_code == 409
        assert response.json()["errors"][0]["code"] == "duplicate"

    @pytest.mark.asyncio
    async def test_missing_operator_returns_422(self, client):
        response = await confirm(client, operator_id=None)
        assert response.status_code == 422
        assert response.json()["errors"][0]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_non_positive_amount_returns_422(self, client):
        response = await confirm(client, payment={**PAYMENT_JSON, "amount": "0"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_operator_returns_404(self, client):
        response = await confirm(client, operator_id="op-unknown")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_crm_failure_returns_502_and_rolls_back(self, client, crm):
        crm.update_membership.side_effect = ExternalServiceError("crm", "CRM returned 503", status_code=503)

        response = await confirm(client)

        assert response.status_code == 502
        assert response.json()["rollback_performed"]

        # the payment can be confirmed again once the CRM recovers
        crm.update_membership.side_effect = None
        assert (await confirm(client)).status_code == 200


class TestHealth:
    """Test the health endpoint."""

    @pytest.mark.asyncio
    async def test_healthy(self, client):
        response = await client.get("/api/reconciliation/health")
        assert response.status_code == 200
        assert response.json()["database"]

    @pytest.mark.asyncio
    async def test_crm_down_is_unhealthy(self, client, crm):
        crm.health_check.return_value = False
        response = await client.get("/api/reconciliation/health")
        assert response.status_code == 503
        assert not response.json()["crm"]
