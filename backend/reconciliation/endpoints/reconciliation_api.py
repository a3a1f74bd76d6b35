"""
Reconciliation API Endpoints

REST API for membership payment reconciliation:
- POST /api/reconciliation/upload - Parse a bank or card-processor CSV export
- POST /api/reconciliation/matches - Suggest contacts for a parsed payment
- POST /api/reconciliation/confirm - Confirm a payment-to-contact match
- POST /api/reconciliation/contacts/refresh - Rebuild the contact directory cache
- GET /api/reconciliation/health - Database, CRM and CMS health
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from cms_integration.client import CMSClient
from config import Settings, get_settings
from crm_integration.client import CRMClient
from database.connection import get_session_factory
from ingestion.csv_parser import PaymentCsvParser, validate_payments
from ingestion.models import CsvDialect, ParsedPayment, PaymentSource
from logging_config import set_request_context
from reconciliation.directory import ContactDirectory
from reconciliation.matching_rules.membership_rules import MembershipMatchingRules
from reconciliation.repository import ReconciliationRepository
from reconciliation.retry import RetryPolicy
from reconciliation.services.matching_service import MatchingService
from reconciliation.services.reconciliation_service import (
    ConfirmMatchRequest, ConfirmMatchResult, ReconciliationService
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])

# Upload size cap; a year of statements is well under this
MAX_UPLOAD_BYTES = 5 * 1024 * 1024

ERROR_STATUS_CODES = {
    "validation_error": 422,
    "duplicate": 409,
    "not_found": 404,
    "external_service_error": 502,
    "compensation_failure": 502,
}


# ==================== Request/Response Models ====================

class PaymentModel(BaseModel):
    """A parsed payment as returned by /upload."""
    transaction_fingerprint: str = Field(..., description="Content-derived payment fingerprint")
    payment_date: date
    amount: Decimal = Field(..., description="Amount in major currency units")
    source: PaymentSource
    transaction_ref: str = Field(default="")
    description: Optional[str] = None
    hashed_account_identifier: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    billing_address_line1: Optional[str] = None
    billing_postal_code: Optional[str] = None
    date_low_confidence: bool = False

    def to_payment(self) -> ParsedPayment:
        return ParsedPayment(**self.model_dump())


class ConfirmMatchBody(BaseModel):
    """Request to confirm a match. The operator comes from X-Operator-Id."""
    payment: PaymentModel
    contact_id: str = Field(..., description="CRM contact id")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: Dict[str, Any] = Field(default_factory=dict)


class BatchMatchBody(BaseModel):
    payments: List[PaymentModel]


# ==================== Dependencies ====================

_directory: Optional[ContactDirectory] = None


def get_repository() -> ReconciliationRepository:
    return ReconciliationRepository(get_session_factory())


def get_crm_client(settings: Settings = Depends(get_settings)) -> CRMClient:
    return CRMClient.from_settings(settings)


def get_cms_client(settings: Settings = Depends(get_settings)) -> Optional[CMSClient]:
    if not settings.cms_configured:
        return None
    return CMSClient.from_settings(settings)


def get_contact_directory(
    settings: Settings = Depends(get_settings),
    repository: ReconciliationRepository = Depends(get_repository),
    crm: CRMClient = Depends(get_crm_client)
) -> ContactDirectory:
    """Process-wide directory; the first request builds it."""
    global _directory
    if _directory is None:
        _directory = ContactDirectory(
            fetch_remote=lambda: crm.fetch_all_contacts(settings.CRM_PAGE_SIZE, settings.CRM_MAX_CONTACTS),
            fetch_local=repository.list_local_contacts,
            ttl_seconds=settings.CONTACT_CACHE_TTL_SECONDS,
        )
    return _directory


def reset_contact_directory():
    global _directory
    _directory = None


def get_matching_service(
    settings: Settings = Depends(get_settings),
    directory: ContactDirectory = Depends(get_contact_directory),
    repository: ReconciliationRepository = Depends(get_repository)
) -> MatchingService:
    rules = MembershipMatchingRules(
        min_confidence=settings.MATCH_MIN_CONFIDENCE,
        max_suggestions=settings.MATCH_MAX_SUGGESTIONS,
    )
    return MatchingService(
        directory, repository, rules=rules, exclusion_days=settings.RECONCILED_EXCLUSION_DAYS
    )


def get_reconciliation_service(
    settings: Settings = Depends(get_settings),
    repository: ReconciliationRepository = Depends(get_repository),
    crm: CRMClient = Depends(get_crm_client),
    cms: Optional[CMSClient] = Depends(get_cms_client)
) -> ReconciliationService:
    return ReconciliationService(
        repository, crm, cms, retry_policy=RetryPolicy.from_settings(settings)
    )


def status_code_for(result: ConfirmMatchResult) -> int:
    if result.success:
        return 200
    return ERROR_STATUS_CODES.get(result.error_code, 500)


# ==================== Endpoints ====================

@router.post("/upload", summary="Parse a payment export")
async def upload_payments(
    file: UploadFile = File(...),
    dialect: CsvDialect = Form(..., description="bank_statement or card_processor"),
    repository: ReconciliationRepository = Depends(get_repository)
):
    """
    Parse an uploaded CSV export into payments.

    Already-reconciled fingerprints are dropped and counted as skipped.
    """
    content = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    parser = PaymentCsvParser(fingerprint_store=repository)
    result = await parser.parse(content, dialect)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error_messages)

    logger.info(
        f"Upload parsed: {file.filename}",
        extra={"dialect": dialect.value, "processed": result.processed, "skipped": result.skipped}
    )
    return {
        **result.to_dict(),
        "validation": validate_payments(result.data),
    }


@router.post("/matches", summary="Suggest contacts for a payment")
async def find_matches(
    payment: PaymentModel,
    service: MatchingService = Depends(get_matching_service)
):
    result = await service.find_matches(payment.to_payment())
    return result.to_dict()


@router.post("/matches/batch", summary="Suggest contacts for several payments")
async def find_batch_matches(
    body: BatchMatchBody,
    service: MatchingService = Depends(get_matching_service)
):
    results = await service.find_batch_matches([p.to_payment() for p in body.payments])
    return {fingerprint: result.to_dict() for fingerprint, result in results.items()}


@router.post("/confirm", summary="Confirm a match")
async def confirm_match(
    body: ConfirmMatchBody,
    x_operator_id: Optional[str] = Header(None, alias="X-Operator-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Run the reconciliation saga for one payment.

    The response body is always the step-by-step result; the status code
    reflects the first error (409 duplicate, 404 unknown contact or
    operator, 422 invalid input, 502 CRM failure).
    """
    set_request_context(operator_id=x_operator_id)
    request = ConfirmMatchRequest(
        payment=body.payment.to_payment(),
        contact_id=body.contact_id,
        operator_id=x_operator_id or "",
        confidence=body.confidence,
        reasoning=body.reasoning,
    )
    result = await service.confirm_match(request)
    return JSONResponse(status_code=status_code_for(result), content=result.to_dict())


@router.post("/contacts/refresh", summary="Refresh the contact directory cache")
async def refresh_contacts(service: MatchingService = Depends(get_matching_service)):
    return await service.refresh_contacts()


@router.get("/health", summary="Dependency health")
async def health(service: ReconciliationService = Depends(get_reconciliation_service)):
    result = await service.health_check()
    return JSONResponse(status_code=200 if result["healthy"] else 503, content=result)
