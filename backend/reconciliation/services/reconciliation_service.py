"""
Reconciliation Service

Confirms an operator-selected match as a saga:

1. Validating      - reject malformed input, nothing persisted
2. Persisting      - one transaction: duplicate check, contact/operator
                     existence, reconciliation record, payment source
3. CRM update      - renewal date, active status, paid tag, audit note;
                     retried with capped backoff, compensated on failure
4. CMS update      - best-effort role sync; failure is only a warning
5. Completed

A CRM failure deletes the reconciliation record (rollback). If that
delete fails too, the CompensationFailure is logged and sent to Sentry.
confirm_match always returns a ConfirmMatchResult; it does not raise.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from cms_integration.client import CMSClient, CMSUpdateStatus
from crm_integration.client import CRMClient, MembershipUpdate
from ingestion.models import ParsedPayment
from reconciliation.contacts import Contact
from reconciliation.errors import (
    CompensationFailure, DuplicateError, ExternalServiceError, NotFoundError,
    ReconciliationError, ValidationError
)
from reconciliation.renewal import (
    build_reconciliation_note, compute_renewal_date, validate_membership_payment
)
from reconciliation.repository import ReconciliationRecord, ReconciliationRepository
from reconciliation.retry import RetryPolicy, retry_async
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class SagaStep(str, Enum):
    VALIDATING = "validating"
    PERSISTING = "persisting"
    CRM_UPDATE = "crm_update"
    CMS_UPDATE = "cms_update"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    WARNING = "warning"


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    CONFIRM_REQUESTED = "reconciliation.confirm_requested"
    VALIDATION_FAILED = "reconciliation.validation_failed"
    DUPLICATE_REJECTED = "reconciliation.duplicate_rejected"
    RECORD_CREATED = "reconciliation.record_created"
    CRM_UPDATED = "reconciliation.crm_updated"
    CMS_UPDATED = "reconciliation.cms_updated"
    CMS_UPDATE_FAILED = "reconciliation.cms_update_failed"
    ROLLBACK_PERFORMED = "reconciliation.rollback_performed"
    ROLLBACK_FAILED = "reconciliation.rollback_failed"
    MATCH_CONFIRMED = "reconciliation.match_confirmed"


def log_reconciliation_event(
    event_type: str,
    details: Dict[str, Any],
    reconciliation_id: Optional[str] = None,
    actor: str = "system",
    level: int = logging.INFO,
    log: Optional[logging.Logger] = None
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "reconciliation_id": reconciliation_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    (log or logger).log(level, f"Reconciliation event: {event_type}", extra=log_entry)


@dataclass
class ConfirmMatchRequest:
    """An operator's confirmation that ``payment`` belongs to ``contact_id``."""
    payment: ParsedPayment
    contact_id: str
    operator_id: str
    confidence: float = 0.0
    reasoning: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfirmMatchResult:
    success: bool = False
    reconciliation_id: Optional[str] = None
    steps: Dict[str, str] = field(default_factory=dict)
    crm_update: Optional[Dict[str, Any]] = None
    cms_update: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    rollback_performed: bool = False

    def mark(self, step: SagaStep, status: StepStatus):
        self.steps[step.value] = status.value

    def fail(self, step: SagaStep, error: ReconciliationError):
        self.mark(step, StepStatus.FAILED)
        self.errors.append(error.to_dict())

    @property
    def error_code(self) -> Optional[str]:
        return self.errors[0]["code"] if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reconciliation_id": self.reconciliation_id,
            "steps": self.steps,
            "crm_update": self.crm_update,
            "cms_update": self.cms_update,
            "warnings": self.warnings,
            "errors": self.errors,
            "rollback_performed": self.rollback_performed,
        }


def validate_confirm_request(request: ConfirmMatchRequest) -> List[str]:
    """Every problem with the request, not just the first."""
    problems = []
    payment = request.payment

    if not payment.transaction_fingerprint:
        problems.append("Transaction fingerprint is required")
    if not isinstance(payment.amount, Decimal) or not payment.amount.is_finite() or payment.amount <= 0:
        problems.append("Amount must be greater than zero")
    if not isinstance(payment.payment_date, date):
        problems.append("Payment date is invalid")
    if not request.contact_id:
        problems.append("Contact id is required")
    if not request.operator_id:
        problems.append("Operator id is required")
    return problems


class ReconciliationService:
    """
    Orchestrates confirmation of payment-to-member matches.

    Usage:
        service = ReconciliationService(repository, crm_client, cms_client)
        result = await service.confirm_match(request)
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        crm_client: CRMClient,
        cms_client: Optional[CMSClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None
    ):
        self.repository = repository
        self.crm = crm_client
        self.cms = cms_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    async def confirm_match(self, request: ConfirmMatchRequest) -> ConfirmMatchResult:
        result = ConfirmMatchResult()
        payment = request.payment
        actor = request.operator_id or "unknown"

        log_reconciliation_event(
            ReconciliationAuditEvent.CONFIRM_REQUESTED,
            {"transaction_fingerprint": payment.transaction_fingerprint, "contact_id": request.contact_id},
            actor=actor, log=self.logger
        )

        # ==================== VALIDATING ====================
        problems = validate_confirm_request(request)
        if problems:
            result.fail(SagaStep.VALIDATING, ValidationError(problems))
            log_reconciliation_event(
                ReconciliationAuditEvent.VALIDATION_FAILED,
                {"problems": problems}, actor=actor, level=logging.WARNING, log=self.logger
            )
            return result
        result.mark(SagaStep.VALIDATING, StepStatus.SUCCEEDED)

        # ==================== PERSISTING ====================
        try:
            record = await self.repository.create_reconciliation(
                payment, request.contact_id, request.operator_id,
                self._record_details(request)
            )
        except (DuplicateError, NotFoundError) as e:
            result.fail(SagaStep.PERSISTING, e)
            event = (
                ReconciliationAuditEvent.DUPLICATE_REJECTED
                if isinstance(e, DuplicateError) else ReconciliationAuditEvent.VALIDATION_FAILED
            )
            log_reconciliation_event(event, e.to_dict(), actor=actor, level=logging.WARNING, log=self.logger)
            return result
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to persist reconciliation: {e}", exc_info=True)
            result.fail(SagaStep.PERSISTING, ReconciliationError("Failed to persist reconciliation record"))
            return result

        result.reconciliation_id = record.id
        result.mark(SagaStep.PERSISTING, StepStatus.SUCCEEDED)
        log_reconciliation_event(
            ReconciliationAuditEvent.RECORD_CREATED,
            {"transaction_fingerprint": payment.transaction_fingerprint, "contact_id": request.contact_id},
            reconciliation_id=record.id, actor=actor, log=self.logger
        )

        # ==================== CRM UPDATE ====================
        try:
            contact, crm_update = await self._update_crm(request, result)
        except Exception as e:
            error = e if isinstance(e, ReconciliationError) else ExternalServiceError(
                CRMClient.SERVICE, f"CRM update failed: {str(e) or type(e).__name__}", retryable=False
            )
            result.fail(SagaStep.CRM_UPDATE, error)
            await self._roll_back(record, result, actor)
            return result

        result.crm_update = crm_update
        result.mark(SagaStep.CRM_UPDATE, StepStatus.SUCCEEDED)
        log_reconciliation_event(
            ReconciliationAuditEvent.CRM_UPDATED, crm_update,
            reconciliation_id=record.id, actor=actor, log=self.logger
        )

        # ==================== CMS UPDATE ====================
        await self._update_cms(contact, result, record, actor)

        result.success = True
        result.mark(SagaStep.COMPLETED, StepStatus.SUCCEEDED)
        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_CONFIRMED,
            {"contact_id": request.contact_id, "warnings": result.warnings},
            reconciliation_id=record.id, actor=actor, log=self.logger
        )
        return result

    # ==================== STEPS ====================

    @staticmethod
    def _record_details(request: ConfirmMatchRequest) -> Dict[str, Any]:
        return {
            "confidence": request.confidence,
            "reasoning": request.reasoning,
            "description": request.payment.description,
            "hashed_account_identifier": request.payment.hashed_account_identifier,
            "reconciled_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _retry(self, operation, name: str):
        return await retry_async(
            operation, self.retry_policy, name, logger=self.logger, sleep=self.sleep
        )

    async def _fetch_contact(self, contact_id: str) -> Contact:
        try:
            return await self._retry(lambda: self.crm.get_contact(contact_id), "CRM contact fetch")
        except (ExternalServiceError, asyncio.TimeoutError) as e:
            local = await self.repository.get_local_contact(contact_id)
            if local is None:
                raise
            self.logger.warning(
                f"Using local contact {contact_id} after CRM fetch failure: {e}",
                extra={"contact_id": contact_id}
            )
            return local

    async def _update_crm(
        self,
        request: ConfirmMatchRequest,
        result: ConfirmMatchResult
    ) -> Tuple[Contact, Dict[str, Any]]:
        payment = request.payment
        contact = await self._fetch_contact(request.contact_id)

        validation = validate_membership_payment(contact, payment.amount)
        if validation.warning:
            result.warnings.append(validation.warning)
            self.logger.warning(
                f"Fee validation: {validation.warning}",
                extra={"contact_id": contact.id, **validation.to_dict()}
            )

        renewal_date = compute_renewal_date(payment.payment_date, contact.renewal_date)
        update = MembershipUpdate(
            renewal_date=renewal_date,
            payment_amount=payment.amount,
            payment_date=payment.payment_date,
        )

        await self._retry(lambda: self.crm.update_membership(contact, update), "CRM membership update")

        note = build_reconciliation_note(payment, contact, validation, renewal_date)
        await self._retry(lambda: self.crm.add_note(contact.id, note), "CRM reconciliation note")

        try:
            await self.repository.update_local_renewal(contact.id, renewal_date, self.crm.renewal_field_id)
        except SQLAlchemyError as e:
            result.warnings.append("Local contact renewal date was not updated")
            self.logger.warning(f"Local renewal update failed for {contact.id}: {e}")

        return contact, {
            **update.to_dict(),
            "previous_renewal_date": contact.renewal_date.isoformat() if contact.renewal_date else None,
            "fee_validation": validation.to_dict(),
            "note_added": True,
        }

    async def _roll_back(self, record: ReconciliationRecord, result: ConfirmMatchResult, actor: str):
        result.mark(SagaStep.ROLLING_BACK, StepStatus.SUCCEEDED)
        try:
            await self.repository.delete_reconciliation(record.id)
        except Exception as e:
            failure = CompensationFailure(record.id, e)
            result.mark(SagaStep.ROLLING_BACK, StepStatus.FAILED)
            result.errors.append(failure.to_dict())
            log_reconciliation_event(
                ReconciliationAuditEvent.ROLLBACK_FAILED, failure.to_dict(),
                reconciliation_id=record.id, actor=actor, level=logging.ERROR, log=self.logger
            )
            self.logger.error(failure.message, exc_info=True)
            capture_exception(failure, reconciliation_id=record.id, transaction_fingerprint=record.transaction_fingerprint)
            return

        result.rollback_performed = True
        log_reconciliation_event(
            ReconciliationAuditEvent.ROLLBACK_PERFORMED,
            {"transaction_fingerprint": record.transaction_fingerprint},
            reconciliation_id=record.id, actor=actor, level=logging.WARNING, log=self.logger
        )

    async def _update_cms(
        self,
        contact: Contact,
        result: ConfirmMatchResult,
        record: ReconciliationRecord,
        actor: str
    ):
        if self.cms is None:
            result.cms_update = {"status": CMSUpdateStatus.SKIPPED.value, "message": "CMS integration not configured"}
            result.mark(SagaStep.CMS_UPDATE, StepStatus.SKIPPED)
            return

        try:
            cms_result = await self.cms.sync_membership_role(contact.email, contact.membership_type)
        except Exception as e:
            result.warnings.append(f"CMS role update failed: {e}")
            result.cms_update = {"status": "failed", "message": str(e)}
            result.mark(SagaStep.CMS_UPDATE, StepStatus.WARNING)
            log_reconciliation_event(
                ReconciliationAuditEvent.CMS_UPDATE_FAILED, {"error": str(e)},
                reconciliation_id=record.id, actor=actor, level=logging.WARNING, log=self.logger
            )
            return

        result.cms_update = cms_result.to_dict()
        if cms_result.status == CMSUpdateStatus.SUCCESS:
            result.mark(SagaStep.CMS_UPDATE, StepStatus.SUCCEEDED)
        elif cms_result.status == CMSUpdateStatus.USER_NOT_FOUND:
            result.warnings.append("No CMS user found for contact email")
            result.mark(SagaStep.CMS_UPDATE, StepStatus.WARNING)
        else:
            result.mark(SagaStep.CMS_UPDATE, StepStatus.SKIPPED)
        log_reconciliation_event(
            ReconciliationAuditEvent.CMS_UPDATED, result.cms_update,
            reconciliation_id=record.id, actor=actor, log=self.logger
        )

    # ==================== HEALTH ====================

    async def health_check(self) -> Dict[str, Any]:
        try:
            database = await self.repository.ping()
        except SQLAlchemyError as e:
            self.logger.warning(f"Database health check failed: {e}")
            database = False

        crm = await self.crm.health_check()
        cms = await self.cms.health_check() if self.cms is not None else False

        return {
            "healthy": database and crm,
            "database": database,
            "crm": crm,
            "cms": cms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
