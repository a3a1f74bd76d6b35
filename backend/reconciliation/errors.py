"""
Reconciliation error taxonomy.

Every error carries a machine-readable ``code`` so callers can react
without parsing messages.
"""

from typing import Any, Dict, List, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""
    code = "reconciliation_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ReconciliationError):
    """Input rejected before anything was persisted."""
    code = "validation_error"

    def __init__(self, problems: List[str]):
        super().__init__("; ".join(problems), {"problems": list(problems)})
        self.problems = list(problems)


class DuplicateError(ReconciliationError):
    """The payment fingerprint has already been reconciled."""
    code = "duplicate"

    def __init__(self, transaction_fingerprint: str):
        super().__init__(
            "Transaction has already been reconciled",
            {"transaction_fingerprint": transaction_fingerprint}
        )


class NotFoundError(ReconciliationError):
    """A referenced contact or operator does not exist."""
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ExternalServiceError(ReconciliationError):
    """A CRM or CMS call failed. Retryable unless the remote rejected the request."""
    code = "external_service_error"

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True
    ):
        super().__init__(
            message,
            {"service": service, "status_code": status_code, "retryable": retryable}
        )
        self.service = service
        self.status_code = status_code
        self.retryable = retryable

    @classmethod
    def from_status(cls, service: str, status_code: int, message: str) -> "ExternalServiceError":
        # 4xx other than timeout/rate limit will fail the same way again
        retryable = status_code >= 500 or status_code in (408, 429)
        return cls(service, message, status_code=status_code, retryable=retryable)


class CompensationFailure(ReconciliationError):
    """Rolling back a persisted reconciliation record failed."""
    code = "compensation_failure"

    def __init__(self, reconciliation_id: str, cause: Exception):
        super().__init__(
            f"Failed to remove reconciliation record {reconciliation_id} during rollback",
            {"reconciliation_id": reconciliation_id, "cause": str(cause)}
        )
        self.reconciliation_id = reconciliation_id
        self.cause = cause
