"""
Reconciliation Module

Matches membership payments to CRM contacts and confirms them:
- Contact directory cache with surname index
- Fixed membership matching heuristics (name, email, postcode, fee band)
- Confirmation saga with CRM retry, rollback and best-effort CMS sync

Routers and services are imported from their own modules to keep this
package import-light.
"""

from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    DuplicateError,
    NotFoundError,
    ExternalServiceError,
    CompensationFailure
)

__all__ = [
    'ReconciliationError',
    'ValidationError',
    'DuplicateError',
    'NotFoundError',
    'ExternalServiceError',
    'CompensationFailure',
]
