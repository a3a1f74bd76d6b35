"""
CRM Integration Module

Async client for the membership CRM:
- Paged contact listing with custom fields
- Single contact lookup
- Membership renewal updates and audit notes

Usage:
    from crm_integration import CRMClient, MembershipUpdate
"""

from .client import CRMClient, MembershipUpdate, contact_from_crm

__all__ = [
    'CRMClient',
    'MembershipUpdate',
    'contact_from_crm',
]
