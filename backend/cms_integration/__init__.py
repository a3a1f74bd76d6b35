"""
CMS Integration Module

Best-effort member role synchronization with the content site.
"""

from .client import (
    CMSClient, CMSUpdateResult, CMSUpdateStatus, CMSUser, role_for_membership
)

__all__ = [
    'CMSClient',
    'CMSUpdateResult',
    'CMSUpdateStatus',
    'CMSUser',
    'role_for_membership',
]
