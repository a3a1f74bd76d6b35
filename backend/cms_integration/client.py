"""
CMS API Client

Keeps member roles on the content site in step with reconciled payments.
Users are located by email; the role follows the membership type.
Calls are retried on server errors and timeouts, never on 4xx.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from reconciliation.errors import ExternalServiceError
from reconciliation.retry import RetryPolicy, retry_async

REST_PREFIX = "/wp-json/wp/v2"

ROLE_MAPPINGS: Dict[str, str] = {
    "full": "full_member",
    "associate": "associate_member",
    "newsletter only": "subscriber",
    "ex member": "subscriber",
}
DEFAULT_ROLE = "subscriber"
DEFAULT_MEMBERSHIP_TYPE = "Newsletter Only"


class CMSUpdateStatus(str, Enum):
    SUCCESS = "success"
    USER_NOT_FOUND = "user_not_found"
    SKIPPED = "skipped"


@dataclass
class CMSUser:
    id: int
    username: Optional[str]
    email: Optional[str]
    roles: List[str] = field(default_factory=list)


@dataclass
class CMSUpdateResult:
    status: CMSUpdateStatus
    user_id: Optional[int] = None
    role: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "user_id": self.user_id,
            "role": self.role,
            "message": self.message,
        }


def role_for_membership(membership_type: Optional[str], is_active: bool = True) -> str:
    if not is_active or not membership_type:
        return DEFAULT_ROLE
    return ROLE_MAPPINGS.get(membership_type.strip().lower(), DEFAULT_ROLE)


class CMSClient:
    """
    Async CMS client (REST users API, application-password auth).

    Usage:
        client = CMSClient.from_settings(get_settings())
        result = await client.sync_membership_role("a@b.com", "Full")
    """

    SERVICE = "cms"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(timeout=timeout)
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "CMSClient":
        return cls(
            base_url=settings.CMS_API_URL,
            username=settings.CMS_API_USERNAME,
            password=settings.CMS_API_PASSWORD,
            timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy.from_settings(settings),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.username and self.password)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url + REST_PREFIX,
                auth=(self.username, self.password),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(self.SERVICE, f"CMS request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.SERVICE, f"CMS request failed: {method} {path}: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError.from_status(
                self.SERVICE,
                response.status_code,
                f"CMS returned {response.status_code} for {method} {path}",
            )
        if not response.content:
            return {}
        return response.json()

    async def _request_with_retry(self, method: str, path: str, operation_name: str, **kwargs) -> Any:
        return await retry_async(
            lambda: self._request(method, path, **kwargs),
            self.retry_policy,
            operation_name,
            logger=self.logger,
        )

    async def find_user_by_email(self, email: str) -> Optional[CMSUser]:
        users = await self._request_with_retry(
            "GET", "/users", "CMS find user", params={"search": email}
        )
        target = email.strip().lower()
        for user in users or []:
            if (user.get("email") or "").lower() == target:
                return CMSUser(
                    id=user["id"],
                    username=user.get("username"),
                    email=user.get("email"),
                    roles=list(user.get("roles") or []),
                )
        return None

    async def update_user_role(self, user_id: int, membership_type: str, is_active: bool = True) -> str:
        role = role_for_membership(membership_type, is_active)
        body = {
            "roles": [role],
            "meta": {
                "membership_type": membership_type,
                "membership_active": is_active,
                "last_updated": datetime.now(timezone.utc).isoformat(),
            },
        }
        await self._request_with_retry("POST", f"/users/{user_id}", "CMS update role", json=body)
        return role

    async def sync_membership_role(
        self,
        email: Optional[str],
        membership_type: Optional[str]
    ) -> CMSUpdateResult:
        """Set the role of the user with ``email``. Raises ExternalServiceError on failure."""
        if not self.configured:
            return CMSUpdateResult(CMSUpdateStatus.SKIPPED, message="CMS integration not configured")
        if not email:
            return CMSUpdateResult(CMSUpdateStatus.USER_NOT_FOUND, message="Contact has no email address")

        user = await self.find_user_by_email(email)
        if not user:
            return CMSUpdateResult(CMSUpdateStatus.USER_NOT_FOUND, message="No CMS user with this email")

        role = await self.update_user_role(user.id, membership_type or DEFAULT_MEMBERSHIP_TYPE)
        self.logger.info(
            f"CMS role updated for user {user.id}",
            extra={"cms_user_id": user.id, "role": role}
        )
        return CMSUpdateResult(CMSUpdateStatus.SUCCESS, user_id=user.id, role=role)

    async def health_check(self) -> bool:
        if not self.configured:
            return False
        try:
            await self._request("GET", "/users/me")
            return True
        except ExternalServiceError as e:
            self.logger.warning(f"CMS health check failed: {e}")
            return False
