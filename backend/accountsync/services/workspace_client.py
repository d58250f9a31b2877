"""External workspace account client.

WHAT:
    Async HTTP client for the third-party workspace platform that hosts each
    customer's account:
    - Admin login → short-lived access token → API key
    - Idempotent account creation (username = email)
    - Idempotent account deletion (missing account = success)

WHY:
    Provisioning and the deletion sweeper both need the remote account API.
    Every call carries a timeout; transport failures are raised as
    ExternalServiceError / ExternalServiceTimeout so callers can treat them as
    transient and retry on the next cycle.

REFERENCES:
    - accountsync/services/deletion_sweeper.py (delete_account)
    - accountsync/services/workspace_accounts.py (local linkage)
"""

import enum
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from ..exceptions import DataInconsistencyError, ExternalServiceError, ExternalServiceTimeout
from ..models import User
from . import account_store
from .workspace_accounts import get_workspace_account, link_workspace_account

logger = logging.getLogger(__name__)

SERVICE_NAME = "workspace"
API_KEY_NAME = "Account Management API Key"


class DeleteOutcome(str, enum.Enum):
    """Both outcomes count as success for the caller."""
    deleted = "deleted"
    not_found = "not_found"


class WorkspaceAccountClient:
    """Client for the workspace platform's user API.

    Usage:
        client = WorkspaceAccountClient.from_settings(settings, SessionLocal)
        remote_id = await client.create_account(user_id, "a@b.com", "secret")
        outcome = await client.delete_account(user_id)

    Args:
        base_url: Platform root URL (e.g. "https://workspace.example.com")
        username / password: Platform admin credentials
        session_factory: Used to resolve a user id to its local linkage
        timeout: Seconds applied to every request
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        session_factory: Callable[[], Session],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.session_factory = session_factory
        self.timeout = timeout
        self.transport = transport
        self._api_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, session_factory: Callable[[], Session], **kwargs) -> "WorkspaceAccountClient":
        if not settings.WORKSPACE_API_URL:
            logger.warning("[WORKSPACE_CLIENT] WORKSPACE_API_URL not configured")
        return cls(
            base_url=settings.WORKSPACE_API_URL,
            username=settings.WORKSPACE_ADMIN_USERNAME,
            password=settings.WORKSPACE_ADMIN_PASSWORD,
            session_factory=session_factory,
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            **kwargs,
        )

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def create_account(self, user_id: UUID, email: str, secret: str) -> str:
        """Create the remote account for a user and return its id.

        Idempotent:
            - An existing local linkage short-circuits to its id
            - A remote user with the same username is adopted, not duplicated
        """
        existing = self._linked_account_id(user_id)
        if existing:
            logger.info("[WORKSPACE_CLIENT] user=%s already linked to %s", user_id, existing)
            return existing

        async with self._client() as client:
            remote = await self._find_remote_user(client, email, user_id=user_id)
            if remote is not None:
                logger.info("[WORKSPACE_CLIENT] Adopting existing remote account for %s", email)
                return str(remote["id"])

            payload = {
                "username": email,
                "password": secret,
                "is_active": True,
                "is_superuser": False,
            }
            response = await self._request(client, "POST", "/api/v1/users/", json=payload, user_id=user_id)
            if response.status_code >= 400:
                raise ExternalServiceError(
                    f"Workspace account creation failed: status={response.status_code}, body={response.text}",
                    user_id=user_id,
                    service=SERVICE_NAME,
                )

            try:
                data = response.json()
                remote_id = data.get("id") or data.get("user_id")
            except (ValueError, AttributeError) as e:
                raise ExternalServiceError(
                    f"Workspace account creation returned an unreadable body: {e}",
                    user_id=user_id,
                    service=SERVICE_NAME,
                ) from e
            if not remote_id:
                raise ExternalServiceError(
                    "Workspace account creation returned no id", user_id=user_id, service=SERVICE_NAME
                )
            logger.info("[WORKSPACE_CLIENT] Created remote account %s for user %s", remote_id, user_id)
            return str(remote_id)

    async def delete_account(self, user_id: UUID) -> DeleteOutcome:
        """Delete the user's remote account.

        Returns:
            DeleteOutcome.deleted, or DeleteOutcome.not_found when there is
            nothing left to delete (both are success)

        Raises:
            ExternalServiceTimeout: The platform did not answer in time
            ExternalServiceError: Any other failure (account left in place)
        """
        remote_id, email = self._resolve_remote(user_id)

        async with self._client() as client:
            if remote_id is None and email:
                remote = await self._find_remote_user(client, email, user_id=user_id)
                remote_id = str(remote["id"]) if remote else None

            if remote_id is None:
                logger.info("[WORKSPACE_CLIENT] user=%s has no remote account; skipping deletion", user_id)
                return DeleteOutcome.not_found

            response = await self._request(client, "DELETE", f"/api/v1/users/{remote_id}", user_id=user_id)

        if response.status_code == 404:
            logger.warning("[WORKSPACE_CLIENT] Remote account %s not found (may already be deleted)", remote_id)
            return DeleteOutcome.not_found
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Workspace account deletion failed: status={response.status_code}, body={response.text}",
                user_id=user_id,
                service=SERVICE_NAME,
            )

        logger.info("[WORKSPACE_CLIENT] Deleted remote account %s for user %s", remote_id, user_id)
        return DeleteOutcome.deleted

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _linked_account_id(self, user_id: UUID) -> Optional[str]:
        db = self.session_factory()
        try:
            account = get_workspace_account(db, user_id)
            return account.external_account_id if account else None
        finally:
            db.close()

    def _resolve_remote(self, user_id: UUID):
        """(remote id, email) from the local linkage, else the user's email."""
        db = self.session_factory()
        try:
            account = get_workspace_account(db, user_id)
            if account is not None:
                return account.external_account_id, account.external_email
            user = db.get(User, user_id)
            return None, (user.email if user else None)
        finally:
            db.close()

    async def _get_api_key(self, client: httpx.AsyncClient, user_id: Optional[UUID] = None) -> str:
        if self._api_key:
            return self._api_key

        try:
            login = await client.post(
                "/api/v1/login",
                data={"username": self.username, "password": self.password},
            )
            if login.status_code >= 400:
                raise ExternalServiceError(
                    f"Workspace admin login failed: status={login.status_code}",
                    user_id=user_id,
                    service=SERVICE_NAME,
                )
            access_token = login.json()["access_token"]

            key_response = await client.post(
                "/api/v1/api_key/",
                json={"name": API_KEY_NAME},
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if key_response.status_code >= 400:
                raise ExternalServiceError(
                    f"Workspace API key creation failed: status={key_response.status_code}",
                    user_id=user_id,
                    service=SERVICE_NAME,
                )
            self._api_key = key_response.json()["api_key"]
        except httpx.TimeoutException as e:
            raise ExternalServiceTimeout(
                f"Workspace authentication timed out: {e}", user_id=user_id, service=SERVICE_NAME
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Workspace authentication failed: {e}", user_id=user_id, service=SERVICE_NAME
            ) from e
        except (KeyError, ValueError) as e:
            raise ExternalServiceError(
                f"Unexpected workspace authentication response: {e}", user_id=user_id, service=SERVICE_NAME
            ) from e

        return self._api_key

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        user_id: Optional[UUID] = None,
        **kwargs,
    ) -> httpx.Response:
        """Authenticated request; re-authenticates once on 401/403."""
        for attempt in range(2):
            api_key = await self._get_api_key(client, user_id)
            try:
                response = await client.request(method, path, headers={"x-api-key": api_key}, **kwargs)
            except httpx.TimeoutException as e:
                raise ExternalServiceTimeout(
                    f"Workspace {method} {path} timed out: {e}", user_id=user_id, service=SERVICE_NAME
                ) from e
            except httpx.HTTPError as e:
                raise ExternalServiceError(
                    f"Workspace {method} {path} failed: {e}", user_id=user_id, service=SERVICE_NAME
                ) from e

            if response.status_code in (401, 403) and attempt == 0:
                logger.info("[WORKSPACE_CLIENT] API key rejected; re-authenticating")
                self._api_key = None
                continue
            return response
        return response

    async def _find_remote_user(
        self, client: httpx.AsyncClient, username: str, user_id: Optional[UUID] = None
    ) -> Optional[Dict[str, Any]]:
        response = await self._request(client, "GET", "/api/v1/users/", user_id=user_id)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Workspace user lookup failed: status={response.status_code}", user_id=user_id, service=SERVICE_NAME
            )
        # Platform proxies answer maintenance pages with 200 and an HTML body
        try:
            body = response.json()
            users: List[Dict[str, Any]] = body.get("users", []) if isinstance(body, dict) else body
            for remote in users:
                if remote.get("username") == username:
                    return remote
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ExternalServiceError(
                f"Workspace user lookup returned an unreadable body: {e}", user_id=user_id, service=SERVICE_NAME
            ) from e
        return None


async def provision_workspace_account(
    client: WorkspaceAccountClient,
    session_factory: Callable[[], Session],
    user_id: UUID,
    email: str,
    secret: str,
) -> str:
    """Create the remote account, then record the linkage locally.

    The local row is written only after the remote create succeeded.
    """
    remote_id = await client.create_account(user_id, email, secret)

    db = session_factory()
    try:
        if account_store.load_user(db, user_id) is None:
            raise DataInconsistencyError(f"Provisioned workspace for unknown user {user_id}", user_id=user_id)
        link_workspace_account(db, user_id, remote_id, email)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return remote_id
