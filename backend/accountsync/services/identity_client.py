"""Identity provider client - account removal.

WHAT:
    Removes a user's identity from Clerk so the user is signed out everywhere
    and cannot log in again. Step 3 of the sweeper's unit of work: it runs
    after the workspace account is gone and before any local row is touched.

CONTRACT:
    - 200 and 404 both mean "identity gone" -> True
    - Any other status, transport error or missing key -> False
      (the sweeper records a failed attempt and retries next sweep)
    - Timeouts raise ExternalServiceTimeout so they are recorded as such

USAGE:
    deleter = identity_deleter_from_settings(get_settings())
    ok = await deleter("user_2abc...")

REFERENCES:
    - DELETE /users/{user_id}: https://clerk.com/docs/reference/backend-api/tag/Users#operation/DeleteUser
    - accountsync/services/deletion_sweeper.py (caller)
    - accountsync/deps.py (CLERK_SECRET_KEY, EXTERNAL_CALL_TIMEOUT_SECONDS)
"""

import functools
import logging
from typing import Awaitable, Callable, Optional

import httpx

from ..exceptions import ExternalServiceTimeout

logger = logging.getLogger(__name__)

CLERK_API_BASE = "https://api.clerk.com/v1"
SERVICE_NAME = "identity"


async def delete_identity_user(
    clerk_id: str,
    secret_key: Optional[str] = None,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Delete one Clerk identity.

    Args:
        clerk_id: Clerk user id (e.g. "user_2abc123...")
        secret_key: Clerk Backend API key; nothing is sent without one
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests)

    Returns:
        True if the identity is gone, False otherwise

    Raises:
        ExternalServiceTimeout: Clerk did not answer within `timeout`
    """
    if not secret_key:
        logger.error("[IDENTITY] CLERK_SECRET_KEY not configured; cannot delete %s", clerk_id)
        return False

    headers = {"Authorization": f"Bearer {secret_key}"}
    try:
        async with httpx.AsyncClient(base_url=CLERK_API_BASE, timeout=timeout, transport=transport) as client:
            response = await client.delete(f"/users/{clerk_id}", headers=headers)
    except httpx.TimeoutException as e:
        raise ExternalServiceTimeout(f"Clerk delete for {clerk_id} timed out: {e}", service=SERVICE_NAME) from e
    except httpx.HTTPError as e:
        logger.error("[IDENTITY] Transport error deleting %s: %s", clerk_id, e)
        return False

    if response.status_code == 200:
        logger.info("[IDENTITY] Deleted identity %s", clerk_id)
        return True
    if response.status_code == 404:
        logger.warning("[IDENTITY] Identity %s already gone", clerk_id)
        return True

    logger.error(
        "[IDENTITY] Delete of %s rejected: status=%s body=%s", clerk_id, response.status_code, response.text
    )
    return False


def identity_deleter_from_settings(settings) -> Callable[[str], Awaitable[bool]]:
    """`delete_identity_user` bound to the configured key and call timeout."""
    return functools.partial(
        delete_identity_user,
        secret_key=settings.CLERK_SECRET_KEY,
        timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )
