"""Protection guard.

WHAT: Decides whether an account is exempt from destructive lifecycle
      transitions (expiry, deletion scheduling, deletion)
WHY: The worst failure of this system is deleting a paying customer or the
     administrative account. Every destructive write goes through
     `ensure_transition_allowed` immediately before it happens, with a billing
     snapshot read in the same unit of work, never a batch-level cached one.

PROTECTED:
    - The hard-coded administrative identity (SUPER_ADMIN_USER_ID)
    - Any user whose billing status is active or trialing

REFERENCES:
    - accountsync/services/reconciler.py (expiry / scheduling writes)
    - accountsync/services/deletion_sweeper.py (deletion units)
"""

import logging
from typing import Optional
from uuid import UUID

from ..domain import BillingLinkage, ProtectionStatus
from ..exceptions import ProtectedAccountError
from ..models import PAYING_BILLING_STATUSES
from ..telemetry import capture_message

logger = logging.getLogger(__name__)

# Fixed administrative account. Intentionally not configurable.
SUPER_ADMIN_USER_ID = UUID("b8782453-a343-4301-a947-67c5bb407d2b")

REASON_SUPER_ADMIN = "Super Admin Account"
REASON_ACTIVE_SUBSCRIPTION = "Active Subscription"
REASON_NONE = "No Protection"


def is_super_admin(user_id: UUID) -> bool:
    return _as_uuid(user_id) == SUPER_ADMIN_USER_ID


def is_protected(user_id: UUID, billing: Optional[BillingLinkage]) -> bool:
    """True if the account must never lose access or be scheduled/deleted."""
    return protection_status(user_id, billing).is_protected


def protection_status(user_id: UUID, billing: Optional[BillingLinkage]) -> ProtectionStatus:
    """Protection decision with a human-readable reason."""
    if is_super_admin(user_id):
        return ProtectionStatus(True, REASON_SUPER_ADMIN)
    if billing is not None and billing.status in PAYING_BILLING_STATUSES:
        return ProtectionStatus(True, REASON_ACTIVE_SUBSCRIPTION)
    return ProtectionStatus(False, REASON_NONE)


def ensure_transition_allowed(
    user_id: UUID,
    billing: Optional[BillingLinkage],
    action: str,
) -> None:
    """Reject a destructive transition on a protected account.

    Args:
        user_id: Account about to be modified
        billing: Billing snapshot read in the same unit of work as the write
        action: Short name of the write (e.g. "expire_trial", "delete_account")

    Raises:
        ProtectedAccountError: The account is protected; the caller must not
            perform the write.
    """
    status = protection_status(user_id, billing)
    if not status.is_protected:
        return

    message = (
        f"[GUARD] Rejected '{action}' for protected user {user_id} "
        f"(reason={status.reason})"
    )
    logger.critical(message)
    capture_message(
        message,
        level="fatal",
        extra={"user_id": str(user_id), "action": action, "reason": status.reason},
    )
    raise ProtectedAccountError(message, user_id=user_id, reason=status.reason)


def _as_uuid(value) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None
