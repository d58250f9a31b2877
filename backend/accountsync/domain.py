"""Immutable snapshots passed between the store and the pure components.

WHAT:
    Plain dataclasses describing one user's trial, billing and workspace
    state at a point in time, and the decisions computed from them.

WHY:
    The access classifier and protection guard are pure functions; they
    must never touch ORM objects (lazy loads would be hidden I/O). The
    reconciler builds these snapshots from rows and hands them over.

REFERENCES:
    - accountsync/services/access_classifier.py
    - accountsync/services/protection_guard.py
    - accountsync/services/account_store.py (builds snapshots from rows)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from .models import (
    AccessLevelEnum,
    AccountStatusEnum,
    BillingStatusEnum,
    TrialStatusEnum,
    WorkspaceAccountStatusEnum,
)


@dataclass(frozen=True)
class TrialSnapshot:
    start_time: datetime
    end_time: datetime
    trial_status: TrialStatusEnum
    deletion_scheduled_at: Optional[datetime] = None


@dataclass(frozen=True)
class BillingLinkage:
    """Current billing relationship for one user (read-only here)."""

    external_customer_id: str
    status: BillingStatusEnum
    external_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class WorkspaceLinkage:
    external_account_id: str
    external_email: str
    status: WorkspaceAccountStatusEnum


@dataclass(frozen=True)
class AccessDecision:
    """Output of the access classifier."""

    access_level: AccessLevelEnum
    has_access: bool
    account_status: AccountStatusEnum


@dataclass(frozen=True)
class DerivedAccountState:
    """Reconciliation result exposed to callers.

    Mirrors the `account_states` row without its CAS bookkeeping, plus the
    trial fields callers usually need alongside it.
    """

    user_id: UUID
    account_status: AccountStatusEnum
    access_level: AccessLevelEnum
    has_access: bool
    trial_days_remaining: int
    last_synced_at: Optional[datetime]
    trial_status: Optional[TrialStatusEnum] = None
    deletion_scheduled_at: Optional[datetime] = None
    billing_status: Optional[str] = None
    workspace_status: Optional[str] = None


@dataclass(frozen=True)
class ProtectionStatus:
    is_protected: bool
    reason: str
