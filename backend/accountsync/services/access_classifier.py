"""Access classifier.

WHAT: Computes (access_level, has_access, account_status) from raw inputs
WHY: Single place where the access decision is made; pure, total and
     deterministic so it can be reused by the reconciler, the admin API and
     tests without any I/O

PRECEDENCE (first match wins):
    1. billing active           → pro,       access,    subscription_active
    2. billing trialing         → pro,       access,    subscription_trialing
    3. billing past_due         → suspended, no access, subscription_past_due
    4. billing canceled/unpaid  → trial,     trial eval, subscription_canceled
    5. trial active, not ended  → trial,     access,    trial_active
    6. otherwise                → none (suspended if previously paid),
                                  no access, trial_expired

Billing state always overrides trial state; trial state only matters when
there is no actionable billing relationship. A canceled subscription does
not grant access through its paid period.
"""

from datetime import datetime
from typing import Optional

from ..clock import as_utc
from ..domain import AccessDecision, BillingLinkage, TrialSnapshot, WorkspaceLinkage
from ..models import (
    AccessLevelEnum,
    AccountStatusEnum,
    BillingStatusEnum,
    TrialStatusEnum,
)

_CANCELED_STATUSES = (BillingStatusEnum.canceled, BillingStatusEnum.unpaid)


def classify(
    trial: Optional[TrialSnapshot],
    billing: Optional[BillingLinkage],
    workspace: Optional[WorkspaceLinkage],
    *,
    now: datetime,
) -> AccessDecision:
    """Classify one user's access.

    `workspace` does not influence the decision; it is accepted so callers
    always pass the full picture and future rules have it available.
    """
    status = billing.status if billing else None

    if status == BillingStatusEnum.active:
        return AccessDecision(AccessLevelEnum.pro, True, AccountStatusEnum.subscription_active)

    if status == BillingStatusEnum.trialing:
        return AccessDecision(AccessLevelEnum.pro, True, AccountStatusEnum.subscription_trialing)

    if status == BillingStatusEnum.past_due:
        return AccessDecision(AccessLevelEnum.suspended, False, AccountStatusEnum.subscription_past_due)

    if status in _CANCELED_STATUSES:
        return AccessDecision(
            AccessLevelEnum.trial,
            _trial_is_running(trial, now),
            AccountStatusEnum.subscription_canceled,
        )

    if _trial_is_running(trial, now):
        return AccessDecision(AccessLevelEnum.trial, True, AccountStatusEnum.trial_active)

    level = AccessLevelEnum.suspended if _previously_paid(trial, billing) else AccessLevelEnum.none
    return AccessDecision(level, False, AccountStatusEnum.trial_expired)


def trial_days_remaining(trial: Optional[TrialSnapshot], now: datetime) -> int:
    """Whole days left in the trial, never negative."""
    if trial is None:
        return 0
    remaining = as_utc(trial.end_time) - as_utc(now)
    return max(0, remaining.days)


def _trial_is_running(trial: Optional[TrialSnapshot], now: datetime) -> bool:
    if trial is None:
        return False
    return trial.trial_status == TrialStatusEnum.active and as_utc(trial.end_time) > as_utc(now)


def _previously_paid(trial: Optional[TrialSnapshot], billing: Optional[BillingLinkage]) -> bool:
    if trial is not None and trial.trial_status == TrialStatusEnum.converted_to_paid:
        return True
    return billing is not None and bool(billing.external_subscription_id)
