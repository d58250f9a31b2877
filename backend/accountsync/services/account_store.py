"""Account record store - read side.

WHAT: Loads one user's raw rows and turns them into immutable snapshots
WHY: Keeps query details (tombstones, subscription selection, row locks)
     out of the reconciler and the deletion sweeper, which both need the
     exact same view of "current billing" for their protection checks

Missing rows are returned as None ("no relationship"), never raised.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..domain import BillingLinkage, TrialSnapshot, WorkspaceLinkage
from ..models import (
    PAYING_BILLING_STATUSES,
    BillingCustomer,
    BillingStatusEnum,
    BillingSubscription,
    TrialRecord,
    User,
    WorkspaceAccount,
)

logger = logging.getLogger(__name__)


def load_user(db: Session, user_id: UUID) -> Optional[User]:
    """Live (non-tombstoned) identity row, or None."""
    user = db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        return None
    return user


def load_trial(db: Session, user_id: UUID, for_update: bool = False) -> Optional[TrialRecord]:
    """Trial row for a user.

    With `for_update=True` the row is locked until the transaction ends on
    backends that support row locks (PostgreSQL); SQLite ignores the clause.
    """
    query = db.query(TrialRecord).filter(TrialRecord.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def trial_snapshot(record: Optional[TrialRecord]) -> Optional[TrialSnapshot]:
    if record is None:
        return None
    return TrialSnapshot(
        start_time=record.trial_start_date,
        end_time=record.trial_end_date,
        trial_status=record.trial_status,
        deletion_scheduled_at=record.deletion_scheduled_at,
    )


def load_billing_linkage(db: Session, user_id: UUID) -> Optional[BillingLinkage]:
    """Current billing relationship for a user.

    Selection:
        - Only non-tombstoned customers and subscriptions are considered
        - A paying (active/trialing) subscription always wins, so a stale
          canceled row can never hide a live subscription
        - Otherwise the most recently created subscription
        - A customer without subscriptions reads as `not_started`
    """
    customers = (
        db.query(BillingCustomer)
        .filter(
            BillingCustomer.user_id == user_id,
            BillingCustomer.deleted_at.is_(None),
        )
        .order_by(BillingCustomer.created_at.desc())
        .all()
    )
    if not customers:
        return None

    customer_ids = [c.customer_id for c in customers]
    subscriptions = (
        db.query(BillingSubscription)
        .filter(
            BillingSubscription.customer_id.in_(customer_ids),
            BillingSubscription.deleted_at.is_(None),
        )
        .order_by(BillingSubscription.created_at.desc())
        .all()
    )

    if not subscriptions:
        return BillingLinkage(
            external_customer_id=customers[0].customer_id,
            status=BillingStatusEnum.not_started,
        )

    paying = [s for s in subscriptions if s.status in PAYING_BILLING_STATUSES]
    chosen = paying[0] if paying else subscriptions[0]
    return BillingLinkage(
        external_customer_id=chosen.customer_id,
        status=chosen.status,
        external_subscription_id=chosen.subscription_id,
        current_period_start=chosen.current_period_start,
        current_period_end=chosen.current_period_end,
        cancel_at_period_end=bool(chosen.cancel_at_period_end),
    )


def load_workspace_linkage(db: Session, user_id: UUID) -> Optional[WorkspaceLinkage]:
    account = (
        db.query(WorkspaceAccount)
        .filter(WorkspaceAccount.user_id == user_id)
        .first()
    )
    if account is None:
        return None
    return WorkspaceLinkage(
        external_account_id=account.external_account_id,
        external_email=account.external_email,
        status=account.status,
    )


def known_user_ids(db: Session) -> List[UUID]:
    """Every live identity, in a stable order."""
    rows = db.execute(
        select(User.id).where(User.deleted_at.is_(None)).order_by(User.created_at, User.id)
    )
    return [row[0] for row in rows]


def paying_user_ids_query():
    """SELECT of user ids that currently hold an active/trialing subscription."""
    return (
        select(BillingCustomer.user_id)
        .join(
            BillingSubscription,
            BillingSubscription.customer_id == BillingCustomer.customer_id,
        )
        .where(
            BillingCustomer.deleted_at.is_(None),
            BillingSubscription.deleted_at.is_(None),
            BillingSubscription.status.in_(PAYING_BILLING_STATUSES),
        )
    )
