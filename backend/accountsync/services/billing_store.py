"""Billing record store - write side.

WHAT: Persists billing-provider customers and subscriptions
WHY: The billing webhook receiver is the only writer of these rows; keeping
     the upsert rules here lets the reconciler stay read-only on billing

Callers own the transaction (functions flush, never commit).

REFERENCES:
    - accountsync/routers/billing_webhooks.py (caller)
    - accountsync/services/account_store.py::load_billing_linkage (reader)
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..exceptions import DataInconsistencyError
from ..models import BillingCustomer, BillingStatusEnum, BillingSubscription, User

logger = logging.getLogger(__name__)


def parse_billing_status(value: Optional[str]) -> BillingStatusEnum:
    """Map a provider status string onto BillingStatusEnum.

    Raises:
        DataInconsistencyError: Unknown status (never guessed)
    """
    if not value:
        return BillingStatusEnum.not_started
    try:
        return BillingStatusEnum(value)
    except ValueError:
        raise DataInconsistencyError(f"Unknown billing status '{value}'")


def get_customer(db: Session, customer_id: str) -> Optional[BillingCustomer]:
    return (
        db.query(BillingCustomer)
        .filter(
            BillingCustomer.customer_id == customer_id,
            BillingCustomer.deleted_at.is_(None),
        )
        .first()
    )


def link_billing_customer(
    db: Session,
    user_id: UUID,
    customer_id: str,
    email: Optional[str] = None,
) -> BillingCustomer:
    """Attach a billing customer to a local user (idempotent).

    Raises:
        DataInconsistencyError: Unknown user, or the customer is already
            linked to a different user
    """
    user = db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise DataInconsistencyError(
            f"Billing customer {customer_id} references unknown user {user_id}", user_id=user_id
        )

    customer = db.query(BillingCustomer).filter(BillingCustomer.customer_id == customer_id).first()
    if customer is not None:
        if customer.user_id != user_id:
            raise DataInconsistencyError(
                f"Billing customer {customer_id} already linked to user {customer.user_id}",
                user_id=user_id,
            )
        if email and customer.email != email:
            customer.email = email
        return customer

    customer = BillingCustomer(user_id=user_id, customer_id=customer_id, email=email or user.email)
    db.add(customer)
    db.flush()
    logger.info("[BILLING] Linked customer %s to user %s", customer_id, user_id)
    return customer


def upsert_subscription(
    db: Session,
    customer_id: str,
    subscription_id: str,
    status: BillingStatusEnum,
    price_id: Optional[str] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
) -> UUID:
    """Create or update a subscription row.

    Returns:
        The owning user's id (so the caller can trigger a reconcile)

    Raises:
        DataInconsistencyError: The customer is unknown or tombstoned
    """
    customer = get_customer(db, customer_id)
    if customer is None:
        raise DataInconsistencyError(f"Subscription {subscription_id} references unknown customer {customer_id}")

    subscription = (
        db.query(BillingSubscription)
        .filter(BillingSubscription.subscription_id == subscription_id)
        .first()
    )
    if subscription is None:
        subscription = BillingSubscription(customer_id=customer_id, subscription_id=subscription_id)
        db.add(subscription)
        previous = None
    else:
        previous = subscription.status

    subscription.status = status
    subscription.price_id = price_id
    subscription.current_period_start = current_period_start
    subscription.current_period_end = current_period_end
    subscription.cancel_at_period_end = bool(cancel_at_period_end)
    db.flush()

    logger.info(
        "[BILLING] Subscription %s for customer %s: %s → %s",
        subscription_id, customer_id, previous.value if previous else None, status.value,
    )
    return customer.user_id
