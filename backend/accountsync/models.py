"""SQLAlchemy ORM models and enums.

This module defines the account record store. Every table is keyed (directly
or through `billing_customers`) by the opaque user id, which is the join key
across the identity, billing and workspace systems of record.

Source-of-truth tables:
    - users:                 identity mirror (Clerk)
    - user_trials:           local trial state machine
    - billing_customers /
      billing_subscriptions: billing read model (written by the webhook receiver)
    - workspace_accounts:    external workspace linkage

Derived / operational tables:
    - account_states:        reconciliation output (a cache, fully recomputable)
    - billing_webhook_events: webhook idempotency ledger
    - deletion_attempts:     audit trail of deletion sweeper units
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class TrialStatusEnum(str, enum.Enum):
    """Trial state machine.

    active → expired → scheduled_for_deletion
    active | expired | scheduled_for_deletion → converted_to_paid
    """
    active = "active"
    expired = "expired"
    converted_to_paid = "converted_to_paid"
    scheduled_for_deletion = "scheduled_for_deletion"


class BillingStatusEnum(str, enum.Enum):
    """Subscription status as reported by the billing provider (Stripe)."""
    not_started = "not_started"
    incomplete = "incomplete"
    incomplete_expired = "incomplete_expired"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    unpaid = "unpaid"
    paused = "paused"


class WorkspaceAccountStatusEnum(str, enum.Enum):
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


class AccessLevelEnum(str, enum.Enum):
    none = "none"
    trial = "trial"
    pro = "pro"
    enterprise = "enterprise"
    suspended = "suspended"


class AccountStatusEnum(str, enum.Enum):
    subscription_active = "subscription_active"
    subscription_trialing = "subscription_trialing"
    subscription_past_due = "subscription_past_due"
    subscription_canceled = "subscription_canceled"
    trial_active = "trial_active"
    trial_expired = "trial_expired"
    protected = "protected"


class DeletionOutcomeEnum(str, enum.Enum):
    deleted = "deleted"
    failed = "failed"
    timeout = "timeout"
    rejected = "rejected"


# Billing statuses that count as a live, paying relationship.
PAYING_BILLING_STATUSES = (BillingStatusEnum.active, BillingStatusEnum.trialing)


# Identity ------------------------------------------------------

class User(Base):
    """Local mirror of an identity-provider account.

    The `id` is the join key for every other table. Rows are tombstoned
    (`deleted_at`) on whole-account removal rather than hard-deleted, so
    billing audit history keeps a valid parent.
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clerk_id = Column(String, unique=True, nullable=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    trial = relationship("TrialRecord", back_populates="user", uselist=False)
    billing_customers = relationship("BillingCustomer", back_populates="user")
    workspace_account = relationship("WorkspaceAccount", back_populates="user", uselist=False)
    account_state = relationship("AccountState", back_populates="user", uselist=False)

    def __str__(self):
        return self.email


# Trial ---------------------------------------------------------

class TrialRecord(Base):
    """Exactly one trial per user, created at signup.

    Mutated only by the reconciler (state machine) and removed only by the
    deletion sweeper as part of whole-account removal.
    """
    __tablename__ = "user_trials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    trial_start_date = Column(DateTime(timezone=True), nullable=False)
    trial_end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_status = Column(
        Enum(TrialStatusEnum, name="trialstatusenum"),
        nullable=False,
        default=TrialStatusEnum.active,
        index=True,
    )
    deletion_scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="trial")


# Billing -------------------------------------------------------

class BillingCustomer(Base):
    """Link between a local user and a billing-provider customer.

    Soft-deleted rows (`deleted_at`) are kept for audit history.
    """
    __tablename__ = "billing_customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    customer_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="billing_customers")
    subscriptions = relationship("BillingSubscription", back_populates="customer")


class BillingSubscription(Base):
    """Subscription state mirrored from billing-provider webhooks."""
    __tablename__ = "billing_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(
        String, ForeignKey("billing_customers.customer_id"), nullable=False, index=True
    )
    subscription_id = Column(String, nullable=False, unique=True)
    status = Column(Enum(BillingStatusEnum, name="billingstatusenum"), nullable=False, index=True)
    price_id = Column(String, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    customer = relationship("BillingCustomer", back_populates="subscriptions")


class BillingWebhookEvent(Base):
    """Processed billing webhook events, for idempotent delivery handling."""
    __tablename__ = "billing_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_key = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False)
    data_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), default=_utcnow)
    processing_result = Column(String, default="success")


# Workspace -----------------------------------------------------

class WorkspaceAccount(Base):
    """Link between a local user and the external workspace account.

    Written by the provisioning collaborator after the remote account exists.
    """
    __tablename__ = "workspace_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    external_account_id = Column(String, nullable=False, unique=True)
    external_email = Column(String, nullable=False, index=True)
    status = Column(
        Enum(WorkspaceAccountStatusEnum, name="workspaceaccountstatusenum"),
        nullable=False,
        default=WorkspaceAccountStatusEnum.active,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="workspace_account")


# Derived -------------------------------------------------------

class AccountState(Base):
    """Materialized reconciliation output for one user.

    A cache, never a source of truth: it can be dropped and rebuilt from the
    tables above at any time. `sync_version` is the compare-and-swap counter
    that serializes concurrent reconciliations of the same user.
    """
    __tablename__ = "account_states"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    account_status = Column(
        Enum(AccountStatusEnum, name="accountstatusenum"),
        nullable=False,
        default=AccountStatusEnum.trial_active,
        index=True,
    )
    access_level = Column(
        Enum(AccessLevelEnum, name="accesslevelenum"),
        nullable=False,
        default=AccessLevelEnum.trial,
        index=True,
    )
    has_access = Column(Boolean, nullable=False, default=False)
    trial_days_remaining = Column(Integer, nullable=False, default=0)
    billing_status = Column(String, nullable=True)
    workspace_status = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True, index=True)
    sync_version = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="account_state")


class DeletionAttempt(Base):
    """One row per deletion sweeper unit, whatever its outcome.

    Written in its own transaction; never part of an account's lifecycle
    state. Feeds the failed/stuck deletion metrics.
    """
    __tablename__ = "deletion_attempts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    attempted_at = Column(DateTime(timezone=True), nullable=False, index=True)
    outcome = Column(Enum(DeletionOutcomeEnum, name="deletionoutcomeenum"), nullable=False)
    stage = Column(String, nullable=True)
    error = Column(Text, nullable=True)
