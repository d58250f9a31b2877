"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import AccessLevelEnum, AccountStatusEnum, TrialStatusEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status (ok or degraded)")
    checks: Dict[str, object] = Field(default_factory=dict, description="Individual check results")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok",
                "checks": {"database": "ok", "stuck_deletions": 0, "orphaned_billing_customers": 0},
            }
        }
    }


# Account status
class AccessStatusResponse(BaseModel):
    """Derived account state for one user.

    WHAT: What the presentation layer needs to gate features
    WHY: Single read of the reconciled state, never recomputed client-side
    """

    user_id: UUID
    account_status: AccountStatusEnum
    access_level: AccessLevelEnum
    has_access: bool
    trial_days_remaining: int = Field(ge=0)
    trial_status: Optional[TrialStatusEnum] = None
    deletion_scheduled_at: Optional[datetime] = None
    billing_status: Optional[str] = None
    workspace_status: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
        "json_schema_extra": {
            "example": {
                "user_id": "5d0b6c1e-4a35-4cf1-9a7e-0f0c36b1a2d4",
                "account_status": "trial_active",
                "access_level": "trial",
                "has_access": True,
                "trial_days_remaining": 5,
                "trial_status": "active",
                "deletion_scheduled_at": None,
                "billing_status": None,
                "workspace_status": "active",
                "last_synced_at": "2026-10-18T12:00:00Z",
            }
        },
    }


# Admin
class ProtectionStatusResponse(BaseModel):
    """Protection report for one user."""

    user_id: UUID
    email: Optional[str] = None
    is_protected: bool
    protection_reason: str = Field(description="Super Admin Account, Active Subscription or No Protection")
    trial_status: Optional[str] = None
    deletion_scheduled_at: Optional[datetime] = None
    subscription_status: Optional[str] = None


class SystemMetricsResponse(BaseModel):
    """System-wide counters."""

    total_users: int
    active_trials: int
    active_subscriptions: int
    linked_workspace_accounts: int
    expired_trials: int = 0
    scheduled_for_deletion: int = 0
    failed_deletions_24h: int = 0
    stuck_deletions: int = 0
    stale_account_states: int = 0
    orphaned_billing_customers: int = 0
    generated_at: Optional[datetime] = None


class BatchReconcileResponse(BaseModel):
    """Result of a full reconciliation run."""

    total: int
    synced: int
    failed: int
    protected_repaired: int
    cancelled: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)


class DeletionCandidatesResponse(BaseModel):
    """Users the next deletion sweep would remove."""

    count: int
    user_ids: List[UUID]


# Webhooks
class WebhookResponse(BaseModel):
    """Standard webhook response.

    WHAT: Acknowledges webhook receipt
    WHY: Providers retry on non-2xx; this provides a structured 200 body
    """

    received: bool = Field(default=True, description="Webhook received successfully")
    event_type: Optional[str] = Field(None, description="Event type processed")
    action: Optional[str] = Field(None, description="Action taken (processed, skipped, error)")
