"""Billing webhook receiver (Stripe).

WHAT: Mirrors Stripe subscription state into billing_customers /
      billing_subscriptions and triggers a reconcile for the owner
WHY: Billing is the source of truth for paid access; the reconciler only
     reads the mirrored rows

FLOW:
    1. Verify signature (stripe.Webhook.construct_event)
    2. Skip events already recorded in billing_webhook_events
    3. Link customer → user (subscription metadata.user_id) if needed
    4. Upsert subscription row and commit
    5. reconciler.on_billing_status_changed(user_id)
    6. Record the event (success or error) and answer 200

REFERENCES:
    - https://docs.stripe.com/webhooks
    - accountsync/services/billing_store.py
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_reconciler, get_settings
from ..exceptions import AccountLifecycleError, DataInconsistencyError
from ..models import BillingStatusEnum, BillingWebhookEvent
from ..services import billing_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
}


# =============================================================================
# IDEMPOTENCY
# =============================================================================

def _compute_event_key(payload: dict) -> str:
    """Compute idempotency key for webhook event.

    WHAT: Stripe event id when present, else {type}:{object id}:{created}
    WHY: Stripe retries deliveries; each event must be applied once
    """
    if payload.get("id"):
        return str(payload["id"])
    data = payload.get("data", {}).get("object", {})
    created = payload.get("created", datetime.now(timezone.utc).isoformat())
    return f"{payload.get('type', 'unknown')}:{data.get('id', 'unknown')}:{created}"


def _is_event_processed(event_key: str, db: Session) -> bool:
    existing = (
        db.query(BillingWebhookEvent)
        .filter(BillingWebhookEvent.event_key == event_key)
        .first()
    )
    return existing is not None


def _record_event(
    event_key: str,
    event_type: str,
    data_id: Optional[str],
    payload: dict,
    result: str,
    db: Session,
) -> None:
    """Insert the event into the ledger so redeliveries are skipped."""
    db.add(
        BillingWebhookEvent(
            event_key=event_key,
            event_type=event_type,
            data_id=data_id,
            payload_json=payload,
            processing_result=result,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event recorded it first
        db.rollback()
        logger.info("[BILLING_WEBHOOK] Event %s recorded concurrently", event_key)


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_fields(subscription: Dict[str, Any], event_type: str) -> Dict[str, Any]:
    """Extract the columns we mirror from a Stripe subscription object.

    Newer API versions report the billing period on the subscription item
    instead of the subscription.
    """
    item = _first_item(subscription)
    status_value = subscription.get("status")
    if event_type == "customer.subscription.deleted" and not status_value:
        status_value = BillingStatusEnum.canceled.value
    return {
        "status": billing_store.parse_billing_status(status_value),
        "price_id": (item.get("price") or {}).get("id"),
        "current_period_start": _timestamp(
            subscription.get("current_period_start") or item.get("current_period_start")
        ),
        "current_period_end": _timestamp(
            subscription.get("current_period_end") or item.get("current_period_end")
        ),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
    }


# =============================================================================
# ENDPOINT
# =============================================================================

@router.post(
    "/billing",
    response_model=schemas.WebhookResponse,
    summary="Stripe webhook handler",
    description="""
    Receives Stripe subscription events and updates the billing read model.

    Handled events:
        - customer.subscription.created / updated / deleted / paused / resumed

    Security:
        - Stripe-Signature verified with STRIPE_WEBHOOK_SECRET
        - Idempotent: duplicate deliveries are skipped via event_key
    """,
)
async def handle_billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    reconciler=Depends(get_reconciler),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    body = await request.body()

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("[BILLING_WEBHOOK] Webhook secret not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if not stripe_signature:
        logger.warning("[BILLING_WEBHOOK] Missing Stripe-Signature header")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing webhook signature")

    try:
        stripe.Webhook.construct_event(body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"[BILLING_WEBHOOK] Signature verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    except ValueError as e:
        logger.warning(f"[BILLING_WEBHOOK] Invalid payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    # Use the raw JSON for storage and processing
    payload = json.loads(body)
    event_type = payload.get("type", "unknown")
    data = payload.get("data", {}).get("object", {}) or {}
    data_id = data.get("id")

    logger.info(f"[BILLING_WEBHOOK] Received event: {event_type}")

    event_key = _compute_event_key(payload)
    if _is_event_processed(event_key, db):
        logger.info(f"[BILLING_WEBHOOK] Skipping duplicate event: {event_key}")
        return schemas.WebhookResponse(event_type=event_type, action="skipped")

    if event_type not in SUBSCRIPTION_EVENTS:
        logger.info(f"[BILLING_WEBHOOK] Ignoring event type: {event_type}")
        _record_event(event_key, event_type, data_id, payload, "ignored", db)
        return schemas.WebhookResponse(event_type=event_type, action="ignored")

    try:
        user_id = _apply_subscription_event(db, event_type, data)
    except (DataInconsistencyError, ValueError) as e:
        db.rollback()
        logger.error(f"[BILLING_WEBHOOK] Could not apply {event_type} ({data_id}): {e}")
        _record_event(event_key, event_type, data_id, payload, f"error: {e}", db)
        # Still return 200 so Stripe does not retry a payload we cannot apply
        return schemas.WebhookResponse(event_type=event_type, action="error")

    try:
        reconciler.on_billing_status_changed(user_id)
        result = "success"
    except AccountLifecycleError as e:
        # Billing row is committed; the scheduled reconcile will catch up
        logger.error(f"[BILLING_WEBHOOK] Reconcile after {event_type} failed for {user_id}: {e.message}")
        result = f"reconcile_error: {e.message}"

    _record_event(event_key, event_type, data_id, payload, result, db)
    return schemas.WebhookResponse(event_type=event_type, action="processed")


def _apply_subscription_event(db: Session, event_type: str, subscription: Dict[str, Any]) -> UUID:
    """Write the subscription to the read model; returns the owner's id."""
    customer_id = subscription.get("customer")
    subscription_id = subscription.get("id")
    if not customer_id or not subscription_id:
        raise DataInconsistencyError("Subscription event without customer or subscription id")

    if billing_store.get_customer(db, customer_id) is None:
        metadata_user_id = (subscription.get("metadata") or {}).get("user_id")
        if not metadata_user_id:
            raise DataInconsistencyError(f"Unknown billing customer {customer_id} and no user_id in metadata")
        billing_store.link_billing_customer(db, UUID(metadata_user_id), customer_id)

    user_id = billing_store.upsert_subscription(
        db,
        customer_id=customer_id,
        subscription_id=subscription_id,
        **_subscription_fields(subscription, event_type),
    )
    db.commit()
    return user_id
