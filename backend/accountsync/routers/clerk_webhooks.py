"""Clerk webhook handlers for identity lifecycle events.

WHAT: Receives events from Clerk when users sign up or change their profile
WHY: Signup starts the trial; the local users table mirrors the identity
     provider so every other table can key on one opaque user id
REFERENCES:
    - https://clerk.com/docs/integrations/webhooks
    - accountsync/services/reconciler.py::on_account_created

Events handled:
    - user.created: Create local User + TrialRecord, then reconcile
    - user.updated: Sync email/name changes from Clerk
    - user.deleted: Acknowledged only; removal is owned by the deletion sweeper
"""

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_reconciler, get_settings
from ..exceptions import AccountLifecycleError
from ..models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

# Reject deliveries older than this (replay protection)
MAX_WEBHOOK_AGE_SECONDS = 300


def _verify_clerk_signature(
    payload: bytes,
    svix_id: str,
    svix_timestamp: str,
    svix_signature: str,
    secret: str,
) -> bool:
    """Verify webhook signature from Clerk using Svix.

    WHAT: Cryptographically verifies webhook came from Clerk
    WHY: Prevents attackers from creating fake accounts via forged webhooks

    Clerk uses Svix for webhook delivery, which signs payloads using HMAC-SHA256.

    Returns:
        bool: True if signature is valid

    References:
        https://docs.svix.com/receiving/verifying-payloads/how
    """
    # Extract the secret (remove whsec_ prefix if present)
    if secret.startswith("whsec_"):
        secret = secret[6:]

    secret_bytes = base64.b64decode(secret)

    # Build the signed payload: "{svix_id}.{svix_timestamp}.{payload}"
    signed_payload = f"{svix_id}.{svix_timestamp}.{payload.decode('utf-8')}"

    expected_signature = hmac.new(
        secret_bytes,
        signed_payload.encode("utf-8"),
        hashlib.sha256
    ).digest()
    expected_signature_b64 = base64.b64encode(expected_signature).decode("utf-8")

    # Svix-Signature header format: "v1,<signature1> v1,<signature2> ..."
    for sig in svix_signature.split(" "):
        if sig.startswith("v1,"):
            if hmac.compare_digest(expected_signature_b64, sig[3:]):
                return True

    return False


def _primary_email(data: dict[str, Any]) -> Optional[str]:
    """Primary email from a Clerk user payload, else the first one."""
    email_addresses = data.get("email_addresses", [])
    primary_email_id = data.get("primary_email_address_id")

    for email_obj in email_addresses:
        if email_obj.get("id") == primary_email_id:
            return email_obj.get("email_address")

    if email_addresses:
        return email_addresses[0].get("email_address")
    return None


def _full_name(data: dict[str, Any]) -> Optional[str]:
    first_name = data.get("first_name") or ""
    last_name = data.get("last_name") or ""
    return f"{first_name} {last_name}".strip() or None


@router.post("/clerk")
async def handle_clerk_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    reconciler=Depends(get_reconciler),
    svix_id: str = Header(None, alias="svix-id"),
    svix_timestamp: str = Header(None, alias="svix-timestamp"),
    svix_signature: str = Header(None, alias="svix-signature"),
):
    """Handle Clerk webhook events for account lifecycle management.

    Raises:
        HTTPException 400: Invalid/missing signature, stale timestamp, bad JSON
        HTTPException 500: Webhook secret not configured
    """
    if not settings.CLERK_WEBHOOK_SECRET:
        logger.error("[CLERK_WEBHOOK] Webhook secret not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()

    if not all([svix_id, svix_timestamp, svix_signature]):
        logger.warning("[CLERK_WEBHOOK] Missing required Svix headers")
        raise HTTPException(status_code=400, detail="Missing webhook signature headers")

    if not _verify_clerk_signature(body, svix_id, svix_timestamp, svix_signature, settings.CLERK_WEBHOOK_SECRET):
        logger.warning("[CLERK_WEBHOOK] Invalid webhook signature")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        age_seconds = abs(int(time.time()) - int(svix_timestamp))
    except (ValueError, TypeError):
        logger.warning(f"[CLERK_WEBHOOK] Invalid timestamp format: {svix_timestamp}")
        raise HTTPException(status_code=400, detail="Invalid webhook timestamp")
    if age_seconds > MAX_WEBHOOK_AGE_SECONDS:
        logger.warning(f"[CLERK_WEBHOOK] Stale webhook rejected: age={age_seconds}s")
        raise HTTPException(status_code=400, detail="Webhook timestamp too old (possible replay attack)")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.error("[CLERK_WEBHOOK] Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = payload.get("type")
    data = payload.get("data", {})

    logger.info(f"[CLERK_WEBHOOK] Received event: {event_type}")

    if event_type == "user.created":
        return _handle_user_created(db, reconciler, data)
    elif event_type == "user.updated":
        return _handle_user_updated(db, data)
    else:
        logger.info(f"[CLERK_WEBHOOK] Ignoring event type: {event_type}")
        return {"status": "ignored", "event_type": event_type}


def _handle_user_created(db: Session, reconciler, data: dict[str, Any]) -> dict:
    """Start the account: identity row + 7-day trial + first reconcile.

    Flow:
        1. Existing user for this clerk_id → idempotent no-op
        2. Existing user with the same email → link clerk_id (migration)
        3. Otherwise a new opaque user id is minted
        4. reconciler.on_account_created creates the trial and derived state
    """
    clerk_id = data.get("id")

    existing = db.query(User).filter(User.clerk_id == clerk_id).first()
    if existing:
        logger.info(f"[CLERK_WEBHOOK] User already exists for clerk_id={clerk_id}")
        return {"status": "already_exists", "user_id": str(existing.id)}

    primary_email = _primary_email(data)
    if not primary_email:
        logger.error(f"[CLERK_WEBHOOK] No email found for clerk_id={clerk_id}")
        raise HTTPException(status_code=400, detail="No email address found")

    existing_by_email = (
        db.query(User)
        .filter(User.email == primary_email, User.deleted_at.is_(None))
        .first()
    )
    if existing_by_email:
        existing_by_email.clerk_id = clerk_id
        db.commit()
        logger.info(f"[CLERK_WEBHOOK] Linked existing user {existing_by_email.id} to clerk_id={clerk_id}")
        return {"status": "linked_existing", "user_id": str(existing_by_email.id)}

    user_id = uuid.uuid4()
    try:
        state = reconciler.on_account_created(
            user_id,
            email=primary_email,
            full_name=_full_name(data),
            clerk_id=clerk_id,
        )
    except AccountLifecycleError as e:
        logger.error(f"[CLERK_WEBHOOK] Account creation failed for clerk_id={clerk_id}: {e.message}")
        raise HTTPException(status_code=500, detail="Account creation failed")

    logger.info(f"[CLERK_WEBHOOK] Created user {user_id} for clerk_id={clerk_id} email={primary_email}")
    return {
        "status": "created",
        "user_id": str(user_id),
        "account_status": state.account_status.value,
    }


def _handle_user_updated(db: Session, data: dict[str, Any]) -> dict:
    """Sync email/name changes from Clerk to the local identity row."""
    clerk_id = data.get("id")

    user = db.query(User).filter(User.clerk_id == clerk_id).first()
    if not user:
        logger.warning(f"[CLERK_WEBHOOK] User not found for clerk_id={clerk_id}")
        return {"status": "not_found", "clerk_id": clerk_id}

    new_email = _primary_email(data)
    if new_email and new_email != user.email:
        # Check email isn't taken by another user
        taken = db.query(User).filter(User.email == new_email, User.id != user.id).first()
        if not taken:
            user.email = new_email
            logger.info(f"[CLERK_WEBHOOK] Updated email for user {user.id}")

    full_name = _full_name(data)
    if full_name and full_name != user.full_name:
        user.full_name = full_name
        logger.info(f"[CLERK_WEBHOOK] Updated name for user {user.id}")

    db.commit()
    return {"status": "updated", "user_id": str(user.id)}
