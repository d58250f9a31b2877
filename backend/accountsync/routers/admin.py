"""Admin endpoints for account lifecycle operations.

WHAT: Protected endpoints for protection overrides, metrics and manual runs
WHY: Operators need to rescue accounts, inspect protection and trigger a
     reconcile without waiting for the scheduled job

SECURITY: Protected by the ADMIN_SECRET setting (X-Admin-Secret header)
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..database import SessionLocal
from ..deps import get_metrics_reporter, get_reconciler, get_settings, verify_admin_secret
from ..exceptions import ConcurrentUpdateError, TransientStoreError, UserNotFoundError
from ..services.deletion_sweeper import DeletionSweeper
from ..services.metrics_reporter import MetricsReporter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_secret)],
)


def get_deletion_sweeper() -> DeletionSweeper:
    # Selection only; the workspace client is never called from this router
    return DeletionSweeper(SessionLocal, workspace_client=None, settings=get_settings())


def _raise_for(e: Exception, user_id: UUID):
    if isinstance(e, UserNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    if isinstance(e, ConcurrentUpdateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Concurrent update, retry")
    logger.error("[ADMIN] Store failure for %s: %s", user_id, e)
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")


@router.post(
    "/users/{user_id}/protect",
    response_model=schemas.AccessStatusResponse,
    summary="Force-protect a user",
    description="""
    Marks the user's trial as converted to paid and clears any pending
    deletion. The account can no longer be expired or deleted by the
    lifecycle jobs.
    """,
)
def force_protect(user_id: UUID, reconciler=Depends(get_reconciler)):
    try:
        state = reconciler.force_protect(user_id)
    except (UserNotFoundError, ConcurrentUpdateError, TransientStoreError) as e:
        _raise_for(e, user_id)
    logger.warning("[ADMIN] Force-protected user %s", user_id)
    return schemas.AccessStatusResponse.model_validate(state)


@router.get(
    "/users/{user_id}/protection",
    response_model=schemas.ProtectionStatusResponse,
    summary="Verify user protection",
)
def verify_protection(user_id: UUID, reconciler=Depends(get_reconciler)):
    try:
        report = reconciler.verify_protection(user_id)
    except (UserNotFoundError, TransientStoreError) as e:
        _raise_for(e, user_id)
    return schemas.ProtectionStatusResponse(**report)


@router.post(
    "/users/{user_id}/reconcile",
    response_model=schemas.AccessStatusResponse,
    summary="Reconcile one user now",
)
def reconcile_user(user_id: UUID, reconciler=Depends(get_reconciler)):
    try:
        state = reconciler.reconcile(user_id)
    except (UserNotFoundError, ConcurrentUpdateError, TransientStoreError) as e:
        _raise_for(e, user_id)
    return schemas.AccessStatusResponse.model_validate(state)


@router.post(
    "/reconcile",
    response_model=schemas.BatchReconcileResponse,
    summary="Reconcile every user now",
    description="""
    Runs the same two-phase batch as the scheduled job: protect paying
    customers, then reconcile each user. Per-user failures are reported in
    `errors` and do not stop the batch.
    """,
)
def reconcile_all(reconciler=Depends(get_reconciler)):
    try:
        result = reconciler.reconcile_all()
    except TransientStoreError as e:
        logger.error("[ADMIN] Batch reconcile failed: %s", e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")
    return schemas.BatchReconcileResponse(**result.to_dict())


@router.get(
    "/metrics",
    response_model=schemas.SystemMetricsResponse,
    summary="System metrics",
)
def get_system_metrics(reporter: MetricsReporter = Depends(get_metrics_reporter)):
    try:
        return schemas.SystemMetricsResponse(**reporter.get_system_metrics())
    except TransientStoreError as e:
        logger.error("[ADMIN] Metrics unavailable: %s", e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")


@router.get(
    "/deletion-candidates",
    response_model=schemas.DeletionCandidatesResponse,
    summary="Preview deletion candidates",
)
def get_deletion_candidates(sweeper: DeletionSweeper = Depends(get_deletion_sweeper)):
    try:
        user_ids = sweeper.select_for_deletion()
    except TransientStoreError as e:
        logger.error("[ADMIN] Deletion candidate query failed: %s", e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")
    return schemas.DeletionCandidatesResponse(count=len(user_ids), user_ids=user_ids)
