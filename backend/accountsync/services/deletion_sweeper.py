"""Deletion sweeper.

WHAT:
    Selects accounts whose trial ran out long ago and were never rescued,
    then removes them everywhere: workspace platform, identity provider,
    and finally the local records.

WHY:
    Deletion is the only irreversible operation in the system. It runs on its
    own schedule, selects with the strictest predicate we have, and re-checks
    protection on a fresh read before touching anything.

SELECTION (all must hold):
    - trial_status = scheduled_for_deletion
    - no active/trialing subscription
    - trial_end_date more than DELETION_GRACE_PERIOD_DAYS in the past
    - not the administrative identity

UNIT OF WORK (one per candidate, bounded pool of SWEEPER_MAX_WORKERS):
    1. Fresh protection check (guard)
    2. Workspace account delete (missing = success)
    3. Identity delete (missing = success)
    4. One local transaction: tombstone identity + billing rows, mark the
       workspace linkage deleted, drop derived row and trial
    Any failure before step 4 leaves local state untouched; the candidate is
    still scheduled_for_deletion and is retried on the next sweep.

REFERENCES:
    - accountsync/services/protection_guard.py
    - accountsync/services/workspace_client.py
    - accountsync/services/identity_client.py
    - accountsync/workers/arq_worker.py (scheduled_deletion_sweep)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clock import Clock, SystemClock
from ..exceptions import (
    ExternalServiceError,
    ExternalServiceTimeout,
    ProtectedAccountError,
    TransientStoreError,
)
from ..models import (
    AccountState,
    BillingCustomer,
    BillingSubscription,
    DeletionAttempt,
    DeletionOutcomeEnum,
    TrialRecord,
    TrialStatusEnum,
    User,
    WorkspaceAccount,
    WorkspaceAccountStatusEnum,
)
from ..telemetry import capture_exception
from . import account_store, protection_guard
from .identity_client import identity_deleter_from_settings

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweeper run."""

    candidates: int = 0
    deleted: int = 0
    failed: int = 0
    skipped_protected: int = 0
    cancelled: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "candidates": self.candidates,
            "deleted": self.deleted,
            "failed": self.failed,
            "skipped_protected": self.skipped_protected,
            "cancelled": self.cancelled,
            "errors": dict(self.errors),
        }


class _UnitAborted(Exception):
    """Candidate no longer eligible at execution time."""


class DeletionSweeper:
    """Removes accounts selected by `select_for_deletion`.

    Args:
        session_factory: Callable returning a new Session
        workspace_client: Object with `async delete_account(user_id)`
        identity_deleter: `async (clerk_id) -> bool`; defaults to Clerk with
            the configured CLERK_SECRET_KEY and call timeout
        clock: Source of "now"
        settings: `deps.Settings` (grace period, pool size, timeouts)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        workspace_client,
        identity_deleter: Optional[Callable[[str], Awaitable[bool]]] = None,
        clock: Optional[Clock] = None,
        settings=None,
    ):
        if settings is None:
            from ..deps import get_settings
            settings = get_settings()
        self.session_factory = session_factory
        self.workspace_client = workspace_client
        self.identity_deleter = identity_deleter or identity_deleter_from_settings(settings)
        self.clock = clock or SystemClock()
        self.settings = settings

    # =========================================================================
    # SELECTION
    # =========================================================================

    def select_for_deletion(self) -> List[UUID]:
        """User ids eligible for deletion right now. Read-only."""
        cutoff = self.clock.now() - timedelta(days=self.settings.DELETION_GRACE_PERIOD_DAYS)
        db = self.session_factory()
        try:
            rows = db.execute(
                select(TrialRecord.user_id)
                .join(User, User.id == TrialRecord.user_id)
                .where(
                    TrialRecord.trial_status == TrialStatusEnum.scheduled_for_deletion,
                    TrialRecord.trial_end_date < cutoff,
                    TrialRecord.user_id != protection_guard.SUPER_ADMIN_USER_ID,
                    TrialRecord.user_id.not_in(account_store.paying_user_ids_query()),
                    User.deleted_at.is_(None),
                )
                .order_by(TrialRecord.trial_end_date)
            )
            candidates = []
            for (user_id,) in rows:
                billing = account_store.load_billing_linkage(db, user_id)
                if protection_guard.is_protected(user_id, billing):
                    logger.critical("[SWEEPER] Protected user %s matched the deletion query; excluded", user_id)
                    continue
                candidates.append(user_id)
            return candidates
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Deletion candidate query failed: {e}") from e
        finally:
            db.close()

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def run(self, stop_event=None) -> SweepResult:
        """Select candidates and delete them on a bounded worker pool.

        Units that have not started when `stop_event` is set are skipped;
        in-flight units finish (or fail) as a whole.
        """
        result = SweepResult()
        candidates = self.select_for_deletion()
        result.candidates = len(candidates)
        if not candidates:
            logger.info("[SWEEPER] No deletion candidates")
            return result

        logger.info("[SWEEPER] %d deletion candidates", len(candidates))
        semaphore = asyncio.Semaphore(max(1, int(self.settings.SWEEPER_MAX_WORKERS)))

        async def _worker(user_id: UUID):
            async with semaphore:
                if stop_event is not None and stop_event.is_set():
                    return user_id, None
                return user_id, await self.delete_one(user_id)

        outcomes = await asyncio.gather(*(_worker(user_id) for user_id in candidates))

        for user_id, outcome in outcomes:
            if outcome is None:
                result.cancelled = True
            elif outcome == DeletionOutcomeEnum.deleted:
                result.deleted += 1
            elif outcome == DeletionOutcomeEnum.rejected:
                result.skipped_protected += 1
            else:
                result.failed += 1
                result.errors[str(user_id)] = outcome.value

        logger.info(
            "[SWEEPER] Sweep complete: candidates=%d deleted=%d failed=%d protected=%d cancelled=%s",
            result.candidates, result.deleted, result.failed, result.skipped_protected, result.cancelled,
        )
        return result

    async def delete_one(self, user_id: UUID) -> DeletionOutcomeEnum:
        """Run one deletion unit and record its outcome."""
        timeout = self.settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        stage = "precheck"
        try:
            clerk_id = self._precheck(user_id)

            stage = "workspace"
            await asyncio.wait_for(self.workspace_client.delete_account(user_id), timeout=timeout)

            stage = "identity"
            if clerk_id:
                deleted = await asyncio.wait_for(self.identity_deleter(clerk_id), timeout=timeout)
                if not deleted:
                    raise ExternalServiceError(
                        f"Identity deletion failed for {clerk_id}", user_id=user_id, service="identity"
                    )

            stage = "local"
            self._finalize(user_id)

        except _UnitAborted as e:
            logger.warning("[SWEEPER] user=%s no longer eligible at %s: %s", user_id, stage, e)
            self._record_attempt(user_id, DeletionOutcomeEnum.rejected, stage, str(e))
            return DeletionOutcomeEnum.rejected
        except ProtectedAccountError as e:
            self._record_attempt(user_id, DeletionOutcomeEnum.rejected, stage, e.message)
            return DeletionOutcomeEnum.rejected
        except (asyncio.TimeoutError, ExternalServiceTimeout) as e:
            logger.warning("[SWEEPER] user=%s timed out at %s; will retry next sweep", user_id, stage)
            self._record_attempt(user_id, DeletionOutcomeEnum.timeout, stage, str(e) or "timeout")
            return DeletionOutcomeEnum.timeout
        except (ExternalServiceError, TransientStoreError) as e:
            logger.error("[SWEEPER] user=%s failed at %s: %s", user_id, stage, e.message)
            capture_exception(e, extra={"operation": "deletion_sweep", "user_id": str(user_id), "stage": stage})
            self._record_attempt(user_id, DeletionOutcomeEnum.failed, stage, e.message)
            return DeletionOutcomeEnum.failed
        except SQLAlchemyError as e:
            logger.error("[SWEEPER] user=%s store failure at %s: %s", user_id, stage, e)
            capture_exception(e, extra={"operation": "deletion_sweep", "user_id": str(user_id), "stage": stage})
            self._record_attempt(user_id, DeletionOutcomeEnum.failed, stage, str(e))
            return DeletionOutcomeEnum.failed
        except Exception as e:
            # One broken unit must not abort the rest of the sweep
            logger.exception("[SWEEPER] user=%s unexpected error at %s", user_id, stage)
            capture_exception(e, extra={"operation": "deletion_sweep", "user_id": str(user_id), "stage": stage})
            self._record_attempt(user_id, DeletionOutcomeEnum.failed, stage, f"{type(e).__name__}: {e}")
            return DeletionOutcomeEnum.failed

        logger.info("[SWEEPER] user=%s deleted", user_id)
        self._record_attempt(user_id, DeletionOutcomeEnum.deleted, stage, None)
        return DeletionOutcomeEnum.deleted

    def _precheck(self, user_id: UUID) -> Optional[str]:
        """Fresh eligibility + protection check; returns the Clerk id."""
        db = self.session_factory()
        try:
            user = account_store.load_user(db, user_id)
            if user is None:
                raise _UnitAborted("user no longer exists")
            trial = account_store.load_trial(db, user_id)
            if trial is None or trial.trial_status != TrialStatusEnum.scheduled_for_deletion:
                raise _UnitAborted("trial no longer scheduled for deletion")
            billing = account_store.load_billing_linkage(db, user_id)
            protection_guard.ensure_transition_allowed(user_id, billing, "delete_account")
            return user.clerk_id
        finally:
            db.close()

    def _finalize(self, user_id: UUID) -> None:
        """Local removal, all or nothing, after external removal succeeded."""
        now = self.clock.now()
        db = self.session_factory()
        try:
            trial = account_store.load_trial(db, user_id, for_update=True)
            if trial is None or trial.trial_status != TrialStatusEnum.scheduled_for_deletion:
                raise _UnitAborted("trial changed while external deletion ran")
            billing = account_store.load_billing_linkage(db, user_id)
            protection_guard.ensure_transition_allowed(user_id, billing, "delete_account")

            user = db.get(User, user_id)
            user.deleted_at = now
            user.clerk_id = None
            # Frees the address for a future signup; billing rows keep the original
            user.email = f"deleted-{user_id}@deleted.invalid"

            customers = db.query(BillingCustomer).filter(
                BillingCustomer.user_id == user_id,
                BillingCustomer.deleted_at.is_(None),
            ).all()
            for customer in customers:
                customer.deleted_at = now
                db.query(BillingSubscription).filter(
                    BillingSubscription.customer_id == customer.customer_id,
                    BillingSubscription.deleted_at.is_(None),
                ).update({BillingSubscription.deleted_at: now}, synchronize_session=False)

            workspace = db.query(WorkspaceAccount).filter(WorkspaceAccount.user_id == user_id).first()
            if workspace is not None:
                workspace.status = WorkspaceAccountStatusEnum.deleted
                workspace.deleted_at = now

            db.query(AccountState).filter(AccountState.user_id == user_id).delete(synchronize_session=False)
            db.delete(trial)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _record_attempt(self, user_id: UUID, outcome: DeletionOutcomeEnum, stage: str, error: Optional[str]) -> None:
        db = self.session_factory()
        try:
            db.add(
                DeletionAttempt(
                    user_id=user_id,
                    attempted_at=self.clock.now(),
                    outcome=outcome,
                    stage=stage,
                    error=error,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[SWEEPER] Could not record deletion attempt for %s: %s", user_id, e)
        finally:
            db.close()
