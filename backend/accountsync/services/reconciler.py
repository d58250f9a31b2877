"""Reconciler.

WHAT:
    Brings one user's (or every user's) derived account state in line with
    the trial, billing and workspace records, advancing the trial state
    machine on the way.

WHY:
    Trial expiry, billing changes and workspace provisioning arrive from
    different systems at different times. Instead of database triggers, every
    change funnels through `reconcile(user_id)`, which is idempotent and safe
    to run from webhooks, the ARQ cron job and admin endpoints concurrently.

TRIAL STATE MACHINE (per user, one step per call):
    protected                       → converted_to_paid, deletion cleared
    active,  trial_end <= now       → expired (deletion = now + grace)
    expired, no deletion timestamp  → deletion = now + grace
    expired, now >= deletion        → scheduled_for_deletion
    converted_to_paid               → terminal

CONCURRENCY:
    - Trial writes are conditional UPDATEs on the status that was read;
      the derived row is written with a compare-and-swap on `sync_version`
    - A lost race raises ConcurrentUpdateError; the whole unit of work is
      rolled back and recomputed from fresh reads (RECONCILE_MAX_RETRIES)
    - On PostgreSQL the trial row is also locked FOR UPDATE

REFERENCES:
    - accountsync/services/access_classifier.py
    - accountsync/services/protection_guard.py
    - accountsync/workers/arq_worker.py (scheduled_reconcile_all)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..clock import Clock, SystemClock, as_utc
from ..domain import (
    AccessDecision,
    DerivedAccountState,
    TrialSnapshot,
)
from ..exceptions import (
    AccountLifecycleError,
    ConcurrentUpdateError,
    ProtectedAccountError,
    TransientStoreError,
    UserNotFoundError,
)
from ..models import (
    AccessLevelEnum,
    AccountState,
    AccountStatusEnum,
    TrialRecord,
    TrialStatusEnum,
    User,
)
from ..telemetry import capture_exception
from . import account_store, protection_guard
from .access_classifier import classify, trial_days_remaining

logger = logging.getLogger(__name__)


@dataclass
class BatchReconcileResult:
    """Outcome of one `reconcile_all` run."""

    total: int = 0
    synced: int = 0
    failed: int = 0
    protected_repaired: int = 0
    cancelled: bool = False
    results: List[DerivedAccountState] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "synced": self.synced,
            "failed": self.failed,
            "protected_repaired": self.protected_repaired,
            "cancelled": self.cancelled,
            "errors": dict(self.errors),
        }


class Reconciler:
    """Computes and persists derived account state.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session
            (normally `database.SessionLocal`). Every reconciliation runs in
            its own session and transaction.
        clock: Source of "now"; defaults to wall-clock UTC.
        settings: `deps.Settings` instance (grace periods, retry budget).
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None, settings=None):
        if settings is None:
            from ..deps import get_settings
            settings = get_settings()
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.settings = settings

    # =========================================================================
    # SINGLE USER
    # =========================================================================

    def reconcile(self, user_id) -> DerivedAccountState:
        """Recompute and persist one user's derived state.

        Raises:
            UserNotFoundError: No live identity row for `user_id`
            TransientStoreError: The store failed; nothing was committed
            ConcurrentUpdateError: Still losing races after the retry budget
        """
        user_id = _coerce_uuid(user_id)
        attempts = max(1, int(self.settings.RECONCILE_MAX_RETRIES))

        for attempt in range(1, attempts + 1):
            db = self.session_factory()
            try:
                state = self._reconcile_in_session(db, user_id)
                db.commit()
                logger.debug(
                    "[RECONCILER] user=%s status=%s access=%s level=%s",
                    user_id, state.account_status.value, state.has_access, state.access_level.value,
                )
                return state
            except ConcurrentUpdateError:
                db.rollback()
                if attempt == attempts:
                    logger.warning(
                        "[RECONCILER] user=%s gave up after %d concurrent update conflicts",
                        user_id, attempts,
                    )
                    raise
                logger.info(
                    "[RECONCILER] user=%s concurrent update detected, retrying (%d/%d)",
                    user_id, attempt, attempts,
                )
            except AccountLifecycleError:
                db.rollback()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("[RECONCILER] Store failure reconciling user=%s: %s", user_id, e)
                raise TransientStoreError(f"Store failure reconciling {user_id}: {e}", user_id=user_id) from e
            finally:
                db.close()

        # Unreachable: the loop either returns or raises
        raise ConcurrentUpdateError(f"Reconcile of {user_id} did not complete", user_id=user_id)

    def _reconcile_in_session(self, db: Session, user_id: UUID) -> DerivedAccountState:
        now = self.clock.now()

        if account_store.load_user(db, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found", user_id=user_id)

        trial_row = account_store.load_trial(db, user_id, for_update=True)
        billing = account_store.load_billing_linkage(db, user_id)
        workspace = account_store.load_workspace_linkage(db, user_id)
        state_row = db.get(AccountState, user_id)
        expected_version = state_row.sync_version if state_row is not None else None

        if protection_guard.is_protected(user_id, billing):
            trial = self._apply_protection(db, user_id, trial_row, now)
        elif trial_row is not None:
            try:
                trial = self._advance_trial(db, user_id, trial_row, now)
            except ProtectedAccountError:
                # Billing turned paying between the first read and the write
                billing = account_store.load_billing_linkage(db, user_id)
                trial = self._apply_protection(db, user_id, trial_row, now)
        else:
            logger.warning("[RECONCILER] user=%s has no trial record; classifying without a trial", user_id)
            trial = None

        if protection_guard.is_super_admin(user_id):
            decision = AccessDecision(AccessLevelEnum.enterprise, True, AccountStatusEnum.protected)
        else:
            decision = classify(trial, billing, workspace, now=now)

        state = DerivedAccountState(
            user_id=user_id,
            account_status=decision.account_status,
            access_level=decision.access_level,
            has_access=decision.has_access,
            trial_days_remaining=trial_days_remaining(trial, now),
            last_synced_at=now,
            trial_status=trial.trial_status if trial else None,
            deletion_scheduled_at=as_utc(trial.deletion_scheduled_at) if trial else None,
            billing_status=billing.status.value if billing else None,
            workspace_status=workspace.status.value if workspace else None,
        )
        self._write_state(db, state, expected_version)
        return state

    # =========================================================================
    # TRIAL STATE MACHINE
    # =========================================================================

    def _apply_protection(self, db: Session, user_id: UUID, row: Optional[TrialRecord], now) -> TrialSnapshot:
        """Force a protected user's trial to converted_to_paid."""
        if row is None:
            # Protected accounts always carry a trial row so they can never be
            # picked up by an "expired trial" query
            row = TrialRecord(
                user_id=user_id,
                trial_start_date=now,
                trial_end_date=now,
                trial_status=TrialStatusEnum.converted_to_paid,
                deletion_scheduled_at=None,
            )
            db.add(row)
            try:
                db.flush()
            except IntegrityError as e:
                raise ConcurrentUpdateError(f"Trial row for {user_id} created concurrently", user_id=user_id) from e
            logger.info("[RECONCILER] user=%s protected without trial record; created converted trial", user_id)
            return account_store.trial_snapshot(row)

        if row.trial_status == TrialStatusEnum.converted_to_paid and row.deletion_scheduled_at is None:
            return account_store.trial_snapshot(row)

        previous = row.trial_status
        self._conditional_trial_update(
            db, row, previous,
            trial_status=TrialStatusEnum.converted_to_paid,
            deletion_scheduled_at=None,
            updated_at=now,
        )
        logger.info(
            "[RECONCILER] user=%s protected: trial %s → converted_to_paid, deletion cleared",
            user_id, previous.value,
        )
        return TrialSnapshot(
            start_time=row.trial_start_date,
            end_time=row.trial_end_date,
            trial_status=TrialStatusEnum.converted_to_paid,
            deletion_scheduled_at=None,
        )

    def _advance_trial(self, db: Session, user_id: UUID, row: TrialRecord, now) -> TrialSnapshot:
        """Apply at most one state machine step for an unprotected user.

        Every destructive step re-reads billing and passes it through the
        guard immediately before writing.
        """
        status = row.trial_status
        end_time = as_utc(row.trial_end_date)
        deletion_at = as_utc(row.deletion_scheduled_at)
        grace = timedelta(days=self.settings.EXPIRY_GRACE_PERIOD_DAYS)

        if status == TrialStatusEnum.active and end_time <= now:
            self._guard(db, user_id, "expire_trial")
            new_status, new_deletion = TrialStatusEnum.expired, now + grace
            logger.info("[RECONCILER] user=%s trial expired; deletion scheduled at %s", user_id, new_deletion.isoformat())

        elif status == TrialStatusEnum.expired and deletion_at is None:
            self._guard(db, user_id, "schedule_deletion")
            new_status, new_deletion = TrialStatusEnum.expired, now + grace
            logger.warning(
                "[RECONCILER] user=%s expired without deletion timestamp; set to %s",
                user_id, new_deletion.isoformat(),
            )

        elif status == TrialStatusEnum.expired and now >= deletion_at:
            self._guard(db, user_id, "schedule_deletion")
            new_status, new_deletion = TrialStatusEnum.scheduled_for_deletion, deletion_at
            logger.info("[RECONCILER] user=%s grace period over; scheduled for deletion", user_id)

        else:
            return account_store.trial_snapshot(row)

        self._conditional_trial_update(
            db, row, status,
            trial_status=new_status,
            deletion_scheduled_at=new_deletion,
            updated_at=now,
            require_no_deletion=(status == TrialStatusEnum.expired and deletion_at is None),
        )
        return TrialSnapshot(
            start_time=row.trial_start_date,
            end_time=row.trial_end_date,
            trial_status=new_status,
            deletion_scheduled_at=new_deletion,
        )

    def _guard(self, db: Session, user_id: UUID, action: str) -> None:
        fresh_billing = account_store.load_billing_linkage(db, user_id)
        protection_guard.ensure_transition_allowed(user_id, fresh_billing, action)

    @staticmethod
    def _conditional_trial_update(
        db: Session,
        row: TrialRecord,
        expected_status: TrialStatusEnum,
        require_no_deletion: bool = False,
        **values,
    ) -> None:
        stmt = update(TrialRecord).where(
            TrialRecord.id == row.id,
            TrialRecord.trial_status == expected_status,
        )
        if require_no_deletion:
            stmt = stmt.where(TrialRecord.deletion_scheduled_at.is_(None))
        result = db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"Trial for {row.user_id} changed concurrently (expected {expected_status.value})",
                user_id=row.user_id,
            )

    # =========================================================================
    # DERIVED ROW (compare-and-swap)
    # =========================================================================

    @staticmethod
    def _write_state(db: Session, state: DerivedAccountState, expected_version: Optional[int]) -> None:
        values = dict(
            account_status=state.account_status,
            access_level=state.access_level,
            has_access=state.has_access,
            trial_days_remaining=state.trial_days_remaining,
            billing_status=state.billing_status,
            workspace_status=state.workspace_status,
            last_synced_at=state.last_synced_at,
        )

        if expected_version is None:
            db.add(AccountState(user_id=state.user_id, sync_version=1, **values))
            try:
                db.flush()
            except IntegrityError as e:
                raise ConcurrentUpdateError(
                    f"Derived state for {state.user_id} created concurrently", user_id=state.user_id
                ) from e
            return

        result = db.execute(
            update(AccountState)
            .where(
                AccountState.user_id == state.user_id,
                AccountState.sync_version == expected_version,
            )
            .values(sync_version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"Derived state for {state.user_id} changed concurrently", user_id=state.user_id
            )

    # =========================================================================
    # BATCH
    # =========================================================================

    def protect_paying_customers(self) -> int:
        """Force every protected user out of expired/scheduled states.

        Runs before the per-user pass of `reconcile_all` so a paying customer
        whose billing webhook arrived late is repaired before anything else
        looks at their trial.

        Returns:
            Number of trial rows repaired.
        """
        now = self.clock.now()
        db = self.session_factory()
        try:
            result = db.execute(
                update(TrialRecord)
                .where(
                    or_(
                        TrialRecord.user_id.in_(account_store.paying_user_ids_query()),
                        TrialRecord.user_id == protection_guard.SUPER_ADMIN_USER_ID,
                    ),
                    or_(
                        TrialRecord.trial_status.in_(
                            [TrialStatusEnum.expired, TrialStatusEnum.scheduled_for_deletion]
                        ),
                        TrialRecord.deletion_scheduled_at.isnot(None),
                    ),
                )
                .values(
                    trial_status=TrialStatusEnum.converted_to_paid,
                    deletion_scheduled_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            repaired = result.rowcount or 0
            if repaired:
                logger.warning("[RECONCILER] Repaired %d protected accounts with pending expiry/deletion", repaired)
            return repaired
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientStoreError(f"protect_paying_customers failed: {e}") from e
        finally:
            db.close()

    def reconcile_all(self, stop_event=None) -> BatchReconcileResult:
        """Reconcile every known user.

        Phase 1 repairs protected users in bulk, phase 2 reconciles users one
        by one. A failing user is logged and reported; the batch continues.
        `stop_event` (threading.Event or asyncio.Event) is checked between
        users; a cancelled batch leaves every processed user consistent.
        """
        result = BatchReconcileResult()

        try:
            result.protected_repaired = self.protect_paying_customers()
        except TransientStoreError as e:
            logger.error("[RECONCILER] Protection phase failed: %s", e)
            capture_exception(e, extra={"operation": "protect_paying_customers"})
            result.errors["protect_paying_customers"] = e.message

        db = self.session_factory()
        try:
            user_ids = account_store.known_user_ids(db)
        except SQLAlchemyError as e:
            logger.error("[RECONCILER] Could not list users: %s", e)
            raise TransientStoreError(f"Could not list users: {e}") from e
        finally:
            db.close()

        result.total = len(user_ids)
        logger.info("[RECONCILER] Batch reconcile starting for %d users", result.total)

        for user_id in user_ids:
            if stop_event is not None and stop_event.is_set():
                result.cancelled = True
                logger.info(
                    "[RECONCILER] Batch cancelled after %d/%d users", result.synced + result.failed, result.total
                )
                break
            try:
                result.results.append(self.reconcile(user_id))
                result.synced += 1
            except AccountLifecycleError as e:
                result.failed += 1
                result.errors[str(user_id)] = e.message
                logger.error("[RECONCILER] user=%s failed: %s", user_id, e.message)
                capture_exception(e, extra={"operation": "reconcile_all", "user_id": str(user_id)})
            except Exception as e:
                result.failed += 1
                result.errors[str(user_id)] = str(e)
                logger.exception("[RECONCILER] user=%s unexpected error", user_id)
                capture_exception(e, extra={"operation": "reconcile_all", "user_id": str(user_id)})

        logger.info(
            "[RECONCILER] Batch complete: total=%d synced=%d failed=%d repaired=%d cancelled=%s",
            result.total, result.synced, result.failed, result.protected_repaired, result.cancelled,
        )
        return result

    # =========================================================================
    # EVENT HANDLERS
    # =========================================================================

    def on_account_created(
        self,
        user_id,
        email: str,
        full_name: Optional[str] = None,
        clerk_id: Optional[str] = None,
    ) -> DerivedAccountState:
        """Signup hook: ensure identity + trial rows exist, then reconcile.

        Idempotent; a redelivered signup event never restarts the trial.
        """
        user_id = _coerce_uuid(user_id)
        now = self.clock.now()
        db = self.session_factory()
        try:
            user = db.get(User, user_id)
            if user is None:
                db.add(User(id=user_id, email=email, full_name=full_name, clerk_id=clerk_id))
                db.flush()
                logger.info("[RECONCILER] Created user %s (%s)", user_id, email)

            if account_store.load_trial(db, user_id) is None:
                db.add(
                    TrialRecord(
                        user_id=user_id,
                        trial_start_date=now,
                        trial_end_date=now + timedelta(days=self.settings.TRIAL_LENGTH_DAYS),
                        trial_status=TrialStatusEnum.active,
                    )
                )
                logger.info(
                    "[RECONCILER] Started %d-day trial for user %s", self.settings.TRIAL_LENGTH_DAYS, user_id
                )
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same signup already created the rows
            db.rollback()
            logger.info("[RECONCILER] Signup rows for %s already exist", user_id)
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientStoreError(f"Could not create account {user_id}: {e}", user_id=user_id) from e
        finally:
            db.close()

        return self.reconcile(user_id)

    def on_billing_status_changed(self, user_id) -> DerivedAccountState:
        """Billing hook: the subscription row changed, recompute now."""
        return self.reconcile(user_id)

    # =========================================================================
    # QUERIES / ADMIN OPERATIONS
    # =========================================================================

    def get_access_status(self, user_id) -> DerivedAccountState:
        """Current derived state; computed on first request if missing.

        Field sources:
            - account_status, access_level, has_access, trial_days_remaining,
              billing_status, workspace_status: the stored classification,
              as of `last_synced_at`
            - trial_status, deletion_scheduled_at: the trial row itself, read
              in the same transaction, so they may be newer than the
              classification (e.g. a force_protect between two syncs)

        Callers that need every field from one evaluation use `reconcile`.
        """
        user_id = _coerce_uuid(user_id)
        db = self.session_factory()
        try:
            row = db.get(AccountState, user_id)
            if row is None:
                cached = None
            else:
                trial = account_store.trial_snapshot(account_store.load_trial(db, user_id))
                cached = DerivedAccountState(
                    user_id=user_id,
                    account_status=row.account_status,
                    access_level=row.access_level,
                    has_access=row.has_access,
                    trial_days_remaining=row.trial_days_remaining,
                    last_synced_at=as_utc(row.last_synced_at),
                    trial_status=trial.trial_status if trial else None,
                    deletion_scheduled_at=as_utc(trial.deletion_scheduled_at) if trial else None,
                    billing_status=row.billing_status,
                    workspace_status=row.workspace_status,
                )
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Could not read state for {user_id}: {e}", user_id=user_id) from e
        finally:
            db.close()

        if cached is not None:
            return cached
        return self.reconcile(user_id)

    def force_protect(self, user_id) -> DerivedAccountState:
        """Administrative override: mark the trial converted and clear deletion.

        The converted trial is terminal, so the account can never be expired
        or scheduled again by the state machine.
        """
        user_id = _coerce_uuid(user_id)
        now = self.clock.now()
        db = self.session_factory()
        try:
            if account_store.load_user(db, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found", user_id=user_id)
            row = account_store.load_trial(db, user_id, for_update=True)
            if row is None:
                db.add(
                    TrialRecord(
                        user_id=user_id,
                        trial_start_date=now,
                        trial_end_date=now,
                        trial_status=TrialStatusEnum.converted_to_paid,
                    )
                )
            else:
                row.trial_status = TrialStatusEnum.converted_to_paid
                row.deletion_scheduled_at = None
                row.updated_at = now
            db.commit()
            logger.warning("[RECONCILER] Force-protected user %s", user_id)
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientStoreError(f"Could not protect {user_id}: {e}", user_id=user_id) from e
        finally:
            db.close()

        return self.reconcile(user_id)

    def verify_protection(self, user_id) -> dict:
        """Read-only protection report for one user."""
        user_id = _coerce_uuid(user_id)
        db = self.session_factory()
        try:
            user = account_store.load_user(db, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found", user_id=user_id)
            billing = account_store.load_billing_linkage(db, user_id)
            trial = account_store.load_trial(db, user_id)
            status = protection_guard.protection_status(user_id, billing)
            return {
                "user_id": str(user_id),
                "email": user.email,
                "is_protected": status.is_protected,
                "protection_reason": status.reason,
                "trial_status": trial.trial_status.value if trial else None,
                "deletion_scheduled_at": as_utc(trial.deletion_scheduled_at) if trial else None,
                "subscription_status": billing.status.value if billing else None,
            }
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Could not verify {user_id}: {e}", user_id=user_id) from e
        finally:
            db.close()


def _coerce_uuid(value) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))
