"""Metrics and health reporter.

WHAT: Read-only counters over the account record store, plus a health check
WHY: Operators need to see stuck deletions and orphaned billing data; those
     are the failure classes that never resolve on their own

REFERENCES:
    - accountsync/routers/admin.py (GET /admin/metrics)
    - accountsync/main.py (GET /health)
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..clock import Clock, SystemClock
from ..exceptions import TransientStoreError
from ..models import (
    AccountState,
    BillingCustomer,
    BillingStatusEnum,
    BillingSubscription,
    DeletionAttempt,
    DeletionOutcomeEnum,
    TrialRecord,
    TrialStatusEnum,
    User,
    WorkspaceAccount,
    WorkspaceAccountStatusEnum,
)

logger = logging.getLogger(__name__)

# Consecutive failed attempts after which a deletion counts as stuck
STUCK_DELETION_ATTEMPTS = 3

_FAILED_OUTCOMES = (DeletionOutcomeEnum.failed, DeletionOutcomeEnum.timeout)


class MetricsReporter:
    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None, settings=None):
        if settings is None:
            from ..deps import get_settings
            settings = get_settings()
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.settings = settings

    def get_system_metrics(self) -> Dict[str, Any]:
        """System-wide counters.

        Required: total_users, active_trials, active_subscriptions,
        linked_workspace_accounts. The rest exist for operator alerting.
        """
        now = self.clock.now()
        db = self.session_factory()
        try:
            metrics = {
                "total_users": self._count(db, select(func.count(User.id)).where(User.deleted_at.is_(None))),
                "active_trials": self._count(
                    db,
                    select(func.count(TrialRecord.id)).where(
                        TrialRecord.trial_status == TrialStatusEnum.active,
                        TrialRecord.trial_end_date > now,
                    ),
                ),
                "active_subscriptions": self._count(
                    db,
                    select(func.count(BillingSubscription.id)).where(
                        BillingSubscription.status == BillingStatusEnum.active,
                        BillingSubscription.deleted_at.is_(None),
                    ),
                ),
                "linked_workspace_accounts": self._count(
                    db,
                    select(func.count(WorkspaceAccount.id)).where(
                        WorkspaceAccount.status != WorkspaceAccountStatusEnum.deleted,
                    ),
                ),
                "expired_trials": self._count(
                    db,
                    select(func.count(TrialRecord.id)).where(TrialRecord.trial_status == TrialStatusEnum.expired),
                ),
                "scheduled_for_deletion": self._count(
                    db,
                    select(func.count(TrialRecord.id)).where(
                        TrialRecord.trial_status == TrialStatusEnum.scheduled_for_deletion
                    ),
                ),
                "failed_deletions_24h": self._count(
                    db,
                    select(func.count(DeletionAttempt.id)).where(
                        DeletionAttempt.outcome.in_(_FAILED_OUTCOMES),
                        DeletionAttempt.attempted_at >= now - timedelta(hours=24),
                    ),
                ),
                "stuck_deletions": self._stuck_deletions(db),
                "stale_account_states": self._count(
                    db,
                    select(func.count(AccountState.user_id)).where(
                        or_(
                            AccountState.last_synced_at.is_(None),
                            AccountState.last_synced_at < now - timedelta(minutes=self.settings.STALE_STATE_MINUTES),
                        )
                    ),
                ),
                "orphaned_billing_customers": self._orphaned_billing_customers(db),
                "generated_at": now.isoformat(),
            }
        except SQLAlchemyError as e:
            logger.error("[METRICS] Failed to compute system metrics: %s", e)
            raise TransientStoreError(f"Metrics query failed: {e}") from e
        finally:
            db.close()

        logger.debug("[METRICS] %s", metrics)
        return metrics

    def check_health(self) -> Dict[str, Any]:
        """Liveness plus the two conditions that need an operator."""
        checks: Dict[str, Any] = {}
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
            checks["database"] = "ok"
            stuck = self._stuck_deletions(db)
            orphaned = self._orphaned_billing_customers(db)
            checks["stuck_deletions"] = stuck
            checks["orphaned_billing_customers"] = orphaned
        except SQLAlchemyError as e:
            logger.error("[METRICS] Health check database failure: %s", e)
            checks["database"] = "unavailable"
        finally:
            db.close()

        healthy = (
            checks.get("database") == "ok"
            and not checks.get("stuck_deletions")
            and not checks.get("orphaned_billing_customers")
        )
        return {"status": "ok" if healthy else "degraded", "checks": checks}

    @staticmethod
    def _count(db: Session, stmt) -> int:
        return int(db.execute(stmt).scalar() or 0)

    @staticmethod
    def _orphaned_billing_customers(db: Session) -> int:
        """Live billing customers whose user is missing or tombstoned."""
        stmt = (
            select(func.count(BillingCustomer.id))
            .select_from(BillingCustomer)
            .outerjoin(User, User.id == BillingCustomer.user_id)
            .where(
                BillingCustomer.deleted_at.is_(None),
                or_(User.id.is_(None), User.deleted_at.isnot(None)),
            )
        )
        return int(db.execute(stmt).scalar() or 0)

    @staticmethod
    def _stuck_deletions(db: Session) -> int:
        """Scheduled users whose last N deletion attempts all failed."""
        user_ids = db.execute(
            select(TrialRecord.user_id).where(TrialRecord.trial_status == TrialStatusEnum.scheduled_for_deletion)
        ).scalars().all()

        stuck = 0
        for user_id in user_ids:
            outcomes = db.execute(
                select(DeletionAttempt.outcome)
                .where(DeletionAttempt.user_id == user_id)
                .order_by(DeletionAttempt.attempted_at.desc())
                .limit(STUCK_DELETION_ATTEMPTS)
            ).scalars().all()
            if len(outcomes) == STUCK_DELETION_ATTEMPTS and all(o in _FAILED_OUTCOMES for o in outcomes):
                stuck += 1
        return stuck
