"""Integration tests for the Reconciler.

WHAT:
    Drives the trial state machine and derived-state writes against a real
    (SQLite) account record store with a fixed clock.

WHY:
    These are the behaviours that must never regress: a paying customer keeps
    access, the administrative account is untouchable, grace periods are
    honoured, and repeated runs converge instead of drifting.

REFERENCES:
    - accountsync/services/reconciler.py (module under test)
    - accountsync/services/protection_guard.py
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from accountsync.exceptions import ConcurrentUpdateError, TransientStoreError, UserNotFoundError
from accountsync.models import (
    AccessLevelEnum,
    AccountState,
    AccountStatusEnum,
    BillingStatusEnum,
    TrialRecord,
    TrialStatusEnum,
    User,
)
from accountsync.clock import as_utc
from accountsync.services import account_store
from accountsync.services.protection_guard import SUPER_ADMIN_USER_ID
from accountsync.services.reconciler import Reconciler


class TestSignup:
    def test_on_account_created_starts_trial(self, reconciler, clock, get_trial):
        user_id = uuid4()

        state = reconciler.on_account_created(user_id, email="new@example.com", full_name="New User")

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.active
        assert as_utc(trial.trial_end_date) == clock.now() + timedelta(days=7)
        assert state.account_status == AccountStatusEnum.trial_active
        assert state.access_level == AccessLevelEnum.trial
        assert state.has_access is True
        assert state.trial_days_remaining == 7

    def test_on_account_created_is_idempotent(self, reconciler, clock, get_trial, session_factory):
        """WHAT: A redelivered signup must not restart the trial.
        WHY: Identity webhooks are delivered at least once.
        """
        user_id = uuid4()
        reconciler.on_account_created(user_id, email="again@example.com")
        first_end = get_trial(user_id).trial_end_date

        clock.advance(days=2)
        state = reconciler.on_account_created(user_id, email="again@example.com")

        assert get_trial(user_id).trial_end_date == first_end
        assert state.trial_days_remaining == 5

        db = session_factory()
        try:
            assert db.query(User).filter(User.email == "again@example.com").count() == 1
        finally:
            db.close()


class TestTrialStateMachine:
    def test_trial_past_end_expires_and_schedules_deletion(self, reconciler, make_user, clock, get_trial):
        user_id = make_user(trial_end=clock.now() - timedelta(hours=1))

        state = reconciler.reconcile(user_id)

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.expired
        assert as_utc(trial.deletion_scheduled_at) == clock.now() + timedelta(days=1)
        assert state.has_access is False
        assert state.access_level == AccessLevelEnum.none
        assert state.account_status == AccountStatusEnum.trial_expired

    def test_running_trial_is_untouched(self, reconciler, make_user, clock, get_trial):
        user_id = make_user(trial_end=clock.now() + timedelta(days=3, hours=2))

        state = reconciler.reconcile(user_id)

        assert get_trial(user_id).trial_status == TrialStatusEnum.active
        assert state.has_access is True
        assert state.trial_days_remaining == 3

    def test_grace_period_is_honoured(self, reconciler, make_user, clock, get_trial):
        user_id = make_user(trial_end=clock.now() - timedelta(minutes=5))
        reconciler.reconcile(user_id)
        scheduled_at = as_utc(get_trial(user_id).deletion_scheduled_at)

        clock.advance(hours=23)
        reconciler.reconcile(user_id)
        assert get_trial(user_id).trial_status == TrialStatusEnum.expired

        clock.advance(hours=1)
        reconciler.reconcile(user_id)
        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.scheduled_for_deletion
        assert as_utc(trial.deletion_scheduled_at) == scheduled_at

    def test_long_overdue_trial_still_gets_full_grace(self, reconciler, make_user, clock, get_trial, sweeper):
        """A trial that ended two days ago expires first; it is not scheduled in the same run."""
        user_id = make_user(trial_end=clock.now() - timedelta(days=2))

        state = reconciler.reconcile(user_id)

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.expired
        assert as_utc(trial.deletion_scheduled_at) == clock.now() + timedelta(days=1)
        assert state.has_access is False

        reconciler.reconcile(user_id)
        assert get_trial(user_id).trial_status == TrialStatusEnum.expired
        assert sweeper.select_for_deletion() == []

    def test_expired_without_deletion_timestamp_gets_one(self, reconciler, make_user, clock, get_trial):
        user_id = make_user(
            trial_status=TrialStatusEnum.expired,
            trial_end=clock.now() - timedelta(days=10),
            deletion_scheduled_at=None,
        )

        reconciler.reconcile(user_id)

        trial = get_trial(user_id)
        # Grace restarts from now rather than jumping straight to deletion
        assert trial.trial_status == TrialStatusEnum.expired
        assert as_utc(trial.deletion_scheduled_at) == clock.now() + timedelta(days=1)

    def test_reconcile_is_idempotent(self, reconciler, make_user, clock):
        user_id = make_user(trial_end=clock.now() - timedelta(hours=1))

        first = reconciler.reconcile(user_id)
        second = reconciler.reconcile(user_id)

        assert first == second

    def test_sync_version_increments(self, reconciler, make_user, session_factory):
        user_id = make_user()

        reconciler.reconcile(user_id)
        reconciler.reconcile(user_id)

        db = session_factory()
        try:
            assert db.get(AccountState, user_id).sync_version == 2
        finally:
            db.close()

    def test_user_without_trial_is_classified_without_one(self, reconciler, make_user, get_trial):
        user_id = make_user(trial_status=None)

        state = reconciler.reconcile(user_id)

        assert get_trial(user_id) is None
        assert state.has_access is False
        assert state.account_status == AccountStatusEnum.trial_expired

    def test_unknown_user_raises(self, reconciler):
        with pytest.raises(UserNotFoundError):
            reconciler.reconcile(uuid4())


class TestProtection:
    def test_paying_customer_never_loses_access(self, reconciler, make_user, add_subscription, clock, get_trial):
        user_id = make_user(trial_end=clock.now() - timedelta(days=2))
        add_subscription(user_id, BillingStatusEnum.active)

        state = reconciler.reconcile(user_id)
        clock.advance(days=60)
        later = reconciler.reconcile(user_id)

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.converted_to_paid
        assert trial.deletion_scheduled_at is None
        for s in (state, later):
            assert s.has_access is True
            assert s.access_level == AccessLevelEnum.pro
            assert s.account_status == AccountStatusEnum.subscription_active

    def test_late_payment_rescues_scheduled_account(
        self, reconciler, make_user, add_subscription, clock, get_trial, sweeper
    ):
        user_id = make_user(
            trial_status=TrialStatusEnum.scheduled_for_deletion,
            trial_end=clock.now() - timedelta(days=5),
            deletion_scheduled_at=clock.now() - timedelta(days=4),
        )
        assert sweeper.select_for_deletion() == [user_id]

        add_subscription(user_id, BillingStatusEnum.trialing)
        state = reconciler.on_billing_status_changed(user_id)

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.converted_to_paid
        assert trial.deletion_scheduled_at is None
        assert state.account_status == AccountStatusEnum.subscription_trialing
        assert sweeper.select_for_deletion() == []

    def test_super_admin_gets_enterprise_access_and_a_trial_row(self, reconciler, make_user, get_trial):
        make_user(user_id=SUPER_ADMIN_USER_ID, trial_status=None)

        state = reconciler.reconcile(SUPER_ADMIN_USER_ID)

        assert state.access_level == AccessLevelEnum.enterprise
        assert state.has_access is True
        assert state.account_status == AccountStatusEnum.protected
        assert get_trial(SUPER_ADMIN_USER_ID).trial_status == TrialStatusEnum.converted_to_paid

    def test_super_admin_with_expired_trial_is_repaired(self, reconciler, make_user, clock, get_trial):
        make_user(
            user_id=SUPER_ADMIN_USER_ID,
            trial_status=TrialStatusEnum.scheduled_for_deletion,
            trial_end=clock.now() - timedelta(days=30),
            deletion_scheduled_at=clock.now() - timedelta(days=29),
        )

        reconciler.reconcile(SUPER_ADMIN_USER_ID)

        trial = get_trial(SUPER_ADMIN_USER_ID)
        assert trial.trial_status == TrialStatusEnum.converted_to_paid
        assert trial.deletion_scheduled_at is None

    def test_canceled_after_conversion_loses_access_but_stays_converted(
        self, reconciler, make_user, add_subscription, set_subscription_status, get_trial
    ):
        user_id = make_user()
        subscription_id = add_subscription(user_id, BillingStatusEnum.active)
        reconciler.reconcile(user_id)

        set_subscription_status(subscription_id, BillingStatusEnum.canceled)
        state = reconciler.on_billing_status_changed(user_id)

        assert state.account_status == AccountStatusEnum.subscription_canceled
        assert state.has_access is False
        assert get_trial(user_id).trial_status == TrialStatusEnum.converted_to_paid

    def test_past_due_suspends_without_touching_trial(self, reconciler, make_user, add_subscription, get_trial):
        user_id = make_user()
        add_subscription(user_id, BillingStatusEnum.past_due)

        state = reconciler.reconcile(user_id)

        assert state.access_level == AccessLevelEnum.suspended
        assert state.has_access is False
        assert get_trial(user_id).trial_status == TrialStatusEnum.active

    def test_force_protect_clears_pending_deletion(self, reconciler, make_user, clock, get_trial, sweeper):
        user_id = make_user(
            trial_status=TrialStatusEnum.scheduled_for_deletion,
            trial_end=clock.now() - timedelta(days=5),
            deletion_scheduled_at=clock.now() - timedelta(days=4),
        )

        reconciler.force_protect(user_id)

        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.converted_to_paid
        assert trial.deletion_scheduled_at is None
        assert sweeper.select_for_deletion() == []

        # Converted is terminal: later runs never expire it again
        clock.advance(days=30)
        reconciler.reconcile(user_id)
        assert get_trial(user_id).trial_status == TrialStatusEnum.converted_to_paid

    def test_force_protect_unknown_user(self, reconciler):
        with pytest.raises(UserNotFoundError):
            reconciler.force_protect(uuid4())

    def test_verify_protection_report(self, reconciler, make_user, add_subscription):
        user_id = make_user(email="paying@example.com")
        add_subscription(user_id, BillingStatusEnum.active)

        report = reconciler.verify_protection(user_id)

        assert report["user_id"] == str(user_id)
        assert report["email"] == "paying@example.com"
        assert report["is_protected"] is True
        assert report["protection_reason"] == "Active Subscription"
        assert report["subscription_status"] == "active"
        assert report["trial_status"] == "active"


class TestConcurrency:
    def test_stale_version_is_rejected(self, reconciler, make_user, session_factory):
        user_id = make_user()
        state = reconciler.reconcile(user_id)

        db = session_factory()
        try:
            with pytest.raises(ConcurrentUpdateError):
                Reconciler._write_state(db, state, expected_version=0)
        finally:
            db.rollback()
            db.close()

    def test_lost_race_is_retried_from_a_fresh_read(self, reconciler, make_user, clock, get_trial, monkeypatch):
        user_id = make_user(trial_end=clock.now() - timedelta(hours=1))
        original = Reconciler._write_state
        calls = []

        def flaky_write(db, state, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                raise ConcurrentUpdateError("simulated race", user_id=state.user_id)
            return original(db, state, expected_version)

        monkeypatch.setattr(Reconciler, "_write_state", staticmethod(flaky_write))

        state = reconciler.reconcile(user_id)

        assert len(calls) == 2
        assert state.trial_status == TrialStatusEnum.expired
        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.expired
        assert as_utc(trial.deletion_scheduled_at) == clock.now() + timedelta(days=1)

    def test_retry_budget_is_bounded(self, reconciler, make_user, clock, get_trial, monkeypatch):
        user_id = make_user(trial_end=clock.now() - timedelta(hours=1))
        calls = []

        def always_conflict(db, state, expected_version):
            calls.append(expected_version)
            raise ConcurrentUpdateError("simulated race", user_id=state.user_id)

        monkeypatch.setattr(Reconciler, "_write_state", staticmethod(always_conflict))

        with pytest.raises(ConcurrentUpdateError):
            reconciler.reconcile(user_id)

        assert len(calls) == 3
        # Every attempt rolled back; the trial transition was never committed
        assert get_trial(user_id).trial_status == TrialStatusEnum.active

    def test_trial_changed_underneath_is_a_conflict(self, reconciler, make_user, clock, session_factory):
        user_id = make_user(trial_end=clock.now() - timedelta(hours=1))
        db = session_factory()
        try:
            row = account_store.load_trial(db, user_id)
            # Another writer moved the trial on after we read it
            other = session_factory()
            try:
                other_row = account_store.load_trial(other, user_id)
                other_row.trial_status = TrialStatusEnum.converted_to_paid
                other.commit()
            finally:
                other.close()

            with pytest.raises(ConcurrentUpdateError):
                reconciler._conditional_trial_update(
                    db, row, TrialStatusEnum.active, trial_status=TrialStatusEnum.expired
                )
        finally:
            db.rollback()
            db.close()


class TestBatch:
    def test_reconcile_all_covers_every_user(self, reconciler, make_user, clock):
        ids = [make_user(), make_user(trial_end=clock.now() - timedelta(hours=2)), make_user(trial_status=None)]

        result = reconciler.reconcile_all()

        assert result.total == 3
        assert result.synced == 3
        assert result.failed == 0
        assert {s.user_id for s in result.results} == set(ids)

    def test_protection_phase_repairs_paying_customers(self, reconciler, make_user, add_subscription, clock):
        user_id = make_user(
            trial_status=TrialStatusEnum.scheduled_for_deletion,
            trial_end=clock.now() - timedelta(days=5),
            deletion_scheduled_at=clock.now() - timedelta(days=4),
        )
        add_subscription(user_id, BillingStatusEnum.active)

        result = reconciler.reconcile_all()

        assert result.protected_repaired == 1
        assert result.synced == 1

    def test_one_failing_user_does_not_stop_the_batch(self, reconciler, make_user, monkeypatch):
        healthy = make_user()
        broken = make_user()
        original = account_store.load_workspace_linkage

        def failing_load(db, user_id):
            if user_id == broken:
                raise OperationalError("SELECT workspace_accounts", {}, Exception("connection reset"))
            return original(db, user_id)

        monkeypatch.setattr(account_store, "load_workspace_linkage", failing_load)

        result = reconciler.reconcile_all()

        assert result.total == 2
        assert result.synced == 1
        assert result.failed == 1
        assert str(broken) in result.errors
        assert [s.user_id for s in result.results] == [healthy]

    def test_store_failure_surfaces_as_transient(self, reconciler, make_user, monkeypatch):
        user_id = make_user()

        def failing_load(db, user_id):
            raise OperationalError("SELECT workspace_accounts", {}, Exception("connection reset"))

        monkeypatch.setattr(account_store, "load_workspace_linkage", failing_load)

        with pytest.raises(TransientStoreError):
            reconciler.reconcile(user_id)

    def test_cancelled_batch_stops_between_users(self, reconciler, make_user):
        make_user()
        make_user()
        stop_event = threading.Event()
        stop_event.set()

        result = reconciler.reconcile_all(stop_event=stop_event)

        assert result.cancelled is True
        assert result.synced == 0


class TestAccessStatus:
    def test_first_request_computes_state(self, reconciler, make_user, session_factory):
        user_id = make_user()

        state = reconciler.get_access_status(user_id)

        assert state.has_access is True
        db = session_factory()
        try:
            assert db.get(AccountState, user_id) is not None
        finally:
            db.close()

    def test_cached_state_is_returned(self, reconciler, make_user, clock):
        user_id = make_user()
        reconciler.reconcile(user_id)
        synced_at = clock.now()

        clock.advance(minutes=10)
        state = reconciler.get_access_status(user_id)

        assert state.last_synced_at == synced_at
        assert state.trial_status == TrialStatusEnum.active

    def test_trial_fields_are_read_live_next_to_stored_classification(
        self, reconciler, make_user, clock, session_factory
    ):
        user_id = make_user()
        reconciler.reconcile(user_id)
        synced_at = clock.now()
        db = session_factory()
        try:
            db.query(TrialRecord).filter(TrialRecord.user_id == user_id).update(
                {TrialRecord.trial_status: TrialStatusEnum.converted_to_paid}
            )
            db.commit()
        finally:
            db.close()

        state = reconciler.get_access_status(user_id)

        assert state.trial_status == TrialStatusEnum.converted_to_paid
        assert state.account_status == AccountStatusEnum.trial_active
        assert state.last_synced_at == synced_at


class TestLifecycleScenario:
    """Signup to deletion candidate, driven only by the clock."""

    def test_signup_expiry_and_scheduling(self, reconciler, sweeper, clock, get_trial):
        t0 = clock.now()
        user_id = uuid4()

        state = reconciler.on_account_created(user_id, email="lifecycle@example.com", full_name="Life Cycle")
        assert get_trial(user_id).trial_status == TrialStatusEnum.active
        assert state.has_access is True
        assert state.access_level == AccessLevelEnum.trial

        clock.set(t0 + timedelta(days=7, seconds=1))
        state = reconciler.reconcile(user_id)
        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.expired
        assert as_utc(trial.deletion_scheduled_at) == t0 + timedelta(days=8, seconds=1)
        assert state.has_access is False
        assert sweeper.select_for_deletion() == []

        clock.set(t0 + timedelta(days=8, seconds=2))
        reconciler.reconcile(user_id)
        trial = get_trial(user_id)
        assert trial.trial_status == TrialStatusEnum.scheduled_for_deletion
        assert as_utc(trial.deletion_scheduled_at) == t0 + timedelta(days=8, seconds=1)
        assert sweeper.select_for_deletion() == [user_id]
