"""Integration tests for the DeletionSweeper.

WHAT:
    Candidate selection and per-account deletion units, with fake workspace
    and identity collaborators.

WHY:
    Deletion is irreversible. Selection must exclude every protected account,
    and an external failure must leave local state exactly as it was so the
    next sweep can retry.

REFERENCES:
    - accountsync/services/deletion_sweeper.py (module under test)
"""

import asyncio
import threading
from datetime import timedelta

import httpx

from accountsync.models import (
    AccountState,
    BillingCustomer,
    BillingStatusEnum,
    BillingSubscription,
    DeletionAttempt,
    DeletionOutcomeEnum,
    TrialStatusEnum,
    User,
    WorkspaceAccount,
    WorkspaceAccountStatusEnum,
)
from accountsync.services.deletion_sweeper import DeletionSweeper
from accountsync.services.protection_guard import SUPER_ADMIN_USER_ID
from accountsync.services.workspace_client import WorkspaceAccountClient


def _scheduled(make_user, clock, **kwargs):
    return make_user(
        trial_status=TrialStatusEnum.scheduled_for_deletion,
        trial_end=clock.now() - timedelta(days=3),
        deletion_scheduled_at=clock.now() - timedelta(days=2),
        **kwargs,
    )


def _attempts(session_factory, user_id):
    db = session_factory()
    try:
        return [
            (a.outcome, a.stage)
            for a in db.query(DeletionAttempt).filter(DeletionAttempt.user_id == user_id).all()
        ]
    finally:
        db.close()


class TestSelection:
    def test_selects_scheduled_accounts_past_grace(self, sweeper, make_user, clock):
        user_id = _scheduled(make_user, clock)

        assert sweeper.select_for_deletion() == [user_id]

    def test_recently_ended_trial_is_not_selected(self, sweeper, make_user, clock):
        make_user(
            trial_status=TrialStatusEnum.scheduled_for_deletion,
            trial_end=clock.now() - timedelta(hours=12),
            deletion_scheduled_at=clock.now() - timedelta(hours=1),
        )

        assert sweeper.select_for_deletion() == []

    def test_other_trial_states_are_not_selected(self, sweeper, make_user, clock):
        make_user(trial_status=TrialStatusEnum.expired, trial_end=clock.now() - timedelta(days=10),
                  deletion_scheduled_at=clock.now() + timedelta(hours=1))
        make_user(trial_status=TrialStatusEnum.converted_to_paid, trial_end=clock.now() - timedelta(days=10))
        make_user(trial_end=clock.now() - timedelta(days=10))

        assert sweeper.select_for_deletion() == []

    def test_paying_customer_with_stale_trial_is_excluded(self, sweeper, make_user, add_subscription, clock):
        """WHAT: A payment that landed before the reconciler ran still protects.
        WHY: Selection re-derives protection from billing, never from the trial alone.
        """
        user_id = _scheduled(make_user, clock)
        add_subscription(user_id, BillingStatusEnum.active)

        assert sweeper.select_for_deletion() == []

    def test_super_admin_is_never_selected(self, sweeper, make_user, clock):
        _scheduled(make_user, clock, user_id=SUPER_ADMIN_USER_ID)

        assert sweeper.select_for_deletion() == []

    def test_selection_is_read_only(self, sweeper, make_user, clock, get_trial):
        user_id = _scheduled(make_user, clock)

        sweeper.select_for_deletion()

        assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion


class TestExecution:
    def test_successful_unit_removes_account_everywhere(
        self,
        sweeper,
        make_user,
        add_subscription,
        reconciler,
        clock,
        session_factory,
        workspace_client,
        identity_deleter,
        get_trial,
    ):
        user_id = _scheduled(make_user, clock, clerk_id="user_clerk_1", email="gone@example.com")
        add_subscription(user_id, BillingStatusEnum.canceled)
        reconciler.reconcile(user_id)
        db = session_factory()
        try:
            db.add(WorkspaceAccount(user_id=user_id, external_account_id="ws-1", external_email="gone@example.com"))
            db.commit()
        finally:
            db.close()

        result = asyncio.run(sweeper.run())

        assert result.candidates == 1
        assert result.deleted == 1
        assert workspace_client.deleted == [user_id]
        assert identity_deleter.calls == ["user_clerk_1"]
        assert get_trial(user_id) is None

        db = session_factory()
        try:
            user = db.get(User, user_id)
            assert user.deleted_at is not None
            assert user.clerk_id is None
            assert user.email != "gone@example.com"
            assert db.get(AccountState, user_id) is None
            customer = db.query(BillingCustomer).filter(BillingCustomer.user_id == user_id).one()
            assert customer.deleted_at is not None
            subscription = db.query(BillingSubscription).filter(
                BillingSubscription.customer_id == customer.customer_id
            ).one()
            assert subscription.deleted_at is not None
            workspace = db.query(WorkspaceAccount).filter(WorkspaceAccount.user_id == user_id).one()
            assert workspace.status == WorkspaceAccountStatusEnum.deleted
        finally:
            db.close()

        assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.deleted, "local")]
        # Deleted accounts drop out of the next selection
        assert sweeper.select_for_deletion() == []

    def test_user_without_identity_link_skips_identity_call(self, sweeper, make_user, clock, identity_deleter):
        _scheduled(make_user, clock)

        result = asyncio.run(sweeper.run())

        assert result.deleted == 1
        assert identity_deleter.calls == []

    def test_workspace_failure_leaves_local_state_untouched(
        self, sweeper, make_user, clock, session_factory, workspace_client, identity_deleter, get_trial
    ):
        user_id = _scheduled(make_user, clock, clerk_id="user_clerk_2")
        workspace_client.fail_for.add(user_id)

        result = asyncio.run(sweeper.run())

        assert result.failed == 1
        assert result.deleted == 0
        assert identity_deleter.calls == []
        assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion
        db = session_factory()
        try:
            assert db.get(User, user_id).deleted_at is None
        finally:
            db.close()
        assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.failed, "workspace")]
        # Still a candidate for the next sweep
        assert sweeper.select_for_deletion() == [user_id]

    def test_identity_failure_leaves_local_state_untouched(
        self, sweeper, make_user, clock, session_factory, identity_deleter, get_trial
    ):
        user_id = _scheduled(make_user, clock, clerk_id="user_clerk_3")
        identity_deleter.result = False

        result = asyncio.run(sweeper.run())

        assert result.failed == 1
        assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion
        assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.failed, "identity")]

    def test_hanging_external_call_times_out(
        self, sweeper, make_user, clock, session_factory, workspace_client, get_trial
    ):
        user_id = _scheduled(make_user, clock)
        workspace_client.hang_for.add(user_id)

        result = asyncio.run(sweeper.run())

        assert result.failed == 1
        assert result.errors == {str(user_id): "timeout"}
        assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion
        assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.timeout, "workspace")]

    def test_payment_between_selection_and_execution_rejects_unit(
        self, sweeper, make_user, add_subscription, clock, session_factory, workspace_client, get_trial
    ):
        user_id = _scheduled(make_user, clock)
        add_subscription(user_id, BillingStatusEnum.active)

        outcome = asyncio.run(sweeper.delete_one(user_id))

        assert outcome == DeletionOutcomeEnum.rejected
        assert workspace_client.deleted == []
        assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion
        assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.rejected, "precheck")]

    def test_payment_during_external_calls_blocks_local_removal(
        self, sweeper, make_user, add_subscription, clock, session_factory, workspace_client
    ):
        user_id = _scheduled(make_user, clock)
        original = workspace_client.delete_account

        async def delete_then_pay(uid):
            outcome = await original(uid)
            add_subscription(uid, BillingStatusEnum.active)
            return outcome

        workspace_client.delete_account = delete_then_pay

        outcome = asyncio.run(sweeper.delete_one(user_id))

        assert outcome == DeletionOutcomeEnum.rejected
        db = session_factory()
        try:
            assert db.get(User, user_id).deleted_at is None
        finally:
            db.close()

    def test_one_failure_does_not_stop_other_units(self, sweeper, make_user, clock, workspace_client):
        failing = _scheduled(make_user, clock)
        ok_ids = [_scheduled(make_user, clock) for _ in range(3)]
        workspace_client.fail_for.add(failing)

        result = asyncio.run(sweeper.run())

        assert result.candidates == 4
        assert result.deleted == 3
        assert result.failed == 1
        assert sorted(workspace_client.deleted) == sorted(ok_ids)

    def test_stop_event_skips_units_not_yet_started(self, sweeper, make_user, clock, workspace_client):
        _scheduled(make_user, clock)
        _scheduled(make_user, clock)
        stop_event = threading.Event()
        stop_event.set()

        result = asyncio.run(sweeper.run(stop_event))

        assert result.cancelled is True
        assert result.deleted == 0
        assert workspace_client.deleted == []

    def test_no_candidates(self, sweeper):
        result = asyncio.run(sweeper.run())

        assert result.to_dict() == {
            "candidates": 0,
            "deleted": 0,
            "failed": 0,
            "skipped_protected": 0,
            "cancelled": False,
            "errors": {},
        }


def _maintenance_platform(request: httpx.Request) -> httpx.Response:
    """Workspace platform whose user listing answers with an HTML page."""
    if request.url.path == "/api/v1/login":
        return httpx.Response(200, json={"access_token": "admin-token"})
    if request.url.path == "/api/v1/api_key/":
        return httpx.Response(200, json={"api_key": "key-123"})
    if request.method == "GET" and request.url.path == "/api/v1/users/":
        return httpx.Response(200, text="<html>maintenance</html>")
    return httpx.Response(500)


class TestUnitIsolation:
    def test_unreadable_platform_reply_fails_each_unit(
        self, make_user, clock, settings, session_factory, identity_deleter, get_trial
    ):
        first = _scheduled(make_user, clock)
        second = _scheduled(make_user, clock)
        client = WorkspaceAccountClient(
            base_url="https://workspace.test",
            username="admin",
            password="admin-password",
            session_factory=session_factory,
            timeout=1.0,
            transport=httpx.MockTransport(_maintenance_platform),
        )
        sweeper = DeletionSweeper(
            session_factory, client, identity_deleter=identity_deleter, clock=clock, settings=settings
        )

        result = asyncio.run(sweeper.run())

        assert result.candidates == 2
        assert result.failed == 2
        assert result.errors == {str(first): "failed", str(second): "failed"}
        for user_id in (first, second):
            assert get_trial(user_id).trial_status == TrialStatusEnum.scheduled_for_deletion
            assert _attempts(session_factory, user_id) == [(DeletionOutcomeEnum.failed, "workspace")]

    def test_unexpected_error_is_recorded_and_sweep_continues(
        self, sweeper, make_user, clock, session_factory, workspace_client
    ):
        broken = _scheduled(make_user, clock)
        healthy = _scheduled(make_user, clock)
        original = workspace_client.delete_account

        async def delete_or_crash(uid):
            if uid == broken:
                raise RuntimeError("bad payload")
            return await original(uid)

        workspace_client.delete_account = delete_or_crash

        result = asyncio.run(sweeper.run())

        assert result.deleted == 1
        assert result.failed == 1
        assert workspace_client.deleted == [healthy]
        assert _attempts(session_factory, broken) == [(DeletionOutcomeEnum.failed, "workspace")]


def test_default_identity_deleter_uses_configured_key(session_factory, clock, settings, workspace_client):
    settings.CLERK_SECRET_KEY = "sk_configured"

    sweeper = DeletionSweeper(session_factory, workspace_client, clock=clock, settings=settings)

    assert sweeper.identity_deleter.keywords == {
        "secret_key": "sk_configured",
        "timeout": settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    }
