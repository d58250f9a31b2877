#!/usr/bin/env python3
"""
Account Reconciliation Backfill Script.

WHAT:
    Runs the account lifecycle batch jobs from the command line:
    - Full reconcile (protect paying customers, then every user)
    - Single-user reconcile
    - Deletion sweep
    - Dry run: list deletion candidates without changing anything

USAGE:
    # Preview which accounts the next sweep would delete
    python scripts/reconcile_all.py --dry-run

    # Reconcile every user
    python scripts/reconcile_all.py

    # Reconcile one user
    python scripts/reconcile_all.py --user-id <uuid>

    # Reconcile everyone, then run the deletion sweep
    python scripts/reconcile_all.py --sweep

REFERENCES:
    - backend/accountsync/services/reconciler.py
    - backend/accountsync/services/deletion_sweeper.py
    - backend/accountsync/workers/arq_worker.py (scheduled equivalents)
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def dry_run() -> int:
    """List deletion candidates only."""
    from accountsync.database import SessionLocal
    from accountsync.deps import get_settings
    from accountsync.services.deletion_sweeper import DeletionSweeper

    sweeper = DeletionSweeper(SessionLocal, workspace_client=None, settings=get_settings())
    candidates = sweeper.select_for_deletion()
    logger.info(f"{len(candidates)} accounts would be deleted by the next sweep")
    _print({"count": len(candidates), "user_ids": [str(c) for c in candidates]})
    return 0


def reconcile(user_id: str = None) -> int:
    from accountsync.database import SessionLocal
    from accountsync.deps import get_settings
    from accountsync.exceptions import AccountLifecycleError
    from accountsync.services.reconciler import Reconciler

    reconciler = Reconciler(SessionLocal, settings=get_settings())

    if user_id:
        try:
            state = reconciler.reconcile(user_id)
        except AccountLifecycleError as e:
            logger.error(f"Reconcile failed for {user_id}: {e.message}")
            return 1
        _print({
            "user_id": str(state.user_id),
            "account_status": state.account_status.value,
            "access_level": state.access_level.value,
            "has_access": state.has_access,
            "trial_days_remaining": state.trial_days_remaining,
        })
        return 0

    result = reconciler.reconcile_all()
    _print(result.to_dict())
    return 1 if result.failed else 0


def sweep() -> int:
    from accountsync.database import SessionLocal
    from accountsync.deps import get_settings
    from accountsync.services.deletion_sweeper import DeletionSweeper
    from accountsync.services.workspace_client import WorkspaceAccountClient

    settings = get_settings()
    client = WorkspaceAccountClient.from_settings(settings, SessionLocal)
    sweeper = DeletionSweeper(SessionLocal, client, settings=settings)
    result = asyncio.run(sweeper.run())
    _print(result.to_dict())
    return 1 if result.failed else 0


def main():
    parser = argparse.ArgumentParser(description="Reconcile account lifecycle state")
    parser.add_argument("--dry-run", action="store_true", help="List deletion candidates and exit")
    parser.add_argument("--user-id", help="Reconcile a single user")
    parser.add_argument("--sweep", action="store_true", help="Run the deletion sweep after reconciling")
    args = parser.parse_args()

    if args.dry_run:
        sys.exit(dry_run())

    exit_code = reconcile(args.user_id)
    if args.sweep and not args.user_id:
        exit_code = sweep() or exit_code
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
