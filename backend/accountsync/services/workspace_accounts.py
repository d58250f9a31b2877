"""Workspace account linkage store.

WHAT: Records which external workspace account belongs to which user
WHY: Written once provisioning succeeds remotely; read by the reconciler
     (workspace status) and the deletion sweeper (which remote account to
     tear down)
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..exceptions import DataInconsistencyError
from ..models import User, WorkspaceAccount, WorkspaceAccountStatusEnum

logger = logging.getLogger(__name__)


def get_workspace_account(db: Session, user_id: UUID) -> Optional[WorkspaceAccount]:
    return db.query(WorkspaceAccount).filter(WorkspaceAccount.user_id == user_id).first()


def link_workspace_account(
    db: Session,
    user_id: UUID,
    external_account_id: str,
    email: str,
) -> WorkspaceAccount:
    """Create or refresh the linkage after a successful remote create.

    Idempotent: relinking the same remote id is a no-op apart from the email.
    Callers own the transaction.
    """
    user = db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise DataInconsistencyError(f"Cannot link workspace account for unknown user {user_id}", user_id=user_id)

    account = get_workspace_account(db, user_id)
    if account is None:
        account = WorkspaceAccount(
            user_id=user_id,
            external_account_id=external_account_id,
            external_email=email,
            status=WorkspaceAccountStatusEnum.active,
        )
        db.add(account)
        db.flush()
        logger.info("[WORKSPACE] Linked user %s to workspace account %s", user_id, external_account_id)
        return account

    if account.external_account_id != external_account_id:
        logger.warning(
            "[WORKSPACE] user %s relinked from %s to %s",
            user_id, account.external_account_id, external_account_id,
        )
    account.external_account_id = external_account_id
    account.external_email = email
    account.status = WorkspaceAccountStatusEnum.active
    account.deleted_at = None
    db.flush()
    return account
