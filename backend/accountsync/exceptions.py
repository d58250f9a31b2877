"""
Account Lifecycle Exceptions
============================

Exception types for the reconciliation engine and its collaborators.

WHY THIS FILE EXISTS
--------------------
Failures in this system fall into four classes that must be handled very
differently:

    1. Transient I/O (store or external call unavailable / timed out)
       → retried on the next scheduled run, never turned into a lifecycle
         decision
    2. Data inconsistency (e.g. a billing customer pointing at no user)
       → logged, that user skipped, batch continues
    3. Invariant violation at write time (e.g. marking the protected
       identity for deletion)
       → rejected at the guard layer, logged as critical, never executed
    4. Irrecoverable external deletion failure
       → account stays scheduled_for_deletion, surfaced via metrics

RELATED FILES
-------------
- accountsync/services/protection_guard.py: Raises ProtectedAccountError
- accountsync/services/reconciler.py: Raises/handles store and CAS errors
- accountsync/services/deletion_sweeper.py: Handles external failures
- accountsync/services/workspace_client.py: Raises ExternalService* errors
"""

from typing import Optional
from uuid import UUID


class AccountLifecycleError(Exception):
    """Base exception for all account lifecycle errors."""

    def __init__(self, message: str, user_id: Optional[UUID] = None):
        super().__init__(message)
        self.message = message
        self.user_id = user_id


class TransientStoreError(AccountLifecycleError):
    """Store read/write failed; retry on the next scheduled run."""


class ExternalServiceError(AccountLifecycleError):
    """An external collaborator (workspace / identity provider) failed."""

    def __init__(self, message: str, user_id: Optional[UUID] = None, service: Optional[str] = None):
        super().__init__(message, user_id=user_id)
        self.service = service


class ExternalServiceTimeout(ExternalServiceError):
    """An external call exceeded its timeout. Always treated as transient."""


class DataInconsistencyError(AccountLifecycleError):
    """Rows reference entities that do not exist (e.g. orphaned billing data)."""


class ProtectedAccountError(AccountLifecycleError):
    """A destructive transition was attempted on a protected account.

    Raised by the protection guard immediately before the write; the write
    is never executed.
    """

    def __init__(self, message: str, user_id: Optional[UUID] = None, reason: Optional[str] = None):
        super().__init__(message, user_id=user_id)
        self.reason = reason


class ConcurrentUpdateError(AccountLifecycleError):
    """A compare-and-swap write lost to a concurrent reconciliation."""


class UserNotFoundError(AccountLifecycleError):
    """No identity row exists for the requested user id."""
