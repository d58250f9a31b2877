"""Account access status for the signed-in user.

WHAT: Exposes the reconciled access decision to the web app
WHY: The presentation layer gates features on `has_access`/`access_level`
     and must never compute them itself
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..deps import get_current_user_id, get_reconciler
from ..exceptions import TransientStoreError, UserNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account", tags=["Account"])


@router.get(
    "/access-status",
    response_model=schemas.AccessStatusResponse,
    summary="Get access status",
    description="""
    Returns the caller's derived account state.

    The state is read from the reconciliation cache; on a first request for a
    user with no cached row it is computed on the spot.
    """,
)
def get_access_status(
    user_id: UUID = Depends(get_current_user_id),
    reconciler=Depends(get_reconciler),
):
    try:
        state = reconciler.get_access_status(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except TransientStoreError as e:
        logger.error("[ACCOUNT] Access status unavailable for %s: %s", user_id, e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")
    return schemas.AccessStatusResponse.model_validate(state)
