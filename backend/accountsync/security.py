"""Security utilities for session JWTs.

WHAT:
    Verifies the session tokens presented by the web app when a user asks
    for their own access status.

WHY:
    Token issuance lives in the presentation layer; this service only needs
    to validate the signature and read the subject (the opaque user id).

REFERENCES:
    - accountsync/deps.py::get_current_user_id
    - accountsync/routers/account.py
"""

import logging
import os
from typing import Any, Dict

from jose import jwt, JWTError


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")

logger = logging.getLogger(__name__)


if not JWT_SECRET:
    # Attempt to load from local .env if running in dev
    from accountsync.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = os.getenv("JWT_SECRET", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.info("[AUTH] Rejected session token: %s", exc)
        raise exc
