"""Local .env loading for developer runs.

WHAT:
    Fills os.environ from backend/.env (or an explicit path) before the
    engine URL and JWT secret are read. Exported variables always win.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Optional[Union[str, Path]] = None) -> bool:
    """Load a .env file without overwriting exported variables.

    Args:
        path: File to load; defaults to backend/.env, then ./.env

    Returns:
        True if a file was found and loaded
    """
    candidates = [Path(path)] if path else [BACKEND_ENV_FILE, Path.cwd() / ".env"]
    for candidate in candidates:
        if candidate.is_file():
            load_dotenv(candidate, override=False)
            logger.info("[ENV] Loaded %s (exported variables kept)", candidate)
            return True

    logger.debug("[ENV] No .env file found in %s", ", ".join(str(c) for c in candidates))
    return False
