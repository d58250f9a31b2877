#!/usr/bin/env python3
"""Start ARQ worker for account lifecycle jobs.

USAGE:
    python -m accountsync.workers.start_arq_worker

    Or directly:
    arq accountsync.workers.arq_worker.WorkerSettings
"""

import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from arq import run_worker
    from accountsync.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
