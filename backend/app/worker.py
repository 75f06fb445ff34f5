"""Standalone sync queue worker.

Run with ``python -m backend.app.worker``. Any number of workers may run next
to each other and next to the API process.
"""
from __future__ import annotations

import logging
import os
import socket
import time
from typing import Callable, Optional

from .config import get_settings
from .database import Base, apply_schema_upgrades, engine
from .services.sync_reconciler import TaskSyncReconciler, build_reconciler

logger = logging.getLogger(__name__)


def run_forever(
    reconciler: TaskSyncReconciler,
    poll_seconds: float,
    *,
    worker_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
) -> None:
    worker = worker_id or f"{socket.gethostname()}-{os.getpid()}"
    logger.info("Sync worker %s started, polling every %s seconds", worker, poll_seconds)
    while not should_stop():
        try:
            report = reconciler.run_cycle(worker_id=worker)
        except Exception:
            logger.exception("Sync worker cycle failed")
            sleep(poll_seconds * 2)
            continue
        if report.claimed == 0:
            sleep(poll_seconds)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    apply_schema_upgrades()
    try:
        run_forever(build_reconciler(settings), settings.queue_poll_seconds)
    except KeyboardInterrupt:
        logger.info("Sync worker stopped")


if __name__ == "__main__":
    main()
