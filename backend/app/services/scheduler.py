"""In-process periodic drain of the sync queue.

Deployments that run ``backend.app.worker`` leave this idle; with
``SYNC_IN_PROCESS_WORKER`` enabled the API process polls the queue itself.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

QUEUE_DRAIN_JOB_ID = "sync-queue-drain"


class QueueDrainScheduler:
    def __init__(self, job_id: str = QUEUE_DRAIN_JOB_ID) -> None:
        self.job_id = job_id
        self._scheduler = BackgroundScheduler()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, cycle: Callable[[], None], seconds: int) -> None:
        """Run ``cycle`` every ``seconds``; a slow cycle never overlaps the next one."""

        self._scheduler.add_job(
            cycle,
            "interval",
            seconds=seconds,
            id=self.job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Draining sync queue in process every %s seconds", seconds)

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.job_id)
        return job.next_run_time if job is not None else None

    def shutdown(self) -> None:
        if self._scheduler.running:
            logger.info("Stopping in-process sync queue drain")
            self._scheduler.shutdown(wait=False)


scheduler = QueueDrainScheduler()
