"""Bookkeeping for queue drains started from the admin API.

The drain itself runs in a FastAPI background task, so the HTTP response only
carries a run id. Callers poll ``GET /jobs/{job_id}`` which reads the state
kept here. Only the most recent runs are retained.
"""
from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..models import utcnow
from ..schemas import SyncJobStatus

if TYPE_CHECKING:
    from .sync_reconciler import DrainReport

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

DEFAULT_HISTORY = 50


@dataclass
class DrainRun:
    job_id: str
    status: str = JOB_QUEUED
    claimed: int = 0
    report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    queued_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in (JOB_COMPLETED, JOB_FAILED)

    def to_status(self) -> SyncJobStatus:
        return SyncJobStatus(
            job_id=self.job_id,
            status=self.status,
            processed=self.claimed,
            total=self.claimed if self.finished else None,
            detail=self.report,
            message=self.error,
        )


class DrainRunRegistry:
    """Keeps the last ``history`` drain runs, oldest evicted first."""

    def __init__(self, history: int = DEFAULT_HISTORY) -> None:
        self._history = history
        self._runs: "OrderedDict[str, DrainRun]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self, prefix: str = "drain") -> DrainRun:
        run = DrainRun(job_id=f"{prefix}-{uuid.uuid4().hex[:16]}")
        with self._lock:
            self._runs[run.job_id] = run
            while len(self._runs) > self._history:
                self._runs.popitem(last=False)
        return run

    def get(self, job_id: str) -> Optional[DrainRun]:
        with self._lock:
            return self._runs.get(job_id)

    def _transition(self, job_id: str, status: str) -> Optional[DrainRun]:
        run = self._runs.get(job_id)
        if run is None or run.finished:
            return None
        run.status = status
        if run.finished:
            run.finished_at = utcnow()
        return run

    def mark_running(self, job_id: str) -> Optional[DrainRun]:
        with self._lock:
            return self._transition(job_id, JOB_RUNNING)

    def complete(self, job_id: str, report: "DrainReport") -> Optional[DrainRun]:
        with self._lock:
            run = self._transition(job_id, JOB_COMPLETED)
            if run is not None:
                run.claimed = report.claimed
                run.report = report.to_dict()
            return run

    def fail(self, job_id: str, message: str) -> Optional[DrainRun]:
        with self._lock:
            run = self._transition(job_id, JOB_FAILED)
            if run is not None:
                run.error = message
            return run


job_tracker = DrainRunRegistry()
