"""Keep task assignments mirrored in the assignees' Zimbra task folders.

Every (task, assignee) pair owns at most one external VTODO. The identifier of
that object lives on ``task_assignees.external_task_id`` and is written only
after the external store confirmed the create. Changes triggered by requests
are recorded in the ``sync_queue`` table and applied later by
:meth:`TaskSyncReconciler.drain_queue`, so a slow or unreachable mail server
never affects the local task operation.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..config import Settings, get_settings
from ..database import session_scope
from ..models import (
    Profile,
    SyncAction,
    SyncQueueEntry,
    SyncQueueStatus,
    Task,
    TaskAssignee,
    TaskPriority,
    utcnow,
)
from ..security import SecretEncryptionError, decrypt_secret
from ..utils.vtodo import TaskPayload
from .caldav_client import AdapterErrorKind, ZimbraTaskClient

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

_MAX_ERROR_LENGTH = 4000


class TaskNotFoundError(LookupError):
    """Raised when a sync operation targets a task that does not exist."""


class QueueEntryError(RuntimeError):
    """Raised when a queue entry cannot be retried in its current state."""


class AssignmentLinkError(RuntimeError):
    """Raised when the assignment to link an external task to has vanished."""



class AlreadyLinkedError(RuntimeError):
    """Another worker linked a different external task to the assignment first."""

    def __init__(self, task_id: str, user_id: str, external_id: Optional[str]) -> None:
        super().__init__(f"Assignment {task_id}/{user_id} is already linked to {external_id}")
        self.external_id = external_id


class SyncOutcomeStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "re-created"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    """Result of syncing one assignee, as shown to administrators."""

    email: Optional[str]
    status: SyncOutcomeStatus
    external_id: Optional[str] = None
    error: Optional[str] = None
    original_error: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"email": self.email or "N/A", "status": self.status.value}
        for key in ("external_id", "error", "original_error", "reason"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class SyncTask:
    id: str
    payload: TaskPayload

    @classmethod
    def from_model(cls, task: Task) -> "SyncTask":
        return cls(
            id=task.id,
            payload=TaskPayload(
                title=task.title,
                notes=task.notes,
                due_date=task.due_date,
                priority=task.priority or TaskPriority.MEDIUM,
                is_completed=bool(task.is_completed),
            ),
        )


@dataclass(frozen=True)
class SyncAssignee:
    task_id: str
    user_id: str
    email: Optional[str]
    sync_enabled: bool
    external_task_id: Optional[str] = None

    @classmethod
    def from_model(cls, assignee: TaskAssignee) -> "SyncAssignee":
        profile = assignee.profile
        return cls(
            task_id=assignee.task_id,
            user_id=assignee.user_id,
            email=(profile.email or None) if profile is not None else None,
            sync_enabled=bool(profile is not None and profile.sync_enabled),
            external_task_id=assignee.external_task_id or None,
        )

    @property
    def skip_reason(self) -> Optional[str]:
        if not self.email:
            return "No email"
        if not self.sync_enabled:
            return "Sync disabled"
        return None


@dataclass(frozen=True)
class QueuedOperation:
    id: str
    task_id: str
    email: str
    action: SyncAction
    payload: Dict[str, Any]
    attempt: int

    @classmethod
    def from_model(cls, entry: SyncQueueEntry) -> "QueuedOperation":
        return cls(
            id=entry.id,
            task_id=entry.task_id,
            email=entry.user_email,
            action=SyncAction(entry.action_type),
            payload=dict(entry.payload or {}),
            attempt=entry.attempt or 1,
        )


@dataclass
class DrainReport:
    claimed: int = 0
    done: int = 0
    failed: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "done": self.done,
            "failed": self.failed,
            "results": list(self.results),
        }


@dataclass
class PullReport:
    """Completion changes read back from one user's task folder."""

    email: Optional[str]
    checked: int = 0
    changed: int = 0
    error: Optional[str] = None


class TaskSyncReconciler:
    """Apply assignment changes to the external task store."""

    def __init__(
        self,
        client: ZimbraTaskClient,
        session_factory: SessionFactory = session_scope,
        *,
        batch_size: int = 20,
        max_retries: int = 3,
        retry_backoff_seconds: int = 60,
        claim_timeout_seconds: int = 600,
        pull_interval_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.pull_interval_seconds = pull_interval_seconds
        self._last_pull: Optional[datetime] = None
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    # -- direct propagation -------------------------------------------------

    def propagate_create(
        self,
        task: SyncTask,
        assignee: SyncAssignee,
        *,
        replaces: Optional[str] = None,
    ) -> SyncOutcome:
        """Create the external task for ``assignee`` and link its identifier.

        The link is only written while the assignment still points at
        ``replaces`` (unlinked by default). When a concurrent worker linked
        its own object first, the object created here is removed again and
        the winner is updated instead.
        """
        reason = assignee.skip_reason
        if reason:
            return SyncOutcome(email=assignee.email, status=SyncOutcomeStatus.SKIPPED, reason=reason)

        result = self.client.create_task(assignee.email, task.payload)
        if not result.success or not result.task_id:
            logger.warning(
                "Could not create external task for task %s / %s: %s",
                task.id,
                assignee.email,
                result.error,
            )
            return SyncOutcome(
                email=assignee.email,
                status=SyncOutcomeStatus.FAILED,
                error=result.error or "Create returned no identifier",
            )

        try:
            self._link(task.id, assignee.user_id, result.task_id, expected=replaces)
        except AlreadyLinkedError as conflict:
            logger.info(
                "Task %s / %s was linked concurrently, dropping duplicate %s",
                task.id,
                assignee.email,
                result.task_id,
            )
            self._discard(assignee.email, result.task_id)
            return self.propagate_update(task, replace(assignee, external_task_id=conflict.external_id))
        except (SQLAlchemyError, AssignmentLinkError) as exc:
            logger.exception(
                "Failed to store external task %s for task %s / %s",
                result.task_id,
                task.id,
                assignee.email,
            )
            self._discard(assignee.email, result.task_id)
            return SyncOutcome(
                email=assignee.email,
                status=SyncOutcomeStatus.FAILED,
                error=f"External task created but not linked: {exc}",
            )

        logger.info("Linked external task %s to task %s / %s", result.task_id, task.id, assignee.email)
        return SyncOutcome(
            email=assignee.email,
            status=SyncOutcomeStatus.CREATED,
            external_id=result.task_id,
        )

    def propagate_update(self, task: SyncTask, assignee: SyncAssignee) -> SyncOutcome:
        """Update the linked external task, re-creating it when it has vanished."""
        reason = assignee.skip_reason
        if reason:
            return SyncOutcome(email=assignee.email, status=SyncOutcomeStatus.SKIPPED, reason=reason)
        if not assignee.external_task_id:
            return self.propagate_create(task, assignee)

        result = self.client.update_task(assignee.email, assignee.external_task_id, task.payload)
        if result.success:
            return SyncOutcome(
                email=assignee.email,
                status=SyncOutcomeStatus.UPDATED,
                external_id=assignee.external_task_id,
            )

        if result.error_kind == AdapterErrorKind.TRANSIENT:
            # The object may still exist; re-creating now could duplicate it.
            return SyncOutcome(
                email=assignee.email,
                status=SyncOutcomeStatus.FAILED,
                error=result.error,
                original_error=result.error,
            )

        logger.warning(
            "Update of external task %s for %s failed (%s), re-creating",
            assignee.external_task_id,
            assignee.email,
            result.error,
        )
        fallback = self.propagate_create(task, assignee, replaces=assignee.external_task_id)
        if fallback.status in (SyncOutcomeStatus.UPDATED, SyncOutcomeStatus.RECREATED):
            return fallback
        if fallback.status == SyncOutcomeStatus.CREATED:
            return SyncOutcome(
                email=assignee.email,
                status=SyncOutcomeStatus.RECREATED,
                external_id=fallback.external_id,
                original_error=result.error,
            )
        return SyncOutcome(
            email=assignee.email,
            status=SyncOutcomeStatus.FAILED,
            error=fallback.error or result.error,
            original_error=result.error,
        )

    def propagate_delete(self, email: Optional[str], external_task_id: Optional[str]) -> SyncOutcome:
        """Remove an external task. Failures are reported, never raised."""
        if not external_task_id:
            return SyncOutcome(email=email, status=SyncOutcomeStatus.SKIPPED, reason="Not linked")
        if not email:
            return SyncOutcome(email=email, status=SyncOutcomeStatus.SKIPPED, reason="No email")

        result = self.client.delete_task(email, external_task_id)
        if result.success:
            return SyncOutcome(email=email, status=SyncOutcomeStatus.DELETED, external_id=external_task_id)
        logger.warning("Could not delete external task %s for %s: %s", external_task_id, email, result.error)
        return SyncOutcome(
            email=email,
            status=SyncOutcomeStatus.FAILED,
            external_id=external_task_id,
            error=result.error,
        )

    def _link(self, task_id: str, user_id: str, external_id: str, *, expected: Optional[str] = None) -> None:
        current = (
            TaskAssignee.external_task_id.is_(None)
            if expected is None
            else TaskAssignee.external_task_id == expected
        )
        with self.session_factory() as session:
            result = session.execute(
                update(TaskAssignee)
                .where(TaskAssignee.task_id == task_id, TaskAssignee.user_id == user_id, current)
                .values(external_task_id=external_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            row = session.get(TaskAssignee, (task_id, user_id))
            if row is None:
                raise AssignmentLinkError(f"Assignment {task_id}/{user_id} no longer exists")
            if row.external_task_id:
                raise AlreadyLinkedError(task_id, user_id, row.external_task_id)
            raise AssignmentLinkError(f"Assignment {task_id}/{user_id} was unlinked concurrently")

    def _discard(self, email: str, external_id: str) -> None:
        undo = self.client.delete_task(email, external_id)
        if not undo.success:
            logger.error(
                "External task %s for %s is orphaned and could not be removed: %s",
                external_id,
                email,
                undo.error,
            )

    # -- composite operations -----------------------------------------------

    def reassign(
        self,
        task: SyncTask,
        old_assignees: Sequence[SyncAssignee],
        new_user_id: str,
    ) -> List[SyncOutcome]:
        """Replace all assignees of ``task`` with ``new_user_id``.

        External objects are never transferred: the old ones are deleted and a
        new one is created for the new assignee. The steps are not atomic with
        respect to the external store; :meth:`force_sync_all` repairs a pass
        that was interrupted.
        """
        with self.session_factory() as session:
            profile = session.get(Profile, new_user_id)
            if profile is None:
                raise LookupError(f"Unknown user {new_user_id}")
            new_email = profile.email or None
            new_sync_enabled = bool(profile.sync_enabled)

        outcomes: List[SyncOutcome] = []
        for old in old_assignees:
            if old.external_task_id:
                outcomes.append(self.propagate_delete(old.email, old.external_task_id))

        with self.session_factory() as session:
            session.execute(
                delete(TaskAssignee)
                .where(TaskAssignee.task_id == task.id)
                .execution_options(synchronize_session=False)
            )
            session.add(
                TaskAssignee(
                    task_id=task.id,
                    user_id=new_user_id,
                    is_completed=False,
                    assigned_at=self._now(),
                )
            )
        logger.info("Reassigned task %s to user %s", task.id, new_user_id)

        new_assignee = SyncAssignee(
            task_id=task.id,
            user_id=new_user_id,
            email=new_email,
            sync_enabled=new_sync_enabled,
        )
        outcomes.append(self.propagate_create(task, new_assignee))
        return outcomes

    def force_sync_all(self, task_id: str) -> List[SyncOutcome]:
        """Re-derive the external state of every assignee of a task."""
        with self.session_factory() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            snapshot = SyncTask.from_model(task)
            assignees = [SyncAssignee.from_model(row) for row in task.assignees]

        results: List[SyncOutcome] = []
        for assignee in assignees:
            try:
                reason = assignee.skip_reason
                if reason:
                    outcome = SyncOutcome(
                        email=assignee.email, status=SyncOutcomeStatus.SKIPPED, reason=reason
                    )
                elif assignee.external_task_id:
                    outcome = self.propagate_update(snapshot, assignee)
                else:
                    outcome = self.propagate_create(snapshot, assignee)
            except Exception as exc:
                logger.exception("Sync error for %s on task %s", assignee.email, task_id)
                outcome = SyncOutcome(
                    email=assignee.email, status=SyncOutcomeStatus.FAILED, error=str(exc)
                )
            results.append(outcome)
        logger.info("Forced sync of task %s over %s assignees", task_id, len(results))
        return results

    # -- queue ----------------------------------------------------------------

    def enqueue(
        self,
        task_id: str,
        email: str,
        action: SyncAction,
        payload: Dict[str, Any],
        session: Optional[Session] = None,
        *,
        attempt: int = 1,
        retry_of: Optional[str] = None,
    ) -> str:
        """Record a pending external side effect.

        With ``session`` the entry joins the caller's transaction, so it is
        durable exactly when the triggering change commits.
        """
        entry_id = uuid.uuid4().hex
        entry = SyncQueueEntry(
            id=entry_id,
            task_id=task_id,
            user_email=email,
            action_type=SyncAction(action),
            payload=dict(payload),
            status=SyncQueueStatus.PENDING,
            attempt=attempt,
            retry_of=retry_of,
            created_at=self._now(),
        )
        if session is not None:
            session.add(entry)
        else:
            with self.session_factory() as own_session:
                own_session.add(entry)
        logger.info("Queued %s for task %s / %s", SyncAction(action).value, task_id, email)
        return entry_id

    def enqueue_assignment(
        self,
        session: Session,
        task: SyncTask,
        assignee: SyncAssignee,
        action: SyncAction,
    ) -> Optional[str]:
        if action == SyncAction.DELETE:
            if not assignee.external_task_id or not assignee.email:
                return None
            payload: Dict[str, Any] = {"external_task_id": assignee.external_task_id}
        else:
            if assignee.skip_reason:
                return None
            payload = task.payload.model_dump(mode="json")
        return self.enqueue(task.id, assignee.email, action, payload, session=session)

    def enqueue_task_change(self, session: Session, task: Task, action: SyncAction) -> List[str]:
        """Queue ``action`` for every assignee of ``task`` that needs it."""
        snapshot = SyncTask.from_model(task)
        entry_ids: List[str] = []
        for row in task.assignees:
            entry_id = self.enqueue_assignment(session, snapshot, SyncAssignee.from_model(row), action)
            if entry_id:
                entry_ids.append(entry_id)
        return entry_ids

    def queue_user_tasks(self, user_id: str) -> int:
        """Queue a create or update for every task assigned to ``user_id``."""
        with self.session_factory() as session:
            rows = (
                session.execute(
                    select(TaskAssignee)
                    .where(TaskAssignee.user_id == user_id)
                    .options(selectinload(TaskAssignee.task), selectinload(TaskAssignee.profile))
                )
                .scalars()
                .all()
            )
            queued = 0
            for row in rows:
                target = SyncAssignee.from_model(row)
                action = SyncAction.UPDATE if target.external_task_id else SyncAction.CREATE
                if self.enqueue_assignment(session, SyncTask.from_model(row.task), target, action):
                    queued += 1
        return queued

    def drain_queue(self, batch_size: Optional[int] = None, worker_id: Optional[str] = None) -> DrainReport:
        """Process up to ``batch_size`` pending entries, oldest first.

        Each entry is claimed with a conditional status update before any
        external call; entries another worker claimed first are left alone.
        """
        limit = batch_size or self.batch_size
        worker = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        report = DrainReport()

        with self.session_factory() as session:
            candidate_ids = (
                session.execute(
                    select(SyncQueueEntry.id)
                    .where(SyncQueueEntry.status == SyncQueueStatus.PENDING)
                    .order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

        for entry_id in candidate_ids:
            operation = self._claim(entry_id, worker)
            if operation is None:
                logger.debug("Queue entry %s already claimed elsewhere", entry_id)
                continue
            report.claimed += 1
            try:
                outcome = self._process(operation)
            except Exception as exc:
                logger.exception("Queue entry %s failed during processing", entry_id)
                outcome = SyncOutcome(
                    email=operation.email, status=SyncOutcomeStatus.FAILED, error=str(exc)
                )
            final_status = (
                SyncQueueStatus.FAILED
                if outcome.status == SyncOutcomeStatus.FAILED
                else SyncQueueStatus.DONE
            )
            self._finish(entry_id, final_status, outcome)
            if final_status == SyncQueueStatus.DONE:
                report.done += 1
            else:
                report.failed += 1
            report.results.append({"entry_id": entry_id, **outcome.to_dict()})

        if report.claimed:
            logger.info(
                "Worker %s drained %s entries (%s done, %s failed)",
                worker,
                report.claimed,
                report.done,
                report.failed,
            )
        return report

    def _claim(self, entry_id: str, worker_id: str) -> Optional[QueuedOperation]:
        with self.session_factory() as session:
            result = session.execute(
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.status == SyncQueueStatus.PENDING,
                )
                .values(
                    status=SyncQueueStatus.IN_PROGRESS,
                    claimed_by=worker_id,
                    claimed_at=self._now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            entry = session.get(SyncQueueEntry, entry_id)
            return QueuedOperation.from_model(entry)

    def _finish(self, entry_id: str, status: SyncQueueStatus, outcome: SyncOutcome) -> None:
        message = outcome.error or outcome.reason
        with self.session_factory() as session:
            result = session.execute(
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.status == SyncQueueStatus.IN_PROGRESS,
                )
                .values(
                    status=status,
                    processed_at=self._now(),
                    error_message=message[:_MAX_ERROR_LENGTH] if message else None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Queue entry %s was no longer in progress when finishing", entry_id)

    def _find_assignment(self, task_id: str, email: str) -> Optional[Tuple[SyncTask, SyncAssignee]]:
        """Current task row and assignee for a queue entry, or ``None`` once unassigned."""
        with self.session_factory() as session:
            row = session.execute(
                select(TaskAssignee)
                .join(Profile, TaskAssignee.user_id == Profile.id)
                .where(TaskAssignee.task_id == task_id, Profile.email == email)
                .options(selectinload(TaskAssignee.task))
            ).scalar_one_or_none()
            if row is None or row.task is None:
                return None
            return SyncTask.from_model(row.task), SyncAssignee.from_model(row)

    def _process(self, operation: QueuedOperation) -> SyncOutcome:
        if operation.action == SyncAction.DELETE:
            external_id = operation.payload.get("external_task_id")
            if not external_id:
                found = self._find_assignment(operation.task_id, operation.email)
                external_id = found[1].external_task_id if found is not None else None
            return self.propagate_delete(operation.email, external_id)

        found = self._find_assignment(operation.task_id, operation.email)
        if found is None:
            return SyncOutcome(
                email=operation.email,
                status=SyncOutcomeStatus.SKIPPED,
                reason="Assignment no longer exists",
            )
        # The remote copy gets the task as it is now, not the queued snapshot.
        task, assignee = found
        if operation.action == SyncAction.CREATE and not assignee.external_task_id:
            return self.propagate_create(task, assignee)
        # A linked assignee is updated even for CREATE so a replayed create
        # never produces a second external object.
        return self.propagate_update(task, assignee)

    def retry_failed(self, now: Optional[datetime] = None) -> List[str]:
        """Queue successors for failed entries whose backoff has elapsed."""
        current = now or self._now()
        created: List[str] = []
        try:
            with self.session_factory() as session:
                failed = (
                    session.execute(
                        select(SyncQueueEntry).where(
                            SyncQueueEntry.status == SyncQueueStatus.FAILED,
                            SyncQueueEntry.attempt < self.max_retries,
                        )
                    )
                    .scalars()
                    .all()
                )
                if not failed:
                    return []
                retried = set(
                    session.execute(
                        select(SyncQueueEntry.retry_of).where(
                            SyncQueueEntry.retry_of.in_([entry.id for entry in failed])
                        )
                    ).scalars()
                )
                for entry in failed:
                    if entry.id in retried:
                        continue
                    delay = timedelta(
                        seconds=self.retry_backoff_seconds * 2 ** max((entry.attempt or 1) - 1, 0)
                    )
                    finished_at = entry.processed_at or entry.created_at
                    if finished_at is not None and finished_at + delay > current:
                        continue
                    created.append(
                        self.enqueue(
                            entry.task_id,
                            entry.user_email,
                            entry.action_type,
                            entry.payload or {},
                            session=session,
                            attempt=(entry.attempt or 1) + 1,
                            retry_of=entry.id,
                        )
                    )
        except IntegrityError:
            logger.info("Another worker scheduled the pending retries first")
            return []
        if created:
            logger.info("Scheduled %s retries for failed sync entries", len(created))
        return created

    def retry_entry(self, entry_id: str) -> str:
        """Queue a successor for one failed entry on explicit request."""
        with self.session_factory() as session:
            entry = session.get(SyncQueueEntry, entry_id)
            if entry is None:
                raise LookupError(f"Queue entry {entry_id} not found")
            if entry.status != SyncQueueStatus.FAILED:
                raise QueueEntryError("Only failed entries can be retried")
            successor = session.execute(
                select(SyncQueueEntry.id).where(SyncQueueEntry.retry_of == entry_id)
            ).first()
            if successor is not None:
                raise QueueEntryError("Entry has already been retried")
            return self.enqueue(
                entry.task_id,
                entry.user_email,
                entry.action_type,
                entry.payload or {},
                session=session,
                attempt=(entry.attempt or 1) + 1,
                retry_of=entry.id,
            )

    def expire_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Fail entries whose worker held the claim for too long."""
        current = now or self._now()
        cutoff = current - timedelta(seconds=self.claim_timeout_seconds)
        with self.session_factory() as session:
            result = session.execute(
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.status == SyncQueueStatus.IN_PROGRESS,
                    SyncQueueEntry.claimed_at < cutoff,
                )
                .values(
                    status=SyncQueueStatus.FAILED,
                    processed_at=current,
                    error_message="Claim expired before the worker finished",
                )
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0
        if expired:
            logger.warning("Expired %s stale sync queue claims", expired)
        return expired

    # -- completion read-back ------------------------------------------------

    def roll_up_completion(self, session: Session, task: Task) -> bool:
        """Complete ``task`` once every assignee finished; queue the change."""
        all_done = bool(task.assignees) and all(row.is_completed for row in task.assignees)
        if bool(task.is_completed) == all_done:
            return False
        task.is_completed = all_done
        session.flush()
        self.enqueue_task_change(session, task, SyncAction.UPDATE)
        return True

    def pull_completion(self, user_id: str) -> PullReport:
        """Copy the completion state of linked VTODOs back onto the assignments.

        Objects that are no longer in the folder are left to the next forced
        sync; only the completion flag is read back.
        """
        with self.session_factory() as session:
            profile = session.get(Profile, user_id)
            if profile is None:
                raise LookupError(f"Unknown user {user_id}")
            email = profile.email or None
            sync_enabled = bool(profile.sync_enabled)

        report = PullReport(email=email)
        if not email or not sync_enabled:
            report.error = "No email" if not email else "Sync disabled"
            return report

        result, todos = self.client.list_tasks(email)
        if not result.success:
            logger.warning("Could not read task folder of %s: %s", email, result.error)
            report.error = result.error
            return report
        completed = {todo.uid: todo.is_completed for todo in todos}

        with self.session_factory() as session:
            rows = (
                session.execute(
                    select(TaskAssignee)
                    .where(TaskAssignee.user_id == user_id, TaskAssignee.external_task_id.is_not(None))
                    .options(selectinload(TaskAssignee.task).selectinload(Task.assignees))
                )
                .scalars()
                .all()
            )
            for row in rows:
                remote = completed.get(row.external_task_id)
                if remote is None:
                    continue
                report.checked += 1
                if bool(row.is_completed) == remote:
                    continue
                row.is_completed = remote
                report.changed += 1
                self.roll_up_completion(session, row.task)
        if report.changed:
            logger.info("Read back %s completion changes from %s", report.changed, email)
        return report

    def pull_all_completions(self) -> List[PullReport]:
        with self.session_factory() as session:
            user_ids = (
                session.execute(
                    select(Profile.id).where(Profile.sync_enabled.is_(True), Profile.email.is_not(None))
                )
                .scalars()
                .all()
            )
        reports: List[PullReport] = []
        for user_id in user_ids:
            try:
                reports.append(self.pull_completion(user_id))
            except Exception as exc:
                logger.exception("Reading back completions for user %s failed", user_id)
                reports.append(PullReport(email=None, error=str(exc)))
        return reports

    def _pull_due(self, now: datetime) -> bool:
        if self.pull_interval_seconds <= 0:
            return False
        if self._last_pull is not None and now - self._last_pull < timedelta(seconds=self.pull_interval_seconds):
            return False
        self._last_pull = now
        return True

    def run_cycle(self, batch_size: Optional[int] = None, worker_id: Optional[str] = None) -> DrainReport:
        """One worker pass: expire stale claims, schedule retries, read back
        completions when due, drain."""
        self.expire_stale_claims()
        try:
            self.retry_failed()
        except SQLAlchemyError:
            logger.exception("Scheduling sync retries failed")
        if self._pull_due(self._now()):
            self.pull_all_completions()
        return self.drain_queue(batch_size, worker_id)


def profile_credentials(email: str) -> Tuple[Optional[str], Optional[str]]:
    """Use the user's stored CalDAV password, or the admin account without one."""
    zimbra = get_settings().zimbra
    with session_scope() as session:
        stored = session.execute(
            select(Profile.caldav_password).where(Profile.email == email)
        ).scalar_one_or_none()
    if stored:
        try:
            return email, decrypt_secret(stored)
        except SecretEncryptionError:
            logger.warning("Stored CalDAV password for %s is unusable, using admin account", email)
    return zimbra.admin_email, zimbra.admin_password


def build_reconciler(settings: Optional[Settings] = None) -> TaskSyncReconciler:
    settings = settings or get_settings()
    client = ZimbraTaskClient(settings.zimbra, credentials=profile_credentials)
    return TaskSyncReconciler(
        client,
        batch_size=settings.queue_batch_size,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        claim_timeout_seconds=settings.claim_timeout_seconds,
        pull_interval_seconds=settings.pull_interval_seconds,
    )
