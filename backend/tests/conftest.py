"""Shared fixtures: a throwaway SQLite database and an in-memory task folder."""
from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

_DB_DIR = Path(tempfile.mkdtemp(prefix="neolist-tests-"))
os.environ["NEOLIST_DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'neolist.db'}"
os.environ.setdefault("NEOLIST_SECRET_KEY", "neolist-test-secret")

from backend.app.database import Base, engine, session_scope  # noqa: E402
from backend.app.models import (  # noqa: E402
    Folder,
    Profile,
    Task,
    TaskAssignee,
    TaskList,
    UserRole,
)
from backend.app.services.caldav_client import AdapterErrorKind, AdapterResult  # noqa: E402
from backend.app.services.sync_reconciler import TaskSyncReconciler  # noqa: E402
from backend.app.utils.vtodo import ParsedTodo, TaskPayload  # noqa: E402


@pytest.fixture(autouse=True)
def reset_database() -> Iterator[None]:
    """Provide a clean schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield
    finally:
        Base.metadata.drop_all(bind=engine)


class FakeTaskClient:
    """In-memory stand-in for the Zimbra task folders of all users."""

    def __init__(self) -> None:
        self.store: Dict[str, Dict[str, TaskPayload]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.failures: Dict[str, List[AdapterResult]] = {}
        self.invalidated: List[str] = []
        self._counter = 0

    def fail_next(self, operation: str, error: str, kind: AdapterErrorKind) -> None:
        self.failures.setdefault(operation, []).append(
            AdapterResult(success=False, error=error, error_kind=kind)
        )

    def _pop_failure(self, operation: str) -> Optional[AdapterResult]:
        queued = self.failures.get(operation)
        return queued.pop(0) if queued else None

    def create_task(self, email: str, payload: TaskPayload) -> AdapterResult:
        self.calls.append(("create", email, None))
        failure = self._pop_failure("create")
        if failure is not None:
            return failure
        self._counter += 1
        uid = f"ext-{self._counter}"
        self.store.setdefault(email, {})[uid] = payload
        return AdapterResult(success=True, task_id=uid)

    def update_task(self, email: str, external_id: str, payload: TaskPayload) -> AdapterResult:
        self.calls.append(("update", email, external_id))
        failure = self._pop_failure("update")
        if failure is not None:
            return failure
        folder = self.store.get(email, {})
        if external_id not in folder:
            return AdapterResult(
                success=False, error="404 Not Found", error_kind=AdapterErrorKind.NOT_FOUND
            )
        folder[external_id] = payload
        return AdapterResult(success=True, task_id=external_id)

    def delete_task(self, email: str, external_id: str) -> AdapterResult:
        self.calls.append(("delete", email, external_id))
        failure = self._pop_failure("delete")
        if failure is not None:
            return failure
        self.store.get(email, {}).pop(external_id, None)
        return AdapterResult(success=True, task_id=external_id)

    def list_tasks(self, email: str):
        self.calls.append(("list", email, None))
        failure = self._pop_failure("list")
        if failure is not None:
            return failure, []
        todos = [
            ParsedTodo(
                uid=uid,
                title=payload.title,
                priority=payload.priority,
                is_completed=payload.is_completed,
            )
            for uid, payload in self.store.get(email, {}).items()
        ]
        return AdapterResult(success=True), todos

    def invalidate(self, email: str) -> None:
        self.invalidated.append(email)

    def objects(self, email: str) -> Dict[str, TaskPayload]:
        return self.store.get(email, {})


class Seed:
    """Create rows through short transactions and hand back their ids."""

    def profile(
        self,
        name: str,
        *,
        email: Optional[str] = "",
        sync_enabled: bool = True,
        role: UserRole = UserRole.USER,
        branch: Optional[str] = None,
    ) -> str:
        if email == "":
            email = f"{name}@hospital.example"
        with session_scope() as session:
            profile = Profile(
                full_name=name.title(),
                email=email,
                sync_enabled=sync_enabled,
                role=role,
                branch=branch,
            )
            session.add(profile)
            session.flush()
            return profile.id

    def task_list(self, owner_id: str, title: str = "Ward rounds") -> str:
        with session_scope() as session:
            folder = Folder(title=f"{title} folder", user_id=owner_id)
            session.add(folder)
            session.flush()
            task_list = TaskList(folder_id=folder.id, title=title)
            session.add(task_list)
            session.flush()
            return task_list.id

    def task(
        self,
        owner_id: str,
        *,
        title: str = "Check lab results",
        assignees: Tuple[str, ...] = (),
        list_id: Optional[str] = None,
        is_private: bool = False,
    ) -> str:
        list_id = list_id or self.task_list(owner_id)
        with session_scope() as session:
            task = Task(list_id=list_id, title=title, created_by=owner_id, is_private=is_private)
            task.assignees = [TaskAssignee(user_id=user_id) for user_id in assignees]
            session.add(task)
            session.flush()
            return task.id

    def link(self, task_id: str, user_id: str, external_id: Optional[str]) -> None:
        with session_scope() as session:
            session.get(TaskAssignee, (task_id, user_id)).external_task_id = external_id


@pytest.fixture
def seed() -> Seed:
    return Seed()


@pytest.fixture
def fake_client() -> FakeTaskClient:
    return FakeTaskClient()


@pytest.fixture
def reconciler(fake_client: FakeTaskClient) -> TaskSyncReconciler:
    return TaskSyncReconciler(fake_client, batch_size=20, max_retries=3, retry_backoff_seconds=60)
