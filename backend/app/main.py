"""FastAPI application for NeoList."""
from __future__ import annotations

import logging
from threading import Lock
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .config import get_settings
from .database import Base, apply_schema_upgrades, engine, open_session
from .models import (
    Comment,
    Folder,
    FolderMember,
    Profile,
    SyncAction,
    SyncQueueEntry,
    SyncQueueStatus,
    Task,
    TaskAssignee,
    TaskList,
)
from .schemas import (
    AssignmentCompletion,
    AssignmentCreate,
    CalDavPasswordUpdate,
    CommentCreate,
    CommentRead,
    ExternalTaskRead,
    FolderCreate,
    FolderMemberCreate,
    FolderMemberRead,
    FolderRead,
    FolderUpdate,
    ProfileRead,
    ReassignRequest,
    SyncJobStatus,
    SyncPreferenceUpdate,
    SyncQueueEntryRead,
    SyncResultList,
    TaskAssigneeRead,
    TaskCreate,
    TaskListCreate,
    TaskListRead,
    TaskListUpdate,
    TaskRead,
    TaskUpdate,
    ZimbraSyncRequest,
    ZimbraSyncResponse,
)
from .security import SecretEncryptionError, encrypt_secret
from .services.access import (
    can_manage_sync,
    folder_permission,
    get_visible_folder,
    get_visible_task,
    visible_folders_clause,
    visible_tasks_clause,
)
from .services.job_tracker import job_tracker
from .services.scheduler import scheduler
from .services.sync_reconciler import (
    QueueEntryError,
    SyncAssignee,
    SyncTask,
    TaskNotFoundError,
    TaskSyncReconciler,
    build_reconciler,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

apply_schema_upgrades()

app = FastAPI(title="NeoList", version="0.1.0")

_reconciler: Optional[TaskSyncReconciler] = None
_reconciler_lock = Lock()


def get_reconciler() -> TaskSyncReconciler:
    global _reconciler
    with _reconciler_lock:
        if _reconciler is None:
            _reconciler = build_reconciler()
        return _reconciler


def _run_scheduled_cycle() -> None:
    try:
        get_reconciler().run_cycle()
    except Exception:
        logger.exception("Scheduled sync queue cycle failed")


def _execute_drain_job(job_id: str, reconciler: TaskSyncReconciler, batch_size: Optional[int]) -> None:
    """Background execution for an admin-triggered queue drain."""

    logger.info("Starting sync queue drain job %s", job_id)
    job_tracker.mark_running(job_id)
    try:
        report = reconciler.drain_queue(batch_size=batch_size, worker_id=job_id)
    except Exception:
        logger.exception("Sync queue drain job %s failed", job_id)
        job_tracker.fail(job_id, "Sync queue drain failed.")
        return
    job_tracker.complete(job_id, report)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event() -> None:
    settings = get_settings()
    if settings.in_process_worker:
        scheduler.start(_run_scheduled_cycle, settings.queue_poll_seconds)


@app.on_event("shutdown")
def shutdown_event() -> None:
    scheduler.shutdown()


def get_db(x_user_id: Optional[str] = Header(default=None)):
    db = open_session(x_user_id)
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: Optional[str] = Header(default=None), db: Session = Depends(get_db)
) -> Profile:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.get(Profile, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def _require_admin(user: Profile) -> None:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required")


def _task_or_404(db: Session, user: Profile, task_id: str) -> Task:
    task = get_visible_task(db, user, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def _folder_of_list(db: Session, list_id: str) -> TaskList:
    task_list = db.get(TaskList, list_id)
    if task_list is None:
        raise HTTPException(status_code=404, detail="List not found")
    return task_list


def _can_manage_folder(user: Profile, folder: Folder) -> bool:
    return user.is_admin or folder.user_id == user.id


def _queue_task_removal(db: Session, reconciler: TaskSyncReconciler, tasks: List[Task]) -> None:
    for task in tasks:
        reconciler.enqueue_task_change(db, task, SyncAction.DELETE)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# -- folders -------------------------------------------------------------------


@app.get("/folders", response_model=List[FolderRead])
def list_folders(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return (
        db.execute(select(Folder).where(visible_folders_clause(user)).order_by(Folder.title))
        .scalars()
        .all()
    )


@app.post("/folders", response_model=FolderRead, status_code=201)
def create_folder(
    payload: FolderCreate, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)
):
    if payload.parent_id and get_visible_folder(db, user, payload.parent_id) is None:
        raise HTTPException(status_code=404, detail="Parent folder not found")
    folder = Folder(
        title=payload.title,
        parent_id=payload.parent_id,
        branch=payload.branch if payload.branch is not None else user.branch,
        user_id=user.id,
    )
    db.add(folder)
    db.commit()
    db.refresh(folder)
    logger.info("User %s created folder %s", user.id, folder.id)
    return folder


@app.put("/folders/{folder_id}", response_model=FolderRead)
def update_folder(
    folder_id: str,
    payload: FolderUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    folder = get_visible_folder(db, user, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    if not _can_manage_folder(user, folder):
        raise HTTPException(status_code=403, detail="Only the folder owner can change it")
    if payload.parent_id == folder.id:
        raise HTTPException(status_code=400, detail="A folder cannot be its own parent")
    folder.title = payload.title
    folder.parent_id = payload.parent_id
    folder.branch = payload.branch
    db.commit()
    db.refresh(folder)
    return folder


@app.delete("/folders/{folder_id}")
def delete_folder(
    folder_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict[str, bool]:
    folder = get_visible_folder(db, user, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    if not _can_manage_folder(user, folder):
        raise HTTPException(status_code=403, detail="Only the folder owner can delete it")
    children = db.execute(select(Folder.id).where(Folder.parent_id == folder_id)).first()
    if children is not None:
        raise HTTPException(status_code=409, detail="Folder still contains subfolders")

    _queue_task_removal(db, reconciler, [task for task_list in folder.lists for task in task_list.tasks])
    db.delete(folder)
    db.commit()
    logger.info("User %s deleted folder %s", user.id, folder_id)
    return {"deleted": True}


@app.post("/folders/{folder_id}/members", response_model=FolderMemberRead, status_code=201)
def add_folder_member(
    folder_id: str,
    payload: FolderMemberCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    folder = get_visible_folder(db, user, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    if not _can_manage_folder(user, folder):
        raise HTTPException(status_code=403, detail="Only the folder owner can share it")
    if db.get(Profile, payload.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    member = FolderMember(folder_id=folder_id, **payload.model_dump())
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="User is already a member of this folder")
    db.refresh(member)
    return member


@app.delete("/folders/{folder_id}/members/{member_user_id}")
def remove_folder_member(
    folder_id: str,
    member_user_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    folder = get_visible_folder(db, user, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    if not _can_manage_folder(user, folder) and member_user_id != user.id:
        raise HTTPException(status_code=403, detail="Only the folder owner can remove members")
    member = db.execute(
        select(FolderMember).where(
            FolderMember.folder_id == folder_id, FolderMember.user_id == member_user_id
        )
    ).scalar_one_or_none()
    if member is None:
        raise HTTPException(status_code=404, detail="Membership not found")
    db.delete(member)
    db.commit()
    return {"deleted": True}


# -- lists ---------------------------------------------------------------------


@app.get("/lists", response_model=List[TaskListRead])
def list_task_lists(
    folder_id: str = Query(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if get_visible_folder(db, user, folder_id) is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    return (
        db.execute(select(TaskList).where(TaskList.folder_id == folder_id).order_by(TaskList.created_at))
        .scalars()
        .all()
    )


@app.post("/lists", response_model=TaskListRead, status_code=201)
def create_task_list(
    payload: TaskListCreate, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)
):
    if get_visible_folder(db, user, payload.folder_id) is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    if not folder_permission(db, user, payload.folder_id, "can_add_list"):
        raise HTTPException(status_code=403, detail="Not allowed to add lists to this folder")
    task_list = TaskList(folder_id=payload.folder_id, title=payload.title, type=payload.type)
    db.add(task_list)
    db.commit()
    db.refresh(task_list)
    return task_list


@app.put("/lists/{list_id}", response_model=TaskListRead)
def update_task_list(
    list_id: str,
    payload: TaskListUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task_list = _folder_of_list(db, list_id)
    if get_visible_folder(db, user, task_list.folder_id) is None:
        raise HTTPException(status_code=404, detail="List not found")
    if not folder_permission(db, user, task_list.folder_id, "can_add_list"):
        raise HTTPException(status_code=403, detail="Not allowed to change lists in this folder")
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(task_list, key, value)
    db.commit()
    db.refresh(task_list)
    return task_list


@app.delete("/lists/{list_id}")
def delete_task_list(
    list_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict[str, bool]:
    task_list = _folder_of_list(db, list_id)
    if get_visible_folder(db, user, task_list.folder_id) is None:
        raise HTTPException(status_code=404, detail="List not found")
    if not folder_permission(db, user, task_list.folder_id, "can_add_list"):
        raise HTTPException(status_code=403, detail="Not allowed to delete lists in this folder")
    _queue_task_removal(db, reconciler, list(task_list.tasks))
    db.delete(task_list)
    db.commit()
    return {"deleted": True}


# -- tasks ---------------------------------------------------------------------


@app.get("/tasks", response_model=List[TaskRead])
def list_tasks(
    list_id: Optional[str] = None,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = (
        select(Task)
        .where(visible_tasks_clause(user))
        .options(selectinload(Task.assignees).selectinload(TaskAssignee.profile))
        .order_by(Task.created_at)
    )
    if list_id:
        query = query.where(Task.list_id == list_id)
    return db.execute(query).scalars().all()


@app.post("/tasks", response_model=TaskRead, status_code=201)
def create_task(
    payload: TaskCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    task_list = _folder_of_list(db, payload.list_id)
    if not folder_permission(db, user, task_list.folder_id, "can_add_task"):
        raise HTTPException(status_code=403, detail="Not allowed to add tasks to this list")
    assignee_ids = list(dict.fromkeys(payload.assignee_ids))
    if assignee_ids and not folder_permission(db, user, task_list.folder_id, "can_assign_task"):
        raise HTTPException(status_code=403, detail="Not allowed to assign tasks in this list")
    known = set(db.execute(select(Profile.id).where(Profile.id.in_(assignee_ids))).scalars())
    missing = [user_id for user_id in assignee_ids if user_id not in known]
    if missing:
        raise HTTPException(status_code=404, detail=f"Unknown users: {', '.join(missing)}")

    task = Task(
        **payload.model_dump(exclude={"assignee_ids"}),
        created_by=user.id,
    )
    task.assignees = [TaskAssignee(user_id=user_id) for user_id in assignee_ids]
    db.add(task)
    db.flush()
    reconciler.enqueue_task_change(db, task, SyncAction.CREATE)
    db.commit()
    db.refresh(task)
    logger.info("User %s created task %s with %s assignees", user.id, task.id, len(assignee_ids))
    return task


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return _task_or_404(db, user, task_id)


def _may_edit_task(db: Session, user: Profile, task: Task) -> bool:
    if user.is_admin or task.created_by == user.id:
        return True
    if any(row.user_id == user.id for row in task.assignees):
        return True
    return folder_permission(db, user, task.task_list.folder_id, "can_add_task")


@app.put("/tasks/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    task = _task_or_404(db, user, task_id)
    if not _may_edit_task(db, user, task):
        raise HTTPException(status_code=403, detail="Not allowed to edit this task")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("list_id") and changes["list_id"] != task.list_id:
        target = _folder_of_list(db, changes["list_id"])
        if not folder_permission(db, user, target.folder_id, "can_add_task"):
            raise HTTPException(status_code=403, detail="Not allowed to move the task there")
    for key, value in changes.items():
        if key in {"title", "priority", "is_completed", "is_private", "list_id"} and value is None:
            continue
        setattr(task, key, value)
    db.flush()
    reconciler.enqueue_task_change(db, task, SyncAction.UPDATE)
    db.commit()
    db.refresh(task)
    return task


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict[str, bool]:
    task = _task_or_404(db, user, task_id)
    allowed = (
        user.is_admin
        or task.created_by == user.id
        or folder_permission(db, user, task.task_list.folder_id, "can_delete_task")
    )
    if not allowed:
        raise HTTPException(status_code=403, detail="Not allowed to delete this task")
    _queue_task_removal(db, reconciler, [task])
    db.delete(task)
    db.commit()
    logger.info("User %s deleted task %s", user.id, task_id)
    return {"deleted": True}


# -- assignees -----------------------------------------------------------------


@app.post("/task-assignees", response_model=TaskAssigneeRead, status_code=201)
def assign_task(
    payload: AssignmentCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    task = _task_or_404(db, user, payload.task_id)
    allowed = (
        user.is_admin
        or task.created_by == user.id
        or folder_permission(db, user, task.task_list.folder_id, "can_assign_task")
    )
    if not allowed:
        raise HTTPException(status_code=403, detail="Not allowed to assign this task")
    if db.get(Profile, payload.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    if db.get(TaskAssignee, (payload.task_id, payload.user_id)) is not None:
        raise HTTPException(status_code=409, detail="User is already assigned to this task")

    assignment = TaskAssignee(task_id=payload.task_id, user_id=payload.user_id)
    db.add(assignment)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="User is already assigned to this task")
    reconciler.enqueue_assignment(
        db, SyncTask.from_model(task), SyncAssignee.from_model(assignment), SyncAction.CREATE
    )
    db.commit()
    db.refresh(assignment)
    return assignment


@app.delete("/task-assignees/{assignee_id}")
def unassign_task(
    assignee_id: str,
    task_id: str = Query(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict[str, bool]:
    task = _task_or_404(db, user, task_id)
    assignment = db.get(TaskAssignee, (task_id, assignee_id))
    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")
    allowed = (
        user.is_admin
        or assignee_id == user.id
        or task.created_by == user.id
        or folder_permission(db, user, task.task_list.folder_id, "can_assign_task")
    )
    if not allowed:
        raise HTTPException(status_code=403, detail="Not allowed to change assignees")
    reconciler.enqueue_assignment(
        db, SyncTask.from_model(task), SyncAssignee.from_model(assignment), SyncAction.DELETE
    )
    db.delete(assignment)
    db.commit()
    return {"deleted": True}


@app.put("/task-assignees/{assignee_id}/completion", response_model=TaskAssigneeRead)
def complete_assignment(
    assignee_id: str,
    payload: AssignmentCompletion,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    task = _task_or_404(db, user, payload.task_id)
    assignment = db.get(TaskAssignee, (payload.task_id, assignee_id))
    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")
    if assignee_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Only the assignee can complete their part")
    assignment.is_completed = payload.is_completed
    reconciler.roll_up_completion(db, task)
    db.commit()
    db.refresh(assignment)
    return assignment


# -- comments ------------------------------------------------------------------


@app.get("/tasks/{task_id}/comments", response_model=List[CommentRead])
def list_comments(task_id: str, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    _task_or_404(db, user, task_id)
    return (
        db.execute(select(Comment).where(Comment.task_id == task_id).order_by(Comment.created_at))
        .scalars()
        .all()
    )


@app.post("/tasks/{task_id}/comments", response_model=CommentRead, status_code=201)
def add_comment(
    task_id: str,
    payload: CommentCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _task_or_404(db, user, task_id)
    comment = Comment(task_id=task_id, user_id=user.id, content=payload.content)
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment


@app.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: str, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)
) -> dict[str, bool]:
    comment = db.get(Comment, comment_id)
    if comment is None or get_visible_task(db, user, comment.task_id) is None:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Only the author can delete this comment")
    db.delete(comment)
    db.commit()
    return {"deleted": True}


# -- profiles ------------------------------------------------------------------


@app.get("/profiles/me", response_model=ProfileRead)
def read_own_profile(user: Profile = Depends(get_current_user)):
    return user


@app.put("/profiles/me/caldav-password", response_model=ProfileRead)
def update_caldav_password(
    payload: CalDavPasswordUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    if payload.password:
        try:
            user.caldav_password = encrypt_secret(payload.password)
        except SecretEncryptionError as exc:
            logger.error("Cannot store CalDAV password for %s: %s", user.id, exc)
            raise HTTPException(status_code=503, detail="Secret storage is not configured")
    else:
        user.caldav_password = None
    db.commit()
    db.refresh(user)
    if user.email:
        reconciler.client.invalidate(user.email)
    return user


@app.post("/profiles/{profile_id}/sync")
def update_sync_preference(
    profile_id: str,
    payload: SyncPreferenceUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict:
    target = db.get(Profile, profile_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not can_manage_sync(user, target):
        raise HTTPException(status_code=403, detail="Not allowed to change sync for this user")
    target.sync_enabled = payload.enabled
    db.commit()
    logger.info("User %s set sync_enabled=%s for %s", user.id, payload.enabled, profile_id)

    queued = reconciler.queue_user_tasks(profile_id) if payload.enabled else 0
    return {"success": True, "sync_enabled": payload.enabled, "queued": queued}


# -- zimbra --------------------------------------------------------------------


def _require_sync_identity(user: Profile) -> str:
    if not user.email:
        raise HTTPException(status_code=400, detail="No email address on profile")
    return user.email


@app.post("/zimbra/sync", response_model=ZimbraSyncResponse)
def sync_own_tasks(
    payload: ZimbraSyncRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> ZimbraSyncResponse:
    _require_sync_identity(user)
    if not user.sync_enabled:
        raise HTTPException(status_code=409, detail="Sync is disabled for this user")
    user_id = user.id
    db.commit()

    updated = 0
    if payload.direction in ("from_zimbra", "bidirectional"):
        report = reconciler.pull_completion(user_id)
        if report.error:
            raise HTTPException(status_code=502, detail=f"Task folder unavailable: {report.error}")
        updated = report.changed
    queued = 0
    if payload.direction in ("to_zimbra", "bidirectional"):
        queued = reconciler.queue_user_tasks(user_id)
    return ZimbraSyncResponse(
        message=f"{updated} completions read back, {queued} tasks queued for sync",
        queued=queued,
        updated=updated,
    )


@app.get("/zimbra/tasks", response_model=List[ExternalTaskRead])
def list_external_tasks(
    user: Profile = Depends(get_current_user),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
):
    email = _require_sync_identity(user)
    result, todos = reconciler.client.list_tasks(email)
    if not result.success:
        raise HTTPException(status_code=502, detail=f"Task folder unavailable: {result.error}")
    return [ExternalTaskRead.model_validate(todo.model_dump()) for todo in todos]


# -- admin ---------------------------------------------------------------------


@app.get("/admin/tasks", response_model=List[TaskRead])
def admin_list_tasks(
    assignee_id: Optional[str] = None,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_admin(user)
    query = (
        select(Task)
        .options(selectinload(Task.assignees).selectinload(TaskAssignee.profile))
        .order_by(Task.created_at.desc())
    )
    if assignee_id:
        query = query.where(
            Task.id.in_(select(TaskAssignee.task_id).where(TaskAssignee.user_id == assignee_id))
        )
    return db.execute(query).scalars().all()


@app.put("/admin/tasks/{task_id}/reassign", response_model=SyncResultList)
def admin_reassign_task(
    task_id: str,
    payload: ReassignRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> SyncResultList:
    _require_admin(user)
    task = db.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    snapshot = SyncTask.from_model(task)
    old_assignees = [SyncAssignee.from_model(row) for row in task.assignees]
    # The reconciler works in its own transactions.
    db.commit()
    try:
        outcomes = reconciler.reassign(snapshot, old_assignees, payload.new_assignee_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("Admin %s reassigned task %s to %s", user.id, task_id, payload.new_assignee_id)
    return SyncResultList(results=[outcome.to_dict() for outcome in outcomes])


@app.post("/admin/tasks/{task_id}/sync", response_model=SyncResultList)
def admin_force_sync(
    task_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> SyncResultList:
    _require_admin(user)
    db.commit()
    try:
        outcomes = reconciler.force_sync_all(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    return SyncResultList(results=[outcome.to_dict() for outcome in outcomes])


@app.get("/admin/sync-queue", response_model=List[SyncQueueEntryRead])
def admin_list_queue(
    status: Optional[SyncQueueStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_admin(user)
    query = select(SyncQueueEntry).order_by(SyncQueueEntry.created_at.desc()).limit(limit)
    if status is not None:
        query = query.where(SyncQueueEntry.status == status)
    return db.execute(query).scalars().all()


@app.post("/admin/sync-queue/drain", response_model=SyncJobStatus)
def admin_drain_queue(
    background_tasks: BackgroundTasks,
    batch_size: Optional[int] = Query(default=None, ge=1, le=500),
    user: Profile = Depends(get_current_user),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> SyncJobStatus:
    _require_admin(user)
    state = job_tracker.create("drain")
    background_tasks.add_task(_execute_drain_job, state.job_id, reconciler, batch_size)
    return state.to_status()


@app.post("/admin/sync-queue/{entry_id}/retry")
def admin_retry_entry(
    entry_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    reconciler: TaskSyncReconciler = Depends(get_reconciler),
) -> dict[str, str]:
    _require_admin(user)
    db.commit()
    try:
        new_id = reconciler.retry_entry(entry_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Queue entry not found")
    except QueueEntryError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Entry has already been retried")
    return {"entry_id": new_id, "retry_of": entry_id}


@app.get("/jobs/{job_id}", response_model=SyncJobStatus)
def get_job_status(job_id: str, user: Profile = Depends(get_current_user)) -> SyncJobStatus:
    _require_admin(user)
    state = job_tracker.get(job_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return state.to_status()
