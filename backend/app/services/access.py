"""Row visibility and permission checks for the route handlers."""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import and_, exists, or_, select, true
from sqlalchemy.orm import Session

from ..models import Folder, FolderMember, Profile, Task, TaskAssignee, TaskList, UserRole

logger = logging.getLogger(__name__)

FOLDER_PERMISSIONS = {"can_add_task", "can_assign_task", "can_delete_task", "can_add_list"}


def visible_folders_clause(user: Profile):
    """Folders a user owns or is a member of; administrators see all."""
    if user.is_admin:
        return true()
    membership = exists().where(
        FolderMember.folder_id == Folder.id,
        FolderMember.user_id == user.id,
    )
    return or_(Folder.user_id == user.id, membership)


def visible_tasks_clause(user: Profile):
    """Tasks visible to ``user``.

    Private tasks are limited to their creator and assignees; other tasks are
    also visible through access to the folder that holds their list.
    """
    if user.is_admin:
        return true()
    assigned = exists().where(
        TaskAssignee.task_id == Task.id,
        TaskAssignee.user_id == user.id,
    )
    accessible_lists = (
        select(TaskList.id)
        .join(Folder, TaskList.folder_id == Folder.id)
        .where(visible_folders_clause(user))
    )
    return or_(
        Task.created_by == user.id,
        assigned,
        and_(Task.is_private.is_(False), Task.list_id.in_(accessible_lists)),
    )


def get_visible_task(session: Session, user: Profile, task_id: str) -> Optional[Task]:
    return session.execute(
        select(Task).where(Task.id == task_id, visible_tasks_clause(user))
    ).scalar_one_or_none()


def get_visible_folder(session: Session, user: Profile, folder_id: str) -> Optional[Folder]:
    return session.execute(
        select(Folder).where(Folder.id == folder_id, visible_folders_clause(user))
    ).scalar_one_or_none()


def folder_permission(session: Session, user: Profile, folder_id: str, flag: str) -> bool:
    """Return whether ``user`` may perform ``flag`` inside the folder."""
    if flag not in FOLDER_PERMISSIONS:
        raise ValueError(f"Unknown folder permission {flag!r}")
    if user.is_admin:
        return True
    folder = session.get(Folder, folder_id)
    if folder is None:
        return False
    if folder.user_id == user.id:
        return True
    member = session.execute(
        select(FolderMember).where(
            FolderMember.folder_id == folder_id,
            FolderMember.user_id == user.id,
        )
    ).scalar_one_or_none()
    return bool(member is not None and getattr(member, flag))


def can_manage_sync(actor: Profile, target: Profile) -> bool:
    """Superadmins manage everyone; secretaries only their own branch."""
    if actor.role == UserRole.SUPERADMIN:
        return True
    if actor.role == UserRole.SECRETARY:
        allowed = bool(actor.branch) and actor.branch == target.branch
        if not allowed:
            logger.info(
                "Secretary %s denied sync change for user %s outside branch", actor.id, target.id
            )
        return allowed
    return False
