"""SQLAlchemy models for NeoList."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


def _value_enum(enum_cls):
    # Store the enum values rather than member names so rows written by the
    # existing Oracle schema remain readable.
    return SqlEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
    )


class UserRole(str, Enum):
    USER = "user"
    SECRETARY = "secretary"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ListType(str, Enum):
    LIST = "list"
    KANBAN = "kanban"


class FolderRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class SyncAction(str, Enum):
    """Side effect a queue entry asks the worker to apply externally."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncQueueStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"


class Profile(Base):
    """Application user as provisioned by the hospital directory."""

    __tablename__ = "profiles"

    id = Column(String(32), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=True)
    full_name = Column(String(255), nullable=True)
    role = Column(_value_enum(UserRole), default=UserRole.USER, nullable=False)
    branch = Column(String(255), nullable=True)
    sync_enabled = Column(Boolean, default=False, nullable=False)
    caldav_password = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPERADMIN)


class Folder(Base):
    __tablename__ = "folders"

    id = Column(String(32), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    user_id = Column(String(32), ForeignKey("profiles.id"), nullable=False)
    parent_id = Column(String(32), ForeignKey("folders.id"), nullable=True)
    branch = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    members = relationship("FolderMember", back_populates="folder", cascade="all, delete-orphan")
    lists = relationship("TaskList", back_populates="folder", cascade="all, delete-orphan")


class FolderMember(Base):
    """Membership of a user in a shared folder, with per-action permissions."""

    __tablename__ = "folder_members"
    __table_args__ = (UniqueConstraint("folder_id", "user_id", name="uq_folder_member"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    folder_id = Column(String(32), ForeignKey("folders.id"), nullable=False)
    user_id = Column(String(32), ForeignKey("profiles.id"), nullable=False)
    role = Column(_value_enum(FolderRole), default=FolderRole.MEMBER, nullable=False)
    can_add_task = Column(Boolean, default=True, nullable=False)
    can_assign_task = Column(Boolean, default=True, nullable=False)
    can_delete_task = Column(Boolean, default=False, nullable=False)
    can_add_list = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    folder = relationship("Folder", back_populates="members")
    profile = relationship("Profile")


class TaskList(Base):
    __tablename__ = "lists"

    id = Column(String(32), primary_key=True, default=_new_id)
    folder_id = Column(String(32), ForeignKey("folders.id"), nullable=False)
    title = Column(String(255), nullable=False)
    type = Column(_value_enum(ListType), default=ListType.LIST, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    folder = relationship("Folder", back_populates="lists")
    tasks = relationship("Task", back_populates="task_list", cascade="all, delete-orphan")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(32), primary_key=True, default=_new_id)
    list_id = Column(String(32), ForeignKey("lists.id"), nullable=False)
    title = Column(String(500), nullable=False)
    notes = Column(Text, nullable=True)
    due_date = Column(DateTime, nullable=True)
    priority = Column(_value_enum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    created_by = Column(String(32), ForeignKey("profiles.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    task_list = relationship("TaskList", back_populates="tasks")
    assignees = relationship("TaskAssignee", back_populates="task", cascade="all, delete-orphan")
    comments = relationship("Comment", back_populates="task", cascade="all, delete-orphan")


class TaskAssignee(Base):
    """Join row between a task and a user; carries the external task link."""

    __tablename__ = "task_assignees"

    task_id = Column(String(32), ForeignKey("tasks.id"), primary_key=True)
    user_id = Column(String(32), ForeignKey("profiles.id"), primary_key=True)
    is_completed = Column(Boolean, default=False, nullable=False)
    assigned_at = Column(DateTime, default=utcnow)
    # Set only after the external store confirmed the create.
    external_task_id = Column(String(255), nullable=True)

    task = relationship("Task", back_populates="assignees")
    profile = relationship("Profile")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String(32), primary_key=True, default=_new_id)
    task_id = Column(String(32), ForeignKey("tasks.id"), nullable=False)
    user_id = Column(String(32), ForeignKey("profiles.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    task = relationship("Task", back_populates="comments")
    profile = relationship("Profile")


class SyncQueueEntry(Base):
    """Durable intent to mirror one assignment change into the external store."""

    __tablename__ = "sync_queue"

    id = Column(String(32), primary_key=True, default=_new_id)
    task_id = Column(String(32), nullable=False, index=True)
    user_email = Column(String(255), nullable=False)
    action_type = Column(_value_enum(SyncAction), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        _value_enum(SyncQueueStatus),
        default=SyncQueueStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempt = Column(Integer, default=1, nullable=False)
    # Unique so concurrent workers cannot schedule two retries of one entry.
    retry_of = Column(String(32), nullable=True, unique=True)
    claimed_by = Column(String(128), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
