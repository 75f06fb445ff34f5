"""Pydantic schemas for API requests and responses."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import FolderRole, ListType, SyncAction, SyncQueueStatus, TaskPriority, UserRole


class ProfileRead(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: UserRole
    branch: Optional[str] = None
    sync_enabled: bool = False

    model_config = ConfigDict(from_attributes=True)


class CalDavPasswordUpdate(BaseModel):
    password: Optional[str] = None


class SyncPreferenceUpdate(BaseModel):
    enabled: bool


class FolderBase(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    parent_id: Optional[str] = None
    branch: Optional[str] = None


class FolderCreate(FolderBase):
    pass


class FolderUpdate(FolderBase):
    pass


class FolderRead(FolderBase):
    id: str
    user_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FolderMemberCreate(BaseModel):
    user_id: str
    role: FolderRole = FolderRole.MEMBER
    can_add_task: bool = True
    can_assign_task: bool = True
    can_delete_task: bool = False
    can_add_list: bool = False


class FolderMemberRead(FolderMemberCreate):
    id: str
    folder_id: str

    model_config = ConfigDict(from_attributes=True)


class TaskListCreate(BaseModel):
    folder_id: str
    title: str = Field(min_length=1, max_length=255)
    type: ListType = ListType.LIST


class TaskListUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[ListType] = None


class TaskListRead(BaseModel):
    id: str
    folder_id: str
    title: str
    type: ListType
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskAssigneeRead(BaseModel):
    task_id: str
    user_id: str
    is_completed: bool = False
    assigned_at: Optional[datetime] = None
    external_task_id: Optional[str] = None
    profile: Optional[ProfileRead] = None

    model_config = ConfigDict(from_attributes=True)


class TaskCreate(BaseModel):
    list_id: str
    title: str = Field(min_length=1, max_length=500)
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    is_private: bool = False
    assignee_ids: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[TaskPriority] = None
    is_completed: Optional[bool] = None
    is_private: Optional[bool] = None
    list_id: Optional[str] = None


class TaskRead(BaseModel):
    id: str
    list_id: str
    title: str
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority
    is_completed: bool
    is_private: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    assignees: List[TaskAssigneeRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class AssignmentCreate(BaseModel):
    task_id: str
    user_id: str


class AssignmentCompletion(BaseModel):
    task_id: str
    is_completed: bool


class CommentCreate(BaseModel):
    content: str = Field(min_length=1)


class CommentRead(BaseModel):
    id: str
    task_id: str
    user_id: str
    content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReassignRequest(BaseModel):
    new_assignee_id: str


class SyncResult(BaseModel):
    email: str
    status: str
    external_id: Optional[str] = None
    error: Optional[str] = None
    original_error: Optional[str] = None
    reason: Optional[str] = None


class SyncResultList(BaseModel):
    success: bool = True
    results: List[SyncResult] = Field(default_factory=list)


class SyncQueueEntryRead(BaseModel):
    id: str
    task_id: str
    user_email: str
    action_type: SyncAction
    payload: dict[str, Any]
    status: SyncQueueStatus
    attempt: int
    retry_of: Optional[str] = None
    claimed_by: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ZimbraSyncRequest(BaseModel):
    direction: Literal["to_zimbra", "from_zimbra", "bidirectional"] = "to_zimbra"


class ExternalTaskRead(BaseModel):
    uid: str
    title: Optional[str] = None
    notes: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    is_completed: bool = False


class ZimbraSyncResponse(BaseModel):
    message: str
    queued: int = 0
    updated: int = 0
    tasks: List[ExternalTaskRead] = Field(default_factory=list)


class SyncJobStatus(BaseModel):
    job_id: str
    status: str
    processed: int = 0
    total: Optional[int] = None
    detail: Optional[dict[str, Any]] = None
    message: Optional[str] = None
