from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class TaskRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"
    NONE = "none"


class ShareRole(str, Enum):
    EDITOR = "editor"
    VIEWER = "viewer"


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    MARK_COMPLETE = "mark_complete"
    DELETE = "delete"
    SHARE = "share"


class NotificationKind(str, Enum):
    SHARE_TASK = "share_task"
    TASK_UPDATE = "task_update"
    TASK_COMPLETE = "task_complete"
    COMMENT = "comment"


class UserCreate(BaseModel):
    email: str = Field(min_length=3)
    name: str = Field(min_length=1)

    @model_validator(mode="after")
    def normalize_fields(self) -> "UserCreate":
        self.email = normalize_email(self.email)
        self.name = self.name.strip()
        if "@" not in self.email:
            raise ValueError("email must contain '@'")
        if not self.name:
            raise ValueError("name must not be blank")
        return self


class UserRead(BaseModel):
    id: int
    email: str
    name: str


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskCreate":
        self.title = self.title.strip()
        if not self.title:
            raise ValueError("title must not be blank")
        return self


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    completed: bool | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> "TaskUpdate":
        if self.title is None and self.description is None and self.completed is None:
            raise ValueError("at least one of title, description or completed is required")
        if self.title is not None:
            self.title = self.title.strip()
            if not self.title:
                raise ValueError("title must not be blank")
        return self

    @property
    def touches_content(self) -> bool:
        return self.title is not None or self.description is not None

    @property
    def touches_completion(self) -> bool:
        return self.completed is not None


class SharedWithEntry(BaseModel):
    user_id: int
    role: ShareRole


class TaskPermissions(BaseModel):
    role: TaskRole
    is_owner: bool
    can_edit: bool
    can_delete: bool
    can_share: bool


class TaskRead(BaseModel):
    id: int
    owner_id: int
    title: str
    description: str = ""
    completed: bool = False
    completed_at: str | None = None
    created_at: str
    updated_at: str
    shared_with: list[SharedWithEntry] = Field(default_factory=list)
    permissions: TaskPermissions


class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1)

    @model_validator(mode="after")
    def normalize_fields(self) -> "SubtaskCreate":
        self.title = self.title.strip()
        if not self.title:
            raise ValueError("title must not be blank")
        return self


class SubtaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    completed: bool | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> "SubtaskUpdate":
        if self.title is None and self.completed is None:
            raise ValueError("title or completed is required")
        if self.title is not None:
            self.title = self.title.strip()
            if not self.title:
                raise ValueError("title must not be blank")
        return self


class SubtaskRead(BaseModel):
    id: int
    task_id: int
    title: str
    completed: bool = False
    created_at: str


class PermissionCreate(BaseModel):
    user_id: int | None = None
    email: str | None = None
    # Raw value; normalized by the sharing layer so unknown roles map to 400.
    role: Any = None


class PermissionUpdate(BaseModel):
    role: Any = None


class PermissionRead(BaseModel):
    id: int
    task_id: int
    user_id: int
    role: ShareRole
    created_at: str
    updated_at: str
    user_name: str | None = None
    user_email: str | None = None


class NotificationRead(BaseModel):
    id: int
    recipient_id: int
    sender_id: int
    task_id: int | None = None
    kind: NotificationKind
    message: str
    read: bool = False
    created_at: str
    sender_name: str | None = None
    task_title: str | None = None


class NotificationsReadAllResponse(BaseModel):
    user_id: int
    updated: int


class DeliverySubmission(BaseModel):
    delivered: bool
    channel_url: str | None = None
    status_code: int | None = None
    message: str | None = None


def normalize_email(value: str) -> str:
    return value.strip().lower()
