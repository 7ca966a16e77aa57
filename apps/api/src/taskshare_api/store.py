from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from taskshare_api.access_policy import describe_permissions, normalize_share_role, resolve_role
from taskshare_api.errors import ConflictError, InfrastructureError, NotFoundError, ValidationError
from taskshare_api.schemas import (
    NotificationKind,
    NotificationRead,
    PermissionRead,
    SharedWithEntry,
    ShareRole,
    SubtaskCreate,
    SubtaskRead,
    SubtaskUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UserCreate,
    UserRead,
    normalize_email,
)

logger = logging.getLogger(__name__)


@dataclass
class _UserRecord:
    id: int
    email: str
    name: str


@dataclass
class _TaskRecord:
    id: int
    owner_id: int
    title: str
    description: str
    created_at: str
    updated_at: str
    completed: bool = False
    completed_at: str | None = None


@dataclass
class _SubtaskRecord:
    id: int
    task_id: int
    title: str
    created_at: str
    completed: bool = False


@dataclass
class _PermissionRecord:
    id: int
    task_id: int
    user_id: int
    role: str
    created_at: str
    updated_at: str


@dataclass
class _NotificationRecord:
    id: int
    recipient_id: int
    sender_id: int
    task_id: int | None
    kind: str
    message: str
    created_at: str
    read: bool = False


@dataclass(frozen=True)
class TaskGrant:
    task_id: int
    owner_id: int
    title: str
    grant_role: ShareRole | None


@dataclass(frozen=True)
class TaskUpdateResult:
    task: TaskRead
    became_completed: bool


class InMemoryStore:
    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._lock = threading.RLock()
        self._users: dict[int, _UserRecord] = {}
        self._users_by_email: dict[str, int] = {}
        self._tasks: dict[int, _TaskRecord] = {}
        self._subtasks: dict[int, _SubtaskRecord] = {}
        self._permissions: dict[int, _PermissionRecord] = {}
        self._permission_index: dict[tuple[int, int], int] = {}
        self._notifications: dict[int, _NotificationRecord] = {}
        self._user_seq = 1
        self._task_seq = 1
        self._subtask_seq = 1
        self._permission_seq = 1
        self._notification_seq = 1
        self._load_state()

    def create_user(self, user: UserCreate) -> UserRead:
        with self._lock:
            if user.email in self._users_by_email:
                raise ConflictError(f"user with email '{user.email}' already exists")

            user_id = self._user_seq
            self._user_seq += 1
            record = _UserRecord(id=user_id, email=user.email, name=user.name)
            self._users[user_id] = record
            self._users_by_email[record.email] = user_id

            def undo() -> None:
                del self._users[user_id]
                del self._users_by_email[record.email]

            self._commit(undo)
            return self._to_user_read(record)

    def get_user(self, user_id: int) -> UserRead:
        with self._lock:
            return self._to_user_read(self._require_user(user_id))

    def find_user_by_email(self, email: str) -> UserRead:
        normalized = normalize_email(email)
        with self._lock:
            user_id = self._users_by_email.get(normalized)
            if user_id is None:
                raise NotFoundError(f"no user registered with email '{normalized}'")
            return self._to_user_read(self._users[user_id])

    def create_task(self, owner_id: int, task: TaskCreate) -> TaskRead:
        with self._lock:
            self._require_user(owner_id)
            task_id = self._task_seq
            self._task_seq += 1
            now = self._utc_now()
            record = _TaskRecord(
                id=task_id,
                owner_id=owner_id,
                title=task.title,
                description=task.description,
                created_at=now,
                updated_at=now,
            )
            self._tasks[task_id] = record

            def undo() -> None:
                del self._tasks[task_id]

            self._commit(undo)
            return self._to_task_read(record, viewer_id=owner_id)

    def get_task(self, task_id: int, *, viewer_id: int) -> TaskRead:
        with self._lock:
            return self._to_task_read(self._require_task(task_id), viewer_id=viewer_id)

    def list_tasks_for_user(self, user_id: int) -> list[TaskRead]:
        with self._lock:
            shared_task_ids = {task_id for task_id, grantee_id in self._permission_index if grantee_id == user_id}
            return [
                self._to_task_read(record, viewer_id=user_id)
                for record in sorted(self._tasks.values(), key=lambda item: item.id)
                if record.owner_id == user_id or record.id in shared_task_ids
            ]

    def get_task_grant(self, task_id: int, user_id: int) -> TaskGrant:
        with self._lock:
            record = self._require_task(task_id)
            return TaskGrant(
                task_id=record.id,
                owner_id=record.owner_id,
                title=record.title,
                grant_role=self._grant_role(task_id, user_id),
            )

    def update_task(self, task_id: int, update: TaskUpdate, *, viewer_id: int) -> TaskUpdateResult:
        with self._lock:
            previous = self._require_task(task_id)
            now = self._utc_now()
            changes: dict[str, Any] = {"updated_at": now}
            if update.title is not None:
                changes["title"] = update.title
            if update.description is not None:
                changes["description"] = update.description

            became_completed = False
            if update.completed is True and not previous.completed:
                changes["completed"] = True
                changes["completed_at"] = now
                became_completed = True
            elif update.completed is False and previous.completed:
                changes["completed"] = False
                changes["completed_at"] = None

            updated = replace(previous, **changes)
            self._tasks[task_id] = updated

            def undo() -> None:
                self._tasks[task_id] = previous

            self._commit(undo)
            return TaskUpdateResult(
                task=self._to_task_read(updated, viewer_id=viewer_id),
                became_completed=became_completed,
            )

    def delete_task(self, task_id: int) -> int:
        with self._lock:
            record = self._require_task(task_id)
            removed_subtasks = {
                subtask_id: subtask for subtask_id, subtask in self._subtasks.items() if subtask.task_id == task_id
            }
            removed_permissions = {
                permission_id: permission
                for permission_id, permission in self._permissions.items()
                if permission.task_id == task_id
            }
            del self._tasks[task_id]
            for subtask_id in removed_subtasks:
                del self._subtasks[subtask_id]
            for permission_id, permission in removed_permissions.items():
                del self._permissions[permission_id]
                del self._permission_index[(permission.task_id, permission.user_id)]

            def undo() -> None:
                self._tasks[task_id] = record
                self._subtasks.update(removed_subtasks)
                for permission_id, permission in removed_permissions.items():
                    self._permissions[permission_id] = permission
                    self._permission_index[(permission.task_id, permission.user_id)] = permission_id

            self._commit(undo)
            return len(removed_permissions)

    def list_subtasks(self, task_id: int) -> list[SubtaskRead]:
        with self._lock:
            self._require_task(task_id)
            return [
                self._to_subtask_read(record)
                for record in sorted(self._subtasks.values(), key=lambda item: item.id)
                if record.task_id == task_id
            ]

    def create_subtask(self, task_id: int, subtask: SubtaskCreate) -> SubtaskRead:
        with self._lock:
            self._require_task(task_id)
            subtask_id = self._subtask_seq
            self._subtask_seq += 1
            record = _SubtaskRecord(
                id=subtask_id,
                task_id=task_id,
                title=subtask.title,
                created_at=self._utc_now(),
            )
            self._subtasks[subtask_id] = record

            def undo() -> None:
                del self._subtasks[subtask_id]

            self._commit(undo)
            return self._to_subtask_read(record)

    def update_subtask(self, task_id: int, subtask_id: int, subtask: SubtaskUpdate) -> SubtaskRead:
        with self._lock:
            previous = self._require_subtask(task_id, subtask_id)
            changes: dict[str, Any] = {}
            if subtask.title is not None:
                changes["title"] = subtask.title
            if subtask.completed is not None:
                changes["completed"] = subtask.completed
            updated = replace(previous, **changes)
            self._subtasks[subtask_id] = updated

            def undo() -> None:
                self._subtasks[subtask_id] = previous

            self._commit(undo)
            return self._to_subtask_read(updated)

    def delete_subtask(self, task_id: int, subtask_id: int) -> None:
        with self._lock:
            record = self._require_subtask(task_id, subtask_id)
            del self._subtasks[subtask_id]

            def undo() -> None:
                self._subtasks[subtask_id] = record

            self._commit(undo)

    def find_permission(self, task_id: int, user_id: int) -> PermissionRead | None:
        with self._lock:
            permission_id = self._permission_index.get((task_id, user_id))
            if permission_id is None:
                return None
            return self._to_permission_read(self._permissions[permission_id])

    def get_permission(self, permission_id: int) -> PermissionRead:
        with self._lock:
            record = self._permissions.get(permission_id)
            if record is None:
                raise NotFoundError(f"permission {permission_id} not found")
            return self._to_permission_read(record)

    def insert_permission(self, task_id: int, user_id: int, role: ShareRole) -> PermissionRead:
        with self._lock:
            task = self._require_task(task_id)
            self._require_user(user_id)
            if user_id == task.owner_id:
                raise ValidationError(f"user {user_id} owns task {task_id} and cannot hold a grant on it")
            key = (task_id, user_id)
            if key in self._permission_index:
                raise ConflictError(f"duplicate permission for task {task_id} and user {user_id}")

            permission_id = self._permission_seq
            self._permission_seq += 1
            now = self._utc_now()
            record = _PermissionRecord(
                id=permission_id,
                task_id=task_id,
                user_id=user_id,
                role=role.value,
                created_at=now,
                updated_at=now,
            )
            self._permissions[permission_id] = record
            self._permission_index[key] = permission_id

            def undo() -> None:
                del self._permissions[permission_id]
                del self._permission_index[key]

            self._commit(undo)
            return self._to_permission_read(record)

    def update_permission_role(self, permission_id: int, role: ShareRole) -> PermissionRead:
        with self._lock:
            previous = self._permissions.get(permission_id)
            if previous is None:
                raise NotFoundError(f"permission {permission_id} not found")
            if previous.role == role.value:
                return self._to_permission_read(previous)

            updated = replace(previous, role=role.value, updated_at=self._utc_now())
            self._permissions[permission_id] = updated

            def undo() -> None:
                self._permissions[permission_id] = previous

            self._commit(undo)
            return self._to_permission_read(updated)

    def delete_permission(self, task_id: int, user_id: int) -> bool:
        with self._lock:
            self._require_task(task_id)
            permission_id = self._permission_index.get((task_id, user_id))
            if permission_id is None:
                return False
            self._remove_permission(permission_id)
            return True

    def delete_permission_by_id(self, task_id: int, permission_id: int) -> bool:
        with self._lock:
            self._require_task(task_id)
            record = self._permissions.get(permission_id)
            if record is None or record.task_id != task_id:
                return False
            self._remove_permission(permission_id)
            return True

    def list_permissions(self, task_id: int) -> list[PermissionRead]:
        with self._lock:
            self._require_task(task_id)
            records = [record for record in self._permissions.values() if record.task_id == task_id]
            records.sort(key=lambda item: (item.created_at, item.id))
            return [self._to_permission_read(record) for record in records]

    def shared_with(self, task_id: int) -> list[SharedWithEntry]:
        with self._lock:
            self._require_task(task_id)
            return self._mirror_for(task_id)

    def create_notification(
        self,
        *,
        recipient_id: int,
        sender_id: int,
        task_id: int | None,
        kind: NotificationKind,
        message: str,
    ) -> NotificationRead:
        with self._lock:
            self._require_user(recipient_id)
            notification_id = self._notification_seq
            self._notification_seq += 1
            record = _NotificationRecord(
                id=notification_id,
                recipient_id=recipient_id,
                sender_id=sender_id,
                task_id=task_id,
                kind=kind.value,
                message=message,
                created_at=self._utc_now(),
            )
            self._notifications[notification_id] = record

            def undo() -> None:
                del self._notifications[notification_id]

            self._commit(undo)
            return self._to_notification_read(record)

    def list_notifications(self, recipient_id: int) -> list[NotificationRead]:
        with self._lock:
            records = [record for record in self._notifications.values() if record.recipient_id == recipient_id]
            records.sort(key=lambda item: item.id, reverse=True)
            return [self._to_notification_read(record) for record in records]

    def get_notification(self, notification_id: int) -> NotificationRead:
        with self._lock:
            record = self._notifications.get(notification_id)
            if record is None:
                raise NotFoundError(f"notification {notification_id} not found")
            return self._to_notification_read(record)

    def mark_notification_read(self, notification_id: int) -> NotificationRead:
        with self._lock:
            previous = self._notifications.get(notification_id)
            if previous is None:
                raise NotFoundError(f"notification {notification_id} not found")
            if previous.read:
                return self._to_notification_read(previous)

            updated = replace(previous, read=True)
            self._notifications[notification_id] = updated

            def undo() -> None:
                self._notifications[notification_id] = previous

            self._commit(undo)
            return self._to_notification_read(updated)

    def mark_all_notifications_read(self, recipient_id: int) -> int:
        with self._lock:
            unread = {
                notification_id: record
                for notification_id, record in self._notifications.items()
                if record.recipient_id == recipient_id and not record.read
            }
            if not unread:
                return 0
            for notification_id, record in unread.items():
                self._notifications[notification_id] = replace(record, read=True)

            def undo() -> None:
                self._notifications.update(unread)

            self._commit(undo)
            return len(unread)

    def _remove_permission(self, permission_id: int) -> None:
        record = self._permissions.pop(permission_id)
        key = (record.task_id, record.user_id)
        del self._permission_index[key]

        def undo() -> None:
            self._permissions[permission_id] = record
            self._permission_index[key] = permission_id

        self._commit(undo)

    def _grant_role(self, task_id: int, user_id: int) -> ShareRole | None:
        permission_id = self._permission_index.get((task_id, user_id))
        if permission_id is None:
            return None
        return ShareRole(self._permissions[permission_id].role)

    def _mirror_for(self, task_id: int) -> list[SharedWithEntry]:
        entries = [
            SharedWithEntry(user_id=record.user_id, role=ShareRole(record.role))
            for record in self._permissions.values()
            if record.task_id == task_id
        ]
        entries.sort(key=lambda entry: entry.user_id)
        return entries

    def _require_user(self, user_id: int) -> _UserRecord:
        record = self._users.get(user_id)
        if record is None:
            raise NotFoundError(f"user {user_id} not found")
        return record

    def _require_task(self, task_id: int) -> _TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        return record

    def _require_subtask(self, task_id: int, subtask_id: int) -> _SubtaskRecord:
        self._require_task(task_id)
        record = self._subtasks.get(subtask_id)
        if record is None or record.task_id != task_id:
            raise NotFoundError(f"subtask {subtask_id} not found in task {task_id}")
        return record

    def _commit(self, undo: Callable[[], None]) -> None:
        try:
            self._persist_state()
        except InfrastructureError:
            undo()
            logger.error("state write failed, in-memory change rolled back")
            raise

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
            tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
            tmp_file.replace(self._state_file)
        except OSError as exc:
            raise InfrastructureError(f"cannot write state file {self._state_file}: {exc}") from exc

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        try:
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise InfrastructureError(f"cannot read state file {self._state_file}: {exc}") from exc

        self._users = {
            int(key): _UserRecord(**value)
            for key, value in data.get("users", {}).items()
        }
        self._users_by_email = {record.email: user_id for user_id, record in self._users.items()}

        legacy_mirrors: dict[int, list[dict[str, Any]]] = {}
        self._tasks = {}
        for key, value in data.get("tasks", {}).items():
            fields = dict(value)
            legacy_mirrors[int(key)] = list(fields.pop("shared_with", []) or [])
            self._tasks[int(key)] = _TaskRecord(**fields)

        self._subtasks = {
            int(key): _SubtaskRecord(**value)
            for key, value in data.get("subtasks", {}).items()
        }

        self._permissions = {}
        self._permission_index = {}
        for key, value in sorted(data.get("permissions", {}).items(), key=lambda item: int(item[0])):
            record = _PermissionRecord(**value)
            index_key = (record.task_id, record.user_id)
            if index_key in self._permission_index:
                logger.warning(
                    "dropping duplicate permission %s for task %s user %s",
                    record.id,
                    record.task_id,
                    record.user_id,
                )
                continue
            self._permissions[int(key)] = record
            self._permission_index[index_key] = int(key)

        self._notifications = {
            int(key): _NotificationRecord(**value)
            for key, value in data.get("notifications", {}).items()
        }

        sequences = data.get("sequences", {})
        self._user_seq = int(sequences.get("user_seq", 1))
        self._task_seq = int(sequences.get("task_seq", 1))
        self._subtask_seq = int(sequences.get("subtask_seq", 1))
        self._permission_seq = int(sequences.get("permission_seq", 1))
        self._notification_seq = int(sequences.get("notification_seq", 1))

        migrated = self._reconcile_legacy_mirrors(legacy_mirrors)
        if migrated:
            logger.info("migrated %d legacy shared_with entries into permission records", migrated)
            self._persist_state()

    def _reconcile_legacy_mirrors(self, legacy_mirrors: dict[int, list[dict[str, Any]]]) -> int:
        # Older snapshots may list grantees on the task without a permission
        # record. The record is created from the mirror entry; a record without
        # a mirror entry needs nothing since the mirror is projected.
        migrated = 0
        for task_id, entries in legacy_mirrors.items():
            task = self._tasks.get(task_id)
            if task is None:
                continue
            for entry in entries:
                raw_user_id = entry.get("user_id", entry.get("user"))
                if raw_user_id is None:
                    continue
                user_id = int(raw_user_id)
                if user_id == task.owner_id or user_id not in self._users:
                    continue
                if (task_id, user_id) in self._permission_index:
                    continue
                try:
                    role = normalize_share_role(entry.get("role") or ShareRole.VIEWER)
                except ValidationError:
                    logger.warning("skipping legacy grant on task %s with role %r", task_id, entry.get("role"))
                    continue

                permission_id = self._permission_seq
                self._permission_seq += 1
                self._permissions[permission_id] = _PermissionRecord(
                    id=permission_id,
                    task_id=task_id,
                    user_id=user_id,
                    role=role.value,
                    created_at=task.created_at,
                    updated_at=task.updated_at,
                )
                self._permission_index[(task_id, user_id)] = permission_id
                migrated += 1
        return migrated

    def _snapshot(self) -> dict[str, Any]:
        return {
            "users": {str(key): value.__dict__ for key, value in self._users.items()},
            "tasks": {
                str(key): {
                    **value.__dict__,
                    "shared_with": [entry.model_dump(mode="json") for entry in self._mirror_for(key)],
                }
                for key, value in self._tasks.items()
            },
            "subtasks": {str(key): value.__dict__ for key, value in self._subtasks.items()},
            "permissions": {str(key): value.__dict__ for key, value in self._permissions.items()},
            "notifications": {str(key): value.__dict__ for key, value in self._notifications.items()},
            "sequences": {
                "user_seq": self._user_seq,
                "task_seq": self._task_seq,
                "subtask_seq": self._subtask_seq,
                "permission_seq": self._permission_seq,
                "notification_seq": self._notification_seq,
            },
        }

    @staticmethod
    def _to_user_read(record: _UserRecord) -> UserRead:
        return UserRead(id=record.id, email=record.email, name=record.name)

    def _to_task_read(self, record: _TaskRecord, *, viewer_id: int) -> TaskRead:
        role = resolve_role(
            owner_id=record.owner_id,
            user_id=viewer_id,
            grant_role=self._grant_role(record.id, viewer_id),
        )
        return TaskRead(
            id=record.id,
            owner_id=record.owner_id,
            title=record.title,
            description=record.description,
            completed=record.completed,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            shared_with=self._mirror_for(record.id),
            permissions=describe_permissions(role),
        )

    @staticmethod
    def _to_subtask_read(record: _SubtaskRecord) -> SubtaskRead:
        return SubtaskRead(
            id=record.id,
            task_id=record.task_id,
            title=record.title,
            completed=record.completed,
            created_at=record.created_at,
        )

    def _to_permission_read(self, record: _PermissionRecord) -> PermissionRead:
        user = self._users.get(record.user_id)
        return PermissionRead(
            id=record.id,
            task_id=record.task_id,
            user_id=record.user_id,
            role=record.role,
            created_at=record.created_at,
            updated_at=record.updated_at,
            user_name=user.name if user is not None else None,
            user_email=user.email if user is not None else None,
        )

    def _to_notification_read(self, record: _NotificationRecord) -> NotificationRead:
        sender = self._users.get(record.sender_id)
        task = self._tasks.get(record.task_id) if record.task_id is not None else None
        return NotificationRead(
            id=record.id,
            recipient_id=record.recipient_id,
            sender_id=record.sender_id,
            task_id=record.task_id,
            kind=record.kind,
            message=record.message,
            read=record.read,
            created_at=record.created_at,
            sender_name=sender.name if sender is not None else None,
            task_title=task.title if task is not None else None,
        )

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()
