from __future__ import annotations

import logging
from dataclasses import dataclass

from taskshare_api.access_guard import AccessGuard, TaskAccess
from taskshare_api.access_policy import normalize_share_role
from taskshare_api.errors import ConflictError, NotFoundError, ValidationError
from taskshare_api.notifications import NotificationDispatcher
from taskshare_api.schemas import Capability, NotificationKind, PermissionRead, ShareRole
from taskshare_api.security import mask_emails
from taskshare_api.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareResult:
    permission: PermissionRead
    created: bool


class ShareCoordinator:
    def __init__(
        self,
        store: InMemoryStore,
        guard: AccessGuard,
        dispatcher: NotificationDispatcher,
        *,
        max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._guard = guard
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts

    def add_or_update_share(
        self,
        task_id: int,
        actor_id: int,
        *,
        role: object,
        user_id: int | None = None,
        email: str | None = None,
    ) -> ShareResult:
        access = self._guard.check(task_id, actor_id, Capability.SHARE)
        share_role = normalize_share_role(role)
        target_id = self._resolve_target(user_id=user_id, email=email)
        if target_id == access.owner_id:
            raise ValidationError(f"task {task_id} cannot be shared with its owner")

        for attempt in range(1, self._max_attempts + 1):
            existing = self._store.find_permission(task_id, target_id)
            if existing is not None:
                try:
                    updated = self._store.update_permission_role(existing.id, share_role)
                except NotFoundError:
                    # Revoked between lookup and update; start over.
                    continue
                logger.info(
                    "task %s: user %s role set to %s (permission %s)",
                    task_id,
                    target_id,
                    share_role.value,
                    updated.id,
                )
                return ShareResult(permission=updated, created=False)

            try:
                created = self._store.insert_permission(task_id, target_id, share_role)
            except ConflictError:
                logger.debug(
                    "task %s: concurrent share for user %s won the insert, retrying as update (attempt %d)",
                    task_id,
                    target_id,
                    attempt,
                )
                continue

            logger.info(
                "task %s shared with user %s as %s (permission %s)",
                task_id,
                target_id,
                share_role.value,
                created.id,
            )
            self._notify_shared(access, target_id)
            return ShareResult(permission=created, created=True)

        raise ConflictError(
            f"share of task {task_id} with user {target_id} did not settle after {self._max_attempts} attempts"
        )

    def update_share_role(
        self,
        task_id: int,
        actor_id: int,
        permission_id: int,
        role: object,
    ) -> PermissionRead:
        self._guard.check(task_id, actor_id, Capability.SHARE)
        share_role = normalize_share_role(role)
        permission = self._store.get_permission(permission_id)
        if permission.task_id != task_id:
            raise ValidationError(f"permission {permission_id} does not belong to task {task_id}")
        updated = self._store.update_permission_role(permission_id, share_role)
        logger.info("task %s: permission %s role set to %s", task_id, permission_id, share_role.value)
        return updated

    def remove_share(self, task_id: int, actor_id: int, user_id: int) -> bool:
        self._guard.check(task_id, actor_id, Capability.SHARE)
        removed = self._store.delete_permission(task_id, user_id)
        if removed:
            logger.info("task %s: access revoked for user %s", task_id, user_id)
        else:
            logger.debug("task %s: no grant for user %s, nothing to revoke", task_id, user_id)
        return removed

    def remove_share_by_id(self, task_id: int, actor_id: int, permission_id: int) -> bool:
        self._guard.check(task_id, actor_id, Capability.SHARE)
        removed = self._store.delete_permission_by_id(task_id, permission_id)
        if removed:
            logger.info("task %s: permission %s revoked", task_id, permission_id)
        return removed

    def list_shares(self, task_id: int, requester_id: int) -> list[PermissionRead]:
        self._guard.check(task_id, requester_id, Capability.READ)
        return self._store.list_permissions(task_id)

    def _resolve_target(self, *, user_id: int | None, email: str | None) -> int:
        if user_id is not None:
            return self._store.get_user(user_id).id
        if email is not None and email.strip():
            try:
                return self._store.find_user_by_email(email).id
            except NotFoundError:
                logger.info("share target %s not found in user directory", mask_emails(email.strip()))
                raise
        raise ValidationError("either user_id or email is required")

    def _notify_shared(self, access: TaskAccess, target_id: int) -> None:
        try:
            sender = self._store.get_user(access.actor_id)
            self._dispatcher.emit(
                target_id,
                access.actor_id,
                access.task_id,
                NotificationKind.SHARE_TASK,
                f"{sender.name} shared the task '{access.title}' with you",
            )
        except Exception:  # noqa: BLE001
            logger.exception("could not queue share notification for task %s", access.task_id)
