from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from taskshare_api.access_policy import has_capability, resolve_role
from taskshare_api.errors import ForbiddenError
from taskshare_api.schemas import Capability, TaskRole
from taskshare_api.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskAccess:
    task_id: int
    actor_id: int
    owner_id: int
    title: str
    role: TaskRole

    @property
    def is_owner(self) -> bool:
        return self.role == TaskRole.OWNER


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    access: TaskAccess
    reason: str | None = None


class AccessGuard:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def resolve(self, task_id: int, actor_id: int) -> TaskAccess:
        grant = self._store.get_task_grant(task_id, actor_id)
        return TaskAccess(
            task_id=grant.task_id,
            actor_id=actor_id,
            owner_id=grant.owner_id,
            title=grant.title,
            role=resolve_role(owner_id=grant.owner_id, user_id=actor_id, grant_role=grant.grant_role),
        )

    def decide(self, task_id: int, actor_id: int, *capabilities: Capability) -> AccessDecision:
        access = self.resolve(task_id, actor_id)
        missing = [capability for capability in capabilities if not has_capability(access.role, capability)]
        if missing:
            names = ", ".join(capability.value for capability in missing)
            return AccessDecision(
                allowed=False,
                access=access,
                reason=f"user {actor_id} with role '{access.role.value}' lacks {names} on task {task_id}",
            )
        return AccessDecision(allowed=True, access=access)

    def check(self, task_id: int, actor_id: int, capability: Capability) -> TaskAccess:
        return self.check_all(task_id, actor_id, (capability,))

    def check_all(self, task_id: int, actor_id: int, capabilities: Iterable[Capability]) -> TaskAccess:
        decision = self.decide(task_id, actor_id, *capabilities)
        if not decision.allowed:
            logger.info("access denied: %s", decision.reason)
            raise ForbiddenError(decision.reason)
        return decision.access
