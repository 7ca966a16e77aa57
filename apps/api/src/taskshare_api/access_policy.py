from __future__ import annotations

from taskshare_api.errors import ValidationError
from taskshare_api.schemas import Capability, ShareRole, TaskPermissions, TaskRole

_ROLE_CAPABILITIES: dict[TaskRole, frozenset[Capability]] = {
    TaskRole.OWNER: frozenset(
        {Capability.READ, Capability.WRITE, Capability.MARK_COMPLETE, Capability.DELETE, Capability.SHARE}
    ),
    TaskRole.EDITOR: frozenset({Capability.READ, Capability.WRITE, Capability.MARK_COMPLETE}),
    TaskRole.VIEWER: frozenset({Capability.READ}),
    TaskRole.NONE: frozenset(),
}

# Older clients send the Spanish "lector" for read-only access.
_SHARE_ROLE_ALIASES: dict[str, ShareRole] = {
    "editor": ShareRole.EDITOR,
    "viewer": ShareRole.VIEWER,
    "lector": ShareRole.VIEWER,
}


def resolve_role(*, owner_id: int, user_id: int, grant_role: ShareRole | str | None) -> TaskRole:
    if user_id == owner_id:
        return TaskRole.OWNER
    if grant_role is None:
        return TaskRole.NONE
    return TaskRole(ShareRole(grant_role).value)


def capabilities_for(role: TaskRole) -> frozenset[Capability]:
    return _ROLE_CAPABILITIES[role]


def has_capability(role: TaskRole, capability: Capability) -> bool:
    return capability in _ROLE_CAPABILITIES[role]


def describe_permissions(role: TaskRole) -> TaskPermissions:
    return TaskPermissions(
        role=role,
        is_owner=role == TaskRole.OWNER,
        can_edit=has_capability(role, Capability.WRITE),
        can_delete=has_capability(role, Capability.DELETE),
        can_share=has_capability(role, Capability.SHARE),
    )


def normalize_share_role(value: object) -> ShareRole:
    if value is None:
        raise ValidationError("role is required")
    if isinstance(value, ShareRole):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"invalid role {value!r}; expected a string")
    normalized = _SHARE_ROLE_ALIASES.get(value.strip().lower())
    if normalized is None:
        allowed = ", ".join(sorted(_SHARE_ROLE_ALIASES))
        raise ValidationError(f"invalid role '{value}'; expected one of: {allowed}")
    return normalized
