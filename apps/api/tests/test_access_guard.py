import logging

import pytest

from taskshare_api.access_guard import AccessGuard
from taskshare_api.errors import ForbiddenError, NotFoundError
from taskshare_api.schemas import Capability, ShareRole, TaskCreate, TaskRole, UserCreate
from taskshare_api.store import InMemoryStore


def _setup() -> tuple[InMemoryStore, AccessGuard, int, int, int]:
    store = InMemoryStore()
    owner = store.create_user(UserCreate(email="owner@example.com", name="Owner"))
    editor = store.create_user(UserCreate(email="editor@example.com", name="Editor"))
    task = store.create_task(owner.id, TaskCreate(title="Shared list"))
    store.insert_permission(task.id, editor.id, ShareRole.EDITOR)
    return store, AccessGuard(store), owner.id, editor.id, task.id


def test_resolve_reports_owner_and_grantee_roles() -> None:
    _, guard, owner_id, editor_id, task_id = _setup()

    owner_access = guard.resolve(task_id, owner_id)
    editor_access = guard.resolve(task_id, editor_id)

    assert owner_access.is_owner is True
    assert editor_access.role == TaskRole.EDITOR
    assert editor_access.owner_id == owner_id
    assert editor_access.title == "Shared list"
    assert guard.resolve(task_id, 12345).role == TaskRole.NONE


def test_decide_lists_every_missing_capability() -> None:
    _, guard, _, editor_id, task_id = _setup()

    decision = guard.decide(task_id, editor_id, Capability.WRITE, Capability.DELETE, Capability.SHARE)

    assert decision.allowed is False
    assert "delete, share" in decision.reason


def test_check_all_requires_every_capability(caplog) -> None:
    _, guard, owner_id, editor_id, task_id = _setup()

    assert guard.check_all(task_id, editor_id, [Capability.WRITE, Capability.MARK_COMPLETE]).role == TaskRole.EDITOR
    assert guard.check_all(task_id, owner_id, []).is_owner is True

    with caplog.at_level(logging.INFO, logger="taskshare_api"):
        with pytest.raises(ForbiddenError):
            guard.check(task_id, editor_id, Capability.DELETE)
    assert "access denied" in caplog.text


def test_missing_task_is_not_found() -> None:
    _, guard, owner_id, _, _ = _setup()

    with pytest.raises(NotFoundError):
        guard.check(424242, owner_id, Capability.READ)
