from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskshare_api.access_guard import AccessGuard, TaskAccess
from taskshare_api.config import load_settings
from taskshare_api.errors import ConflictError, ForbiddenError, InfrastructureError, NotFoundError, ValidationError
from taskshare_api.logging_setup import setup_logging
from taskshare_api.notifications import NotificationDispatcher
from taskshare_api.schemas import (
    Capability,
    NotificationKind,
    NotificationRead,
    NotificationsReadAllResponse,
    PermissionCreate,
    PermissionRead,
    PermissionUpdate,
    SubtaskCreate,
    SubtaskRead,
    SubtaskUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UserCreate,
    UserRead,
)
from taskshare_api.sharing import ShareCoordinator
from taskshare_api.store import InMemoryStore

settings = load_settings()
setup_logging(level=settings.log_level, log_file=settings.log_file)
logger = logging.getLogger(__name__)

store = InMemoryStore(state_file=settings.state_file)
guard = AccessGuard(store)
dispatcher = NotificationDispatcher(store, mode=settings.notification_mode)
coordinator = ShareCoordinator(store, guard, dispatcher)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    dispatcher.close()


app = FastAPI(title="taskshare api", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InfrastructureError)
def handle_infrastructure_error(_: Request, exc: InfrastructureError) -> JSONResponse:
    logger.error("storage failure: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "storage unavailable"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/users", response_model=UserRead)
def create_user(payload: UserCreate) -> UserRead:
    try:
        return store.create_user(payload)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: int) -> UserRead:
    try:
        return store.get_user(user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks", response_model=TaskRead)
def create_task(payload: TaskCreate, x_actor_id: str | None = Header(default=None)) -> TaskRead:
    actor_id = _require_actor(x_actor_id)
    try:
        return store.create_task(actor_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks", response_model=list[TaskRead])
def list_tasks(x_actor_id: str | None = Header(default=None)) -> list[TaskRead]:
    actor_id = _require_actor(x_actor_id)
    return store.list_tasks_for_user(actor_id)


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: int, x_actor_id: str | None = Header(default=None)) -> TaskRead:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.READ)
        return store.get_task(task_id, viewer_id=actor_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.put("/tasks/{task_id}", response_model=TaskRead)
def update_task(task_id: int, payload: TaskUpdate, x_actor_id: str | None = Header(default=None)) -> TaskRead:
    actor_id = _require_actor(x_actor_id)
    required: list[Capability] = []
    if payload.touches_content:
        required.append(Capability.WRITE)
    if payload.touches_completion:
        required.append(Capability.MARK_COMPLETE)
    try:
        access = guard.check_all(task_id, actor_id, required)
        result = store.update_task(task_id, payload, viewer_id=actor_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    if result.became_completed and not access.is_owner:
        _notify_completed(access, result.task.title)
    return result.task


@app.delete("/tasks/{task_id}", status_code=204)
def delete_task(task_id: int, x_actor_id: str | None = Header(default=None)) -> None:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.DELETE)
        revoked = store.delete_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    logger.info("task %s deleted by user %s, %d grants cascaded", task_id, actor_id, revoked)


@app.get("/tasks/{task_id}/subtasks", response_model=list[SubtaskRead])
def list_subtasks(task_id: int, x_actor_id: str | None = Header(default=None)) -> list[SubtaskRead]:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.READ)
        return store.list_subtasks(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/subtasks", response_model=SubtaskRead)
def create_subtask(
    task_id: int,
    payload: SubtaskCreate,
    x_actor_id: str | None = Header(default=None),
) -> SubtaskRead:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.WRITE)
        return store.create_subtask(task_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.put("/tasks/{task_id}/subtasks/{subtask_id}", response_model=SubtaskRead)
def update_subtask(
    task_id: int,
    subtask_id: int,
    payload: SubtaskUpdate,
    x_actor_id: str | None = Header(default=None),
) -> SubtaskRead:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.WRITE)
        return store.update_subtask(task_id, subtask_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}/subtasks/{subtask_id}", status_code=204)
def delete_subtask(task_id: int, subtask_id: int, x_actor_id: str | None = Header(default=None)) -> None:
    actor_id = _require_actor(x_actor_id)
    try:
        guard.check(task_id, actor_id, Capability.WRITE)
        store.delete_subtask(task_id, subtask_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.get("/tasks/{task_id}/permissions", response_model=list[PermissionRead])
def list_task_permissions(task_id: int, x_actor_id: str | None = Header(default=None)) -> list[PermissionRead]:
    actor_id = _require_actor(x_actor_id)
    try:
        return coordinator.list_shares(task_id, actor_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/permissions", response_model=PermissionRead)
def add_task_permission(
    task_id: int,
    payload: PermissionCreate,
    response: Response,
    x_actor_id: str | None = Header(default=None),
) -> PermissionRead:
    actor_id = _require_actor(x_actor_id)
    try:
        result = coordinator.add_or_update_share(
            task_id,
            actor_id,
            role=payload.role,
            user_id=payload.user_id,
            email=payload.email,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    response.status_code = 201 if result.created else 200
    return result.permission


@app.put("/tasks/{task_id}/permissions/{permission_id}", response_model=PermissionRead)
def update_task_permission(
    task_id: int,
    permission_id: int,
    payload: PermissionUpdate,
    x_actor_id: str | None = Header(default=None),
) -> PermissionRead:
    actor_id = _require_actor(x_actor_id)
    try:
        return coordinator.update_share_role(task_id, actor_id, permission_id, payload.role)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}/permissions/{permission_id}", status_code=204)
def delete_task_permission(
    task_id: int,
    permission_id: int,
    x_actor_id: str | None = Header(default=None),
) -> None:
    actor_id = _require_actor(x_actor_id)
    try:
        coordinator.remove_share_by_id(task_id, actor_id, permission_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}/users/{user_id}", status_code=204)
def delete_task_permission_by_user(
    task_id: int,
    user_id: int,
    x_actor_id: str | None = Header(default=None),
) -> None:
    actor_id = _require_actor(x_actor_id)
    try:
        coordinator.remove_share(task_id, actor_id, user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.get("/notifications", response_model=list[NotificationRead])
def list_notifications(x_actor_id: str | None = Header(default=None)) -> list[NotificationRead]:
    actor_id = _require_actor(x_actor_id)
    return dispatcher.list_notifications(actor_id)


@app.put("/notifications/read-all", response_model=NotificationsReadAllResponse)
def mark_all_notifications_read(x_actor_id: str | None = Header(default=None)) -> NotificationsReadAllResponse:
    actor_id = _require_actor(x_actor_id)
    updated = dispatcher.mark_all_as_read(actor_id)
    return NotificationsReadAllResponse(user_id=actor_id, updated=updated)


@app.put("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    x_actor_id: str | None = Header(default=None),
) -> NotificationRead:
    actor_id = _require_actor(x_actor_id)
    try:
        return dispatcher.mark_as_read(notification_id, actor_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def _notify_completed(access: TaskAccess, title: str) -> None:
    try:
        actor = store.get_user(access.actor_id)
        dispatcher.emit(
            access.owner_id,
            access.actor_id,
            access.task_id,
            NotificationKind.TASK_COMPLETE,
            f"{actor.name} completed the task '{title}'",
        )
    except Exception:  # noqa: BLE001
        logger.exception("could not queue completion notification for task %s", access.task_id)


def _require_actor(x_actor_id: str | None) -> int:
    if x_actor_id is None or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="missing X-Actor-Id header")
    try:
        return int(x_actor_id.strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="invalid X-Actor-Id header") from exc
