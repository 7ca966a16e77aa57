from uuid import uuid4

from fastapi.testclient import TestClient

from taskshare_api.errors import InfrastructureError
from taskshare_api.main import app, dispatcher, store


client = TestClient(app)


def _create_user(name: str) -> int:
    response = client.post("/users", json={"email": f"{name.lower()}-{uuid4().hex[:8]}@example.com", "name": name})
    assert response.status_code == 200
    return response.json()["id"]


def _as(user_id: int) -> dict[str, str]:
    return {"X-Actor-Id": str(user_id)}


def _create_task(owner_id: int, title: str) -> int:
    response = client.post("/tasks", json={"title": title}, headers=_as(owner_id))
    assert response.status_code == 200
    return response.json()["id"]


def _notifications(user_id: int) -> list[dict]:
    assert dispatcher.drain(timeout=5.0) is True
    response = client.get("/notifications", headers=_as(user_id))
    assert response.status_code == 200
    return response.json()


def test_owner_shares_task_and_grantee_sees_it() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Buy milk")

    shared = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "editor"},
        headers=_as(owner_id),
    )
    assert shared.status_code == 201
    assert shared.json()["role"] == "editor"
    assert shared.json()["user_name"] == "Bruno"

    listed = client.get("/tasks", headers=_as(guest_id))
    assert listed.status_code == 200
    assert [task["id"] for task in listed.json()] == [task_id]
    task = listed.json()[0]
    assert task["shared_with"] == [{"user_id": guest_id, "role": "editor"}]
    assert task["permissions"] == {
        "role": "editor",
        "is_owner": False,
        "can_edit": True,
        "can_delete": False,
        "can_share": False,
    }

    notifications = _notifications(guest_id)
    assert len(notifications) == 1
    assert notifications[0]["kind"] == "share_task"
    assert notifications[0]["sender_id"] == owner_id
    assert notifications[0]["task_title"] == "Buy milk"
    assert notifications[0]["message"] == "Ana shared the task 'Buy milk' with you"


def test_resharing_updates_role_without_second_notification() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Buy milk")

    first = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "editor"},
        headers=_as(owner_id),
    )
    second = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "viewer"},
        headers=_as(owner_id),
    )
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["role"] == "viewer"

    permissions = client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id))
    assert permissions.status_code == 200
    assert [(item["user_id"], item["role"]) for item in permissions.json()] == [(guest_id, "viewer")]

    blocked_edit = client.put(f"/tasks/{task_id}", json={"title": "Buy oat milk"}, headers=_as(guest_id))
    assert blocked_edit.status_code == 403
    blocked_complete = client.put(f"/tasks/{task_id}", json={"completed": True}, headers=_as(guest_id))
    assert blocked_complete.status_code == 403
    blocked_delete = client.delete(f"/tasks/{task_id}", headers=_as(guest_id))
    assert blocked_delete.status_code == 403

    owner_view = client.get(f"/tasks/{task_id}", headers=_as(owner_id))
    assert owner_view.status_code == 200
    assert owner_view.json()["title"] == "Buy milk"
    assert owner_view.json()["completed"] is False
    assert owner_view.json()["completed_at"] is None
    assert owner_view.json()["shared_with"] == [{"user_id": guest_id, "role": "viewer"}]
    assert owner_view.json()["permissions"]["role"] == "owner"
    guest_view = client.get(f"/tasks/{task_id}", headers=_as(guest_id))
    assert guest_view.json()["permissions"]["role"] == "viewer"
    permissions_after = client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id)).json()
    assert permissions_after == permissions.json()

    assert len(_notifications(guest_id)) == 1


def test_editor_completes_task_and_owner_is_notified() -> None:
    owner_id = _create_user("Ana")
    editor_id = _create_user("Carla")
    task_id = _create_task(owner_id, "Book flights")
    client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": editor_id, "role": "editor"},
        headers=_as(owner_id),
    )

    completed = client.put(f"/tasks/{task_id}", json={"completed": True}, headers=_as(editor_id))
    assert completed.status_code == 200
    assert completed.json()["completed"] is True
    assert completed.json()["completed_at"] is not None

    repeated = client.put(f"/tasks/{task_id}", json={"completed": True}, headers=_as(editor_id))
    assert repeated.status_code == 200

    owner_notifications = [item for item in _notifications(owner_id) if item["kind"] == "task_complete"]
    assert len(owner_notifications) == 1
    assert owner_notifications[0]["sender_id"] == editor_id
    assert owner_notifications[0]["message"] == "Carla completed the task 'Book flights'"

    delete_attempt = client.delete(f"/tasks/{task_id}", headers=_as(editor_id))
    assert delete_attempt.status_code == 403
    still_there = client.get(f"/tasks/{task_id}", headers=_as(owner_id))
    assert still_there.status_code == 200
    assert still_there.json()["title"] == "Book flights"
    assert still_there.json()["completed"] is True
    assert still_there.json()["shared_with"] == [{"user_id": editor_id, "role": "editor"}]
    share_attempt = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": owner_id, "role": "viewer"},
        headers=_as(editor_id),
    )
    assert share_attempt.status_code == 403
    grants = client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id)).json()
    assert [(item["user_id"], item["role"]) for item in grants] == [(editor_id, "editor")]


def test_owner_completing_own_task_sends_no_notification() -> None:
    owner_id = _create_user("Ana")
    task_id = _create_task(owner_id, "Water plants")

    response = client.put(f"/tasks/{task_id}", json={"completed": True}, headers=_as(owner_id))

    assert response.status_code == 200
    assert _notifications(owner_id) == []


def test_unshare_revokes_access_and_repeat_is_noop() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Renew passport")
    client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "viewer"},
        headers=_as(owner_id),
    )

    revoked = client.delete(f"/tasks/{task_id}/users/{guest_id}", headers=_as(owner_id))
    assert revoked.status_code == 204
    again = client.delete(f"/tasks/{task_id}/users/{guest_id}", headers=_as(owner_id))
    assert again.status_code == 204

    assert client.get(f"/tasks/{task_id}", headers=_as(guest_id)).status_code == 403
    assert client.get("/tasks", headers=_as(guest_id)).json() == []
    owner_view = client.get(f"/tasks/{task_id}", headers=_as(owner_id))
    assert owner_view.json()["shared_with"] == []


def test_deleting_task_cascades_permissions() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Clean garage")
    client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "editor"},
        headers=_as(owner_id),
    )

    deleted = client.delete(f"/tasks/{task_id}", headers=_as(owner_id))
    assert deleted.status_code == 204

    assert client.get(f"/tasks/{task_id}", headers=_as(owner_id)).status_code == 404
    assert client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id)).status_code == 404
    assert store.find_permission(task_id, guest_id) is None
    assert client.get("/tasks", headers=_as(guest_id)).json() == []


def test_share_by_email_and_unknown_email() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    guest_email = client.get(f"/users/{guest_id}").json()["email"]
    task_id = _create_task(owner_id, "Pay rent")

    shared = client.post(
        f"/tasks/{task_id}/permissions",
        json={"email": guest_email.upper(), "role": "lector"},
        headers=_as(owner_id),
    )
    assert shared.status_code == 201
    assert shared.json()["user_id"] == guest_id
    assert shared.json()["role"] == "viewer"

    missing = client.post(
        f"/tasks/{task_id}/permissions",
        json={"email": "nobody@example.com", "role": "viewer"},
        headers=_as(owner_id),
    )
    assert missing.status_code == 404


def test_invalid_share_requests_are_rejected() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Fix bike")

    bad_role = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "owner"},
        headers=_as(owner_id),
    )
    assert bad_role.status_code == 400

    missing_role = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id},
        headers=_as(owner_id),
    )
    assert missing_role.status_code == 400

    self_share = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": owner_id, "role": "editor"},
        headers=_as(owner_id),
    )
    assert self_share.status_code == 400

    no_target = client.post(f"/tasks/{task_id}/permissions", json={"role": "editor"}, headers=_as(owner_id))
    assert no_target.status_code == 400

    numeric_role = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": 1},
        headers=_as(owner_id),
    )
    assert numeric_role.status_code == 400

    list_role = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": ["editor"]},
        headers=_as(owner_id),
    )
    assert list_role.status_code == 400

    unknown_task = client.post(
        "/tasks/999999/permissions",
        json={"user_id": guest_id, "role": "editor"},
        headers=_as(owner_id),
    )
    assert unknown_task.status_code == 404

    assert client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id)).json() == []


def test_permission_role_update_and_delete_by_id() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    task_id = _create_task(owner_id, "Call plumber")
    permission_id = client.post(
        f"/tasks/{task_id}/permissions",
        json={"user_id": guest_id, "role": "viewer"},
        headers=_as(owner_id),
    ).json()["id"]

    forbidden = client.put(
        f"/tasks/{task_id}/permissions/{permission_id}",
        json={"role": "editor"},
        headers=_as(guest_id),
    )
    assert forbidden.status_code == 403

    updated = client.put(
        f"/tasks/{task_id}/permissions/{permission_id}",
        json={"role": "editor"},
        headers=_as(owner_id),
    )
    assert updated.status_code == 200
    assert updated.json()["role"] == "editor"
    assert client.get(f"/tasks/{task_id}", headers=_as(guest_id)).json()["permissions"]["can_edit"] is True

    numeric_update = client.put(
        f"/tasks/{task_id}/permissions/{permission_id}",
        json={"role": 1},
        headers=_as(owner_id),
    )
    assert numeric_update.status_code == 400
    assert client.get(f"/tasks/{task_id}/permissions", headers=_as(owner_id)).json()[0]["role"] == "editor"

    unknown = client.put(
        f"/tasks/{task_id}/permissions/999999",
        json={"role": "editor"},
        headers=_as(owner_id),
    )
    assert unknown.status_code == 404

    removed = client.delete(f"/tasks/{task_id}/permissions/{permission_id}", headers=_as(owner_id))
    assert removed.status_code == 204
    assert client.get(f"/tasks/{task_id}", headers=_as(guest_id)).status_code == 403


def test_permissions_listed_in_creation_order() -> None:
    owner_id = _create_user("Ana")
    first_id = _create_user("Bruno")
    second_id = _create_user("Carla")
    task_id = _create_task(owner_id, "Organize party")
    for user_id, role in ((first_id, "viewer"), (second_id, "editor")):
        response = client.post(
            f"/tasks/{task_id}/permissions",
            json={"user_id": user_id, "role": role},
            headers=_as(owner_id),
        )
        assert response.status_code == 201

    viewer_list = client.get(f"/tasks/{task_id}/permissions", headers=_as(first_id))
    assert viewer_list.status_code == 200
    assert [item["user_id"] for item in viewer_list.json()] == [first_id, second_id]

    stranger_id = _create_user("Dora")
    assert client.get(f"/tasks/{task_id}/permissions", headers=_as(stranger_id)).status_code == 403


def test_subtasks_follow_task_capabilities() -> None:
    owner_id = _create_user("Ana")
    viewer_id = _create_user("Bruno")
    editor_id = _create_user("Carla")
    task_id = _create_task(owner_id, "Move house")
    for user_id, role in ((viewer_id, "viewer"), (editor_id, "editor")):
        client.post(
            f"/tasks/{task_id}/permissions",
            json={"user_id": user_id, "role": role},
            headers=_as(owner_id),
        )

    created = client.post(f"/tasks/{task_id}/subtasks", json={"title": "Pack books"}, headers=_as(editor_id))
    assert created.status_code == 200
    subtask_id = created.json()["id"]

    blocked = client.post(f"/tasks/{task_id}/subtasks", json={"title": "Pack dishes"}, headers=_as(viewer_id))
    assert blocked.status_code == 403

    listed = client.get(f"/tasks/{task_id}/subtasks", headers=_as(viewer_id))
    assert listed.status_code == 200
    assert [item["title"] for item in listed.json()] == ["Pack books"]

    toggled = client.put(
        f"/tasks/{task_id}/subtasks/{subtask_id}",
        json={"completed": True},
        headers=_as(editor_id),
    )
    assert toggled.status_code == 200
    assert toggled.json()["completed"] is True

    assert client.delete(f"/tasks/{task_id}/subtasks/{subtask_id}", headers=_as(viewer_id)).status_code == 403
    assert client.delete(f"/tasks/{task_id}/subtasks/{subtask_id}", headers=_as(owner_id)).status_code == 204
    assert client.get(f"/tasks/{task_id}/subtasks", headers=_as(owner_id)).json() == []


def test_blank_subtask_titles_are_rejected() -> None:
    owner_id = _create_user("Ana")
    task_id = _create_task(owner_id, "Paint fence")

    blank = client.post(f"/tasks/{task_id}/subtasks", json={"title": "   "}, headers=_as(owner_id))
    assert blank.status_code == 422

    created = client.post(f"/tasks/{task_id}/subtasks", json={"title": "  Buy paint  "}, headers=_as(owner_id))
    assert created.status_code == 200
    assert created.json()["title"] == "Buy paint"
    subtask_id = created.json()["id"]

    blank_update = client.put(
        f"/tasks/{task_id}/subtasks/{subtask_id}",
        json={"title": " \t "},
        headers=_as(owner_id),
    )
    assert blank_update.status_code == 422

    listed = client.get(f"/tasks/{task_id}/subtasks", headers=_as(owner_id))
    assert [item["title"] for item in listed.json()] == ["Buy paint"]


def test_notification_read_endpoints() -> None:
    owner_id = _create_user("Ana")
    guest_id = _create_user("Bruno")
    for title in ("Task one", "Task two"):
        task_id = _create_task(owner_id, title)
        client.post(
            f"/tasks/{task_id}/permissions",
            json={"user_id": guest_id, "role": "viewer"},
            headers=_as(owner_id),
        )

    notifications = _notifications(guest_id)
    assert [item["task_title"] for item in notifications] == ["Task two", "Task one"]

    foreign = client.put(f"/notifications/{notifications[0]['id']}/read", headers=_as(owner_id))
    assert foreign.status_code == 403

    marked = client.put(f"/notifications/{notifications[0]['id']}/read", headers=_as(guest_id))
    assert marked.status_code == 200
    assert marked.json()["read"] is True

    read_all = client.put("/notifications/read-all", headers=_as(guest_id))
    assert read_all.status_code == 200
    assert read_all.json() == {"user_id": guest_id, "updated": 1}

    assert client.put("/notifications/999999/read", headers=_as(guest_id)).status_code == 404


def test_actor_header_is_required() -> None:
    assert client.get("/tasks").status_code == 401
    assert client.get("/tasks", headers={"X-Actor-Id": "abc"}).status_code == 401
    assert client.post("/tasks", json={"title": "anonymous"}).status_code == 401


def test_users_endpoints() -> None:
    email = f"eva-{uuid4().hex[:8]}@example.com"
    created = client.post("/users", json={"email": email.upper(), "name": "Eva"})
    assert created.status_code == 200
    assert created.json()["email"] == email

    duplicate = client.post("/users", json={"email": email, "name": "Eva again"})
    assert duplicate.status_code == 409

    assert client.get(f"/users/{created.json()['id']}").json()["name"] == "Eva"
    assert client.get("/users/999999").status_code == 404
    assert client.get("/health").json() == {"status": "ok"}


def test_storage_failure_maps_to_service_unavailable(monkeypatch) -> None:
    owner_id = _create_user("Ana")

    def failing_persist() -> None:
        raise InfrastructureError("disk full")

    monkeypatch.setattr(store, "_persist_state", failing_persist)

    response = client.post("/tasks", json={"title": "never stored"}, headers=_as(owner_id))

    assert response.status_code == 503
    assert response.json() == {"detail": "storage unavailable"}
    monkeypatch.undo()
    assert client.get("/tasks", headers=_as(owner_id)).json() == []
