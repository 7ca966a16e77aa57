from __future__ import annotations

import itertools
import random
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from taskshare_api.access_guard import AccessGuard
from taskshare_api.config import NOTIFICATION_MODE_SYNC
from taskshare_api.errors import ConflictError
from taskshare_api.notifications import NotificationDispatcher
from taskshare_api.schemas import NotificationKind, ShareRole, TaskCreate, UserCreate
from taskshare_api.sharing import ShareCoordinator
from taskshare_api.store import InMemoryStore


_name_seq = itertools.count(1)


@dataclass(frozen=True)
class ShareRaceConfig:
    race_iterations: int = 4
    race_parallelism: int = 8
    race_attempts: int = 24
    churn_iterations: int = 3
    churn_parallelism: int = 6
    churn_targets: int = 4
    churn_attempts: int = 60
    seed: int = 7


@dataclass
class _Harness:
    store: InMemoryStore
    coordinator: ShareCoordinator
    owner_id: int
    task_id: int


def run_share_race_suite(config: ShareRaceConfig | None = None) -> dict[str, Any]:
    cfg = config or ShareRaceConfig()

    race_iterations = [_run_same_pair_race_iteration(index, cfg) for index in range(cfg.race_iterations)]
    churn_iterations = [_run_share_churn_iteration(index, cfg) for index in range(cfg.churn_iterations)]

    scenarios = [
        _scenario_report(
            name="same-pair-share-race",
            objective="Parallel shares of one task with one user settle on a single grant and notification.",
            iterations=race_iterations,
            metric_keys=[
                "attempts_total",
                "created_count",
                "updated_count",
                "conflict_count",
                "unexpected_error_count",
                "permission_count",
                "share_notification_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="share-unshare-churn",
            objective="Interleaved share, re-role and unshare calls keep the mirror equal to the grants.",
            iterations=churn_iterations,
            metric_keys=[
                "attempts_total",
                "share_count",
                "unshare_count",
                "conflict_count",
                "unexpected_error_count",
                "final_permission_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "share-race",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "race_iterations": cfg.race_iterations,
            "race_parallelism": cfg.race_parallelism,
            "race_attempts": cfg.race_attempts,
            "churn_iterations": cfg.churn_iterations,
            "churn_parallelism": cfg.churn_parallelism,
            "churn_targets": cfg.churn_targets,
            "churn_attempts": cfg.churn_attempts,
            "seed": cfg.seed,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _run_same_pair_race_iteration(index: int, cfg: ShareRaceConfig) -> dict[str, Any]:
    started = time.perf_counter()
    harness = _build_harness(prefix=f"race-{index}")
    target = harness.store.create_user(UserCreate(email=_next_email("race-target"), name="Race Target"))

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    permission_ids: set[int] = set()

    def attempt(attempt_index: int) -> None:
        role = ShareRole.EDITOR if attempt_index % 2 else ShareRole.VIEWER
        try:
            result = harness.coordinator.add_or_update_share(
                harness.task_id,
                harness.owner_id,
                role=role,
                user_id=target.id,
            )
        except ConflictError:
            with lock:
                metrics["conflict_count"] += 1
            return
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        with lock:
            metrics["created_count" if result.created else "updated_count"] += 1
            permission_ids.add(result.permission.id)

    with ThreadPoolExecutor(max_workers=cfg.race_parallelism) as executor:
        futures = [executor.submit(attempt, attempt_index) for attempt_index in range(cfg.race_attempts)]
        for future in as_completed(futures):
            future.result()

    permissions = harness.store.list_permissions(harness.task_id)
    share_notifications = [
        item
        for item in harness.store.list_notifications(target.id)
        if item.kind == NotificationKind.SHARE_TASK and item.task_id == harness.task_id
    ]
    mirror_consistent = _mirror_matches_grants(harness.store, harness.task_id)

    metrics_payload = {
        "attempts_total": cfg.race_attempts,
        "created_count": int(metrics["created_count"]),
        "updated_count": int(metrics["updated_count"]),
        "conflict_count": int(metrics["conflict_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "permission_count": len(permissions),
        "distinct_permission_ids_returned": len(permission_ids),
        "share_notification_count": len(share_notifications),
        "mirror_consistent": mirror_consistent,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }

    invariants = [
        _invariant(
            "single_grant_per_pair",
            "exactly one permission record exists for the raced (task, user) pair",
            metrics_payload["permission_count"] == 1 and metrics_payload["distinct_permission_ids_returned"] == 1,
            expected={"permission_count": 1, "distinct_permission_ids_returned": 1},
            actual={
                "permission_count": metrics_payload["permission_count"],
                "distinct_permission_ids_returned": metrics_payload["distinct_permission_ids_returned"],
            },
        ),
        _invariant(
            "single_create_branch",
            "exactly one call took the create branch; every other call updated",
            metrics_payload["created_count"] == 1
            and metrics_payload["created_count"] + metrics_payload["updated_count"] == cfg.race_attempts,
            expected={"created_count": 1, "updated_count": cfg.race_attempts - 1},
            actual={
                "created_count": metrics_payload["created_count"],
                "updated_count": metrics_payload["updated_count"],
            },
        ),
        _invariant(
            "single_share_notification",
            "the target received exactly one share_task notification",
            metrics_payload["share_notification_count"] == 1,
            expected={"share_notification_count": 1},
            actual={"share_notification_count": metrics_payload["share_notification_count"]},
        ),
        _invariant(
            "duplicate_key_not_surfaced",
            "no caller observed a conflict or an unexpected error",
            metrics_payload["conflict_count"] == 0 and metrics_payload["unexpected_error_count"] == 0,
            expected={"conflict_count": 0, "unexpected_error_count": 0},
            actual={
                "conflict_count": metrics_payload["conflict_count"],
                "unexpected_error_count": metrics_payload["unexpected_error_count"],
            },
        ),
        _invariant(
            "mirror_matches_grants",
            "task shared_with lists exactly the users holding a grant",
            mirror_consistent,
            expected={"mirror_consistent": True},
            actual={"mirror_consistent": mirror_consistent},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _run_share_churn_iteration(index: int, cfg: ShareRaceConfig) -> dict[str, Any]:
    started = time.perf_counter()
    harness = _build_harness(prefix=f"churn-{index}")
    target_ids = [
        harness.store.create_user(
            UserCreate(email=_next_email(f"churn-target-{target_index}"), name=f"Churn Target {target_index}")
        ).id
        for target_index in range(cfg.churn_targets)
    ]

    rng = random.Random(cfg.seed + index)
    plan = [
        (rng.choice(target_ids), rng.choice(["share-viewer", "share-editor", "unshare"]))
        for _ in range(cfg.churn_attempts)
    ]

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    def attempt(target_id: int, action: str) -> None:
        try:
            if action == "unshare":
                harness.coordinator.remove_share(harness.task_id, harness.owner_id, target_id)
                counter_key = "unshare_count"
            else:
                role = ShareRole.EDITOR if action == "share-editor" else ShareRole.VIEWER
                harness.coordinator.add_or_update_share(
                    harness.task_id,
                    harness.owner_id,
                    role=role,
                    user_id=target_id,
                )
                counter_key = "share_count"
        except ConflictError:
            with lock:
                metrics["conflict_count"] += 1
            return
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        with lock:
            metrics[counter_key] += 1

    with ThreadPoolExecutor(max_workers=cfg.churn_parallelism) as executor:
        futures = [executor.submit(attempt, target_id, action) for target_id, action in plan]
        for future in as_completed(futures):
            future.result()

    permissions = harness.store.list_permissions(harness.task_id)
    pair_counts = Counter(permission.user_id for permission in permissions)
    final_consistent = _mirror_matches_grants(harness.store, harness.task_id)

    metrics_payload = {
        "attempts_total": cfg.churn_attempts,
        "share_count": int(metrics["share_count"]),
        "unshare_count": int(metrics["unshare_count"]),
        "conflict_count": int(metrics["conflict_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "final_permission_count": len(permissions),
        "max_grants_per_user": max(pair_counts.values(), default=0),
        "final_mirror_consistent": final_consistent,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }

    invariants = [
        _invariant(
            "at_most_one_grant_per_user",
            "no user ever ends with more than one grant on the task",
            metrics_payload["max_grants_per_user"] <= 1,
            expected={"max_grants_per_user": 1},
            actual={"max_grants_per_user": metrics_payload["max_grants_per_user"]},
        ),
        _invariant(
            "mirror_matches_grants",
            "after the churn settles, shared_with lists exactly the users holding a grant",
            final_consistent,
            expected={"final_mirror_consistent": True},
            actual={"final_mirror_consistent": final_consistent},
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _build_harness(*, prefix: str) -> _Harness:
    store = InMemoryStore()
    dispatcher = NotificationDispatcher(store, mode=NOTIFICATION_MODE_SYNC, delivery=None)
    coordinator = ShareCoordinator(store, AccessGuard(store), dispatcher)
    owner = store.create_user(UserCreate(email=_next_email(f"{prefix}-owner"), name="Race Owner"))
    task = store.create_task(owner.id, TaskCreate(title=f"{prefix} shared task"))
    return _Harness(store=store, coordinator=coordinator, owner_id=owner.id, task_id=task.id)


def _mirror_matches_grants(store: InMemoryStore, task_id: int) -> bool:
    granted = {(permission.user_id, permission.role) for permission in store.list_permissions(task_id)}
    mirrored = {(entry.user_id, entry.role) for entry in store.shared_with(task_id)}
    return granted == mirrored


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append(
                    {
                        "iteration": iteration["iteration"],
                        "actual": invariant["actual"],
                    }
                )

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"

    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _next_email(prefix: str) -> str:
    return f"{prefix}-{next(_name_seq)}@stress.local"


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": passed,
        "expected": expected,
        "actual": actual,
    }
