from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable

from taskshare_api.config import NOTIFICATION_MODE_BACKGROUND, NOTIFICATION_MODE_SYNC
from taskshare_api.delivery_client import deliver_notification
from taskshare_api.errors import ForbiddenError
from taskshare_api.schemas import DeliverySubmission, NotificationKind, NotificationRead
from taskshare_api.store import InMemoryStore

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[NotificationRead], DeliverySubmission]


@dataclass(frozen=True)
class NotificationRequest:
    recipient_id: int
    sender_id: int
    task_id: int | None
    kind: NotificationKind
    message: str


class NotificationDispatcher:
    def __init__(
        self,
        store: InMemoryStore,
        *,
        mode: str = NOTIFICATION_MODE_BACKGROUND,
        delivery: DeliveryHandler | None = deliver_notification,
    ) -> None:
        if mode not in (NOTIFICATION_MODE_BACKGROUND, NOTIFICATION_MODE_SYNC):
            raise ValueError(f"unknown notification mode '{mode}'")
        self._store = store
        self._mode = mode
        self._delivery = delivery
        # Storage and delivery have separate workers; delivery never blocks storage.
        self._queue: queue.Queue[NotificationRequest | None] = queue.Queue()
        self._delivery_queue: queue.Queue[NotificationRead | None] = queue.Queue()
        self._storage_worker: threading.Thread | None = None
        self._delivery_worker: threading.Thread | None = None
        self._worker_lock = threading.Lock()
        self._closed = False
        self._idle = threading.Condition()
        self._pending = 0

    @property
    def mode(self) -> str:
        return self._mode

    def emit(
        self,
        recipient_id: int,
        sender_id: int,
        task_id: int | None,
        kind: NotificationKind,
        message: str,
    ) -> None:
        try:
            request = NotificationRequest(
                recipient_id=recipient_id,
                sender_id=sender_id,
                task_id=task_id,
                kind=NotificationKind(kind),
                message=message,
            )
            if self._mode == NOTIFICATION_MODE_BACKGROUND:
                with self._worker_lock:
                    if not self._closed:
                        self._start_workers()
                        self._enqueue(self._queue, request)
                        return
            # Sync mode, or the dispatcher was closed: handle inline.
            notification = self._store_notification(request)
            if notification is not None:
                self._deliver(notification)
        except Exception:  # noqa: BLE001
            logger.exception("failed to emit %s notification for user %s", kind, recipient_id)

    def drain(self, timeout: float | None = 5.0) -> bool:
        """Block until every queued notification was stored and handed to delivery; False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def close(self) -> None:
        with self._worker_lock:
            if self._closed:
                return
            self._closed = True
            storage_worker = self._storage_worker
            delivery_worker = self._delivery_worker
            self._storage_worker = None
            self._delivery_worker = None

        if storage_worker is not None:
            self._queue.put(None)
            storage_worker.join()
        # Only queued after storage stopped, so every handoff precedes the sentinel.
        if delivery_worker is not None:
            self._delivery_queue.put(None)
            delivery_worker.join()

    def list_notifications(self, user_id: int) -> list[NotificationRead]:
        return self._store.list_notifications(user_id)

    def mark_as_read(self, notification_id: int, requester_id: int) -> NotificationRead:
        notification = self._store.get_notification(notification_id)
        if notification.recipient_id != requester_id:
            raise ForbiddenError(f"user {requester_id} cannot modify notification {notification_id}")
        return self._store.mark_notification_read(notification_id)

    def mark_all_as_read(self, user_id: int) -> int:
        updated = self._store.mark_all_notifications_read(user_id)
        logger.debug("marked %d notifications read for user %s", updated, user_id)
        return updated

    def _start_workers(self) -> None:
        if self._storage_worker is None or not self._storage_worker.is_alive():
            self._storage_worker = threading.Thread(
                target=self._run_worker,
                args=(self._queue, self._handle_request),
                name="taskshare-notifications",
                daemon=True,
            )
            self._storage_worker.start()
        if self._delivery is not None and (self._delivery_worker is None or not self._delivery_worker.is_alive()):
            self._delivery_worker = threading.Thread(
                target=self._run_worker,
                args=(self._delivery_queue, self._deliver),
                name="taskshare-delivery",
                daemon=True,
            )
            self._delivery_worker.start()

    def _enqueue(self, work_queue: queue.Queue[Any], item: Any) -> None:
        with self._idle:
            self._pending += 1
        work_queue.put(item)

    def _run_worker(self, work_queue: queue.Queue[Any], handler: Callable[[Any], None]) -> None:
        while True:
            item = work_queue.get()
            if item is None:
                return
            try:
                handler(item)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _handle_request(self, request: NotificationRequest) -> None:
        notification = self._store_notification(request)
        if notification is not None and self._delivery is not None:
            self._enqueue(self._delivery_queue, notification)

    def _store_notification(self, request: NotificationRequest) -> NotificationRead | None:
        try:
            notification = self._store.create_notification(
                recipient_id=request.recipient_id,
                sender_id=request.sender_id,
                task_id=request.task_id,
                kind=request.kind,
                message=request.message,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "failed to store %s notification for user %s",
                request.kind.value,
                request.recipient_id,
            )
            return None

        logger.info(
            "stored %s notification %s for user %s",
            notification.kind.value,
            notification.id,
            notification.recipient_id,
        )
        return notification

    def _deliver(self, notification: NotificationRead) -> None:
        if self._delivery is None:
            return
        try:
            submission = self._delivery(notification)
        except Exception:  # noqa: BLE001
            logger.exception("delivery handoff raised for notification %s", notification.id)
            return
        if not submission.delivered:
            logger.debug("notification %s not delivered: %s", notification.id, submission.message)
