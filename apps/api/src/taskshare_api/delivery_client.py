from __future__ import annotations

import httpx

from taskshare_api.config import Settings, load_settings
from taskshare_api.schemas import DeliverySubmission, NotificationRead
from taskshare_api.security import redact_sensitive_text


def deliver_notification(notification: NotificationRead, settings: Settings | None = None) -> DeliverySubmission:
    cfg = settings or load_settings()
    if not cfg.delivery_url:
        return DeliverySubmission(
            delivered=False,
            channel_url=None,
            message="delivery url not configured",
        )

    headers: dict[str, str] = {}
    if cfg.delivery_token:
        headers["Authorization"] = f"Bearer {cfg.delivery_token}"

    request_payload = {
        "notification_id": notification.id,
        "recipient_id": notification.recipient_id,
        "sender_id": notification.sender_id,
        "task_id": notification.task_id,
        "kind": notification.kind.value,
        "message": notification.message,
        "created_at": notification.created_at,
    }

    try:
        response = httpx.post(
            f"{cfg.delivery_url.rstrip('/')}/notifications",
            json=request_payload,
            headers=headers,
            timeout=cfg.delivery_timeout_seconds,
        )
        response.raise_for_status()
        return DeliverySubmission(
            delivered=True,
            channel_url=cfg.delivery_url,
            status_code=response.status_code,
            message="delivered",
        )
    except Exception as exc:  # noqa: BLE001
        sanitized_error = redact_sensitive_text(str(exc))
        return DeliverySubmission(
            delivered=False,
            channel_url=cfg.delivery_url,
            message=f"delivery failed: {sanitized_error}",
        )
