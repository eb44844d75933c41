"""
Fire-and-forget scheduling notifications.

Senders are called only after the change has been committed. A failed
delivery is logged and never turns into a scheduling error.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)

SESSION_CREATED = "session.created"
SESSION_RESCHEDULED = "session.rescheduled"
SESSION_STATUS_CHANGED = "session.status_changed"
REQUEST_CREATED = "reschedule_request.created"
REQUEST_RESOLVED = "reschedule_request.resolved"


class NotificationSender:
    def send(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self._deliver(event, payload)
        except Exception as e:
            logger.warning(f"Failed to dispatch {event} notification: {str(e)}")

    def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotificationSender(NotificationSender):
    def _deliver(self, event, payload):
        logger.info(f"Notification {event}: {payload}")


class WebhookNotificationSender(NotificationSender):
    """POST each event as JSON to the clinic's notification gateway."""

    def __init__(self, url: str, timeout: float = settings.NOTIFICATION_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def _deliver(self, event, payload):
        body = {
            "event": event,
            "payload": payload,
            "sent_at": datetime.utcnow().isoformat(),
        }
        response = httpx.post(self.url, json=body, timeout=self.timeout)
        response.raise_for_status()


_sender: Optional[NotificationSender] = None


def get_notification_sender() -> NotificationSender:
    global _sender
    if _sender is None:
        if settings.NOTIFICATION_WEBHOOK_URL:
            _sender = WebhookNotificationSender(settings.NOTIFICATION_WEBHOOK_URL)
        else:
            _sender = LoggingNotificationSender()
    return _sender


def session_payload(session) -> Dict[str, Any]:
    return {
        "session_id": session.id,
        "clinic_id": session.clinic_id,
        "patient_id": session.patient_id,
        "assigned_staff_id": session.assigned_staff_id,
        "room_id": session.room_id,
        "therapy_type": session.therapy_type,
        "scheduled_at": session.scheduled_at.isoformat(),
        "status": getattr(session.status, "value", session.status),
    }
