"""
Notification Dispatch Module

Fire-and-forget notifications after SLA breaches and escalations. Delivery
failures are logged and never change the outcome of the engine operation.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .models import WorkflowAction
from .workflow_log import to_json_value


logger = logging.getLogger("case_workflow.notifications")


@dataclass
class WorkflowNotification:
    """A workflow event worth telling a person about"""
    action: WorkflowAction
    organization_id: str
    report_id: str
    recipient_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'organization_id': self.organization_id,
            'report_id': self.report_id,
            'recipient_id': self.recipient_id,
            'details': to_json_value(self.details),
            'timestamp': self.timestamp.isoformat()
        }


class NotificationDispatcher(ABC):
    """Abstract notification channel"""

    @abstractmethod
    def notify(self, notification: WorkflowNotification) -> bool:
        """Deliver a notification. Returns True if delivered."""
        pass


class LogNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log; the default when no webhook is configured"""

    def notify(self, notification: WorkflowNotification) -> bool:
        logger.info("Notification %s for report %s to %s",
                    notification.action.value, notification.report_id,
                    notification.recipient_id or "organization admins")
        return True


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs notifications as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 2.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, notification: WorkflowNotification) -> bool:
        try:
            response = self._client.post(self.url, json=notification.to_dict(), timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Webhook notification for report %s failed: %s", notification.report_id, e)
            return False

        if response.status_code >= 300:
            logger.warning("Webhook returned %s for report %s", response.status_code, notification.report_id)
            return False
        return True

    def close(self) -> None:
        self._client.close()


def build_dispatcher(webhook_url: str, timeout: float = 2.0) -> NotificationDispatcher:
    """Webhook dispatcher when a URL is configured, log dispatcher otherwise"""
    if webhook_url:
        return WebhookNotificationDispatcher(webhook_url, timeout=timeout)
    return LogNotificationDispatcher()
