"""Push/in-app notification channel (also serves reminders)."""

import json

import httpx

from courseflow.channels.base import HttpChannel, response_reference
from courseflow.core.config import get_settings
from courseflow.core.exceptions import PermanentDeliveryError
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, FlowAction
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.storage.auxiliary import DeliveryLog
from courseflow.storage.template_store import TemplateStore

logger = get_logger(__name__)


class NotificationChannel(HttpChannel):
    """Templated notification handed to the notification service."""

    def __init__(
        self,
        templates: TemplateStore,
        delivery_log: DeliveryLog,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, client, timeout)
        self._templates = templates
        self._url = get_settings().notification_service_url

    @property
    def channel_types(self) -> frozenset[ChannelType]:
        return frozenset({ChannelType.NOTIFICATION, ChannelType.REMINDER})

    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        template = await self._templates.get(action.destination)
        if template is None or not template.is_active:
            raise PermanentDeliveryError(
                f"Notification template {action.destination} not found or inactive"
            )

        user_ids = [r.user_id for r in self.recipients(action, subject) if r.user_id]
        if not user_ids:
            raise PermanentDeliveryError(
                f"No notification recipients for role {action.recipient_role.value}"
            )

        title, message = template.render(subject.template_variables())
        payload = {
            "idempotency_key": record.idempotency_key,
            "organization_id": record.organization_id,
            "type": action.channel_type.value,
            "recipients": user_ids,
            "title": title,
            "message": message,
            "record_id": record.record_id,
        }
        response = await self.post_json(self._url, record, json.dumps(payload).encode())

        logger.info("Notification sent", recipients=len(user_ids), record_id=record.record_id)
        return response_reference(response, "id", "notification_id")
