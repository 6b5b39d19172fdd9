"""Platform service channel for assignment, payment, meeting and similar actions."""

import json

import httpx

from courseflow.channels.base import HttpChannel, response_reference
from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, FlowAction, ServiceChannel as ServiceConfig
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.storage.auxiliary import DeliveryLog

logger = get_logger(__name__)

SERVICE_CHANNEL_TYPES = frozenset(
    {
        ChannelType.ASSIGNMENT,
        ChannelType.PAYMENT,
        ChannelType.ENROLLMENT,
        ChannelType.COMPLETION,
        ChannelType.FEEDBACK,
        ChannelType.MEETING,
        ChannelType.RESOURCE,
    }
)


class ServiceChannel(HttpChannel):
    """POSTs to ``{platform_service_url}/{channel_type}``.

    The channels differ only in the endpoint they reach and the payload the
    organization configured on the action.
    """

    def __init__(
        self,
        delivery_log: DeliveryLog,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, client, timeout)
        self._base_url = get_settings().platform_service_url.rstrip("/")

    @property
    def channel_types(self) -> frozenset[ChannelType]:
        return SERVICE_CHANNEL_TYPES

    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        config: ServiceConfig = action.channel  # type: ignore[assignment]
        url = f"{self._base_url}/{action.channel_type.value}"

        payload = {
            **config.payload,
            "idempotency_key": record.idempotency_key,
            "organization_id": record.organization_id,
            "target": action.destination,
            "recipient_role": action.recipient_role.value,
            "recipients": [r.model_dump() for r in self.recipients(action, subject)],
            "subject_id": subject.subject_id,
            "scope": action.scope.model_dump(mode="json"),
            "data": subject.data,
        }
        response = await self.post_json(url, record, json.dumps(payload, default=str).encode())

        logger.info(
            "Service action executed",
            record_id=record.record_id,
            channel=action.channel_type.value,
        )
        return response_reference(response, "id")
