"""Document and certificate generation channel."""

import json

import httpx

from courseflow.channels.base import HttpChannel, response_reference
from courseflow.core.config import get_settings
from courseflow.core.exceptions import PermanentDeliveryError
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, DocumentChannel as DocumentConfig, FlowAction
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.storage.auxiliary import DeliveryLog

logger = get_logger(__name__)


class DocumentChannel(HttpChannel):
    """Requests generation (and optional delivery) from the document service."""

    def __init__(
        self,
        delivery_log: DeliveryLog,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, client, timeout)
        self._url = get_settings().document_service_url

    @property
    def channel_types(self) -> frozenset[ChannelType]:
        return frozenset({ChannelType.DOCUMENT, ChannelType.CERTIFICATE})

    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        """Request the artifact.

        Raises:
            PermanentDeliveryError: With ``skip`` set when a certificate is
                requested for a subject without a recorded completion
        """
        config: DocumentConfig = action.channel  # type: ignore[assignment]

        if action.channel_type == ChannelType.CERTIFICATE and subject.completion_date is None:
            raise PermanentDeliveryError(
                f"Certificate requested before completion of {subject.subject_id}",
                skip=True,
            )

        recipients = self.recipients(action, subject)
        if config.deliver and not recipients:
            raise PermanentDeliveryError(
                f"No recipients for role {action.recipient_role.value} to deliver the document to"
            )

        payload = {
            "idempotency_key": record.idempotency_key,
            "organization_id": record.organization_id,
            "kind": action.channel_type.value,
            "template_id": action.destination,
            "deliver": config.deliver,
            "recipients": [r.model_dump() for r in recipients],
            "subject": subject.model_dump(mode="json", exclude={"recipients"}),
        }
        response = await self.post_json(self._url, record, json.dumps(payload).encode())

        artifact = response_reference(response, "artifact_id", "id")
        logger.info(
            "Document generated",
            record_id=record.record_id,
            kind=action.channel_type.value,
            artifact_id=artifact,
        )
        return artifact
