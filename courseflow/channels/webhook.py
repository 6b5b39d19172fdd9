"""Signed webhook channel."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import httpx

from courseflow.channels.base import HttpChannel, response_reference
from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, FlowAction, WebhookChannel as WebhookConfig
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.storage.auxiliary import DeliveryLog

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-CourseFlow-Signature"


def sign_payload(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 over "{timestamp}.{body}", hex encoded."""
    message = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, header: str, body: bytes, tolerance: int = 300) -> bool:
    """Check a signature header produced by ``WebhookChannel``.

    Receivers can use this to validate payloads.
    """
    parts = dict(item.split("=", 1) for item in header.split(",") if "=" in item)
    try:
        timestamp = int(parts["t"])
    except (KeyError, ValueError):
        return False
    if abs(time.time() - timestamp) > tolerance:
        return False
    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, parts.get("v1", ""))


class WebhookChannel(HttpChannel):
    """HTTP POST of a signed JSON payload to the action's URL."""

    def __init__(
        self,
        delivery_log: DeliveryLog,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, client, timeout)
        self._default_secret = get_settings().webhook_signing_secret

    @property
    def channel_types(self) -> frozenset[ChannelType]:
        return frozenset({ChannelType.WEBHOOK})

    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        config: WebhookConfig = action.channel  # type: ignore[assignment]
        body = self.build_body(record, action, subject)

        headers = dict(config.headers)
        secret = config.secret or self._default_secret
        if secret:
            timestamp = int(time.time())
            headers[SIGNATURE_HEADER] = f"t={timestamp},v1={sign_payload(secret, timestamp, body)}"

        response = await self.post_json(action.destination, record, body, headers)
        logger.info(
            "Webhook delivered",
            record_id=record.record_id,
            status_code=response.status_code,
        )
        return response_reference(response, "id") or str(response.status_code)

    @staticmethod
    def build_body(record: ExecutionRecord, action: FlowAction, subject: Subject) -> bytes:
        payload = {
            "event": "flow_action.fired",
            "idempotency_key": record.idempotency_key,
            "record_id": record.record_id,
            "attempt": record.attempt_count + 1,
            "fired_at": datetime.now(timezone.utc).isoformat(),
            "organization_id": record.organization_id,
            "action": {
                "action_id": action.action_id,
                "title": action.title,
                "channel_type": action.channel_type.value,
                "recipient_role": action.recipient_role.value,
                "scope_type": action.scope.scope_type.value,
                "scope_id": action.scope.scope_id,
            },
            "subject": {
                "subject_id": subject.subject_id,
                "subject_type": subject.subject_type.value,
                "recipients": [
                    r.model_dump() for r in subject.recipients_for(action.recipient_role)
                ],
                "data": subject.data,
            },
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()
