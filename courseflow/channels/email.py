"""Email action channel."""

import re
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Awaitable, Callable

import aiosmtplib
import httpx

from courseflow.channels.base import HttpChannel
from courseflow.core.config import get_settings
from courseflow.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, EmailChannel as EmailConfig, FlowAction
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.storage.auxiliary import DeliveryLog
from courseflow.storage.template_store import TemplateStore

logger = get_logger(__name__)

Sender = Callable[..., Awaitable[Any]]

FILENAME_PATTERN = re.compile(r'filename="?([^";]+)"?')


class EmailChannel(HttpChannel):
    """Templated email over SMTP.

    Library documents configured on the action are downloaded from the
    document service and attached to the message.
    """

    def __init__(
        self,
        templates: TemplateStore,
        delivery_log: DeliveryLog,
        sender: Sender | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, client, timeout)
        self._settings = get_settings()
        self._templates = templates
        self._send = sender or aiosmtplib.send

    @property
    def channel_types(self) -> frozenset[ChannelType]:
        return frozenset({ChannelType.EMAIL})

    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        """Render the action's template and send it to the role's recipients.

        Returns:
            Message-ID of the sent email
        """
        template = await self._templates.get(action.destination)
        if template is None or not template.is_active:
            raise PermanentDeliveryError(f"Email template {action.destination} not found or inactive")

        to = [r.email for r in self.recipients(action, subject) if r.email]
        if not to:
            raise PermanentDeliveryError(
                f"No email recipients for role {action.recipient_role.value} on subject {subject.subject_id}"
            )

        if not self._settings.smtp_host:
            raise TransientDeliveryError("SMTP not configured")

        title, body = template.render(subject.template_variables())
        message_id = f"<{record.idempotency_key}@courseflow>"

        config: EmailConfig = action.channel  # type: ignore[assignment]
        attachments = [await self._download(document_id) for document_id in config.attach_document_ids]

        msg = MIMEMultipart("mixed")
        msg["Subject"] = title[:200]
        msg["From"] = self._settings.smtp_from or self._settings.smtp_user
        msg["To"] = ", ".join(to)
        msg["Message-ID"] = message_id
        msg["X-Idempotency-Key"] = record.idempotency_key
        text = MIMEMultipart("alternative")
        text.attach(MIMEText(body, "plain", "utf-8"))
        text.attach(MIMEText(self._to_html(body), "html", "utf-8"))
        msg.attach(text)
        for attachment in attachments:
            msg.attach(attachment)

        try:
            await self._send(
                msg,
                hostname=self._settings.smtp_host,
                port=self._settings.smtp_port,
                username=self._settings.smtp_user or None,
                password=self._settings.smtp_password or None,
                use_tls=not self._settings.smtp_use_tls,
                start_tls=self._settings.smtp_use_tls,
                timeout=self._timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise PermanentDeliveryError(f"Recipients refused: {e}") from e
        except aiosmtplib.SMTPResponseException as e:
            # 4xx SMTP replies are temporary by definition
            if 400 <= e.code < 500:
                raise TransientDeliveryError(f"SMTP {e.code}: {e.message}") from e
            raise PermanentDeliveryError(f"SMTP {e.code}: {e.message}") from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"SMTP error: {e}") from e

        logger.info(
            "Email sent",
            recipients=len(to),
            attachments=len(attachments),
            record_id=record.record_id,
        )
        return message_id

    async def _download(self, document_id: str) -> MIMEApplication:
        """Fetch a library document and wrap it as an attachment.

        Raises:
            PermanentDeliveryError: If the document does not exist
            TransientDeliveryError: If the document service is unavailable
        """
        url = f"{self._settings.document_service_url.rstrip('/')}/{document_id}/content"
        response = await self.fetch(url)

        content_type = response.headers.get("content-type", "application/octet-stream")
        _, _, subtype = content_type.split(";")[0].strip().partition("/")
        part = MIMEApplication(response.content, _subtype=subtype or "octet-stream")

        match = FILENAME_PATTERN.search(response.headers.get("content-disposition", ""))
        part.add_header("Content-Disposition", "attachment", filename=match.group(1) if match else document_id)
        return part

    @staticmethod
    def _to_html(body: str) -> str:
        """Convert markdown-like text to basic HTML."""
        html = body.replace("\n", "<br>")
        html = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", html)
        html = re.sub(r"\*(.+?)\*", r"<em>\1</em>", html)
        return f"<html><body>{html}</body></html>"
