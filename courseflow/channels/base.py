"""Base class for action channels."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import httpx

from courseflow.core.config import get_settings
from courseflow.core.exceptions import (
    ConfigurationError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, FlowAction
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Recipient, Subject
from courseflow.observability.metrics import DUPLICATES_SUPPRESSED
from courseflow.storage.auxiliary import DeliveryLog

logger = get_logger(__name__)

# Retrying may succeed for these even though they are 4xx
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class DispatchOutcome(str, Enum):
    """Three-way channel result."""

    COMPLETED = "completed"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class DispatchResult:
    """Outcome of one dispatch attempt."""

    outcome: DispatchOutcome
    reason: str = ""
    skip: bool = False  # permanent failure whose precondition can never hold
    reference: str | None = None  # provider message id, artifact id, ...
    deduplicated: bool = False

    @classmethod
    def completed(cls, reference: str | None = None, deduplicated: bool = False) -> "DispatchResult":
        return cls(DispatchOutcome.COMPLETED, reference=reference, deduplicated=deduplicated)

    @classmethod
    def transient(cls, reason: str) -> "DispatchResult":
        return cls(DispatchOutcome.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str, skip: bool = False) -> "DispatchResult":
        return cls(DispatchOutcome.PERMANENT_FAILURE, reason=reason, skip=skip)


class ActionChannel(ABC):
    """Abstract base class for action channels.

    Subclasses implement ``deliver``, which performs the side effect and
    raises ``TransientDeliveryError`` or ``PermanentDeliveryError`` on failure.
    ``send`` wraps it with the idempotency check, the call timeout and the
    error-to-outcome mapping.
    """

    def __init__(self, delivery_log: DeliveryLog, timeout: float | None = None):
        self._delivery_log = delivery_log
        self._timeout = timeout or get_settings().channel_timeout_seconds

    @property
    @abstractmethod
    def channel_types(self) -> frozenset[ChannelType]:
        """Channel types this adapter serves."""
        pass

    @abstractmethod
    async def deliver(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> str | None:
        """Perform the side effect.

        Args:
            record: Execution record being dispatched
            action: Flow action definition
            subject: Current subject snapshot

        Returns:
            Provider reference for the effect, if any
        """
        pass

    async def send(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> DispatchResult:
        """Dispatch once, suppressing effects already performed for this key."""
        channel = action.channel_type.value
        marker = await self._delivery_log.get(record.idempotency_key)
        if marker is not None:
            DUPLICATES_SUPPRESSED.labels(channel=channel).inc()
            logger.info(
                "Effect already delivered, skipping resend",
                record_id=record.record_id,
                channel=channel,
            )
            return DispatchResult.completed(reference=marker.get("reference"), deduplicated=True)

        try:
            reference = await asyncio.wait_for(
                self.deliver(record, action, subject),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return DispatchResult.transient(f"{channel} call timed out after {self._timeout:g}s")
        except TransientDeliveryError as e:
            return DispatchResult.transient(str(e))
        except PermanentDeliveryError as e:
            return DispatchResult.permanent(str(e), skip=e.skip)
        except ConfigurationError as e:
            return DispatchResult.permanent(f"Configuration error: {e}")

        await self._delivery_log.mark(record.idempotency_key, channel, reference)
        return DispatchResult.completed(reference=reference)

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass

    @staticmethod
    def recipients(action: FlowAction, subject: Subject) -> list[Recipient]:
        return subject.recipients_for(action.recipient_role)


class HttpChannel(ActionChannel):
    """Channel backed by an HTTP collaborator."""

    def __init__(
        self,
        delivery_log: DeliveryLog,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(delivery_log, timeout)
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    async def post_json(
        self,
        url: str,
        record: ExecutionRecord,
        content: bytes,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST a JSON body and classify the response.

        Raises:
            TransientDeliveryError: Network errors, timeouts, 408/425/429, 5xx
            PermanentDeliveryError: Other 4xx
        """
        request_headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": record.idempotency_key,
        }
        request_headers.update(headers or {})
        return await self._request("POST", url, content=content, headers=request_headers)

    async def fetch(self, url: str) -> httpx.Response:
        """GET a resource, classifying failures like ``post_json``."""
        return await self._request("GET", url)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Timeout calling {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Network error calling {url}: {e}") from e

        raise_for_delivery_status(response)
        return response

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()


def raise_for_delivery_status(response: httpx.Response) -> None:
    """Map an HTTP status to the transient/permanent taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = f"HTTP {status} from {response.request.url}: {response.text[:200]}"
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientDeliveryError(detail)
    raise PermanentDeliveryError(detail)


def response_reference(response: httpx.Response, *keys: str) -> str | None:
    """Pull a provider reference id out of a JSON response, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    for key in keys or ("id",):
        value = body.get(key)
        if value:
            return str(value)
    return None
