"""Action dispatcher: routes an execution to the adapter for its channel type."""

import time

from redis.asyncio import Redis

from courseflow.channels.base import ActionChannel, DispatchResult
from courseflow.channels.document import DocumentChannel
from courseflow.channels.email import EmailChannel
from courseflow.channels.notification import NotificationChannel
from courseflow.channels.service import ServiceChannel
from courseflow.channels.webhook import WebhookChannel
from courseflow.core.logging import get_logger
from courseflow.models.action import ChannelType, FlowAction
from courseflow.models.execution import ExecutionRecord
from courseflow.models.subject import Subject
from courseflow.observability.metrics import DISPATCH_LATENCY, DISPATCHES
from courseflow.storage.auxiliary import DeliveryLog
from courseflow.storage.template_store import TemplateStore

logger = get_logger(__name__)


class ActionDispatcher:
    """Polymorphic executor keyed by channel type."""

    def __init__(self, channels: list[ActionChannel]):
        """Initialize dispatcher.

        Args:
            channels: Channel adapters; later adapters override earlier ones
                for the same channel type
        """
        self._channels: dict[ChannelType, ActionChannel] = {}
        for channel in channels:
            for channel_type in channel.channel_types:
                self._channels[channel_type] = channel

    @classmethod
    def default(cls, redis: Redis) -> "ActionDispatcher":
        """Dispatcher wired with every production channel."""
        delivery_log = DeliveryLog(redis)
        templates = TemplateStore(redis)
        return cls(
            [
                EmailChannel(templates, delivery_log),
                NotificationChannel(templates, delivery_log),
                WebhookChannel(delivery_log),
                DocumentChannel(delivery_log),
                ServiceChannel(delivery_log),
            ]
        )

    def supports(self, channel_type: ChannelType) -> bool:
        return channel_type in self._channels

    async def dispatch(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        subject: Subject,
    ) -> DispatchResult:
        """Execute one record.

        Args:
            record: Record in running state
            action: Its flow action
            subject: Current subject snapshot

        Returns:
            Completed, transient failure or permanent failure
        """
        channel_type = action.channel_type
        channel = self._channels.get(channel_type)
        if channel is None:
            result = DispatchResult.permanent(f"No channel registered for {channel_type.value}")
        else:
            started = time.perf_counter()
            try:
                result = await channel.send(record, action, subject)
            except Exception as e:
                # Counted as an attempt so the retry bound still applies
                logger.error(
                    "Channel raised unexpectedly",
                    record_id=record.record_id,
                    channel=channel_type.value,
                    error=str(e),
                    exc_info=True,
                )
                result = DispatchResult.transient(f"Unexpected {type(e).__name__}: {e}")
            DISPATCH_LATENCY.labels(channel=channel_type.value).observe(time.perf_counter() - started)

        DISPATCHES.labels(channel=channel_type.value, outcome=result.outcome.value).inc()
        logger.info(
            "Dispatch finished",
            record_id=record.record_id,
            channel=channel_type.value,
            outcome=result.outcome.value,
            reason=result.reason or None,
            deduplicated=result.deduplicated,
        )
        return result

    async def close(self) -> None:
        """Close every distinct channel once."""
        seen: set[int] = set()
        for channel in self._channels.values():
            if id(channel) in seen:
                continue
            seen.add(id(channel))
            await channel.close()
