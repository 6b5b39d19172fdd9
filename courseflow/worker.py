"""Worker process: lifecycle event consumer plus claim-and-dispatch scheduler.

Any number of workers may run against the same Redis; they coordinate only
through the execution ledger.
"""

import asyncio
import signal
from typing import Awaitable, Callable

from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger, setup_logging
from courseflow.engine.dispatcher import ActionDispatcher
from courseflow.engine.retry import RetryManager
from courseflow.engine.scheduler import Scheduler
from courseflow.messaging.consumer import RabbitMQConsumer
from courseflow.messaging.handler import handle_event
from courseflow.storage.action_store import ActionStore
from courseflow.storage.auxiliary import DeadLetterQueue
from courseflow.storage.ledger import ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.redis_client import close_redis_pool, get_redis, init_redis_pool
from courseflow.storage.subject_store import SubjectStore

logger = get_logger(__name__)


class WorkerManager:
    """Owns the worker's components and their shutdown."""

    def __init__(self):
        self._settings = get_settings()
        self._consumer: RabbitMQConsumer | None = None
        self._dispatcher: ActionDispatcher | None = None
        self._scheduler: Scheduler | None = None

    def _build(self) -> None:
        redis = get_redis()
        ledger = ExecutionLedger(redis)

        self._dispatcher = ActionDispatcher.default(redis)
        self._consumer = RabbitMQConsumer(handle_event)
        self._scheduler = Scheduler(
            ledger=ledger,
            actions=ActionStore(redis),
            subjects=SubjectStore(redis),
            organizations=OrganizationStore(redis),
            dispatcher=self._dispatcher,
            retry=RetryManager(ledger, DeadLetterQueue(redis)),
        )

    async def start(self) -> None:
        """Run the consumer and the scheduler until both return."""
        setup_logging("worker")
        logger.info("Starting worker", worker_id=self._settings.worker_id)

        await init_redis_pool()
        self._build()

        try:
            await asyncio.gather(
                self._supervise("consumer", self._consumer.start_consuming),
                self._supervise("scheduler", self._scheduler.run),
            )
        finally:
            await self._shutdown()

    @staticmethod
    async def _supervise(name: str, run: Callable[[], Awaitable[None]]) -> None:
        # One component failing must not take the other down with it
        try:
            await run()
        except asyncio.CancelledError:
            logger.info("Component cancelled", component=name)
        except Exception as e:
            logger.error("Component failed", component=name, error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Ask both components to finish."""
        logger.info("Stopping worker")
        if self._scheduler:
            self._scheduler.stop()
        if self._consumer:
            self._consumer.stop()
            # Closing the connection ends the queue iterator
            await self._consumer.disconnect()

    async def _shutdown(self) -> None:
        if self._consumer:
            await self._consumer.disconnect()
        if self._dispatcher:
            await self._dispatcher.close()
        await close_redis_pool()
        logger.info("Worker stopped", worker_id=self._settings.worker_id)


async def main() -> None:
    manager = WorkerManager()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(manager.stop()))

    await manager.start()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
