"""
Queue Worker - Background Task Processing

Consumes the ingestion, campaign and delivery-update queues concurrently and
owns the delivery status aggregator's lifecycle:

- Ingestion tasks: customer/order writes
- Campaign tasks: audience resolution and fan-out
- Delivery tasks: buffered into the aggregator, flushed in batches

Failure policy per task:
- NotFoundError / validation errors: logged, task dropped
- Anything else: retried up to QUEUE_MAX_ATTEMPTS, then dead-lettered

Run with ``python -m minicrm.worker``.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from minicrm.config import get_settings
from minicrm.database import create_tables
from minicrm.errors import NotFoundError, ValidationFailedError
from minicrm.integrations.vendor import OutboundMessage, VendorDispatcher, build_dispatcher
from minicrm.models import DeliveryStatus
from minicrm.orchestration import QueueSet, TaskContext, registry, DELIVERY_QUEUE
from minicrm.services.aggregator import DeliveryEvent, DeliveryStatusAggregator
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.customer_store import CustomerStore
from minicrm.services.delivery_log import DeliveryLogStore
from minicrm.services.orchestrator import CampaignOrchestrator
from minicrm.task_queue import TaskQueue

import minicrm.tasks  # noqa: F401  (registers handlers)

logger = logging.getLogger(__name__)

ACKED = "acked"
DROPPED = "dropped"
RETRIED = "retried"
DEAD = "dead"


class Worker:

    def __init__(
        self,
        queues: QueueSet,
        context: TaskContext,
        dispatcher: Optional[VendorDispatcher] = None,
        receive_timeout: float = 1.0,
    ):
        self.queues = queues
        self.context = context
        self.dispatcher = dispatcher
        self.receive_timeout = receive_timeout
        self._stopping = asyncio.Event()
        self._consumers: List[asyncio.Task] = []

    async def process_next(self, queue: TaskQueue, timeout: Optional[float] = None) -> Optional[str]:
        """
        Receive and handle one task from ``queue``.

        Returns:
            The outcome (acked, dropped, retried, dead), or None if the queue was empty.
        """
        task = await queue.receive(self.receive_timeout if timeout is None else timeout)
        if task is None:
            return None

        handler = registry.get_handler(task.name)
        if handler is None:
            logger.error(f"No handler registered for task {task.name} ({task.id})")
            await queue.dead_letter(task, f"unknown task {task.name}")
            return DEAD

        try:
            await handler(task.payload, self.context)
        except (NotFoundError, ValidationFailedError) as e:
            logger.warning(f"Dropping task {task.name} ({task.id}): {e}")
            await queue.ack(task)
            return DROPPED
        except Exception as e:
            logger.exception(f"Task {task.name} ({task.id}) failed: {e}")
            requeued = await queue.retry(task, f"{type(e).__name__}: {e}")
            return RETRIED if requeued else DEAD

        await queue.ack(task)
        return ACKED

    async def drain(self, max_rounds: int = 10000) -> int:
        """Handle tasks until every queue is empty. Returns how many were handled."""
        handled = 0
        for _ in range(max_rounds):
            progressed = False
            for queue in self.queues:
                if await self.process_next(queue, timeout=0.01) is not None:
                    handled += 1
                    progressed = True
            if not progressed:
                break
        return handled

    async def _consume(self, queue: TaskQueue):
        logger.info(f"Consuming {queue.name}")
        while not self._stopping.is_set():
            try:
                await self.process_next(queue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Broker trouble; back off instead of spinning.
                logger.error(f"Receive from {queue.name} failed: {e}")
                await asyncio.sleep(1)

    async def start(self):
        for queue in self.queues:
            await queue.requeue_stale()
        self.context.aggregator.start()
        self._consumers = [asyncio.create_task(self._consume(queue)) for queue in self.queues]
        logger.info(f"Worker started with {len(self._consumers)} consumers")

    async def run(self):
        await self.start()
        await self._stopping.wait()
        await self.shutdown()

    def stop(self):
        self._stopping.set()

    async def shutdown(self):
        self._stopping.set()
        for consumer in self._consumers:
            consumer.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []

        await self.context.orchestrator.wait_for_dispatches()
        await self.context.aggregator.stop()
        if self.dispatcher is not None:
            await self.dispatcher.aclose()
        logger.info("Worker stopped")


def build_worker(queues: Optional[QueueSet] = None, settings=None) -> Worker:
    """Wire the stores, aggregator, vendor and orchestrator into a worker."""
    settings = settings or get_settings()
    queues = queues or QueueSet.from_settings(settings)

    customer_store = CustomerStore()
    campaign_repo = CampaignRepository()
    delivery_log = DeliveryLogStore()
    aggregator = DeliveryStatusAggregator(
        delivery_log=delivery_log,
        campaign_repo=campaign_repo,
        batch_size=settings.DELIVERY_BATCH_SIZE,
        flush_interval=settings.DELIVERY_FLUSH_INTERVAL_SECONDS,
    )

    async def enqueue_receipt(receipt: dict):
        await queues[DELIVERY_QUEUE].enqueue("update-delivery-status", receipt)

    async def record_send_failure(message: OutboundMessage, error: Exception):
        await aggregator.submit(DeliveryEvent(message.delivery_id, DeliveryStatus.FAILED))

    dispatcher = build_dispatcher(settings, on_receipt=enqueue_receipt)
    orchestrator = CampaignOrchestrator(
        dispatcher=dispatcher,
        customer_store=customer_store,
        campaign_repo=campaign_repo,
        delivery_log=delivery_log,
        on_dispatch_error=record_send_failure,
        settings=settings,
    )
    context = TaskContext(
        customer_store=customer_store,
        orchestrator=orchestrator,
        aggregator=aggregator,
    )
    return Worker(queues, context, dispatcher, receive_timeout=settings.QUEUE_RECEIVE_TIMEOUT_SECONDS)


async def main():
    """Start the worker and run until SIGINT/SIGTERM."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    await create_tables()
    worker = build_worker(settings=settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            pass  # Windows

    logger.info("Worker started. Waiting for tasks...")
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
