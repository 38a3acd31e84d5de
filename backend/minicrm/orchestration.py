"""
Task Orchestration Layer
========================

Every piece of background work in MiniCRM is a named task on one of the
durable queues:

- ``ingestion``         ingest-customer, batch-ingest-customers, ingest-order
- ``campaigns``         process-campaign
- ``delivery-updates``  update-delivery-status

Handlers are plain async functions registered with ``@task_handler``. They
receive the task payload and a ``TaskContext`` carrying the shared services.
"""

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional

from minicrm.task_queue import QueuedTask, TaskQueue, build_queue

logger = logging.getLogger(__name__)

INGESTION_QUEUE = "ingestion"
CAMPAIGN_QUEUE = "campaigns"
DELIVERY_QUEUE = "delivery-updates"

QUEUE_NAMES = (INGESTION_QUEUE, CAMPAIGN_QUEUE, DELIVERY_QUEUE)


@dataclass
class TaskContext:
    """Services a task handler may use. Built once per worker."""
    customer_store: Any
    orchestrator: Any
    aggregator: Any


Handler = Callable[[Dict[str, Any], TaskContext], Awaitable[Any]]


# =============================================================================
# TASK REGISTRY
# =============================================================================

class TaskRegistry:
    """
    Central registry for all tasks.

    Used by the worker to route a received task to its handler, and by the
    API to find which queue a task name belongs to.
    """

    def __init__(self):
        self.handlers: Dict[str, Handler] = {}
        self.queues: Dict[str, str] = {}

    def register(self, name: str, queue: str, func: Handler):
        if name in self.handlers and self.handlers[name] is not func:
            raise ValueError(f"Task already registered: {name}")
        self.handlers[name] = func
        self.queues[name] = queue
        logger.debug(f"Registered task: {name} on {queue}")
        return func

    def get_handler(self, name: str) -> Optional[Handler]:
        return self.handlers.get(name)

    def queue_for(self, name: str) -> str:
        try:
            return self.queues[name]
        except KeyError:
            raise ValueError(f"Task not found: {name}") from None


# Global registry instance
registry = TaskRegistry()


def task_handler(name: str, queue: str):
    """Register an async function as the handler for task ``name``."""
    def decorator(func: Handler) -> Handler:
        @wraps(func)
        async def wrapper(payload: Dict[str, Any], ctx: TaskContext):
            logger.debug(f"Executing task: {name}")
            return await func(payload, ctx)

        wrapper._task_name = name
        wrapper._task_queue = queue
        registry.register(name, queue, wrapper)
        return wrapper
    return decorator


# =============================================================================
# QUEUE ACCESS
# =============================================================================

class QueueSet:
    """One ``TaskQueue`` per queue name, shared by producers and the worker."""

    def __init__(self, queues: Dict[str, TaskQueue]):
        self.queues = queues

    @classmethod
    def from_settings(cls, settings=None) -> "QueueSet":
        return cls({name: build_queue(name, settings) for name in QUEUE_NAMES})

    def __getitem__(self, name: str) -> TaskQueue:
        return self.queues[name]

    def __iter__(self):
        return iter(self.queues.values())

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> QueuedTask:
        queue = self.queues[registry.queue_for(task_name)]
        task = await queue.enqueue(task_name, payload)
        logger.info(f"Enqueued {task_name} ({task.id}) on {queue.name}")
        return task

    async def aclose(self):
        for queue in self.queues.values():
            await queue.aclose()


_queues: Optional[QueueSet] = None


def get_queues() -> QueueSet:
    """Process-wide queue set (FastAPI dependency)."""
    global _queues
    if _queues is None:
        _queues = QueueSet.from_settings()
    return _queues


def set_queues(queues: Optional[QueueSet]):
    global _queues
    _queues = queues
