"""
Durable task queues.

At-least-once delivery: a received task stays in a processing list until it
is acked. Failed tasks are pushed back with an attempt counter and end up in
a dead-letter list after ``max_attempts``. Tasks left in the processing list
by a crashed worker are moved back with ``requeue_stale()`` on startup.

``RedisTaskQueue`` is used whenever more than one process is involved;
``InMemoryTaskQueue`` keeps the same contract inside a single event loop.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

import redis.asyncio as aioredis

from minicrm.config import get_settings
from minicrm.errors import QueueError
from minicrm.redis import get_redis_client

logger = logging.getLogger(__name__)

KEY_PREFIX = "minicrm:queue"


@dataclass
class QueuedTask:
    """Envelope for one unit of queued work."""
    name: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    enqueued_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    last_error: Optional[str] = None
    # Serialized form as stored in the processing list, needed to ack it.
    raw: Optional[str] = field(default=None, repr=False, compare=False)

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "attempts": self.attempts,
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
        }, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "QueuedTask":
        try:
            data = json.loads(raw)
            return cls(
                name=data["name"],
                payload=data.get("payload") or {},
                id=data.get("id") or uuid.uuid4().hex,
                attempts=int(data.get("attempts", 0)),
                enqueued_at=data.get("enqueued_at") or datetime.utcnow().isoformat(),
                last_error=data.get("last_error"),
                raw=raw,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise QueueError(f"Malformed task envelope: {e}") from e


class TaskQueue(ABC):

    def __init__(self, name: str, max_attempts: int = 3):
        self.name = name
        self.max_attempts = max_attempts

    @abstractmethod
    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> QueuedTask:
        ...

    @abstractmethod
    async def receive(self, timeout: float = 1.0) -> Optional[QueuedTask]:
        """Next task, or None when nothing arrived within ``timeout`` seconds."""

    @abstractmethod
    async def ack(self, task: QueuedTask):
        ...

    @abstractmethod
    async def _requeue(self, task: QueuedTask, retry: QueuedTask):
        ...

    @abstractmethod
    async def _bury(self, task: QueuedTask, dead: QueuedTask):
        ...

    @abstractmethod
    async def size(self) -> int:
        ...

    @abstractmethod
    async def dead_letters(self) -> List[QueuedTask]:
        ...

    async def requeue_stale(self) -> int:
        return 0

    async def aclose(self):
        pass

    async def retry(self, task: QueuedTask, error: str) -> bool:
        """
        Put a failed task back, or dead-letter it once attempts run out.

        Returns:
            True when the task will be redelivered.
        """
        attempts = task.attempts + 1
        again = QueuedTask(
            name=task.name,
            payload=task.payload,
            id=task.id,
            attempts=attempts,
            enqueued_at=task.enqueued_at,
            last_error=error[:1000],
        )
        if attempts >= self.max_attempts:
            await self._bury(task, again)
            logger.error(f"Task {task.name} ({task.id}) dead-lettered after {attempts} attempts: {error}")
            return False
        await self._requeue(task, again)
        logger.warning(f"Task {task.name} ({task.id}) failed (attempt {attempts}/{self.max_attempts}), requeued")
        return True

    async def dead_letter(self, task: QueuedTask, error: str):
        dead = QueuedTask(
            name=task.name,
            payload=task.payload,
            id=task.id,
            attempts=task.attempts + 1,
            enqueued_at=task.enqueued_at,
            last_error=error[:1000],
        )
        await self._bury(task, dead)


class RedisTaskQueue(TaskQueue):
    """LPUSH / BLMOVE reliable queue over redis.asyncio."""

    def __init__(self, name: str, client: aioredis.Redis, max_attempts: int = 3):
        super().__init__(name, max_attempts)
        self.client = client
        self.pending_key = f"{KEY_PREFIX}:{name}"
        self.processing_key = f"{KEY_PREFIX}:{name}:processing"
        self.dead_key = f"{KEY_PREFIX}:{name}:dead"

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> QueuedTask:
        task = QueuedTask(name=task_name, payload=payload)
        try:
            await self.client.lpush(self.pending_key, task.to_json())
        except aioredis.RedisError as e:
            raise QueueError(f"Could not enqueue {task_name} on {self.name}: {e}") from e
        return task

    async def receive(self, timeout: float = 1.0) -> Optional[QueuedTask]:
        raw = await self.client.blmove(
            self.pending_key, self.processing_key, timeout, src="RIGHT", dest="LEFT"
        )
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return QueuedTask.from_json(raw)
        except QueueError as e:
            logger.error(f"Discarding unreadable entry from {self.name}: {e}")
            await self.client.lrem(self.processing_key, 1, raw)
            await self.client.lpush(self.dead_key, raw)
            return None

    async def ack(self, task: QueuedTask):
        await self.client.lrem(self.processing_key, 1, task.raw or task.to_json())

    async def _requeue(self, task: QueuedTask, retry: QueuedTask):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, task.raw or task.to_json())
            pipe.lpush(self.pending_key, retry.to_json())
            await pipe.execute()

    async def _bury(self, task: QueuedTask, dead: QueuedTask):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, task.raw or task.to_json())
            pipe.lpush(self.dead_key, dead.to_json())
            await pipe.execute()

    async def requeue_stale(self) -> int:
        moved = 0
        while await self.client.lmove(self.processing_key, self.pending_key, src="RIGHT", dest="RIGHT"):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged tasks on {self.name}")
        return moved

    async def size(self) -> int:
        return await self.client.llen(self.pending_key)

    async def dead_letters(self) -> List[QueuedTask]:
        raws = await self.client.lrange(self.dead_key, 0, -1)
        return [QueuedTask.from_json(raw if isinstance(raw, str) else raw.decode("utf-8")) for raw in raws]


class InMemoryTaskQueue(TaskQueue):
    """Single-process queue with the same ack/retry/dead-letter semantics."""

    def __init__(self, name: str, max_attempts: int = 3):
        super().__init__(name, max_attempts)
        self._pending: Deque[QueuedTask] = deque()
        self._processing: Dict[str, QueuedTask] = {}
        self._dead: List[QueuedTask] = []
        self._available = asyncio.Condition()

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> QueuedTask:
        task = QueuedTask(name=task_name, payload=payload)
        await self._push(task)
        return task

    async def _push(self, task: QueuedTask):
        async with self._available:
            self._pending.append(task)
            self._available.notify()

    async def receive(self, timeout: float = 1.0) -> Optional[QueuedTask]:
        async with self._available:
            try:
                await asyncio.wait_for(self._available.wait_for(lambda: bool(self._pending)), timeout)
            except asyncio.TimeoutError:
                return None
            task = self._pending.popleft()
            self._processing[task.id] = task
            return task

    async def ack(self, task: QueuedTask):
        self._processing.pop(task.id, None)

    async def _requeue(self, task: QueuedTask, retry: QueuedTask):
        self._processing.pop(task.id, None)
        await self._push(retry)

    async def _bury(self, task: QueuedTask, dead: QueuedTask):
        self._processing.pop(task.id, None)
        self._dead.append(dead)

    async def requeue_stale(self) -> int:
        stale = list(self._processing.values())
        self._processing.clear()
        for task in stale:
            await self._push(task)
        return len(stale)

    async def size(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return len(self._processing)

    async def dead_letters(self) -> List[QueuedTask]:
        return list(self._dead)


def build_queue(name: str, settings=None) -> TaskQueue:
    settings = settings or get_settings()
    if settings.QUEUE_BACKEND == "memory":
        return InMemoryTaskQueue(name, max_attempts=settings.QUEUE_MAX_ATTEMPTS)
    return RedisTaskQueue(name, get_redis_client(), max_attempts=settings.QUEUE_MAX_ATTEMPTS)
