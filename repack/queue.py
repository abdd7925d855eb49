"""
OCR job queue.

Jobs carry the parcel id plus retry bookkeeping. Redis stores them as JSON in
a list; the in-memory queue is used for tests and single-process runs, where
the API drains it itself after each intake.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OcrJob:
    parcel_id: str
    ocr_provider: Optional[str] = None
    attempts: int = 0
    enqueued_at: float = field(default_factory=lambda: time.time())

    def retried(self) -> "OcrJob":
        return OcrJob(self.parcel_id, self.ocr_provider, self.attempts + 1)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "OcrJob":
        # Bare ids are accepted so jobs can be pushed by hand with redis-cli.
        if not raw.startswith("{"):
            return cls(parcel_id=raw)
        return cls(**json.loads(raw))


class JobQueue(Protocol):
    def enqueue(self, job: OcrJob) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[OcrJob]:
        ...

    def size(self) -> int:
        ...


class InMemoryJobQueue:
    """Thread-safe FIFO; ``dequeue(block=True)`` waits up to ``timeout`` seconds."""

    def __init__(self):
        self.items: deque[OcrJob] = deque()
        self._ready = threading.Condition()

    def enqueue(self, job: OcrJob) -> None:
        with self._ready:
            self.items.append(job)
            self._ready.notify()

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[OcrJob]:
        with self._ready:
            if block and not self.items:
                self._ready.wait_for(lambda: bool(self.items), timeout=timeout)
            if not self.items:
                return None
            return self.items.popleft()

    def size(self) -> int:
        return len(self.items)


class RedisJobQueue:
    def __init__(self, url: str, queue_key: str = "repack:ocr-jobs"):
        self.url = url
        self.queue_key = queue_key
        self.client = redis.Redis.from_url(url)

    def _reconnect(self) -> None:
        # Managed Redis drops idle connections.
        logger.warning("Redis connection lost; reconnecting to %s", self.queue_key)
        self.client = redis.Redis.from_url(self.url)

    def enqueue(self, job: OcrJob) -> None:
        payload = job.to_json()
        try:
            self.client.rpush(self.queue_key, payload)
        except redis_exceptions.ConnectionError:
            self._reconnect()
            self.client.rpush(self.queue_key, payload)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[OcrJob]:
        try:
            if block:
                popped = self.client.blpop(self.queue_key, timeout=timeout or 0)
                raw = popped[1] if popped else None
            else:
                raw = self.client.lpop(self.queue_key)
        except redis_exceptions.ConnectionError:
            # The next poll uses the new connection.
            self._reconnect()
            return None
        if raw is None:
            return None
        return OcrJob.from_json(raw.decode("utf-8"))

    def size(self) -> int:
        try:
            return int(self.client.llen(self.queue_key))
        except redis_exceptions.ConnectionError:
            self._reconnect()
            return int(self.client.llen(self.queue_key))
