"""
Buffer for analytics events waiting to be flushed to the database.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production, so several API processes share one buffer.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import List, Protocol

import redis
from redis import exceptions as redis_exceptions


class EventQueue(Protocol):
    """Minimal FIFO interface for serialized analytics events."""

    def push(self, payload: dict) -> int:
        ...

    def pop_batch(self, max_items: int) -> List[dict]:
        ...

    def requeue(self, payloads: List[dict]) -> None:
        ...

    def size(self) -> int:
        ...


@dataclass
class InMemoryEventQueue:
    """Simple FIFO queue for testing/dev."""

    items: List[dict] = field(default_factory=list)

    def __post_init__(self):
        self._lock = threading.Lock()

    def push(self, payload: dict) -> int:
        with self._lock:
            self.items.append(payload)
            return len(self.items)

    def pop_batch(self, max_items: int) -> List[dict]:
        with self._lock:
            batch = self.items[:max_items]
            del self.items[:max_items]
            return batch

    def requeue(self, payloads: List[dict]) -> None:
        with self._lock:
            self.items[:0] = payloads

    def size(self) -> int:
        return len(self.items)


@dataclass
class RedisEventQueue:
    """Redis-backed queue using list push/pop operations."""

    url: str
    queue_key: str = "bloomfund:analytics"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _reconnect(self) -> None:
        self.client = redis.Redis.from_url(self.url)

    def push(self, payload: dict) -> int:
        return int(self.client.rpush(self.queue_key, json.dumps(payload, default=str)))

    def pop_batch(self, max_items: int) -> List[dict]:
        try:
            pipe = self.client.pipeline()
            pipe.lrange(self.queue_key, 0, max_items - 1)
            pipe.ltrim(self.queue_key, max_items, -1)
            raw_items, _ = pipe.execute()
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as empty queue
            # and allow the next flush to retry.
            self._reconnect()
            return []
        return [json.loads(item) for item in raw_items]

    def requeue(self, payloads: List[dict]) -> None:
        if not payloads:
            return
        # LPUSH reverses its arguments, so push newest first to keep FIFO order.
        encoded = [json.dumps(payload, default=str) for payload in reversed(payloads)]
        self.client.lpush(self.queue_key, *encoded)

    def size(self) -> int:
        try:
            return int(self.client.llen(self.queue_key))
        except redis_exceptions.ConnectionError:
            self._reconnect()
            return 0
