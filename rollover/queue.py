"""
Queue of user ids waiting for an opportunistic rollover.

Clients enqueue a user on activity; workers pop ids and run the rollover.
A user holds at most one place in the queue: from ``enqueue`` until the
worker calls ``release`` after running the rollover, further requests for
the same user are dropped, so two workers never roll one user at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class RolloverQueue(Protocol):
    """Per-user single-flight queue of pending rollovers."""

    def enqueue(self, user_id: str) -> bool:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...

    def release(self, user_id: str) -> None:
        ...


@dataclass
class InMemoryRolloverQueue:
    """FIFO of user ids with a set of users already queued or in flight."""

    items: list[str] = field(default_factory=list)
    pending: set[str] = field(default_factory=set)

    def enqueue(self, user_id: str) -> bool:
        if user_id in self.pending:
            return False
        self.pending.add(user_id)
        self.items.append(user_id)
        return True

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        if not self.items:
            return None
        return self.items.pop(0)

    def release(self, user_id: str) -> None:
        self.pending.discard(user_id)


@dataclass
class RedisRolloverQueue:
    """
    Redis list of user ids, guarded by one ``SET NX`` marker per user.

    The marker expires after ``pending_ttl_seconds`` so a worker that dies
    mid-rollover cannot block the user forever.
    """

    url: str
    queue_key: str = "rollover:users"
    pending_ttl_seconds: int = 3600

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def pending_key(self, user_id: str) -> str:
        return f"{self.queue_key}:pending:{user_id}"

    def enqueue(self, user_id: str) -> bool:
        if not self.client.set(
            self.pending_key(user_id), 1, nx=True, ex=self.pending_ttl_seconds
        ):
            logger.debug("Rollover for %s already pending", user_id)
            return False
        self.client.rpush(self.queue_key, user_id)
        return True

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, user_id = result
            else:
                user_id = self.client.lpop(self.queue_key)
                if user_id is None:
                    return None
            return user_id.decode("utf-8")
        except redis_exceptions.ConnectionError:
            # Managed Redis drops idle connections; reconnect and report empty.
            self.client = redis.Redis.from_url(self.url)
            return None

    def release(self, user_id: str) -> None:
        self.client.delete(self.pending_key(user_id))
