"""
Dependency wiring for the worker and scripts.
"""

from __future__ import annotations

from rollover.config import get_settings
from rollover.engine import RolloverEngine
from rollover.queue import InMemoryRolloverQueue, RedisRolloverQueue, RolloverQueue
from rollover.repository import RolloverRepository
from rollover.store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore

_store: DocumentStore | None = None
_queue: RolloverQueue | None = None
_engine: RolloverEngine | None = None


def get_store() -> DocumentStore:
    """
    Return a singleton document store. Construction errors propagate.
    """
    global _store
    if _store:
        return _store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _store = InMemoryDocumentStore()
    else:
        _store = SqlDocumentStore(settings.database_url)
    return _store


def get_queue() -> RolloverQueue:
    """
    Return a singleton queue for opportunistic per-user rollovers.
    """
    global _queue
    if _queue:
        return _queue

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue = RedisRolloverQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
            pending_ttl_seconds=settings.redis_pending_ttl_seconds,
        )
    else:
        _queue = InMemoryRolloverQueue()
    return _queue


def get_engine() -> RolloverEngine:
    global _engine
    if _engine:
        return _engine
    _engine = RolloverEngine(RolloverRepository(get_store()), settings=get_settings())
    return _engine
