from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated
from ._sql import WebhookEventStore as SqlWebhookEventStore
from ._redis import WebhookEventStore as RedisWebhookEventStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600):
    backend = (backend or "sql").lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return RedisWebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    if backend == "sql":
        if sessions is None or gated is None:
            raise RuntimeError(
                "WebhookEventStore(sql) requires sessions= and gated="
            )
        return SqlWebhookEventStore(sessions=sessions, gated=gated)
    raise RuntimeError(f"unknown dedup backend: {backend}")


__all__ = [
    "new_store", "SqlWebhookEventStore", "RedisWebhookEventStore",
]
