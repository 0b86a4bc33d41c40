from __future__ import annotations
import redis.asyncio as redis


def k_idemp(key: str) -> str: return f"idemp:{key}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def is_seen(self, key: str) -> bool:
        return bool(await self.r.exists(k_idemp(key)))

    async def mark_event_seen(self, key: str) -> bool:
        # NX gate; providers stop redelivering long before the TTL
        ok = await self.r.set(k_idemp(key), "1", nx=True, ex=self.ttl)
        return bool(ok)
