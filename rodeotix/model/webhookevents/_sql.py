from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...helpers import now_ts
from ...infra.sql import Gated


class WebhookEventStore:
    """Provider event ids already reconciled, in `webhook_events_seen`."""

    def __init__(
        self, *, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    async def is_seen(self, key: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                row = (await db.execute(text("""
                  SELECT idempotency_key FROM webhook_events_seen
                  WHERE idempotency_key = :k
                """), {"k": key})).first()
        return row is not None

    async def mark_event_seen(self, key: str) -> bool:
        """True if the key is new, False if it was already recorded."""
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    result = await db.execute(text("""
                      INSERT INTO webhook_events_seen(idempotency_key,
                                                      created_at)
                      VALUES(:k, :ts)
                      ON CONFLICT (idempotency_key) DO NOTHING
                    """), {"k": key, "ts": now_ts()})
        return result.rowcount == 1
