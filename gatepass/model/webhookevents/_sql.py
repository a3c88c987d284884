from __future__ import annotations
from typing import Callable, AsyncContextManager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts


class WebhookEventStore:
    """
    Processed-delivery keys in `webhook_events_seen`.

    A key is only written after the delivery was handled, so a delivery
    that failed half way is processed again on the gateway's retry.
    """

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    async def seen(self, key: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT 1 FROM webhook_events_seen
                  WHERE idempotency_key = :k
                """), {"k": key})).first()
        return row is not None

    async def mark_processed(self, key: str) -> bool:
        """True if the key is new."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(idempotency_key, created_at)
                  VALUES (:k, :ts)
                  ON CONFLICT (idempotency_key) DO NOTHING
                  RETURNING idempotency_key
                """), {"k": key, "ts": now_ts()})).first()
        return row is not None
