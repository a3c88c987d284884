import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("WEBHOOK_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import WebhookEventStore as _WebhookEventStore
else:
    from ._sql import WebhookEventStore as _WebhookEventStore


def idempotency_key(event: Optional[str], reference: Optional[str]) -> str:
    """Delivery key: one per (event type, payment reference)."""
    return f"{event or 'unknown'}:{reference or ''}"


def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return _WebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("WebhookEventStore(sql) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("WebhookEventStore(sql) requires gated=Gated")
    return _WebhookEventStore(db=db, gated=gated)


WebhookEventStore = _WebhookEventStore
__all__ = ["WebhookEventStore", "new_store", "idempotency_key", "BACKEND"]
