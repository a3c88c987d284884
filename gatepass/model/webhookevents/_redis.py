from __future__ import annotations
import redis.asyncio as redis


def k_seen(key: str) -> str:
    return f"webhook:seen:{key}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, key: str) -> bool:
        return bool(await self.r.exists(k_seen(key)))

    async def mark_processed(self, key: str) -> bool:
        # NX: True only for the first writer
        ok = await self.r.set(k_seen(key), "1", nx=True, ex=self.ttl)
        return bool(ok)
