from __future__ import annotations
from typing import Optional
import redis.asyncio as redis

# provider redelivers for up to three days
EVENT_TTL_SECONDS = 3 * 24 * 3600


def k_event(evt_id: str) -> str: return f"evt:{evt_id}"


class EventLog:
    def __init__(self, *, r: redis.Redis,
                 ttl_seconds: int = EVENT_TTL_SECONDS) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        return bool(await self.r.exists(k_event(event_id)))

    async def mark_processed(self, event_id: Optional[str],
                             event_type: str = "") -> bool:
        if not event_id:
            return False
        ok = await self.r.set(k_event(event_id), event_type or "1",
                              nx=True, ex=self.ttl)
        return bool(ok)
