import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("EVENTLOG_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import EventLog as _EventLog
else:
    from ._postgres import EventLog as _EventLog


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("EventLog(redis) requires r=redis.Redis")
        return _EventLog(r=r)
    if db is None:
        raise RuntimeError("EventLog(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("EventLog(pg) requires gated=Gated")
    return _EventLog(db=db, gated=gated)


EventLog = _EventLog
__all__ = ["EventLog", "new_store", "BACKEND"]
