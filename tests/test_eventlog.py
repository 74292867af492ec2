from unittest.mock import AsyncMock

from racenight.model.eventlog._postgres import EventLog as PgEventLog
from racenight.model.eventlog._redis import EVENT_TTL_SECONDS
from racenight.model.eventlog._redis import EventLog as RedisEventLog


async def test_pg_event_log(db):
    SessionAsync, gated = db
    async with SessionAsync() as s:
        events = PgEventLog(db=s, gated=gated)
        assert not await events.seen("evt_1")
        assert await events.mark_processed("evt_1", "checkout.session.completed")
        assert await events.seen("evt_1")
    # a later delivery, in its own request session
    async with SessionAsync() as s:
        events = PgEventLog(db=s, gated=gated)
        assert await events.seen("evt_1")
        assert not await events.mark_processed("evt_1")


async def test_pg_event_log_without_id(db):
    SessionAsync, gated = db
    async with SessionAsync() as s:
        events = PgEventLog(db=s, gated=gated)
        assert not await events.seen(None)
        assert not await events.mark_processed(None)


async def test_redis_event_log():
    r = AsyncMock()
    r.exists.return_value = 0
    r.set.return_value = True
    events = RedisEventLog(r=r)

    assert not await events.seen("evt_1")
    assert await events.mark_processed("evt_1", "checkout.session.completed")
    r.set.assert_awaited_once_with("evt:evt_1", "checkout.session.completed",
                                   nx=True, ex=EVENT_TTL_SECONDS)

    r.set.return_value = None
    assert not await events.mark_processed("evt_1")
    r.exists.return_value = 1
    assert await events.seen("evt_1")
