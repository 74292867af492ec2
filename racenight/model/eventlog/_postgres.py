from __future__ import annotations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated
from ..order import WebhookEventSeen


class EventLog:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def seen(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(WebhookEventSeen.event_id)
                    .where(WebhookEventSeen.event_id == event_id)
                )).first()
        return row is not None

    async def mark_processed(self, event_id: Optional[str],
                             event_type: str = "") -> bool:
        """True if this call recorded the event, False if it already was."""
        if not event_id:
            return False
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(WebhookEventSeen(
                        event_id=event_id,
                        event_type=event_type,
                        created_at=now_ts(),
                    ))
        except IntegrityError:
            return False
        return True
