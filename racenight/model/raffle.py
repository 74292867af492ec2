# model/raffle.py
"""
Raffle ticket numbering.

Numbers are 6-digit strings drawn at random from 100000..999999. Each
candidate is checked against the persisted `raffle_tickets` before it is
accepted; the UNIQUE constraint on `raffle_tickets.ticket_number` stays
the final arbiter for the window between this check and the insert.
"""

from __future__ import annotations
import random
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AllocationExhausted
from ..infra.sql import Gated
from .order import RaffleTicket

TICKET_MIN = 100_000
TICKET_MAX = 999_999
ATTEMPTS_PER_TICKET = 10

_rng = random.SystemRandom()


def new_book_id() -> str:
    return uuid.uuid4().hex


def is_ticket_number(value: str) -> bool:
    return (
        isinstance(value, str) and len(value) == 6 and value.isdigit()
        and TICKET_MIN <= int(value) <= TICKET_MAX
    )


# UN-GATED internal function
async def _is_taken(db: AsyncSession, number: str) -> bool:
    row = (await db.execute(
        select(RaffleTicket.ticket_number)
        .where(RaffleTicket.ticket_number == number)
        .limit(1)
    )).first()
    return row is not None


async def allocate_ticket_numbers(
    db: AsyncSession,
    gated: Gated,
    count: int,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """
    Return `count` distinct numbers, none of them persisted yet.
    Raises AllocationExhausted after 10 * count candidates; nothing is
    returned in that case, callers must not write a partial batch.
    """
    if count <= 0:
        return []
    rng = rng or _rng
    budget = ATTEMPTS_PER_TICKET * count
    chosen: List[str] = []
    seen = set()

    async with gated():
        async with db.begin():
            attempts = 0
            while len(chosen) < count and attempts < budget:
                attempts += 1
                candidate = str(rng.randint(TICKET_MIN, TICKET_MAX))
                if candidate in seen:
                    continue
                if await _is_taken(db, candidate):
                    continue
                seen.add(candidate)
                chosen.append(candidate)

    if len(chosen) < count:
        raise AllocationExhausted(
            f"could not allocate {count} raffle numbers "
            f"in {budget} attempts (got {len(chosen)})",
            payload={"requested": count, "allocated": len(chosen)},
        )
    return chosen
