# model/inventory/_postgres.py
"""
SQL inventory backend.

One row per category with a running `sold` total. Every sale is a single
upsert-increment statement, so concurrent webhooks never lose an update
the way a read-then-write would.
"""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
from sqlalchemy import text

from ...infra.sql import Gated
from ...helpers import to_iso
from ._common import CATEGORIES, capacity_for


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_INVENTORY = r"""
CREATE TABLE IF NOT EXISTS inventory (
    category    TEXT PRIMARY KEY,
    sold        BIGINT NOT NULL DEFAULT 0 CHECK (sold >= 0),
    updated_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_INCREMENT = r"""
INSERT INTO inventory (category, sold, updated_at)
VALUES (:c, :n, :now)
ON CONFLICT (category) DO UPDATE
SET sold = inventory.sold + EXCLUDED.sold,
    updated_at = EXCLUDED.updated_at
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection) -> bool:
    await db_or_conn.execute(text(SQL_CREATE_INVENTORY))
    return True


async def increment(db: GatedAsyncSession, category: str, qty: int) -> None:
    if category not in CATEGORIES:
        raise ValueError(f"Unknown inventory category: {category}")
    if qty <= 0:
        return
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                text(SQL_INCREMENT),
                {"c": category, "n": int(qty), "now": time.time()},
            )


async def compute_inventory(db: GatedAsyncSession) -> Dict[str, Any]:
    now = time.time()
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                text("SELECT category, sold FROM inventory")
            )).all()
    sold = {r[0]: int(r[1]) for r in rows}

    out: Dict[str, Any] = {}
    for category in CATEGORIES:
        n = sold.get(category, 0)
        cap = capacity_for(category)
        out[category] = {
            "capacity": cap,
            "sold": n,
            "available": None if cap is None else cap - n,
            "sold_out": False if cap is None else cap - n <= 0,
            "timestamp": to_iso(now),
        }
    return out
