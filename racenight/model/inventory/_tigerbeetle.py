# model/inventory/_tigerbeetle.py
"""
TigerBeetle inventory backend.

Each category is a pair of accounts on the inventory ledger:
  operator --(transfer of qty)--> sold
so `sold.credits_posted` is the running total, maintained atomically by
the ledger.
"""
from __future__ import annotations
from typing import Any, Dict, List
import logging

import tigerbeetle as tb

from ...helpers import now_ts, to_iso
from ._common import (
    CATEGORIES, EVENT_TICKETS, HORSES, PROGRAM_ADS, RAFFLE_TICKETS,
    DONATIONS, capacity_for,
)

log = logging.getLogger(__name__)

LedgerInventory = 3000
CodeSale = 30

# (operator, sold) account ids per category
_ACCOUNT_IDS = {
    EVENT_TICKETS: (3110, 3119),
    HORSES: (3120, 3129),
    PROGRAM_ADS: (3130, 3139),
    RAFFLE_TICKETS: (3140, 3149),
    DONATIONS: (3150, 3159),
}


def _accounts() -> List[tb.Account]:
    out = []
    for category in CATEGORIES:
        operator_id, sold_id = _ACCOUNT_IDS[category]
        out.append(tb.Account(id=operator_id, ledger=LedgerInventory,
                              code=CodeSale))
        out.append(tb.Account(id=sold_id, ledger=LedgerInventory,
                              code=CodeSale))
    return out


async def create_schema(client: tb.ClientAsync) -> bool:
    account_errors = await client.create_accounts(_accounts())
    # EXISTS is fine: accounts survive restarts
    real = [e for e in account_errors
            if e.result != tb.CreateAccountResult.EXISTS]
    if real:
        log.error("creating inventory accounts failed",
                  extra={"ctx": {"errors": [str(e) for e in real]}})
        return False
    log.info("inventory accounts ready")
    return True


async def increment(client: tb.ClientAsync, category: str, qty: int) -> None:
    if category not in CATEGORIES:
        raise ValueError(f"Unknown inventory category: {category}")
    if qty <= 0:
        return
    operator_id, sold_id = _ACCOUNT_IDS[category]
    transfer_errors = await client.create_transfers([
        tb.Transfer(
            id=tb.id(),
            debit_account_id=operator_id,
            credit_account_id=sold_id,
            amount=int(qty),
            ledger=LedgerInventory,
            code=CodeSale,
        ),
    ])
    if transfer_errors:
        raise RuntimeError(
            f"inventory transfer failed: {transfer_errors[0].result}"
        )


async def compute_inventory(client: tb.ClientAsync) -> Dict[str, Any]:
    sold_ids = [_ACCOUNT_IDS[c][1] for c in CATEGORIES]
    accounts = await client.lookup_accounts(sold_ids)
    by_id = {a.id: a for a in accounts}
    now = now_ts()
    out: Dict[str, Any] = {}
    for category, sold_id in zip(CATEGORIES, sold_ids):
        account = by_id.get(sold_id)
        sold = int(account.credits_posted) if account is not None else 0
        cap = capacity_for(category)
        out[category] = {
            "capacity": cap,
            "sold": sold,
            "available": None if cap is None else cap - sold,
            "sold_out": False if cap is None else cap - sold <= 0,
            "timestamp": to_iso(now),
        }
    return out
