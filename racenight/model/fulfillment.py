# model/fulfillment.py
"""
Turns one confirmed checkout session into an order and its child rows.

There are no cross-table transactions: the order header is written first
and is the proof of payment. Each cart line is then written in its own
short transaction; a failing line is logged and recorded as a
fulfillment gap, and the remaining lines are still written.
"""

from __future__ import annotations
import json
import logging
import random
import uuid
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateSession, PersistenceFailure, ReconcileError
from ..helpers import now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..payments import ConfirmedSession
from . import inventory
from .cart import (
    Cart, CartLine, Category, RaffleHolder, HORSE_PRICE, RAFFLE_BOOK_SIZE,
    TICKET_PRICE,
)
from .order import (
    Donation, EventTicket, FulfillmentGap, Horse, Order, ProgramAd,
    RaffleTicket,
)
from .raffle import allocate_ticket_numbers, new_book_id

log = logging.getLogger(__name__)

# whole-batch re-allocations after losing a uniqueness race
RAFFLE_INSERT_ATTEMPTS = 3

OnSold = Callable[[str, int], Awaitable[None]]


@dataclass
class FulfillmentResult:
    session_id: str
    order_id: Optional[str] = None
    duplicate: bool = False
    # category -> rows written
    written: Dict[str, int] = field(default_factory=dict)
    gaps: List[Dict] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.gaps


def _split_amount(total: int, n: int) -> List[int]:
    # n shares that add up to total exactly
    if n <= 0:
        return []
    base, rest = divmod(int(total), n)
    return [base + (1 if i < rest else 0) for i in range(n)]


# ------------------------------------------------------------------------------
# Order header
# ------------------------------------------------------------------------------
def build_order(session: ConfirmedSession, cart: Cart) -> Order:
    # the provider's amounts are authoritative, never the cart's math
    total = int(session.amount_total or 0)
    subtotal = int(session.amount_subtotal or 0)
    fee = total - subtotal
    p = cart.purchaser
    return Order(
        id=uuid.uuid4().hex,
        stripe_session_id=session.id,
        stripe_payment_intent_id=session.payment_intent_id,
        purchaser_name=p.name,
        purchaser_first_name=p.first_name,
        purchaser_last_name=p.last_name,
        purchaser_email=p.email,
        purchaser_phone=p.phone,
        dancer_family=p.family,
        subtotal=subtotal,
        processing_fee=fee,
        stripe_fee_actual=int(session.provider_fee or 0),
        total_paid=total,
        covered_fees=fee > 0,
        currency=session.currency or "usd",
        payment_status="completed",
        created_at=now_ts(),
    )


async def find_order_id(db: AsyncSession, gated: Gated,
                        session_id: str) -> Optional[str]:
    async with gated():
        async with db.begin():
            row = (await db.execute(
                select(Order.id).where(Order.stripe_session_id == session_id)
            )).first()
    return row[0] if row else None


async def create_order(db: AsyncSession, gated: Gated, order: Order) -> Order:
    """Insert the header; DuplicateSession if the session already has one."""
    session_id = order.stripe_session_id
    try:
        async with gated():
            async with db.begin():
                db.add(order)
    except IntegrityError:
        # an earlier or concurrent delivery of the same session won
        existing = await find_order_id(db, gated, session_id)
        raise DuplicateSession(session_id, existing)
    # a rollback of any later category insert would expire the header
    # and turn every attribute read into a lazy load
    db.expunge(order)
    return order


# ------------------------------------------------------------------------------
# Per-category writers: each returns (rows written, units sold)
# ------------------------------------------------------------------------------
async def _insert(db: AsyncSession, gated: Gated, rows: List) -> None:
    async with gated():
        async with db.begin():
            db.add_all(rows)


async def write_event_tickets(db, gated, order: Order, line: CartLine,
                              **_) -> Tuple[int, int]:
    await _insert(db, gated, [EventTicket(
        order_id=order.id,
        quantity=line.quantity,
        table_name=line.table_name,
        price_per_ticket=TICKET_PRICE,
        total_price=line.amount,
        created_at=now_ts(),
    )])
    return 1, line.quantity


async def write_horses(db, gated, order: Order, line: CartLine,
                       **_) -> Tuple[int, int]:
    ts = now_ts()
    rows = [
        Horse(order_id=order.id, horse_name=h.name, owner_name=h.owner,
              price=HORSE_PRICE, created_at=ts)
        for h in line.horses
    ]
    await _insert(db, gated, rows)
    return len(rows), len(rows)


async def write_program_ads(db, gated, order: Order, line: CartLine,
                            **_) -> Tuple[int, int]:
    ts = now_ts()
    prices = _split_amount(line.amount, len(line.ads))
    rows = [
        ProgramAd(order_id=order.id, business_name=ad.business,
                  ad_size=ad.size, design_option=ad.design, price=price,
                  created_at=ts)
        for ad, price in zip(line.ads, prices)
    ]
    await _insert(db, gated, rows)
    return len(rows), len(rows)


async def write_raffle_tickets(db, gated, order: Order, line: CartLine,
                               rng: Optional[random.Random] = None,
                               **_) -> Tuple[int, int]:
    count = line.entry_count
    is_book = line.category == Category.RAFFLE_BOOK
    prices = _split_amount(line.amount, count)

    for attempt in range(1, RAFFLE_INSERT_ATTEMPTS + 1):
        async with timeit("raffle.allocate"):
            numbers = await allocate_ticket_numbers(db, gated, count, rng=rng)

        ts = now_ts()
        book_ids = (
            [new_book_id() for _ in range(line.quantity)] if is_book else []
        )
        rows = []
        for i, number in enumerate(numbers):
            holder = (
                line.raffle_holders[i] if i < len(line.raffle_holders)
                else RaffleHolder(order.purchaser_name or "Owner",
                                  order.purchaser_email)
            )
            rows.append(RaffleTicket(
                order_id=order.id,
                ticket_number=number,
                owner_name=holder.name,
                owner_contact=holder.contact,
                ticket_type="book" if is_book else "individual",
                book_id=(book_ids[i // RAFFLE_BOOK_SIZE] if is_book
                         else None),
                price=prices[i],
                created_at=ts,
            ))
        try:
            # all entries of the line or none
            await _insert(db, gated, rows)
        except IntegrityError:
            log.warning("raffle number taken between check and insert",
                        extra={"ctx": {"order_id": order.id,
                                       "attempt": attempt}})
            continue
        return len(rows), len(rows)

    raise PersistenceFailure(
        f"raffle numbers collided {RAFFLE_INSERT_ATTEMPTS} times",
        payload={"requested": count},
    )


async def write_donations(db, gated, order: Order, line: CartLine,
                          **_) -> Tuple[int, int]:
    await _insert(db, gated, [Donation(
        order_id=order.id,
        donation_type="cash",
        amount=line.amount,
        purpose="General Fund",
        created_at=now_ts(),
    )])
    return 1, 1


_WRITERS = {
    Category.EVENT_TICKETS: (write_event_tickets, inventory.EVENT_TICKETS),
    Category.HORSES: (write_horses, inventory.HORSES),
    Category.PROGRAM_AD: (write_program_ads, inventory.PROGRAM_ADS),
    Category.RAFFLE_INDIVIDUAL: (write_raffle_tickets,
                                 inventory.RAFFLE_TICKETS),
    Category.RAFFLE_BOOK: (write_raffle_tickets, inventory.RAFFLE_TICKETS),
    Category.DONATION: (write_donations, inventory.DONATIONS),
}


# ------------------------------------------------------------------------------
# Gaps
# ------------------------------------------------------------------------------
async def record_gap(db: AsyncSession, gated: Gated, *, order_id: str,
                     session_id: str, category: str, payload: Dict,
                     error: str) -> None:
    try:
        await _insert(db, gated, [FulfillmentGap(
            order_id=order_id,
            stripe_session_id=session_id,
            category=category,
            payload=json.dumps(payload, default=str),
            error=error,
            created_at=now_ts(),
        )])
    except Exception:
        log.exception("could not record fulfillment gap",
                      extra={"ctx": {"session_id": session_id,
                                     "category": category}})


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------
async def fulfill(
    db: AsyncSession,
    gated: Gated,
    session: ConfirmedSession,
    cart: Cart,
    on_sold: Optional[OnSold] = None,
    rng: Optional[random.Random] = None,
) -> FulfillmentResult:
    result = FulfillmentResult(session_id=session.id)
    order = build_order(session, cart)

    try:
        async with timeit("db.create_order"):
            await create_order(db, gated, order)
    except DuplicateSession as dup:
        log.info("session already fulfilled",
                 extra={"ctx": {"session_id": session.id,
                                "order_id": dup.order_id}})
        result.duplicate = True
        result.order_id = dup.order_id
        return result

    order_id = result.order_id = order.id
    log.info("order created", extra={"ctx": {
        "session_id": session.id, "order_id": order_id,
        "total_paid": order.total_paid, "lines": len(cart.lines),
    }})

    for line in cart.lines:
        entry = _WRITERS.get(line.category)
        if entry is None:
            continue
        writer, inventory_category = entry
        category = line.category.value
        try:
            async with timeit(f"db.write.{category}"):
                rows, units = await writer(db, gated, order, line, rng=rng)
        except Exception as e:
            if not isinstance(e, ReconcileError):
                e = PersistenceFailure(str(e) or repr(e))
            e.session_id = session.id
            e.category = category
            e.payload = {**e.payload, "line": asdict(line)}
            log.error("fulfillment gap", exc_info=True, extra={
                "ctx": {"order_id": order_id, **e.context()},
            })
            gap = {"order_id": order_id, "kind": type(e).__name__,
                   **e.context()}
            result.gaps.append(gap)
            await record_gap(db, gated, order_id=order_id,
                             session_id=session.id, category=category,
                             payload=e.payload,
                             error=f"{type(e).__name__}: {e}")
            continue

        result.written[category] = result.written.get(category, 0) + rows
        if on_sold is not None:
            try:
                await on_sold(inventory_category, units)
            except Exception:
                # counters are reporting only; the rows are written
                log.exception("inventory update failed", extra={"ctx": {
                    "session_id": session.id,
                    "category": inventory_category, "qty": units,
                }})

    return result
