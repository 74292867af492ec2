# model/cart.py
"""
Rebuilds the purchaser's cart from a confirmed checkout session.

The provider only hands back line items (text + quantity + amount) and a
small metadata bag. Category comes from the explicit `category` tag on
the product when the checkout step set one, otherwise from the display
text. Purchaser-supplied detail (table name, horses, ads, raffle owners)
rides in metadata as JSON arrays cut to ~450 characters; whatever is
missing, malformed or short is filled with defaults so reconstruction
never fails on optional detail.
"""

from __future__ import annotations
import json
import logging
import re
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import MetadataParseWarning
from ..helpers import split_name
from ..payments import ConfirmedSession, LineItem

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# CONFIG: unit prices in cents
# ------------------------------------------------------------------------------
TICKET_PRICE = 2500
HORSE_PRICE = 2500
RAFFLE_TICKET_PRICE = 500
RAFFLE_BOOK_PRICE = 2000
RAFFLE_BOOK_SIZE = 5


class Category(str, Enum):
    EVENT_TICKETS = "event_tickets"
    HORSES = "horses"
    PROGRAM_AD = "program_ad"
    RAFFLE_INDIVIDUAL = "raffle_individual"
    RAFFLE_BOOK = "raffle_book"
    DONATION = "donation"
    PROCESSING_FEE = "processing_fee"
    UNKNOWN = "unknown"

    @property
    def is_raffle(self) -> bool:
        return self in (Category.RAFFLE_INDIVIDUAL, Category.RAFFLE_BOOK)


@dataclass
class Purchaser:
    name: str
    first_name: str
    last_name: str
    email: str
    phone: str
    family: str


@dataclass
class HorseDetail:
    name: str
    owner: str


@dataclass
class AdDetail:
    business: str
    size: str
    design: str


@dataclass
class RaffleHolder:
    name: str
    contact: str


@dataclass
class CartLine:
    category: Category
    description: str
    quantity: int
    amount: int  # cents, as confirmed
    table_name: Optional[str] = None
    horses: List[HorseDetail] = field(default_factory=list)
    ads: List[AdDetail] = field(default_factory=list)
    # one per raffle entry, in order
    raffle_holders: List[RaffleHolder] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        if self.category == Category.RAFFLE_BOOK:
            return self.quantity * RAFFLE_BOOK_SIZE
        return self.quantity


@dataclass
class Cart:
    session_id: str
    purchaser: Purchaser
    lines: List[CartLine] = field(default_factory=list)

    def by_category(self) -> Dict[Category, List[CartLine]]:
        out: Dict[Category, List[CartLine]] = {}
        for line in self.lines:
            out.setdefault(line.category, []).append(line)
        return out

    @property
    def amount(self) -> int:
        return sum(line.amount for line in self.lines)


# ------------------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------------------
def classify(item: LineItem) -> Category:
    if item.category:
        try:
            return Category(item.category)
        except ValueError:
            log.warning("unknown category tag, falling back to text",
                        extra={"ctx": {"tag": item.category}})

    text = "\n".join((item.name, item.description, item.detail))
    if "tickets for Night at the Races" in text:
        return Category.EVENT_TICKETS
    if "horse sponsorships" in text.lower():
        return Category.HORSES
    if "Program Book Ad" in text:
        return Category.PROGRAM_AD
    if "Raffle Tickets" in text:
        if "books" in text:
            return Category.RAFFLE_BOOK
        return Category.RAFFLE_INDIVIDUAL
    if "Cash Donation" in text:
        return Category.DONATION
    if "Processing Fee" in text:
        return Category.PROCESSING_FEE
    return Category.UNKNOWN


# ------------------------------------------------------------------------------
# Metadata detail
# ------------------------------------------------------------------------------
def _salvage_array(raw: str) -> List[Any]:
    """Keep every complete leading element of a truncated JSON array."""
    s = raw.strip()
    if not s.startswith("["):
        return []
    decoder = json.JSONDecoder()
    out: List[Any] = []
    pos = 1
    while True:
        while pos < len(s) and s[pos] in " \t\r\n,":
            pos += 1
        if pos >= len(s) or s[pos] == "]":
            break
        try:
            obj, pos = decoder.raw_decode(s, pos)
        except json.JSONDecodeError:
            break
        out.append(obj)
    return out


def parse_detail(metadata: Dict[str, str], key: str,
                 session_id: str = "") -> List[Dict[str, Any]]:
    raw = metadata.get(key)
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        value = _salvage_array(raw)
        msg = f"metadata field {key!r} unreadable ({e.msg}); " \
              f"kept {len(value)} complete entries"
        log.warning(msg, extra={"ctx": {
            "session_id": session_id, "field": key,
            "warning": MetadataParseWarning.__name__,
        }})
        warnings.warn(msg, MetadataParseWarning, stacklevel=2)

    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _text(d: Dict[str, Any], key: str) -> str:
    v = d.get(key)
    return str(v).strip() if v is not None else ""


def _count(d: Dict[str, Any], key: str, default: int = 1) -> int:
    try:
        n = int(d.get(key) or default)
    except (TypeError, ValueError):
        return default
    return n if n > 0 else default


# ------------------------------------------------------------------------------
# Reconstruction
# ------------------------------------------------------------------------------
def purchaser_from(session: ConfirmedSession) -> Purchaser:
    md = session.metadata
    name = (md.get("purchaserName") or "").strip()
    first, last = split_name(name)
    return Purchaser(
        name=name,
        first_name=first,
        last_name=last,
        email=session.customer_email or "",
        phone=(md.get("phone") or "").strip(),
        family=(md.get("dancerFamily") or "").strip(),
    )


_AD_SIZE = re.compile(r"Program Book Ad - ([^\n]+)")
_AD_BUSINESS = re.compile(r"Business: ([^\n]+)")


class _AdPicker:
    """Matches ad lines to metadata ads: by business name, else in order."""

    def __init__(self, ads: List[Dict[str, Any]]):
        self.ads = ads
        self.used = [False] * len(ads)

    def take(self, business: str) -> Optional[Dict[str, Any]]:
        if business:
            for i, ad in enumerate(self.ads):
                if not self.used[i] and _text(ad, "business") == business:
                    self.used[i] = True
                    return ad
        for i, ad in enumerate(self.ads):
            if not self.used[i]:
                self.used[i] = True
                return ad
        return None


def reconstruct(session: ConfirmedSession) -> Cart:
    md = session.metadata
    purchaser = purchaser_from(session)
    default_owner = purchaser.name or "Owner"

    table_name = (md.get("tableName") or "").strip() or None
    horses = parse_detail(md, "horses", session.id)
    ads = _AdPicker(parse_detail(md, "programAds", session.id))
    owners = parse_detail(md, "raffleOwners", session.id)

    cart = Cart(session_id=session.id, purchaser=purchaser)
    horse_n = 0
    owner_i = 0
    owner_left = _count(owners[0], "tickets") if owners else 0

    for item in session.line_items:
        category = classify(item)
        qty = max(1, int(item.quantity or 1))
        line = CartLine(category=category, description=item.description,
                        quantity=qty, amount=int(item.amount_total or 0))

        if category == Category.PROCESSING_FEE:
            # already reflected in the confirmed totals
            continue
        if category == Category.UNKNOWN:
            log.warning("unrecognised line item skipped", extra={"ctx": {
                "session_id": session.id,
                "description": item.description,
                "amount": item.amount_total,
            }})
            continue

        if category == Category.EVENT_TICKETS:
            line.table_name = table_name
            table_name = None

        elif category == Category.HORSES:
            for _ in range(qty):
                d = horses[horse_n] if horse_n < len(horses) else {}
                horse_n += 1
                line.horses.append(HorseDetail(
                    name=_text(d, "name") or f"Horse {horse_n}",
                    owner=_text(d, "owner") or default_owner,
                ))

        elif category == Category.PROGRAM_AD:
            text = "\n".join((item.name, item.description, item.detail))
            m_size = _AD_SIZE.search(text)
            m_business = _AD_BUSINESS.search(text)
            parsed_business = m_business.group(1).strip() if m_business else ""
            for _ in range(qty):
                d = ads.take(parsed_business) or {}
                line.ads.append(AdDetail(
                    business=(_text(d, "business") or parsed_business
                              or "Business"),
                    size=(_text(d, "size")
                          or (m_size.group(1).strip() if m_size else "")
                          or "Unknown"),
                    design=_text(d, "design") or "unknown",
                ))

        elif category.is_raffle:
            # owner detail never yields more entries than were paid for
            for _ in range(line.entry_count):
                while owner_i < len(owners) and owner_left <= 0:
                    owner_i += 1
                    if owner_i < len(owners):
                        owner_left = _count(owners[owner_i], "tickets")
                if owner_i < len(owners):
                    d = owners[owner_i]
                    owner_left -= 1
                    line.raffle_holders.append(RaffleHolder(
                        name=_text(d, "name") or default_owner,
                        contact=_text(d, "contact") or purchaser.email,
                    ))
                else:
                    line.raffle_holders.append(RaffleHolder(
                        name=default_owner, contact=purchaser.email,
                    ))

        cart.lines.append(line)

    return cart
