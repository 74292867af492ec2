import time
from datetime import datetime, timezone
from decimal import Decimal
import hmac
from typing import Optional, Tuple


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def to_dollars(cents: int | None) -> str:
    # money is stored in cents; rendered as "48.55"
    return str((Decimal(int(cents or 0)) / 100).quantize(Decimal("0.01")))


def split_name(full_name: str) -> Tuple[str, str]:
    parts = (full_name or "").split()
    first = parts[0] if parts else ""
    last = " ".join(parts[1:])
    return first or "Unknown", last or "Customer"
