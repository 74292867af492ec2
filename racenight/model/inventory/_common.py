import os
from typing import Optional

EVENT_TICKETS = "event_tickets"
HORSES = "horses"
PROGRAM_ADS = "program_ads"
RAFFLE_TICKETS = "raffle_tickets"
DONATIONS = "donations"

CATEGORIES = (EVENT_TICKETS, HORSES, PROGRAM_ADS, RAFFLE_TICKETS, DONATIONS)


def capacity_for(category: str) -> Optional[int]:
    raw = os.getenv(f"CAPACITY_{category.upper()}", "")
    return int(raw) if raw.strip() else None
