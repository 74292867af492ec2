# model/inventory/__init__.py
import os
from ._common import (
    CATEGORIES, EVENT_TICKETS, HORSES, PROGRAM_ADS, RAFFLE_TICKETS,
    DONATIONS,
)

BACKEND = os.getenv("INVENTORY_BACKEND", "pg").lower()  # 'pg' | 'tb'

if BACKEND == "tb":
    from ._tigerbeetle import create_schema, increment, compute_inventory
else:
    from ._postgres import create_schema, increment, compute_inventory


__all__ = [
  "create_schema", "increment", "compute_inventory", "BACKEND",
  "CATEGORIES", "EVENT_TICKETS", "HORSES", "PROGRAM_ADS", "RAFFLE_TICKETS",
  "DONATIONS",
]
