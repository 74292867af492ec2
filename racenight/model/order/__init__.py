from .orm import (
    Base, Order, EventTicket, Horse, ProgramAd, RaffleTicket, Donation,
    FulfillmentGap, WebhookEventSeen,
)

__all__ = [
    "Base", "Order", "EventTicket", "Horse", "ProgramAd", "RaffleTicket",
    "Donation", "FulfillmentGap", "WebhookEventSeen",
]
