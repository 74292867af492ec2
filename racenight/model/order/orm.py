from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # idempotency key: one order per confirmed checkout session
    stripe_session_id = Column(String, nullable=False, unique=True)
    stripe_payment_intent_id = Column(String, nullable=True)

    purchaser_name = Column(String, nullable=False, default="")
    purchaser_first_name = Column(String, nullable=False)
    purchaser_last_name = Column(String, nullable=False)
    purchaser_email = Column(String, nullable=False, default="")
    purchaser_phone = Column(String, nullable=False, default="")
    dancer_family = Column(String, nullable=False, default="")

    # all money in cents
    subtotal = Column(Integer, nullable=False)
    processing_fee = Column(Integer, nullable=False)
    stripe_fee_actual = Column(Integer, nullable=False, default=0)
    total_paid = Column(Integer, nullable=False)
    covered_fees = Column(Boolean, nullable=False, default=False)
    currency = Column(String, nullable=False, default="usd")

    # terminal on the success path
    payment_status = Column(String, nullable=False, default="completed")
    created_at = Column(Float, nullable=False)


class EventTicket(Base):
    __tablename__ = "event_tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    quantity = Column(Integer, nullable=False)
    table_name = Column(String, nullable=True)
    price_per_ticket = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class Horse(Base):
    __tablename__ = "horses"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    horse_name = Column(String, nullable=False)
    owner_name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class ProgramAd(Base):
    __tablename__ = "program_ads"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    business_name = Column(String, nullable=False)
    ad_size = Column(String, nullable=False)
    design_option = Column(String, nullable=False, default="unknown")
    price = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class RaffleTicket(Base):
    __tablename__ = "raffle_tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    # global across all orders; the constraint is the final arbiter
    ticket_number = Column(String(6), nullable=False, unique=True)
    owner_name = Column(String, nullable=False)
    owner_contact = Column(String, nullable=False, default="")
    # individual | book
    ticket_type = Column(String, nullable=False)
    book_id = Column(String, nullable=True, index=True)
    # share of the confirmed line amount, cents
    price = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class Donation(Base):
    __tablename__ = "donations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    donation_type = Column(String, nullable=False, default="cash")
    amount = Column(Integer, nullable=False)
    purpose = Column(String, nullable=False, default="General Fund")
    created_at = Column(Float, nullable=False)


class FulfillmentGap(Base):
    __tablename__ = "fulfillment_gaps"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=True, index=True)
    stripe_session_id = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False)
    payload = Column(Text, nullable=False, default="{}")
    error = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False, default="")
    created_at = Column(Float, nullable=False)
