from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    JSON,
    ForeignKey,
    UniqueConstraint,
)


Base = declarative_base()

GENERAL_ADMISSION = "General Admission"

# payment_status
UNPAID = "unpaid"
PAID = "paid"

# order status
PENDING = "pending"
CONFIRMED = "confirmed"

# ticket status
VALID = "valid"
VOID = "void"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False)
    event_start = Column(Float, nullable=True)  # epoch seconds, UTC
    base_ticket_price = Column(Integer, nullable=True)  # cents
    ticket_currency = Column(String, nullable=False, default="USD")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        # lazily created General Admission rows must not be duplicated
        UniqueConstraint("event_id", "name", name="uq_ticket_type_name"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="USD")
    quantity_total = Column(Integer, nullable=True)  # NULL = unlimited
    quantity_sold = Column(Integer, nullable=False, default=0)


class TicketOrder(Base):
    __tablename__ = "ticket_orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    total_amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="USD")

    payment_status = Column(String, nullable=False, default=UNPAID)
    status = Column(String, nullable=False, default=PENDING)
    payment_method = Column(String, nullable=True)
    payment_transaction_id = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class TicketOrderSelection(Base):
    __tablename__ = "ticket_order_selections"
    ticket_order_id = Column(String, primary_key=True)
    # [{"ticketTypeId": ..., "quantity": ...}, ...]
    ticket_selection = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)


class PurchasedTicket(Base):
    __tablename__ = "purchased_tickets"
    id = Column(String, primary_key=True)
    ticket_order_id = Column(
        String, ForeignKey("ticket_orders.id"), nullable=False, index=True
    )
    event_ticket_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    ticket_number = Column(String, nullable=False, unique=True)
    qr_code_data = Column(String, nullable=False)
    qr_code_hash = Column(String, nullable=False)
    status = Column(String, nullable=False, default=VALID)
    customer_name = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    price_paid = Column(Integer, nullable=False)  # cents, at issuance
    created_at = Column(Float, nullable=False)


class InventoryReservation(Base):
    """One row per (order, ticket type) group that was counted."""
    __tablename__ = "inventory_reservations"
    ticket_order_id = Column(String, primary_key=True)
    ticket_type_id = Column(String, primary_key=True)
    quantity = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class TicketNumberCounter(Base):
    __tablename__ = "ticket_number_counters"
    day = Column(String, primary_key=True)  # YYYYMMDD
    last = Column(Integer, nullable=False)


class PaymentSession(Base):
    __tablename__ = "payment_sessions"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    # open | complete | expired
    status = Column(String, nullable=False, default="open")
    # unpaid | paid
    payment_status = Column(String, nullable=False, default=UNPAID)
    payment_intent = Column(String, nullable=True)
    session_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    payment_method = Column(String, nullable=False)
    transaction_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False)
    type = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
