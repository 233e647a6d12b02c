"""Development checkout: price a selection and open an unpaid order.

Creates the order row (unpaid/pending), stores the selection in the side
table the fulfillment engine reads first, and, for non-zero totals, opens a
payment session with the gateway. Free orders skip the gateway; the client
completes them directly.
"""
from __future__ import annotations
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .fulfillment.errors import (
    BasePriceNotSetError, EventExpiredError, InsufficientAvailabilityError,
    InvalidSelectionError, TicketTypeNotFoundError,
)
from .fulfillment.types import BaseAdmission, Selection
from .gateway import PaymentAdapter
from .helpers import now_ts, today_utc
from .infra.sql import Database
from .model.db import Event, PENDING, TicketOrder, UNPAID
from .model.selection import SelectionStore

log = logging.getLogger(__name__)


class EventNotFoundError(LookupError):
    pass


@dataclass
class CheckoutResult:
    order: TicketOrder
    event: Event
    redirect_url: Optional[str]
    payment_session_id: Optional[str]

    def to_response(self) -> Dict[str, Any]:
        return {
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "amount": self.order.total_amount,
            "currency": self.order.currency,
            "redirect_url": self.redirect_url,
            "payment_session_id": self.payment_session_id,
            "free": self.order.total_amount == 0,
        }


def new_order_number() -> str:
    return f"ORD-{today_utc()}-{uuid.uuid4().hex[:6].upper()}"


async def price_selection(inventory, event: Event,
                          selection: Selection) -> int:
    total = 0
    for item in selection.items:
        if isinstance(item.ref, BaseAdmission):
            if event.base_ticket_price is None:
                raise BasePriceNotSetError(event.id)
            total += int(event.base_ticket_price) * item.quantity
            continue
        tt = await inventory.get_ticket_type(event.id, item.ref.id)
        if tt is None:
            raise TicketTypeNotFoundError(item.ref.id)
        available = await inventory.check_availability(tt.id)
        if available is not None and item.quantity > available:
            raise InsufficientAvailabilityError(tt.name, max(0, available))
        total += int(tt.price) * item.quantity
    return total


async def create_checkout(
    *,
    db: Database,
    inventory,
    selections: SelectionStore,
    adapter: PaymentAdapter,
    event_id: str,
    customer_name: str,
    customer_email: str,
    tickets: List[Dict[str, Any]],
) -> CheckoutResult:
    async with db.gated():
        async with db.sessions() as session:
            event = await session.get(Event, event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    if event.event_start is not None and event.event_start < now_ts():
        raise EventExpiredError(event.id)

    selection = Selection.from_wire(tickets).merged()
    if selection.is_empty:
        raise InvalidSelectionError("no tickets selected")
    total = await price_selection(inventory, event, selection)

    order = TicketOrder(
        id=str(uuid.uuid4()),
        order_number=new_order_number(),
        event_id=event.id,
        customer_name=customer_name.strip(),
        customer_email=customer_email.strip(),
        total_amount=total,
        currency=event.ticket_currency or "USD",
        payment_status=UNPAID,
        status=PENDING,
        created_at=now_ts(),
    )
    async with db.gated():
        async with db.sessions() as session:
            async with session.begin():
                session.add(order)
    await selections.save(order.id, selection.to_wire())

    if total == 0:
        log.info("free order %s created for event %s", order.id, event.id)
        return CheckoutResult(order, event, None, None)

    ps = await adapter.create_session(order, {
        "type": "ticket",
        "orderId": order.id,
        "eventSlug": event.slug,
        "ticketSelection": json.dumps(selection.to_wire()),
    })
    log.info("order %s created, payment session %s", order.id,
             ps["payment_session_id"])
    return CheckoutResult(
        order, event, ps["redirect_url"], ps["payment_session_id"]
    )
