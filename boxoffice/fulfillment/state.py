from __future__ import annotations
import logging
from typing import List, Tuple

from sqlalchemy import func, select, update

from ..helpers import now_ts
from ..infra.sql import Database
from ..model.db import (
    CONFIRMED, Event, PAID, PurchasedTicket, TicketOrder,
)
from .errors import OrderNotFoundError
from .issuer import issued_from_row
from .types import Decision, EventSummary, IssuedTicket, OrderSummary

log = logging.getLogger(__name__)


def order_summary(order: TicketOrder) -> OrderSummary:
    return OrderSummary(
        id=order.id,
        order_number=order.order_number,
        total_amount=int(order.total_amount),
        status=order.status,
        payment_status=order.payment_status,
        customer_email=order.customer_email,
    )


def event_summary(event: Event) -> EventSummary:
    return EventSummary(id=event.id, title=event.title, slug=event.slug)


class OrderStateMachine:
    """
    unpaid/pending -> paid/confirmed, decided against persisted state:

      paid, tickets exist   -> ALREADY_COMPLETE  (no-op)
      paid, no tickets      -> PROCEED_REPAIR    (payment fields untouched)
      otherwise             -> PROCEED_NEW       (transition recorded now)
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def load(self, order_id: str) -> Tuple[TicketOrder, Event]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                row = (await session.execute(
                    select(TicketOrder, Event)
                    .join(Event, Event.id == TicketOrder.event_id)
                    .where(TicketOrder.id == order_id)
                )).first()
        if row is None:
            raise OrderNotFoundError(order_id)
        return row[0], row[1]

    async def ticket_count(self, order_id: str) -> int:
        async with self.db.gated():
            async with self.db.sessions() as session:
                n = (await session.execute(
                    select(func.count(PurchasedTicket.id)).where(
                        PurchasedTicket.ticket_order_id == order_id
                    )
                )).scalar_one()
        return int(n)

    async def existing_tickets(self, order_id: str) -> List[IssuedTicket]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                rows = (await session.execute(
                    select(PurchasedTicket)
                    .where(PurchasedTicket.ticket_order_id == order_id)
                    .order_by(PurchasedTicket.created_at.asc(),
                              PurchasedTicket.ticket_number.asc())
                )).scalars().all()
        return [issued_from_row(r) for r in rows]

    async def _mark_paid(
        self, order_id: str, transaction_id: str, method: str
    ) -> bool:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        update(TicketOrder)
                        .where(
                            TicketOrder.id == order_id,
                            TicketOrder.payment_status != PAID,
                        )
                        .values(
                            payment_status=PAID,
                            status=CONFIRMED,
                            payment_method=method,
                            payment_transaction_id=transaction_id,
                            updated_at=now_ts(),
                        )
                        .execution_options(synchronize_session=False)
                    )
        return result.rowcount == 1

    async def begin_completion(
        self, order_id: str, transaction_id: str, method: str
    ) -> Decision:
        while True:
            order, _ = await self.load(order_id)
            if order.payment_status == PAID:
                if await self.ticket_count(order_id) > 0:
                    return Decision.ALREADY_COMPLETE
                return Decision.PROCEED_REPAIR
            if await self._mark_paid(order_id, transaction_id, method):
                return Decision.PROCEED_NEW
            # lost the conditional update: someone paid it meanwhile
            log.info("order %s was paid concurrently, re-evaluating",
                     order_id)
