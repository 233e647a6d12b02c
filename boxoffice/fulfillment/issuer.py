from __future__ import annotations
import logging
import uuid
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..helpers import now_ms, now_ts
from ..infra.sql import Database
from ..model.db import PurchasedTicket, TicketOrder, TicketType, VALID
from ..model.ticketnumber import TicketNumberSequence
from .qr import build_payload, payload_hash, render_qr_data_url
from .types import IssuedTicket

log = logging.getLogger(__name__)


def issued_from_row(row: PurchasedTicket,
                    image: Optional[str] = None) -> IssuedTicket:
    return IssuedTicket(
        id=row.id,
        ticket_order_id=row.ticket_order_id,
        event_ticket_id=row.event_ticket_id,
        ticket_number=row.ticket_number,
        qr_code_data=row.qr_code_data,
        qr_code_hash=row.qr_code_hash,
        status=row.status,
        customer_name=row.customer_name,
        ticket_type_name=row.ticket_type_name,
        price_paid=row.price_paid,
        qr_code_image=image,
    )


class TicketIssuer:
    """
    Creates ticket instances for one (order, ticket type) group.

    Every unit is persisted in its own transaction. A unit that fails to
    persist is logged and skipped; the rest of the group is still issued.
    The QR image is only part of the immediate response, so a rendering
    failure leaves qr_code_image empty and nothing else.
    """

    def __init__(
        self,
        db: Database,
        numbers: TicketNumberSequence,
        render: Callable[[str], str] = render_qr_data_url,
    ) -> None:
        self.db = db
        self.numbers = numbers
        self.render = render

    async def issue(
        self, order: TicketOrder, ticket_type: TicketType, quantity: int
    ) -> List[IssuedTicket]:
        issued: List[IssuedTicket] = []
        for _ in range(quantity):
            ticket = await self._issue_one(order, ticket_type)
            if ticket is not None:
                issued.append(ticket)
        if len(issued) < quantity:
            log.warning(
                "partial issuance for order %s, %s: %d of %d tickets",
                order.id, ticket_type.name, len(issued), quantity,
            )
        return issued

    async def _issue_one(
        self, order: TicketOrder, ticket_type: TicketType
    ) -> Optional[IssuedTicket]:
        ticket_number = await self.numbers.next()
        ticket_id = str(uuid.uuid4())
        payload = build_payload(
            ticket_id, order.id, order.event_id, ticket_number, now_ms()
        )

        image = None
        try:
            image = self.render(payload)
        except Exception as e:
            log.warning("QR rendering failed for ticket %s: %s",
                        ticket_number, e)

        row = PurchasedTicket(
            id=ticket_id,
            ticket_order_id=order.id,
            event_ticket_id=ticket_type.id,
            ticket_number=ticket_number,
            qr_code_data=payload,
            qr_code_hash=payload_hash(payload),
            status=VALID,
            customer_name=order.customer_name,
            ticket_type_name=ticket_type.name,
            # the price at issuance, not whatever the type costs later
            price_paid=int(ticket_type.price),
            created_at=now_ts(),
        )
        try:
            async with self.db.gated():
                async with self.db.sessions() as session:
                    async with session.begin():
                        session.add(row)
        except SQLAlchemyError as e:
            log.error("could not persist ticket %s for order %s: %s",
                      ticket_number, order.id, e)
            return None
        return issued_from_row(row, image)
