# model/inventory/_sql.py
"""
Ticket-type inventory on the relational store.

- availability: quantity_total - quantity_sold (NULL total = unlimited)
- reserve: one conditional increment per (order, ticket type) group, in the
  same transaction as an inventory_reservations marker row; a replay of the
  same group hits the marker's primary key and changes nothing
- General Admission: lookup-or-create from the event's flat base price
"""
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from ...fulfillment.errors import (
    BasePriceNotSetError, InsufficientAvailabilityError,
    TicketTypeNotFoundError,
)
from ...fulfillment.types import BaseAdmission, TicketTypeRef
from ...helpers import now_ts
from ...infra.sql import Database
from ..db import Event, GENERAL_ADMISSION, InventoryReservation, TicketType

log = logging.getLogger(__name__)


def remaining(tt: TicketType) -> Optional[int]:
    if tt.quantity_total is None:
        return None
    return int(tt.quantity_total) - int(tt.quantity_sold or 0)


class SqlInventory:
    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    async def get_ticket_type(
        self, event_id: str, ticket_type_id: str
    ) -> Optional[TicketType]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                return (await session.execute(
                    select(TicketType).where(
                        TicketType.id == ticket_type_id,
                        TicketType.event_id == event_id,
                    )
                )).scalar_one_or_none()

    async def _general_admission(self, event_id: str) -> Optional[TicketType]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                return (await session.execute(
                    select(TicketType).where(
                        TicketType.event_id == event_id,
                        TicketType.name == GENERAL_ADMISSION,
                    )
                )).scalar_one_or_none()

    async def resolve_ticket_type(
        self, event: Event, ref: TicketTypeRef
    ) -> TicketType:
        if not isinstance(ref, BaseAdmission):
            tt = await self.get_ticket_type(event.id, ref.id)
            if tt is None:
                raise TicketTypeNotFoundError(ref.id)
            return tt

        if event.base_ticket_price is None:
            raise BasePriceNotSetError(event.id)
        tt = await self._general_admission(event.id)
        if tt is not None:
            return tt

        tt = TicketType(
            id=str(uuid.uuid4()),
            event_id=event.id,
            name=GENERAL_ADMISSION,
            price=int(event.base_ticket_price),
            currency=event.ticket_currency or "USD",
            quantity_total=None,
            quantity_sold=0,
        )
        try:
            async with self.db.gated():
                async with self.db.sessions() as session:
                    async with session.begin():
                        session.add(tt)
        except IntegrityError:
            # a concurrent completion created it first
            existing = await self._general_admission(event.id)
            if existing is None:
                raise
            return existing
        log.info("created %s ticket type for event %s", GENERAL_ADMISSION,
                 event.id)
        return tt

    # ------------------------------------------------------------------
    # accounting
    # ------------------------------------------------------------------
    async def check_availability(self, ticket_type_id: str) -> Optional[int]:
        """Units left for sale, None when the ticket type is unlimited."""
        async with self.db.gated():
            async with self.db.sessions() as session:
                tt = await session.get(TicketType, ticket_type_id)
        if tt is None:
            raise TicketTypeNotFoundError(ticket_type_id)
        return remaining(tt)

    async def reserved_quantity(
        self, order_id: str, ticket_type_id: str
    ) -> int:
        """Units already counted for this order's group, 0 if none."""
        async with self.db.gated():
            async with self.db.sessions() as session:
                marker = await session.get(
                    InventoryReservation, (order_id, ticket_type_id)
                )
        return int(marker.quantity) if marker is not None else 0

    async def reserve(
        self, order_id: str, ticket_type: TicketType, quantity: int
    ) -> bool:
        """Count `quantity` units of `ticket_type` as sold for `order_id`.

        Returns True if counted now, False if this order's group had already
        been counted. Raises InsufficientAvailabilityError (nothing changed)
        if the ceiling would be exceeded.
        """
        return await self._record(order_id, ticket_type, quantity,
                                  enforce_ceiling=True)

    async def _record(
        self, order_id: str, ticket_type: TicketType, quantity: int,
        enforce_ceiling: bool,
    ) -> bool:
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type.id)
            .values(quantity_sold=TicketType.quantity_sold + quantity)
            .execution_options(synchronize_session=False)
        )
        if enforce_ceiling:
            stmt = stmt.where(or_(
                TicketType.quantity_total.is_(None),
                TicketType.quantity_sold + quantity
                <= TicketType.quantity_total,
            ))

        try:
            async with self.db.gated():
                async with self.db.sessions() as session:
                    async with session.begin():
                        session.add(InventoryReservation(
                            ticket_order_id=order_id,
                            ticket_type_id=ticket_type.id,
                            quantity=quantity,
                            created_at=now_ts(),
                        ))
                        await session.flush()
                        result = await session.execute(stmt)
                        if result.rowcount != 1:
                            current = await session.get(
                                TicketType, ticket_type.id,
                                populate_existing=True,
                            )
                            available = remaining(current) if current else 0
                            # raising inside begin() rolls the marker back
                            raise InsufficientAvailabilityError(
                                ticket_type.name, max(0, available or 0)
                            )
        except IntegrityError:
            log.info("inventory for order %s / ticket type %s already "
                     "counted", order_id, ticket_type.id)
            return False
        return True

    async def compute_inventory(self, event_id: str) -> List[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                rows = (await session.execute(
                    select(TicketType)
                    .where(TicketType.event_id == event_id)
                    .order_by(TicketType.price.asc(), TicketType.name.asc())
                )).scalars().all()
        out = []
        for tt in rows:
            left = remaining(tt)
            out.append({
                "ticket_type_id": tt.id,
                "name": tt.name,
                "price": tt.price,
                "currency": tt.currency,
                "capacity": tt.quantity_total,
                "sold": tt.quantity_sold,
                "available": left,
                "sold_out": left is not None and left <= 0,
            })
        return out
