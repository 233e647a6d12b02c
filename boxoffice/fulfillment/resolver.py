"""
Recover what an order bought.

Sources, in priority order:
  1) the selection stored at checkout (side table keyed by order id)
  2) the selection the caller passed along with the completion request
  3) reconstruction from the order total and the event's prices

Reconstruction is a pure search over candidate selections. The first
candidate in this order wins:
  - flat base price: round(total / base) units of General Admission
  - a single ticket type (ascending price) whose multiple matches the total
  - a pair (i <= j, ascending price) with 1..MAX_FIRST_QTY units of the
    first type and an integer quantity of the second covering the rest

Several combinations can reproduce the same total; the first one found in
price order is taken and no further disambiguation is attempted.
"""
from __future__ import annotations
import logging
from typing import Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import select

from ..infra.sql import Database
from ..model.db import Event, TicketOrder, TicketType
from ..model.selection import SelectionStore
from .errors import InvalidSelectionError, NoSelectionFoundError
from .types import (
    BaseAdmission, ExplicitType, PriceOption, Selection, SelectionItem,
    SelectionSource,
)

log = logging.getLogger(__name__)

# bounds the pair search to len(options)^2 * MAX_FIRST_QTY steps
MAX_FIRST_QTY = 10

# prices are in cents; a remainder below one cent counts as a match
TOLERANCE_CENTS = 1


def _round_half_up(numerator: int, denominator: int) -> int:
    # denominator > 0
    return (2 * numerator + denominator) // (2 * denominator)


def _matches(remaining: int, price: int, qty: int) -> bool:
    return qty > 0 and abs(remaining - price * qty) < TOLERANCE_CENTS


def candidate_selections(
    total: int,
    base_price: Optional[int],
    options: Sequence[PriceOption],
) -> Iterator[Selection]:
    if base_price:
        qty = _round_half_up(total, base_price)
        if qty > 0:
            yield Selection((SelectionItem(BaseAdmission(), qty),))
        return

    # zero-priced types cannot be inferred from a total
    priced = sorted((o for o in options if o.price > 0), key=lambda o: o.price)

    for opt in priced:
        qty = _round_half_up(total, opt.price)
        if _matches(total, opt.price, qty):
            yield Selection((SelectionItem(ExplicitType(opt.ticket_type_id), qty),))

    if len(priced) < 2:
        return

    for i, first in enumerate(priced):
        for second in priced[i:]:
            for q1 in range(1, MAX_FIRST_QTY + 1):
                remaining = total - first.price * q1
                if remaining < 0:
                    break
                q2 = _round_half_up(remaining, second.price)
                if _matches(remaining, second.price, q2):
                    yield Selection((
                        SelectionItem(ExplicitType(first.ticket_type_id), q1),
                        SelectionItem(ExplicitType(second.ticket_type_id), q2),
                    ))


def reconstruct_selection(
    total: int,
    base_price: Optional[int],
    options: Sequence[PriceOption],
) -> Optional[Selection]:
    return next(candidate_selections(total, base_price, options), None)


class SelectionResolver:
    def __init__(self, db: Database, store: SelectionStore) -> None:
        self.db = db
        self.store = store

    async def price_options(self, event_id: str) -> List[PriceOption]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                rows = (await session.execute(
                    select(TicketType.id, TicketType.name, TicketType.price)
                    .where(TicketType.event_id == event_id)
                    .order_by(TicketType.price.asc(), TicketType.name.asc())
                )).all()
        return [PriceOption(r.id, r.name, int(r.price)) for r in rows]

    async def _stored(self, order_id: str) -> Optional[Selection]:
        raw = await self.store.load(order_id)
        if not raw:
            return None
        try:
            return Selection.from_wire(raw)
        except InvalidSelectionError as e:
            log.warning("ignoring malformed stored selection for %s: %s",
                        order_id, e)
            return None

    async def resolve(
        self,
        order: TicketOrder,
        event: Event,
        caller_selection: Optional[Selection] = None,
    ) -> Tuple[Selection, SelectionSource]:
        stored = await self._stored(order.id)
        if stored is not None and not stored.is_empty:
            return stored, SelectionSource.STORED

        if caller_selection is not None and not caller_selection.is_empty:
            return caller_selection, SelectionSource.CALLER

        options: List[PriceOption] = []
        if not event.base_ticket_price:
            options = await self.price_options(event.id)
        selection = reconstruct_selection(
            int(order.total_amount), event.base_ticket_price, options
        )
        if selection is None:
            log.error(
                "selection not found for order %s (event=%s total=%s "
                "base_price=%s)", order.id, event.id, order.total_amount,
                event.base_ticket_price,
            )
            raise NoSelectionFoundError(order.id)

        log.info("reconstructed selection for order %s: %s",
                 order.id, selection.to_wire())
        return selection, SelectionSource.RECONSTRUCTED
