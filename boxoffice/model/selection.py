# Side table holding the ticket selection chosen at checkout, keyed by order.
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..helpers import now_ts
from ..infra.sql import Database
from .db import TicketOrderSelection

log = logging.getLogger(__name__)


class SelectionStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, order_id: str, selection: List[Dict[str, Any]]):
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    await session.merge(TicketOrderSelection(
                        ticket_order_id=order_id,
                        ticket_selection=selection,
                        created_at=now_ts(),
                    ))

    async def load(self, order_id: str) -> Optional[List[Dict[str, Any]]]:
        """Return the stored wire selection, or None.

        Absence is the normal case for orders created before the side table
        existed or already consumed; read errors are treated the same way.
        """
        try:
            async with self.db.gated():
                async with self.db.sessions() as session:
                    row = (await session.execute(
                        select(TicketOrderSelection.ticket_selection).where(
                            TicketOrderSelection.ticket_order_id == order_id
                        )
                    )).scalar_one_or_none()
        except SQLAlchemyError as e:
            log.warning("could not read stored selection for %s: %s",
                        order_id, e)
            return None
        return row or None

    async def discard(self, order_id: str) -> None:
        try:
            async with self.db.gated():
                async with self.db.sessions() as session:
                    async with session.begin():
                        await session.execute(
                            delete(TicketOrderSelection).where(
                                TicketOrderSelection.ticket_order_id
                                == order_id
                            )
                        )
        except SQLAlchemyError as e:
            # a leftover row only means the next completion reads it again
            log.warning("could not delete stored selection for %s: %s",
                        order_id, e)
