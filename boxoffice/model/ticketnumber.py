# Human-readable ticket numbers: PREFIX-YYYYMMDD-NNNNN from a per-day counter.
from __future__ import annotations
import logging
import os
import secrets
import string

from sqlalchemy import text

from ..helpers import today_utc
from ..infra.sql import Database

log = logging.getLogger(__name__)

TICKET_NUMBER_PREFIX = os.getenv("TICKET_NUMBER_PREFIX", "TKT")

_ALPHABET = string.ascii_uppercase + string.digits

SQL_NEXT_NUMBER = r"""
INSERT INTO ticket_number_counters (day, last) VALUES (:day, 1)
ON CONFLICT (day) DO UPDATE SET last = ticket_number_counters.last + 1
RETURNING last
"""


def fallback_ticket_number(prefix: str = TICKET_NUMBER_PREFIX) -> str:
    # best effort only: date plus six random base-36 characters
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{prefix}-{today_utc()}-{suffix}"


class TicketNumberSequence:
    def __init__(self, db: Database, prefix: str = TICKET_NUMBER_PREFIX):
        self.db = db
        self.prefix = prefix

    async def next_sequence(self, day: str) -> int:
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        text(SQL_NEXT_NUMBER), {"day": day}
                    )
                    return int(result.scalar_one())

    async def next(self) -> str:
        day = today_utc()
        try:
            n = await self.next_sequence(day)
        except Exception as e:
            log.warning("ticket number sequence unavailable, using local "
                        "fallback: %s", e)
            return fallback_ticket_number(self.prefix)
        return f"{self.prefix}-{day}-{n:05d}"
