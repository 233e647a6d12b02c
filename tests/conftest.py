import os
import tempfile
import time
import uuid

# server.py reads its config at import time
_TMP = tempfile.mkdtemp(prefix="boxoffice-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/server.db"
os.environ["GUARD_BACKEND"] = "memory"
os.environ["INVENTORY_BACKEND"] = "sql"
os.environ["EMAIL_SERVICE_URL"] = ""
# nothing listens here: webhook delivery from /mockpay fails fast
os.environ["MOCK_WEBHOOK_URL"] = "http://127.0.0.1:9/api/payments/webhook"

import pytest  # noqa: E402

from boxoffice.infra.sql import make_database  # noqa: E402
from boxoffice.model.db import (  # noqa: E402
    Event, PENDING, TicketOrder, TicketType, UNPAID,
)

SERVER_DB_PATH = f"{_TMP}/server.db"

HOUR = 3600.0


def event_row(**kw) -> Event:
    eid = kw.pop("id", None) or str(uuid.uuid4())
    defaults = dict(
        id=eid,
        slug=f"event-{eid[:8]}",
        title="Spring Concert",
        event_start=time.time() + 24 * HOUR,
        base_ticket_price=None,
        ticket_currency="USD",
    )
    defaults.update(kw)
    return Event(**defaults)


def ticket_type_row(event_id: str, **kw) -> TicketType:
    defaults = dict(
        id=str(uuid.uuid4()),
        event_id=event_id,
        name="Standard",
        price=1000,
        currency="USD",
        quantity_total=None,
        quantity_sold=0,
    )
    defaults.update(kw)
    return TicketType(**defaults)


def order_row(event_id: str, total: int, **kw) -> TicketOrder:
    oid = kw.pop("id", None) or str(uuid.uuid4())
    defaults = dict(
        id=oid,
        order_number=f"ORD-TEST-{oid[:8]}",
        event_id=event_id,
        customer_name="Ada Lovelace",
        customer_email="ada@example.com",
        total_amount=total,
        currency="USD",
        payment_status=UNPAID,
        status=PENDING,
        created_at=time.time(),
    )
    defaults.update(kw)
    return TicketOrder(**defaults)


@pytest.fixture
async def db(tmp_path):
    database = make_database(f"sqlite+aiosqlite:///{tmp_path}/engine.db")
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture
def add(db):
    async def _add(*rows):
        async with db.sessions() as session:
            async with session.begin():
                session.add_all(rows)
        return rows[0] if len(rows) == 1 else rows
    return _add
