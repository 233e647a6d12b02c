import asyncio
import time

import pytest
from sqlalchemy import select

from boxoffice.fulfillment.errors import (
    EventExpiredError, InsufficientAvailabilityError, NoSelectionFoundError,
    OrderNotFoundError, TicketTypeNotFoundError,
)
from boxoffice.fulfillment.issuer import TicketIssuer
from boxoffice.fulfillment.orchestrator import CompletionOrchestrator
from boxoffice.fulfillment.resolver import SelectionResolver
from boxoffice.fulfillment.state import OrderStateMachine
from boxoffice.fulfillment.types import (
    ALREADY_COMPLETE, COMPLETED, PROCESSING, ExplicitType, Selection,
    SelectionItem,
)
from boxoffice.model.db import (
    GENERAL_ADMISSION, PAID, PurchasedTicket, TicketType,
)
from boxoffice.model.guard import InMemoryGuard
from boxoffice.model.inventory import SqlInventory
from boxoffice.model.selection import SelectionStore
from boxoffice.model.ticketnumber import TicketNumberSequence

from conftest import HOUR, event_row, order_row, ticket_type_row


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def dispatch(self, order_id, customer_email):
        self.sent.append((order_id, customer_email))


class ExplodingInventory(SqlInventory):
    async def reserve(self, order_id, ticket_type, quantity):
        raise RuntimeError("ledger offline")


def build(db, **overrides):
    selections = SelectionStore(db)
    parts = dict(
        guard=InMemoryGuard(ttl_seconds=30),
        state=OrderStateMachine(db),
        resolver=SelectionResolver(db, selections),
        inventory=SqlInventory(db),
        issuer=TicketIssuer(db, TicketNumberSequence(db)),
        selections=selections,
        notifier=RecordingNotifier(),
    )
    parts.update(overrides)
    return CompletionOrchestrator(**parts)


@pytest.fixture
def engine(db):
    return build(db)


def pick(tt, qty):
    return Selection((SelectionItem(ExplicitType(tt.id), qty),))


async def ticket_rows(db, order_id):
    async with db.sessions() as session:
        return (await session.execute(
            select(PurchasedTicket)
            .where(PurchasedTicket.ticket_order_id == order_id)
        )).scalars().all()


async def sold(db, ticket_type_id):
    async with db.sessions() as session:
        return (await session.get(TicketType, ticket_type_id)).quantity_sold


async def test_completes_stored_selection(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1500, quantity_total=10))
    order = await add(order_row(event.id, 3000))
    await engine.selections.save(order.id, [{"ticketTypeId": tt.id,
                                             "quantity": 2}])

    result = await engine.complete(order.id, "txn-1", "paypal")
    assert result.status == COMPLETED
    assert len(result.tickets) == 2
    assert result.order.status == "confirmed"
    assert result.redirect_url == f"/events/{event.slug}/tickets/{order.id}"
    assert await sold(db, tt.id) == 2
    assert len(await ticket_rows(db, order.id)) == 2
    assert engine.notifier.sent == [(order.id, order.customer_email)]

    # consumed
    assert await engine.selections.load(order.id) is None
    assert not await engine.guard.held(order.id)

    body = result.to_response()
    assert body["success"] is True
    assert body["order"]["orderNumber"] == order.order_number
    assert len(body["tickets"]) == 2
    assert body["eventSlug"] == event.slug


async def test_second_completion_is_a_noop(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000, quantity_total=10))
    order = await add(order_row(event.id, 2000))
    await engine.selections.save(order.id, [{"ticketTypeId": tt.id,
                                             "quantity": 2}])

    first = await engine.complete(order.id, "txn-1", "paypal")
    second = await engine.complete(order.id, "txn-2", "stripe")

    assert second.status == ALREADY_COMPLETE
    assert second.message == "Order already processed"
    assert ({t.id for t in second.tickets}
            == {t.id for t in first.tickets})
    assert await sold(db, tt.id) == 2
    assert len(await ticket_rows(db, order.id)) == 2
    assert len(engine.notifier.sent) == 1

    order_now, _ = await engine.state.load(order.id)
    assert order_now.payment_transaction_id == "txn-1"


async def test_concurrent_triggers_issue_one_set(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000, quantity_total=10))
    order = await add(order_row(event.id, 3000))
    await engine.selections.save(order.id, [{"ticketTypeId": tt.id,
                                             "quantity": 3}])

    results = await asyncio.gather(
        engine.complete(order.id, "txn-1", "paypal"),
        engine.complete(order.id, "txn-1", "webhook"),
    )
    statuses = [r.status for r in results]
    assert statuses.count(COMPLETED) == 1
    assert set(statuses) <= {COMPLETED, ALREADY_COMPLETE, PROCESSING}
    assert len(await ticket_rows(db, order.id)) == 3
    assert await sold(db, tt.id) == 3


async def test_processing_while_guard_is_held(db, add, engine):
    event = await add(event_row())
    order = await add(order_row(event.id, 1000))
    await engine.guard.try_acquire(order.id)

    result = await engine.complete(order.id, "txn-1", "paypal")
    assert result.status == PROCESSING
    assert result.to_response() == {
        "success": True, "message": "Order is being processed",
    }
    # the refused trigger did not touch the order
    loaded, _ = await engine.state.load(order.id)
    assert loaded.payment_status != PAID


async def test_past_event_is_rejected(db, add, engine):
    event = await add(event_row(event_start=time.time() - HOUR))
    order = await add(order_row(event.id, 1000))

    with pytest.raises(EventExpiredError):
        await engine.complete(order.id, "txn-1", "paypal")
    loaded, _ = await engine.state.load(order.id)
    assert loaded.payment_status != PAID
    assert not await engine.guard.held(order.id)


async def test_unknown_order(db, engine):
    with pytest.raises(OrderNotFoundError):
        await engine.complete("missing", "txn-1", "paypal")


async def test_caller_selection_is_used(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=2000))
    order = await add(order_row(event.id, 4000))

    result = await engine.complete(order.id, "txn-1", "paypal", pick(tt, 2))
    assert result.status == COMPLETED
    assert [t.event_ticket_id for t in result.tickets] == [tt.id, tt.id]


async def test_free_order(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, name="Community", price=0))
    order = await add(order_row(event.id, 0))
    await engine.selections.save(order.id, [{"ticketTypeId": tt.id,
                                             "quantity": 1}])

    result = await engine.complete(order.id, "free", "free")
    assert result.status == COMPLETED
    assert [t.price_paid for t in result.tickets] == [0]


async def test_base_price_order_uses_general_admission(db, add, engine):
    event = await add(event_row(base_ticket_price=2500))
    order = await add(order_row(event.id, 7500))

    result = await engine.complete(order.id, "txn-1", "paypal")
    assert result.status == COMPLETED
    assert len(result.tickets) == 3
    assert {t.ticket_type_name for t in result.tickets} == {GENERAL_ADMISSION}
    assert {t.price_paid for t in result.tickets} == {2500}


async def test_reconstruction_reproduces_total(db, add, engine):
    event = await add(event_row())
    await add(ticket_type_row(event.id, name="Standard", price=1000))
    await add(ticket_type_row(event.id, name="Plus", price=1500))
    order = await add(order_row(event.id, 4000))

    result = await engine.complete(order.id, "txn-1", "paypal")
    assert result.status == COMPLETED
    assert sum(t.price_paid for t in result.tickets) == 4000


async def test_no_selection_found(db, add, engine):
    event = await add(event_row())
    await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 1234))

    with pytest.raises(NoSelectionFoundError):
        await engine.complete(order.id, "txn-1", "paypal")
    assert not await engine.guard.held(order.id)
    assert await ticket_rows(db, order.id) == []


async def test_validation_happens_before_any_issuance(db, add, engine):
    event = await add(event_row())
    ok = await add(ticket_type_row(event.id, name="Standard", price=1000))
    scarce = await add(ticket_type_row(event.id, name="VIP", price=5000,
                                       quantity_total=5, quantity_sold=4))
    order = await add(order_row(event.id, 12000))
    await engine.selections.save(order.id, [
        {"ticketTypeId": ok.id, "quantity": 2},
        {"ticketTypeId": scarce.id, "quantity": 2},
    ])

    with pytest.raises(InsufficientAvailabilityError) as exc:
        await engine.complete(order.id, "txn-1", "paypal")
    assert exc.value.message == "Only 1 VIP tickets available"
    assert await ticket_rows(db, order.id) == []
    assert await sold(db, ok.id) == 0
    assert await sold(db, scarce.id) == 4
    # the selection stays for a later retry
    assert await engine.selections.load(order.id) is not None


async def test_unknown_ticket_type_in_selection(db, add, engine):
    event = await add(event_row())
    order = await add(order_row(event.id, 1000))
    await engine.selections.save(order.id, [{"ticketTypeId": "nope",
                                             "quantity": 1}])

    with pytest.raises(TicketTypeNotFoundError):
        await engine.complete(order.id, "txn-1", "paypal")


async def test_repair_issues_for_paid_order_without_tickets(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000, quantity_total=5))
    order = await add(order_row(event.id, 2000, payment_status=PAID,
                                status="confirmed",
                                payment_transaction_id="txn-original"))
    await engine.selections.save(order.id, [{"ticketTypeId": tt.id,
                                             "quantity": 2}])

    result = await engine.complete(order.id, "txn-retry", "paypal")
    assert result.status == COMPLETED
    assert len(result.tickets) == 2
    assert await sold(db, tt.id) == 2
    loaded, _ = await engine.state.load(order.id)
    assert loaded.payment_transaction_id == "txn-original"


async def test_repair_does_not_count_inventory_twice(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000, quantity_total=5))
    order = await add(order_row(event.id, 2000, payment_status=PAID,
                                status="confirmed"))
    # a previous attempt counted the group but issued nothing
    await engine.inventory.reserve(order.id, tt, 2)

    result = await engine.complete(order.id, "txn-1", "paypal", pick(tt, 2))
    assert len(result.tickets) == 2
    assert await sold(db, tt.id) == 2


async def test_repair_when_own_reservation_filled_capacity(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000, quantity_total=2))
    order = await add(order_row(event.id, 2000, payment_status=PAID,
                                status="confirmed"))
    # the earlier attempt took the last two seats, then issued nothing
    await engine.inventory.reserve(order.id, tt, 2)
    assert await engine.inventory.check_availability(tt.id) == 0

    result = await engine.complete(order.id, "txn-1", "paypal", pick(tt, 2))
    assert result.status == COMPLETED
    assert len(result.tickets) == 2
    assert await sold(db, tt.id) == 2
    assert len(await ticket_rows(db, order.id)) == 2


async def test_guard_released_after_unexpected_error(db, add):
    engine = build(db, inventory=ExplodingInventory(db))
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 1000))

    with pytest.raises(RuntimeError):
        await engine.complete(order.id, "txn-1", "paypal", pick(tt, 1))
    assert not await engine.guard.held(order.id)
    assert engine.notifier.sent == []


async def test_free_base_price_order(db, add, engine):
    event = await add(event_row(base_ticket_price=0))
    order = await add(order_row(event.id, 0))
    caller = Selection.from_wire([{"ticketTypeId": "base", "quantity": 2}])

    result = await engine.complete(order.id, "free", "free", caller)
    assert result.status == COMPLETED
    assert result.order.status == "confirmed"
    assert [t.price_paid for t in result.tickets] == [0, 0]
    assert {t.ticket_type_name for t in result.tickets} == {GENERAL_ADMISSION}


async def test_webhook_after_client_completion(db, add, engine):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 1000))

    client = await engine.complete(order.id, "pi_1", "paypal", pick(tt, 1))
    webhook = await engine.complete(order.id, "pi_1", "mockpay")
    assert client.status == COMPLETED
    assert webhook.status == ALREADY_COMPLETE
    assert [t.id for t in webhook.tickets] == [t.id for t in client.tickets]
    assert len(await ticket_rows(db, order.id)) == 1
