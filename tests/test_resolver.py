import pytest

from boxoffice.fulfillment.errors import NoSelectionFoundError
from boxoffice.fulfillment.resolver import (
    SelectionResolver, candidate_selections, reconstruct_selection,
)
from boxoffice.fulfillment.types import (
    BaseAdmission, ExplicitType, PriceOption, Selection, SelectionItem,
    SelectionSource,
)
from boxoffice.model.selection import SelectionStore

from conftest import event_row, order_row, ticket_type_row


def options(*prices):
    return [PriceOption(f"tt{i}", f"Type {i}", p)
            for i, p in enumerate(prices)]


def as_pairs(selection):
    return [(item.ref, item.quantity) for item in selection.items]


# ----------------------------
# reconstruction (pure)
# ----------------------------
def test_base_price_divides_total():
    sel = reconstruct_selection(10000, 2500, [])
    assert as_pairs(sel) == [(BaseAdmission(), 4)]


def test_base_price_rounds_half_up():
    sel = reconstruct_selection(3750, 2500, [])
    assert as_pairs(sel) == [(BaseAdmission(), 2)]


def test_base_price_total_below_half_unit_fails():
    assert reconstruct_selection(1000, 2500, options(1000)) is None


def test_single_type_match():
    sel = reconstruct_selection(4500, None, options(1500, 5000))
    assert as_pairs(sel) == [(ExplicitType("tt0"), 3)]


def test_single_type_prefers_cheapest_match():
    # 4 x $10 is found before any pair combination
    sel = reconstruct_selection(4000, None, options(1000, 1500))
    assert as_pairs(sel) == [(ExplicitType("tt0"), 4)]


def test_pair_match():
    sel = reconstruct_selection(3500, None, options(1000, 2500))
    assert as_pairs(sel) == [(ExplicitType("tt0"), 1),
                             (ExplicitType("tt1"), 1)]
    total = sum(1000 if i.ref.id == "tt0" else 2500 for i in sel.items)
    assert total == 3500


def test_zero_priced_types_are_ignored():
    sel = reconstruct_selection(2000, None, options(0, 1000))
    assert as_pairs(sel) == [(ExplicitType("tt1"), 2)]


def test_zero_base_price_falls_back_to_types():
    sel = reconstruct_selection(3000, 0, options(1500))
    assert as_pairs(sel) == [(ExplicitType("tt0"), 2)]


def test_no_combination_returns_none():
    assert reconstruct_selection(1234, None, options(1000, 2500)) is None
    assert reconstruct_selection(1000, None, []) is None


def test_pair_search_bounds_first_quantity():
    # 11 x $3 + 1 x $100 needs q1 = 11, beyond the search bound
    total = 11 * 300 + 10000
    assert reconstruct_selection(total, None, options(300, 10000)) is None


def test_every_candidate_reproduces_total():
    opts = options(1000, 1500, 2500)
    prices = {o.ticket_type_id: o.price for o in opts}
    found = list(candidate_selections(5000, None, opts))
    assert found
    for sel in found:
        assert sum(prices[i.ref.id] * i.quantity for i in sel.items) == 5000


# ----------------------------
# resolver priority (stored > caller > reconstructed)
# ----------------------------
@pytest.fixture
def resolver(db):
    return SelectionResolver(db, SelectionStore(db))


async def test_stored_selection_wins(db, add, resolver):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 2000))
    await resolver.store.save(order.id, [{"ticketTypeId": tt.id,
                                          "quantity": 2}])
    caller = Selection((SelectionItem(ExplicitType("other"), 5),))

    sel, source = await resolver.resolve(order, event, caller)
    assert source is SelectionSource.STORED
    assert as_pairs(sel) == [(ExplicitType(tt.id), 2)]


async def test_caller_selection_used_when_nothing_stored(db, add, resolver):
    event = await add(event_row())
    order = await add(order_row(event.id, 2000))
    caller = Selection((SelectionItem(ExplicitType("vip"), 1),))

    sel, source = await resolver.resolve(order, event, caller)
    assert source is SelectionSource.CALLER
    assert sel == caller


async def test_malformed_stored_selection_is_ignored(db, add, resolver):
    event = await add(event_row())
    tt = await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 3000))
    await resolver.store.save(order.id, [{"ticketTypeId": tt.id,
                                          "quantity": -1}])

    sel, source = await resolver.resolve(order, event, None)
    assert source is SelectionSource.RECONSTRUCTED
    assert as_pairs(sel) == [(ExplicitType(tt.id), 3)]


async def test_reconstruction_from_base_price(db, add, resolver):
    event = await add(event_row(base_ticket_price=2500))
    order = await add(order_row(event.id, 5000))

    sel, source = await resolver.resolve(order, event, Selection())
    assert source is SelectionSource.RECONSTRUCTED
    assert as_pairs(sel) == [(BaseAdmission(), 2)]


async def test_no_selection_found(db, add, resolver):
    event = await add(event_row())
    await add(ticket_type_row(event.id, price=1000))
    order = await add(order_row(event.id, 1234))

    with pytest.raises(NoSelectionFoundError):
        await resolver.resolve(order, event, None)
