# model/inventory/_tigerbeetle.py
"""
TigerBeetle-backed inventory for capped ticket types.

Each capped ticket type gets three accounts on the tickets ledger:
  operator -> budget   (initial capacity transfer)
  budget   -> spent    (one posted transfer per (order, ticket type) group)

The budget account carries DEBITS_MUST_NOT_EXCEED_CREDITS, so TigerBeetle
itself refuses to oversell. All ids are derived from the ticket type / order
ids, which makes both seeding and reserving replay-safe: a second submit of
the same transfer comes back as EXISTS.

quantity_sold on the SQL row is still bumped after a successful transfer so
reads and the order pages see the same numbers. Unlimited ticket types never
touch TigerBeetle.
"""
from __future__ import annotations
import hashlib
import logging
from typing import Dict, Optional, Set

import tigerbeetle as tb

from ...fulfillment.errors import InsufficientAvailabilityError
from ...infra.sql import Database
from ..db import TicketType
from ._sql import SqlInventory, remaining

log = logging.getLogger(__name__)

LedgerTickets = 2000
CODE_SEED = 1
CODE_SALE = 20

_ACCOUNT_EXISTS = {tb.CreateAccountResult.EXISTS}
_TRANSFER_EXISTS = {
    tb.CreateTransferResult.EXISTS,
    tb.CreateTransferResult.EXISTS_WITH_DIFFERENT_AMOUNT,
}


def u128(*parts: str) -> int:
    digest = hashlib.sha256(":".join(parts).encode()).digest()
    # 0 and 2^128-1 are reserved ids
    return (int.from_bytes(digest[:16], "big") % ((1 << 128) - 2)) + 1


class TicketTypeAccounts:
    def __init__(self, ticket_type_id: str) -> None:
        self.operator = tb.Account(
            id=u128(ticket_type_id, "operator"),
            ledger=LedgerTickets, code=CODE_SALE,
        )
        self.budget = tb.Account(
            id=u128(ticket_type_id, "budget"),
            ledger=LedgerTickets, code=CODE_SALE,
            flags=tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS,
        )
        self.spent = tb.Account(
            id=u128(ticket_type_id, "spent"),
            ledger=LedgerTickets, code=CODE_SALE,
        )


class TigerBeetleInventory(SqlInventory):
    def __init__(self, db: Database, client: tb.ClientAsync) -> None:
        super().__init__(db)
        self.client = client
        self._seeded: Set[str] = set()
        self._accounts: Dict[str, TicketTypeAccounts] = {}

    def accounts_for(self, ticket_type_id: str) -> TicketTypeAccounts:
        acc = self._accounts.get(ticket_type_id)
        if acc is None:
            acc = TicketTypeAccounts(ticket_type_id)
            self._accounts[ticket_type_id] = acc
        return acc

    async def ensure_accounts(self, tt: TicketType) -> TicketTypeAccounts:
        acc = self.accounts_for(tt.id)
        if tt.id in self._seeded:
            return acc

        account_errors = await self.client.create_accounts(
            [acc.operator, acc.budget, acc.spent]
        )
        for err in account_errors:
            if err.result not in _ACCOUNT_EXISTS:
                raise RuntimeError(
                    f"tigerbeetle: cannot create accounts for {tt.id}: "
                    f"{err.result!r}"
                )

        left = remaining(tt)
        if left and left > 0:
            transfer_errors = await self.client.create_transfers([
                tb.Transfer(
                    id=u128(tt.id, "capacity"),
                    debit_account_id=acc.operator.id,
                    credit_account_id=acc.budget.id,
                    amount=left,
                    ledger=LedgerTickets,
                    code=CODE_SEED,
                ),
            ])
            for err in transfer_errors:
                if err.result not in _TRANSFER_EXISTS:
                    raise RuntimeError(
                        f"tigerbeetle: cannot seed capacity for {tt.id}: "
                        f"{err.result!r}"
                    )
        self._seeded.add(tt.id)
        return acc

    async def check_availability(self, ticket_type_id: str) -> Optional[int]:
        accounts = await self.client.lookup_accounts(
            [self.accounts_for(ticket_type_id).budget.id]
        )
        if not accounts:
            # not seeded yet: the SQL row is still authoritative
            return await super().check_availability(ticket_type_id)
        budget = accounts[0]
        return int(budget.credits_posted - budget.debits_posted)

    async def reserve(
        self, order_id: str, ticket_type: TicketType, quantity: int
    ) -> bool:
        if ticket_type.quantity_total is None:
            return await super().reserve(order_id, ticket_type, quantity)

        acc = await self.ensure_accounts(ticket_type)
        transfer_errors = await self.client.create_transfers([
            tb.Transfer(
                id=u128(order_id, ticket_type.id, "sale"),
                debit_account_id=acc.budget.id,
                credit_account_id=acc.spent.id,
                amount=quantity,
                ledger=LedgerTickets,
                code=CODE_SALE,
            ),
        ])
        if not transfer_errors:
            await self._record(order_id, ticket_type, quantity,
                               enforce_ceiling=False)
            return True

        result = transfer_errors[0].result
        if result in _TRANSFER_EXISTS:
            # the ledger counted it; bring the SQL mirror up to date
            await self._record(order_id, ticket_type, quantity,
                               enforce_ceiling=False)
            return False
        if result == tb.CreateTransferResult.EXCEEDS_CREDITS:
            available = await self.check_availability(ticket_type.id)
            raise InsufficientAvailabilityError(
                ticket_type.name, max(0, available or 0)
            )
        raise RuntimeError(
            f"tigerbeetle: sale transfer for order {order_id} failed: "
            f"{result!r}"
        )
