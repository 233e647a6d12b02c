"""
Completion entry point shared by every trigger (client call, gateway
webhook, verify-session fallback).

  expired event?          -> EventExpiredError
  guard refused           -> PROCESSING (caller retries shortly)
  state: ALREADY_COMPLETE -> existing tickets
  state: NEW / REPAIR     -> resolve selection, validate every group,
                             then reserve + issue group by group

The guard is released on every path. Ticket mail is dispatched in the
background once at least one ticket exists.
"""
from __future__ import annotations
import logging
from typing import Callable, List, Optional, Tuple

from ..helpers import now_ts
from ..infra.timings import timeit
from ..model.db import TicketType
from ..model.selection import SelectionStore
from ..notify import EmailNotifier
from .errors import EventExpiredError, InsufficientAvailabilityError
from .issuer import TicketIssuer
from .resolver import SelectionResolver
from .state import OrderStateMachine, event_summary, order_summary
from .types import (
    ALREADY_COMPLETE, COMPLETED, PROCESSING, CompletionResult, Decision,
    IssuedTicket, Selection,
)

log = logging.getLogger(__name__)


class CompletionOrchestrator:
    def __init__(
        self,
        *,
        guard,
        state: OrderStateMachine,
        resolver: SelectionResolver,
        inventory,
        issuer: TicketIssuer,
        selections: SelectionStore,
        notifier: Optional[EmailNotifier] = None,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.guard = guard
        self.state = state
        self.resolver = resolver
        self.inventory = inventory
        self.issuer = issuer
        self.selections = selections
        self.notifier = notifier
        self.clock = clock

    async def complete(
        self,
        order_id: str,
        transaction_id: str,
        method: str,
        caller_selection: Optional[Selection] = None,
    ) -> CompletionResult:
        _, event = await self.state.load(order_id)
        if event.event_start is not None and event.event_start < self.clock():
            raise EventExpiredError(event.id)

        token = await self.guard.try_acquire(order_id)
        if token is None:
            log.info("order %s is already being processed", order_id)
            return CompletionResult(
                status=PROCESSING, message="Order is being processed"
            )
        try:
            async with timeit("fulfillment.complete"):
                return await self._complete_locked(
                    order_id, transaction_id, method, caller_selection
                )
        finally:
            await self.guard.release(order_id, token)

    async def _complete_locked(
        self,
        order_id: str,
        transaction_id: str,
        method: str,
        caller_selection: Optional[Selection],
    ) -> CompletionResult:
        decision = await self.state.begin_completion(
            order_id, transaction_id, method
        )
        order, event = await self.state.load(order_id)

        if decision is Decision.ALREADY_COMPLETE:
            tickets = await self.state.existing_tickets(order_id)
            log.info("order %s already processed with %d ticket(s)",
                     order_id, len(tickets))
            return CompletionResult(
                status=ALREADY_COMPLETE,
                order=order_summary(order),
                event=event_summary(event),
                tickets=tuple(tickets),
                message="Order already processed",
            )
        if decision is Decision.PROCEED_REPAIR:
            log.warning("order %s is paid but has no tickets, re-running "
                        "issuance", order_id)

        async with timeit("fulfillment.resolve"):
            selection, source = await self.resolver.resolve(
                order, event, caller_selection
            )
        selection = selection.merged()
        log.info("processing order %s with %s selection %s",
                 order_id, source.value, selection.to_wire())

        groups = await self._validate(order.id, event, selection)

        issued: List[IssuedTicket] = []
        for ticket_type, quantity in groups:
            async with timeit("fulfillment.reserve"):
                await self.inventory.reserve(order.id, ticket_type, quantity)
            async with timeit("fulfillment.issue"):
                issued.extend(
                    await self.issuer.issue(order, ticket_type, quantity)
                )

        if issued:
            await self.selections.discard(order.id)
            if self.notifier is not None:
                self.notifier.dispatch(order.id, order.customer_email)
        else:
            log.error("no tickets could be persisted for order %s", order_id)

        return CompletionResult(
            status=COMPLETED,
            order=order_summary(order),
            event=event_summary(event),
            tickets=tuple(issued),
        )

    async def _validate(
        self, order_id: str, event, selection: Selection
    ) -> List[Tuple[TicketType, int]]:
        # every group is checked before the first ticket is issued
        groups = []
        for item in selection.items:
            ticket_type = await self.inventory.resolve_ticket_type(
                event, item.ref
            )
            if await self.inventory.reserved_quantity(
                order_id, ticket_type.id
            ):
                # counted by an earlier attempt; reserve() is a no-op
                groups.append((ticket_type, item.quantity))
                continue
            available = await self.inventory.check_availability(
                ticket_type.id
            )
            if available is not None and item.quantity > available:
                raise InsufficientAvailabilityError(
                    ticket_type.name, max(0, available)
                )
            groups.append((ticket_type, item.quantity))
        return groups
