"""Value types passed between the fulfillment components."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import InvalidSelectionError

# wire-level id the checkout uses for the event's flat base price
BASE_WIRE_ID = "base"


@dataclass(frozen=True)
class ExplicitType:
    id: str


@dataclass(frozen=True)
class BaseAdmission:
    """The event's flat base price, materialized as General Admission."""


TicketTypeRef = Union[ExplicitType, BaseAdmission]


def ref_from_wire(ticket_type_id: str) -> TicketTypeRef:
    if ticket_type_id == BASE_WIRE_ID:
        return BaseAdmission()
    return ExplicitType(ticket_type_id)


def ref_to_wire(ref: TicketTypeRef) -> str:
    if isinstance(ref, BaseAdmission):
        return BASE_WIRE_ID
    return ref.id


@dataclass(frozen=True)
class SelectionItem:
    ref: TicketTypeRef
    quantity: int


@dataclass(frozen=True)
class Selection:
    items: Tuple[SelectionItem, ...] = ()

    @classmethod
    def from_wire(cls, raw: Optional[Iterable[Dict[str, Any]]]) -> Selection:
        if not raw:
            return cls()
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise InvalidSelectionError("entries must be objects")
            tid = entry.get("ticketTypeId")
            qty = entry.get("quantity")
            if not tid or not isinstance(tid, str):
                raise InvalidSelectionError("missing ticketTypeId")
            # bool is an int subclass; reject it explicitly
            if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
                raise InvalidSelectionError(
                    f"quantity for {tid} must be a positive integer"
                )
            items.append(SelectionItem(ref_from_wire(tid), qty))
        return cls(tuple(items))

    def to_wire(self) -> List[Dict[str, Any]]:
        return [
            {"ticketTypeId": ref_to_wire(i.ref), "quantity": i.quantity}
            for i in self.items
        ]

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_quantity(self) -> int:
        return sum(i.quantity for i in self.items)

    def merged(self) -> Selection:
        """Combine entries for the same ticket type, first-seen order."""
        totals: Dict[TicketTypeRef, int] = {}
        for item in self.items:
            totals[item.ref] = totals.get(item.ref, 0) + item.quantity
        return Selection(tuple(SelectionItem(r, q) for r, q in totals.items()))


class SelectionSource(str, enum.Enum):
    STORED = "stored"
    CALLER = "caller"
    RECONSTRUCTED = "reconstructed"


@dataclass(frozen=True)
class PriceOption:
    """A ticket type as seen by reconstruction: id, name and unit price."""
    ticket_type_id: str
    name: str
    price: int  # cents


class Decision(enum.Enum):
    ALREADY_COMPLETE = "already_complete"
    PROCEED_NEW = "proceed_new"
    PROCEED_REPAIR = "proceed_repair"


# CompletionResult.status
COMPLETED = "completed"
ALREADY_COMPLETE = "already_complete"
PROCESSING = "processing"


@dataclass(frozen=True)
class OrderSummary:
    id: str
    order_number: str
    total_amount: int
    status: str
    payment_status: str
    customer_email: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "totalAmount": self.total_amount,
            "status": self.status,
        }


@dataclass(frozen=True)
class EventSummary:
    id: str
    title: str
    slug: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "slug": self.slug}


@dataclass(frozen=True)
class IssuedTicket:
    id: str
    ticket_order_id: str
    event_ticket_id: str
    ticket_number: str
    qr_code_data: str
    qr_code_hash: str
    status: str
    customer_name: str
    ticket_type_name: str
    price_paid: int
    qr_code_image: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "ticket_order_id": self.ticket_order_id,
            "event_ticket_id": self.event_ticket_id,
            "ticket_number": self.ticket_number,
            "qr_code_data": self.qr_code_data,
            "qr_code_hash": self.qr_code_hash,
            "status": self.status,
            "customer_name": self.customer_name,
            "ticket_type_name": self.ticket_type_name,
            "price_paid": self.price_paid,
        }
        if self.qr_code_image is not None:
            out["qr_code_image"] = self.qr_code_image
        return out


@dataclass(frozen=True)
class CompletionResult:
    status: str
    order: Optional[OrderSummary] = None
    event: Optional[EventSummary] = None
    tickets: Tuple[IssuedTicket, ...] = field(default_factory=tuple)
    message: Optional[str] = None

    @property
    def redirect_url(self) -> Optional[str]:
        if self.order is None or self.event is None:
            return None
        return f"/events/{self.event.slug}/tickets/{self.order.id}"

    def to_response(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": True}
        if self.message:
            out["message"] = self.message
        if self.order is not None:
            out["order"] = self.order.to_dict()
        if self.status == PROCESSING:
            return out
        out["tickets"] = [t.to_dict() for t in self.tickets]
        if self.event is not None:
            out["event"] = self.event.to_dict()
            out["redirectUrl"] = self.redirect_url
            out["eventSlug"] = self.event.slug
        return out
