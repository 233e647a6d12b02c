"""Error codes raised by the fulfillment engine."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Fulfillment error codes."""

    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    EVENT_EXPIRED = "EVENT_EXPIRED"
    NO_SELECTION_FOUND = "NO_SELECTION_FOUND"
    INVALID_SELECTION = "INVALID_SELECTION"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    BASE_PRICE_NOT_SET = "BASE_PRICE_NOT_SET"
    INSUFFICIENT_AVAILABILITY = "INSUFFICIENT_AVAILABILITY"


NOT_FOUND_CODES = frozenset({
    ErrorCode.ORDER_NOT_FOUND,
    ErrorCode.TICKET_TYPE_NOT_FOUND,
})


@dataclass(frozen=True)
class FulfillmentError(Exception):
    """Base error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def not_found(self) -> bool:
        return self.code in NOT_FOUND_CODES


class OrderNotFoundError(FulfillmentError):
    """Raised when the order to complete does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            code=ErrorCode.ORDER_NOT_FOUND,
            message="Order not found",
        )
        self.order_id = order_id


class EventExpiredError(FulfillmentError):
    """Raised when the order's event has already started."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            code=ErrorCode.EVENT_EXPIRED,
            message="Cannot complete purchase for past events",
        )
        self.event_id = event_id


class NoSelectionFoundError(FulfillmentError):
    """Raised when no ticket selection could be stored, passed or rebuilt."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            code=ErrorCode.NO_SELECTION_FOUND,
            message="Ticket selection not found. Please try purchasing again.",
        )
        self.order_id = order_id


class InvalidSelectionError(FulfillmentError):
    """Raised for malformed selection entries (bad id or quantity)."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_SELECTION,
            message=f"Invalid ticket selection: {detail}",
        )


class TicketTypeNotFoundError(FulfillmentError):
    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(
            code=ErrorCode.TICKET_TYPE_NOT_FOUND,
            message=f"Ticket type {ticket_type_id} not found",
        )
        self.ticket_type_id = ticket_type_id


class BasePriceNotSetError(FulfillmentError):
    def __init__(self, event_id: str) -> None:
        super().__init__(
            code=ErrorCode.BASE_PRICE_NOT_SET,
            message="Base ticket price not set for this event",
        )
        self.event_id = event_id


class InsufficientAvailabilityError(FulfillmentError):
    """Raised when a ticket type cannot cover the requested quantity."""

    def __init__(self, ticket_type_name: str, available: int) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_AVAILABILITY,
            message=f"Only {available} {ticket_type_name} tickets available",
        )
        self.available = available
