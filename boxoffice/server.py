from __future__ import annotations
import sys

import httpx
import json
import os
from typing import Any, Dict, List, Optional

from .logs import setup_logging
from .helpers import is_valid_email, to_iso, now_ts
from .infra.sql import make_database
from .infra.timings import aggregates
from .checkout import EventNotFoundError, create_checkout
from .gateway import CHECKOUT_COMPLETED, MockPay, PaymentAdapter
from .notify import EmailNotifier
from .model.db import PAID, Payment
from .model import guard as guard_backend
from .model import inventory as inventory_backend
from .model.selection import SelectionStore
from .model.ticketnumber import TicketNumberSequence
from .fulfillment.errors import FulfillmentError, InvalidSelectionError
from .fulfillment.issuer import TicketIssuer
from .fulfillment.orchestrator import CompletionOrchestrator
from .fulfillment.qr import render_qr_data_url, verify_payload
from .fulfillment.resolver import SelectionResolver
from .fulfillment.state import OrderStateMachine, order_summary
from .fulfillment.types import Selection

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.status import HTTP_303_SEE_OTHER

import tigerbeetle as tb
import redis.asyncio as redis

log = setup_logging()

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    log.error("NEED DATABASE_URL! e.g. sqlite:///./boxoffice.db")
    sys.exit(1)

MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/api/payments/webhook"
)
SITE_URL = os.environ.get("SITE_URL", "").rstrip("/")


db = make_database(DATABASE_URL)
adapter: PaymentAdapter = MockPay(db)
selections = SelectionStore(db)

app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)


def get_orchestrator(request: Request) -> CompletionOrchestrator:
    return request.app.state.orchestrator


def error_response(status_code: int, message: str,
                   code: Optional[str] = None) -> ORJSONResponse:
    body: Dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    return ORJSONResponse(body, status_code=status_code)


@app.exception_handler(FulfillmentError)
async def _fulfillment_error(request: Request, exc: FulfillmentError):
    return error_response(404 if exc.not_found else 400, exc.message,
                          exc.code.value)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info(
        "BoxOffice starting: guard=%s inventory=%s",
        guard_backend.BACKEND, inventory_backend.BACKEND,
    )


@app.on_event("startup")
async def _db_init():
    await db.create_schema()


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if guard_backend.BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _tb_start():
    app.state.tb_client = None
    if inventory_backend.BACKEND == "tb":
        addr = os.getenv("TB_ADDRESS", "3000")
        cluster_id = int(os.getenv("TB_CLUSTER_ID", "0"))
        app.state.tb_client = tb.ClientAsync(
            cluster_id=cluster_id, replica_addresses=addr
        )


@app.on_event("startup")
async def _fulfillment_start():
    app.state.guard = guard_backend.new_guard(r=app.state.redis)
    app.state.inventory = inventory_backend.new_inventory(
        db, tb_client=app.state.tb_client
    )
    app.state.notifier = EmailNotifier(app.state.http)
    app.state.orchestrator = CompletionOrchestrator(
        guard=app.state.guard,
        state=OrderStateMachine(db),
        resolver=SelectionResolver(db, selections),
        inventory=app.state.inventory,
        issuer=TicketIssuer(db, TicketNumberSequence(db)),
        selections=selections,
        notifier=app.state.notifier,
    )


@app.on_event("shutdown")
async def _notifier_drain():
    notifier = getattr(app.state, "notifier", None)
    if notifier is not None:
        await notifier.drain()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _tb_stop():
    client = getattr(app.state, "tb_client", None)
    if client is not None:
        await client.close()
        app.state.tb_client = None


@app.on_event("shutdown")
async def _db_stop():
    await db.dispose()


# ----------------------------
# Request bodies
# ----------------------------
class CompletePurchaseBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(None, alias="orderId")
    payment_transaction_id: Optional[str] = Field(
        None, alias="paymentTransactionId"
    )
    payment_method: str = Field("paypal", alias="paymentMethod")
    # [{ticketTypeId, quantity}], same format as checkout
    tickets: Optional[List[Dict[str, Any]]] = None


class CheckoutBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    customer_name: str = Field(alias="customerName")
    customer_email: str = Field(alias="customerEmail")
    tickets: List[Dict[str, Any]]


# ----------------------------
# API: checkout (creates unpaid order + payment session)
# ----------------------------
@app.post("/api/checkout")
async def api_checkout(body: CheckoutBody, request: Request):
    if not is_valid_email(body.customer_email):
        return error_response(
            400,
            "customerEmail is required and must be a valid email address",
        )
    if not body.customer_name.strip():
        return error_response(400, "customerName is required")
    try:
        result = await create_checkout(
            db=db,
            inventory=request.app.state.inventory,
            selections=selections,
            adapter=adapter,
            event_id=body.event_id,
            customer_name=body.customer_name,
            customer_email=body.customer_email,
            tickets=body.tickets,
        )
    except EventNotFoundError:
        return error_response(404, "Event not found")
    return result.to_response()


# ----------------------------
# API: complete purchase (client trigger; also used for free orders)
# ----------------------------
@app.post("/api/tickets/complete-purchase")
async def complete_purchase(
    body: CompletePurchaseBody,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    if not body.order_id or not body.payment_transaction_id:
        return error_response(
            400, "Order ID and payment transaction ID are required"
        )
    caller = Selection.from_wire(body.tickets)
    try:
        result = await orchestrator.complete(
            body.order_id,
            body.payment_transaction_id,
            body.payment_method,
            caller,
        )
    except FulfillmentError:
        raise
    except Exception:
        log.exception("complete-purchase failed for order %s", body.order_id)
        return error_response(500, "Internal server error")
    return result.to_response()


# ----------------------------
# API: order + tickets (polled by the ticket page)
# ----------------------------
def ticket_view(ticket) -> Dict[str, Any]:
    out = ticket.to_dict()
    out["verified"] = verify_payload(ticket.qr_code_data,
                                     ticket.qr_code_hash)
    try:
        out["qr_code_image"] = render_qr_data_url(ticket.qr_code_data)
    except Exception as e:
        log.warning("QR rendering failed for ticket %s: %s",
                    ticket.ticket_number, e)
    return out


@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    order, event = await orchestrator.state.load(order_id)
    tickets = await orchestrator.state.existing_tickets(order_id)
    summary = order_summary(order).to_dict()
    summary.update({
        "paymentStatus": order.payment_status,
        "customerName": order.customer_name,
        "currency": order.currency,
        "createdAt": to_iso(order.created_at),
    })
    return {
        "order": summary,
        "event": {
            "id": event.id,
            "title": event.title,
            "slug": event.slug,
            "eventStart": to_iso(event.event_start),
        },
        "tickets": [ticket_view(t) for t in tickets],
    }


# ----------------------------
# Webhook endpoint (payment gateway)
# ----------------------------
async def record_payment(session: Dict[str, Any], order_id: str) -> None:
    try:
        async with db.gated():
            async with db.sessions() as s:
                async with s.begin():
                    s.add(Payment(
                        order_id=order_id,
                        amount=int(session.get("amount_total") or 0),
                        currency=session.get("currency") or "usd",
                        payment_method=adapter.name,
                        transaction_id=session.get("payment_intent"),
                        status="completed",
                        type="ticket",
                        created_at=now_ts(),
                    ))
    except IntegrityError:
        # webhook replay: payment already recorded
        pass
    except SQLAlchemyError as e:
        log.warning("could not record payment for order %s: %s",
                    order_id, e)


@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_type(event)
    if kind != CHECKOUT_COMPLETED:
        log.info("unhandled webhook event type: %s", kind)
        return {"received": True}

    session = adapter.event_session(event)
    metadata = session.get("metadata") or {}
    order_id = metadata.get("orderId")
    if (session.get("payment_status") != PAID
            or metadata.get("type") != "ticket" or not order_id):
        return {"received": True}

    # always acknowledge; verify-session is the backstop for the buyer
    try:
        result = await orchestrator.complete(
            order_id,
            session.get("payment_intent") or session.get("id", ""),
            adapter.name,
            None,
        )
        log.info("webhook completion for order %s: %s",
                 order_id, result.status)
    except Exception as e:
        log.error("webhook failed to complete order %s: %s", order_id, e)

    await record_payment(session, order_id)
    return {"received": True}


# ----------------------------
# Verify session (success page fallback if the webhook is late)
# ----------------------------
def caller_selection_from(metadata: Dict[str, Any]) -> Optional[Selection]:
    raw = metadata.get("ticketSelection")
    if not raw:
        return None
    try:
        return Selection.from_wire(json.loads(raw))
    except (ValueError, InvalidSelectionError) as e:
        log.error("bad ticketSelection in session metadata: %s", e)
        return None


@app.get("/api/payments/verify-session")
async def verify_session(
    session_id: Optional[str] = None,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    if not session_id:
        return error_response(400, "Session ID is required")

    session = await adapter.retrieve_session(session_id)
    if session is None:
        return error_response(404, "Session not found")

    metadata = session.get("metadata") or {}
    order_id = metadata.get("orderId")
    payment_status = session.get("payment_status")
    if metadata.get("type") != "ticket" or not order_id:
        return {"success": True, "paymentStatus": payment_status}

    event_slug = metadata.get("eventSlug") or "events"

    if payment_status == PAID:
        if await orchestrator.state.ticket_count(order_id) == 0:
            log.info("verify-session triggering completion for order %s",
                     order_id)
            try:
                await orchestrator.complete(
                    order_id,
                    session.get("payment_intent") or session_id,
                    adapter.name,
                    caller_selection_from(metadata),
                )
            except Exception as e:
                log.error("verify-session completion failed for order "
                          "%s: %s", order_id, e)
        else:
            log.info("order %s already has tickets", order_id)

    return {
        "success": True,
        "orderId": order_id,
        "eventSlug": event_slug,
        "paymentStatus": payment_status,
    }


# ----------------------------
# MockPay: emit the outcome of a payment session
# ----------------------------
@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(psid: str, request: Request):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        return error_response(400, "invalid kind")

    if await adapter.retrieve_session(psid) is None:
        return error_response(404, "payment session not found")

    session = await adapter.settle(psid, kind)
    event = adapter.build_event(session)
    payload, sig = adapter.signed_payload(event)

    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": sig,
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the success page falls back to verify-session
        log.warning("webhook delivery failed: %s", e)

    order_id = session["metadata"].get("orderId", "")
    if kind == "succeeded":
        url = f"{SITE_URL}/events/payment/success?session_id={psid}"
    else:
        slug = session["metadata"].get("eventSlug", "events")
        url = (f"{SITE_URL}/events/{slug}/purchase"
               f"?status={kind}&order_id={order_id}")
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Inventory + timings
# ----------------------------
@app.get("/api/inventory/{event_id}")
async def get_inventory(event_id: str, request: Request):
    items = await request.app.state.inventory.compute_inventory(event_id)
    return {"event_id": event_id, "items": items}


@app.get("/api/admin/timings")
async def api_admin_timings():
    return {"items": aggregates()}
