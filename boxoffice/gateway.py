from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
from fastapi import HTTPException
import os
import uuid
import hmac
import hashlib
import base64
import json

from sqlalchemy import update

from .helpers import now_ts
from .infra.sql import Database
from .model.db import PAID, PaymentSession, TicketOrder

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    name: str

    @abstractmethod
    async def create_session(
            self, order: TicketOrder, metadata: Dict[str, str]
    ) -> CreateSessionResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # e.g. "checkout.session.completed"
    def event_type(self, event: dict) -> str:
        return event.get("type", "")

    # the checkout session object carried by an event
    def event_session(self, event: dict) -> Dict[str, Any]:
        return (event.get("data") or {}).get("object") or {}

    @abstractmethod
    async def retrieve_session(
            self, session_id: str
    ) -> Optional[Dict[str, Any]]: ...


def session_object(ps: PaymentSession) -> Dict[str, Any]:
    return {
        "id": ps.id,
        "object": "checkout.session",
        "status": ps.status,
        "payment_status": ps.payment_status,
        "payment_intent": ps.payment_intent,
        "amount_total": ps.amount,
        "currency": ps.currency,
        "metadata": dict(ps.session_metadata or {}),
    }


def sign(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"

    def __init__(self, db: Database, secret: str = MOCK_SECRET) -> None:
        self.db = db
        self.secret = secret

    async def create_session(
            self, order: TicketOrder, metadata: Dict[str, str]
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    session.add(PaymentSession(
                        id=psid,
                        order_id=order.id,
                        amount=order.total_amount,
                        currency=order.currency,
                        status="open",
                        session_metadata=metadata,
                        created_at=now_ts(),
                    ))
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    async def retrieve_session(
            self, session_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as session:
                ps = await session.get(PaymentSession, session_id)
        if ps is None:
            return None
        return session_object(ps)

    async def settle(self, session_id: str, kind: str) -> Optional[Dict]:
        """Apply a payment outcome (succeeded|failed|canceled) to a session
        and return the updated session object."""
        if kind == "succeeded":
            values = dict(status="complete", payment_status=PAID,
                          payment_intent=f"pi_mock_{uuid.uuid4().hex[:24]}")
        else:
            values = dict(status="expired")
        async with self.db.gated():
            async with self.db.sessions() as session:
                async with session.begin():
                    # a paid session keeps its first payment intent
                    await session.execute(
                        update(PaymentSession)
                        .where(PaymentSession.id == session_id,
                               PaymentSession.status == "open")
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
        return await self.retrieve_session(session_id)

    def build_event(self, session_obj: Dict[str, Any]) -> Dict[str, Any]:
        kind = (CHECKOUT_COMPLETED if session_obj["status"] == "complete"
                else CHECKOUT_EXPIRED)
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": kind,
            "created": int(now_ts()),
            "data": {"object": session_obj},
        }

    def signed_payload(self, event: Dict[str, Any]) -> tuple[bytes, str]:
        payload = json.dumps(event).encode()
        return payload, sign(payload, self.secret)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
