# QR payloads for tickets: JSON body, its SHA-256 and a PNG rendering.
from __future__ import annotations
import base64
import hashlib
import io
import json

import qrcode
from qrcode.constants import ERROR_CORRECT_H

QR_WIDTH = 300
QR_BORDER = 2


def build_payload(
    ticket_id: str, order_id: str, event_id: str, ticket_number: str,
    timestamp_ms: int,
) -> str:
    return json.dumps({
        "ticketId": ticket_id,
        "orderId": order_id,
        "eventId": event_id,
        "ticketNumber": ticket_number,
        "timestamp": timestamp_ms,
    }, separators=(",", ":"))


def payload_hash(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def verify_payload(payload: str, expected_hash: str) -> bool:
    return payload_hash(payload) == expected_hash


def render_qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, border=QR_BORDER)
    qr.add_data(payload)
    qr.make(fit=True)
    qr.box_size = max(1, QR_WIDTH // (qr.modules_count + 2 * QR_BORDER))
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
