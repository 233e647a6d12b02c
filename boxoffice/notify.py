"""Ticket e-mail notifications.

The mail service is a separate HTTP endpoint (``EMAIL_SERVICE_URL``) that
renders and sends the ticket mail for an order. Issued tickets are the
source of truth, so notifications are fire-and-forget: the completion path
never waits for them and their failures are only logged.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional, Set

import httpx

log = logging.getLogger(__name__)

EMAIL_SERVICE_URL = os.getenv("EMAIL_SERVICE_URL", "")


class EmailNotifier:
    def __init__(self, http: Optional[httpx.AsyncClient],
                 url: str = EMAIL_SERVICE_URL) -> None:
        self.http = http
        self.url = url
        # strong refs, otherwise pending tasks can be garbage collected
        self._tasks: Set[asyncio.Task] = set()

    async def notify(self, order_id: str, customer_email: str) -> bool:
        if not self.url or self.http is None:
            log.info("no email service configured, skipping mail for "
                     "order %s", order_id)
            return False
        try:
            r = await self.http.post(self.url, json={
                "orderId": order_id,
                "customerEmail": customer_email,
            })
        except httpx.HTTPError as e:
            log.error("failed to send ticket email for order %s: %s",
                      order_id, e)
            return False
        if r.is_success:
            log.info("ticket email sent for order %s", order_id)
            return True
        log.error("ticket email failed for order %s (HTTP %s)",
                  order_id, r.status_code)
        return False

    def dispatch(self, order_id: str, customer_email: str) -> asyncio.Task:
        task = asyncio.create_task(self.notify(order_id, customer_email))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
