import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from ..core.base import Invoice, Webhook, WebhookDelivery, WebhookEventType
from ..core.db import Database
from ..core.helpers import random_hex
from ..core.settings import settings
from .crud import GatewayCrud
from .models import format_invoice_for_api

SIGNATURE_HEADER = "BTCPay-Sig"


def sign_payload(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature)


class WebhookSender:
    """Signs and posts webhook events, logging every attempt."""

    def __init__(
        self,
        *,
        db: Database,
        crud: GatewayCrud,
        clock: Callable[[], int],
        base_url: str = "",
    ):
        self.db = db
        self.crud = crud
        self.clock = clock
        self.base_url = base_url

    def build_payload(
        self,
        webhook: Webhook,
        event: WebhookEventType,
        invoice: Invoice,
    ) -> Dict[str, Any]:
        delivery_id = random_hex(16)
        payload: Dict[str, Any] = {
            "deliveryId": delivery_id,
            "webhookId": webhook.id,
            "originalDeliveryId": delivery_id,
            "isRedelivery": False,
            "type": event.value,
            "timestamp": self.clock(),
            "storeId": invoice.store_id,
            "invoiceId": invoice.id,
            "invoice": format_invoice_for_api(invoice, self.base_url),
        }
        if event.includes_metadata:
            payload["metadata"] = invoice.metadata
        return payload

    async def fire_event(self, event: WebhookEventType, invoice: Invoice) -> int:
        """Delivers `event` to every enabled webhook of the invoice's store.

        Returns the number of successful deliveries.
        """
        webhooks = await self.crud.get_webhooks(store_id=invoice.store_id, db=self.db)
        delivered = 0
        for webhook in webhooks:
            if not webhook.subscribed_to(event):
                continue
            payload = self.build_payload(webhook, event, invoice)
            delivery = await self.send(webhook, payload)
            if delivery.success:
                delivered += 1
        return delivered

    async def send(self, webhook: Webhook, payload: Dict[str, Any]) -> WebhookDelivery:
        body = json.dumps(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.webhook_user_agent,
            SIGNATURE_HEADER: sign_payload(webhook.secret, body),
        }
        status_code: Optional[int] = None
        try:
            async with httpx.AsyncClient(timeout=settings.webhook_timeout) as client:
                resp = await client.post(webhook.url, content=body, headers=headers)
            status_code = resp.status_code
            response = resp.text
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {webhook.id} to {webhook.url} failed: {e}")
            response = f"Error: {e.__class__.__name__}: {e}"

        delivery = WebhookDelivery(
            id=payload["deliveryId"],
            webhook_id=webhook.id,
            invoice_id=payload.get("invoiceId"),
            event_type=payload["type"],
            payload=body,
            status_code=status_code,
            response=response[: settings.webhook_response_max_length],
            created_at=self.clock(),
        )
        await self.crud.store_webhook_delivery(delivery=delivery, db=self.db)
        logger.debug(
            f"Webhook {payload['type']} to {webhook.url}: {status_code or 'no response'}"
        )
        return delivery

    async def redeliver(self, delivery_id: str) -> WebhookDelivery:
        original = await self.crud.get_webhook_delivery(delivery_id=delivery_id, db=self.db)
        if not original:
            raise ValueError(f"Webhook delivery {delivery_id} not found")
        webhook = await self.crud.get_webhook(webhook_id=original.webhook_id, db=self.db)
        if not webhook:
            raise ValueError(f"Webhook {original.webhook_id} not found")
        payload = json.loads(original.payload)
        payload.update(
            deliveryId=random_hex(16),
            originalDeliveryId=payload.get("originalDeliveryId") or original.id,
            isRedelivery=True,
            timestamp=self.clock(),
        )
        return await self.send(webhook, payload)

    async def get_deliveries(self, webhook_id: str, limit: int = 50) -> List[WebhookDelivery]:
        return await self.crud.get_webhook_deliveries(
            webhook_id=webhook_id, db=self.db, limit=limit
        )


class WebhookQueue:
    """Events collected during one unit of work.

    Nothing leaves the process before `flush()`, which the owner calls only
    once the surrounding transaction has committed.
    """

    def __init__(self, sender: WebhookSender):
        self.sender = sender
        self.items: List[Tuple[WebhookEventType, Invoice]] = []

    def queue(self, event: WebhookEventType, invoice: Invoice) -> None:
        self.items.append((event, invoice.model_copy()))

    async def flush(self) -> int:
        items, self.items = self.items, []
        for event, invoice in items:
            try:
                await self.sender.fire_event(event, invoice)
            except Exception as e:
                logger.error(f"Could not deliver {event} for invoice {invoice.id}: {e}")
        return len(items)

    def discard(self) -> int:
        discarded = len(self.items)
        self.items = []
        if discarded:
            logger.debug(f"Discarded {discarded} queued webhook events")
        return discarded


class GatewayNotifications:
    db: Database
    webhooks: WebhookSender

    @asynccontextmanager
    async def unit_of_work(self):
        """Yields a connection and a webhook queue bound to one transaction.

        Queued events are delivered after the commit and dropped on rollback.
        """
        queue = WebhookQueue(self.webhooks)
        try:
            async with self.db.connect() as conn:
                yield conn, queue
        except Exception:
            queue.discard()
            raise
        await queue.flush()
