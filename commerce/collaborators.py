"""Clients for the services around the core: notifications and invoices.

Both are best effort. Callers log failures and carry on; nothing here may
reverse an order state change.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from shared.utils import settings

logger = logging.getLogger("commerce-service")


class NotificationService(ABC):
    @abstractmethod
    async def send_email(self, user_id: str, subject: str, body: str) -> None: ...

    @abstractmethod
    async def send_push(self, user_id: str, title: str, body: str) -> None: ...


class InvoiceService(ABC):
    @abstractmethod
    async def generate_invoice(self, order: dict) -> Optional[str]:
        """Return the URL of the rendered invoice."""


class HttpNotificationService(NotificationService):
    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict):
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     transport=self.transport) as client:
            response = await client.post(path, json=payload)
            response.raise_for_status()

    async def send_email(self, user_id, subject, body):
        await self._post("/notifications/email", {"userId": user_id, "subject": subject, "body": body})

    async def send_push(self, user_id, title, body):
        await self._post("/notifications/push", {"userId": user_id, "title": title, "body": body})


class HttpInvoiceService(InvoiceService):
    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def generate_invoice(self, order):
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     transport=self.transport) as client:
            response = await client.post("/invoices", json={
                "orderId": order["_id"],
                "userId": order["user_id"],
                "amount": order["amount"],
                "items": order["items"],
            })
            response.raise_for_status()
            data = response.json()
        return (data.get("data") or {}).get("url") or data.get("url")


class LoggingNotificationService(NotificationService):
    """Used when no notification service is configured."""

    async def send_email(self, user_id, subject, body):
        logger.info(f"Email skipped, no notification service: {subject}", extra={"user_id": user_id})

    async def send_push(self, user_id, title, body):
        logger.info(f"Push skipped, no notification service: {title}", extra={"user_id": user_id})


class NullInvoiceService(InvoiceService):
    async def generate_invoice(self, order):
        return None


def build_notifier(url: str = settings.NOTIFICATION_SERVICE_URL) -> NotificationService:
    return HttpNotificationService(url) if url else LoggingNotificationService()


def build_invoicer(url: str = settings.INVOICE_SERVICE_URL) -> InvoiceService:
    return HttpInvoiceService(url) if url else NullInvoiceService()
