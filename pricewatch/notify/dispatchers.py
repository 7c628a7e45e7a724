"""Outbound notification and payment dispatchers.

The core only talks to these two interfaces. The HTTP implementations post
JSON to configured endpoints; tests substitute in-memory fakes.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol

import httpx

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


class TransientDispatchError(Exception):
    """A notification or payment dispatch failed or timed out.

    Recorded in history and retried on a later sweep, never in a loop.
    """

    pass


@dataclass
class NotificationMessage:
    watch_id: Optional[int]
    method: str
    kind: str
    content: str
    owner_id: Optional[int] = None  # Set for owner-level messages such as the digest


@dataclass
class DispatchResult:
    success: bool
    error: Optional[str] = None


@dataclass
class PurchaseResult:
    success: bool
    confirmation: Optional[str] = None
    error: Optional[str] = None


class NotificationDispatcher(Protocol):
    async def send(self, message: NotificationMessage) -> DispatchResult:
        ...


class PaymentDispatcher(Protocol):
    async def purchase(
        self, watch_id: int, price: Decimal, payment_reference: str
    ) -> PurchaseResult:
        ...


class _HttpDispatcher:
    """Shared lazily created httpx client."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class HttpNotificationDispatcher(_HttpDispatcher):
    """
    Posts notifications to one HTTP endpoint per delivery method.

    The endpoint is expected to hand the message to the actual email, push,
    sms or in-app provider and answer 2xx once accepted.
    """

    def __init__(
        self,
        endpoints: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout or settings.dispatch_timeout_seconds)
        self.endpoints = endpoints if endpoints is not None else settings.notification_endpoints

    async def send(self, message: NotificationMessage) -> DispatchResult:
        url = self.endpoints.get(message.method)
        if not url:
            return DispatchResult(
                success=False, error=f"No endpoint configured for {message.method}"
            )

        payload = {
            "watch_id": message.watch_id,
            "owner_id": message.owner_id,
            "method": message.method,
            "kind": message.kind,
            "content": message.content,
        }

        start_time = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                f"Notification endpoint for {message.method} returned "
                f"{e.response.status_code} (watch {message.watch_id})"
            )
            return DispatchResult(success=False, error=f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise TransientDispatchError(f"{message.method} dispatch failed: {e}") from e
        finally:
            metrics.dispatch_latency_seconds.labels(target=message.method).observe(
                time.monotonic() - start_time
            )

        return DispatchResult(success=True)


class HttpPaymentDispatcher(_HttpDispatcher):
    """Posts purchase requests to the payment service."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout or settings.payment_timeout_seconds)
        self.api_url = api_url or settings.payment_api_url
        self.api_key = api_key or settings.payment_api_key

    async def purchase(
        self, watch_id: int, price: Decimal, payment_reference: str
    ) -> PurchaseResult:
        if not self.api_url:
            return PurchaseResult(success=False, error="Payment service not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "watch_id": watch_id,
            "amount": str(price),
            "payment_reference": payment_reference,
        }

        start_time = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransientDispatchError(f"Payment dispatch failed: {e}") from e
        finally:
            metrics.dispatch_latency_seconds.labels(target="payment").observe(
                time.monotonic() - start_time
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_success and data.get("success", True):
            return PurchaseResult(success=True, confirmation=data.get("confirmation"))

        error = data.get("error") or f"HTTP {response.status_code}"
        logger.warning(f"Purchase declined for watch {watch_id}: {error}")
        return PurchaseResult(success=False, error=error)
