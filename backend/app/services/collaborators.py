"""
External collaborators consumed by the negotiation engines.

The engines only see the Protocol interfaces below; production wiring uses the
httpx-backed clients, tests pass in-memory fakes. Every call goes through
call_dependency so it is bounded by a timeout and any transport failure
surfaces as DependencyFailure instead of leaking into engine state.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Dict, Optional, Protocol, TypeVar

import httpx

from app.config import settings
from app.core.errors import DependencyFailure
from app.core.events import event_bus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorError(Exception):
    """A collaborator answered but refused the request."""


@dataclass(frozen=True)
class Listing:
    """Catalog view of a product at the time of the call."""
    product_id: str
    owner_id: str
    price: Decimal
    status: str
    trade_enabled: bool = True

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class CatalogService(Protocol):
    async def get_listing(self, product_id: str) -> Optional[Listing]: ...

    async def lock_item(self, product_id: str) -> None: ...

    async def unlock_item(self, product_id: str) -> None: ...


class PaymentGateway(Protocol):
    async def hold_funds(self, payer_id: str, amount: Decimal) -> str: ...

    async def capture_funds(self, hold_id: str) -> None: ...

    async def release_funds(self, hold_id: str, recipient_id: str) -> None: ...

    async def refund_funds(self, hold_id: str) -> None: ...


class OrderService(Protocol):
    async def create_order_from_offer(self, offer_id: str, amount: Decimal) -> str: ...


class NotificationService(Protocol):
    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None: ...


async def call_dependency(name: str, call: Awaitable[T], timeout: Optional[float] = None) -> T:
    """
    Await a collaborator call with a bounded timeout.

    Raises:
        DependencyFailure: On timeout, transport error, or refusal
    """
    if timeout is None:
        timeout = settings.COLLABORATOR_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"{name} timed out after {timeout}s")
        raise DependencyFailure(name) from e
    except (httpx.HTTPError, CollaboratorError) as e:
        logger.warning(f"{name} failed: {e}")
        raise DependencyFailure(name) from e


class _HttpClient:
    """Shared JSON-over-HTTP plumbing for collaborator clients."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.COLLABORATOR_TIMEOUT_SECONDS

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            resp = await client.request(method, path, json=json)
        if resp.status_code >= 400 and resp.status_code != 404:
            raise CollaboratorError(f"{method} {path} returned {resp.status_code}")
        return resp


class HttpCatalogClient(_HttpClient):
    """Catalog service client."""

    async def get_listing(self, product_id: str) -> Optional[Listing]:
        resp = await self._request("GET", f"/products/{product_id}")
        if resp.status_code == 404:
            return None
        data = resp.json()
        return Listing(
            product_id=data["id"],
            owner_id=data["seller_id"],
            price=Decimal(str(data["price"])),
            status=data["status"],
            trade_enabled=data.get("is_trade_enabled", True),
        )

    async def lock_item(self, product_id: str) -> None:
        await self._request("POST", f"/products/{product_id}/lock")

    async def unlock_item(self, product_id: str) -> None:
        await self._request("POST", f"/products/{product_id}/unlock")


class HttpPaymentGateway(_HttpClient):
    """Escrow-style payment adapter client."""

    async def hold_funds(self, payer_id: str, amount: Decimal) -> str:
        resp = await self._request("POST", "/holds", json={"payer_id": payer_id, "amount": str(amount)})
        return resp.json()["hold_id"]

    async def capture_funds(self, hold_id: str) -> None:
        await self._request("POST", f"/holds/{hold_id}/capture")

    async def release_funds(self, hold_id: str, recipient_id: str) -> None:
        await self._request("POST", f"/holds/{hold_id}/release", json={"recipient_id": recipient_id})

    async def refund_funds(self, hold_id: str) -> None:
        await self._request("POST", f"/holds/{hold_id}/refund")


class HttpOrderClient(_HttpClient):
    """Order subsystem client. Address defaults are the order service's concern."""

    async def create_order_from_offer(self, offer_id: str, amount: Decimal) -> str:
        resp = await self._request("POST", "/orders/from-offer", json={"offer_id": offer_id, "amount": str(amount)})
        return resp.json()["order_id"]


class EventBusNotifier:
    """
    Publishes notifications on the in-process event bus (SSE) and, when a
    notification service is configured, forwards them over HTTP.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self._http = _HttpClient(base_url, timeout) if base_url else None

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        await event_bus.publish(event_type, payload, user_id=user_id)
        if self._http:
            await self._http._request(
                "POST",
                "/notifications",
                json={"user_id": user_id, "event_type": event_type, "payload": payload},
            )


async def notify_quietly(notifier: NotificationService, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    """Fire-and-forget notification. Failures are logged, never raised."""
    try:
        await asyncio.wait_for(
            notifier.notify(user_id, event_type, payload),
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    except Exception as e:
        logger.error(f"Failed to send {event_type} notification: {e}")
