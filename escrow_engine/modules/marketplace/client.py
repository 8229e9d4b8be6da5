"""Clients for the marketplace application that hosts listings and users.

The escrow engine reads listings and shipping-address presence from the
marketplace, and pushes notifications and sold markers back to it.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import httpx

from escrow_engine.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Listing:
    id: str
    seller_id: uuid.UUID
    title: str
    price: Decimal
    is_available: bool = True


class ListingDirectory(ABC):
    @abstractmethod
    async def get_listing(self, listing_id: str) -> Listing | None:
        """Return the listing, or None if it does not exist."""

    @abstractmethod
    async def has_shipping_address(self, user_id: uuid.UUID) -> bool:
        """Return True if the user has saved a shipping address."""


def _auth_headers() -> dict[str, str]:
    if not settings.marketplace_api_token:
        return {}
    return {"Authorization": f"Bearer {settings.marketplace_api_token}"}


class HttpListingDirectory(ListingDirectory):
    def __init__(self) -> None:
        self.base_url = settings.marketplace_base_url
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=_auth_headers(),
                timeout=settings.marketplace_timeout_seconds,
            )
        return self._client

    async def get_listing(self, listing_id: str) -> Listing | None:
        client = await self._get_client()
        response = await client.get(f"/internal/listings/{listing_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return Listing(
            id=str(data["id"]),
            seller_id=uuid.UUID(str(data["sellerId"])),
            title=data.get("title", ""),
            price=Decimal(str(data["price"])),
            is_available=not data.get("isSold", False),
        )

    async def has_shipping_address(self, user_id: uuid.UUID) -> bool:
        client = await self._get_client()
        response = await client.get(f"/internal/users/{user_id}/shipping-address")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return bool(response.json().get("address"))

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


_directory: ListingDirectory | None = None


def get_listing_directory() -> ListingDirectory:
    """FastAPI dependency returning the shared listing directory."""
    global _directory
    if _directory is None:
        _directory = HttpListingDirectory()
    return _directory


class MarketplaceNotifier:
    """Synchronous client used by outbox handlers inside Celery workers."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(
            base_url=settings.marketplace_base_url,
            headers=_auth_headers(),
            timeout=settings.marketplace_timeout_seconds,
        )

    def send_notification(
        self,
        recipient_id: str,
        message: str,
        event_type: str,
        transaction_id: str,
    ) -> None:
        response = self._client.post(
            "/internal/notifications",
            json={
                "userId": recipient_id,
                "message": message,
                "type": event_type,
                "transactionId": transaction_id,
            },
        )
        response.raise_for_status()

    def mark_listing_sold(self, listing_id: str) -> None:
        response = self._client.post(f"/internal/listings/{listing_id}/sold")
        response.raise_for_status()
        logger.info("Marked listing %s as sold", listing_id)
