"""
Contracts for the marketplace services the escrow engine consumes,
plus their HTTP clients and the role-based authorization policy.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Protocol

import httpx

from errors import CollaboratorUnavailable
from settings import COLLABORATOR_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Listing:
    id: str
    price_cents: int
    seller_id: str
    available: bool
    title: str = ""


@dataclass(frozen=True)
class Actor:
    id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)


class ListingDirectory(Protocol):
    async def get_listing(self, listing_id: str) -> Optional[Listing]: ...

    async def mark_unavailable(self, listing_id: str) -> None: ...

    async def mark_available(self, listing_id: str) -> None: ...


class PayoutDirectory(Protocol):
    async def get_payout_destination(self, seller_id: str) -> Optional[str]: ...


class Authorization(Protocol):
    def is_authorized(self, actor: Actor, action: str, order_id: str) -> bool: ...


class HttpListingDirectory:
    """Listing service client. Listings are ACTIVE when open for purchase."""

    def __init__(self, base_url: str, timeout: float = COLLABORATOR_TIMEOUT_SECONDS, client: Optional[httpx.AsyncClient] = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, f"{self._base_url}{path}", timeout=self._timeout, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.request(method, f"{self._base_url}{path}", timeout=self._timeout, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise CollaboratorUnavailable(f"Listing service unreachable: {e}") from e

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        r = await self._request("GET", f"/listings/{listing_id}")
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise CollaboratorUnavailable(f"Listing service returned {r.status_code} for listing {listing_id}")
        data = r.json().get("listing", r.json())
        return Listing(
            id=str(data["id"]),
            price_cents=int(data["priceCents"]),
            seller_id=str(data["sellerId"]),
            available=data.get("status") == "ACTIVE",
            title=data.get("title", ""),
        )

    async def _set_status(self, listing_id: str, status: str) -> None:
        r = await self._request("PATCH", f"/listings/{listing_id}/status", json={"status": status})
        if r.status_code >= 400:
            raise CollaboratorUnavailable(f"Listing service refused status {status} for listing {listing_id} ({r.status_code})")

    async def mark_unavailable(self, listing_id: str) -> None:
        await self._set_status(listing_id, "SOLD")

    async def mark_available(self, listing_id: str) -> None:
        await self._set_status(listing_id, "ACTIVE")


class HttpPayoutDirectory:
    """Reads the seller's connected gateway account from the user service."""

    def __init__(self, base_url: str, timeout: float = COLLABORATOR_TIMEOUT_SECONDS):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def get_payout_destination(self, seller_id: str) -> Optional[str]:
        try:
            async with httpx.AsyncClient() as client:
                r = await client.get(f"{self._base_url}/users/{seller_id}", timeout=self._timeout)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise CollaboratorUnavailable(f"User service unreachable: {e}") from e
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise CollaboratorUnavailable(f"User service returned {r.status_code} for seller {seller_id}")
        return r.json().get("stripeAccountId") or None


# Permissions per action checked by the settlement services
ACTION_PERMISSIONS = {
    "release": "orders.release",
    "refund": "orders.refund",
    "read": "orders.read",
}

DEFAULT_ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "ADMIN": frozenset({"orders.release", "orders.refund", "orders.read"}),
    "MODERATOR": frozenset({"orders.refund", "orders.read"}),
    "USER": frozenset(),
}


class RoleAuthorization:
    def __init__(self, role_permissions: Optional[Dict[str, Iterable[str]]] = None):
        source = role_permissions if role_permissions is not None else DEFAULT_ROLE_PERMISSIONS
        self._role_permissions = {role.upper(): frozenset(perms) for role, perms in source.items()}

    def is_authorized(self, actor: Actor, action: str, order_id: str) -> bool:
        permission = ACTION_PERMISSIONS.get(action)
        if permission is None:
            return False
        granted = any(permission in self._role_permissions.get(role.upper(), ()) for role in actor.roles)
        if not granted:
            logging.info(f"Actor {actor.id} lacks {permission} for order {order_id}")
        return granted
