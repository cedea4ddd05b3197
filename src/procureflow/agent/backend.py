"""Procurement backend boundary used by the agent tools.

The catalog, cart and checkout services live outside this package. The agent
talks to them through ``ProcurementBackend``; return values must be
JSON-serializable and failures are raised as ``DomainError`` subclasses.
"""

from __future__ import annotations

from datetime import UTC, datetime
import itertools
from typing import Any, Protocol, runtime_checkable

from procureflow.errors import ProcureflowError


class DomainError(ProcureflowError):
    """A business rule rejected a backend operation."""

    @property
    def error_type(self) -> str:
        return type(self).__name__


class ItemNotFoundError(DomainError):
    """The referenced catalog item (or cart line) does not exist."""


class CartEmptyError(DomainError):
    """Checkout was attempted with an empty cart."""


class ValidationFailedError(DomainError):
    """The backend rejected the values supplied for an operation."""


@runtime_checkable
class ProcurementBackend(Protocol):
    """Catalog, cart and checkout operations available to the agent."""

    async def search_catalog(
        self, query: str, *, limit: int = 10, max_price: float | None = None
    ) -> list[dict[str, Any]]:
        """Return catalog items matching *query*."""
        ...

    async def get_item(self, item_id: str) -> dict[str, Any]:
        """Return one catalog item or raise ItemNotFoundError."""
        ...

    async def get_cart(self, user_id: str) -> dict[str, Any]:
        """Return the user's cart (possibly empty)."""
        ...

    async def add_to_cart(self, user_id: str, item_id: str, quantity: int) -> dict[str, Any]:
        """Add *quantity* of an item and return the updated cart."""
        ...

    async def update_cart_quantity(
        self, user_id: str, item_id: str, quantity: int
    ) -> dict[str, Any]:
        """Set the quantity of a cart line and return the updated cart."""
        ...

    async def remove_from_cart(self, user_id: str, item_id: str) -> dict[str, Any]:
        """Remove a cart line and return the updated cart."""
        ...

    async def checkout(self, user_id: str, notes: str | None = None) -> dict[str, Any]:
        """Turn the cart into a purchase request and return it."""
        ...

    async def register_item(
        self,
        user_id: str,
        *,
        name: str,
        category: str,
        price: float,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Add a new item to the catalog and return it."""
        ...


class InMemoryProcurementBackend:
    """Dict-backed backend for local runs and tests.

    Catalog search is a case-insensitive substring match over name, category
    and description, one word at a time.
    """

    def __init__(self, items: list[dict[str, Any]] | None = None) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._carts: dict[str, dict[str, int]] = {}
        self.purchase_requests: list[dict[str, Any]] = []
        self._ids = itertools.count(1)
        for item in items or ():
            self._store_item(dict(item))

    def _store_item(self, item: dict[str, Any]) -> dict[str, Any]:
        item.setdefault("id", f"item-{next(self._ids)}")
        item.setdefault("description", "")
        item.setdefault("status", "active")
        self._items[str(item["id"])] = item
        return item

    def _require_item(self, item_id: str) -> dict[str, Any]:
        try:
            return self._items[item_id]
        except KeyError:
            raise ItemNotFoundError(f"Item {item_id} not found") from None

    def _cart_view(self, user_id: str) -> dict[str, Any]:
        lines = []
        total = 0.0
        for item_id, quantity in self._carts.get(user_id, {}).items():
            item = self._items[item_id]
            lines.append(
                {
                    "item_id": item_id,
                    "item_name": item["name"],
                    "item_price": item["price"],
                    "quantity": quantity,
                }
            )
            total += item["price"] * quantity
        return {"items": lines, "total_cost": round(total, 2), "item_count": len(lines)}

    async def search_catalog(
        self, query: str, *, limit: int = 10, max_price: float | None = None
    ) -> list[dict[str, Any]]:
        words = [w for w in query.lower().split() if w]
        hits = []
        for item in self._items.values():
            haystack = " ".join(
                str(item.get(k, "")) for k in ("name", "category", "description")
            ).lower()
            if words and not any(w.rstrip("s") in haystack for w in words):
                continue
            if max_price is not None and item["price"] > max_price:
                continue
            hits.append(dict(item))
        return hits[:limit]

    async def get_item(self, item_id: str) -> dict[str, Any]:
        return dict(self._require_item(item_id))

    async def get_cart(self, user_id: str) -> dict[str, Any]:
        return self._cart_view(user_id)

    async def add_to_cart(self, user_id: str, item_id: str, quantity: int) -> dict[str, Any]:
        item = self._require_item(item_id)
        if item.get("status") != "active":
            raise ValidationFailedError(f"Item {item_id} is not available")
        if quantity < 1:
            raise ValidationFailedError("Quantity must be at least 1")
        cart = self._carts.setdefault(user_id, {})
        cart[item_id] = cart.get(item_id, 0) + quantity
        return self._cart_view(user_id)

    async def update_cart_quantity(
        self, user_id: str, item_id: str, quantity: int
    ) -> dict[str, Any]:
        cart = self._carts.get(user_id, {})
        if item_id not in cart:
            raise ItemNotFoundError(f"Item {item_id} is not in the cart")
        if quantity < 1:
            raise ValidationFailedError("Quantity must be at least 1")
        cart[item_id] = quantity
        return self._cart_view(user_id)

    async def remove_from_cart(self, user_id: str, item_id: str) -> dict[str, Any]:
        cart = self._carts.get(user_id, {})
        if cart.pop(item_id, None) is None:
            raise ItemNotFoundError(f"Item {item_id} is not in the cart")
        return self._cart_view(user_id)

    async def checkout(self, user_id: str, notes: str | None = None) -> dict[str, Any]:
        view = self._cart_view(user_id)
        if not view["items"]:
            raise CartEmptyError("Cannot check out an empty cart")
        request = {
            "id": f"pr-{len(self.purchase_requests) + 1}",
            "user_id": user_id,
            "items": view["items"],
            "total_cost": view["total_cost"],
            "item_count": view["item_count"],
            "status": "pending",
            "notes": notes,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self.purchase_requests.append(request)
        self._carts.pop(user_id, None)
        return request

    async def register_item(
        self,
        user_id: str,
        *,
        name: str,
        category: str,
        price: float,
        description: str | None = None,
    ) -> dict[str, Any]:
        if price <= 0:
            raise ValidationFailedError("Price must be positive")
        item = self._store_item(
            {
                "name": name,
                "category": category,
                "price": price,
                "description": description or "",
                "registered_by": user_id,
            }
        )
        return dict(item)
