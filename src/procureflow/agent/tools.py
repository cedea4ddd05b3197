"""Agent tools: argument models, schemas and the executor.

Each tool pairs a pydantic argument model (from which the JSON schema sent to
the model is derived) with an async handler over ``ProcurementBackend``.
Mutating tools change the cart, the catalog or create purchase requests and
go through the confirmation gate before they run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from procureflow.errors import ToolExecutionError
from procureflow.providers.models import ToolDefinition

from .backend import DomainError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from procureflow.metrics import AgentMetrics
    from procureflow.providers.models import ToolCall

    from .backend import ProcurementBackend

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_S = 5.0


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


def _item_id_field(description: str) -> Any:
    return Field(
        min_length=1,
        validation_alias=AliasChoices("item_id", "itemId"),
        description=description,
    )


class SearchCatalogArgs(_ToolArgs):
    query: str = Field(
        min_length=1,
        description='Search keywords, e.g. "ergonomic keyboard" or "USB-C cable"',
    )
    limit: int = Field(10, ge=1, le=50, description="Maximum number of results (default 10)")
    max_price: float | None = Field(
        None,
        gt=0,
        validation_alias=AliasChoices("max_price", "maxPrice"),
        description="Only return items at or below this unit price",
    )


class GetItemDetailsArgs(_ToolArgs):
    item_id: str = _item_id_field("Item ID from search results")


class GetCartArgs(_ToolArgs):
    pass


class AddToCartArgs(_ToolArgs):
    item_id: str = _item_id_field("Item ID from search results")
    quantity: int = Field(1, ge=1, le=1000, description="Quantity to add (default 1)")


class UpdateCartQuantityArgs(_ToolArgs):
    item_id: str = _item_id_field("Item ID of a line already in the cart")
    quantity: int = Field(
        ge=1,
        le=1000,
        validation_alias=AliasChoices("quantity", "new_quantity", "newQuantity"),
        description="The new total quantity for this line",
    )


class RemoveFromCartArgs(_ToolArgs):
    item_id: str = _item_id_field("Item ID to remove from the cart")


class CheckoutArgs(_ToolArgs):
    notes: str | None = Field(None, max_length=1000, description="Optional purchase notes")


class RegisterItemArgs(_ToolArgs):
    name: str = Field(min_length=2, max_length=200, description="Item name")
    category: str = Field(min_length=2, max_length=100, description="Catalog category")
    price: float = Field(gt=0, description="Unit price in USD")
    description: str | None = Field(None, max_length=2000, description="Short description")


@dataclass(frozen=True)
class ToolSpec:
    """A tool's schema, handler and confirmation metadata."""

    name: str
    description: str
    args_model: type[_ToolArgs]
    handler: Callable[[ProcurementBackend, str, Any], Awaitable[Any]]
    mutating: bool = False
    requires_user: bool = False
    action_keywords: tuple[str, ...] = ()
    describe: Callable[[Any], str] | None = None

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=json_schema_for(self.args_model),
            mutating=self.mutating,
        )

    def describe_action(self, args: Any) -> str:
        if self.describe is None:
            return f"run {self.name}"
        return self.describe(args)


def json_schema_for(model: type[BaseModel]) -> dict[str, Any]:
    """Derive a provider-friendly JSON schema from an argument model.

    Titles are dropped and ``X | None`` unions collapse to ``X``; optional
    fields are simply absent from ``required``.
    """
    schema = model.model_json_schema()
    properties: dict[str, Any] = {}
    for name, prop in schema.get("properties", {}).items():
        prop = {k: v for k, v in prop.items() if k != "title"}
        variants = prop.pop("anyOf", None)
        if variants:
            concrete = [v for v in variants if v.get("type") != "null"]
            if len(concrete) == 1:
                prop.update(concrete[0])
        if prop.get("default") is None:
            prop.pop("default", None)
        properties[name] = prop
    return {
        "type": "object",
        "properties": properties,
        "required": list(schema.get("required", [])),
    }


def _cart_result(cart: Mapping[str, Any]) -> dict[str, Any]:
    return {"success": True, "cart": dict(cart)}


async def _search_catalog(
    backend: ProcurementBackend, _user_id: str, args: SearchCatalogArgs
) -> dict[str, Any]:
    items = await backend.search_catalog(args.query, limit=args.limit, max_price=args.max_price)
    return {
        "items": [
            {
                "id": item.get("id"),
                "name": item.get("name"),
                "category": item.get("category"),
                "description": item.get("description"),
                "price": item.get("price"),
                "availability": "in_stock"
                if item.get("status", "active") == "active"
                else "out_of_stock",
            }
            for item in items
        ],
        "count": len(items),
    }


async def _get_item_details(
    backend: ProcurementBackend, _user_id: str, args: GetItemDetailsArgs
) -> dict[str, Any]:
    return {"item": await backend.get_item(args.item_id)}


async def _get_cart(
    backend: ProcurementBackend, user_id: str, _args: GetCartArgs
) -> dict[str, Any]:
    cart = dict(await backend.get_cart(user_id))
    if not cart.get("items"):
        cart.setdefault("items", [])
        cart["message"] = "Your cart is empty"
    return cart


async def _add_to_cart(
    backend: ProcurementBackend, user_id: str, args: AddToCartArgs
) -> dict[str, Any]:
    return _cart_result(await backend.add_to_cart(user_id, args.item_id, args.quantity))


async def _update_cart_quantity(
    backend: ProcurementBackend, user_id: str, args: UpdateCartQuantityArgs
) -> dict[str, Any]:
    return _cart_result(
        await backend.update_cart_quantity(user_id, args.item_id, args.quantity)
    )


async def _remove_from_cart(
    backend: ProcurementBackend, user_id: str, args: RemoveFromCartArgs
) -> dict[str, Any]:
    return _cart_result(await backend.remove_from_cart(user_id, args.item_id))


async def _checkout(
    backend: ProcurementBackend, user_id: str, args: CheckoutArgs
) -> dict[str, Any]:
    request = await backend.checkout(user_id, args.notes)
    return {
        "success": True,
        "purchase_request": {
            k: request.get(k) for k in ("id", "total_cost", "item_count", "status", "created_at")
        },
    }


async def _register_item(
    backend: ProcurementBackend, user_id: str, args: RegisterItemArgs
) -> dict[str, Any]:
    item = await backend.register_item(
        user_id,
        name=args.name,
        category=args.category,
        price=args.price,
        description=args.description,
    )
    return {"success": True, "item": item}


TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="search_catalog",
            description=(
                "Search the catalog by keyword. Returns matching items with id, name, "
                "price, category and description. Use it whenever the user asks to "
                "find, search or browse items."
            ),
            args_model=SearchCatalogArgs,
            handler=_search_catalog,
        ),
        ToolSpec(
            name="get_item_details",
            description="Get full details for one catalog item by its ID.",
            args_model=GetItemDetailsArgs,
            handler=_get_item_details,
        ),
        ToolSpec(
            name="get_cart",
            description="View the current shopping cart contents.",
            args_model=GetCartArgs,
            handler=_get_cart,
            requires_user=True,
        ),
        ToolSpec(
            name="add_to_cart",
            description=(
                "Add an item that is not yet in the cart. Use the item ID from search "
                "results. For items already in the cart use update_cart_quantity."
            ),
            args_model=AddToCartArgs,
            handler=_add_to_cart,
            mutating=True,
            requires_user=True,
            action_keywords=("add", "put"),
            describe=lambda a: f"add {a.quantity} x item {a.item_id} to your cart",
        ),
        ToolSpec(
            name="update_cart_quantity",
            description="Set a new total quantity for an item already in the cart.",
            args_model=UpdateCartQuantityArgs,
            handler=_update_cart_quantity,
            mutating=True,
            requires_user=True,
            action_keywords=(
                "update",
                "change",
                "set",
                "quantity",
                "increase",
                "decrease",
                "add",
                "remove",
            ),
            describe=lambda a: (
                f"set the quantity of item {a.item_id} in your cart to {a.quantity}"
            ),
        ),
        ToolSpec(
            name="remove_from_cart",
            description="Remove an item from the cart entirely.",
            args_model=RemoveFromCartArgs,
            handler=_remove_from_cart,
            mutating=True,
            requires_user=True,
            action_keywords=("remove", "delete", "take out"),
            describe=lambda a: f"remove item {a.item_id} from your cart",
        ),
        ToolSpec(
            name="checkout",
            description=(
                "Create a purchase request from the current cart. Always ask the user "
                "for confirmation first."
            ),
            args_model=CheckoutArgs,
            handler=_checkout,
            mutating=True,
            requires_user=True,
            action_keywords=(
                "checkout",
                "check out",
                "purchase request",
                "submit",
                "place",
                "order",
            ),
            describe=lambda a: "submit your cart as a purchase request",
        ),
        ToolSpec(
            name="register_item",
            description="Register a new item in the catalog.",
            args_model=RegisterItemArgs,
            handler=_register_item,
            mutating=True,
            requires_user=True,
            action_keywords=("register", "create", "new item", "catalog"),
            describe=lambda a: (
                f'register "{a.name}" ({a.category}) at ${a.price:.2f} in the catalog'
            ),
        ),
    )
}

MUTATING_TOOLS = frozenset(name for name, spec in TOOL_SPECS.items() if spec.mutating)


@dataclass(frozen=True)
class ToolOutcome:
    """Result of running one tool call, ready to feed back to the model."""

    call: ToolCall
    arguments: dict[str, Any]
    success: bool
    payload: Any
    duration_s: float
    error: str | None = None
    error_type: str | None = None

    @property
    def content(self) -> str:
        """JSON string sent back to the model as the tool result."""
        return json.dumps(self.payload, default=str)


class ToolExecutor:
    """Validates and runs tool calls against a backend."""

    def __init__(
        self,
        backend: ProcurementBackend,
        *,
        timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        metrics: AgentMetrics | None = None,
        specs: Mapping[str, ToolSpec] | None = None,
    ) -> None:
        self.backend = backend
        self.timeout_s = timeout_s
        self.metrics = metrics
        self.specs = dict(TOOL_SPECS if specs is None else specs)

    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(spec.definition() for spec in self.specs.values())

    def spec(self, name: str) -> ToolSpec:
        try:
            return self.specs[name]
        except KeyError:
            raise ToolExecutionError(
                f"Unknown tool: {name}",
                tool_name=name,
                error_type="UnknownTool",
            ) from None

    def is_mutating(self, name: str) -> bool:
        spec = self.specs.get(name)
        return spec is not None and spec.mutating

    def parse(self, call: ToolCall) -> tuple[ToolSpec, _ToolArgs]:
        """Decode and validate arguments; raise ToolExecutionError on failure."""
        spec = self.spec(call.name)
        raw = call.parsed_arguments()
        try:
            return spec, spec.args_model.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolExecutionError(
                f"Invalid arguments for {call.name}: {problems}",
                tool_name=call.name,
                error_type="ValidationError",
            ) from e

    async def execute(
        self,
        call: ToolCall,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> ToolOutcome:
        """Run *call*; failures come back as an error payload, never raised."""
        start = time.monotonic()
        arguments: dict[str, Any] = {}
        try:
            spec, args = self.parse(call)
            arguments = args.model_dump()
            if spec.requires_user and not user_id:
                raise ToolExecutionError(
                    f"{call.name} needs a signed-in user",
                    tool_name=call.name,
                    error_type="AuthenticationRequired",
                )
            # Only catalog tools, which ignore the user, can run without one.
            try:
                async with asyncio.timeout(self.timeout_s):
                    result = await spec.handler(self.backend, user_id or "", args)
            except TimeoutError:
                raise ToolExecutionError(
                    f"{call.name} timed out after {self.timeout_s:g}s",
                    tool_name=call.name,
                    error_type="ToolTimeout",
                ) from None
        except (ToolExecutionError, DomainError) as e:
            return self._failed(call, arguments, e, start, conversation_id=conversation_id)
        except Exception as e:
            logger.exception(
                "Unexpected tool failure",
                extra={"tool": call.name, "conversation_id": conversation_id},
            )
            return self._failed(call, arguments, e, start, conversation_id=conversation_id)

        duration = time.monotonic() - start
        self._record(call.name, "success", duration)
        logger.info(
            "Tool execution succeeded",
            extra={
                "tool": call.name,
                "tool_call_id": call.id,
                "duration_s": round(duration, 4),
                "conversation_id": conversation_id,
            },
        )
        return ToolOutcome(
            call=call,
            arguments=arguments,
            success=True,
            payload=result,
            duration_s=duration,
        )

    def _failed(
        self,
        call: ToolCall,
        arguments: dict[str, Any],
        exc: Exception,
        start: float,
        *,
        conversation_id: str | None,
    ) -> ToolOutcome:
        duration = time.monotonic() - start
        error_type = getattr(exc, "error_type", None) or type(exc).__name__
        self._record(call.name, "error", duration)
        logger.warning(
            "Tool execution failed",
            extra={
                "tool": call.name,
                "tool_call_id": call.id,
                "error_type": error_type,
                "error": str(exc),
                "conversation_id": conversation_id,
            },
        )
        return ToolOutcome(
            call=call,
            arguments=arguments,
            success=False,
            payload={"error": str(exc), "error_type": error_type, "tool": call.name},
            duration_s=duration,
            error=str(exc),
            error_type=error_type,
        )

    def _record(self, tool: str, status: str, duration_s: float) -> None:
        if self.metrics is not None:
            self.metrics.record_tool(tool=tool, status=status, duration_s=duration_s)
