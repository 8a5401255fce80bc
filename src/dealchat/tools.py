"""Tool contracts: pydantic parameter schemas and a fail-closed registry.

Handlers are supplied by the host application (they own data access); this
module owns argument validation, schema export and result bounding.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from dealchat.backends.models import ToolDefinition
from dealchat.errors import ToolError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

_LIST_KEYS = ("deals", "coupons")


class SearchDealsArgs(BaseModel):
    """Arguments for ``search_deals``."""

    query: str = Field(description="Search terms, e.g. 'gaming laptop'")
    max_price: float | None = Field(default=None, ge=0, description="Upper price bound in USD")
    min_discount: int | None = Field(
        default=None, ge=0, le=100, description="Minimum discount percentage"
    )
    category: str | None = Field(default=None, description="Product category")
    store: str | None = Field(default=None, description="Merchant name")
    limit: int = Field(default=10, ge=1, le=50)


class GetCouponsArgs(BaseModel):
    """Arguments for ``get_coupons``."""

    store: str | None = Field(default=None, description="Store to fetch coupons for")
    limit: int = Field(default=10, ge=1, le=50)


class GetTrendingDealsArgs(BaseModel):
    """Arguments for ``get_trending_deals``."""

    limit: int = Field(default=5, ge=1, le=50)
    category: str | None = None


class GetDealDetailsArgs(BaseModel):
    """Arguments for ``get_deal_details``."""

    deal_id: int | str = Field(description="Deal identifier")


class GetStoreInfoArgs(BaseModel):
    """Arguments for ``get_store_info``."""

    store: str = Field(description="Store or company name")


@dataclass(frozen=True)
class ToolSpec:
    """A named tool with a pydantic parameter model."""

    name: str
    description: str
    parameters: type[BaseModel]

    def definition(self) -> ToolDefinition:
        """Backend-neutral declaration carrying the JSON schema."""
        schema = self.parameters.model_json_schema()
        schema.pop("title", None)
        return ToolDefinition(
            name=self.name, description=self.description, parameters=schema
        )


SEARCH_DEALS = ToolSpec(
    "search_deals",
    "Search active deals by keywords, price ceiling, discount, category or store.",
    SearchDealsArgs,
)
GET_COUPONS = ToolSpec(
    "get_coupons", "List active coupon codes, optionally for one store.", GetCouponsArgs
)
GET_TRENDING_DEALS = ToolSpec(
    "get_trending_deals", "List the currently most popular deals.", GetTrendingDealsArgs
)
GET_DEAL_DETAILS = ToolSpec(
    "get_deal_details", "Fetch full details of one deal.", GetDealDetailsArgs
)
GET_STORE_INFO = ToolSpec(
    "get_store_info", "Fetch store information and its deal activity.", GetStoreInfoArgs
)

BUILTIN_TOOLS: tuple[ToolSpec, ...] = (
    SEARCH_DEALS,
    GET_COUPONS,
    GET_TRENDING_DEALS,
    GET_DEAL_DETAILS,
    GET_STORE_INFO,
)


@runtime_checkable
class ToolExecutor(Protocol):
    """Named functions returning structured domain data."""

    def definitions(self) -> tuple[ToolDefinition, ...]:
        """Declarations to attach to tool-capable completions."""
        ...

    async def execute(
        self, name: str, arguments: str | Mapping[str, Any] | None
    ) -> dict[str, Any]:
        """Run tool *name*; raises :class:`ToolError` for unknown names."""
        ...


class ToolRegistry:
    """Fail-closed :class:`ToolExecutor` backed by pydantic validation."""

    def __init__(self, *, max_results: int = 10) -> None:
        self.max_results = max_results
        self._tools: dict[str, tuple[ToolSpec, Callable[[Any], Awaitable[dict[str, Any]]]]] = {}

    def register(
        self,
        spec: ToolSpec,
        handler: Callable[[Any], Awaitable[dict[str, Any]]],
    ) -> None:
        """Register *handler* for *spec*; the handler receives the validated model."""
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = (spec, handler)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def definitions(self) -> tuple[ToolDefinition, ...]:
        """Declarations for every registered tool, in registration order."""
        return tuple(spec.definition() for spec, _ in self._tools.values())

    async def execute(
        self, name: str, arguments: str | Mapping[str, Any] | None
    ) -> dict[str, Any]:
        """Validate *arguments* and run the tool."""
        entry = self._tools.get(name)
        if entry is None:
            raise ToolError(
                f"Unknown tool: {name}",
                tool_name=name,
                hint=f"Registered tools: {', '.join(self._tools) or 'none'}",
            )
        spec, handler = entry
        logger.debug("Executing tool %s", name)

        try:
            if isinstance(arguments, str):
                args = spec.parameters.model_validate_json(arguments or "{}")
            else:
                args = spec.parameters.model_validate(dict(arguments or {}))
        except ValidationError as e:
            raise ToolError(
                f"Invalid arguments for {name}: {e.error_count()} validation error(s)",
                tool_name=name,
                hint=str(e),
            ) from e

        try:
            result = await handler(args)
        except asyncio.CancelledError:
            raise
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"Tool {name} failed: {e}", tool_name=name) from e

        if not isinstance(result, dict):
            raise ToolError(
                f"Tool {name} returned {type(result).__name__}, expected dict",
                tool_name=name,
            )
        return self._bound(result)

    def _bound(self, result: dict[str, Any]) -> dict[str, Any]:
        out = dict(result)
        out.setdefault("success", True)
        for key in _LIST_KEYS:
            items = out.get(key)
            if isinstance(items, list) and len(items) > self.max_results:
                out[key] = items[: self.max_results]
        return out


def deal_tool_registry(
    handlers: Mapping[str, Callable[[Any], Awaitable[dict[str, Any]]]],
    *,
    max_results: int = 10,
) -> ToolRegistry:
    """Registry of the built-in deal tools for which a handler is supplied."""
    registry = ToolRegistry(max_results=max_results)
    known = {spec.name: spec for spec in BUILTIN_TOOLS}
    for name, handler in handlers.items():
        spec = known.get(name)
        if spec is None:
            raise ToolError(f"No built-in schema for tool {name!r}", tool_name=name)
        registry.register(spec, handler)
    return registry
