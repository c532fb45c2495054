"""Read-only tool catalog keyed by (service_id, tool_name)."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Any
from urllib import error, request

from pydantic import ValidationError

from plan_engine.errors import CatalogError, UnknownToolError
from plan_engine.models import Tool

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*([A-Za-z][A-Za-z0-9]*)?\s*$")

DEFAULT_CATALOG_ENTRIES: tuple[dict[str, Any], ...] = (
    {
        "mcp": "chainintel",
        "tool": "analyze-wallet",
        "price": "0.01 ETH",
        "description": "Deep cross-chain wallet analysis with AI insights (Base + Solana)",
        "inputSchema": {"address": "string", "chain": "string"},
    },
    {
        "mcp": "chainintel",
        "tool": "detect-whales",
        "price": "0.005 ETH",
        "description": "Identify whale wallets and track their movements",
        "inputSchema": {"chain": "string", "minPortfolioValue": "number"},
    },
    {
        "mcp": "chainintel",
        "tool": "smart-money-tracker",
        "price": "0.02 ETH",
        "description": "Track wallets with proven alpha",
        "inputSchema": {"address": "string", "chain": "string", "lookbackDays": "integer"},
    },
    {
        "mcp": "chainintel",
        "tool": "risk-score",
        "price": "0.005 ETH",
        "description": "Calculate comprehensive risk score for wallet",
        "inputSchema": {"address": "string", "chain": "string"},
    },
    {
        "mcp": "chainintel",
        "tool": "trading-patterns",
        "price": "0.01 ETH",
        "description": "Analyze trading patterns and identify strategies",
        "inputSchema": {"address": "string", "chain": "string", "minTrades": "integer"},
    },
)


class ToolCatalog:
    """Immutable lookup table of priced tools.

    Refreshing never mutates an existing catalog: `refreshed()` builds a new
    instance, so components holding the old one keep a consistent view.
    """

    def __init__(self, tools: Iterable[Tool]) -> None:
        index: dict[tuple[str, str], Tool] = {}
        for tool in tools:
            if tool.key in index:
                raise CatalogError(f"Duplicate catalog entry: {tool.qualified_name}")
            index[tool.key] = tool
        self._tools: Mapping[tuple[str, str], Tool] = MappingProxyType(index)

    def lookup(self, service_id: str | None, tool_name: str | None) -> Tool | None:
        if not service_id or not tool_name:
            return None
        return self._tools.get((service_id, tool_name))

    def require(self, service_id: str | None, tool_name: str | None) -> Tool:
        tool = self.lookup(service_id, tool_name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool {service_id}::{tool_name}")
        return tool

    def find_by_name(self, tool_name: str) -> list[Tool]:
        return [tool for key, tool in self._tools.items() if key[1] == tool_name]

    def all(self) -> tuple[Tool, ...]:
        return tuple(self._tools.values())

    def pricing(self) -> list[dict[str, Any]]:
        return [
            {
                "mcp": tool.service_id,
                "tool": tool.tool_name,
                "price": str(tool.price),
                "currency": tool.currency,
                "description": tool.description,
            }
            for tool in self._tools.values()
        ]

    def refreshed(
        self,
        entries: Iterable[Mapping[str, Any]],
        *,
        service_endpoints: Mapping[str, str] | None = None,
    ) -> ToolCatalog:
        merged = dict(self._tools)
        for entry in entries:
            tool = tool_from_entry(entry, service_endpoints=service_endpoints)
            merged[tool.key] = tool
        logger.info("Catalog refreshed tools_before=%d tools_after=%d", len(self), len(merged))
        return ToolCatalog(merged.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __contains__(self, key: object) -> bool:
        return key in self._tools

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[Mapping[str, Any]],
        *,
        service_endpoints: Mapping[str, str] | None = None,
    ) -> ToolCatalog:
        return cls(tool_from_entry(entry, service_endpoints=service_endpoints) for entry in entries)

    @classmethod
    def from_json_file(
        cls,
        path: str | Path,
        *,
        service_endpoints: Mapping[str, str] | None = None,
    ) -> ToolCatalog:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogError(f"Could not read tool catalog from {path}: {exc}") from exc
        entries = raw.get("tools") if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise CatalogError(f"Tool catalog {path} must be a list or an object with 'tools'")
        return cls.from_entries(entries, service_endpoints=service_endpoints)

    @classmethod
    def default(cls, *, service_endpoints: Mapping[str, str] | None = None) -> ToolCatalog:
        return cls.from_entries(DEFAULT_CATALOG_ENTRIES, service_endpoints=service_endpoints)


def parse_price(raw: Any) -> tuple[Decimal, str | None]:
    """Parse `0.01`, `"0.01"` or `"0.01 ETH"` into an amount and optional unit."""
    if isinstance(raw, bool):
        raise CatalogError(f"Invalid price: {raw!r}")
    if isinstance(raw, Decimal):
        return raw, None
    if isinstance(raw, (int, float)):
        return Decimal(str(raw)), None
    if isinstance(raw, str):
        match = PRICE_PATTERN.match(raw)
        if match:
            try:
                return Decimal(match.group(1)), match.group(2)
            except InvalidOperation as exc:
                raise CatalogError(f"Invalid price: {raw!r}") from exc
    raise CatalogError(f"Invalid price: {raw!r}")


def tool_from_entry(
    entry: Mapping[str, Any],
    *,
    service_endpoints: Mapping[str, str] | None = None,
) -> Tool:
    service_id = _first_text(entry, "mcp", "serviceId", "service_id")
    tool_name = _first_text(entry, "tool", "toolName", "tool_name", "name")
    if not service_id or not tool_name:
        raise CatalogError(f"Catalog entry needs a service and a tool name: {dict(entry)!r}")

    price, currency = parse_price(entry.get("price", 0))
    explicit_currency = entry.get("currency")
    endpoint = entry.get("endpoint") or (service_endpoints or {}).get(service_id)
    input_schema = entry.get("inputSchema", entry.get("input_schema")) or {}

    try:
        return Tool(
            service_id=service_id,
            tool_name=tool_name,
            price=price,
            currency=explicit_currency if isinstance(explicit_currency, str) else currency,
            description=str(entry.get("description") or ""),
            input_schema=input_schema if isinstance(input_schema, dict) else {},
            endpoint=endpoint,
        )
    except ValidationError as exc:
        raise CatalogError(f"Invalid catalog entry {service_id}::{tool_name}: {exc}") from exc


def fetch_remote_tools(
    service_id: str,
    base_url: str,
    *,
    price_map: Mapping[str, Any] | None = None,
    default_price: Any = "0",
    timeout_s: float = 10.0,
) -> list[dict[str, Any]]:
    """List a tool service's tools over JSON-RPC `tools/list` as catalog entries.

    Services do not publish prices; callers supply them through `price_map`.
    """
    url = f"{base_url.rstrip('/')}/mcp"
    body = {"jsonrpc": "2.0", "method": "tools/list", "id": 1}
    req = request.Request(
        url=url,
        data=json.dumps(body).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        raise CatalogError(f"tools/list failed for {service_id} with status {exc.code}") from exc
    except (error.URLError, TimeoutError) as exc:
        raise CatalogError(f"tools/list failed for {service_id}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"tools/list for {service_id} returned non-JSON response") from exc

    rows = (payload.get("result") or {}).get("tools") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise CatalogError(f"tools/list for {service_id} returned no tool list")

    prices = price_map or {}
    entries: list[dict[str, Any]] = []
    for row in rows:
        if not isinstance(row, dict) or not isinstance(row.get("name"), str):
            continue
        entries.append(
            {
                "mcp": service_id,
                "tool": row["name"],
                "price": prices.get(row["name"], default_price),
                "description": row.get("description") or "",
                "inputSchema": row.get("inputSchema") or {},
                "endpoint": base_url,
            }
        )
    logger.info("Fetched remote tools service=%s count=%d", service_id, len(entries))
    return entries


def _first_text(entry: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
