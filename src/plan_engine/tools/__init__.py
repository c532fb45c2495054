"""Tool catalog and remote invocation layer."""

from plan_engine.tools.catalog import (
    DEFAULT_CATALOG_ENTRIES,
    ToolCatalog,
    fetch_remote_tools,
    parse_price,
    tool_from_entry,
)
from plan_engine.tools.gateway import (
    HttpToolTransport,
    InvocationResult,
    RemoteInvoker,
    ToolTransport,
)

__all__ = [
    "DEFAULT_CATALOG_ENTRIES",
    "HttpToolTransport",
    "InvocationResult",
    "RemoteInvoker",
    "ToolCatalog",
    "ToolTransport",
    "fetch_remote_tools",
    "parse_price",
    "tool_from_entry",
]
