"""Assemble the agent's flat tool namespace from an account's connections.

Usage::

    async with build_agent_tools(store.list_active(account_id)) as tools:
        result = await run_business_agent(..., tools=tools)
"""

import logging
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from jenn.connectors.odoo import OdooClient
from jenn.connectors.odoo_tools import build_odoo_tools
from jenn.connectors.prestashop import PrestashopClient
from jenn.connectors.prestashop_tools import build_prestashop_tools
from jenn.connectors.quickbooks import QuickBooksClient
from jenn.connectors.quickbooks_tools import build_quickbooks_tools
from jenn.llm.tools import Tool
from jenn.schemas.connectors import (
    Connection,
    OdooConnection,
    PrestashopConnection,
    QuickBooksConnection,
)

logger = logging.getLogger(__name__)


def merge_tool_sets(tool_sets: dict[str, list[Tool]]) -> list[Tool]:
    """Flatten per-connector tools, prefixing a name with its connector only on conflict."""
    counts = Counter(t.name for tools in tool_sets.values() for t in tools)
    merged: list[Tool] = []
    for connector, tools in tool_sets.items():
        for tool in tools:
            if counts[tool.name] > 1:
                merged.append(tool.renamed(f"{connector}_{tool.name}"))
            else:
                merged.append(tool)
    return merged


@asynccontextmanager
async def build_agent_tools(connections: list[Connection]) -> AsyncIterator[list[Tool]]:
    """Open a client per connection and yield the merged tool list.

    Clients are closed on exit.
    """
    async with AsyncExitStack() as stack:
        odoo: OdooClient | None = None
        tool_sets: dict[str, list[Tool]] = {}

        for conn in connections:
            if isinstance(conn, OdooConnection):
                odoo = await stack.enter_async_context(OdooClient(conn))
                tool_sets[conn.kind] = build_odoo_tools(odoo)

        for conn in connections:
            match conn:
                case PrestashopConnection():
                    shop = await stack.enter_async_context(PrestashopClient(conn))
                    tool_sets[conn.kind] = build_prestashop_tools(shop, odoo)
                case QuickBooksConnection():
                    qb = await stack.enter_async_context(QuickBooksClient(conn))
                    tool_sets[conn.kind] = build_quickbooks_tools(qb)

        tools = merge_tool_sets(tool_sets)
        logger.debug("Agent tools: %s", [t.name for t in tools])
        yield tools
