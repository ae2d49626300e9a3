"""MCP server — the entry point that exposes the FHIR tools.

This module wires together:
- The tool functions from fhir_mcp.tools (one per MCP tool)
- A resource template so clients can read fhir://{resourceType}/{id}
- A startup lifespan that connects to the FHIR server

FastMCP (from the official `mcp` SDK) handles the protocol: it builds
each tool's input schema from the function signature, dispatches
list/read/call requests, and speaks JSON-RPC over stdio.

Run locally with:
    FHIR_BASE_URL=... FHIR_ACCESS_TOKEN=... fhir-mcp
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ResourceError

from fhir_mcp.config import LOG_LEVEL
from fhir_mcp.fhir_client import FHIRAPIError, close_client, connect
from fhir_mcp.tools.resources import read_fhir, read_resource, search_fhir, update_fhir
from fhir_mcp.tools.scheduling import find_available_slots, schedule_appointment

logger = logging.getLogger(__name__)

TOOL_FUNCTIONS: list[Callable[..., Coroutine[Any, Any, str]]] = [
    find_available_slots,
    schedule_appointment,
    update_fhir,
    search_fhir,
    read_fhir,
]


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Connect to the FHIR server before serving; disconnect afterwards.

    connect() loads the CapabilityStatement, so an unreachable server
    or a missing token stops startup here.
    """
    client = await connect()
    logger.info(
        "Serving %d tools for %s",
        len(TOOL_FUNCTIONS),
        client.base_url,
    )
    try:
        yield
    finally:
        await close_client()


def build_server() -> FastMCP:
    """Create the FastMCP app with all tools and resources registered."""
    mcp = FastMCP("fhir-mcp", lifespan=lifespan)

    # The tool functions stay plain async functions so tests can call
    # them directly; FastMCP reads the name and docstring from each one.
    for fn in TOOL_FUNCTIONS:
        mcp.add_tool(fn, name=fn.__name__, description=fn.__doc__ or fn.__name__)

    @mcp.resource(
        "fhir://{resource_type}/{resource_id}",
        name="FHIR resource",
        description="A single FHIR resource, read from the FHIR server.",
        mime_type="application/fhir+json",
    )
    async def fhir_resource(resource_type: str, resource_id: str) -> str:
        try:
            return await read_resource(resource_type, resource_id)
        except FHIRAPIError as e:
            raise ResourceError(f"Failed to fetch FHIR resource: {e.detail}") from e

    return mcp


mcp = build_server()


def main() -> None:
    """Console entry point: log to stderr and serve over stdio."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
