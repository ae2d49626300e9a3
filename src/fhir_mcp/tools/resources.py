"""Generic FHIR resource tools — search, read and update any resource type.

FHIR endpoints used:
- GET /{resourceType}       — Search resources
- GET /{resourceType}/{id}  — Read a single resource
- PUT /{resourceType}/{id}  — Update a resource

Resource types the server's CapabilityStatement doesn't declare are
rejected before any request is sent.
"""

from __future__ import annotations

import json
from typing import Any

from mcp.server.fastmcp.exceptions import ToolError

from fhir_mcp.fhir_client import (
    FHIRAPIError,
    FHIRClient,
    InvalidResourceUri,
    get_client,
    parse_fhir_uri,
)


def _require_supported(client: FHIRClient, resource_type: str, action: str) -> None:
    if not client.capability_statement.supports(resource_type):
        raise ToolError(
            f"Failed to {action}: resource type {resource_type!r} "
            "is not supported by this FHIR server"
        )


async def search_fhir(resource_type: str, search_params: dict[str, Any] | None = None) -> str:
    """Search FHIR resources.

    Args:
        resource_type: Type of FHIR resource to search (e.g., Patient).
        search_params: FHIR search parameters (e.g., {"family": "Dixon"}).

    Returns:
        The matching search Bundle as JSON.
    """
    client = await get_client()
    _require_supported(client, resource_type, "search FHIR resources")

    try:
        data = await client.get(f"/{resource_type}", params=search_params or {})
    except FHIRAPIError as e:
        raise ToolError(f"Failed to search FHIR resources: {e.detail}") from e

    return json.dumps(data, indent=2)


async def read_resource(resource_type: str, resource_id: str) -> str:
    """Fetch one FHIR resource and return it as JSON text.

    Shared by the read_fhir tool and the fhir:// resource template.

    Raises:
        FHIRAPIError: If the resource can't be fetched.
    """
    client = await get_client()
    data = await client.get(f"/{resource_type}/{resource_id}")
    return json.dumps(data, indent=2)


async def read_fhir(uri: str) -> str:
    """Read an individual FHIR resource.

    Args:
        uri: URI of the FHIR resource to read (e.g., fhir://Patient/123).

    Returns:
        The FHIR resource as JSON.
    """
    try:
        resource_type, resource_id = parse_fhir_uri(uri)
    except InvalidResourceUri as e:
        raise ToolError(f"Failed to fetch FHIR resource: {e}") from e

    _require_supported(await get_client(), resource_type, "fetch FHIR resource")

    try:
        return await read_resource(resource_type, resource_id)
    except FHIRAPIError as e:
        raise ToolError(f"Failed to fetch FHIR resource: {e.detail}") from e


async def update_fhir(resource_type: str, id: str, resource: dict[str, Any]) -> str:  # noqa: A002
    """Update a FHIR resource.

    Args:
        resource_type: Type of FHIR resource to update.
        id: ID of the FHIR resource to update.
        resource: Updated FHIR resource data.

    Returns:
        The updated FHIR resource as JSON.
    """
    if not resource:
        raise ToolError("Resource data is required for update")

    client = await get_client()
    _require_supported(client, resource_type, "update FHIR resource")

    try:
        data = await client.put(f"/{resource_type}/{id}", json_data=resource)
    except FHIRAPIError as e:
        raise ToolError(f"Failed to update FHIR resource: {e.detail}") from e

    return json.dumps(data, indent=2)
