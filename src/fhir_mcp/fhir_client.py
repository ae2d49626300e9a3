"""HTTP client for a FHIR REST API.

This module provides the FHIRClient class, which handles:
1. Sending the bearer token and FHIR JSON headers with every request
2. Authenticated GET/POST/PUT requests to any FHIR endpoint
3. Loading the server's CapabilityStatement once, at startup

Concept — CapabilityStatement:
    Every FHIR server publishes a CapabilityStatement at GET /metadata.
    It lists which resource types (Patient, Schedule, Appointment, ...)
    the server supports. Fetching it during startup doubles as a
    connectivity check: if the server is unreachable or rejects our
    token, the MCP server refuses to start instead of failing on the
    first tool call.

Usage:
    client = FHIRClient()
    await client.initialize()  # Checks config, loads /metadata
    bundle = await client.get("/Patient", params={"family": "Dixon"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx

from fhir_mcp.config import FHIR_ACCESS_TOKEN, FHIR_BASE_URL, FHIR_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

# Query parameters can be a mapping or a list of pairs. The list form lets
# a parameter repeat, e.g. date=ge2024-01-01&date=le2024-01-31.
QueryParams = dict[str, Any] | list[tuple[str, str]]


class FHIRConfigError(Exception):
    """Raised when the FHIR connection settings are missing."""


class FHIRAPIError(Exception):
    """Raised when a FHIR request fails or returns an error response."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


class InvalidResourceUri(ValueError):
    """Raised when a URI is not of the form fhir://{resourceType}/{id}."""


@dataclass(frozen=True)
class CapabilityStatement:
    """The parts of a FHIR CapabilityStatement this server cares about."""

    fhir_version: str = ""
    resource_types: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CapabilityStatement:
        rest = data.get("rest") or []
        resources = rest[0].get("resource", []) if rest else []
        return cls(
            fhir_version=data.get("fhirVersion", ""),
            resource_types=[r["type"] for r in resources if r.get("type")],
        )

    def supports(self, resource_type: str) -> bool:
        """Whether the server declares resource_type.

        A statement that lists no resources at all restricts nothing.
        """
        return not self.resource_types or resource_type in self.resource_types


def parse_fhir_uri(uri: str) -> tuple[str, str]:
    """Split a fhir://{resourceType}/{id} URI into its two parts.

    Raises:
        InvalidResourceUri: If the scheme is not fhir or a part is missing.
    """
    parsed = urlparse(uri)
    resource_type = parsed.netloc
    resource_id = parsed.path.lstrip("/")
    if parsed.scheme != "fhir" or not resource_type or not resource_id:
        raise InvalidResourceUri(
            f"Expected a URI like fhir://Patient/123, got {uri!r}"
        )
    return resource_type, resource_id


class FHIRClient:
    """Async HTTP client for a FHIR REST API.

    Attributes:
        base_url: The FHIR API base (e.g., "https://hapi.fhir.org/baseR4").
        capability_statement: The server's CapabilityStatement, available
            after initialize().
    """

    def __init__(
        self,
        base_url: str = FHIR_BASE_URL,
        access_token: str = FHIR_ACCESS_TOKEN,
        timeout: float = FHIR_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token

        # Populated exactly once, by initialize()
        self._capability_statement: CapabilityStatement | None = None

        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def capability_statement(self) -> CapabilityStatement:
        if self._capability_statement is None:
            raise RuntimeError("FHIRClient.initialize() has not been called")
        return self._capability_statement

    async def initialize(self) -> None:
        """Check the configuration and load the CapabilityStatement.

        Call this once after creating the client.

        Raises:
            FHIRConfigError: If the base URL or access token is missing.
            FHIRAPIError: If the server can't be reached or rejects /metadata.
        """
        if not self.base_url or not self.access_token:
            raise FHIRConfigError(
                "FHIR_BASE_URL and FHIR_ACCESS_TOKEN environment variables must be set"
            )
        data = await self.get("/metadata")
        self._capability_statement = CapabilityStatement.from_json(data)
        logger.info(
            "Connected to FHIR server %s (FHIR %s, %d resource types)",
            self.base_url,
            self._capability_statement.fhir_version or "unknown",
            len(self._capability_statement.resource_types),
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    # --- API Request Methods ---

    async def get(self, endpoint: str, params: QueryParams | None = None) -> Any:
        """Make an authenticated GET request.

        Args:
            endpoint: Resource path (e.g., "/Patient" or "/Patient/123").
                Appended to base_url automatically.
            params: Optional search parameters.

        Returns:
            The JSON response body (usually a resource or a Bundle).

        Raises:
            FHIRAPIError: If the request fails or returns an error status.
        """
        return await self._request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: dict[str, Any] | None = None) -> Any:
        """Make an authenticated POST request (create a resource).

        Raises:
            FHIRAPIError: If the request fails or returns an error status.
        """
        return await self._request("POST", endpoint, json_data=json_data)

    async def put(self, endpoint: str, json_data: dict[str, Any] | None = None) -> Any:
        """Make an authenticated PUT request (update a resource).

        Raises:
            FHIRAPIError: If the request fails or returns an error status.
        """
        return await self._request("PUT", endpoint, json_data=json_data)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: QueryParams | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Send an authenticated request to the FHIR server.

        Args:
            method: HTTP method ("GET", "POST" or "PUT").
            endpoint: Resource path relative to base_url.
            params: Search parameters.
            json_data: Resource body for POST/PUT.

        Returns:
            The parsed JSON response, or an empty dict for an empty body.

        Raises:
            FHIRAPIError: If the request fails or returns a non-2xx status.
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
        }

        try:
            response = await self._http.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_data,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise FHIRAPIError(
                status_code=0,
                detail=f"Request to {url} failed: {exc}",
            ) from exc

        if response.status_code >= 400:
            logger.warning("%s %s returned HTTP %d", method, url, response.status_code)
            raise FHIRAPIError(
                status_code=response.status_code,
                detail=response.text,
            )

        if not response.content:
            return {}
        return response.json()


# --- Module-level shared client ---
# One client for the whole server process. The server's startup lifespan
# calls connect(); tool functions call get_client().

_client: FHIRClient | None = None


async def connect() -> FHIRClient:
    """Create and initialize the shared FHIRClient.

    Called once, by the server lifespan, before any tool runs.

    Raises:
        FHIRConfigError: If the connection settings are missing.
        FHIRAPIError: If the CapabilityStatement can't be loaded.
        RuntimeError: If the shared client is already connected.
    """
    global _client  # noqa: PLW0603
    if _client is not None:
        raise RuntimeError("FHIR client is already connected")
    client = FHIRClient()
    try:
        await client.initialize()
    except Exception:
        await client.close()
        raise
    _client = client
    return client


async def get_client() -> FHIRClient:
    """Return the shared FHIRClient set up by connect().

    Raises:
        RuntimeError: If connect() has not run, or close_client() has.
    """
    if _client is None:
        raise RuntimeError(
            "FHIR client is not connected; the server lifespan must call connect() first"
        )
    return _client


async def close_client() -> None:
    """Close and forget the shared client."""
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.close()
        _client = None
