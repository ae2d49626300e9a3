"""Configuration for the FHIR MCP server.

Loads settings from environment variables (via a .env file or the system
environment). Uses empty defaults so the module can be imported even when
env vars are not set, e.g. when the test suite imports it.

At *startup* (when the MCP server begins serving), a missing base URL or
access token aborts the server with a clear error instead of failing on
the first tool call.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if present; CI and containers set real env vars instead
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path)

# --- FHIR server connection ---
# Base URL of the FHIR REST API, e.g. "https://hapi.fhir.org/baseR4".
# Resource paths like "/Patient/123" are appended to it.
FHIR_BASE_URL: str = os.getenv("FHIR_BASE_URL", "")

# Bearer token sent with every request. Obtaining and refreshing it is the
# job of whatever launches the server.
FHIR_ACCESS_TOKEN: str = os.getenv("FHIR_ACCESS_TOKEN", "")

# Per-request timeout for calls to the FHIR server, in seconds.
FHIR_TIMEOUT_SECONDS: float = float(os.getenv("FHIR_TIMEOUT_SECONDS", "30"))

# --- Logging ---
# Logs go to stderr; stdout carries the MCP stdio stream.
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
