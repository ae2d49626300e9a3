"""FHIR tools exposed over MCP.

Each module in this package contains "tools" — async Python functions
that an MCP client can call. FastMCP reads each tool's docstring and
signature to describe it to the client.

Tools are organized by domain:
- scheduling.py: Find available slots, schedule appointments
- resources.py:  Search, read and update any FHIR resource
"""
