"""FHIR MCP server.

This package exposes a FHIR healthcare-records API to Model Context
Protocol clients: tools for finding open appointment slots, booking
appointments, and searching, reading and updating FHIR resources.
"""
