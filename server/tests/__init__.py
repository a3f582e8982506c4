"""Tests for the ADT workflow MCP server."""
