"""MCP server exposing the ADT workflow tools over SSE."""
