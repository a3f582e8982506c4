"""Tool result processing utilities.

This module converts tool execution results into the MCP content types
(TextContent, ImageContent) returned by the server.
"""

import json
from typing import Any, List, Union
from mcp.types import TextContent, ImageContent


def process_tool_result(result: Any) -> List[Union[TextContent, ImageContent]]:
    """Process a tool execution result into MCP content types.

    Args:
        result: The result from a tool execution. Can be:
            - List of ImageContent/TextContent objects (returned as-is)
            - Single ImageContent/TextContent object (wrapped in list)
            - Dictionary (formatted and wrapped in TextContent)
            - Any other type (converted to string and wrapped in TextContent)

    Returns:
        List of TextContent and/or ImageContent objects
    """
    if isinstance(result, list):
        if all(isinstance(item, (ImageContent, TextContent)) for item in result):
            return result
        return [TextContent(type="text", text=str(result))]
    elif isinstance(result, (ImageContent, TextContent)):
        return [result]
    elif isinstance(result, dict):
        return [TextContent(type="text", text=format_result_as_text(result))]
    else:
        return [TextContent(type="text", text=str(result))]


def format_result_as_text(result: dict) -> str:
    """Format a result dictionary as text.

    Failed results start with an ``Error:`` line so clients can spot them; the
    remaining fields (error kind, completed steps, session state) follow as JSON
    so a caller can continue the session.
    """
    body = json.dumps(result, indent=2, sort_keys=True, default=str)
    if not result.get("success", True):
        return f"Error: {result.get('error', 'Unknown error')}\n{body}"
    return body
