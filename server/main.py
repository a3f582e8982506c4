import os
from pathlib import Path
import logging
import click
import time
from typing import Optional, Union

# Starlette and uvicorn imports
from starlette.applications import Starlette
from starlette.routing import Route, Mount

import uvicorn

# MCP imports
from mcp.server import Server
from mcp.server.sse import SseServerTransport
from mcp.types import TextContent, ImageContent, Tool

from mcp_tools.plugin import registry, discover_and_register_tools

from config import env

from server.tool_result_processor import process_tool_result

# Create the server
server = Server("adt-workflow")

# Register the ADT tools shipped in plugins/
discover_and_register_tools()

tool_instances = registry.get_all_instances()
logging.info(
    f"Registered {len(tool_instances)} tools: "
    f"{', '.join(tool.name for tool in tool_instances) or 'None'}"
)


@server.list_tools()
async def list_tools() -> list[Tool]:
    mcp_tools = []
    for tool in registry.get_all_instances():
        mcp_tools.append(
            Tool(name=tool.name, description=tool.description, inputSchema=tool.input_schema)
        )
    return mcp_tools


@server.call_tool()
async def call_tool_handler(
    name: str, arguments: dict
) -> list[Union[TextContent, ImageContent]]:
    logging.info(f"TOOL CALL HANDLER INVOKED: {name}")

    tool = registry.get_tool_instance(name)
    if not tool:
        available_tools = [tool.name for tool in registry.get_all_instances()]
        logging.error(f"Tool '{name}' not found. Available tools: {available_tools}")
        error_msg = (
            f"Error: Tool '{name}' not found. Available tools: "
            f"{', '.join(available_tools) if available_tools else 'None'}"
        )
        return [TextContent(type="text", text=error_msg)]

    start_time = time.time()
    try:
        # Arguments carry passwords and session cookies, so only the keys are logged
        logging.info(f"Executing tool '{name}' with arguments: {sorted(arguments)}")
        result = await tool.execute_tool(arguments)
        duration_ms = (time.time() - start_time) * 1000
        logging.info(f"Tool '{name}' executed in {duration_ms:.2f}ms")
        return process_tool_result(result)
    except Exception as e:
        logging.exception(f"Error executing tool {name}")
        return [TextContent(type="text", text=f"Error executing tool {name}: {str(e)}")]


# Setup SSE transport
sse = SseServerTransport("/messages/")


async def handle_sse(request):
    async with sse.connect_sse(
        request.scope, request.receive, request._send
    ) as streams:
        options = server.create_initialization_options()
        try:
            await server.run(streams[0], streams[1], options, raise_exceptions=False)
        except Exception as e:
            logging.error(f"SSE handler error: {type(e).__name__}: {e}")


routes = [
    Route("/sse", endpoint=handle_sse),
    Mount("/messages/", app=sse.handle_post_message),
]

# Create Starlette app
starlette_app = Starlette(routes=routes)


# Setup function for logging and environment
def setup():
    SCRIPT_DIR = Path(__file__).resolve().parent
    # Ensure the logs directory exists
    log_dir = SCRIPT_DIR / ".logs"
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / "server.log"

    # basicConfig is a no-op once the root logger has handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    file_handler = logging.FileHandler(str(log_file.absolute()))
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    env.load()
    logger.info(f"Initialized environment: Git root={env.get_git_root()}")
    adt_url = env.get_adt_parameter("url")
    if adt_url:
        logger.info(f"ADT backend: {adt_url}")
    else:
        logger.warning("ADT_URL is not set, ADT tools will report ConnectionFailed")


@click.command()
@click.option("--port", default=None, type=int, help="Port to run the server on")
def main(port: Optional[int] = None) -> None:
    setup()

    # Determine port from CLI argument, environment variable, or default
    if port is None:
        port = int(os.environ.get("SERVER_PORT", 8000))

    logging.info(f"Starting server on port {port}")
    uvicorn.run(starlette_app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
