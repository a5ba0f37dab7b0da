"""MCP server wiring for bitbucket-server-mcp.

Exposes the tool catalog, routes tool calls through the dispatcher and maps
error envelopes onto MCP errors.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any
from urllib.parse import urlparse

try:
    from mcp.server import Server
    from mcp.shared.exceptions import McpError
    from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, ErrorData, Resource, TextContent, Tool
except ImportError as exc:  # pragma: no cover
    raise ImportError("MCP library not installed. Install with: pip install mcp") from exc

from . import __version__
from .config import ServerConfig, load_config_from_env
from .errors import SafeError
from .tools import TOOL_METADATA, Runtime, dispatch_tool, load_runtime_from_env

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)

SERVER_NAME = "bitbucket-server-mcp"
STATUS_URI = "bitbucket-server-mcp://server-status"
CAPABILITIES_URI = "bitbucket-server-mcp://capabilities"

_MCP_ERROR_CODES: dict[str, int] = {
    "InvalidParams": INVALID_PARAMS,
    "TooLarge": INVALID_PARAMS,
    "MethodNotFound": METHOD_NOT_FOUND,
}


def status_payload(config: ServerConfig) -> dict[str, Any]:
    """Non-secret view of the resolved configuration."""
    return {
        "server": SERVER_NAME,
        "version": __version__,
        "bitbucket_host": urlparse(config.base_url).netloc,
        "auth_mode": config.auth_mode,
        "default_project": config.default_project,
        "default_reviewers_count": len(config.default_reviewers),
        "tools_available": len(TOOL_METADATA),
        "limits": {
            "timeout_s": config.limits.timeout_s,
            "archive_max_bytes": config.limits.archive_max_bytes,
        },
        "audit": {"file_sink_enabled": config.audit_log_path is not None},
    }


def build_tools() -> list[Tool]:
    """Build MCP Tool descriptors from the catalog, preserving its order."""
    return [
        Tool(name=name, description=meta["description"], inputSchema=meta["inputSchema"])
        for name, meta in TOOL_METADATA.items()
    ]


def build_resources() -> list[Resource]:
    return [
        Resource(
            uri=STATUS_URI,
            name="Server Status",
            description="Non-secret server configuration and limits",
        ),
        Resource(
            uri=CAPABILITIES_URI,
            name="Capabilities",
            description="Available Bitbucket operations",
        ),
    ]


def error_to_mcp(error: dict[str, Any]) -> McpError:
    """Convert an error envelope's ``error`` member into an McpError."""
    return McpError(
        ErrorData(
            code=_MCP_ERROR_CODES.get(error["code"], INTERNAL_ERROR),
            message=error["message"],
            data=error.get("details"),
        )
    )


class BitbucketMCPServer:
    """Binds one runtime to an MCP ``Server`` instance."""

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime
        self.server = Server(SERVER_NAME)
        self.server.list_tools()(self.list_tools)
        self.server.call_tool()(self.call_tool)
        self.server.list_resources()(self.list_resources)
        self.server.read_resource()(self.read_resource)

    async def list_tools(self) -> list[Tool]:
        """List all available tools."""
        tools = build_tools()
        logger.info("Listed %s tools", len(tools))
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """Execute a tool and return MCP-compliant TextContent."""
        if not isinstance(arguments, dict):
            arguments = {}

        result = await dispatch_tool(self.runtime, name, arguments)
        error = result.get("error")
        if error is not None:
            raise error_to_mcp(error)
        return [TextContent(type="text", text=item["text"]) for item in result["content"]]

    async def list_resources(self) -> list[Resource]:
        """List available resources."""
        return build_resources()

    async def read_resource(self, uri: Any) -> str:
        """Read resource content."""
        uri_s = uri if isinstance(uri, str) else str(uri)
        config = self.runtime.config

        if uri_s == CAPABILITIES_URI:
            caps = {
                "server": SERVER_NAME,
                "version": __version__,
                "operations": list(TOOL_METADATA.keys()),
                "api": "/rest/api/latest",
            }
            return json.dumps(caps, indent=2)

        if uri_s == STATUS_URI:
            return json.dumps(status_payload(config), indent=2)

        return json.dumps({"code": "NotFound", "message": "Unknown resource"}, indent=2)


async def run_server() -> None:
    """Run the server over stdio."""
    # Fail fast on invalid/missing host configuration.
    try:
        runtime = load_runtime_from_env()
    except SafeError as exc:
        logger.error("Startup configuration error: %s", exc.message)
        raise

    from mcp.server.stdio import stdio_server

    app = BitbucketMCPServer(runtime)
    logger.info("Bitbucket MCP server running on stdio (%s)", urlparse(runtime.config.base_url).netloc)
    async with stdio_server() as (read_stream, write_stream):
        await app.server.run(read_stream, write_stream, app.server.create_initialization_options())


async def test_server() -> None:
    """Lightweight self-test to ensure tool/resource listing works."""
    tools = build_tools()
    resources = build_resources()
    print(f"{SERVER_NAME} {__version__}: {len(tools)} tools, {len(resources)} resources", file=sys.stderr)


def check_config() -> int:
    """Resolve configuration from the environment and print its non-secret view.

    Returns a process exit code.
    """
    try:
        config = load_config_from_env()
    except SafeError as exc:
        print(f"Configuration error: {exc.message}", file=sys.stderr)
        return 1
    print(json.dumps(status_payload(config), indent=2))
    return 0
