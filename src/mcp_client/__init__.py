"""MCP Client - session-scoped access to a tool server.

One MCPSessionClient owns one tool-server session: handshake,
tool discovery, invocation and termination.
"""

from mcp_client.client import (
    MCPClientError,
    MCPConnectionError,
    MCPSessionClient,
    MCPSessionTerminatedError,
    MCPToolError,
)
from mcp_client.discovery import parse_tool_list, unwrap_tool

__all__ = [
    "MCPClientError",
    "MCPConnectionError",
    "MCPSessionClient",
    "MCPSessionTerminatedError",
    "MCPToolError",
    "parse_tool_list",
    "unwrap_tool",
]
