"""MCP Session Client.

Owns one connection to the tool server over the Streamable HTTP transport
(JSON-RPC 2.0 over POST). Handles the initialize handshake, tool discovery,
tool invocation and session termination.
"""

import itertools
import json
from typing import Any, Iterator, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.logging import get_logger
from shared.models import NO_SESSION, ServerSessionId, ToolDescriptor
from mcp_client.discovery import parse_tool_list

logger = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION_HEADER = "Mcp-Protocol-Version"


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Handshake or tool discovery with the MCP Server failed."""
    pass


class MCPProtocolError(MCPClientError):
    """The MCP Server answered with a JSON-RPC error or an unreadable message."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class MCPToolError(MCPClientError):
    """A tool invocation failed for a reason other than session termination."""

    def __init__(self, message: str, tool_name: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.status_code = status_code


class MCPSessionTerminatedError(MCPClientError):
    """The MCP Server no longer knows the session (HTTP 404)."""

    def __init__(self, session_id: ServerSessionId) -> None:
        super().__init__(f"Session {session_id} terminated by MCP server")
        self.session_id = session_id


def render_tool_content(result: dict[str, Any]) -> str:
    """
    Flatten a tools/call result into the string handed back to the model.

    Text blocks are joined with newlines; any other block (image, resource,
    ...) is serialized as canonical JSON. Falls back to structuredContent
    when the server sent no content blocks.
    """
    blocks = result.get("content") or []
    parts = []
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
        else:
            parts.append(_canonical_json(block))

    if not parts and result.get("structuredContent") is not None:
        parts.append(_canonical_json(result["structuredContent"]))

    return "\n".join(parts)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _iter_sse_data(body: str) -> Iterator[str]:
    """Yield the data payload of each server-sent event in a body."""
    data_lines: list[str] = []
    for line in body.splitlines():
        if not line.strip():
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
    if data_lines:
        yield "\n".join(data_lines)


class MCPSessionClient:
    """
    Client for one session with an MCP Server.

    Provides methods for:
    - Performing the initialize handshake and reading the session id
    - Discovering available tools
    - Invoking tools by name
    - Terminating the session and releasing the connection

    The underlying HTTP connection is released exactly once, by terminate()
    or close().
    """

    def __init__(
        self,
        server_url: str,
        api_token: str,
        timeout: Optional[float] = None,
        client_name: str = "mcp-client-http",
        client_version: str = "1.0.0",
        protocol_version: str = "2025-03-26",
        connect_attempts: int = 3,
        retry_wait: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize MCP Session Client.

        Args:
            server_url: MCP endpoint URL
            api_token: API token forwarded to the tool server
            timeout: Request timeout in seconds, None for no timeout
            client_name: Name announced in the initialize request
            client_version: Version announced in the initialize request
            protocol_version: MCP protocol version requested at handshake
            connect_attempts: Handshake attempts on transport errors
            retry_wait: Base delay between handshake attempts in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.server_url = server_url
        self.timeout = timeout
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.connect_attempts = connect_attempts
        self.retry_wait = retry_wait

        self.session_id: ServerSessionId = NO_SESSION
        self.tools: list[ToolDescriptor] = []

        self._api_token = api_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)
        self._negotiated_version: Optional[str] = None
        self._connected = False
        self._released = False

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._released

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._released:
            raise MCPClientError("Connection already released")
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        if self.session_id is not NO_SESSION:
            headers[SESSION_HEADER] = self.session_id
        if self._negotiated_version:
            headers[PROTOCOL_VERSION_HEADER] = self._negotiated_version
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = self._get_client()
        response = await client.post(
            self.server_url,
            params={"api_token": self._api_token},
            json=payload,
            headers=self._headers(),
        )
        response.raise_for_status()
        return response

    async def _exchange(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None
    ) -> tuple[dict[str, Any], httpx.Headers]:
        """Send a JSON-RPC request; return its result and the response headers."""
        request_id = next(self._ids)
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        response = await self._post(payload)
        message = self._read_message(response, request_id)

        if "error" in message:
            error = message["error"] or {}
            if not isinstance(error, dict):
                error = {"message": error}
            raise MCPProtocolError(
                f"MCP error {error.get('code')}: {error.get('message')}",
                code=error.get("code"),
            )
        result = message.get("result") or {}
        if not isinstance(result, dict):
            raise MCPProtocolError(f"Result of {method} must be an object, got {type(result).__name__}")
        return result, response.headers

    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Send a JSON-RPC request and return its result."""
        result, _ = await self._exchange(method, params)
        return result

    async def _notify(self, method: str) -> None:
        await self._post({"jsonrpc": "2.0", "method": method})

    def _read_message(self, response: httpx.Response, request_id: int) -> dict[str, Any]:
        """Extract the JSON-RPC response matching request_id from a JSON or SSE body."""
        content_type = response.headers.get("content-type", "")

        if "text/event-stream" in content_type:
            candidates = []
            for data in _iter_sse_data(response.text):
                try:
                    candidates.append(json.loads(data))
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON event", data=data[:200])
        else:
            try:
                body = response.json()
            except ValueError as e:
                raise MCPProtocolError(f"Invalid JSON from MCP server: {e}")
            candidates = body if isinstance(body, list) else [body]

        for message in candidates:
            if isinstance(message, dict) and message.get("id") == request_id:
                return message

        raise MCPProtocolError(f"No response for request {request_id}")

    async def _initialize(self) -> httpx.Headers:
        result, headers = await self._exchange("initialize", {
            "protocolVersion": self.protocol_version,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": self.client_version},
        })
        self._negotiated_version = result.get("protocolVersion") or self.protocol_version
        return headers

    async def connect(self) -> ServerSessionId:
        """
        Open the session: handshake, then tool discovery.

        Returns:
            The session id issued by the server, or NO_SESSION for a
            stateless server

        Raises:
            MCPConnectionError: If the handshake or tool discovery fails
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    # initialize carries no session id; read the one the server issues
                    self.session_id = NO_SESSION
                    response_headers = await self._initialize()

            header = response_headers.get(SESSION_HEADER)
            if header:
                self.session_id = header
            else:
                logger.warning(
                    "MCP server did not provide a session id header",
                    server_url=self.server_url
                )

            await self._notify("notifications/initialized")
            self.tools = await self.list_tools()
        except (httpx.HTTPError, MCPProtocolError) as e:
            logger.error("Failed to connect to MCP server", server_url=self.server_url, error=str(e))
            raise MCPConnectionError(f"Cannot connect to MCP Server: {e}") from e

        self._connected = True
        logger.info(
            "Connected to MCP server",
            session_id=str(self.session_id),
            tools=self.tool_names
        )
        return self.session_id

    async def list_tools(self) -> list[ToolDescriptor]:
        """
        Fetch the complete tool list, following pagination cursors.

        Returns:
            Provider-neutral tool descriptors

        Raises:
            MCPProtocolError: If a page does not carry a tools array
        """
        raw_tools: list[dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else None)
            tools = result.get("tools", [])
            if not isinstance(tools, list):
                raise MCPProtocolError(f"tools/list result has no tools array, got {type(tools).__name__}")
            raw_tools.extend(tools)
            cursor = result.get("nextCursor")
            if not cursor:
                break

        return parse_tool_list(raw_tools)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> str:
        """
        Call a tool by name.

        Args:
            name: Tool name exactly as discovered
            arguments: JSON object of tool arguments

        Returns:
            Tool output flattened to a string

        Raises:
            MCPSessionTerminatedError: If the server answers 404
            MCPToolError: For any other failure
        """
        logger.debug("Invoking tool", tool=name, session_id=str(self.session_id))
        if not self.is_connected:
            raise MCPToolError("Session is not connected", tool_name=name)

        try:
            result = await self._request("tools/call", {"name": name, "arguments": arguments})
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.info("Session terminated by MCP server", session_id=str(self.session_id))
                raise MCPSessionTerminatedError(self.session_id) from e
            raise MCPToolError(
                f"Tool call failed with HTTP {e.response.status_code}",
                tool_name=name,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise MCPToolError(f"Tool call failed: {e}", tool_name=name) from e
        except MCPProtocolError as e:
            raise MCPToolError(str(e), tool_name=name) from e

        if result.get("isError"):
            logger.warning("Tool reported an error", tool=name)

        return render_tool_content(result)

    async def terminate(self) -> None:
        """
        End the session on the server, then release the connection.

        Never raises: a 405 means the server does not allow client-initiated
        termination, any other failure is logged.
        """
        if self._released:
            return

        if self.is_connected and self.session_id is not NO_SESSION:
            session_id = self.session_id
            try:
                client = self._get_client()
                response = await client.delete(
                    self.server_url,
                    headers={
                        SESSION_HEADER: session_id,
                        "Authorization": f"Bearer {self._api_token}",
                    },
                )
                if response.status_code == 405:
                    logger.info(
                        "MCP server does not allow client-initiated session termination",
                        session_id=session_id
                    )
                elif response.is_success:
                    logger.info("Session terminated", session_id=session_id)
                else:
                    logger.warning(
                        "Failed to terminate session",
                        session_id=session_id,
                        status_code=response.status_code,
                        reason=response.reason_phrase
                    )
            except httpx.HTTPError as e:
                logger.error("Error terminating session", session_id=session_id, error=str(e))

        await self.close()

    async def close(self) -> None:
        """Release the HTTP connection without contacting the server."""
        if self._released:
            return
        self._released = True
        if self._client is not None:
            await self._client.aclose()
            self._client = None
