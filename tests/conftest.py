"""Shared fixtures: an in-memory MCP tool server and helpers."""

import itertools
import json
from typing import Any, Optional

import httpx
import pytest

from shared.models import ProviderKind

SERVER_URL = "http://tools.test/mcp"

SEARCH_TOOL = {
    "name": "search",
    "description": "Search the catalogue",
    "inputSchema": {
        "type": "object",
        "properties": {"q": {"type": "string"}},
        "required": ["q"],
    },
}


class FakeToolServer:
    """
    Minimal Streamable HTTP MCP server backed by httpx.MockTransport.

    Issues session ids sess-1, sess-2, ... unless stateless, records every
    request, and lets tests force HTTP statuses on tools/call and DELETE
    or replace the tools/list result.
    """

    def __init__(
        self,
        tools: Optional[list[dict[str, Any]]] = None,
        stateless: bool = False,
        sse: bool = False
    ) -> None:
        self.tools = tools if tools is not None else [SEARCH_TOOL]
        self.stateless = stateless
        self.sse = sse
        self.page_size: Optional[int] = None
        self.list_result: Any = None

        self.tool_results: dict[str, dict[str, Any]] = {}
        self.call_status: Optional[int] = None
        self.initialize_status: Optional[int] = None
        self.delete_status = 200

        self.requests: list[httpx.Request] = []
        self.calls: list[dict[str, Any]] = []
        self.deletes: list[httpx.Request] = []
        self._session_ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, api_token: str = "token-123", **kwargs: Any):
        from mcp_client.client import MCPSessionClient

        return MCPSessionClient(
            server_url=SERVER_URL,
            api_token=api_token,
            connect_attempts=1,
            transport=self.transport,
            **kwargs,
        )

    def _reply(self, request_id: int, result: Any, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        message = {"jsonrpc": "2.0", "id": request_id, "result": result}
        if self.sse:
            body = f"event: message\ndata: {json.dumps(message)}\n\n"
            return httpx.Response(
                200,
                text=body,
                headers={"content-type": "text/event-stream", **(headers or {})},
            )
        return httpx.Response(200, json=message, headers=headers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.method == "DELETE":
            self.deletes.append(request)
            return httpx.Response(self.delete_status)

        body = json.loads(request.content)
        if "id" not in body:
            return httpx.Response(202)

        method = body["method"]
        if method == "initialize":
            if self.initialize_status:
                return httpx.Response(self.initialize_status)
            headers = {} if self.stateless else {"Mcp-Session-Id": f"sess-{next(self._session_ids)}"}
            return self._reply(body["id"], {
                "protocolVersion": body["params"]["protocolVersion"],
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0.0.1"},
            }, headers)

        if method == "tools/list":
            if self.list_result is not None:
                return self._reply(body["id"], self.list_result)
            if self.page_size is None:
                return self._reply(body["id"], {"tools": self.tools})
            start = int((body.get("params") or {}).get("cursor") or 0)
            end = start + self.page_size
            result: dict[str, Any] = {"tools": self.tools[start:end]}
            if end < len(self.tools):
                result["nextCursor"] = str(end)
            return self._reply(body["id"], result)

        if method == "tools/call":
            self.calls.append(body["params"])
            if self.call_status:
                return httpx.Response(self.call_status)
            name = body["params"]["name"]
            result = self.tool_results.get(name, {"content": [{"type": "text", "text": "ok"}]})
            return self._reply(body["id"], result)

        return httpx.Response(200, json={
            "jsonrpc": "2.0",
            "id": body["id"],
            "error": {"code": -32601, "message": "Method not found"},
        })


@pytest.fixture
def tool_server() -> FakeToolServer:
    return FakeToolServer()


def make_registry(server: FakeToolServer, adapter=None):
    """Registry whose sessions talk to the fake server and share one mock adapter."""
    from orchestrator.llm import MockProviderAdapter
    from orchestrator.sessions import SessionRegistry

    adapter = adapter or MockProviderAdapter()

    def adapter_factory(provider: ProviderKind):
        return adapter

    return SessionRegistry(
        adapter_factory=adapter_factory,
        client_factory=lambda token: server.client(token),
    )
