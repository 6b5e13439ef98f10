"""Session Registry.

Process-wide store of live sessions. The registry is the only place a
session can be reached from: it creates sessions after a successful tool
server handshake and tears them down on disconnect or server termination.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from shared.config import Settings
from shared.logging import get_logger
from shared.models import ProviderKind, SessionSummary, utcnow
from mcp_client.client import MCPSessionClient
from orchestrator.conversation import ConversationState
from orchestrator.errors import RemovalReason, SessionNotFoundError
from orchestrator.llm import ProviderAdapter, create_provider_adapter
from orchestrator.tool_loop import ToolCallOrchestrator

logger = get_logger(__name__)

AdapterFactory = Callable[[ProviderKind], ProviderAdapter]
ClientFactory = Callable[[str], MCPSessionClient]


@dataclass
class Session:
    """One caller's pairing of a provider adapter with a tool server session."""
    session_id: str
    provider: ProviderKind
    adapter: ProviderAdapter
    mcp_client: MCPSessionClient
    orchestrator: ToolCallOrchestrator
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def conversation(self) -> ConversationState:
        return self.orchestrator.conversation

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.orchestrator.tools]

    def touch(self) -> None:
        self.last_activity = utcnow()

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            created_at=self.created_at,
            last_activity=self.last_activity,
            provider=self.provider,
            conversation_length=len(self.conversation),
            tools=self.tool_names,
        )

    async def release(self) -> None:
        """Close the tool server connection and the provider client."""
        await self.mcp_client.close()
        await self._close_adapter()

    async def terminate(self) -> None:
        """End the tool server session, then release every resource."""
        await self.mcp_client.terminate()
        await self._close_adapter()

    async def _close_adapter(self) -> None:
        try:
            await self.adapter.close()
        except Exception as e:
            logger.warning("Failed to close provider client", session_id=self.session_id, error=str(e))


class SessionRegistry:
    """
    Registry of live sessions keyed by tool server session id.

    Responsibilities:
    - Create sessions (register only after a successful handshake)
    - Look sessions up, refreshing their last-activity time
    - Remove sessions, terminating them on the tool server first
    - Remember recent removals so lookups can say why a session is gone

    There is no background expiry.
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory,
        client_factory: ClientFactory,
        removal_history_size: int = 1000
    ) -> None:
        """
        Initialize the registry.

        Args:
            adapter_factory: Builds a provider adapter for a provider tag
            client_factory: Builds an unconnected MCP client for an API token
            removal_history_size: Number of removed ids to remember
        """
        self._adapter_factory = adapter_factory
        self._client_factory = client_factory
        self._sessions: dict[str, Session] = {}
        self._removed: OrderedDict[str, RemovalReason] = OrderedDict()
        self._removal_history_size = removal_history_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionRegistry":
        """Build a registry whose factories use the application settings."""

        def adapter_factory(provider: ProviderKind) -> ProviderAdapter:
            return create_provider_adapter(provider, settings.providers)

        def client_factory(api_token: str) -> MCPSessionClient:
            return MCPSessionClient(
                server_url=settings.mcp.server_url,
                api_token=api_token,
                timeout=settings.mcp.request_timeout,
                client_name=settings.mcp.client_name,
                client_version=settings.mcp.client_version,
                protocol_version=settings.mcp.protocol_version,
                connect_attempts=settings.mcp.connect_attempts,
            )

        return cls(
            adapter_factory=adapter_factory,
            client_factory=client_factory,
            removal_history_size=settings.gateway.removal_history_size,
        )

    async def create(self, api_token: str, provider: ProviderKind) -> Session:
        """
        Open a tool server session and register it.

        Args:
            api_token: Token passed to the tool server
            provider: Model provider for the session

        Returns:
            The registered session

        Raises:
            MCPConnectionError: If the handshake or tool discovery failed
        """
        adapter = self._adapter_factory(provider)
        client = self._client_factory(api_token)

        try:
            server_session_id = await client.connect()
            orchestrator = ToolCallOrchestrator(adapter, client, tools=client.tools)
        except Exception:
            # nothing is registered, so nothing else would release these
            await client.close()
            await adapter.close()
            raise

        session_id = str(server_session_id)
        session = Session(
            session_id=session_id,
            provider=provider,
            adapter=adapter,
            mcp_client=client,
            orchestrator=orchestrator,
        )

        displaced = self._sessions.get(session_id)
        self._sessions[session_id] = session
        self._removed.pop(session_id, None)

        if displaced is not None:
            # Same id as the new session: release locally, no DELETE
            logger.warning("Session id reused; releasing previous session", session_id=session_id)
            await displaced.release()

        logger.info(
            "Session created",
            session_id=session_id,
            provider=provider.value,
            tools=session.tool_names
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """
        Look up a session and refresh its last-activity time.

        Returns:
            The session, or None if unknown
        """
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def removal_reason(self, session_id: str) -> Optional[RemovalReason]:
        """Why a recently removed session is gone, if remembered."""
        return self._removed.get(session_id)

    async def remove(
        self,
        session_id: str,
        reason: RemovalReason = RemovalReason.DISCONNECTED
    ) -> None:
        """
        Terminate a session on the tool server and drop it.

        The entry is deleted whatever the termination request returns.

        Raises:
            SessionNotFoundError: If the id is not registered
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, self.removal_reason(session_id))

        try:
            await session.terminate()
        finally:
            if self._sessions.get(session_id) is session:
                del self._sessions[session_id]
                self._remember_removal(session_id, reason)

        logger.info("Session removed", session_id=session_id, reason=reason.value)

    def _remember_removal(self, session_id: str, reason: RemovalReason) -> None:
        if self._removal_history_size <= 0:
            return
        self._removed[session_id] = reason
        self._removed.move_to_end(session_id)
        while len(self._removed) > self._removal_history_size:
            self._removed.popitem(last=False)

    def list_sessions(self) -> list[Session]:
        """All live sessions in creation order."""
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def close_all(self) -> None:
        """Remove every session; used at shutdown."""
        for session_id in list(self._sessions):
            if session_id in self._sessions:
                await self.remove(session_id, RemovalReason.SHUTDOWN)
