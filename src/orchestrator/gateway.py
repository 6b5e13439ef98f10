"""AI Gateway - session-level operations.

The gateway coordinates:
- Session creation against the tool server (optionally after exchanging
  the caller's credentials)
- Chat rounds, serialized per session
- Session removal, both explicit and server-initiated
- Translation of component failures into caller-facing errors
"""

from typing import Optional

from pydantic import BaseModel, Field

from shared.logging import bound_context, get_logger
from shared.models import ProviderKind, SessionSummary
from mcp_client.client import MCPConnectionError, MCPSessionTerminatedError
from orchestrator.credentials import TokenExchange, TokenExchangeError
from orchestrator.errors import (
    AuthMissingError,
    ChatFailedError,
    ConnectFailureError,
    RemovalReason,
    SessionNotFoundError,
    SessionTerminatedError,
)
from orchestrator.llm import ProviderError
from orchestrator.sessions import Session, SessionRegistry
from orchestrator.tool_loop import ToolExecutionError

logger = get_logger(__name__)


class ConnectResult(BaseModel):
    """Outcome of opening a session."""
    session_id: str
    provider: ProviderKind
    tools: list[str] = Field(default_factory=list)


class ChatResult(BaseModel):
    """Outcome of one chat round."""
    session_id: str
    response: str
    conversation_length: int


class AIGateway:
    """
    AI Gateway - entry point for connect, chat, disconnect and listing.

    Errors raised to callers all derive from GatewayError. Failures of the
    model or of a tool are logged here with their details and surfaced as
    ChatFailedError without them.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        default_provider: ProviderKind | str = ProviderKind.ANTHROPIC,
        token_exchange: Optional[TokenExchange] = None
    ) -> None:
        """
        Initialize AI Gateway.

        Args:
            registry: Session store
            default_provider: Provider used when a caller names none or an unknown one
            token_exchange: When set, bearer tokens are exchanged for API tokens
        """
        self.registry = registry
        self.default_provider = ProviderKind(default_provider)
        self.token_exchange = token_exchange

    async def connect(
        self,
        bearer_token: Optional[str],
        provider: Optional[str] = None
    ) -> ConnectResult:
        """
        Open a new session for the caller.

        Raises:
            AuthMissingError: No usable bearer token
            ConnectFailureError: Handshake or tool discovery failed
        """
        if not bearer_token or not bearer_token.strip():
            raise AuthMissingError("Authorization header with Bearer token is required")

        kind = ProviderKind.parse(provider, self.default_provider)
        api_token = bearer_token.strip()

        if self.token_exchange is not None:
            try:
                api_token = await self.token_exchange.get_api_token(api_token)
            except TokenExchangeError as e:
                logger.warning("Token exchange failed", error=str(e))
                raise AuthMissingError("Bearer token could not be exchanged for an API token") from e

        try:
            session = await self.registry.create(api_token, kind)
        except MCPConnectionError as e:
            logger.error("Failed to connect to MCP server", provider=kind.value, error=str(e))
            raise ConnectFailureError("Failed to connect to MCP server") from e

        return ConnectResult(
            session_id=session.session_id,
            provider=session.provider,
            tools=session.tool_names,
        )

    def _require(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id, self.registry.removal_reason(session_id))
        return session

    async def chat(self, session_id: str, query: str) -> ChatResult:
        """
        Run one chat round on a session.

        Raises:
            SessionNotFoundError: Unknown or removed session
            SessionTerminatedError: The tool server ended the session (it is removed)
            ChatFailedError: The model or a tool failed
        """
        session = self._require(session_id)

        async with session.lock:
            # the session may have been removed or replaced while waiting for the lock
            if self.registry.get(session_id) is not session:
                raise SessionNotFoundError(session_id, self.registry.removal_reason(session_id))

            with bound_context(session_id=session_id, provider=session.provider.value):
                try:
                    result = await session.orchestrator.run(query)
                except MCPSessionTerminatedError:
                    logger.info("Session terminated by MCP server (404)")
                    await self._discard(session_id, RemovalReason.TERMINATED_BY_SERVER)
                    raise SessionTerminatedError(session_id)
                except (ProviderError, ToolExecutionError) as e:
                    logger.error("Error processing query", error=str(e), error_type=type(e).__name__)
                    raise ChatFailedError("Failed to process query") from e

        return ChatResult(
            session_id=session_id,
            response=result.response,
            conversation_length=len(session.conversation),
        )

    async def _discard(self, session_id: str, reason: RemovalReason) -> None:
        try:
            await self.registry.remove(session_id, reason)
        except SessionNotFoundError:
            logger.debug("Session already removed", session_id=session_id)

    async def disconnect(self, session_id: str) -> None:
        """
        Remove a session, terminating it on the tool server.

        Raises:
            SessionNotFoundError: Unknown or already removed session
        """
        await self.registry.remove(session_id, RemovalReason.DISCONNECTED)

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of all live sessions."""
        return [s.summary() for s in self.registry.list_sessions()]

    async def close(self) -> None:
        """Remove all sessions."""
        await self.registry.close_all()
