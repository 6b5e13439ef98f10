"""MCP Client Gateway - FastAPI Application.

Exposes session-scoped chat with tool use over HTTP:
- POST /connect opens a session with the tool server
- POST /chat runs one query through the session's provider and tools
- POST /disconnect ends a session
- GET /sessions lists live sessions
- GET /health reports liveness
All routes live under the configured prefix (default /mcp-client).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging
from shared.models import ProviderKind, SessionSummary
from orchestrator.credentials import TokenExchange
from orchestrator.errors import (
    AuthMissingError,
    ChatFailedError,
    ConnectFailureError,
    GatewayError,
    SessionNotFoundError,
    SessionTerminatedError,
)
from orchestrator.gateway import AIGateway
from orchestrator.sessions import SessionRegistry

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


# Request/Response Models
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConnectRequest(_CamelModel):
    """Optional body of a connect request."""
    provider: Optional[str] = Field(default=None, description="anthropic, openai or ollama")


class ConnectResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    message: str
    provider: ProviderKind
    tools: list[str]


class ChatRequest(_CamelModel):
    query: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ChatResponse(_CamelModel):
    response: str
    session_id: str = Field(..., alias="sessionId")
    conversation_length: int = Field(..., alias="conversationLength")


class DisconnectRequest(_CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class DisconnectResponse(_CamelModel):
    message: str
    session_id: str = Field(..., alias="sessionId")


class SessionListResponse(_CamelModel):
    active_sessions: int = Field(..., alias="activeSessions")
    sessions: list[SessionSummary]


class HealthResponse(_CamelModel):
    status: str
    message: str
    active_sessions: int = Field(..., alias="activeSessions")
    endpoints: dict[str, str]
    supported_providers: list[str] = Field(..., alias="supportedProviders")
    default_provider: str = Field(..., alias="defaultProvider")


ERROR_STATUS: dict[type[GatewayError], int] = {
    AuthMissingError: status.HTTP_401_UNAUTHORIZED,
    ConnectFailureError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionTerminatedError: status.HTTP_404_NOT_FOUND,
    ChatFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Global instances
_gateway: Optional[AIGateway] = None


def build_gateway(settings: Settings) -> AIGateway:
    """Wire registry, token exchange and gateway from settings."""
    token_exchange = None
    if settings.gateway.exchange_tokens:
        token_exchange = TokenExchange(settings.token_exchange)

    return AIGateway(
        registry=SessionRegistry.from_settings(settings),
        default_provider=ProviderKind.parse(settings.providers.default_provider),
        token_exchange=token_exchange,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _gateway

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")

    logger.info("Starting MCP Client Gateway", mcp_server=settings.mcp.server_url)
    _gateway = build_gateway(settings)

    yield

    logger.info("Shutting down MCP Client Gateway")
    await _gateway.close()
    _gateway = None


def get_gateway() -> AIGateway:
    """Dependency returning the initialized gateway."""
    if _gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Gateway not initialized"
        )
    return _gateway


router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(gateway: AIGateway = Depends(get_gateway)):
    """Health check endpoint."""
    prefix = get_settings().gateway.route_prefix
    return HealthResponse(
        status="ok",
        message="MCP client server is running",
        active_sessions=len(gateway.registry),
        endpoints={
            "health": f"GET {prefix}/health",
            "connect": f"POST {prefix}/connect (requires Authorization header, optional provider)",
            "chat": f"POST {prefix}/chat (requires sessionId)",
            "disconnect": f"POST {prefix}/disconnect (requires sessionId)",
            "sessions": f"GET {prefix}/sessions (list active sessions)",
        },
        supported_providers=[
            k.value for k in ProviderKind if k is not ProviderKind.MOCK
        ],
        default_provider=gateway.default_provider.value,
    )


def _requested_provider(request: Optional[ConnectRequest]) -> Optional[str]:
    """Provider named by an HTTP caller; the scripted mock is not selectable."""
    if request is None or request.provider is None:
        return None
    if request.provider.strip().lower() == ProviderKind.MOCK.value:
        logger.warning("Mock provider requested over HTTP, using default")
        return None
    return request.provider


@router.post("/connect", response_model=ConnectResponse, tags=["Sessions"])
async def connect(
    request: Optional[ConnectRequest] = Body(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    gateway: AIGateway = Depends(get_gateway)
):
    """Create a session and connect it to the MCP server."""
    try:
        result = await gateway.connect(
            credentials.credentials if credentials else None,
            _requested_provider(request),
        )
    except GatewayError:
        raise
    except Exception as e:
        logger.error("Error creating session", error=str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create session"
        )

    return ConnectResponse(
        session_id=result.session_id,
        message=f"Session created and connected to MCP server using {result.provider.value}",
        provider=result.provider,
        tools=result.tools,
    )


@router.post("/chat", response_model=ChatResponse, tags=["Chat"])
async def chat(
    request: ChatRequest,
    gateway: AIGateway = Depends(get_gateway)
):
    """Run one query on an existing session."""
    if not request.query:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query is required")
    if not request.session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SessionId is required. Please connect first using /connect endpoint"
        )

    try:
        result = await gateway.chat(request.session_id, request.query)
    except GatewayError:
        raise
    except Exception as e:
        logger.error("Error in chat handler", session_id=request.session_id, error=str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process chat request"
        )

    return ChatResponse(
        response=result.response,
        session_id=result.session_id,
        conversation_length=result.conversation_length,
    )


@router.post("/disconnect", response_model=DisconnectResponse, tags=["Sessions"])
async def disconnect(
    request: DisconnectRequest,
    gateway: AIGateway = Depends(get_gateway)
):
    """End a session."""
    if not request.session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="SessionId is required")

    await gateway.disconnect(request.session_id)
    return DisconnectResponse(message="Session disconnected successfully", session_id=request.session_id)


@router.get("/sessions", response_model=SessionListResponse, tags=["Sessions"])
async def list_sessions(gateway: AIGateway = Depends(get_gateway)):
    """List active sessions."""
    sessions = gateway.list_sessions()
    return SessionListResponse(active_sessions=len(sessions), sessions=sessions)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="MCP Client Gateway",
        description="Session-scoped chat with MCP tool use",
        version="0.1.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.gateway.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        content: dict[str, object] = {"error": exc.message}
        if exc.requires_reconnect:
            content["requiresReconnect"] = True
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthMissingError) else None
        return JSONResponse(
            status_code=ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR),
            content=content,
            headers=headers,
        )

    app.include_router(router, prefix=settings.gateway.route_prefix)
    return app


app = create_app()


def main():
    """Run the gateway server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.gateway.host,
        port=settings.gateway.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
