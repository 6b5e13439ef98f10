"""Orchestrator / AI Gateway.

Holds per-session conversation state, adapts it to the selected model
provider and drives the tool-call loop against the session's MCP client.
"""

from orchestrator.llm import ProviderAdapter, ProviderError, create_provider_adapter
from orchestrator.conversation import ConversationState
from orchestrator.tool_loop import ToolCallOrchestrator, ToolExecutionError
from orchestrator.sessions import Session, SessionRegistry
from orchestrator.gateway import AIGateway

__all__ = [
    "ProviderAdapter",
    "ProviderError",
    "create_provider_adapter",
    "ConversationState",
    "ToolCallOrchestrator",
    "ToolExecutionError",
    "Session",
    "SessionRegistry",
    "AIGateway",
]
