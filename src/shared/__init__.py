"""Shared models, configuration and logging for the MCP Client Gateway."""

from shared.models import (
    NO_SESSION,
    AssistantText,
    AssistantToolRequest,
    Message,
    ModelReply,
    ProviderKind,
    ToolDescriptor,
    ToolRequest,
    ToolResult,
    UserText,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "NO_SESSION",
    "AssistantText",
    "AssistantToolRequest",
    "Message",
    "ModelReply",
    "ProviderKind",
    "ToolDescriptor",
    "ToolRequest",
    "ToolResult",
    "UserText",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
