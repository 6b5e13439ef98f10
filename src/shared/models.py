"""Core data models for the MCP Client Gateway.

This module defines the provider-neutral structures shared by the MCP client,
the provider adapters and the orchestrator: tool descriptors, the
conversation message union and model replies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(str, Enum):
    """Supported model provider families."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"
    MOCK = "mock"

    @classmethod
    def parse(
        cls,
        value: Optional[str],
        default: "ProviderKind | str" = "anthropic"
    ) -> "ProviderKind":
        """Resolve a provider tag, falling back to the default when unknown."""
        if value is not None:
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls(default)


class NoSession(str, Enum):
    """Marker for a tool server that does not issue session identifiers."""
    SENTINEL = "no-session"

    def __str__(self) -> str:
        return self.value


NO_SESSION = NoSession.SENTINEL

# Either the identifier issued by the tool server or the NO_SESSION marker
ServerSessionId = Union[NoSession, str]


class ToolDescriptor(BaseModel):
    """
    Provider-neutral description of a callable tool.

    The name is passed verbatim to the tool server when the tool is invoked,
    so it must never be rewritten for a provider.
    """
    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    model_config = ConfigDict(frozen=True)


class ToolRequest(BaseModel):
    """A single tool invocation proposed by the model."""
    id: str = Field(..., min_length=1, description="Correlation id")
    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class _Message(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class UserText(_Message):
    """Query submitted by the caller."""
    kind: Literal["user_text"] = "user_text"
    content: str


class AssistantText(_Message):
    """Model reply that carries no tool requests."""
    kind: Literal["assistant_text"] = "assistant_text"
    content: str = ""


class AssistantToolRequest(_Message):
    """
    Model reply that asks for one or more tools.

    Keeps every request of the reply, in order, together with whatever text
    the model produced alongside them.
    """
    kind: Literal["assistant_tool_request"] = "assistant_tool_request"
    content: str = ""
    tool_requests: list[ToolRequest] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_ids(self) -> "AssistantToolRequest":
        ids = [r.id for r in self.tool_requests]
        if len(ids) != len(set(ids)):
            raise ValueError("Tool request ids must be unique within a reply")
        return self


class ToolResult(_Message):
    """Output of a tool invocation, linked to its request by correlation id."""
    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str = Field(..., min_length=1)
    tool_name: str
    content: str
    is_error: bool = False


Message = Annotated[
    Union[UserText, AssistantText, AssistantToolRequest, ToolResult],
    Field(discriminator="kind"),
]


class ModelReply(BaseModel):
    """Text and tool requests extracted from one provider response."""
    text: str = ""
    tool_requests: list[ToolRequest] = Field(default_factory=list)

    @property
    def has_tool_requests(self) -> bool:
        return bool(self.tool_requests)

    def to_message(self) -> Union[AssistantText, AssistantToolRequest]:
        """Build the aggregate assistant message for this reply."""
        if self.tool_requests:
            return AssistantToolRequest(content=self.text, tool_requests=self.tool_requests)
        return AssistantText(content=self.text)


class SessionSummary(BaseModel):
    """Public view of a registered session."""
    session_id: str = Field(..., serialization_alias="sessionId")
    created_at: datetime = Field(..., serialization_alias="createdAt")
    last_activity: datetime = Field(..., serialization_alias="lastActivity")
    provider: ProviderKind
    conversation_length: int = Field(..., serialization_alias="conversationLength")
    tools: list[str] = Field(default_factory=list)
