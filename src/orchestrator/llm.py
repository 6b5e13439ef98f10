"""Provider adapters for the supported model APIs.

Each adapter maps the provider-neutral conversation history and tool
descriptors to one provider's wire format, issues the chat call and
extracts text and tool requests from the response:
- Anthropic Messages API (tool_use content blocks)
- OpenAI Chat Completions (tool_calls with JSON-string arguments)
- Ollama chat API (tool_calls with object or string arguments)

Adapters never mutate the conversation; they only read it.
"""

import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx

from shared.config import ProviderSettings
from shared.logging import get_logger
from shared.models import (
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
from mcp_client.discovery import to_function_tool, to_input_schema_tool

logger = get_logger(__name__)


class ProviderError(Exception):
    """A model provider call failed or returned an unusable payload."""

    def __init__(self, message: str, provider: str) -> None:
        super().__init__(message)
        self.provider = provider


def parse_arguments(raw: Any, provider: str) -> dict[str, Any]:
    """Decode tool-call arguments that may arrive as a JSON string or an object."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Tool call arguments are not valid JSON: {e}", provider)
    if not isinstance(raw, dict):
        raise ProviderError(
            f"Tool call arguments must be a JSON object, got {type(raw).__name__}", provider
        )
    return raw


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Adapter contract:
    - normalize_tools: descriptors -> provider tool schema
    - chat: history + tools -> ModelReply (text + tool requests)
    - format_tool_result: correlation id + content -> provider message
    """

    kind: ProviderKind

    def __init__(self, settings: ProviderSettings) -> None:
        self.settings = settings
        self._client: Any = None

    @abstractmethod
    def normalize_tools(self, descriptors: Sequence[ToolDescriptor]) -> list[dict[str, Any]]:
        """Convert tool descriptors to this provider's tool shape."""
        pass

    @abstractmethod
    def format_tool_result(
        self,
        correlation_id: str,
        content: str,
        is_error: bool = False
    ) -> dict[str, Any]:
        """Build the provider message that reports one tool result."""
        pass

    @abstractmethod
    def render_history(self, history: Sequence[Message]) -> list[dict[str, Any]]:
        """Convert the conversation into this provider's message list."""
        pass

    @abstractmethod
    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        """Issue the provider call and parse its response."""
        pass

    async def chat(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        """
        Run one model call over the full history.

        Args:
            history: Conversation so far
            tools: Tools already normalized for this provider

        Returns:
            Text and tool requests of the reply

        Raises:
            ProviderError: On any transport, API or payload failure
        """
        messages = self.render_history(history)
        try:
            return await self._complete(messages, tools)
        except ProviderError as e:
            logger.error("Provider returned an unusable reply", provider=self.kind.value, error=str(e))
            raise
        except Exception as e:
            logger.error("Provider call failed", provider=self.kind.value, error=str(e))
            raise ProviderError(f"{self.kind.value} call failed: {e}", self.kind.value) from e

    async def close(self) -> None:
        """Release the provider client, if one was created."""
        if self._client is not None:
            await self._client.close()
            self._client = None


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter."""

    kind = ProviderKind.ANTHROPIC

    def _get_client(self):
        """Lazy initialization of the Anthropic client."""
        if self._client is None:
            from anthropic import AsyncAnthropic

            kwargs: dict[str, Any] = {"api_key": self.settings.anthropic_api_key}
            if self.settings.request_timeout is not None:
                kwargs["timeout"] = self.settings.request_timeout
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    def normalize_tools(self, descriptors: Sequence[ToolDescriptor]) -> list[dict[str, Any]]:
        return [to_input_schema_tool(d) for d in descriptors]

    def format_tool_result(
        self,
        correlation_id: str,
        content: str,
        is_error: bool = False
    ) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": correlation_id,
            "content": content,
        }
        if is_error:
            block["is_error"] = True
        return {"role": "user", "content": [block]}

    def render_history(self, history: Sequence[Message]) -> list[dict[str, Any]]:
        """
        Render the history as alternating user/assistant turns.

        Tool results travel in user turns, so consecutive user-side messages
        are merged into one turn of content blocks.
        """
        messages: list[dict[str, Any]] = []

        def push(role: str, blocks: list[dict[str, Any]]) -> None:
            if not blocks:
                return
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": list(blocks)})

        for message in history:
            if isinstance(message, UserText):
                push("user", [{"type": "text", "text": message.content}])
            elif isinstance(message, AssistantText):
                # empty text blocks are rejected by the API
                if message.content:
                    push("assistant", [{"type": "text", "text": message.content}])
            elif isinstance(message, AssistantToolRequest):
                blocks = [{"type": "text", "text": message.content}] if message.content else []
                blocks.extend(
                    {"type": "tool_use", "id": r.id, "name": r.name, "input": r.arguments}
                    for r in message.tool_requests
                )
                push("assistant", blocks)
            elif isinstance(message, ToolResult):
                rendered = self.format_tool_result(
                    message.tool_call_id, message.content, message.is_error
                )
                push(rendered["role"], rendered["content"])

        return messages

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        kwargs: dict[str, Any] = {
            "model": self.settings.anthropic_model,
            "max_tokens": self.settings.max_tokens,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools

        response = await self._get_client().messages.create(**kwargs)

        texts: list[str] = []
        requests: list[ToolRequest] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                requests.append(ToolRequest(
                    id=block.id,
                    name=block.name,
                    arguments=parse_arguments(block.input, self.kind.value),
                ))

        return ModelReply(text="".join(texts), tool_requests=requests)


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions adapter."""

    kind = ProviderKind.OPENAI

    def _get_client(self):
        """Lazy initialization of the OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": self.settings.openai_api_key}
            if self.settings.request_timeout is not None:
                kwargs["timeout"] = self.settings.request_timeout
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    def normalize_tools(self, descriptors: Sequence[ToolDescriptor]) -> list[dict[str, Any]]:
        return [to_function_tool(d) for d in descriptors]

    def format_tool_result(
        self,
        correlation_id: str,
        content: str,
        is_error: bool = False
    ) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": correlation_id, "content": content}

    def render_history(self, history: Sequence[Message]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for message in history:
            if isinstance(message, UserText):
                messages.append({"role": "user", "content": message.content})
            elif isinstance(message, AssistantText):
                messages.append({"role": "assistant", "content": message.content})
            elif isinstance(message, AssistantToolRequest):
                messages.append({
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": r.id,
                            "type": "function",
                            "function": {"name": r.name, "arguments": json.dumps(r.arguments)},
                        }
                        for r in message.tool_requests
                    ],
                })
            elif isinstance(message, ToolResult):
                messages.append(self.format_tool_result(message.tool_call_id, message.content))
        return messages

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        kwargs: dict[str, Any] = {
            "model": self.settings.openai_model,
            "max_tokens": self.settings.max_tokens,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools

        response = await self._get_client().chat.completions.create(**kwargs)
        if not response.choices:
            raise ProviderError("Response contained no choices", self.kind.value)

        message = response.choices[0].message
        requests = [
            ToolRequest(
                id=call.id,
                name=call.function.name,
                arguments=parse_arguments(call.function.arguments, self.kind.value),
            )
            for call in (message.tool_calls or [])
        ]

        return ModelReply(text=message.content or "", tool_requests=requests)


class OllamaAdapter(OpenAIAdapter):
    """
    Ollama chat API adapter.

    Shares the function-style tool shape with OpenAI but talks to the
    /api/chat endpoint directly over HTTP. Ollama may omit tool-call ids,
    in which case a unique correlation id is generated.
    """

    kind = ProviderKind.OLLAMA

    def __init__(
        self,
        settings: ProviderSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(settings)
        self._transport = transport

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.ollama_base_url,
                timeout=self.settings.request_timeout,
                transport=self._transport,
            )
        return self._client

    def render_history(self, history: Sequence[Message]) -> list[dict[str, Any]]:
        messages = super().render_history(history)
        # Ollama expects arguments as objects, not JSON strings
        for rendered in messages:
            for call in rendered.get("tool_calls", []):
                call["function"]["arguments"] = json.loads(call["function"]["arguments"])
            if rendered.get("content") is None:
                rendered["content"] = ""
        return messages

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        payload: dict[str, Any] = {
            "model": self.settings.ollama_model,
            "messages": messages,
            "stream": False,
            "options": {"num_predict": self.settings.max_tokens},
        }
        if tools:
            payload["tools"] = tools

        response = await self._get_client().post("/api/chat", json=payload)
        response.raise_for_status()

        try:
            message = response.json()["message"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"Malformed Ollama response: {e}", self.kind.value)

        requests = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            requests.append(ToolRequest(
                id=call.get("id") or f"call_{uuid.uuid4().hex[:24]}",
                name=function.get("name", ""),
                arguments=parse_arguments(function.get("arguments"), self.kind.value),
            ))

        return ModelReply(text=message.get("content") or "", tool_requests=requests)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MockProviderAdapter(ProviderAdapter):
    """Scripted adapter for tests and offline development."""

    kind = ProviderKind.MOCK

    def __init__(self, settings: Optional[ProviderSettings] = None) -> None:
        super().__init__(settings or ProviderSettings())
        self.call_history: list[dict[str, Any]] = []
        self._replies: list[ModelReply] = []

    def queue_reply(self, reply: ModelReply) -> None:
        """Queue a reply; queued replies are returned in order."""
        self._replies.append(reply)

    def normalize_tools(self, descriptors: Sequence[ToolDescriptor]) -> list[dict[str, Any]]:
        return [to_function_tool(d) for d in descriptors]

    def format_tool_result(
        self,
        correlation_id: str,
        content: str,
        is_error: bool = False
    ) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": correlation_id, "content": content}

    def render_history(self, history: Sequence[Message]) -> list[dict[str, Any]]:
        return [m.model_dump(mode="json", exclude={"timestamp"}) for m in history]

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]]
    ) -> ModelReply:
        self.call_history.append({"messages": messages, "tools": tools})
        if self._replies:
            return self._replies.pop(0)
        return ModelReply(text="This is a mock response.")

    async def close(self) -> None:
        pass


def create_provider_adapter(
    kind: ProviderKind | str,
    settings: ProviderSettings
) -> ProviderAdapter:
    """
    Factory function to create the adapter for a provider.

    Supports:
    - anthropic: Anthropic Messages API
    - openai: OpenAI Chat Completions
    - ollama: Ollama chat API
    - mock: Scripted adapter for testing

    Raises:
        ValueError: If provider is not supported
    """
    adapters: dict[ProviderKind, type[ProviderAdapter]] = {
        ProviderKind.ANTHROPIC: AnthropicAdapter,
        ProviderKind.OPENAI: OpenAIAdapter,
        ProviderKind.OLLAMA: OllamaAdapter,
        ProviderKind.MOCK: MockProviderAdapter,
    }

    try:
        adapter_class = adapters[ProviderKind(kind)]
    except ValueError:
        raise ValueError(
            f"Unsupported provider: {kind}. "
            f"Supported: {[k.value for k in adapters]}"
        )

    logger.debug("Creating provider adapter", provider=ProviderKind(kind).value)
    return adapter_class(settings)
