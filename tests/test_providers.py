"""Tests for the provider adapters."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from shared.config import ProviderSettings
from shared.models import (
    AssistantText,
    AssistantToolRequest,
    ModelReply,
    ProviderKind,
    ToolRequest,
    ToolResult,
    UserText,
)

HISTORY = [
    UserText(content="find cats"),
    AssistantToolRequest(
        content="Looking.",
        tool_requests=[ToolRequest(id="call_1", name="search", arguments={"q": "cats"})],
    ),
    ToolResult(tool_call_id="call_1", tool_name="search", content="3 results"),
    AssistantText(content="Found 3 cats."),
]


def anthropic_client(*blocks):
    """Fake AsyncAnthropic whose messages.create returns the given blocks."""
    create = AsyncMock(return_value=SimpleNamespace(content=list(blocks)))
    return SimpleNamespace(messages=SimpleNamespace(create=create))


def openai_client(message):
    """Fake AsyncOpenAI whose completion returns one choice with the message."""
    response = SimpleNamespace(choices=[SimpleNamespace(message=message)] if message else [])
    create = AsyncMock(return_value=response)
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestFactory:
    """Tests for create_provider_adapter."""

    @pytest.mark.parametrize("kind", ["anthropic", "openai", "ollama", "mock"])
    def test_creates_adapter_for_each_provider(self, kind):
        """Test that every provider tag maps to an adapter of that kind."""
        from orchestrator.llm import create_provider_adapter

        adapter = create_provider_adapter(kind, ProviderSettings())

        assert adapter.kind == ProviderKind(kind)

    def test_invalid_provider(self):
        """Test that unknown providers raise."""
        from orchestrator.llm import create_provider_adapter

        with pytest.raises(ValueError, match="Unsupported provider"):
            create_provider_adapter("invalid", ProviderSettings())

    def test_provider_kind_parse_falls_back_to_default(self):
        """Test that unknown or missing tags resolve to the default."""
        assert ProviderKind.parse(" OpenAI ") is ProviderKind.OPENAI
        assert ProviderKind.parse("gemini") is ProviderKind.ANTHROPIC
        assert ProviderKind.parse(None, "ollama") is ProviderKind.OLLAMA


class TestArguments:
    """Tests for tool-call argument decoding."""

    def test_string_and_object_arguments(self):
        """Test that both JSON strings and objects are accepted."""
        from orchestrator.llm import parse_arguments

        assert parse_arguments('{"q": "cats"}', "openai") == {"q": "cats"}
        assert parse_arguments({"q": "cats"}, "ollama") == {"q": "cats"}
        assert parse_arguments("", "openai") == {}
        assert parse_arguments(None, "openai") == {}

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", 42])
    def test_malformed_arguments(self, raw):
        """Test that non-object arguments are provider errors."""
        from orchestrator.llm import ProviderError, parse_arguments

        with pytest.raises(ProviderError):
            parse_arguments(raw, "openai")


class TestAnthropicAdapter:
    """Tests for the Anthropic adapter."""

    def test_normalize_tools_uses_input_schema(self):
        """Test the input_schema tool shape."""
        from orchestrator.llm import AnthropicAdapter
        from shared.models import ToolDescriptor

        adapter = AnthropicAdapter(ProviderSettings())
        tools = adapter.normalize_tools([
            ToolDescriptor(name="search", description="d", input_schema={"type": "object"})
        ])

        assert tools == [{"name": "search", "description": "d", "input_schema": {"type": "object"}}]

    def test_render_history_merges_user_turns(self):
        """Test that tool results ride in user turns with tool_result blocks."""
        from orchestrator.llm import AnthropicAdapter

        adapter = AnthropicAdapter(ProviderSettings())
        history = HISTORY[:3] + [UserText(content="and dogs?")]

        messages = adapter.render_history(history)

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][1] == {
            "type": "tool_use", "id": "call_1", "name": "search", "input": {"q": "cats"}
        }
        assert messages[2]["content"][0]["type"] == "tool_result"
        assert messages[2]["content"][0]["tool_use_id"] == "call_1"
        assert messages[2]["content"][1] == {"type": "text", "text": "and dogs?"}

    def test_render_history_skips_empty_text(self):
        """Test that empty assistant text produces no turn."""
        from orchestrator.llm import AnthropicAdapter

        adapter = AnthropicAdapter(ProviderSettings())
        messages = adapter.render_history([UserText(content="hi"), AssistantText(content="")])

        assert [m["role"] for m in messages] == ["user"]

    def test_format_tool_result_marks_errors(self):
        """Test that failed tool results carry is_error."""
        from orchestrator.llm import AnthropicAdapter

        adapter = AnthropicAdapter(ProviderSettings())
        message = adapter.format_tool_result("call_1", "boom", is_error=True)

        assert message["role"] == "user"
        assert message["content"][0]["is_error"] is True

    @pytest.mark.asyncio
    async def test_chat_extracts_text_and_tool_use(self):
        """Test parsing text and tool_use blocks."""
        from orchestrator.llm import AnthropicAdapter

        adapter = AnthropicAdapter(ProviderSettings())
        adapter._client = anthropic_client(
            SimpleNamespace(type="text", text="Let me search."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="search", input={"q": "cats"}),
        )

        reply = await adapter.chat([UserText(content="find cats")], [])

        assert reply.text == "Let me search."
        assert reply.tool_requests == [ToolRequest(id="toolu_1", name="search", arguments={"q": "cats"})]
        kwargs = adapter._client.messages.create.call_args.kwargs
        assert "tools" not in kwargs
        assert kwargs["max_tokens"] == 1000

    @pytest.mark.asyncio
    async def test_chat_wraps_sdk_errors(self):
        """Test that SDK exceptions become provider errors."""
        from orchestrator.llm import AnthropicAdapter, ProviderError

        adapter = AnthropicAdapter(ProviderSettings())
        adapter._client = SimpleNamespace(
            messages=SimpleNamespace(create=AsyncMock(side_effect=RuntimeError("overloaded")))
        )

        with pytest.raises(ProviderError) as exc_info:
            await adapter.chat([UserText(content="hi")], [])

        assert exc_info.value.provider == "anthropic"


class TestOpenAIAdapter:
    """Tests for the OpenAI adapter."""

    def test_render_history_uses_string_arguments(self):
        """Test tool_calls carry JSON-string arguments and results use the tool role."""
        from orchestrator.llm import OpenAIAdapter

        messages = OpenAIAdapter(ProviderSettings()).render_history(HISTORY)

        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "assistant"]
        call = messages[1]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert json.loads(call["function"]["arguments"]) == {"q": "cats"}
        assert messages[2] == {"role": "tool", "tool_call_id": "call_1", "content": "3 results"}

    @pytest.mark.asyncio
    async def test_chat_parses_tool_calls(self):
        """Test that string arguments are decoded into objects."""
        from orchestrator.llm import OpenAIAdapter

        adapter = OpenAIAdapter(ProviderSettings())
        adapter._client = openai_client(SimpleNamespace(
            content=None,
            tool_calls=[SimpleNamespace(
                id="call_9",
                function=SimpleNamespace(name="search", arguments='{"q": "dogs"}'),
            )],
        ))

        reply = await adapter.chat([UserText(content="find dogs")], [{"type": "function"}])

        assert reply.text == ""
        assert reply.tool_requests[0].id == "call_9"
        assert reply.tool_requests[0].arguments == {"q": "dogs"}

    @pytest.mark.asyncio
    async def test_chat_text_only(self):
        """Test a reply without tool calls."""
        from orchestrator.llm import OpenAIAdapter

        adapter = OpenAIAdapter(ProviderSettings())
        adapter._client = openai_client(SimpleNamespace(content="Hello", tool_calls=None))

        reply = await adapter.chat([UserText(content="hi")], [])

        assert reply == ModelReply(text="Hello")

    @pytest.mark.asyncio
    async def test_chat_without_choices(self):
        """Test that an empty choices list is a provider error."""
        from orchestrator.llm import OpenAIAdapter, ProviderError

        adapter = OpenAIAdapter(ProviderSettings())
        adapter._client = openai_client(None)

        with pytest.raises(ProviderError, match="no choices"):
            await adapter.chat([UserText(content="hi")], [])

    @pytest.mark.asyncio
    async def test_chat_with_malformed_arguments(self):
        """Test that undecodable arguments fail the call."""
        from orchestrator.llm import OpenAIAdapter, ProviderError

        adapter = OpenAIAdapter(ProviderSettings())
        adapter._client = openai_client(SimpleNamespace(
            content=None,
            tool_calls=[SimpleNamespace(
                id="call_1", function=SimpleNamespace(name="search", arguments="{oops")
            )],
        ))

        with pytest.raises(ProviderError):
            await adapter.chat([UserText(content="hi")], [])


class TestOllamaAdapter:
    """Tests for the Ollama adapter."""

    def test_render_history_uses_object_arguments(self):
        """Test that tool-call arguments are sent as objects."""
        from orchestrator.llm import OllamaAdapter

        messages = OllamaAdapter(ProviderSettings()).render_history(HISTORY)

        assert messages[1]["tool_calls"][0]["function"]["arguments"] == {"q": "cats"}

    @pytest.mark.asyncio
    async def test_chat_posts_to_api_chat(self):
        """Test the request payload and parsing of tool calls without ids."""
        from orchestrator.llm import OllamaAdapter

        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "model": "llama3.2:1b",
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": "search", "arguments": {"q": "cats"}}},
                        {"function": {"name": "search", "arguments": {"q": "dogs"}}},
                    ],
                },
                "done": True,
            })

        adapter = OllamaAdapter(ProviderSettings(), transport=httpx.MockTransport(handler))
        reply = await adapter.chat([UserText(content="find pets")], [{"type": "function"}])
        await adapter.close()

        payload = json.loads(seen[0].content)
        assert seen[0].url.path == "/api/chat"
        assert payload["stream"] is False
        assert payload["options"] == {"num_predict": 1000}
        assert [r.arguments for r in reply.tool_requests] == [{"q": "cats"}, {"q": "dogs"}]
        ids = [r.id for r in reply.tool_requests]
        assert all(i.startswith("call_") for i in ids)
        assert len(set(ids)) == 2

    @pytest.mark.asyncio
    async def test_http_error_becomes_provider_error(self):
        """Test that a failed HTTP call is a provider error."""
        from orchestrator.llm import OllamaAdapter, ProviderError

        adapter = OllamaAdapter(
            ProviderSettings(),
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(ProviderError) as exc_info:
            await adapter.chat([UserText(content="hi")], [])

        assert exc_info.value.provider == "ollama"
        await adapter.close()


class TestMockProviderAdapter:
    """Tests for the scripted adapter."""

    @pytest.mark.asyncio
    async def test_queued_replies_then_default(self):
        """Test that queued replies come first, in order."""
        from orchestrator.llm import MockProviderAdapter

        adapter = MockProviderAdapter()
        adapter.queue_reply(ModelReply(text="first"))

        first = await adapter.chat([UserText(content="a")], [])
        second = await adapter.chat([UserText(content="b")], [])

        assert first.text == "first"
        assert second.text == "This is a mock response."
        assert len(adapter.call_history) == 2
