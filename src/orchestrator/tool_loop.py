"""Tool-call orchestration for one session.

Drives a single round per user query:

    AWAITING_QUERY -> MODEL_CALL -> TEXT_ONLY -> DONE
                                 -> TOOL_REQUESTED -> TOOL_EXECUTION
                                    -> FOLLOWUP_MODEL_CALL -> DONE

Tool requests made in the follow-up reply are not executed; a round makes
at most two model calls.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from shared.logging import get_logger
from shared.models import AssistantText, ToolDescriptor, ToolRequest, ToolResult, UserText
from shared.schema import validate_arguments
from mcp_client.client import MCPSessionClient, MCPToolError
from orchestrator.conversation import ConversationState
from orchestrator.llm import ProviderAdapter

logger = get_logger(__name__)

TOOL_FAILED_CONTENT = "Tool execution failed."
TOOL_SKIPPED_CONTENT = "Tool was not executed because an earlier tool call failed."


class RoundState(str, Enum):
    """States of the tool-call round."""
    AWAITING_QUERY = "awaiting_query"
    MODEL_CALL = "model_call"
    TEXT_ONLY = "text_only"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTION = "tool_execution"
    FOLLOWUP_MODEL_CALL = "followup_model_call"
    DONE = "done"


class ToolExecutionError(Exception):
    """A tool invocation failed; the session stays usable."""

    def __init__(self, message: str, tool_name: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


@dataclass
class RoundResult:
    """Outcome of one round."""
    response: str
    tool_calls: int = 0
    followup: bool = False


class ToolCallOrchestrator:
    """
    Runs model and tool calls for one session's conversation.

    The orchestrator owns the conversation state and the tool list
    normalized once for its adapter. It is not safe to run two rounds on
    the same instance concurrently; callers serialize rounds per session.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        mcp_client: MCPSessionClient,
        tools: Sequence[ToolDescriptor],
        conversation: Optional[ConversationState] = None
    ) -> None:
        self.adapter = adapter
        self.mcp_client = mcp_client
        self.tools = list(tools)
        self.conversation = conversation or ConversationState()

        self._provider_tools = adapter.normalize_tools(self.tools)
        self._schemas = {t.name: t.input_schema for t in self.tools}

        self.state = RoundState.AWAITING_QUERY
        self.trace: list[RoundState] = []

    def _enter(self, state: RoundState) -> None:
        self.state = state
        self.trace.append(state)
        logger.debug("Round state", state=state.value)

    async def run(self, query: str) -> RoundResult:
        """
        Process one user query.

        Args:
            query: User input

        Returns:
            The text to return to the caller and round statistics

        Raises:
            ProviderError: A model call failed
            ToolExecutionError: A tool call failed (session kept)
            MCPSessionTerminatedError: The tool server dropped the session
        """
        self.trace = []
        try:
            self._enter(RoundState.MODEL_CALL)
            self.conversation.append(UserText(content=query))

            reply = await self.adapter.chat(self.conversation.messages, self._provider_tools)
            self.conversation.append(reply.to_message())

            if not reply.has_tool_requests:
                self._enter(RoundState.TEXT_ONLY)
                result = RoundResult(response=reply.text)
            else:
                self._enter(RoundState.TOOL_REQUESTED)
                await self._execute(reply.tool_requests)

                self._enter(RoundState.FOLLOWUP_MODEL_CALL)
                followup = await self.adapter.chat(self.conversation.messages, self._provider_tools)
                if followup.has_tool_requests:
                    logger.warning(
                        "Follow-up tool requests not executed",
                        tools=[r.name for r in followup.tool_requests]
                    )
                self.conversation.append(AssistantText(content=followup.text))
                result = RoundResult(
                    response=followup.text,
                    tool_calls=len(reply.tool_requests),
                    followup=True,
                )

            self._enter(RoundState.DONE)
            return result
        finally:
            self.state = RoundState.AWAITING_QUERY

    async def _execute(self, requests: Sequence[ToolRequest]) -> None:
        """Invoke each requested tool in order and record its result."""
        self._enter(RoundState.TOOL_EXECUTION)

        for index, request in enumerate(requests):
            schema = self._schemas.get(request.name)
            if schema is None:
                logger.warning("Model requested an undiscovered tool", tool=request.name)
            else:
                problems = validate_arguments(request.arguments, schema)
                if problems:
                    logger.warning("Tool arguments do not match schema", tool=request.name, problems=problems)

            logger.info("Executing tool", tool=request.name, call_id=request.id)
            try:
                content = await self.mcp_client.invoke(request.name, request.arguments)
            except MCPToolError as e:
                logger.error("Tool execution failed", tool=request.name, error=str(e))
                # every request of the reply still gets a result
                for pending in requests[index:]:
                    self.conversation.append(ToolResult(
                        tool_call_id=pending.id,
                        tool_name=pending.name,
                        content=TOOL_FAILED_CONTENT if pending is request else TOOL_SKIPPED_CONTENT,
                        is_error=True,
                    ))
                raise ToolExecutionError(str(e), request.name) from e

            self.conversation.append(ToolResult(
                tool_call_id=request.id,
                tool_name=request.name,
                content=content,
            ))
