"""Conversation state for one session.

An append-only, ordered history of user queries, model replies and tool
results.
"""

from typing import Iterator

from shared.models import AssistantToolRequest, Message, ToolResult


class ConversationError(Exception):
    """A message would break the ordering rules of the conversation."""
    pass


class ConversationState:
    """
    Append-only message history.

    Rules enforced on append:
    - messages are never edited or removed
    - a ToolResult must answer a tool request made earlier in the history,
      and each request is answered at most once
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._requested: set[str] = set()
        self._answered: set[str] = set()

    def append(self, message: Message) -> Message:
        """
        Append a message to the history.

        Raises:
            ConversationError: If a tool result has no matching request
        """
        if isinstance(message, ToolResult):
            if message.tool_call_id not in self._requested:
                raise ConversationError(
                    f"Tool result {message.tool_call_id} has no matching tool request"
                )
            if message.tool_call_id in self._answered:
                raise ConversationError(
                    f"Tool request {message.tool_call_id} already has a result"
                )
            self._answered.add(message.tool_call_id)

        elif isinstance(message, AssistantToolRequest):
            ids = {r.id for r in message.tool_requests}
            reused = ids & self._requested
            if reused:
                raise ConversationError(f"Tool request ids already used: {sorted(reused)}")
            self._requested.update(ids)

        self._messages.append(message)
        return message

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot of the history."""
        return tuple(self._messages)

    @property
    def pending_requests(self) -> set[str]:
        """Correlation ids of tool requests that have no result yet."""
        return self._requested - self._answered

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
