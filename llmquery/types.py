"""Provider-neutral value types for chat requests, responses and stream deltas.

Every adapter translates to and from these; no provider wire schema leaks
past the adapter boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from llmquery.errors import RequestValidationError


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to call a named function.

    ``arguments`` holds the raw JSON document exactly as the provider sent
    it; llmquery never parses it.
    """

    id: str
    name: str
    arguments: bytes = b"{}"

    @property
    def arguments_text(self) -> str:
        return self.arguments.decode("utf-8")


@dataclass
class ToolSpec:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)  # JSON schema, passed through


@dataclass
class Tool:
    function: ToolSpec
    type: str = "function"


@dataclass
class Message:
    """A single message in the conversation history."""

    role: str
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None  # tool role only
    tool_calls: list[ToolCall] = field(default_factory=list)  # assistant role only


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatRequest:
    """One chat-completion call, independent of the provider that serves it."""

    messages: list[Message]
    model: str = ""  # empty = adapter default
    tools: list[Tool] = field(default_factory=list)
    tool_choice: str | dict[str, Any] | None = None
    response_format: dict[str, Any] | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    extras: dict[str, Any] = field(default_factory=dict)
    extra_headers: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise RequestValidationError unless the request can be sent."""
        if not self.messages:
            raise RequestValidationError("request must have at least one message")
        for msg in self.messages:
            if msg.role not in tuple(Role):
                raise RequestValidationError(f"invalid message role: {msg.role!r}")


@dataclass
class ChatResponse:
    """Normalized reply. ``raw`` keeps the provider bytes for audit/debug."""

    text: str = ""
    finish_reason: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    raw: bytes = field(default=b"", repr=False)

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ToolCallFragment:
    """Part of a tool call as it arrives on a stream.

    Event-stream providers send id/name once and the arguments in pieces
    keyed by ``index``; NDJSON and array transports send whole calls.
    """

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class Delta:
    """One incremental unit of a streaming response.

    ``finish_reason`` is only meaningful when ``done`` is true, and a done
    delta is always the last one.
    """

    text: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    done: bool = False
    finish_reason: str = ""


__all__ = [
    "ChatRequest",
    "ChatResponse",
    "Delta",
    "Message",
    "Role",
    "Tool",
    "ToolCall",
    "ToolCallFragment",
    "ToolSpec",
    "Usage",
]
