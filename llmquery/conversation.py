"""Conversation -- the ordered message log for one chat session.

One read/write lock guards the list: mutators take it exclusively,
snapshot readers share it. Snapshots are deep copies, so a request built
from one can be in flight while the session keeps growing.

All mutators reject missing input the same way, raising
RequestValidationError before touching the log. A tool result whose id was
not issued by an earlier assistant message is logged, not rejected: the log
can be seeded from history this instance never saw.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from llmquery.errors import RequestValidationError
from llmquery.types import ChatRequest, ChatResponse, Message, Role

logger = logging.getLogger(__name__)


class _ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _copy_message(message: Message) -> Message:
    # ToolCall is frozen, so copying the list is enough
    return replace(message, tool_calls=list(message.tool_calls))


class Conversation:
    """Tracks a multi-turn conversation grounded by a system prompt."""

    def __init__(self, system_prompt: str) -> None:
        if not system_prompt:
            raise RequestValidationError("system prompt cannot be empty")
        self.system_prompt = system_prompt
        self._messages: list[Message] = [Message(role=Role.SYSTEM, content=system_prompt)]
        self._issued_tool_call_ids: set[str] = set()
        self._lock = _ReadWriteLock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._messages)

    @property
    def messages(self) -> list[Message]:
        return self.snapshot()

    def add_user_message(self, content: str) -> None:
        if not content:
            raise RequestValidationError("user message content cannot be empty")
        with self._lock.write():
            self._messages.append(Message(role=Role.USER, content=content))

    def add_assistant_response(self, response: ChatResponse | None) -> None:
        """Append the assistant turn, tool calls included, exactly as returned."""
        if response is None:
            raise RequestValidationError("assistant response cannot be None")
        if not response.text and not response.tool_calls:
            logger.warning("Appending empty assistant response (finish_reason=%s)", response.finish_reason)
        with self._lock.write():
            self._messages.append(Message(
                role=Role.ASSISTANT,
                content=response.text,
                tool_calls=list(response.tool_calls),
            ))
            self._issued_tool_call_ids.update(tc.id for tc in response.tool_calls)

    def add_tool_result_message(self, tool_call_id: str, result: str, name: str | None = None) -> None:
        if not tool_call_id:
            raise RequestValidationError("tool_call_id cannot be empty")
        with self._lock.write():
            if tool_call_id not in self._issued_tool_call_ids:
                logger.warning(
                    "Tool result %s does not answer any tool call issued in this conversation",
                    tool_call_id,
                )
            self._messages.append(Message(
                role=Role.TOOL,
                content=result,
                name=name,
                tool_call_id=tool_call_id,
            ))

    def snapshot(self) -> list[Message]:
        """Independent copy of the message list."""
        with self._lock.read():
            return [_copy_message(m) for m in self._messages]

    def build_request(self, **kwargs: Any) -> ChatRequest:
        """ChatRequest over a snapshot; kwargs set the other request fields."""
        return ChatRequest(messages=self.snapshot(), **kwargs)
