"""Tool-call normalization between provider encodings and ToolCall.

OpenAI-compatible providers send ``{id, type, function: {name, arguments}}``
with arguments as a JSON-encoded string. Ollama sends
``{function: {name, arguments}}`` with a raw JSON object and no id. Gemini
sends ``functionCall: {name, args}`` parts, also without ids. IDs are
synthesized wherever the provider leaves them out, because tool-result
messages key off them.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from llmquery.errors import DecodeError, RequestValidationError
from llmquery.types import ToolCall, ToolCallFragment

logger = logging.getLogger(__name__)


def new_tool_call_id() -> str:
    """Globally unique id for providers that don't issue one."""
    return f"call_{uuid.uuid4().hex}"


def _arguments_bytes(arguments: Any) -> bytes:
    if arguments is None:
        return b"{}"
    if isinstance(arguments, str):
        return arguments.encode("utf-8")
    return json.dumps(arguments).encode("utf-8")


def _unique_id(candidate: str | None, seen: set[str]) -> str:
    if not candidate or candidate in seen:
        candidate = new_tool_call_id()
    seen.add(candidate)
    return candidate


def normalize_openai_tool_calls(raw_calls: list[dict[str, Any]] | None) -> list[ToolCall]:
    """Map ``message.tool_calls`` from an OpenAI-compatible reply."""
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for raw in raw_calls or []:
        function = raw.get("function") if isinstance(raw, dict) else None
        if not isinstance(function, dict):
            raise DecodeError(f"tool call without function object: {raw!r}")
        calls.append(ToolCall(
            id=_unique_id(raw.get("id"), seen),
            name=function.get("name") or "",
            arguments=_arguments_bytes(function.get("arguments")),
        ))
    return calls


def normalize_ollama_tool_calls(raw_calls: list[dict[str, Any]] | None) -> list[ToolCall]:
    """Map Ollama ``message.tool_calls``; every call gets a fresh id."""
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for raw in raw_calls or []:
        function = raw.get("function") if isinstance(raw, dict) else None
        if not isinstance(function, dict):
            raise DecodeError(f"tool call without function object: {raw!r}")
        calls.append(ToolCall(
            id=_unique_id(raw.get("id"), seen),
            name=function.get("name") or "",
            arguments=_arguments_bytes(function.get("arguments")),
        ))
    return calls


def normalize_gemini_function_calls(parts: list[dict[str, Any]] | None) -> list[ToolCall]:
    """Collect ``functionCall`` parts from a Gemini candidate."""
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for part in parts or []:
        fc = part.get("functionCall") if isinstance(part, dict) else None
        if not fc:
            continue
        if not isinstance(fc, dict):
            raise DecodeError(f"functionCall part is not an object: {fc!r}")
        calls.append(ToolCall(
            id=_unique_id(fc.get("id"), seen),
            name=fc.get("name") or "",
            arguments=_arguments_bytes(fc.get("args")),
        ))
    return calls


# ---------------------------------------------------------------------------
# Outbound encodings
# ---------------------------------------------------------------------------


def _arguments_object(call: ToolCall) -> Any:
    """Decode arguments for wire formats that want a JSON object, not a string."""
    if not call.arguments.strip():
        return {}
    try:
        return json.loads(call.arguments)
    except json.JSONDecodeError as e:
        raise RequestValidationError(
            f"tool call {call.id} arguments are not valid JSON: {e}"
        ) from e


def to_openai_tool_call(call: ToolCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": call.arguments_text},
    }


def to_ollama_tool_call(call: ToolCall) -> dict[str, Any]:
    return {"function": {"name": call.name, "arguments": _arguments_object(call)}}


def to_gemini_function_call(call: ToolCall) -> dict[str, Any]:
    return {"functionCall": {"name": call.name, "args": _arguments_object(call)}}


# ---------------------------------------------------------------------------
# Streaming accumulation
# ---------------------------------------------------------------------------


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments keyed by index.

    Event-stream providers send the id and name on the first fragment of a
    call and the arguments as string pieces on later ones.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def add(self, fragment: ToolCallFragment) -> None:
        acc = self._calls.setdefault(
            fragment.index, {"id": "", "name": "", "argument_parts": []}
        )
        if fragment.id:
            acc["id"] = fragment.id
        if fragment.name:
            acc["name"] = fragment.name
        if fragment.arguments:
            acc["argument_parts"].append(fragment.arguments)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def finish(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        seen: set[str] = set()
        for index in sorted(self._calls):
            acc = self._calls[index]
            arguments = "".join(acc["argument_parts"])
            calls.append(ToolCall(
                id=_unique_id(acc["id"], seen),
                name=acc["name"],
                arguments=arguments.encode("utf-8") if arguments else b"{}",
            ))
        if calls:
            logger.debug("Assembled %d streamed tool call(s)", len(calls))
        return calls
