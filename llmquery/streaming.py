"""Incremental decoders for the three streaming transports.

Each decoder consumes an async iterator of raw byte chunks (chunk
boundaries are arbitrary: a frame may span chunks and a chunk may carry
several frames) and yields Delta values in arrival order, always finishing
with exactly one done Delta. After iteration the decoder materializes a
ChatResponse whose text is the concatenation of every emitted fragment.

  EventStreamDecoder  -- OpenAI-compatible ``data: {...}`` / ``data: [DONE]``
  JSONArrayDecoder    -- Gemini, one JSON array streamed element by element
  NDJSONDecoder       -- Ollama, one JSON object per line

Frame policy differs on purpose: a malformed event-stream frame is logged
and skipped (keep-alives and comments show up there), while a malformed
array element or NDJSON line aborts the stream.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator
from enum import StrEnum
from typing import Any

from llmquery.errors import DecodeError, ProtocolError
from llmquery.toolcalls import (
    ToolCallAccumulator,
    normalize_gemini_function_calls,
    normalize_ollama_tool_calls,
)
from llmquery.types import ChatResponse, Delta, ToolCall, ToolCallFragment, Usage

logger = logging.getLogger(__name__)

_DONE_SENTINEL = b"[DONE]"
_JSON_LITERALS = ("true", "false", "null", "NaN", "Infinity", "-Infinity")
_NUMBER_CHARS = "0123456789+-.eE"


class DecoderState(StrEnum):
    AWAIT_OPEN_BRACKET = "await_open_bracket"
    READING = "reading"
    DONE = "done"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Usage extraction (shared with the non-streaming adapters)
# ---------------------------------------------------------------------------


def openai_usage(data: Any) -> Usage | None:
    if not isinstance(data, dict):
        return None
    return Usage(
        prompt_tokens=data.get("prompt_tokens") or 0,
        completion_tokens=data.get("completion_tokens") or 0,
        total_tokens=data.get("total_tokens") or 0,
    )


def gemini_usage(data: Any) -> Usage | None:
    if not isinstance(data, dict):
        return None
    return Usage(
        prompt_tokens=data.get("promptTokenCount") or 0,
        completion_tokens=data.get("candidatesTokenCount") or 0,
        total_tokens=data.get("totalTokenCount") or 0,
    )


def ollama_usage(data: dict[str, Any]) -> Usage | None:
    prompt = data.get("prompt_eval_count")
    completion = data.get("eval_count")
    if prompt is None and completion is None:
        return None
    prompt = prompt or 0
    completion = completion or 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def gemini_text(parts: list[dict[str, Any]] | None) -> str:
    """Concatenate the text of every part in a Gemini candidate."""
    return "".join(
        p["text"] for p in parts or [] if isinstance(p, dict) and isinstance(p.get("text"), str)
    )


def gemini_candidate(candidates: Any, body: bytes = b"") -> tuple[dict[str, Any], list[Any]]:
    """First candidate and its content parts; DecodeError when either is malformed."""
    candidate = candidates[0] if isinstance(candidates, list) else None
    if not isinstance(candidate, dict):
        raise DecodeError("first candidate is not an object", body=body)
    content = candidate.get("content") or {}
    parts = (content.get("parts") or []) if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise DecodeError("candidate content has no parts array", body=body)
    return candidate, parts


def _as_fragments(calls: list[ToolCall], start: int) -> list[ToolCallFragment]:
    return [
        ToolCallFragment(index=start + i, id=c.id, name=c.name, arguments=c.arguments_text)
        for i, c in enumerate(calls)
    ]


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncGenerator[bytes, None]:
    """Split a chunked byte stream into lines (``\\n`` or ``\\r\\n``).

    Lines stay undecoded; each decoder applies its own policy to bad UTF-8.
    """
    buffer = b""
    async for chunk in chunks:
        buffer += chunk
        while True:
            newline = buffer.find(b"\n")
            if newline < 0:
                break
            line, buffer = buffer[:newline], buffer[newline + 1:]
            yield line.rstrip(b"\r")
    if buffer:
        yield buffer.rstrip(b"\r")


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------


class StreamDecoder(ABC):
    """Common accumulation and the single terminal Delta.

    Subclasses implement ``_deltas`` and record ``finish_reason`` / ``usage``
    as they see them; this class concatenates text, reassembles tool calls
    and emits the done Delta.
    """

    def __init__(self) -> None:
        self.state = DecoderState.READING
        self.finish_reason = ""
        self.usage: Usage | None = None
        self._text_parts: list[str] = []
        self._tool_calls = ToolCallAccumulator()
        self._raw = bytearray()

    async def decode(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[Delta, None]:
        tapped = self._tap(chunks)
        try:
            async for delta in self._deltas(tapped):
                if delta.text:
                    self._text_parts.append(delta.text)
                for fragment in delta.tool_calls:
                    self._tool_calls.add(fragment)
                yield delta
            # Whatever follows the terminator still belongs to the raw body
            async for _ in tapped:
                pass
        except GeneratorExit:
            raise
        except BaseException:
            self.state = DecoderState.ERROR
            raise
        self.state = DecoderState.DONE
        yield Delta(done=True, finish_reason=self.finish_reason)

    def response(self) -> ChatResponse:
        """Aggregate of everything decoded so far."""
        return ChatResponse(
            text="".join(self._text_parts),
            finish_reason=self.finish_reason,
            tool_calls=self._tool_calls.finish(),
            usage=self.usage,
            raw=bytes(self._raw),
        )

    async def _tap(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[bytes, None]:
        async for chunk in chunks:
            self._raw.extend(chunk)
            yield chunk

    @abstractmethod
    def _deltas(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[Delta]:
        """Yield non-terminal deltas until the transport signals the end."""


class EventStreamDecoder(StreamDecoder):
    """``text/event-stream`` framing used by OpenAI-compatible providers."""

    async def _deltas(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[Delta, None]:
        async for line in iter_lines(chunks):
            # Only data: lines carry payload; comments and event: lines are skipped
            if not line.startswith(b"data:"):
                continue
            raw_data = line[5:].strip()
            if not raw_data:
                continue
            if raw_data == _DONE_SENTINEL:
                return

            try:
                chunk = json.loads(raw_data.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning("Skipping malformed stream frame: %s. data: %r", e, raw_data[:200])
                continue
            if not isinstance(chunk, dict):
                logger.warning("Skipping non-object stream frame: %r", raw_data[:200])
                continue

            if chunk.get("error"):
                raise ProtocolError(f"error event in stream: {chunk['error']}", body=raw_data)

            if chunk.get("usage"):
                self.usage = openai_usage(chunk["usage"])

            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0] if isinstance(choices, list) else None
            delta = (choice.get("delta") or {}) if isinstance(choice, dict) else None
            fragments = _stream_fragments(delta) if isinstance(delta, dict) else None
            if fragments is None:
                logger.warning("Skipping stream frame with unexpected shape: %r", raw_data[:200])
                continue

            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]

            text = delta.get("content") or ""
            if not isinstance(text, str):
                text = ""
            if text or fragments:
                yield Delta(text=text, tool_calls=fragments)


def _stream_fragments(delta: dict[str, Any]) -> list[ToolCallFragment] | None:
    """Tool-call fragments of one event-stream delta; None when malformed."""
    fragments = []
    raw_calls = delta.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        return None
    for position, tc in enumerate(raw_calls):
        function = (tc.get("function") or {}) if isinstance(tc, dict) else None
        if not isinstance(function, dict) or not isinstance(function.get("arguments") or "", str):
            return None
        if not isinstance(tc.get("index", position), int):
            return None
        fragments.append(ToolCallFragment(
            index=tc.get("index", position),
            id=tc.get("id") or "",
            name=function.get("name") or "",
            arguments=function.get("arguments") or "",
        ))
    return fragments


def _incomplete_json(error: json.JSONDecodeError, text: str) -> bool:
    """True when ``text`` failed to decode only because it stops mid-value."""
    rest = text[error.pos:]
    if error.msg.startswith("Unterminated string"):
        return True
    if error.msg.startswith("Invalid \\uXXXX escape"):
        return len(rest) <= 6
    # A number or literal cut short ("1.", "tr", "-Infin")
    return (
        not rest.strip(_NUMBER_CHARS)
        or any(literal.startswith(rest) for literal in _JSON_LITERALS)
    )


class JSONArrayDecoder(StreamDecoder):
    """Gemini ``streamGenerateContent``: the whole body is one JSON array.

    The opening ``[`` is consumed explicitly, then elements are decoded one
    complete object at a time; an element split across chunks waits for
    the rest of its bytes.
    """

    def __init__(self) -> None:
        super().__init__()
        self.state = DecoderState.AWAIT_OPEN_BRACKET
        self._json = json.JSONDecoder()
        self._buffer = ""
        self._expect_value = True
        self._elements = 0
        self._call_count = 0

    async def _deltas(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[Delta, None]:
        utf8 = codecs.getincrementaldecoder("utf-8")()
        async for chunk in chunks:
            self._buffer += self._text(utf8, chunk)
            for delta in self._drain(final=False):
                yield delta
            if self.state == DecoderState.DONE:
                return
        self._buffer += self._text(utf8, b"", final=True)
        for delta in self._drain(final=True):
            yield delta

        if self.state == DecoderState.AWAIT_OPEN_BRACKET:
            raise DecodeError("stream ended before the opening '[' of the JSON array")
        if self.state == DecoderState.READING:
            logger.warning("JSON array stream ended without closing ']'")

    @staticmethod
    def _text(utf8: codecs.IncrementalDecoder, chunk: bytes, final: bool = False) -> str:
        try:
            return utf8.decode(chunk, final)
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid UTF-8 in JSON array stream: {e}", body=chunk) from e

    def _skip_whitespace(self) -> bool:
        self._buffer = self._buffer.lstrip()
        return bool(self._buffer)

    def _drain(self, final: bool) -> list[Delta]:
        deltas: list[Delta] = []
        while self.state != DecoderState.DONE and self._skip_whitespace():
            head = self._buffer[0]

            if self.state == DecoderState.AWAIT_OPEN_BRACKET:
                if head != "[":
                    raise DecodeError(
                        f"expected '[' at start of stream, got {head!r}",
                        body=self._buffer[:200].encode("utf-8"),
                    )
                self._buffer = self._buffer[1:]
                self.state = DecoderState.READING
                logger.debug("Found opening '[' of the JSON array")
                continue

            if head == "]":
                if self._expect_value and self._elements:
                    raise DecodeError("trailing ',' before ']' in JSON array stream")
                self._buffer = self._buffer[1:]
                self.state = DecoderState.DONE
                break

            if head == ",":
                if self._expect_value:
                    raise DecodeError("unexpected ',' in JSON array stream")
                self._buffer = self._buffer[1:]
                self._expect_value = True
                continue

            if not self._expect_value:
                raise DecodeError(f"expected ',' or ']' between array elements, got {head!r}")

            try:
                element, end = self._json.raw_decode(self._buffer)
            except json.JSONDecodeError as e:
                if final or not _incomplete_json(e, self._buffer):
                    raise DecodeError(
                        f"malformed JSON array element: {e}",
                        body=self._buffer[:500].encode("utf-8"),
                    ) from e
                # Element not fully arrived yet
                break

            self._buffer = self._buffer[end:]
            self._expect_value = False
            self._elements += 1
            delta = self._handle(element)
            if delta is not None:
                deltas.append(delta)
        return deltas

    def _handle(self, element: Any) -> Delta | None:
        if not isinstance(element, dict):
            raise DecodeError(f"expected object in JSON array stream, got {type(element).__name__}")
        if element.get("error"):
            raise ProtocolError(
                f"error object in stream: {element['error']}",
                body=json.dumps(element).encode("utf-8"),
            )

        usage = gemini_usage(element.get("usageMetadata"))
        if usage and usage.total_tokens > 0:
            self.usage = usage

        candidates = element.get("candidates") or []
        if not candidates:
            return None
        candidate, parts = gemini_candidate(candidates, body=json.dumps(element).encode("utf-8"))
        if candidate.get("finishReason"):
            self.finish_reason = candidate["finishReason"]

        text = gemini_text(parts)
        calls = normalize_gemini_function_calls(parts)
        fragments = _as_fragments(calls, self._call_count)
        self._call_count += len(calls)
        if text or fragments:
            return Delta(text=text, tool_calls=fragments)
        return None


class NDJSONDecoder(StreamDecoder):
    """Ollama ``/api/chat`` stream: one JSON object per line until ``done``."""

    def __init__(self) -> None:
        super().__init__()
        self._call_count = 0

    async def _deltas(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[Delta, None]:
        async for line in iter_lines(chunks):
            if not line.strip():
                continue
            try:
                frame = json.loads(line.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise DecodeError(f"malformed NDJSON line: {e}", body=line) from e
            if not isinstance(frame, dict):
                raise DecodeError("NDJSON line is not an object", body=line)
            if frame.get("error"):
                raise ProtocolError(f"error in stream: {frame['error']}", body=line)

            message = frame.get("message") or {}
            if not isinstance(message, dict):
                raise DecodeError("NDJSON message is not an object", body=line)
            text = message.get("content") or ""
            calls = normalize_ollama_tool_calls(message.get("tool_calls"))
            fragments = _as_fragments(calls, self._call_count)
            self._call_count += len(calls)
            if text or fragments:
                yield Delta(text=text, tool_calls=fragments)

            if frame.get("done"):
                self.finish_reason = frame.get("done_reason") or "stop"
                self.usage = ollama_usage(frame)
                return


# ---------------------------------------------------------------------------
# ChatStream -- what adapters hand back from stream()
# ---------------------------------------------------------------------------


class ChatStream:
    """Lazy, single-use stream of Deltas for one call.

    The HTTP request is sent when iteration starts and the response is
    closed when iteration ends, fails or the stream is closed. Use as
    ``async with adapter.stream(req) as stream: async for delta in stream``.
    """

    def __init__(self, source: AsyncGenerator[bytes, None], decoder: StreamDecoder) -> None:
        self._source = source
        self._decoder = decoder
        self._response: ChatResponse | None = None
        self._started = False

    def __aiter__(self) -> AsyncGenerator[Delta, None]:
        if self._started:
            raise RuntimeError("ChatStream can only be iterated once")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncGenerator[Delta, None]:
        try:
            async for delta in self._decoder.decode(self._source):
                if delta.done:
                    self._response = self._decoder.response()
                yield delta
        finally:
            await self._source.aclose()

    @property
    def response(self) -> ChatResponse:
        """Aggregated response; available once the done Delta has been seen."""
        if self._response is None:
            raise RuntimeError("stream has not finished yet")
        return self._response

    async def collect(self) -> ChatResponse:
        """Drain the stream and return the aggregated response."""
        async for _ in self:
            pass
        return self.response

    async def pump(self, queue: asyncio.Queue) -> ChatResponse:
        """Producer side of a queue bridge.

        Puts every Delta on ``queue``; on failure the exception itself is
        queued (so the consumer wakes up) and then re-raised here.
        """
        try:
            async for delta in self:
                await queue.put(delta)
        except Exception as e:
            await queue.put(e)
            raise
        return self.response

    async def aclose(self) -> None:
        await self._source.aclose()

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


async def iter_queue(queue: asyncio.Queue) -> AsyncGenerator[Delta, None]:
    """Consumer side of ``ChatStream.pump``: yield deltas through the done one."""
    while True:
        item = await queue.get()
        if isinstance(item, BaseException):
            raise item
        yield item
        if item.done:
            return


__all__ = [
    "ChatStream",
    "DecoderState",
    "EventStreamDecoder",
    "JSONArrayDecoder",
    "NDJSONDecoder",
    "StreamDecoder",
    "iter_lines",
    "iter_queue",
]
