"""Tests for the streaming decoders and ChatStream.

Covers:
- EventStreamDecoder (OpenAI-compatible data: frames, [DONE], tool-call fragments)
- JSONArrayDecoder (Gemini array framing, split chunks, missing '[')
- NDJSONDecoder (Ollama lines, done_reason, synthesized ids)
- ChatStream single-use iteration, collect(), pump()/iter_queue()
"""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from conftest import chunked
from llmquery.errors import DecodeError, ProtocolError
from llmquery.streaming import (
    ChatStream,
    DecoderState,
    EventStreamDecoder,
    JSONArrayDecoder,
    NDJSONDecoder,
    iter_lines,
    iter_queue,
)


async def _decode(decoder, *parts: bytes) -> list:
    return [d async for d in decoder.decode(chunked(*parts))]


def _split(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


async def _consume(decoder, source) -> list:
    return [d async for d in decoder.decode(source)]


def _sse(*frames: str) -> bytes:
    return "".join(f"data: {f}\n\n" for f in frames).encode("utf-8")


# ---------------------------------------------------------------------------
# iter_lines
# ---------------------------------------------------------------------------


class TestIterLines:
    @pytest.mark.asyncio
    async def test_lines_across_chunks(self):
        lines = [line async for line in iter_lines(chunked(b"ab", b"c\r\nde", b"f\n", b"tail"))]
        assert lines == [b"abc", b"def", b"tail"]

    @pytest.mark.asyncio
    async def test_invalid_utf8_left_undecoded(self):
        lines = [line async for line in iter_lines(chunked(b"ok\n\xff\xfe\n"))]
        assert lines == [b"ok", b"\xff\xfe"]


# ---------------------------------------------------------------------------
# EventStreamDecoder
# ---------------------------------------------------------------------------


class TestEventStreamDecoder:
    @pytest.mark.asyncio
    async def test_hello_world_scenario(self):
        body = (
            b'data:{"choices":[{"delta":{"content":"Hello,"}}]}\n\n'
            b'data:{"choices":[{"delta":{"content":" world!"},"finish_reason":"stop"}]}\n\n'
            b"data:[DONE]\n\n"
        )
        decoder = EventStreamDecoder()
        deltas = await _decode(decoder, body)

        assert [d.text for d in deltas] == ["Hello,", " world!", ""]
        assert [d.done for d in deltas] == [False, False, True]
        assert deltas[-1].finish_reason == "stop"
        assert decoder.response().text == "Hello, world!"
        assert decoder.state == DecoderState.DONE

    @pytest.mark.asyncio
    async def test_frames_split_mid_line(self):
        body = _sse(
            json.dumps({"choices": [{"delta": {"content": "Bonjour"}}]}),
            json.dumps({"choices": [{"delta": {"content": " à tous"}, "finish_reason": "stop"}]}),
            "[DONE]",
        )
        decoder = EventStreamDecoder()
        deltas = await _decode(decoder, *_split(body, 5))
        assert "".join(d.text for d in deltas) == "Bonjour à tous"
        assert sum(d.done for d in deltas) == 1

    @pytest.mark.asyncio
    async def test_malformed_frame_skipped(self, caplog):
        body = _sse(
            '{"choices":[{"delta":{"content":"a"}}]}',
            "{not json",
            '{"choices":[{"delta":{"content":"b"}}]}',
            "[DONE]",
        ) + b": keep-alive comment\n"
        decoder = EventStreamDecoder()
        with caplog.at_level(logging.WARNING, logger="llmquery.streaming"):
            deltas = await _decode(decoder, body)
        assert decoder.response().text == "ab"
        assert deltas[-1].done
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [
        '{"choices":[null]}',
        '{"choices":"none"}',
        '{"choices":[{"delta":"text"}]}',
        '{"choices":[{"delta":{"tool_calls":{"index":0}}}]}',
        '{"choices":[{"delta":{"tool_calls":["call"]}}]}',
        '{"choices":[{"delta":{"tool_calls":[{"function":"f"}]}}]}',
        '{"choices":[{"delta":{"tool_calls":[{"function":{"arguments":{"a":1}}}]}}]}',
        '[1, 2]',
    ])
    async def test_unexpected_frame_shape_skipped(self, frame, caplog):
        body = _sse(frame, '{"choices":[{"delta":{"content":"ok"}}]}', "[DONE]")
        decoder = EventStreamDecoder()
        with caplog.at_level(logging.WARNING, logger="llmquery.streaming"):
            deltas = await _decode(decoder, body)
        assert [d.text for d in deltas] == ["ok", ""]
        assert decoder.response().tool_calls == []
        assert "Skipping" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_utf8_frame_skipped(self, caplog):
        body = (
            b'data: {"choices":[{"delta":{"content":"\xff"}}]}\n\n'
            + _sse('{"choices":[{"delta":{"content":"ok"}}]}', "[DONE]")
        )
        decoder = EventStreamDecoder()
        with caplog.at_level(logging.WARNING, logger="llmquery.streaming"):
            await _decode(decoder, body)
        assert decoder.response().text == "ok"
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    async def test_error_frame_raises(self):
        decoder = EventStreamDecoder()
        body = _sse('{"error":{"message":"rate limited"}}')
        with pytest.raises(ProtocolError, match="rate limited"):
            await _decode(decoder, body)
        assert decoder.state == DecoderState.ERROR

    @pytest.mark.asyncio
    async def test_tool_call_fragments_and_usage(self):
        body = _sse(
            json.dumps({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "lookup", "arguments": ""}},
            ]}}]}),
            json.dumps({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": '{"q":'}},
            ]}}]}),
            json.dumps({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": '"x"}'}},
            ]}, "finish_reason": "tool_calls"}]}),
            json.dumps({"choices": [], "usage": {
                "prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15,
            }}),
            "[DONE]",
        )
        decoder = EventStreamDecoder()
        deltas = await _decode(decoder, body)
        response = decoder.response()

        assert deltas[-1].finish_reason == "tool_calls"
        assert len(response.tool_calls) == 1
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].arguments == b'{"q":"x"}'
        assert response.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_eof_without_done_sentinel_still_finishes(self):
        decoder = EventStreamDecoder()
        deltas = await _decode(decoder, _sse('{"choices":[{"delta":{"content":"x"}}]}'))
        assert deltas[-1].done
        assert decoder.response().text == "x"

    @pytest.mark.asyncio
    async def test_raw_bytes_captured(self):
        body = _sse('{"choices":[{"delta":{"content":"x"}}]}', "[DONE]")
        decoder = EventStreamDecoder()
        await _decode(decoder, *_split(body, 3))
        assert decoder.response().raw == body

    @pytest.mark.asyncio
    async def test_bytes_after_done_kept_in_raw(self):
        body = _sse('{"choices":[{"delta":{"content":"x"}}]}', "[DONE]") + b": trailer\n"
        decoder = EventStreamDecoder()
        deltas = await _decode(decoder, *_split(body, 5))
        assert sum(d.done for d in deltas) == 1
        assert decoder.response().raw == body

    @pytest.mark.asyncio
    async def test_cancelled_decode_marks_error(self):
        started = asyncio.Event()

        async def slow_source():
            yield _sse('{"choices":[{"delta":{"content":"a"}}]}')
            started.set()
            await asyncio.sleep(10)
            yield b""

        decoder = EventStreamDecoder()
        task = asyncio.create_task(_consume(decoder, slow_source()))
        await asyncio.wait_for(started.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert decoder.state == DecoderState.ERROR


# ---------------------------------------------------------------------------
# JSONArrayDecoder
# ---------------------------------------------------------------------------


def _gemini_chunk(text: str, finish: str | None = None, usage: dict | None = None) -> dict:
    candidate: dict = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish:
        candidate["finishReason"] = finish
    chunk: dict = {"candidates": [candidate]}
    if usage:
        chunk["usageMetadata"] = usage
    return chunk


class TestJSONArrayDecoder:
    def _body(self) -> bytes:
        return json.dumps([
            _gemini_chunk("Héllo"),
            _gemini_chunk(", wörld", finish="STOP", usage={
                "promptTokenCount": 4, "candidatesTokenCount": 3, "totalTokenCount": 7,
            }),
        ], indent=1, ensure_ascii=False).encode("utf-8")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 2, 7, 64, 10_000])
    async def test_split_at_any_boundary(self, size):
        decoder = JSONArrayDecoder()
        deltas = await _decode(decoder, *_split(self._body(), size))

        assert "".join(d.text for d in deltas) == "Héllo, wörld"
        assert sum(d.done for d in deltas) == 1
        assert deltas[-1].finish_reason == "STOP"
        response = decoder.response()
        assert response.text == "Héllo, wörld"
        assert response.usage.total_tokens == 7

    @pytest.mark.asyncio
    async def test_missing_open_bracket(self):
        decoder = JSONArrayDecoder()
        body = json.dumps(_gemini_chunk("hi")).encode()
        with pytest.raises(DecodeError, match=r"expected '\['"):
            await _decode(decoder, body)

    @pytest.mark.asyncio
    async def test_empty_body(self):
        with pytest.raises(DecodeError):
            await _decode(JSONArrayDecoder(), b"")

    @pytest.mark.asyncio
    async def test_truncated_element(self):
        with pytest.raises(DecodeError, match="malformed"):
            await _decode(JSONArrayDecoder(), b'[{"candidates": [{"content": ')

    @pytest.mark.asyncio
    async def test_syntax_error_raised_before_end_of_stream(self):
        consumed = []

        async def source():
            for part in (b'[{"candidates": x', b" " * 64, b"}]"):
                consumed.append(part)
                yield part

        with pytest.raises(DecodeError, match="malformed"):
            await _consume(JSONArrayDecoder(), source())
        assert len(consumed) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 3])
    async def test_values_cut_mid_token_wait_for_more(self, size):
        body = b'[{"n": -12.5e3, "ok": true, "s": "\\u00e9", "candidates": []}]'
        deltas = await _decode(JSONArrayDecoder(), *_split(body, size))
        assert [d.done for d in deltas] == [True]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("element", [
        {"candidates": ["x"]},
        {"candidates": {"0": {}}},
        {"candidates": [{"content": "text"}]},
        {"candidates": [{"content": {"parts": "text"}}]},
        {"candidates": [{"content": {"parts": [{"functionCall": "f"}]}}]},
    ])
    async def test_unexpected_element_shape(self, element):
        decoder = JSONArrayDecoder()
        with pytest.raises(DecodeError):
            await _decode(decoder, json.dumps([element]).encode())
        assert decoder.state == DecoderState.ERROR

    @pytest.mark.asyncio
    async def test_invalid_utf8(self):
        with pytest.raises(DecodeError, match="UTF-8"):
            await _decode(JSONArrayDecoder(), b'[{"candidates": [{"content": {"parts": [{"text": "\xff"}]}}]}]')

    @pytest.mark.asyncio
    async def test_bytes_after_close_bracket_kept_in_raw(self):
        body = json.dumps([_gemini_chunk("hi", finish="STOP")]).encode() + b"\n\n"
        decoder = JSONArrayDecoder()
        await _decode(decoder, *_split(body, 4))
        assert decoder.response().raw == body

    @pytest.mark.asyncio
    async def test_missing_close_bracket_logged(self, caplog):
        body = b"[" + json.dumps(_gemini_chunk("hi", finish="STOP")).encode()
        with caplog.at_level(logging.WARNING, logger="llmquery.streaming"):
            deltas = await _decode(JSONArrayDecoder(), body)
        assert deltas[-1].done
        assert "closing" in caplog.text

    @pytest.mark.asyncio
    async def test_error_element(self):
        body = b'[{"error": {"code": 400, "message": "bad model"}}]'
        with pytest.raises(ProtocolError, match="bad model"):
            await _decode(JSONArrayDecoder(), body)

    @pytest.mark.asyncio
    async def test_function_call_element(self):
        body = json.dumps([{"candidates": [{"content": {"parts": [
            {"functionCall": {"name": "search", "args": {"q": "x"}}},
        ]}, "finishReason": "STOP"}]}]).encode()
        decoder = JSONArrayDecoder()
        deltas = await _decode(decoder, body)
        assert deltas[0].tool_calls[0].name == "search"
        call = decoder.response().tool_calls[0]
        assert call.id.startswith("call_")
        assert json.loads(call.arguments) == {"q": "x"}


# ---------------------------------------------------------------------------
# NDJSONDecoder
# ---------------------------------------------------------------------------


def _ndjson(*frames: dict) -> bytes:
    return b"".join(json.dumps(f).encode() + b"\n" for f in frames)


class TestNDJSONDecoder:
    @pytest.mark.asyncio
    async def test_lines_and_final_frame(self):
        body = _ndjson(
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True,
             "done_reason": "length", "prompt_eval_count": 12, "eval_count": 2},
        )
        decoder = NDJSONDecoder()
        deltas = await _decode(decoder, *_split(body, 9))

        assert [d.text for d in deltas if not d.done] == ["Hel", "lo"]
        assert deltas[-1].finish_reason == "length"
        response = decoder.response()
        assert response.text == "Hello"
        assert response.usage.prompt_tokens == 12
        assert response.usage.total_tokens == 14

    @pytest.mark.asyncio
    async def test_default_finish_reason(self):
        deltas = await _decode(NDJSONDecoder(), _ndjson({"message": {"content": "x"}, "done": True}))
        assert deltas[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_malformed_line(self):
        body = _ndjson({"message": {"content": "x"}, "done": False}) + b"{oops\n"
        with pytest.raises(DecodeError):
            await _decode(NDJSONDecoder(), body)

    @pytest.mark.asyncio
    async def test_invalid_utf8_line(self):
        body = _ndjson({"message": {"content": "x"}, "done": False}) + b'{"message": {"content": "\xff"}}\n'
        with pytest.raises(DecodeError, match="malformed"):
            await _decode(NDJSONDecoder(), body)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [[1], {"message": "text", "done": False}])
    async def test_unexpected_line_shape(self, frame):
        with pytest.raises(DecodeError):
            await _decode(NDJSONDecoder(), _ndjson(frame))

    @pytest.mark.asyncio
    async def test_error_line(self):
        with pytest.raises(ProtocolError, match="model not found"):
            await _decode(NDJSONDecoder(), _ndjson({"error": "model not found"}))

    @pytest.mark.asyncio
    async def test_tool_calls_get_unique_ids(self):
        call = {"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}
        body = _ndjson(
            {"message": {"content": "", "tool_calls": [call]}, "done": False},
            {"message": {"content": "", "tool_calls": [call]}, "done": False},
            {"message": {"content": ""}, "done": True},
        )
        decoder = NDJSONDecoder()
        await _decode(decoder, body)
        calls = decoder.response().tool_calls
        assert len(calls) == 2
        assert calls[0].id != calls[1].id


# ---------------------------------------------------------------------------
# ChatStream
# ---------------------------------------------------------------------------


_HELLO = _sse(
    '{"choices":[{"delta":{"content":"Hello,"}}]}',
    '{"choices":[{"delta":{"content":" world!"},"finish_reason":"stop"}]}',
    "[DONE]",
)


class TestChatStream:
    @pytest.mark.asyncio
    async def test_collect(self):
        stream = ChatStream(chunked(_HELLO), EventStreamDecoder())
        response = await stream.collect()
        assert response.text == "Hello, world!"
        assert response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_single_use(self):
        stream = ChatStream(chunked(_HELLO), EventStreamDecoder())
        await stream.collect()
        with pytest.raises(RuntimeError):
            async for _ in stream:
                pass

    @pytest.mark.asyncio
    async def test_response_before_done(self):
        stream = ChatStream(chunked(_HELLO), EventStreamDecoder())
        with pytest.raises(RuntimeError):
            stream.response

    @pytest.mark.asyncio
    async def test_aclose_closes_source(self):
        closed = asyncio.Event()

        async def source():
            try:
                yield _sse('{"choices":[{"delta":{"content":"a"}}]}')
                yield _sse('{"choices":[{"delta":{"content":"b"}}]}')
            finally:
                closed.set()

        async with ChatStream(source(), EventStreamDecoder()) as stream:
            async for delta in stream:
                assert delta.text == "a"
                break
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_pump_and_iter_queue(self):
        queue: asyncio.Queue = asyncio.Queue()
        stream = ChatStream(chunked(*_split(_HELLO, 4)), EventStreamDecoder())

        producer = asyncio.create_task(stream.pump(queue))
        received = [d async for d in iter_queue(queue)]
        response = await producer

        assert [d.text for d in received] == ["Hello,", " world!", ""]
        assert received[-1].done
        assert response.text == "Hello, world!"

    @pytest.mark.asyncio
    async def test_pump_forwards_failure(self):
        queue: asyncio.Queue = asyncio.Queue()
        first = b'[{"candidates": [{"content": {"parts": [{"text": "a"}]}}]}'
        stream = ChatStream(chunked(first, b", 42"), JSONArrayDecoder())

        producer = asyncio.create_task(stream.pump(queue))
        received = []
        with pytest.raises(DecodeError):
            async for delta in iter_queue(queue):
                received.append(delta)
        with pytest.raises(DecodeError):
            await producer
        assert [d.text for d in received] == ["a"]

    @pytest.mark.asyncio
    async def test_cancelling_consumer_task(self):
        started = asyncio.Event()

        async def slow_source():
            yield _sse('{"choices":[{"delta":{"content":"a"}}]}')
            started.set()
            await asyncio.sleep(10)
            yield b""

        stream = ChatStream(slow_source(), EventStreamDecoder())
        task = asyncio.create_task(stream.collect())
        await asyncio.wait_for(started.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
