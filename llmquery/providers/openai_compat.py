"""OpenAI-compatible adapter (OpenAI, OpenRouter, XAI and similar).

Wire format: POST {base}/chat/completions with ``{model, messages[],
tools?, tool_choice?, response_format?, temperature?, top_p?,
max_tokens?}``; the reply carries ``choices[0].message`` and ``usage``.
Streaming adds ``"stream": true`` and returns ``text/event-stream``.
"""

from __future__ import annotations

import logging
from typing import Any

from llmquery.catalog import ModelInfo
from llmquery.errors import DecodeError, ProtocolError
from llmquery.providers.base import ProviderAdapter, ProviderKind
from llmquery.streaming import ChatStream, EventStreamDecoder, openai_usage
from llmquery.toolcalls import normalize_openai_tool_calls, to_openai_tool_call
from llmquery.types import ChatRequest, ChatResponse, Message, Tool

logger = logging.getLogger(__name__)

_CHAT_ENDPOINT = "/chat/completions"


def tool_to_wire(tool: Tool) -> dict[str, Any]:
    """OpenAI function-tool shape; Ollama accepts the same."""
    return {
        "type": tool.type,
        "function": {
            "name": tool.function.name,
            "description": tool.function.description,
            "parameters": tool.function.parameters,
        },
    }


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for msg in messages:
        item: dict[str, Any] = {"role": str(msg.role), "content": msg.content}
        if msg.name:
            item["name"] = msg.name
        if msg.tool_call_id:
            item["tool_call_id"] = msg.tool_call_id
        if msg.tool_calls:
            item["tool_calls"] = [to_openai_tool_call(tc) for tc in msg.tool_calls]
            if not msg.content:
                item["content"] = None
        out.append(item)
    return out


def build_payload(request: ChatRequest, default_model: str, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model or default_model,
        "messages": to_openai_messages(request.messages),
        "stream": stream,
    }
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.tools:
        payload["tools"] = [tool_to_wire(t) for t in request.tools]
    if request.tool_choice is not None:
        payload["tool_choice"] = request.tool_choice
    if request.response_format is not None:
        payload["response_format"] = request.response_format
    # Provider-specific knobs (e.g. OpenRouter routing) go in verbatim
    payload.update(request.extras)
    return payload


def parse_response(data: Any, raw: bytes) -> ChatResponse:
    """Map a chat-completions reply to ChatResponse."""
    if not isinstance(data, dict):
        raise DecodeError("response is not a JSON object", body=raw)
    if data.get("error"):
        raise ProtocolError(f"error in response body: {data['error']}", status_code=200, body=raw)

    choices = data.get("choices")
    if not choices:
        raise DecodeError("no choices in response", body=raw)
    first = choices[0] if isinstance(choices, list) else None
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise DecodeError("first choice has no message object", body=raw)

    return ChatResponse(
        text=message.get("content") or "",
        finish_reason=first.get("finish_reason") or "",
        tool_calls=normalize_openai_tool_calls(message.get("tool_calls")),
        usage=openai_usage(data.get("usage")),
        raw=raw,
    )


class OpenAICompatibleAdapter(ProviderAdapter):
    """Any endpoint speaking the Chat Completions API."""

    def __init__(self, *, kind: ProviderKind = ProviderKind.OPENAI, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.kind = kind

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def query(self, request: ChatRequest) -> ChatResponse:
        request.validate()
        payload = build_payload(request, self.model, stream=False)
        data, raw = await self._post_json(
            self.base_url + _CHAT_ENDPOINT, payload, self._headers(request)
        )
        logger.debug("Successful %s query, raw body: %s", self.kind, raw[:500])
        return parse_response(data, raw)

    def stream(self, request: ChatRequest) -> ChatStream:
        request.validate()
        payload = build_payload(request, self.model, stream=True)
        headers = self._headers(request, Accept="text/event-stream")
        return ChatStream(
            self._stream_body(self.base_url + _CHAT_ENDPOINT, payload, headers),
            EventStreamDecoder(),
        )

    async def list_models(self) -> list[ModelInfo]:
        data, raw = await self._get_json(self.base_url + "/models", self._headers())
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise DecodeError("models response has no data array", body=raw)
        model_ids = [e["id"] for e in entries if isinstance(e, dict) and e.get("id")]
        # OpenRouter's directory is huge and changes daily; keep what the catalog doesn't know
        return self._annotate(model_ids, keep_unlisted=self.kind == ProviderKind.OPENROUTER)
