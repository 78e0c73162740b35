"""Ollama adapter for a local runtime (``/api/chat``).

Messages mirror the OpenAI shape, but tool-call arguments travel as JSON
objects, sampling parameters nest under ``options`` and the stream is
newline-delimited JSON. Ollama never issues tool-call ids.
"""

from __future__ import annotations

import logging
from typing import Any

from llmquery.catalog import ModelInfo
from llmquery.errors import DecodeError, ProtocolError
from llmquery.providers.base import ProviderAdapter, ProviderKind
from llmquery.providers.openai_compat import tool_to_wire
from llmquery.streaming import ChatStream, NDJSONDecoder, ollama_usage
from llmquery.toolcalls import normalize_ollama_tool_calls, to_ollama_tool_call
from llmquery.types import ChatRequest, ChatResponse, Message

logger = logging.getLogger(__name__)


def to_ollama_messages(messages: list[Message]) -> list[dict[str, Any]]:
    out = []
    for msg in messages:
        item: dict[str, Any] = {"role": str(msg.role), "content": msg.content}
        if msg.tool_calls:
            item["tool_calls"] = [to_ollama_tool_call(tc) for tc in msg.tool_calls]
        if msg.tool_call_id:
            item["tool_call_id"] = msg.tool_call_id
        if msg.name:
            item["tool_name" if msg.tool_call_id else "name"] = msg.name
        out.append(item)
    return out


def build_payload(request: ChatRequest, default_model: str, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model or default_model,
        "messages": to_ollama_messages(request.messages),
        "stream": stream,
    }
    options: dict[str, Any] = {}
    if request.temperature is not None:
        options["temperature"] = request.temperature
    if request.top_p is not None:
        options["top_p"] = request.top_p
    if request.max_tokens is not None:
        options["num_predict"] = request.max_tokens
    if options:
        payload["options"] = options
    if request.tools:
        payload["tools"] = [tool_to_wire(t) for t in request.tools]
    if request.response_format and request.response_format.get("type") == "json_object":
        payload["format"] = "json"
    payload.update(request.extras)
    return payload


def parse_response(data: Any, raw: bytes) -> ChatResponse:
    if not isinstance(data, dict):
        raise DecodeError("response is not a JSON object", body=raw)
    if data.get("error"):
        raise ProtocolError(f"error in response body: {data['error']}", status_code=200, body=raw)

    message = data.get("message")
    if not isinstance(message, dict):
        raise DecodeError("response has no message", body=raw)
    if not data.get("done", True):
        logger.warning("Non-streaming Ollama reply has done=false")

    return ChatResponse(
        text=message.get("content") or "",
        finish_reason=data.get("done_reason") or "stop",
        tool_calls=normalize_ollama_tool_calls(message.get("tool_calls")),
        usage=ollama_usage(data),
        raw=raw,
    )


class OllamaAdapter(ProviderAdapter):
    kind = ProviderKind.OLLAMA

    async def query(self, request: ChatRequest) -> ChatResponse:
        request.validate()
        data, raw = await self._post_json(
            self.base_url + "/api/chat",
            build_payload(request, self.model, stream=False),
            self._headers(request),
        )
        logger.debug("Successful Ollama query, raw body: %s", raw[:500])
        return parse_response(data, raw)

    def stream(self, request: ChatRequest) -> ChatStream:
        request.validate()
        return ChatStream(
            self._stream_body(
                self.base_url + "/api/chat",
                build_payload(request, self.model, stream=True),
                self._headers(request),
            ),
            NDJSONDecoder(),
        )

    async def list_models(self) -> list[ModelInfo]:
        data, raw = await self._get_json(self.base_url + "/api/tags", self._headers())
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise DecodeError("tags response has no models array", body=raw)
        # Local installs are whatever the user pulled; keep ids the catalog lacks
        return self._annotate(
            [m["name"] for m in models if isinstance(m, dict) and m.get("name")],
            keep_unlisted=True,
        )
