"""Google Gemini adapter (Generative Language API, v1beta).

Requests use ``contents[]`` with roles ``user``/``model`` and a separate
``systemInstruction``; sampling parameters nest under ``generationConfig``.
``streamGenerateContent`` returns one JSON array streamed element by
element, not an event-stream.

Gemini issues no tool-call ids: ``functionCall`` parts get synthesized
ids, and tool results are sent back as ``functionResponse`` parts named
after the call they answer.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from llmquery.catalog import ModelInfo
from llmquery.errors import DecodeError, ProtocolError
from llmquery.providers.base import ProviderAdapter, ProviderKind
from llmquery.streaming import (
    ChatStream,
    JSONArrayDecoder,
    gemini_candidate,
    gemini_text,
    gemini_usage,
)
from llmquery.toolcalls import normalize_gemini_function_calls, to_gemini_function_call
from llmquery.types import ChatRequest, ChatResponse, Message, Role

logger = logging.getLogger(__name__)

_API_PREFIX = "/v1beta/models"

_TOOL_CHOICE_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


def first_system_message(messages: list[Message]) -> str:
    for msg in messages:
        if msg.role == Role.SYSTEM and msg.content:
            return msg.content
    return ""


def _function_response(content: str) -> dict[str, Any]:
    # functionResponse.response must be an object
    try:
        decoded = json.loads(content)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded
    return {"result": content}


def to_gemini_contents(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert the message log to Gemini ``contents``; system messages are dropped."""
    call_names: dict[str, str] = {}
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            continue

        if msg.role == Role.TOOL:
            part = {"functionResponse": {
                "name": call_names.get(msg.tool_call_id or "", msg.name or ""),
                "response": _function_response(msg.content),
            }}
            previous = out[-1] if out else None
            # Results for one model turn travel together
            if previous and previous["role"] == "user" and "functionResponse" in previous["parts"][0]:
                previous["parts"].append(part)
            else:
                out.append({"role": "user", "parts": [part]})
            continue

        parts: list[dict[str, Any]] = []
        if msg.content:
            parts.append({"text": msg.content})
        for call in msg.tool_calls:
            call_names[call.id] = call.name
            parts.append(to_gemini_function_call(call))
        if not parts:
            continue
        out.append({"role": "model" if msg.role == Role.ASSISTANT else "user", "parts": parts})
    return out


def build_payload(request: ChatRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {"contents": to_gemini_contents(request.messages)}

    system = first_system_message(request.messages)
    if system:
        payload["systemInstruction"] = {"role": "system", "parts": [{"text": system}]}

    generation: dict[str, Any] = {}
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if request.top_p is not None:
        generation["topP"] = request.top_p
    if request.max_tokens is not None:
        generation["maxOutputTokens"] = request.max_tokens
    if request.response_format and request.response_format.get("type") in ("json_object", "json_schema"):
        generation["responseMimeType"] = "application/json"
    if generation:
        payload["generationConfig"] = generation

    if request.tools:
        payload["tools"] = [{"functionDeclarations": [
            {
                "name": t.function.name,
                "description": t.function.description,
                "parameters": t.function.parameters,
            }
            for t in request.tools
        ]}]
        mode = _TOOL_CHOICE_MODES.get(request.tool_choice) if isinstance(request.tool_choice, str) else None
        if mode:
            payload["toolConfig"] = {"functionCallingConfig": {"mode": mode}}

    payload.update(request.extras)
    return payload


def parse_response(data: Any, raw: bytes) -> ChatResponse:
    if not isinstance(data, dict):
        raise DecodeError("response is not a JSON object", body=raw)
    if data.get("error"):
        raise ProtocolError(f"error in response body: {data['error']}", status_code=200, body=raw)

    candidates = data.get("candidates")
    if not candidates:
        feedback = data.get("promptFeedback")
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            raise ProtocolError(f"prompt blocked: {block_reason}", status_code=200, body=raw)
        raise DecodeError("no candidates in response", body=raw)

    candidate, parts = gemini_candidate(candidates, body=raw)
    return ChatResponse(
        text=gemini_text(parts),
        finish_reason=candidate.get("finishReason") or "",
        tool_calls=normalize_gemini_function_calls(parts),
        usage=gemini_usage(data.get("usageMetadata")),
        raw=raw,
    )


def _model_path(model: str) -> str:
    return model.removeprefix("models/")


class GeminiAdapter(ProviderAdapter):
    kind = ProviderKind.GEMINI

    def _auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    def _url(self, request: ChatRequest, method: str) -> str:
        model = _model_path(request.model or self.model)
        return f"{self.base_url}{_API_PREFIX}/{model}:{method}"

    async def query(self, request: ChatRequest) -> ChatResponse:
        request.validate()
        data, raw = await self._post_json(
            self._url(request, "generateContent"), build_payload(request), self._headers(request)
        )
        logger.debug("Successful Gemini query, raw body: %s", raw[:500])
        return parse_response(data, raw)

    def stream(self, request: ChatRequest) -> ChatStream:
        request.validate()
        url = self._url(request, "streamGenerateContent")
        return ChatStream(
            self._stream_body(url, build_payload(request), self._headers(request)),
            JSONArrayDecoder(),
        )

    async def list_models(self) -> list[ModelInfo]:
        model_ids: list[str] = []
        url = f"{self.base_url}{_API_PREFIX}"
        page_token = ""
        while True:
            page_url = f"{url}?pageToken={page_token}" if page_token else url
            data, raw = await self._get_json(page_url, self._headers())
            models = data.get("models") if isinstance(data, dict) else None
            if not isinstance(models, list):
                raise DecodeError("models response has no models array", body=raw)
            model_ids.extend(
                _model_path(m["name"]) for m in models if isinstance(m, dict) and m.get("name")
            )
            page_token = data.get("nextPageToken") or ""
            if not page_token:
                break
        return self._annotate(model_ids)
