"""ProviderAdapter -- the one interface every vendor variant implements.

Adapters translate ChatRequest to the provider's wire payload, perform the
call over httpx and translate the reply back. httpx exceptions never leave
this package: network failures become TransportError, non-2xx replies
ProtocolError (carrying the raw body), and bodies that don't match the
expected schema DecodeError. Nothing is retried.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from enum import StrEnum
from typing import Any

import httpx

from llmquery.catalog import ModelInfo, ProviderModels, merge_model_info
from llmquery.errors import DecodeError, ProtocolError, TransportError
from llmquery.streaming import ChatStream
from llmquery.types import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

_BODY_LOG_LIMIT = 500


class ProviderKind(StrEnum):
    OPENAI = "OpenAI"
    OPENROUTER = "OpenRouter"
    GEMINI = "Gemini"
    XAI = "XAI"
    OLLAMA = "Ollama"


def default_timeout(connect: float = 10.0, read: float = 120.0) -> httpx.Timeout:
    return httpx.Timeout(connect=connect, read=read, write=10.0, pool=10.0)


class ProviderAdapter(ABC):
    """Base class holding fixed configuration and the shared HTTP plumbing.

    Adapters are stateless beyond their configuration, so one instance can
    serve many concurrent calls. Pass ``client`` to share a connection pool
    (it is then left open by ``aclose``).
    """

    kind: ProviderKind

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        catalog: ProviderModels | None = None,
        extra_headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.catalog = catalog
        self.extra_headers = dict(extra_headers or {})
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(
            timeout=timeout or default_timeout(),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @abstractmethod
    async def query(self, request: ChatRequest) -> ChatResponse:
        """Single non-streaming call."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> ChatStream:
        """Streaming call. Validation happens here; I/O starts on iteration."""

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Models the provider enumerates, annotated from the catalog."""

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> ProviderAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _headers(self, request: ChatRequest | None = None, **extra: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self._auth_headers()}
        headers.update(self.extra_headers)
        if request is not None:
            headers.update(request.extra_headers)
        headers.update(extra)
        return headers

    async def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str]
    ) -> tuple[Any, bytes]:
        """POST and decode a JSON reply; returns (decoded, raw body)."""
        logger.debug("POST %s", url)
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.warning("Failed HTTP request: POST %s: %s", url, e)
            raise TransportError(f"POST {url} failed: {e}") from e
        return self._decode_reply(response)

    async def _get_json(self, url: str, headers: dict[str, str]) -> tuple[Any, bytes]:
        logger.debug("GET %s", url)
        try:
            response = await self._http.get(url, headers=headers)
        except httpx.RequestError as e:
            logger.warning("Failed HTTP request: GET %s: %s", url, e)
            raise TransportError(f"GET {url} failed: {e}") from e
        return self._decode_reply(response)

    def _decode_reply(self, response: httpx.Response) -> tuple[Any, bytes]:
        raw = response.content
        if not response.is_success:
            logger.warning(
                "Non-2xx status %d from %s, body: %s",
                response.status_code,
                response.request.url,
                raw[:_BODY_LOG_LIMIT],
            )
            raise ProtocolError(
                f"received non-2xx status code {response.status_code}",
                status_code=response.status_code,
                body=raw,
            )
        try:
            return json.loads(raw), raw
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"response is not valid JSON: {e}", body=raw) from e

    async def _stream_body(
        self, url: str, payload: dict[str, Any], headers: dict[str, str]
    ) -> AsyncGenerator[bytes, None]:
        """Open a streaming POST and yield raw body chunks.

        The response is closed when the generator is exhausted or closed.
        """
        logger.debug("POST %s (stream)", url)
        try:
            async with self._http.stream("POST", url, json=payload, headers=headers) as response:
                if not response.is_success:
                    body = await response.aread()
                    logger.warning(
                        "Non-2xx status %d from %s, body: %s",
                        response.status_code,
                        url,
                        body[:_BODY_LOG_LIMIT],
                    )
                    raise ProtocolError(
                        f"received non-2xx status code {response.status_code}",
                        status_code=response.status_code,
                        body=body,
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.RequestError as e:
            logger.warning("Stream from %s failed: %s", url, e)
            raise TransportError(f"stream from {url} failed: {e}") from e

    # ------------------------------------------------------------------
    # Catalog annotation
    # ------------------------------------------------------------------

    def _annotate(self, model_ids: list[str], keep_unlisted: bool = False) -> list[ModelInfo]:
        """Turn bare ids into ModelInfo using the injected catalog.

        Without a catalog entry for this provider every id is returned bare.
        With one, ids missing from the catalog are dropped unless
        ``keep_unlisted``, and ``exclude_patterns`` always apply.
        """
        if self.catalog is None:
            infos = [ModelInfo(name=model_id) for model_id in model_ids]
            return sorted(infos, key=lambda info: info.name)

        infos = []
        for model_id in model_ids:
            if self.catalog.is_excluded(model_id):
                continue
            override = self.catalog.models.get(model_id)
            if override is not None:
                info = merge_model_info(self.catalog.defaults, override)
            elif keep_unlisted:
                info = self.catalog.defaults.model_copy()
            else:
                continue
            info.name = model_id
            infos.append(info)
        return sorted(infos, key=lambda info: info.name)
