"""Composition root: Settings -> catalog -> API key -> adapter.

The model catalog is loaded here, once, and handed to the adapter it
belongs to; adapters never read files or the environment themselves.
"""

from __future__ import annotations

import logging

import httpx

from llmquery.catalog import ModelCatalog, load_model_catalog
from llmquery.config import Settings, get_api_key
from llmquery.errors import ConfigError
from llmquery.providers.base import ProviderAdapter, ProviderKind, default_timeout
from llmquery.providers.gemini import GeminiAdapter
from llmquery.providers.ollama import OllamaAdapter
from llmquery.providers.openai_compat import OpenAICompatibleAdapter

logger = logging.getLogger(__name__)

DEFAULT_MODELS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "gpt-4o-mini",
    ProviderKind.OPENROUTER: "qwen/qwen3-4b:free",
    ProviderKind.XAI: "grok-3-mini",
    ProviderKind.GEMINI: "gemini-2.5-flash",
    ProviderKind.OLLAMA: "qwen3:latest",
}

_BASE_URL_FIELDS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "openai_base_url",
    ProviderKind.OPENROUTER: "openrouter_base_url",
    ProviderKind.XAI: "xai_base_url",
    ProviderKind.GEMINI: "gemini_base_url",
    ProviderKind.OLLAMA: "ollama_base_url",
}


def get_provider_kind_and_default_model(name: str) -> tuple[ProviderKind, str]:
    """Resolve a provider name such as ``"openrouter"`` or ``"Gemini"``."""
    wanted = name.strip().lower()
    for kind in ProviderKind:
        if kind.value.lower() == wanted:
            return kind, DEFAULT_MODELS[kind]
    raise ConfigError(
        f"unknown provider {name!r}; expected one of {', '.join(k.value for k in ProviderKind)}"
    )


def create_provider(
    settings: Settings,
    kind: ProviderKind | str | None = None,
    model: str | None = None,
    catalog: ModelCatalog | None = None,
    client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Build the adapter for ``kind`` (default: ``settings.provider``).

    Model precedence: ``model`` argument, then ``settings.model``, then the
    provider default. Raises ConfigError on an unknown provider or a
    missing/short API key.
    """
    kind, default_model = get_provider_kind_and_default_model(str(kind or settings.provider))
    model = model or settings.model or default_model

    if catalog is None and settings.provider_info_filepath:
        try:
            catalog = load_model_catalog(settings.provider_info_filepath)
        except (OSError, ValueError) as e:
            logger.error("Failed to load model catalog %s: %s", settings.provider_info_filepath, e)
            raise ConfigError(f"cannot load model catalog: {e}") from e
        logger.info("Loaded model catalog from %s", settings.provider_info_filepath)

    common = dict(
        base_url=getattr(settings, _BASE_URL_FIELDS[kind]),
        model=model,
        catalog=catalog.for_provider(kind) if catalog else None,
        client=client,
        timeout=default_timeout(settings.api_timeout_connect, settings.api_timeout_read),
    )

    if kind == ProviderKind.OLLAMA:
        adapter: ProviderAdapter = OllamaAdapter(**common)
    elif kind == ProviderKind.GEMINI:
        adapter = GeminiAdapter(api_key=get_api_key(kind, settings), **common)
    else:
        extra_headers: dict[str, str] = {}
        if kind == ProviderKind.OPENROUTER:
            if settings.openrouter_referer:
                extra_headers["HTTP-Referer"] = settings.openrouter_referer
            if settings.openrouter_title:
                extra_headers["X-Title"] = settings.openrouter_title
        adapter = OpenAICompatibleAdapter(
            kind=kind,
            api_key=get_api_key(kind, settings),
            extra_headers=extra_headers,
            **common,
        )

    logger.info("Created %s provider (model=%s)", kind, model)
    return adapter
