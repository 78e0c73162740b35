"""Provider adapters -- one per wire protocol family.

Public API:
    ProviderAdapter          - Abstract base: query / stream / list_models
    OpenAICompatibleAdapter  - OpenAI, OpenRouter, XAI
    GeminiAdapter            - Google Gemini (v1beta)
    OllamaAdapter            - Local Ollama runtime
    create_provider          - Build an adapter from Settings
"""

from llmquery.providers.base import ProviderAdapter, ProviderKind
from llmquery.providers.factory import (
    DEFAULT_MODELS,
    create_provider,
    get_provider_kind_and_default_model,
)
from llmquery.providers.gemini import GeminiAdapter
from llmquery.providers.ollama import OllamaAdapter
from llmquery.providers.openai_compat import OpenAICompatibleAdapter

__all__ = [
    "DEFAULT_MODELS",
    "GeminiAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderKind",
    "create_provider",
    "get_provider_kind_and_default_model",
]
