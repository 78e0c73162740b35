"""Model catalog -- capability overrides used to annotate list_models().

Most providers only return bare model ids, so context size and feature
support come from a JSON catalog (``models.json``) shaped as::

    {"version": 1,
     "providers": {"OpenAI": {"defaults": {...},
                              "models": {"gpt-4o-mini": {"supports_tools": true}},
                              "exclude_patterns": ["*-preview"]}}}

The catalog is loaded once by the composition root and handed to adapters
read-only.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

from pydantic import BaseModel, Field


class ModelInfo(BaseModel):
    """What we know about one model."""

    name: str = ""
    context_size: int = 0
    supports_tools: bool = False
    supports_thinking: bool = False
    supports_input_image: bool = False
    supports_streaming: bool = False
    supports_json_mode: bool = False
    supports_structured: bool = False


class ModelOverride(BaseModel):
    """Per-model overrides. None means "keep the provider default"."""

    context_size: int | None = None
    supports_tools: bool | None = None
    supports_thinking: bool | None = None
    supports_input_image: bool | None = None
    supports_streaming: bool | None = None
    supports_json_mode: bool | None = None
    supports_structured: bool | None = None


class ProviderModels(BaseModel):
    models: dict[str, ModelOverride] = Field(default_factory=dict)
    defaults: ModelInfo = Field(default_factory=ModelInfo)
    exclude_patterns: list[str] = Field(default_factory=list)

    def is_excluded(self, model_id: str) -> bool:
        return any(fnmatch.fnmatch(model_id, pattern) for pattern in self.exclude_patterns)


class ModelCatalog(BaseModel):
    version: int = 1
    providers: dict[str, ProviderModels] = Field(default_factory=dict)

    def for_provider(self, kind: str) -> ProviderModels | None:
        return self.providers.get(kind)


def merge_model_info(defaults: ModelInfo, overrides: ModelOverride) -> ModelInfo:
    """Start from ``defaults`` and replace every field the override sets."""
    return defaults.model_copy(update=overrides.model_dump(exclude_none=True))


def load_model_catalog(path: str | Path) -> ModelCatalog:
    return ModelCatalog.model_validate_json(Path(path).read_text(encoding="utf-8"))
