"""Settings via pydantic-settings with LLMQ_ env prefix.

API keys use validation_alias to read the conventional unprefixed env vars
(OPENAI_API_KEY, GEMINI_API_KEY, ...) so existing shell setups keep working.
"""

from __future__ import annotations

import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llmquery.errors import ConfigError

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 35


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LLMQ_", env_file=".env", extra="ignore", populate_by_name=True
    )

    # Provider selection
    provider: str = "openai"
    model: str = ""  # empty = provider default

    # Credentials -- unprefixed aliases match the vendors' own docs
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openrouter_api_key: str = Field("", validation_alias="OPEN_ROUTER_API_KEY")
    xai_api_key: str = Field("", validation_alias="XAI_API_KEY")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")

    # Endpoints
    openai_base_url: str = "https://api.openai.com/v1"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    xai_base_url: str = "https://api.x.ai/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    ollama_base_url: str = "http://localhost:11434"

    # OpenRouter attribution headers
    openrouter_referer: str = ""
    openrouter_title: str = ""

    # Model catalog used to annotate list_models()
    provider_info_filepath: str = Field("", validation_alias="PROVIDER_INFO_FILEPATH")

    # HTTP
    api_timeout_connect: float = 10.0  # seconds
    api_timeout_read: float = 120.0  # seconds

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_timeouts(self) -> "Settings":
        if self.api_timeout_connect <= 0:
            raise ValueError("api_timeout_connect must be positive")
        if self.api_timeout_read < self.api_timeout_connect:
            raise ValueError(
                f"api_timeout_read ({self.api_timeout_read}) must be >= "
                f"api_timeout_connect ({self.api_timeout_connect})"
            )
        return self


# env var name and settings attribute per provider that needs a key
_KEY_FIELDS: dict[str, tuple[str, str]] = {
    "OpenAI": ("OPENAI_API_KEY", "openai_api_key"),
    "OpenRouter": ("OPEN_ROUTER_API_KEY", "openrouter_api_key"),
    "XAI": ("XAI_API_KEY", "xai_api_key"),
    "Gemini": ("GEMINI_API_KEY", "gemini_api_key"),
}


def get_api_key(kind: str, settings: Settings) -> str:
    """Return the API key for ``kind`` or raise ConfigError.

    Keys shorter than MIN_KEY_LENGTH are rejected; they are almost always a
    truncated paste or a placeholder.
    """
    if kind not in _KEY_FIELDS:
        raise ConfigError(f"provider {kind!r} does not use an API key")
    env_var, attr = _KEY_FIELDS[kind]
    api_key = getattr(settings, attr)
    if not api_key:
        logger.error("%s API key not set (export %s)", kind, env_var)
        raise ConfigError(f"{kind} API key not set")
    if len(api_key) < MIN_KEY_LENGTH:
        logger.error("%s API key too short: required %d, got %d", kind, MIN_KEY_LENGTH, len(api_key))
        raise ConfigError(
            f"{kind} API key must be at least {MIN_KEY_LENGTH} characters (got {len(api_key)})"
        )
    return api_key


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
