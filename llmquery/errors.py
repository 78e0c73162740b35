"""Exception hierarchy shared by adapters, decoders and the conversation log.

Transport, protocol and decode failures surface immediately; nothing in
llmquery retries.
"""

from __future__ import annotations


class LLMError(Exception):
    """Base class for every error raised by llmquery."""


class TransportError(LLMError):
    """DNS, TCP, TLS or timeout failure while talking to a provider."""


class ProtocolError(LLMError):
    """Non-2xx status, or an explicit error field in an otherwise-200 body."""

    def __init__(self, message: str, status_code: int | None = None, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DecodeError(LLMError):
    """Body did not match the schema the provider is supposed to send."""

    def __init__(self, message: str, body: bytes = b"") -> None:
        super().__init__(message)
        self.body = body


class RequestValidationError(LLMError, ValueError):
    """Caller-correctable input error, raised before any I/O."""


class ConfigError(LLMError, ValueError):
    """Missing credentials, unknown provider or incomplete settings."""
