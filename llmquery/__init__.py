"""llmquery -- provider-neutral chat completions over HTTP.

Public API:
    Conversation   - Thread-safe message log for one session
    ChatRequest, ChatResponse, Message, ToolCall, Delta - Value types
    ChatStream     - Lazy stream of Deltas returned by adapter.stream()
    create_provider - Build an adapter from Settings
    Settings       - Configuration (env prefix LLMQ_)
"""

from llmquery.config import Settings, configure_logging, get_api_key
from llmquery.conversation import Conversation
from llmquery.errors import (
    ConfigError,
    DecodeError,
    LLMError,
    ProtocolError,
    RequestValidationError,
    TransportError,
)
from llmquery.providers import (
    GeminiAdapter,
    OllamaAdapter,
    OpenAICompatibleAdapter,
    ProviderAdapter,
    ProviderKind,
    create_provider,
    get_provider_kind_and_default_model,
)
from llmquery.streaming import ChatStream, iter_queue
from llmquery.types import (
    ChatRequest,
    ChatResponse,
    Delta,
    Message,
    Role,
    Tool,
    ToolCall,
    ToolCallFragment,
    ToolSpec,
    Usage,
)

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "ChatStream",
    "ConfigError",
    "Conversation",
    "DecodeError",
    "Delta",
    "GeminiAdapter",
    "LLMError",
    "Message",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProtocolError",
    "ProviderAdapter",
    "ProviderKind",
    "RequestValidationError",
    "Role",
    "Settings",
    "Tool",
    "ToolCall",
    "ToolCallFragment",
    "ToolSpec",
    "TransportError",
    "Usage",
    "configure_logging",
    "create_provider",
    "get_api_key",
    "get_provider_kind_and_default_model",
    "iter_queue",
]
