"""Backend implementations."""

from .anthropic import AnthropicBackend
from .base import Backend
from .gemini import GeminiBackend
from .mock import MockBackend
from .models import (
    BackendResponse,
    ChatMessage,
    CompletionRequest,
    StreamHandle,
    ToolCall,
    ToolDefinition,
    Usage,
)
from .openai import OpenAIBackend, OpenRouterBackend

__all__ = [
    "AnthropicBackend",
    "Backend",
    "BackendResponse",
    "ChatMessage",
    "CompletionRequest",
    "GeminiBackend",
    "MockBackend",
    "OpenAIBackend",
    "OpenRouterBackend",
    "StreamHandle",
    "ToolCall",
    "ToolDefinition",
    "Usage",
]
