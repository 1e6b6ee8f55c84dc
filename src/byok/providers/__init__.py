"""
BYOK Provider Adapters

四种上游协议的适配器与统一入口：
- openai_compatible: OpenAIChatAdapter
- openai_responses:  OpenAIResponsesAdapter
- anthropic:         AnthropicAdapter
- gemini_ai_studio:  GeminiAdapter
"""

from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .http import HttpxClientManager, http_client
from .interface import BackendAdapter, ProviderRequestContext
from .models import ModelDiscovery, fetch_provider_models, parse_model_ids
from .openai import OpenAIChatAdapter
from .openai_responses import OpenAIResponsesAdapter
from .registry import (
    AdapterRegistry,
    chat_stream_by_provider,
    complete_text_by_provider,
    get_adapter,
    provider_request_context,
    stream_text_by_provider,
)

__all__ = [
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAIChatAdapter",
    "OpenAIResponsesAdapter",
    "HttpxClientManager",
    "http_client",
    "BackendAdapter",
    "ProviderRequestContext",
    "ModelDiscovery",
    "fetch_provider_models",
    "parse_model_ids",
    "AdapterRegistry",
    "get_adapter",
    "provider_request_context",
    "complete_text_by_provider",
    "stream_text_by_provider",
    "chat_stream_by_provider",
]
