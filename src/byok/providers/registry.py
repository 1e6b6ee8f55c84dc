# -*- coding: utf-8 -*-
"""
Provider Adapter 注册中心

按 provider.type 分发到对应的 BackendAdapter，并提供
complete_text / stream_text / chat_stream 三个按 provider 调用的入口。
"""

import threading
from typing import Any, AsyncIterator, Dict, List, Optional

from log import log

from ..cancellation import CancellationToken
from ..errors import ConfigurationError
from ..types import CanonicalChatRequest, ChatChunk, ProviderConfig, ProviderType
from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .interface import BackendAdapter, ProviderRequestContext
from .openai import OpenAIChatAdapter
from .openai_responses import OpenAIResponsesAdapter

__all__ = [
    "AdapterRegistry",
    "get_adapter",
    "provider_request_context",
    "complete_text_by_provider",
    "stream_text_by_provider",
    "chat_stream_by_provider",
]


class AdapterRegistry:
    """
    Adapter 注册中心 (单例模式)

    默认注册四种 provider 类型；测试可以用 register() 替换为假的 adapter，
    用 reset() 恢复默认。
    """

    _instance: Optional["AdapterRegistry"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "AdapterRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._initialized = True
        self._adapters: Dict[str, BackendAdapter] = {}
        self.reset()

    @classmethod
    def get_instance(cls) -> "AdapterRegistry":
        """获取单例实例"""
        return cls()

    def reset(self) -> None:
        """恢复为默认的四个 adapter"""
        self._adapters = {
            ProviderType.OPENAI_COMPATIBLE: OpenAIChatAdapter(),
            ProviderType.OPENAI_RESPONSES: OpenAIResponsesAdapter(),
            ProviderType.ANTHROPIC: AnthropicAdapter(),
            ProviderType.GEMINI_AI_STUDIO: GeminiAdapter(),
        }

    def register(self, provider_type: str, adapter: BackendAdapter) -> None:
        self._adapters[provider_type] = adapter

    def get(self, provider_type: str) -> Optional[BackendAdapter]:
        return self._adapters.get((provider_type or "").strip())

    def types(self) -> List[str]:
        return list(self._adapters.keys())


def get_adapter(provider_type: str) -> BackendAdapter:
    """
    Raises:
        ConfigurationError: 未知的 provider.type
    """
    adapter = AdapterRegistry.get_instance().get(provider_type)
    if adapter is None:
        raise ConfigurationError(f"未知 provider.type: {provider_type or '(empty)'}")
    return adapter


def provider_request_context(provider: ProviderConfig) -> ProviderRequestContext:
    """
    校验 provider 配置并生成请求上下文

    Raises:
        ConfigurationError: 缺 type / base_url，或既没有 api_key 也没有鉴权头
    """
    if not isinstance(provider, ProviderConfig):
        raise ConfigurationError("provider 无效")
    label = provider.label
    if provider.type not in ProviderType.ALL:
        raise ConfigurationError(f"{label}: 未知 provider.type: {provider.type or '(empty)'}")
    if not provider.base_url:
        raise ConfigurationError(f"{label}: base_url 未配置")
    ctx = ProviderRequestContext(
        provider_id=provider.id,
        provider_type=provider.type,
        base_url=provider.base_url.rstrip("/"),
        api_key=provider.api_key,
        headers=dict(provider.headers),
        request_defaults=dict(provider.request_defaults),
    )
    if not ctx.api_key and not ctx.has_auth_header():
        raise ConfigurationError(f"{label}: api_key 未配置（且 headers 中没有鉴权头）")
    return ctx


async def complete_text_by_provider(
    provider: ProviderConfig,
    model: str,
    system: str,
    messages: List[Dict[str, Any]],
    *,
    timeout_ms: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
    max_tokens: Optional[int] = None,
) -> str:
    ctx = provider_request_context(provider)
    log.debug(f"completeText {ctx.label} model={model}", tag="PROVIDER")
    return await get_adapter(ctx.provider_type).complete_text(
        ctx, model, system, messages, timeout_ms=timeout_ms, cancel=cancel, max_tokens=max_tokens
    )


def stream_text_by_provider(
    provider: ProviderConfig,
    model: str,
    system: str,
    messages: List[Dict[str, Any]],
    *,
    timeout_ms: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[str]:
    ctx = provider_request_context(provider)
    log.debug(f"streamText {ctx.label} model={model}", tag="PROVIDER")
    return get_adapter(ctx.provider_type).stream_text_deltas(
        ctx, model, system, messages, timeout_ms=timeout_ms, cancel=cancel
    )


def chat_stream_by_provider(
    provider: ProviderConfig,
    model: str,
    req: CanonicalChatRequest,
    *,
    timeout_ms: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
    tool_meta_by_name: Optional[Dict[str, Dict[str, str]]] = None,
    support_tool_use_start: bool = False,
) -> AsyncIterator[ChatChunk]:
    ctx = provider_request_context(provider)
    log.debug(
        f"chatStream {ctx.label} model={model} tools={len(req.tool_definitions)}",
        tag="PROVIDER",
    )
    return get_adapter(ctx.provider_type).chat_stream_chunks(
        ctx,
        model,
        req,
        timeout_ms=timeout_ms,
        cancel=cancel,
        tool_meta_by_name=tool_meta_by_name,
        support_tool_use_start=support_tool_use_start,
    )
