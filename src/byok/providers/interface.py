# -*- coding: utf-8 -*-
"""
Backend Adapter 接口定义

定义 BackendAdapter Protocol 和 ProviderRequestContext 数据类。
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from ..cancellation import CancellationToken
from ..types import CanonicalChatRequest, ChatChunk

__all__ = ["BackendAdapter", "ProviderRequestContext", "AUTH_HEADER_NAMES"]

# 这些 header 出现在 provider.headers 中时视为已配置凭据
AUTH_HEADER_NAMES = ("authorization", "x-api-key", "api-key", "x-goog-api-key")


@dataclass
class ProviderRequestContext:
    """一次上游调用所需的 provider 信息（已校验）"""

    provider_id: str
    """provider ID"""

    provider_type: str
    """openai_compatible / openai_responses / anthropic / gemini_ai_studio"""

    base_url: str
    """上游基础 URL（已去掉末尾 /）"""

    api_key: str = ""
    """凭据，可为空（此时必须在 headers 中给出鉴权头）"""

    headers: Dict[str, str] = field(default_factory=dict)
    """自定义请求头，覆盖默认鉴权头"""

    request_defaults: Dict[str, Any] = field(default_factory=dict)
    """合并进每个请求体的默认参数（temperature 等）"""

    @property
    def label(self) -> str:
        return f"{self.provider_id}({self.provider_type})"

    def has_auth_header(self) -> bool:
        return any(k.lower() in AUTH_HEADER_NAMES and str(v).strip() for k, v in self.headers.items())

    def secrets(self) -> List[str]:
        """需要从错误信息中脱敏的值"""
        values = [self.api_key]
        values.extend(v for k, v in self.headers.items() if k.lower() in AUTH_HEADER_NAMES)
        return [v for v in values if v]


class BackendAdapter(Protocol):
    """
    上游后端适配器协议

    所有方法的 system / messages 为简单文本消息（role + content 字符串），
    由适配器渲染为各自的线上格式；chat 则直接接收 canonical 请求。
    """

    async def complete_text(
        self,
        ctx: ProviderRequestContext,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        非流式文本补全

        Returns:
            模型输出的完整文本
        """
        ...

    def stream_text_deltas(
        self,
        ctx: ProviderRequestContext,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        流式文本，逐个产出文本增量
        """
        ...

    def chat_stream_chunks(
        self,
        ctx: ProviderRequestContext,
        model: str,
        req: CanonicalChatRequest,
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        tool_meta_by_name: Optional[Dict[str, Dict[str, str]]] = None,
        support_tool_use_start: bool = False,
    ) -> AsyncIterator[ChatChunk]:
        """
        canonical chat 流：文本、tool use、用量节点，最后一个 chunk 带 stop_reason
        """
        ...
