# -*- coding: utf-8 -*-
"""
通用的 HTTP 客户端模块

为所有 provider adapter 提供统一的 httpx 客户端配置与请求方法。

特性:
- 代理支持：按调用读取 BYOK_PROXY / HTTPS_PROXY / PROXY
- 可注入 transport：测试用 httpx.MockTransport 替换真实网络
- 统一错误映射：非 2xx -> UpstreamHTTPError（正文摘录已脱敏），
  httpx 超时 -> asyncio.TimeoutError
- 流式请求：逐块产出响应文本，交给 SSE 解析
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Iterable, Optional

import httpx

from config import get_proxy_config
from log import log

from ..errors import UpstreamHTTPError, excerpt_text, redact_secrets
from ..types import ProviderType

__all__ = [
    "HttpxClientManager",
    "http_client",
    "join_url",
    "build_auth_headers",
    "merge_headers",
    "apply_request_defaults",
    "ANTHROPIC_VERSION",
]

ANTHROPIC_VERSION = "2023-06-01"


def join_url(base_url: str, path: str) -> str:
    """base_url 与相对路径拼接，避免出现双斜杠"""
    return f"{(base_url or '').rstrip('/')}/{(path or '').lstrip('/')}"


def merge_headers(base: Dict[str, str], override: Optional[Dict[str, str]]) -> Dict[str, str]:
    """override 中的 header 覆盖 base 中同名（大小写不敏感）的 header"""
    out = dict(base)
    for key, value in (override or {}).items():
        for existing in [k for k in out if k.lower() == key.lower()]:
            out.pop(existing)
        out[key] = value
    return out


def build_auth_headers(
    provider_type: str,
    api_key: str,
    extra_headers: Optional[Dict[str, str]] = None,
    force_bearer: bool = False,
) -> Dict[str, str]:
    """
    按 provider 类型生成鉴权头，自定义 headers 优先

    - openai_compatible / openai_responses: Authorization: Bearer
    - anthropic: x-api-key + anthropic-version（force_bearer 时改用 Bearer，用于模型列表）
    - gemini_ai_studio: 不加头，使用 ?key= 查询参数
    """
    headers: Dict[str, str] = {}
    key = (api_key or "").strip()
    if provider_type == ProviderType.ANTHROPIC:
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if key:
            if force_bearer:
                headers["Authorization"] = f"Bearer {key}"
            else:
                headers["x-api-key"] = key
    elif provider_type != ProviderType.GEMINI_AI_STUDIO and key:
        headers["Authorization"] = f"Bearer {key}"
    return merge_headers(headers, extra_headers)


def apply_request_defaults(body: Dict[str, Any], defaults: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """request_defaults 先铺底，适配器生成的核心字段（model / messages / stream ...）覆盖之"""
    out = dict(defaults or {})
    out.update(body)
    return out


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class HttpxClientManager:
    """
    通用 HTTP 客户端管理器

    每次调用创建一个短生命周期的 httpx.AsyncClient；transport 不为 None 时
    所有请求都走该 transport（代理配置随之失效）。
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def get_client_kwargs(self, timeout: Optional[float] = 30.0, **kwargs) -> Dict[str, Any]:
        """
        获取 httpx 客户端的通用配置参数

        Args:
            timeout: 请求超时时间（秒）
            **kwargs: 其他参数
        """
        client_kwargs: Dict[str, Any] = {"timeout": timeout, **kwargs}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport
            return client_kwargs

        # 动态读取代理配置，支持热更新
        proxy = get_proxy_config()
        if proxy:
            client_kwargs["proxy"] = proxy
        return client_kwargs

    @asynccontextmanager
    async def get_client(self, timeout: Optional[float] = 30.0, **kwargs) -> AsyncGenerator[httpx.AsyncClient, None]:
        """获取配置好的异步 HTTP 客户端"""
        async with httpx.AsyncClient(**self.get_client_kwargs(timeout=timeout, **kwargs)) as client:
            yield client

    @staticmethod
    def _timeout_seconds(timeout_ms: Optional[float]) -> Optional[float]:
        return timeout_ms / 1000.0 if timeout_ms and timeout_ms > 0 else None

    @staticmethod
    def _error(status: int, body: str, label: str, url: str, secrets: Iterable[Optional[str]]) -> UpstreamHTTPError:
        secrets = list(secrets or [])
        return UpstreamHTTPError(
            status=status,
            excerpt=excerpt_text(redact_secrets(body, secrets)),
            label=label,
            url=redact_secrets(url, secrets),
        )

    async def send_json(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[float] = None,
        label: str = "",
        secrets: Iterable[Optional[str]] = (),
    ) -> Any:
        """
        发送请求并解析 JSON 响应

        Raises:
            UpstreamHTTPError: 非 2xx、网络错误或响应不是 JSON
            asyncio.TimeoutError: httpx 超时
        """
        secrets = list(secrets or [])
        try:
            async with self.get_client(timeout=self._timeout_seconds(timeout_ms)) as client:
                resp = await client.request(method, url, headers=headers, json=json_body, params=params)
        except httpx.TimeoutException as e:
            raise asyncio.TimeoutError(f"{label} timeout after {int(timeout_ms or 0)}ms") from e
        except httpx.TransportError as e:
            raise self._error(0, f"{type(e).__name__}: {e}", label, url, secrets) from e

        if not _is_success(resp.status_code):
            log.debug(f"{label} HTTP {resp.status_code}", tag="PROVIDER")
            raise self._error(resp.status_code, resp.text, label, str(resp.request.url), secrets)
        try:
            return resp.json()
        except ValueError as e:
            raise self._error(resp.status_code, f"invalid JSON: {resp.text}", label, url, secrets) from e

    async def stream_response(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[float] = None,
        label: str = "",
        secrets: Iterable[Optional[str]] = (),
    ) -> AsyncIterator[str]:
        """
        流式请求，逐块产出响应文本

        非 2xx 时先读完正文再抛 UpstreamHTTPError，保证错误里带有摘录。
        """
        secrets = list(secrets or [])
        try:
            async with self.get_client(timeout=self._timeout_seconds(timeout_ms)) as client:
                async with client.stream(method, url, headers=headers, json=json_body, params=params) as resp:
                    if not _is_success(resp.status_code):
                        body = (await resp.aread()).decode("utf-8", errors="ignore")
                        raise self._error(resp.status_code, body, label, str(resp.request.url), secrets)
                    async for chunk in resp.aiter_text():
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as e:
            raise asyncio.TimeoutError(f"{label} timeout after {int(timeout_ms or 0)}ms") from e
        except httpx.TransportError as e:
            raise self._error(0, f"{type(e).__name__}: {e}", label, url, secrets) from e


# 全局 HTTP 客户端管理器实例
http_client = HttpxClientManager()
