# -*- coding: utf-8 -*-
"""
Provider 模型发现

GET {base_url}/models，base_url 不含版本段时再尝试 v1/models（Gemini 为 v1beta/models）。
404 视为该 URL 不存在，继续尝试下一个；其他非 2xx 直接抛出。

响应解析（parse_model_ids）兼容：
- {"data": [{"id" | "name" | "model"}]}      OpenAI / Anthropic
- {"models": ["..." | {"id" | "name" | "model"}]}  Gemini 等
- {"model_ids": [...]} / {"modelIds": [...]}
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from log import log

from ..cancellation import CancellationToken, clamp_timeout_ms, run_with_deadline
from ..errors import UpstreamHTTPError
from ..types import ProviderConfig, ProviderType
from .http import HttpxClientManager, build_auth_headers, http_client, join_url
from .interface import ProviderRequestContext
from .registry import provider_request_context

__all__ = [
    "ModelDiscovery",
    "parse_model_ids",
    "model_list_urls",
    "fetch_provider_models",
    "MODELS_TIMEOUT_MS",
]

MODELS_TIMEOUT_MS = 15000


@dataclass
class ModelDiscovery:
    models: List[str] = field(default_factory=list)
    tried_urls: List[str] = field(default_factory=list)


def _uniq_keep_order(values: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for v in values:
        s = v.strip() if isinstance(v, str) else ""
        if s and s not in out:
            out.append(s)
    return out


def _model_id(entry: Any) -> Any:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        for key in ("id", "name", "model"):
            if entry.get(key):
                return entry[key]
    return ""


def parse_model_ids(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("data"), list):
        return _uniq_keep_order(_model_id(m) for m in payload["data"])
    if isinstance(payload.get("models"), list):
        return _uniq_keep_order(_model_id(m) for m in payload["models"])
    for key in ("model_ids", "modelIds"):
        if isinstance(payload.get(key), list):
            return _uniq_keep_order(payload[key])
    return []


def model_list_urls(provider_type: str, base_url: str) -> List[str]:
    urls = [join_url(base_url, "models")]
    version = "v1beta" if provider_type == ProviderType.GEMINI_AI_STUDIO else "v1"
    if f"/{version}" not in base_url:
        urls.append(join_url(base_url, f"{version}/models"))
    return _uniq_keep_order(urls)


async def _discover(ctx: ProviderRequestContext, timeout_ms: int, http: HttpxClientManager) -> ModelDiscovery:
    label = f"{ctx.label} models"
    # 模型列表统一走 Bearer（Anthropic 兼容网关通常只认 Authorization）
    headers = build_auth_headers(ctx.provider_type, ctx.api_key, ctx.headers, force_bearer=True)
    params = None
    if ctx.provider_type == ProviderType.GEMINI_AI_STUDIO and ctx.api_key and not ctx.has_auth_header():
        params = {"key": ctx.api_key}

    discovery = ModelDiscovery()
    for url in model_list_urls(ctx.provider_type, ctx.base_url):
        discovery.tried_urls.append(url)
        try:
            payload = await http.send_json(
                "GET", url, headers=headers, params=params, timeout_ms=timeout_ms, label=label, secrets=ctx.secrets()
            )
        except UpstreamHTTPError as e:
            if e.status == 404:
                log.fallback(f"{label} 404 at {url}, trying next", tag="MODELS")
                continue
            raise
        discovery.models = parse_model_ids(payload)
        if not discovery.models:
            raise UpstreamHTTPError(status=200, excerpt="response contains no parsable model list", label=label, url=url)
        return discovery

    raise UpstreamHTTPError(
        status=404, excerpt=f"no models endpoint found, tried={len(discovery.tried_urls)}", label=label
    )


@log.timed("model_discovery", tag="MODELS")
async def fetch_provider_models(
    provider: ProviderConfig,
    timeout_ms: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
    http: Optional[HttpxClientManager] = None,
) -> ModelDiscovery:
    """
    拉取 provider 的模型列表

    Args:
        provider: provider 配置
        timeout_ms: 超时（非法值回退到 15000）
        cancel: 取消令牌
        http: 可注入的 HTTP 客户端（测试用）

    Raises:
        ConfigurationError: provider 缺 type / base_url / 凭据
        UpstreamHTTPError: 非 404 的错误响应，或所有 URL 都是 404
    """
    ctx = provider_request_context(provider)
    t = clamp_timeout_ms(timeout_ms, MODELS_TIMEOUT_MS)
    discovery = await run_with_deadline(_discover(ctx, t, http or http_client), t, cancel)
    log.debug(f"{ctx.label} models count={len(discovery.models)}", tag="MODELS")
    return discovery
