# -*- coding: utf-8 -*-
"""
Endpoint Router
===============

对每个 agent 端点决定走 official 透传、BYOK 上游还是直接禁用。

decide_route 是纯函数（不做 I/O），决策顺序：
1. runtime 关闭                      -> official (runtime_disabled)
2. 端点在 telemetry.disabled_endpoints -> disabled (telemetry_disabled)
3. routing.rules[endpoint]            -> 按规则（rule）
4. 没有规则                           -> routing.default_mode（default）

byok 路由的 provider / model 解析：
- 请求体 model 为 byok:<providerId>:<model> 且 provider 存在时优先使用（requested_model）
- provider: 规则的 provider_id，未配置或找不到时用第一个 provider
- model: 规则的 model > provider.default_model > provider.models[0]
- 仍然没有 model 时返回 reason=model_discovery_required，由 resolve_route_model 通过模型发现补全
"""

from typing import Any, Awaitable, Callable, Optional, Tuple

from log import log

from .cancellation import CancellationToken
from .config import ByokConfig, RoutingRule
from .errors import ConfigurationError
from .normalize import normalize_endpoint
from .providers.models import fetch_provider_models
from .types import ProviderConfig, Route, RouteMode, RouteReason

__all__ = [
    "BYOK_MODEL_PREFIX",
    "parse_byok_model_id",
    "format_byok_model_id",
    "decide_route",
    "resolve_route_model",
]

BYOK_MODEL_PREFIX = "byok:"


def parse_byok_model_id(value: Any) -> Optional[Tuple[str, str]]:
    """
    "byok:p1:gpt-4o-mini" -> ("p1", "gpt-4o-mini")；model 部分可以包含冒号
    """
    if not isinstance(value, str) or not value.startswith(BYOK_MODEL_PREFIX):
        return None
    provider_id, sep, model = value[len(BYOK_MODEL_PREFIX):].partition(":")
    provider_id, model = provider_id.strip(), model.strip()
    if not sep or not provider_id or not model:
        return None
    return provider_id, model


def format_byok_model_id(provider_id: str, model: str) -> str:
    return f"{BYOK_MODEL_PREFIX}{provider_id}:{model}"


def _pick_model(provider: ProviderConfig, rule_model: str = "") -> Optional[str]:
    return rule_model or provider.default_model or (provider.models[0] if provider.models else None)


def _byok_route(
    config: ByokConfig, endpoint: str, rule: Optional[RoutingRule], body: Any, reason: str
) -> Route:
    if not config.providers:
        raise ConfigurationError(f"{endpoint}: byok route but no providers configured")

    requested = parse_byok_model_id(body.get("model")) if isinstance(body, dict) else None
    if requested is not None:
        provider = config.get_provider(requested[0])
        if provider is not None:
            return Route(
                endpoint=endpoint,
                mode=RouteMode.BYOK,
                provider=provider,
                model=requested[1],
                requested_model=format_byok_model_id(*requested),
                reason=RouteReason.REQUESTED_MODEL,
            )
        log.fallback(f"{endpoint}: requested provider {requested[0]} not found, using rule", tag="ROUTER")

    provider = None
    if rule is not None and rule.provider_id:
        provider = config.get_provider(rule.provider_id)
        if provider is None:
            log.fallback(f"{endpoint}: provider {rule.provider_id} not found, using first provider", tag="ROUTER")
    provider = provider or config.providers[0]

    model = _pick_model(provider, rule.model if rule is not None else "")
    if not model:
        return Route(
            endpoint=endpoint,
            mode=RouteMode.BYOK,
            provider=provider,
            model=None,
            reason=RouteReason.MODEL_DISCOVERY_REQUIRED,
        )
    return Route(endpoint=endpoint, mode=RouteMode.BYOK, provider=provider, model=model, reason=reason)


def decide_route(config: ByokConfig, endpoint: str, request_body: Any, runtime_enabled: bool) -> Route:
    """
    Args:
        config: BYOK 配置
        endpoint: 原始端点（会被标准化）
        request_body: 原始请求体（只读取 model 字段）
        runtime_enabled: BYOK 运行时总开关

    Raises:
        ConfigurationError: byok 路由但没有任何 provider
    """
    ep = normalize_endpoint(endpoint)
    if not runtime_enabled:
        route = Route(endpoint=ep, mode=RouteMode.OFFICIAL, reason=RouteReason.RUNTIME_DISABLED)
    elif ep in config.telemetry.disabled_endpoints:
        route = Route(endpoint=ep, mode=RouteMode.DISABLED, reason=RouteReason.TELEMETRY_DISABLED)
    else:
        rule = config.routing.rules.get(ep)
        mode = rule.mode if rule is not None else config.routing.default_mode
        reason = RouteReason.RULE if rule is not None else RouteReason.DEFAULT
        if mode == RouteMode.BYOK:
            route = _byok_route(config, ep, rule, request_body, reason)
        else:
            route = Route(endpoint=ep, mode=mode, reason=reason)

    if route.mode == RouteMode.BYOK:
        log.route(
            f"{ep} -> byok provider={route.provider.label} model={route.model or '?'} reason={route.reason}",
            tag="ROUTER",
        )
    else:
        log.route(f"{ep} -> {route.mode} reason={route.reason}", tag="ROUTER")
    return route


async def resolve_route_model(
    route: Route,
    fetch_models: Optional[Callable[..., Awaitable[Any]]] = None,
    timeout_ms: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
) -> Route:
    """
    为 model_discovery_required 的路由补全 model（取发现到的第一个模型）

    Args:
        fetch_models: async (provider, timeout_ms, cancel) -> ModelDiscovery | List[str]；
            默认使用 providers.models.fetch_provider_models

    Raises:
        ConfigurationError: 模型发现没有返回任何模型
    """
    if not route.needs_model_discovery:
        return route
    fetch_models = fetch_models or fetch_provider_models

    result = await fetch_models(route.provider, timeout_ms, cancel)
    models = getattr(result, "models", result) or []
    if not models:
        raise ConfigurationError(f"{route.endpoint}: no model resolvable for provider {route.provider.label}")
    log.fallback(f"{route.endpoint}: model resolved by discovery -> {models[0]}", tag="ROUTER")
    return Route(
        endpoint=route.endpoint,
        mode=route.mode,
        provider=route.provider,
        model=models[0],
        requested_model=route.requested_model,
        reason=RouteReason.DEFAULT if route.reason == RouteReason.MODEL_DISCOVERY_REQUIRED else route.reason,
    )
