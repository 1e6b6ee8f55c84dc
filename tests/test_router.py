"""
Endpoint Router 测试
"""

import pytest

from src.byok.config import byok_config_from_dict
from src.byok.errors import ConfigurationError
from src.byok.providers.models import ModelDiscovery
from src.byok.router import decide_route, format_byok_model_id, parse_byok_model_id, resolve_route_model
from src.byok.types import RouteMode, RouteReason


P1 = {
    "id": "p1",
    "type": "openai_compatible",
    "baseUrl": "https://x/v1",
    "apiKey": "sk-test",
    "models": ["m1"],
    "defaultModel": "m1",
}


def _config(**overrides):
    data = {"providers": [P1], "routing": {"rules": {"/get-models": {"mode": "byok", "provider_id": "p1"}}}}
    data.update(overrides)
    return byok_config_from_dict(data)


class TestByokModelId:
    def test_parse_and_format(self):
        assert parse_byok_model_id("byok:p1:gpt-4o") == ("p1", "gpt-4o")
        assert parse_byok_model_id("byok:p1:org/model:free") == ("p1", "org/model:free")
        assert parse_byok_model_id("byok:p1:") is None
        assert parse_byok_model_id("byok:p1") is None
        assert parse_byok_model_id("gpt-4o") is None
        assert parse_byok_model_id(None) is None
        assert format_byok_model_id("p1", "m1") == "byok:p1:m1"


class TestDecideRoute:
    """测试路由决策顺序"""

    def test_get_models_rule(self):
        route = decide_route(_config(), "/get-models", {}, runtime_enabled=True)

        assert route.mode == RouteMode.BYOK
        assert route.provider.id == "p1"
        assert route.model == "m1"
        assert route.reason == RouteReason.RULE

    def test_runtime_disabled(self):
        route = decide_route(_config(), "/get-models", {}, runtime_enabled=False)

        assert route.mode == RouteMode.OFFICIAL
        assert route.reason == RouteReason.RUNTIME_DISABLED
        assert route.provider is None and route.model is None

    def test_telemetry_disabled_wins_over_rule(self):
        cfg = _config(telemetry={"disabled_endpoints": ["/get-models"]})
        route = decide_route(cfg, "get-models", {}, runtime_enabled=True)

        assert route.mode == RouteMode.DISABLED
        assert route.reason == RouteReason.TELEMETRY_DISABLED

    def test_default_mode(self):
        route = decide_route(_config(), "/chat-stream?x=1", {}, runtime_enabled=True)
        assert route.endpoint == "/chat-stream"
        assert route.mode == RouteMode.OFFICIAL
        assert route.reason == RouteReason.DEFAULT

    def test_requested_model(self):
        route = decide_route(_config(), "/get-models", {"model": "byok:p1:m2"}, runtime_enabled=True)

        assert route.model == "m2"
        assert route.requested_model == "byok:p1:m2"
        assert route.reason == RouteReason.REQUESTED_MODEL

    def test_unknown_requested_provider_falls_back_to_rule(self):
        route = decide_route(_config(), "/get-models", {"model": "byok:nope:m2"}, runtime_enabled=True)
        assert route.model == "m1"
        assert route.reason == RouteReason.RULE

    def test_byok_without_providers(self):
        cfg = byok_config_from_dict({"routing": {"default_mode": "byok"}})
        with pytest.raises(ConfigurationError):
            decide_route(cfg, "/chat-stream", {}, runtime_enabled=True)

    def test_model_discovery_required(self):
        cfg = byok_config_from_dict({
            "providers": [{"id": "p2", "type": "anthropic", "base_url": "https://a", "api_key": "k"}],
            "routing": {"default_mode": "byok"},
        })
        route = decide_route(cfg, "/chat-stream", {}, runtime_enabled=True)

        assert route.mode == RouteMode.BYOK
        assert route.model is None
        assert route.reason == RouteReason.MODEL_DISCOVERY_REQUIRED
        assert route.needs_model_discovery


class TestResolveRouteModel:
    """测试模型发现补全"""

    @pytest.mark.asyncio
    async def test_resolve(self):
        cfg = byok_config_from_dict({
            "providers": [{"id": "p2", "type": "anthropic", "base_url": "https://a", "api_key": "k"}],
            "routing": {"default_mode": "byok"},
        })
        route = decide_route(cfg, "/chat-stream", {}, runtime_enabled=True)
        calls = []

        async def fake_fetch(provider, timeout_ms, cancel):
            calls.append(provider.id)
            return ModelDiscovery(models=["claude-a", "claude-b"])

        resolved = await resolve_route_model(route, fake_fetch)
        assert resolved.model == "claude-a"
        assert resolved.reason == RouteReason.DEFAULT
        assert calls == ["p2"]

        # 已有 model 的路由不再发现
        assert await resolve_route_model(resolved, fake_fetch) is resolved
        assert calls == ["p2"]

    @pytest.mark.asyncio
    async def test_resolve_empty(self):
        cfg = byok_config_from_dict({
            "providers": [{"id": "p2", "type": "anthropic", "base_url": "https://a", "api_key": "k"}],
            "routing": {"default_mode": "byok"},
        })
        route = decide_route(cfg, "/chat-stream", {}, runtime_enabled=True)

        async def empty_fetch(provider, timeout_ms, cancel):
            return []

        with pytest.raises(ConfigurationError):
            await resolve_route_model(route, empty_fetch)
