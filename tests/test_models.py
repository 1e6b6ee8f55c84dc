"""
Provider 模型发现测试

用 httpx.MockTransport 模拟上游 /models 与 /v1/models。
"""

import httpx
import pytest

from src.byok.errors import ConfigurationError, UpstreamHTTPError
from src.byok.providers.http import HttpxClientManager
from src.byok.providers.models import fetch_provider_models, model_list_urls, parse_model_ids
from src.byok.types import ProviderConfig


def _provider(**kwargs) -> ProviderConfig:
    data = {"id": "p1", "type": "openai_compatible", "base_url": "https://gw.example.com", "api_key": "sk-live-secret"}
    data.update(kwargs)
    return ProviderConfig.model_validate(data)


class TestParseModelIds:
    """测试模型列表响应解析"""

    def test_shapes(self):
        assert parse_model_ids({"data": [{"id": "a"}, {"name": "b"}, {"id": "a"}, 3]}) == ["a", "b"]
        assert parse_model_ids({"models": ["x", {"model": "y"}, ""]}) == ["x", "y"]
        assert parse_model_ids({"modelIds": ["m"]}) == ["m"]
        assert parse_model_ids({"other": []}) == []
        assert parse_model_ids(["a"]) == []

    def test_urls(self):
        assert model_list_urls("openai_compatible", "https://x") == ["https://x/models", "https://x/v1/models"]
        assert model_list_urls("openai_compatible", "https://x/v1/") == ["https://x/v1/models"]
        assert model_list_urls("gemini_ai_studio", "https://g") == ["https://g/models", "https://g/v1beta/models"]


class TestFetchProviderModels:
    """测试 404 回退与错误摘录"""

    @pytest.mark.asyncio
    async def test_404_falls_back_to_v1(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, request.headers.get("authorization")))
            if request.url.path == "/models":
                return httpx.Response(404, text="not here")
            return httpx.Response(200, json={"data": [{"id": "m1"}, {"id": "m2"}]})

        http = HttpxClientManager(transport=httpx.MockTransport(handler))
        discovery = await fetch_provider_models(_provider(), timeout_ms=5000, http=http)

        assert discovery.models == ["m1", "m2"]
        assert discovery.tried_urls == ["https://gw.example.com/models", "https://gw.example.com/v1/models"]
        assert seen == [("/models", "Bearer sk-live-secret"), ("/v1/models", "Bearer sk-live-secret")]

    @pytest.mark.asyncio
    async def test_auth_error_is_redacted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="invalid key sk-live-secret")

        http = HttpxClientManager(transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamHTTPError) as exc_info:
            await fetch_provider_models(_provider(), http=http)

        err = exc_info.value
        assert err.status == 401
        assert err.is_auth_error
        assert "sk-live-secret" not in err.excerpt
        assert "[REDACTED]" in err.excerpt

    @pytest.mark.asyncio
    async def test_anthropic_uses_bearer(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={"data": [{"id": "claude-x"}]})

        http = HttpxClientManager(transport=httpx.MockTransport(handler))
        provider = _provider(type="anthropic", base_url="https://api.anthropic.com/v1")
        discovery = await fetch_provider_models(provider, http=http)

        assert discovery.models == ["claude-x"]
        assert seen["authorization"] == "Bearer sk-live-secret"
        assert seen["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_empty_list_is_error(self):
        http = HttpxClientManager(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []})))
        with pytest.raises(UpstreamHTTPError):
            await fetch_provider_models(_provider(base_url="https://x/v1"), http=http)

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        with pytest.raises(ConfigurationError):
            await fetch_provider_models(_provider(api_key=""))
