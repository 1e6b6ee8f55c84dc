"""
History Compactor 测试

切分规则、摘要缓存 TTL（注入时钟）与压缩流程（注入假的 complete_text）。
"""

import pytest

from src.byok.config import byok_config_from_dict
from src.byok.history import HistorySummaryCache, maybe_summarize_and_compact, render_transcript, split_history
from src.byok.types import CanonicalChatRequest, Exchange, RequestNodeType


def _exchange(i: int, size: int = 100) -> Exchange:
    return Exchange(request_message=f"q{i}" + "x" * size, response_text=f"a{i}")


def _config(**hs):
    settings = {
        "enabled": True,
        "trigger_on_history_size_chars": 500,
        "history_tail_size_chars_to_exclude": 250,
        "min_tail_exchanges": 1,
    }
    settings.update(hs)
    return byok_config_from_dict({
        "providers": [
            {"id": "p1", "type": "openai_compatible", "base_url": "https://x", "api_key": "k", "default_model": "m1"},
            {"id": "sum", "type": "anthropic", "base_url": "https://a", "api_key": "k", "models": ["small"]},
        ],
        "history_summary": settings,
    })


class _FakeComplete:
    def __init__(self, text: str = "SUMMARY"):
        self.text = text
        self.calls = []

    async def __call__(self, provider, model, system, messages, **kwargs):
        self.calls.append({"provider": provider.id, "model": model, "system": system, "messages": messages, **kwargs})
        return self.text


class TestSplitHistory:
    """测试头尾切分"""

    def test_tail_respects_chars_and_min(self):
        history = [_exchange(i) for i in range(6)]
        head, tail = split_history(history, tail_chars=250, min_tail=1)
        assert len(tail) == 2
        assert head + tail == history

        head, tail = split_history(history, tail_chars=10, min_tail=3)
        assert len(tail) == 3

    def test_transcript(self):
        text = render_transcript([Exchange(request_message="hi", response_text="hello")])
        assert text == "### Exchange 1\nUser: hi\nAssistant: hello"


class TestHistorySummaryCache:
    """测试 TTL 与删除"""

    def test_ttl(self):
        now = [1000]
        cache = HistorySummaryCache(clock=lambda: now[0])
        cache.put("c1", 3, "s", ttl_ms=100)
        cache.put("", 3, "ignored", ttl_ms=100)

        assert cache.get("c1", 3) == "s"
        assert cache.get("c1", 4) is None
        now[0] = 1100
        assert cache.get("c1", 3) is None
        assert len(cache) == 0

    def test_delete(self):
        cache = HistorySummaryCache()
        cache.put("c1", 1, "a", 1000)
        cache.put("c1", 2, "b", 1000)
        cache.put("c2", 1, "c", 1000)

        assert cache.delete("c1") == 2
        assert len(cache) == 1


class TestMaybeSummarizeAndCompact:
    """测试压缩流程"""

    @pytest.mark.asyncio
    async def test_compacts_and_caches(self):
        cfg = _config()
        cache = HistorySummaryCache()
        fake = _FakeComplete()
        history = [_exchange(i) for i in range(6)]

        req = CanonicalChatRequest(conversation_id="conv", chat_history=list(history), message="now")
        changed = await maybe_summarize_and_compact(
            cfg, req, fallback_provider=cfg.providers[0], fallback_model="m1", cache=cache, complete_text=fake
        )

        assert changed
        assert len(req.chat_history) == 2
        node = req.nodes[0]
        assert node.type == RequestNodeType.HISTORY_SUMMARY
        assert node.history_summary_node.summary_text == "SUMMARY"
        assert node.history_summary_node.summarized_exchanges == 4
        assert fake.calls[0]["provider"] == "p1"
        assert fake.calls[0]["model"] == "m1"
        assert "### Exchange 4" in fake.calls[0]["messages"][0]["content"]

        # 同一会话同一头部长度走缓存
        req2 = CanonicalChatRequest(conversation_id="conv", chat_history=list(history))
        assert await maybe_summarize_and_compact(
            cfg, req2, fallback_provider=cfg.providers[0], fallback_model="m1", cache=cache, complete_text=fake
        )
        assert len(fake.calls) == 1
        assert [n.type for n in req2.nodes] == [RequestNodeType.HISTORY_SUMMARY]

    @pytest.mark.asyncio
    async def test_configured_provider(self):
        cfg = _config(provider_id="sum")
        fake = _FakeComplete()
        req = CanonicalChatRequest(chat_history=[_exchange(i) for i in range(6)])

        assert await maybe_summarize_and_compact(cfg, req, cache=HistorySummaryCache(), complete_text=fake)
        assert (fake.calls[0]["provider"], fake.calls[0]["model"]) == ("sum", "small")
        assert fake.calls[0]["timeout_ms"] == 60000

    @pytest.mark.asyncio
    async def test_below_trigger_or_disabled(self):
        fake = _FakeComplete()
        small = CanonicalChatRequest(chat_history=[_exchange(0)])
        assert not await maybe_summarize_and_compact(_config(), small, complete_text=fake)

        big = CanonicalChatRequest(chat_history=[_exchange(i) for i in range(6)])
        assert not await maybe_summarize_and_compact(_config(enabled=False), big, complete_text=fake)
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_empty_summary_leaves_history(self):
        fake = _FakeComplete(text="  ")
        cfg = _config()
        req = CanonicalChatRequest(chat_history=[_exchange(i) for i in range(6)])

        assert not await maybe_summarize_and_compact(
            cfg, req, fallback_provider=cfg.providers[0], fallback_model="m1", cache=HistorySummaryCache(), complete_text=fake
        )
        assert len(req.chat_history) == 6
        assert req.nodes == []

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self):
        async def boom(*args, **kwargs):
            raise RuntimeError("upstream down")

        cfg = _config()
        req = CanonicalChatRequest(chat_history=[_exchange(i) for i in range(6)])
        with pytest.raises(RuntimeError):
            await maybe_summarize_and_compact(
                cfg, req, fallback_provider=cfg.providers[0], fallback_model="m1", cache=HistorySummaryCache(), complete_text=boom
            )
