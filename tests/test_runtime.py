"""
BYOK Runtime 测试

通过 AdapterRegistry 注入假的 adapter，检查各端点的路由与结果形态。
"""

import pytest

from src.byok.config import byok_config_from_dict
from src.byok.errors import UpstreamHTTPError
from src.byok.history import HistorySummaryCache
from src.byok.providers.registry import AdapterRegistry
from src.byok.runtime import (
    ByokRuntime,
    build_byok_model_list,
    build_instruction_replacement_meta,
    merge_next_edit_loc_candidates,
    pick_next_edit_location_candidates,
)
from src.byok.stream import StreamAggregator
from src.byok.tools_context import ToolDefinitionsContext


class FakeAdapter:
    """按固定脚本应答的 adapter，记录每次调用"""

    def __init__(self, text: str = "OK", fail_complete: bool = False):
        self.text = text
        self.fail_complete = fail_complete
        self.calls = []

    async def complete_text(self, ctx, model, system, messages, *, timeout_ms=None, cancel=None, max_tokens=None):
        self.calls.append(("complete_text", model, messages))
        if self.fail_complete:
            raise UpstreamHTTPError(status=500, excerpt="boom", label=ctx.label)
        return self.text

    def stream_text_deltas(self, ctx, model, system, messages, *, timeout_ms=None, cancel=None):
        self.calls.append(("stream_text", model, messages))

        async def gen():
            for part in ("A", "", "B"):
                yield part

        return gen()

    def chat_stream_chunks(
        self, ctx, model, req, *, timeout_ms=None, cancel=None, tool_meta_by_name=None, support_tool_use_start=False
    ):
        self.calls.append(("chat", model, req))

        async def gen():
            agg = StreamAggregator(tool_meta_by_name, support_tool_use_start)
            for chunk in agg.text(self.text):
                yield chunk
            for chunk in agg.finish("end_turn"):
                yield chunk

        return gen()


@pytest.fixture
def fake_adapter():
    adapter = FakeAdapter()
    registry = AdapterRegistry.get_instance()
    registry.register("openai_compatible", adapter)
    yield adapter
    registry.reset()


def _runtime(rules=None, **kwargs):
    config = byok_config_from_dict({
        "providers": [
            {
                "id": "p1",
                "type": "openai_compatible",
                "base_url": "https://x/v1",
                "api_key": "k",
                "default_model": "m1",
                "models": ["m1", "m2"],
            }
        ],
        "routing": {"default_mode": "official", "rules": rules or {}},
        "telemetry": {"disabled_endpoints": ["/report-error"]},
    })
    kwargs.setdefault("runtime_enabled", True)
    kwargs.setdefault("history_cache", HistorySummaryCache())
    return ByokRuntime(config, **kwargs)


async def _drain(stream):
    return [item async for item in stream]


class TestRouting:
    """测试 official / disabled / runtime 开关"""

    @pytest.mark.asyncio
    async def test_runtime_disabled_passes_through(self, fake_adapter):
        rt = _runtime({"/completion": "byok"}, runtime_enabled=False)
        assert await rt.handle_call_api("/completion", {"prefix": "x"}) is None
        assert await rt.handle_call_api_stream("/chat-stream", {"message": "hi"}) is None
        assert fake_adapter.calls == []

    @pytest.mark.asyncio
    async def test_official_and_disabled(self, fake_adapter):
        rt = _runtime()
        assert await rt.handle_call_api("/completion", {}) is None
        assert await rt.handle_call_api("/report-error", {}) == {}
        assert await _drain(await rt.handle_call_api_stream("/report-error", {})) == []
        assert await rt.handle_call_api("", {}) is None

    @pytest.mark.asyncio
    async def test_get_models(self, fake_adapter):
        rt = _runtime({"/get-models": "byok"})
        result = await rt.handle_call_api("/get-models", {})

        assert result["default_model"] == "byok:p1:m1"
        assert result["models"] == [{"name": "byok:p1:m1"}, {"name": "byok:p1:m2"}]
        assert build_byok_model_list(rt.config) == ["byok:p1:m1", "byok:p1:m2"]


class TestCallApi:
    """测试非流式端点"""

    @pytest.mark.asyncio
    async def test_completion(self, fake_adapter):
        rt = _runtime({"/completion": "byok"})
        result = await rt.handle_call_api("/completion", {"prefix": "def ", "model": "byok:p1:m2"})

        assert result["completion_items"] == [{"text": "OK"}]
        assert fake_adapter.calls[0][1] == "m2"

    @pytest.mark.asyncio
    async def test_chat(self, fake_adapter):
        rt = _runtime({"/chat": "byok"})
        result = await rt.handle_call_api("/chat", {"message": "hi"})

        assert result["text"] == "OK"
        assert [n["type"] for n in result["nodes"]] == [0, 2]

    @pytest.mark.asyncio
    async def test_next_edit_loc_falls_back_to_diagnostics(self, fake_adapter):
        fake_adapter.fail_complete = True
        rt = _runtime({"/next_edit_loc": "byok"})
        body = {
            "path": "a.py",
            "num_results": 2,
            "diagnostics": [{"path": "b.py", "range": {"start": {"line": 4}, "end": {"line": 6}}}],
        }
        result = await rt.handle_call_api("/next_edit_loc", body)

        locs = [(c["item"]["path"], c["item"]["range"]["start"], c["debug_info"]["source"]) for c in result["candidate_locations"]]
        assert locs == [("b.py", 4, "diagnostic"), ("a.py", 0, "fallback:path")]

    @pytest.mark.asyncio
    async def test_next_edit_loc_llm_first(self, fake_adapter):
        fake_adapter.text = '[{"path": "c.py", "start_line": 10, "end_line": 12}]'
        rt = _runtime({"/next_edit_loc": "byok"})
        result = await rt.handle_call_api("/next_edit_loc", {"path": "a.py", "num_results": 2})

        paths = [c["item"]["path"] for c in result["candidate_locations"]]
        assert paths == ["c.py", "a.py"]
        assert result["candidate_locations"][0]["item"]["range"] == {"start": 10, "stop": 12}


class TestCallApiStream:
    """测试流式端点"""

    @pytest.mark.asyncio
    async def test_chat_stream_captures_tools(self, fake_adapter):
        tools_context = ToolDefinitionsContext()
        rt = _runtime({"/chat-stream": {"mode": "byok", "provider_id": "p1"}}, tools_context=tools_context)
        body = {"message": "hi", "conversation_id": "c1", "tool_definitions": [{"name": "read_file"}]}

        chunks = await _drain(await rt.handle_call_api_stream("/chat-stream", body))

        assert chunks[0]["text"] == "OK"
        assert chunks[-1]["stop_reason"] == "end_turn"
        last = tools_context.get_last()
        assert [d.name for d in last.tool_definitions] == ["read_file"]
        assert last.source == "/chat-stream"
        assert last.meta["provider_id"] == "p1"

    @pytest.mark.asyncio
    async def test_empty_chat_request(self, fake_adapter):
        rt = _runtime({"/chat-stream": "byok"})
        chunks = await _drain(await rt.handle_call_api_stream("/chat-stream", {}))

        assert chunks == [{"text": "", "nodes": [], "stop_reason": "end_turn"}]
        assert fake_adapter.calls == []

    @pytest.mark.asyncio
    async def test_text_stream_endpoints(self, fake_adapter):
        rt = _runtime({"/generate-conversation-title": "byok"})
        chunks = await _drain(await rt.handle_call_api_stream("/generate-conversation-title", {"message": "x"}))
        assert [c["text"] for c in chunks] == ["A", "", "B"]

    @pytest.mark.asyncio
    async def test_instruction_stream(self, fake_adapter):
        rt = _runtime({"/instruction-stream": "byok"})
        body = {
            "instruction": "double it",
            "selected_text": "x = 1\n",
            "prefix": "import os\n",
            "target_file_content": "import os\nx = 1\nprint(x)\n",
        }
        chunks = await _drain(await rt.handle_call_api_stream("/instruction-stream", body))

        assert chunks[0] == {
            "text": "",
            "replacement_start_line": 2,
            "replacement_end_line": 2,
            "replacement_old_text": "x = 1\n",
        }
        assert chunks[1:] == [{"text": "A", "replacement_text": "A"}, {"text": "B", "replacement_text": "B"}]

    @pytest.mark.asyncio
    async def test_next_edit_stream_from_blobs(self, fake_adapter):
        fake_adapter.text = "y = 2"
        rt = _runtime({"/next-edit-stream": "byok"})
        body = {
            "path": "a.py",
            "blobs": {"a.py": "x = 1\ny = 1\n"},
            "selection_begin_char": 6,
            "selection_end_char": 11,
        }
        chunks = await _drain(await rt.handle_call_api_stream("/next-edit-stream", body))

        edit = chunks[0]["result"]["suggested_edit"]
        assert edit["existing_code"] == "y = 1"
        assert (edit["char_start"], edit["char_end"]) == (6, 11)
        assert edit["suggested_code"] == "y = 2"


class TestHistoryCacheDelete:
    @pytest.mark.asyncio
    async def test_delete_endpoint_clears_cache(self, fake_adapter):
        cache = HistorySummaryCache()
        cache.put("conv-9", 2, "s", 60000)
        rt = _runtime(history_cache=cache)

        assert await rt.handle_call_api("/delete-conversation", {"conversationId": "conv-9"}) is None
        assert len(cache) == 0


class TestHelpers:
    """测试替换区间与候选位置辅助函数"""

    def test_pure_insertion(self):
        meta = build_instruction_replacement_meta(
            {"prefix": "a\nb\n", "suffix": "c\n", "target_file_content": "a\nb\nc\n"}
        )
        assert meta == {
            "replacement_start_line": 3,
            "replacement_end_line": 3,
            "replacement_old_text": "PURE INSERTION AFTER LINE:b",
        }

    def test_duplicate_selection_uses_hints(self):
        meta = build_instruction_replacement_meta({
            "selected_text": "x",
            "prefix": "second\n",
            "target_file_content": "first\nx\nsecond\nx\n",
        })
        assert meta["replacement_start_line"] == 4

    def test_candidates(self):
        body = {"num_results": 3, "path": "a.py", "blobs": {"a.py": "", "z.py": ""}}
        baseline = pick_next_edit_location_candidates(body)
        assert [c["item"]["path"] for c in baseline] == ["a.py", "z.py"]

        llm = [{"item": {"path": "a.py", "range": {"start": 0, "stop": 0}}, "score": 1, "debug_info": {"source": "byok:llm"}}]
        merged = merge_next_edit_loc_candidates(baseline, llm, 3)
        assert [(c["item"]["path"], c["debug_info"]["source"]) for c in merged] == [("a.py", "byok:llm"), ("z.py", "fallback:blobs")]
