"""
Streaming Aggregator 测试

分片 tool call 参数的缓冲、TOOL_USE_START、stop_reason 合成与流收集。
"""

import pytest

from src.byok.stream import (
    StreamAggregator,
    ToolCallPhase,
    collect_chat_stream,
    extract_token_usage_from_nodes,
    extract_tool_uses_from_nodes,
    map_anthropic_stop_reason,
    map_gemini_finish_reason,
    map_openai_finish_reason,
)
from src.byok.types import ChatChunk, ResponseNodeType, StopReason


def _nodes(chunks):
    return [n for c in chunks for n in c.nodes]


class TestStreamAggregator:
    """测试聚合器状态机"""

    def test_fragmented_tool_call_emits_single_node(self):
        agg = StreamAggregator(tool_meta_by_name={"search": {"mcp_server_name": "srv", "mcp_tool_name": "q"}})
        chunks = []
        chunks += agg.text("Let me look. ")
        chunks += agg.begin_tool_use(0, tool_use_id="call_1", tool_name="search")
        agg.append_tool_arguments(0, '{"que')
        agg.append_tool_arguments(0, 'ry": "x"}')
        assert agg.phase is ToolCallPhase.TOOL_USE_PENDING
        chunks += agg.finish(map_openai_finish_reason("tool_calls"))

        tool_nodes = [n for n in _nodes(chunks) if n.type == ResponseNodeType.TOOL_USE]
        assert len(tool_nodes) == 1
        tu = tool_nodes[0].tool_use
        assert tu.tool_use_id == "call_1"
        assert tu.parsed_input() == {"query": "x"}
        assert tu.mcp_server_name == "srv"
        assert tu.mcp_tool_name == "q"
        assert not any(n.type == ResponseNodeType.TOOL_USE_START for n in _nodes(chunks))
        assert chunks[-1].stop_reason == StopReason.TOOL_USE_REQUESTED
        assert agg.phase is ToolCallPhase.DONE

    def test_tool_use_start_when_supported(self):
        agg = StreamAggregator(support_tool_use_start=True)
        start = agg.begin_tool_use("a", tool_use_id="t", tool_name="echo")
        again = agg.begin_tool_use("a", tool_name="echo")

        assert [n.type for n in _nodes(start)] == [ResponseNodeType.TOOL_USE_START]
        assert again == []

    def test_stop_reason_synthesized_once(self):
        agg = StreamAggregator()
        agg.text("hi")
        agg.usage(input_tokens=3, output_tokens=2)
        done = agg.finish()

        assert done[-1].stop_reason == StopReason.END_TURN
        types = [n.type for n in done[-1].nodes]
        assert types == [ResponseNodeType.TOKEN_USAGE, ResponseNodeType.MAIN_TEXT_FINISHED]
        assert done[-1].nodes[-1].content == "hi"
        assert agg.finish(StopReason.MAX_TOKENS) == []
        assert agg.text("late") == []

    def test_end_turn_with_tool_use_becomes_tool_use_requested(self):
        agg = StreamAggregator()
        agg.begin_tool_use(1, tool_name="echo")
        agg.set_tool_arguments(1, '{"text": "hello"}')
        out = agg.finish(StopReason.END_TURN)

        assert out[-1].stop_reason == StopReason.TOOL_USE_REQUESTED
        tu = extract_tool_uses_from_nodes(_nodes(out))[0]
        assert tu.tool_use_id.startswith("toolu_")

    def test_nameless_tool_call_is_dropped(self):
        agg = StreamAggregator()
        agg.append_tool_arguments(0, "{}")
        out = agg.finish()

        assert extract_tool_uses_from_nodes(_nodes(out)) == []
        assert out[-1].stop_reason == StopReason.END_TURN


class TestStopReasonMapping:
    def test_maps(self):
        assert map_openai_finish_reason("length") == StopReason.MAX_TOKENS
        assert map_openai_finish_reason(None) is None
        assert map_anthropic_stop_reason("tool_use") == StopReason.TOOL_USE_REQUESTED
        assert map_gemini_finish_reason("SAFETY") == StopReason.SAFETY
        assert map_gemini_finish_reason("OTHER") == StopReason.END_TURN
        assert map_gemini_finish_reason("") is None


class TestCollectChatStream:
    """测试流收集"""

    @pytest.mark.asyncio
    async def test_collect(self):
        agg = StreamAggregator()
        chunks = agg.text("a") + agg.text("b")
        agg.usage(input_tokens=10, output_tokens=1)
        agg.usage(output_tokens=5, cache_read_input_tokens=4)
        chunks += agg.finish()

        async def source():
            for c in chunks:
                yield c

        collected = await collect_chat_stream(source())
        assert collected.text == "ab"
        assert collected.stop_reason == StopReason.END_TURN
        assert not collected.truncated
        usage = extract_token_usage_from_nodes(collected.nodes)
        assert (usage.input_tokens, usage.output_tokens, usage.cache_read_input_tokens) == (10, 5, 4)

    @pytest.mark.asyncio
    async def test_max_chunks_closes_source(self):
        closed = []

        async def source():
            try:
                for i in range(10):
                    yield ChatChunk(text=str(i))
            finally:
                closed.append(True)

        collected = await collect_chat_stream(source(), max_chunks=3)
        assert collected.text == "012"
        assert collected.truncated
        assert closed == [True]
