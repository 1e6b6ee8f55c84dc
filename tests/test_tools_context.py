"""
ToolDefinitionsContext 测试
"""

from src.byok.tools_context import (
    ToolCallResult,
    ToolDefinitionsContext,
    ToolExecutor,
    coerce_tool_call_result,
)
from src.byok.types import ToolDefinition


class TestToolDefinitionsContext:
    """测试捕获 / 替换 / 清空"""

    def test_last_write_wins(self):
        ctx = ToolDefinitionsContext()
        assert ctx.get_last() is None

        first = ctx.capture([{"name": "a"}, {"name": "a"}, {"name": "b"}], source="chat-stream", meta={"n": 1})
        assert first.count == 2
        assert ctx.get_last() is first

        second = ctx.replace([ToolDefinition(name="c")], source="selftest")
        assert ctx.get_last() is second
        assert [d.name for d in second.tool_definitions] == ["c"]
        assert second.source == "selftest"
        assert second.age_ms(second.captured_at_ms + 50) == 50

    def test_empty_capture_keeps_snapshot(self):
        ctx = ToolDefinitionsContext()
        snap = ctx.capture([{"name": "a"}])

        assert ctx.capture([]) is None
        assert ctx.capture("junk") is None
        assert ctx.get_last() is snap

        ctx.clear()
        assert ctx.get_last() is None

    def test_contexts_are_independent(self):
        a, b = ToolDefinitionsContext(), ToolDefinitionsContext()
        a.capture([{"name": "x"}])
        assert b.get_last() is None


class TestCoerceToolCallResult:
    def test_shapes(self):
        assert coerce_tool_call_result("ok") == ToolCallResult(text="ok")
        res = coerce_tool_call_result({"text": "boom", "isError": True, "terminal_id": 3})
        assert res.is_error is True
        assert res.text == "boom"
        assert res.extra == {"terminal_id": 3}
        assert coerce_tool_call_result(None) == ToolCallResult(text="")

    def test_executor_protocol(self):
        class Executor:
            async def get_tool_definitions(self):
                return []

            async def call_tool(self, name, input, context):
                return "ok"

        assert isinstance(Executor(), ToolExecutor)
        assert not isinstance(object(), ToolExecutor)
