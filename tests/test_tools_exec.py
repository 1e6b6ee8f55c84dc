"""
Self Test toolsExec 测试

假的 ToolExecutor 直接在 tmp_path 下读写文件。
"""

import asyncio
from pathlib import Path

import pytest

from src.byok.cancellation import CancellationToken
from src.byok.errors import CancellationError
from src.byok.selftest.tools_exec import (
    TOOLS_EXEC_CONVERSATION_ID,
    build_tool_input_from_schema,
    extract_reference_id,
    extract_terminal_ids,
    find_task_uuid_in_plan,
    normalize_markdown_for_reorg,
    run_tools_exec,
    summarize_tool_result,
)
from src.byok.tools_context import ToolCallResult
from src.byok.types import ToolDefinition


def _tool(name, properties=None, required=None):
    return ToolDefinition(
        name=name,
        input_schema={"type": "object", "properties": properties or {}, "required": required or []},
    )


FILE_TOOLS = [
    _tool(
        "save-file",
        {"path": {"type": "string"}, "file_content": {"type": "string"}, "add_last_line_newline": {"type": "boolean"}},
        ["path", "file_content"],
    ),
    _tool(
        "view",
        {
            "type": {"type": "string"},
            "path": {"type": "string"},
            "search_query_regex": {"type": "string"},
            "case_sensitive": {"type": "boolean"},
        },
        ["path"],
    ),
    _tool("str-replace-editor", {"command": {"type": "string"}, "path": {"type": "string"}}, ["command", "path"]),
    _tool("remove-files", {"file_paths": {"type": "array", "items": {"type": "string"}}}, ["file_paths"]),
    _tool("custom-tool"),
]


class FileExecutor:
    """
    save-file 真实写文件；view 的正则搜索返回 isError；
    str-replace-editor 抛异常；remove-files 被策略拦截
    """

    def __init__(self, write_files: bool = True):
        self.write_files = write_files
        self.calls = []

    async def get_tool_definitions(self):
        return list(FILE_TOOLS)

    def check_tool_call_safe(self, name, input):
        return name != "remove-files"

    async def call_tool(self, name, input, context):
        self.calls.append((name, input, context))
        if name == "save-file":
            if self.write_files:
                Path(context.workspace_root, input["path"]).write_text(input["file_content"], encoding="utf-8")
            return {"text": "saved"}
        if name == "view":
            if "search_query_regex" in input:
                return {"text": "no match", "is_error": True}
            return "BYOK-TEST-LINE-1"
        if name == "str-replace-editor":
            raise RuntimeError("editor crashed")
        return "ok"


class TestRunToolsExec:
    """测试执行流程与结果汇总"""

    @pytest.mark.asyncio
    async def test_results(self, tmp_path):
        executor = FileExecutor()
        lines = []

        summary = await run_tools_exec(FILE_TOOLS, executor, str(tmp_path), emit=lines.append)

        results = {r["name"]: r for r in summary.tool_results}
        assert results["save-file"]["ok"]
        # 第三次 view 失败，不覆盖前面的成功
        assert results["view"]["ok"]
        assert results["str-replace-editor"] == {"name": "str-replace-editor", "ok": False, "detail": "editor crashed"}
        assert results["remove-files"]["detail"] == "blocked_by_policy"
        assert results["custom-tool"]["detail"] == "not executed"

        assert not summary.ok
        assert summary.failed_tools == ["str-replace-editor", "remove-files", "custom-tool"]
        assert summary.detail == (
            "tools=5 executed=5 failed=3 first=str-replace-editor "
            "failed_tools=str-replace-editor,remove-files,custom-tool"
        )

        called = [name for name, _, _ in executor.calls]
        assert called == ["save-file", "view", "view", "view", "str-replace-editor"]
        context = executor.calls[0][2]
        assert context.conversation_id == TOOLS_EXEC_CONVERSATION_ID
        assert context.workspace_root == str(tmp_path)
        assert executor.calls[0][1]["path"].startswith("BYOK-test/run-")

        assert list((tmp_path / "BYOK-test").glob("run-*")) == []
        assert lines[-1].startswith("[toolsExec] done ok=false")

    @pytest.mark.asyncio
    async def test_missing_file_aborts(self, tmp_path):
        executor = FileExecutor(write_files=False)
        lines = []

        summary = await run_tools_exec(FILE_TOOLS, executor, str(tmp_path), emit=lines.append)

        results = {r["name"]: r for r in summary.tool_results}
        assert results["save-file"]["ok"]
        assert results["view"]["detail"] == "not executed"
        assert any("aborted: save-file succeeded but file missing" in line for line in lines)
        assert list((tmp_path / "BYOK-test").glob("run-*")) == []

    @pytest.mark.asyncio
    async def test_early_failures(self, tmp_path):
        executor = FileExecutor()

        assert (await run_tools_exec([], executor, str(tmp_path))).detail == "no tools"
        assert (await run_tools_exec(FILE_TOOLS, None, str(tmp_path))).detail == "tool executor not available"
        summary = await run_tools_exec(FILE_TOOLS, executor, None)
        assert summary.detail == "no workspace folder (tools require workspace-relative paths)"
        assert not summary.ok
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_hanging_tool(self, tmp_path):
        cancel = CancellationToken()
        contexts = []

        class HangingExecutor:
            async def get_tool_definitions(self):
                return list(FILE_TOOLS)

            async def call_tool(self, name, input, context):
                contexts.append(context)
                await asyncio.Event().wait()

        asyncio.get_running_loop().call_later(0.05, cancel.cancel)
        with pytest.raises(CancellationError):
            await asyncio.wait_for(run_tools_exec(FILE_TOOLS, HangingExecutor(), str(tmp_path), cancel=cancel), 1)

        assert contexts[0].cancel is cancel
        assert list((tmp_path / "BYOK-test").glob("run-*")) == []

    @pytest.mark.asyncio
    async def test_cancelled(self, tmp_path):
        cancel = CancellationToken()
        cancel.cancel()

        with pytest.raises(CancellationError):
            await run_tools_exec(FILE_TOOLS, FileExecutor(), str(tmp_path), cancel=cancel)
        assert list((tmp_path / "BYOK-test").glob("run-*")) == []


class TestBuildToolInput:
    def test_required_reminder_defaults_overrides(self):
        tool = ToolDefinition(
            name="add_tasks",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "instruction_reminder": {
                        "type": "string",
                        "description": "Must be exactly this string: 'ALWAYS BREAK DOWN'",
                    },
                    "limit": {"type": "integer"},
                    "flag": {"type": "boolean"},
                },
                "required": ["path", "instruction_reminder", "ghost"],
            },
        )

        out = build_tool_input_from_schema(tool, overrides={"path": "a.txt", "zzz": 2}, defaults={"limit": 5, "nope": 1})

        assert out == {"path": "a.txt", "instruction_reminder": "ALWAYS BREAK DOWN", "limit": 5}


class TestResultParsing:
    """测试工具结果解析辅助函数"""

    def test_summarize(self):
        summary = summarize_tool_result(ToolCallResult(text="x" * 300, is_error=True))
        assert summary["is_error"]
        assert summary["preview"] == "x" * 220 + "…"

    def test_reference_id(self):
        assert extract_reference_id(ToolCallResult(extra={"reference_id": "abc9"})) == "abc9"
        assert extract_reference_id(ToolCallResult(text="done <reference_id>ref123</reference_id>")) == "ref123"
        assert extract_reference_id(ToolCallResult(extra={"meta": {"untruncatedReference": "ref-77"}})) == "ref-77"
        assert extract_reference_id(ToolCallResult(text="nothing")) == ""

    def test_terminal_ids(self):
        res = ToolCallResult(text="Terminal 3 started", extra={"terminalId": "5", "info": {"terminal": 7}})
        assert extract_terminal_ids(res) == [3, 5, 7]
        assert extract_terminal_ids(ToolCallResult(extra={"terminal_id": True})) == []

    def test_find_task_uuid(self):
        plan = {
            "uuid": "root",
            "name": "Current Task List",
            "subTasksData": [{"uuid": "t1", "name": "BYOK Self Test Task", "subTasksData": []}],
        }
        assert find_task_uuid_in_plan(plan, "BYOK Self Test Task") == "t1"
        assert find_task_uuid_in_plan(plan, "missing") == ""


class TestNormalizeMarkdownForReorg:
    def test_moves_self_test_task_under_root(self):
        markdown = "\n".join([
            "# Current Task List",
            "",
            "[ ] UUID:root NAME:Current Task List DESCRIPTION:Root task",
            "-[ ] UUID:a NAME:Other DESCRIPTION:x",
            "-[ ] UUID:b NAME:BYOK Self Test Task DESCRIPTION:y",
        ])

        assert normalize_markdown_for_reorg(markdown) == "\n".join([
            "[ ] UUID:root NAME:Current Task List DESCRIPTION:Root task",
            "-[ ] UUID:b NAME:BYOK Self Test Task DESCRIPTION:y",
            "-[ ] UUID:a NAME:Other DESCRIPTION:x",
        ])

    def test_passthrough(self):
        assert normalize_markdown_for_reorg("") == ""
        assert normalize_markdown_for_reorg("no tasks here") == "no tasks here"
