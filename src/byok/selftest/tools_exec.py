# -*- coding: utf-8 -*-
"""
Self Test - 真实工具执行
========================

通过宿主注入的 ToolExecutor 在 workspace 下的临时目录 BYOK-test/run-<id> 中真实执行每个工具：

1. save-file / view / str-replace-editor / remove-files   文件增删改查
2. launch-process（大输出触发截断）-> view-range-untruncated / search-untruncated
3. list-processes / read-process / write-process / read-terminal / kill-process
4. diagnostics / codebase-retrieval / web-search / web-fetch / open-browser / render-mermaid
5. view_tasklist / add_tasks / update_tasks / reorganize_tasklist
6. remember

某个工具只要有一次调用成功就算可用；走不到的工具记为 "not executed"。
临时目录在 finally 中删除（失败忽略）。
"""

import inspect
import json
import re
import shutil
import sys
import time
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from log import log

from ..cancellation import CancellationToken, run_with_deadline
from ..errors import CancellationError
from ..normalize import normalize_string
from ..schema import sample_json_from_schema
from ..tools_bridge import dedupe_tool_defs_by_name, resolve_tool_schema
from ..tools_context import ToolCallContext, ToolCallResult, ToolExecutor, coerce_tool_call_result
from ..types import ToolDefinition, ToolExecSummary

__all__ = [
    "TOOLS_EXEC_CONVERSATION_ID",
    "build_tool_input_from_schema",
    "summarize_tool_result",
    "extract_reference_id",
    "extract_terminal_ids",
    "extract_terminal_ids_from_text",
    "find_task_uuid_in_plan",
    "normalize_markdown_for_reorg",
    "run_tools_exec",
]

# 固定会话 ID，避免污染用户真实会话（tasklist / rules 等工具按会话绑定）
TOOLS_EXEC_CONVERSATION_ID = "byok-selftest-toolsexec"

UNTRUNCATED_NEEDLE = "NEEDLE_4242"
WRITE_TOKEN = "BYOK_WRITE_TEST"
TASK_NAME = "BYOK Self Test Task"
MEMORY_TEXT = "BYOK-test 是工具全量测试目录"
FAILED_TOOLS_MAX = 12
PREVIEW_MAX_CHARS = 220

_EXACT_STRING = (
    re.compile(r"exactly this string:\s*'([^']+)'", re.IGNORECASE),
    re.compile(r'exactly this string:\s*"([^"]+)"', re.IGNORECASE),
)
_REFERENCE_ID_PATTERNS = (
    re.compile(r"reference_id\s*[:=]\s*['\"]?([A-Za-z0-9_-]{4,})['\"]?", re.IGNORECASE),
    re.compile(r"reference id\s*[:=]\s*['\"]?([A-Za-z0-9_-]{4,})['\"]?", re.IGNORECASE),
    re.compile(r"reference-id\s*[:=]\s*['\"]?([A-Za-z0-9_-]{4,})['\"]?", re.IGNORECASE),
    re.compile(r"<reference[_-]?id>\s*([A-Za-z0-9_-]{4,})\s*</reference[_-]?id>", re.IGNORECASE),
)
_TERMINAL_ID = re.compile(r"Terminal\s+(\d+)", re.IGNORECASE)
_UUID = re.compile(r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})", re.IGNORECASE)
_TASK_LINE = re.compile(r"^(\s*)(-*)\s*(\[[ x/-]\]\s*UUID:.*)$")


# ====================== 参数构造 ======================

def _exact_string_requirement(prop_schema: Any) -> str:
    desc = normalize_string(prop_schema.get("description")) if isinstance(prop_schema, dict) else ""
    for pattern in _EXACT_STRING:
        m = pattern.search(desc)
        if m:
            return m.group(1).strip()
    return ""


def build_tool_input_from_schema(
    tool: ToolDefinition,
    overrides: Optional[Dict[str, Any]] = None,
    defaults: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    按工具 schema 构造调用参数

    1. required 字段先用样例值填充
    2. 名字含 reminder 的必填字段，从 description 中解析 "exactly this string: '...'"
    3. defaults 只填尚未赋值的字段
    4. overrides 强制覆盖

    只写入 schema.properties 中存在的 key。
    """
    schema = resolve_tool_schema(tool)
    props = schema.get("properties") if isinstance(schema.get("properties"), dict) else {}
    required = [normalize_string(k) for k in schema.get("required") or [] if normalize_string(k)]

    out: Dict[str, Any] = {}
    for key in required:
        if key in props:
            out[key] = sample_json_from_schema(props[key])
    for key in required:
        if key in props and "reminder" in key.lower():
            expected = _exact_string_requirement(props[key])
            if expected:
                out[key] = expected
    for key, value in (defaults or {}).items():
        if key in props and out.get(key) is None:
            out[key] = value
    for key, value in (overrides or {}).items():
        if key in props:
            out[key] = value
    return out


def summarize_tool_result(res: ToolCallResult, max_len: int = PREVIEW_MAX_CHARS) -> Dict[str, Any]:
    text = (res.text or "").strip()
    preview = text[:max_len] + "…" if len(text) > max_len else text
    return {"is_error": res.is_error, "text": text, "preview": preview}


# ====================== 结果解析 ======================

def _walk(root: Any, max_depth: int = 6, max_nodes: int = 3000):
    """广度优先遍历 dict / list，产出 (key, value)"""
    queue = deque([(root, 0)])
    seen = set()
    while queue:
        value, depth = queue.popleft()
        if not isinstance(value, (dict, list)) or id(value) in seen:
            continue
        seen.add(id(value))
        if depth > max_depth or len(seen) > max_nodes:
            return
        items = value.items() if isinstance(value, dict) else ((None, v) for v in value)
        for key, child in items:
            yield key, child
            if isinstance(child, (dict, list)):
                queue.append((child, depth + 1))


def extract_reference_id(res: ToolCallResult) -> str:
    """launch-process 截断输出里的 reference_id（字段、文本 footer 或嵌套字段）"""
    for key in ("reference_id", "referenceId", "reference", "ref_id", "refId",
                "untruncated_reference_id", "untruncatedReferenceId"):
        value = normalize_string(res.extra.get(key))
        if value:
            return value
    for pattern in _REFERENCE_ID_PATTERNS:
        m = pattern.search(res.text or "")
        if m:
            return m.group(1).strip()
    for key, child in _walk(res.extra):
        if isinstance(key, str) and "reference" in key.lower() and isinstance(child, (str, int)):
            value = normalize_string(str(child))
            if value:
                return value
    return ""


def extract_terminal_ids_from_text(text: str) -> List[int]:
    return [int(m.group(1)) for m in _TERMINAL_ID.finditer(text or "")]


def _as_terminal_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        n = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None


def extract_terminal_ids(res: ToolCallResult) -> List[int]:
    """
    从工具结果里找 terminal id：文本中的 "Terminal N"、常见字段，
    以及嵌套结构里 key 含 terminal 的数字
    """
    ids = set(extract_terminal_ids_from_text(res.text))
    for key in ("terminal_id", "terminalId", "terminal", "terminalID"):
        n = _as_terminal_id(res.extra.get(key))
        if n is not None:
            ids.add(n)
    for key, child in _walk(res.extra, max_nodes=2000):
        if isinstance(key, str) and "terminal" in key.lower() and isinstance(child, (str, int)):
            n = _as_terminal_id(child)
            if n is not None:
                ids.add(n)
    return sorted(ids)


def find_task_uuid_in_plan(plan: Any, name_contains: str) -> str:
    """在 add_tasks 返回的 plan 树中按任务名查找 uuid"""
    queue = deque([plan])
    seen = set()
    while queue:
        node = queue.popleft()
        if not isinstance(node, dict) or id(node) in seen:
            continue
        seen.add(id(node))
        task_uuid = normalize_string(node.get("uuid"))
        if task_uuid and name_contains in normalize_string(node.get("name")):
            return task_uuid
        subs = node.get("subTasksData", node.get("sub_tasks_data"))
        queue.extend(subs if isinstance(subs, list) else [])
    return ""


def normalize_markdown_for_reorg(markdown: str) -> str:
    """
    把 view_tasklist 的输出整理成 reorganize_tasklist 能接受的形式：
    只保留任务行，root 任务放第一行且 level=0，其余 level 不跳级，
    并把 BYOK Self Test Task 移到 root 的第一个子任务位置
    """
    raw = normalize_string(markdown)
    if not raw:
        return ""
    tasks = []
    for line in raw.splitlines():
        m = _TASK_LINE.match(line)
        if m and m.group(3).rstrip():
            tasks.append([len(m.group(2)), m.group(3).rstrip()])
    if not tasks:
        return raw

    root_idx = next(
        (i for i, (_, body) in enumerate(tasks) if "NAME:Current Task List" in body or "Root task" in body),
        None,
    )
    if root_idx is None:
        root_idx = min(range(len(tasks)), key=lambda i: tasks[i][0])
    base = tasks[root_idx][0]
    tasks = [[max(0, dashes - base), body] for dashes, body in tasks]

    root = tasks.pop(root_idx)
    tasks.insert(0, [0, root[1]])
    for i in range(1, len(tasks)):
        tasks[i][0] = min(max(1, tasks[i][0]), tasks[i - 1][0] + 1)

    byok_idx = next((i for i, (_, body) in enumerate(tasks) if TASK_NAME in body), -1)
    if byok_idx > 1:
        _, body = tasks.pop(byok_idx)
        tasks.insert(1, [1, body])
    elif byok_idx == 1:
        tasks[1][0] = 1
    return "\n".join("-" * dashes + body for dashes, body in tasks)


# ====================== 执行 ======================

def _cwd_overrides(workspace_root: str) -> Dict[str, Any]:
    keys = ("cwd", "workdir", "working_dir", "working_directory", "workingDirectory", "workingDir", "directory", "dir")
    return {k: workspace_root for k in keys}


def _terminal_overrides(terminal_id: int, **extra: Any) -> Dict[str, Any]:
    return {"terminal_id": terminal_id, "terminalId": terminal_id, **extra}


class _ToolsExecRun:
    """一次 toolsExec 的状态：按工具名记录结果，最终生成 ToolExecSummary"""

    def __init__(
        self,
        tool_defs: List[ToolDefinition],
        executor: ToolExecutor,
        workspace_root: Path,
        cancel: Optional[CancellationToken],
        emit: Callable[[str], None],
    ):
        self.by_name = {d.name: d for d in dedupe_tool_defs_by_name(tool_defs)}
        self.executor = executor
        self.workspace_root = workspace_root
        self.cancel = cancel
        self.emit = emit
        self.results: Dict[str, Dict[str, Any]] = {}

        run_id = uuid.uuid4().hex[:12]
        self.scratch_rel = f"BYOK-test/run-{run_id}"
        self.scratch_abs = workspace_root / self.scratch_rel
        self.file_rel = f"{self.scratch_rel}/tool_test.txt"
        self.big_rel = f"{self.scratch_rel}/big.txt"
        self.diag_rel = f"{self.scratch_rel}/diag_test.js"

    def has(self, name: str) -> bool:
        return name in self.by_name

    def input_for(self, name: str, **overrides: Any) -> Dict[str, Any]:
        return build_tool_input_from_schema(self.by_name[name], overrides=overrides)

    def mark(self, name: str, ok: bool, detail: str) -> None:
        prev = self.results.get(name)
        # 成功过一次就不再被失败覆盖
        if prev is not None and prev["ok"] and not ok:
            return
        self.results[name] = {"ok": ok, "detail": detail}

    async def _check_safe(self, name: str, tool_input: Dict[str, Any]) -> Optional[str]:
        check = getattr(self.executor, "check_tool_call_safe", None)
        if not callable(check):
            return None
        try:
            safe = check(name, tool_input)
            if inspect.isawaitable(safe):
                safe = await safe
        except CancellationError:
            raise
        except Exception as e:
            return f"check_tool_call_safe failed: {e}"
        return None if safe else "blocked_by_policy"

    async def call(self, name: str, tool_input: Dict[str, Any]) -> Optional[ToolCallResult]:
        """调用一个工具；工具不在列表中时返回 None，失败时返回 None 并记录"""
        if not self.has(name):
            return None
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        self.emit(f"[toolsExec] calling {name} ...")

        blocked = await self._check_safe(name, tool_input)
        if blocked:
            self.emit(f"[tool {name}] FAIL {blocked}")
            self.mark(name, False, blocked)
            return None

        context = ToolCallContext(
            conversation_id=TOOLS_EXEC_CONVERSATION_ID,
            request_id=f"byok_selftest_tool_{uuid.uuid4().hex[:12]}",
            tool_use_id=f"tooluse_{uuid.uuid4().hex[:12]}",
            workspace_root=str(self.workspace_root),
            cancel=self.cancel,
        )
        try:
            res = coerce_tool_call_result(
                await run_with_deadline(self.executor.call_tool(name, tool_input, context), None, self.cancel)
            )
        except CancellationError:
            raise
        except Exception as e:
            self.emit(f"[tool {name}] FAIL exception={e}")
            self.mark(name, False, str(e))
            return None

        summary = summarize_tool_result(res)
        if res.is_error:
            self.emit(f"[tool {name}] FAIL isError=true preview={summary['preview']}".rstrip())
            self.mark(name, False, summary["preview"] or "isError=true")
            return None
        self.emit(f"[tool {name}] ok preview={summary['preview']}".rstrip())
        self.mark(name, True, summary["preview"])
        return res

    # ---------- 步骤 ----------

    async def files(self) -> None:
        file_abs = self.workspace_root / self.file_rel
        content = "BYOK-TEST-LINE-1\nBYOK-TEST-LINE-2\nBYOK-TEST-LINE-3\n"
        if self.has("save-file"):
            await self.call(
                "save-file",
                self.input_for("save-file", path=self.file_rel, file_content=content, add_last_line_newline=True),
            )
            if not file_abs.exists():
                raise RuntimeError("save-file succeeded but file missing")
        else:
            file_abs.write_text(content, encoding="utf-8")

        if self.has("view"):
            await self.call("view", self.input_for("view", type="file", path=self.file_rel))
            await self.call("view", self.input_for("view", type="directory", path=self.scratch_rel))
            await self.call(
                "view",
                self.input_for(
                    "view", type="file", path=self.file_rel, search_query_regex="BYOK-TEST-LINE-2", case_sensitive=True
                ),
            )

        if self.has("str-replace-editor"):
            await self.call("str-replace-editor", self._str_replace_input())
            if "BYOK-TEST-LINE-2-REPLACED" not in file_abs.read_text(encoding="utf-8", errors="ignore"):
                self.emit("[toolsExec] WARN str-replace-editor executed but file content not updated as expected")

        if self.has("remove-files"):
            await self.call("remove-files", self.input_for("remove-files", file_paths=[self.file_rel]))
            if file_abs.exists():
                self.emit("[toolsExec] WARN remove-files executed but file still exists")

    def _str_replace_input(self) -> Dict[str, Any]:
        props = resolve_tool_schema(self.by_name["str-replace-editor"]).get("properties") or {}
        base = {"command": "str_replace", "path": self.file_rel}
        if "str_replace_entries" in props:
            entry = {
                "old_str": "BYOK-TEST-LINE-2",
                "new_str": "BYOK-TEST-LINE-2-REPLACED",
                "old_str_start_line_number": 2,
                "old_str_end_line_number": 2,
            }
            return self.input_for("str-replace-editor", **base, str_replace_entries=[entry])
        if "old_str_1" in props or "new_str_1" in props:
            return self.input_for(
                "str-replace-editor",
                **base,
                old_str_1="BYOK-TEST-LINE-2",
                new_str_1="BYOK-TEST-LINE-2-REPLACED",
                old_str_start_line_number_1=2,
                old_str_end_line_number_1=2,
            )
        return self.input_for("str-replace-editor", **base)

    def _write_big_file(self) -> None:
        lines = [
            f"LINE {i:04d} :: {'x' * 60}{' ' + UNTRUNCATED_NEEDLE if i == 4242 else ''}" for i in range(1, 6001)
        ]
        try:
            (self.workspace_root / self.big_rel).write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            self.emit(f"[toolsExec] WARN failed to prepare truncated content: {e}")

    async def processes(self) -> None:
        self._write_big_file()
        is_win = sys.platform.startswith("win")
        root = str(self.workspace_root)
        terminal_id: Optional[int] = None
        max_before_interactive: Optional[int] = None

        if self.has("launch-process"):
            big_cmd = (
                f"powershell -NoProfile -Command \"Get-Content -Path '{self.big_rel}'; Write-Output 'BYOK_SELFTEST'\""
                if is_win
                else f'cat -n "{self.big_rel}"; echo BYOK_SELFTEST'
            )
            lp1 = await self.call(
                "launch-process",
                self.input_for(
                    "launch-process", **_cwd_overrides(root), command=big_cmd, wait=True,
                    max_wait_seconds=15, maxWaitSeconds=15,
                ),
            )
            if lp1 is not None:
                ids = extract_terminal_ids(lp1)
                terminal_id = max(ids) if ids else None
            reference_id = extract_reference_id(lp1) if lp1 is not None else ""
            if not reference_id:
                self.emit("[toolsExec] WARN no reference_id detected from launch-process output")

            if self.has("view-range-untruncated"):
                await self.call(
                    "view-range-untruncated",
                    self.input_for(
                        "view-range-untruncated", reference_id=reference_id, referenceId=reference_id,
                        start_line=1, end_line=30, startLine=1, endLine=30,
                    ),
                )
            if self.has("search-untruncated"):
                sr = await self.call(
                    "search-untruncated",
                    self.input_for(
                        "search-untruncated", reference_id=reference_id, referenceId=reference_id,
                        search_term=UNTRUNCATED_NEEDLE, searchTerm=UNTRUNCATED_NEEDLE,
                        context_lines=2, contextLines=2,
                    ),
                )
                if sr is not None and sr.text and UNTRUNCATED_NEEDLE not in sr.text:
                    self.emit("[toolsExec] WARN search-untruncated ok but missing expected needle")

        if self.has("list-processes"):
            lr = await self.call("list-processes", self.input_for("list-processes"))
            ids = extract_terminal_ids_from_text(lr.text) if lr is not None else []
            if ids:
                max_before_interactive = max(ids)
                terminal_id = terminal_id if terminal_id is not None else max(ids)

        if self.has("read-process") and terminal_id is not None:
            await self.call(
                "read-process",
                self.input_for("read-process", **_terminal_overrides(terminal_id, wait=True, max_wait_seconds=5, maxWaitSeconds=5)),
            )

        interactive_id: Optional[int] = None
        if self.has("launch-process"):
            lp2 = await self.call(
                "launch-process",
                self.input_for(
                    "launch-process", **_cwd_overrides(root),
                    command="powershell -NoProfile -NoLogo" if is_win else "sh",
                    wait=False, max_wait_seconds=1, maxWaitSeconds=1,
                ),
            )
            ids = extract_terminal_ids(lp2) if lp2 is not None else []
            interactive_id = max(ids) if ids else None
            # 从 list-processes 的增量推断新终端
            if interactive_id is None and self.has("list-processes"):
                lr2 = await self.call("list-processes", self.input_for("list-processes"))
                ids = extract_terminal_ids_from_text(lr2.text) if lr2 is not None else []
                newer = [i for i in ids if max_before_interactive is None or i > max_before_interactive]
                interactive_id = max(newer or ids) if ids else None

        active_id = interactive_id if interactive_id is not None else terminal_id

        if self.has("write-process") and active_id is not None:
            text = f"echo {WRITE_TOKEN}\n"
            await self.call(
                "write-process",
                self.input_for("write-process", **_terminal_overrides(active_id, input_text=text, inputText=text, text=text, command=text)),
            )
        if self.has("read-process") and active_id is not None:
            rr = await self.call(
                "read-process",
                self.input_for("read-process", **_terminal_overrides(active_id, wait=True, max_wait_seconds=5, maxWaitSeconds=5)),
            )
            if rr is not None and rr.text and WRITE_TOKEN not in rr.text:
                self.emit("[toolsExec] WARN read-process ok but missing expected token")
        if self.has("read-terminal"):
            overrides: Dict[str, Any] = {"wait": True, "max_wait_seconds": 2, "maxWaitSeconds": 2}
            if active_id is not None:
                overrides.update(_terminal_overrides(active_id))
            await self.call("read-terminal", self.input_for("read-terminal", **overrides))
        if self.has("kill-process") and active_id is not None:
            await self.call("kill-process", self.input_for("kill-process", **_terminal_overrides(active_id)))
            if terminal_id is not None and terminal_id != active_id:
                await self.call("kill-process", self.input_for("kill-process", **_terminal_overrides(terminal_id)))

    async def misc(self) -> None:
        if self.has("diagnostics"):
            (self.workspace_root / self.diag_rel).write_text("const x = ;\n", encoding="utf-8")
            await self.call("diagnostics", self.input_for("diagnostics", paths=[self.diag_rel]))
        if self.has("codebase-retrieval"):
            await self.call(
                "codebase-retrieval",
                self.input_for("codebase-retrieval", information_request="BYOK-test 目录在本仓库/环境中的用途是什么？"),
            )
        if self.has("web-search"):
            q = "example.com robots.txt"
            await self.call("web-search", self.input_for("web-search", query=q, search_term=q, q=q))
        for name in ("web-fetch", "open-browser"):
            if self.has(name):
                await self.call(name, self.input_for(name, url="https://example.com"))
        if self.has("render-mermaid"):
            await self.call(
                "render-mermaid",
                self.input_for(
                    "render-mermaid",
                    title="BYOK Self Test",
                    diagram_definition="flowchart LR\n  A[Self Test] --> B{ToolExecutor}\n  B --> C[call_tool]\n  C --> D[Result]",
                ),
            )

    async def _ensure_task_root(self) -> None:
        manager = getattr(self.executor, "task_manager", None)
        if manager is None or not callable(getattr(manager, "get_root_task_uuid", None)):
            return
        try:
            root = manager.get_root_task_uuid(TOOLS_EXEC_CONVERSATION_ID)
            if inspect.isawaitable(root):
                root = await root
            if not root and callable(getattr(manager, "create_new_task_list", None)):
                created = manager.create_new_task_list(TOOLS_EXEC_CONVERSATION_ID)
                if inspect.isawaitable(created):
                    await created
        except CancellationError:
            raise
        except Exception as e:
            self.emit(f"[toolsExec] WARN failed to initialize tasklist root: {e}")

    async def tasks(self) -> None:
        await self._ensure_task_root()
        markdown = ""
        if self.has("view_tasklist"):
            r = await self.call("view_tasklist", self.input_for("view_tasklist"))
            markdown = normalize_string(r.text) if r is not None else ""

        task_uuid = ""
        if self.has("add_tasks"):
            added = await self.call(
                "add_tasks",
                self.input_for(
                    "add_tasks",
                    tasks=[{"name": TASK_NAME, "description": "Created by self test", "state": "NOT_STARTED"}],
                ),
            )
            if added is not None:
                task_uuid = find_task_uuid_in_plan(added.extra.get("plan"), TASK_NAME)
            if self.has("view_tasklist"):
                r2 = await self.call("view_tasklist", self.input_for("view_tasklist"))
                md2 = normalize_string(r2.text) if r2 is not None else ""
                markdown = md2 or markdown
                if not task_uuid and md2:
                    line = next((l for l in md2.splitlines() if TASK_NAME in l), "")
                    m = _UUID.search(line)
                    task_uuid = m.group(1) if m else ""

        if self.has("update_tasks") and task_uuid:
            for state in ("IN_PROGRESS", "COMPLETE"):
                await self.call("update_tasks", self.input_for("update_tasks", tasks=[{"task_id": task_uuid, "state": state}]))
        if self.has("reorganize_tasklist") and markdown:
            await self.call(
                "reorganize_tasklist",
                self.input_for("reorganize_tasklist", markdown=normalize_markdown_for_reorg(markdown) or markdown),
            )

    async def remember(self) -> None:
        if not self.has("remember"):
            return
        props = resolve_tool_schema(self.by_name["remember"]).get("properties") or {}
        overrides = {k: MEMORY_TEXT for k in ("text", "memory", "content") if k in props} or {"text": MEMORY_TEXT}
        await self.call("remember", self.input_for("remember", **overrides))

    def summary(self, elapsed_ms: int) -> ToolExecSummary:
        for name in sorted(self.by_name):
            self.results.setdefault(name, {"ok": False, "detail": "not executed"})
        failed = [name for name, r in self.results.items() if not r["ok"]]
        detail = f"tools={len(self.by_name)} executed={len(self.results)} failed={len(failed)}"
        if failed:
            preview = ",".join(failed[:8]) + (",…" if len(failed) > 8 else "")
            detail += f" first={failed[0]} failed_tools={preview}"
        return ToolExecSummary(
            ok=not failed,
            ms=elapsed_ms,
            detail=detail,
            failed_tools=failed[:FAILED_TOOLS_MAX],
            failed_tools_truncated=len(failed) > FAILED_TOOLS_MAX,
            tool_results=[{"name": name, **r} for name, r in self.results.items()],
        )


async def run_tools_exec(
    tool_defs: List[ToolDefinition],
    executor: Optional[ToolExecutor],
    workspace_root: Optional[str],
    cancel: Optional[CancellationToken] = None,
    emit: Optional[Callable[[str], None]] = None,
) -> ToolExecSummary:
    """
    真实执行全部工具（会产生副作用：写文件、起进程、访问网络）

    Raises:
        CancellationError: 运行被取消
    """
    emit = emit or (lambda line: None)
    names = sorted({d.name for d in dedupe_tool_defs_by_name(tool_defs)})
    if not names:
        return ToolExecSummary(ok=False, detail="no tools")
    if executor is None:
        return ToolExecSummary(ok=False, detail="tool executor not available")
    if not workspace_root:
        return ToolExecSummary(ok=False, detail="no workspace folder (tools require workspace-relative paths)")

    run = _ToolsExecRun(tool_defs, executor, Path(workspace_root), cancel, emit)
    start = time.perf_counter()
    log.debug(f"toolsExec start tools={len(names)}", tag="TOOLS")
    emit(
        f"[toolsExec] start tools={len(names)} workspace={Path(workspace_root).as_posix()} "
        f"scratch={run.scratch_rel} conversationId={TOOLS_EXEC_CONVERSATION_ID}"
    )
    try:
        run.scratch_abs.mkdir(parents=True, exist_ok=True)
        await run.files()
        await run.processes()
        await run.misc()
        await run.tasks()
        await run.remember()
    except CancellationError:
        raise
    except Exception as e:
        emit(f"[toolsExec] aborted: {e}")
        log.warning(f"toolsExec aborted: {e}", tag="TOOLS")
    finally:
        shutil.rmtree(run.scratch_abs, ignore_errors=True)

    summary = run.summary(int((time.perf_counter() - start) * 1000))
    log.debug(f"toolsExec done ok={summary.ok} {summary.detail}", tag="TOOLS")
    emit(f"[toolsExec] done ok={str(summary.ok).lower()} {summary.detail}")
    return summary
