# -*- coding: utf-8 -*-
"""
Self Test 请求构造与工具辅助

探针用到的固定请求（echo_self_test 工具、1x1 PNG、next-edit 样例等），
以及真实工具集的挑选、样例参数与 tool_use / tool_result 配对检查。
"""

import json
import uuid
from typing import Any, Dict, List, Optional

from ..normalize import normalize_string
from ..schema import coerce_strict_schema, count_schema_properties, sample_json_from_schema
from ..tools_bridge import dedupe_tool_defs_by_name, resolve_tool_schema
from ..types import (
    CanonicalChatRequest,
    Exchange,
    ImageFormat,
    ImageNode,
    ProviderType,
    RequestNode,
    RequestNodeType,
    ResponseNode,
    ResponseNodeType,
    ToolDefinition,
    ToolResultNode,
)

__all__ = [
    "ONE_PIXEL_PNG_BASE64",
    "REAL_TOOLS_BATCH_SIZE",
    "NEXT_EDIT_BODY",
    "NEXT_EDIT_LOC_BODY",
    "random_id",
    "self_test_tool_definitions",
    "make_tool_result_node",
    "make_image_node",
    "make_chat_request",
    "make_exchange",
    "example_args_json",
    "pick_real_tools_for_probe",
    "summarize_captured_tools_schemas",
    "unpaired_tool_uses",
]

# 1x1 RGBA PNG，多模态链路连通性测试用
ONE_PIXEL_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4nGP4z8DwHwAFAAH/iZk9HQAAAABJRU5ErkJggg=="
)

REAL_TOOLS_BATCH_SIZE = 6

# 真实工具较多时优先覆盖的工具（常用且 schema 较复杂）
PREFERRED_PROBE_TOOLS = ("str-replace-editor", "codebase-retrieval", "web-fetch", "web-search", "diagnostics")

NEXT_EDIT_BODY = {
    "instruction": "Replace foo with bar in the selected range.",
    "path": "selftest.js",
    "lang": "javascript",
    "prefix": "const x = '",
    "selected_text": "foo",
    "suffix": "';\nconsole.log(x);\n",
}

NEXT_EDIT_LOC_BODY = {
    "instruction": "Find the most relevant place to apply the next edit.",
    "path": "selftest.js",
    "num_results": 2,
    "diagnostics": [
        {
            "path": "selftest.js",
            "range": {"start": {"line": 0}, "end": {"line": 0}},
            "message": "dummy diagnostic for smoke test",
        }
    ],
}


def random_id() -> str:
    return uuid.uuid4().hex[:12]


def self_test_tool_definitions() -> List[ToolDefinition]:
    return [
        ToolDefinition(
            name="echo_self_test",
            description="BYOK self-test tool. Echo back the input.",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
        )
    ]


def make_tool_result_node(node_id: int, tool_use_id: str, content_text: str, is_error: bool = False) -> RequestNode:
    return RequestNode(
        id=node_id if node_id > 0 else 1,
        type=RequestNodeType.TOOL_RESULT,
        tool_result_node=ToolResultNode(
            tool_use_id=tool_use_id,
            content=content_text,
            is_error=is_error,
            content_nodes=[{"type": 1, "text_content": content_text}],
        ),
    )


def make_image_node() -> RequestNode:
    return RequestNode(
        id=1,
        type=RequestNodeType.IMAGE,
        image_node=ImageNode(image_data=ONE_PIXEL_PNG_BASE64, format=ImageFormat.PNG),
    )


def make_chat_request(
    message: str,
    conversation_id: str = "",
    tool_definitions: Optional[List[ToolDefinition]] = None,
    nodes: Optional[List[RequestNode]] = None,
    chat_history: Optional[List[Exchange]] = None,
    request_nodes: Optional[List[RequestNode]] = None,
) -> CanonicalChatRequest:
    return CanonicalChatRequest(
        message=message,
        conversation_id=conversation_id,
        tool_definitions=list(tool_definitions or []),
        nodes=list(nodes or []),
        chat_history=list(chat_history or []),
        request_nodes=list(request_nodes or []),
    )


def make_exchange(
    request_id: str,
    request_message: str,
    response_nodes: List[ResponseNode],
    nodes: Optional[List[RequestNode]] = None,
    response_text: str = "",
) -> Exchange:
    return Exchange(
        request_id=request_id,
        request_message=request_message,
        response_text=response_text,
        nodes=list(nodes or []),
        response_nodes=list(response_nodes),
    )


# ====================== 真实工具 ======================

def example_args_json(tool: ToolDefinition, provider_type: str) -> str:
    """
    按 schema 生成样例参数（openai_responses 先做 strict 化），
    并把 url / query / path 等常见字段替换为更"真实"的值，减少网关的格式校验失败
    """
    schema = resolve_tool_schema(tool)
    if provider_type == ProviderType.OPENAI_RESPONSES:
        schema = coerce_strict_schema(schema)
    sample = sample_json_from_schema(schema)
    if isinstance(sample, dict):
        for key, value in (("url", "https://example.com"), ("uri", "https://example.com"), ("query", "hello"),
                           ("text", "hello"), ("path", "selftest.txt")):
            if isinstance(sample.get(key), str):
                sample[key] = value
    try:
        return json.dumps(sample if sample is not None else {}, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def _has_mcp_meta(tool: ToolDefinition) -> bool:
    return bool(normalize_string(tool.mcp_server_name) or normalize_string(tool.mcp_tool_name))


def pick_real_tools_for_probe(tool_defs: List[ToolDefinition], max_tools: int) -> List[ToolDefinition]:
    """
    max_tools 覆盖全部工具时按名字排序返回全部；
    否则依次挑选：常用工具 -> 带 MCP 元数据的工具 -> properties 最多的工具 -> 按名字补齐
    """
    defs = dedupe_tool_defs_by_name(tool_defs)
    limit = max(1, int(max_tools or 1))
    if limit >= len(defs):
        return sorted(defs, key=lambda d: d.name)

    by_name = {d.name: d for d in defs}
    chosen: List[ToolDefinition] = []

    def pick(name: str) -> None:
        d = by_name.get(name)
        if d is not None and d not in chosen and len(chosen) < limit:
            chosen.append(d)

    for name in PREFERRED_PROBE_TOOLS:
        pick(name)
    for d in sorted((d for d in defs if _has_mcp_meta(d)), key=lambda d: d.name):
        pick(d.name)
    for d in sorted(defs, key=lambda d: (-count_schema_properties(resolve_tool_schema(d)), d.name)):
        pick(d.name)
    return chosen[:limit]


def summarize_captured_tools_schemas(tool_defs: List[ToolDefinition], max_failed: int = 12) -> Dict[str, Any]:
    """每个工具的 schema 能否采样出可 JSON 序列化的值"""
    defs = dedupe_tool_defs_by_name(tool_defs)
    sample_ok = 0
    with_mcp_meta = 0
    failed: List[str] = []
    for d in defs:
        if _has_mcp_meta(d):
            with_mcp_meta += 1
        try:
            json.dumps(sample_json_from_schema(resolve_tool_schema(d)))
        except (TypeError, ValueError, RecursionError):
            failed.append(d.name)
            continue
        sample_ok += 1
    return {
        "tool_count": len(defs),
        "with_mcp_meta": with_mcp_meta,
        "sample_ok": sample_ok,
        "sample_failed_names": failed[:max_failed],
        "sample_failed_truncated": len(failed) > max_failed,
    }


def unpaired_tool_uses(response_nodes: List[ResponseNode], result_nodes: List[RequestNode]) -> List[str]:
    """
    上一轮的 tool_use 与本轮 tool_result 按 tool_use_id 配对

    视为未配对的情况：
    - TOOL_USE 的 tool_use_id 为空，或与另一个 TOOL_USE 重复
    - TOOL_USE 没有对应的 tool_result
    - TOOL_USE_START 的 id 找不到对应的 TOOL_USE

    Returns:
        未配对的工具名（按节点出现顺序，去重）
    """
    result_ids = {
        n.tool_result_node.tool_use_id
        for n in result_nodes
        if n.type == RequestNodeType.TOOL_RESULT and n.tool_result_node is not None
    }
    use_counts: Dict[str, int] = {}
    for node in response_nodes:
        if node.type == ResponseNodeType.TOOL_USE and node.tool_use is not None:
            tid = node.tool_use.tool_use_id or ""
            use_counts[tid] = use_counts.get(tid, 0) + 1

    out: List[str] = []
    for node in response_nodes:
        tu = node.tool_use
        if tu is None:
            continue
        tid = tu.tool_use_id or ""
        if node.type == ResponseNodeType.TOOL_USE:
            bad = not tid or use_counts[tid] > 1 or tid not in result_ids
        elif node.type == ResponseNodeType.TOOL_USE_START:
            bad = not tid or tid not in use_counts
        else:
            continue
        name = tu.tool_name or "?"
        if bad and name not in out:
            out.append(name)
    return out
