# -*- coding: utf-8 -*-
"""
Tools Bridge - 工具定义格式转换
==============================

将 canonical 工具定义转换为各上游的工具格式。

支持的格式：
- OpenAI chat: tools (function with parameters)
- OpenAI responses: tools (顶层 name/parameters，strict 模式)
- Anthropic: tools (name, description, input_schema)
- Gemini: tools ([{functionDeclarations: [...]}])

同名工具按第一次出现去重，所有转换器、Self Test 探测都使用同一份去重结果。
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError, SchemaViolation
from .schema import clean_schema_for_gemini, coerce_strict_schema, validate_strict_schema
from .types import ProviderType, ToolDefinition

__all__ = [
    "coerce_tool_definition",
    "coerce_tool_definitions",
    "dedupe_tool_defs_by_name",
    "summarize_tool_defs",
    "build_tool_meta_by_name",
    "resolve_tool_schema",
    "convert_openai_tools",
    "convert_openai_responses_tools",
    "convert_anthropic_tools",
    "convert_gemini_tools",
    "convert_tools_by_provider_type",
    "validate_converted_tools_for_provider",
    "ensure_strict_tools",
]

MAX_VALIDATION_ISSUES = 30


def coerce_tool_definition(raw: Any) -> Optional[ToolDefinition]:
    """
    把一条原始工具定义解析为 ToolDefinition，无法识别时返回 None

    兼容的形态：
    - {"name", "description", "input_schema" | "input_schema_json" | "inputSchema" | "parameters"}
    - {"definition": {...}} / {"toolDefinition": {...}}（宿主 tool executor 常见的包装）
    - {"type": "function", "function": {"name", "description", "parameters"}}（OpenAI 形态）
    """
    if isinstance(raw, ToolDefinition):
        return raw
    if not isinstance(raw, dict):
        return None

    for wrapper in ("definition", "toolDefinition", "tool_definition"):
        inner = raw.get(wrapper)
        if isinstance(inner, dict) and not raw.get("name"):
            return coerce_tool_definition(inner)

    fn = raw.get("function")
    if isinstance(fn, dict) and not raw.get("name"):
        raw = {**fn, "input_schema": fn.get("parameters")}

    name = _pick_str(raw, "name")
    if not name:
        return None

    data: Dict[str, Any] = {
        "name": name,
        "description": _pick_str(raw, "description"),
        "input_schema_json": _pick_str(raw, "input_schema_json", "inputSchemaJson"),
        "mcp_server_name": _pick_str(raw, "mcp_server_name", "mcpServerName") or None,
        "mcp_tool_name": _pick_str(raw, "mcp_tool_name", "mcpToolName") or None,
    }
    schema = next((raw[k] for k in ("input_schema", "inputSchema", "parameters") if raw.get(k) is not None), None)
    if isinstance(schema, dict):
        data["input_schema"] = schema
    elif isinstance(schema, str) and not data["input_schema_json"]:
        # 有的宿主直接把 schema 作为 JSON 字符串放在 input_schema 里
        data["input_schema_json"] = schema
    return ToolDefinition.model_validate(data)


def _pick_str(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def coerce_tool_definitions(raw_list: Any) -> List[ToolDefinition]:
    """解析并去重一组工具定义；非列表输入返回 []"""
    if not isinstance(raw_list, list):
        return []
    parsed = [coerce_tool_definition(item) for item in raw_list]
    return dedupe_tool_defs_by_name([d for d in parsed if d is not None])


def dedupe_tool_defs_by_name(tool_defs: Iterable[ToolDefinition]) -> List[ToolDefinition]:
    """同名工具只保留第一次出现的定义"""
    out: List[ToolDefinition] = []
    seen = set()
    for d in tool_defs or []:
        name = (d.name or "").strip() if isinstance(d, ToolDefinition) else ""
        if not name or name in seen:
            continue
        seen.add(name)
        out.append(d)
    return out


def summarize_tool_defs(tool_defs: List[ToolDefinition], max_names: int = 12) -> Dict[str, Any]:
    """
    Returns:
        {"count": 总数, "names": 前 max_names 个去重后的名字, "names_truncated": bool}
    """
    limit = max(1, int(max_names or 12))
    names: List[str] = []
    for d in tool_defs or []:
        name = (d.name or "").strip()
        if not name or name in names:
            continue
        names.append(name)
        if len(names) >= limit:
            break
    count = len(tool_defs or [])
    return {"count": count, "names": names, "names_truncated": count > len(names)}


def build_tool_meta_by_name(tool_defs: List[ToolDefinition]) -> Dict[str, Dict[str, str]]:
    """
    工具名 -> MCP 元数据（只收录带 mcp_server_name / mcp_tool_name 的工具）

    上游返回的 tool call 只有名字，流式聚合时用这张表把 MCP 元数据补回 tool_use 节点。
    """
    out: Dict[str, Dict[str, str]] = {}
    for d in dedupe_tool_defs_by_name(tool_defs or []):
        meta: Dict[str, str] = {}
        if d.mcp_server_name:
            meta["mcp_server_name"] = d.mcp_server_name
        if d.mcp_tool_name:
            meta["mcp_tool_name"] = d.mcp_tool_name
        if meta:
            out[d.name] = meta
    return out


def resolve_tool_schema(tool: ToolDefinition) -> Dict[str, Any]:
    schema = tool.input_schema if isinstance(tool.input_schema, dict) else None
    if not schema and tool.input_schema_json:
        try:
            parsed = json.loads(tool.input_schema_json)
        except json.JSONDecodeError:
            parsed = None
        schema = parsed if isinstance(parsed, dict) else None
    return schema or {"type": "object", "properties": {}}


def convert_openai_tools(tool_defs: List[ToolDefinition]) -> List[Dict[str, Any]]:
    """
    OpenAI chat 格式：
    {
        "type": "function",
        "function": {"name": "read_file", "description": "...", "parameters": {...}}
    }
    """
    return [
        {
            "type": "function",
            "function": {
                "name": d.name,
                "description": d.description,
                "parameters": resolve_tool_schema(d),
            },
        }
        for d in dedupe_tool_defs_by_name(tool_defs)
    ]


def convert_openai_responses_tools(tool_defs: List[ToolDefinition]) -> List[Dict[str, Any]]:
    """
    OpenAI responses 格式（strict 模式）：
    {"type": "function", "name": "...", "description": "...", "parameters": {...}, "strict": true}

    parameters 中每个 object 子 schema 都会被改写为 additionalProperties=false 且 required 覆盖全部 key。
    """
    return [
        {
            "type": "function",
            "name": d.name,
            "description": d.description,
            "parameters": coerce_strict_schema(resolve_tool_schema(d), 0),
            "strict": True,
        }
        for d in dedupe_tool_defs_by_name(tool_defs)
    ]


def convert_anthropic_tools(tool_defs: List[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {"name": d.name, "description": d.description, "input_schema": resolve_tool_schema(d)}
        for d in dedupe_tool_defs_by_name(tool_defs)
    ]


def convert_gemini_tools(tool_defs: List[ToolDefinition]) -> List[Dict[str, Any]]:
    """Gemini 只接受一个工具组：[{"functionDeclarations": [...]}]；没有工具时返回 []"""
    decls = [
        {"name": d.name, "description": d.description, "parameters": clean_schema_for_gemini(resolve_tool_schema(d))}
        for d in dedupe_tool_defs_by_name(tool_defs)
    ]
    return [{"functionDeclarations": decls}] if decls else []


def convert_tools_by_provider_type(provider_type: str, tool_defs: List[ToolDefinition]) -> List[Dict[str, Any]]:
    t = (provider_type or "").strip()
    if t == ProviderType.OPENAI_COMPATIBLE:
        return convert_openai_tools(tool_defs)
    if t == ProviderType.OPENAI_RESPONSES:
        return convert_openai_responses_tools(tool_defs)
    if t == ProviderType.ANTHROPIC:
        return convert_anthropic_tools(tool_defs)
    if t == ProviderType.GEMINI_AI_STUDIO:
        return convert_gemini_tools(tool_defs)
    raise ConfigurationError(f"未知 provider.type: {t}")


def validate_converted_tools_for_provider(
    provider_type: str, converted_tools: List[Dict[str, Any]]
) -> Tuple[bool, List[str]]:
    """
    校验转换结果；只有 openai_responses 需要 strict 校验

    每个工具只记录第一条 issue（"name: issue"），最多 30 条。
    """
    if (provider_type or "").strip() != ProviderType.OPENAI_RESPONSES:
        return True, []

    issues: List[str] = []
    for tool in converted_tools or []:
        fn = tool.get("function") if isinstance(tool.get("function"), dict) else {}
        name = tool.get("name") or fn.get("name") or "(unknown tool)"
        params = tool.get("parameters", fn.get("parameters"))
        tool_issues: List[str] = []
        validate_strict_schema(params, tool_issues, "", 0)
        if tool_issues:
            issues.append(f"{name}: {tool_issues[0]}")
        if len(issues) >= MAX_VALIDATION_ISSUES:
            break
    return not issues, issues


def ensure_strict_tools(provider_type: str, converted_tools: List[Dict[str, Any]]) -> None:
    """strict 校验不通过时抛 SchemaViolation"""
    ok, issues = validate_converted_tools_for_provider(provider_type, converted_tools)
    if not ok:
        raise SchemaViolation(issues, label=f"{provider_type} tools")
