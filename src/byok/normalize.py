# -*- coding: utf-8 -*-
"""
Request Normalize - canonical 请求的防御式标准化
=============================================

对 agent 客户端发来的原始 JSON 做：
- 端点路径标准化（补前导 /，去掉 query 与末尾 /）
- 缺失 / 类型错误的数组变为 []，字符串变为 ""
- snake_case 与 camelCase 字段同时接受，输出 snake_case
- 工具定义解析 + 按名字去重
- 未知字段丢弃
"""

import json
from typing import Any, Dict, List, Optional

from .tools_bridge import coerce_tool_definitions
from .types import (
    CanonicalChatRequest,
    Exchange,
    RequestNode,
    RequestNodeType,
    ResponseNode,
    ResponseNodeType,
)

__all__ = [
    "normalize_endpoint",
    "normalize_string",
    "pick_field",
    "normalize_request_nodes",
    "normalize_response_nodes",
    "normalize_exchange",
    "normalize_canonical_request",
    "read_feature_flag",
]

_REQUEST_PAYLOAD_KEYS = {
    "text_node": ("text_node", "textNode"),
    "tool_result_node": ("tool_result_node", "toolResultNode"),
    "image_node": ("image_node", "imageNode"),
    "image_id_node": ("image_id_node", "imageIdNode"),
    "history_summary_node": ("history_summary_node", "historySummaryNode"),
}


def normalize_endpoint(endpoint: Any) -> str:
    """
    "chat-stream?x=1" -> "/chat-stream"；"/edit/" -> "/edit"；非字符串返回 ""
    """
    if not isinstance(endpoint, str):
        return ""
    s = endpoint.strip().split("?", 1)[0].split("#", 1)[0].strip()
    if not s:
        return ""
    if not s.startswith("/"):
        s = "/" + s
    while len(s) > 1 and s.endswith("/"):
        s = s[:-1]
    return s


def normalize_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def pick_field(raw: Dict[str, Any], *keys: str) -> Any:
    """按顺序返回第一个存在（且非 None）的字段值"""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _str_field(raw: Dict[str, Any], *keys: str) -> str:
    value = pick_field(raw, *keys)
    return value if isinstance(value, str) else ""


def _list_field(raw: Dict[str, Any], *keys: str) -> List[Any]:
    value = pick_field(raw, *keys)
    return value if isinstance(value, list) else []


def _node_type(raw: Dict[str, Any], default: int) -> int:
    value = raw.get("type")
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def _json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _normalize_request_node(raw: Any) -> Optional[RequestNode]:
    if not isinstance(raw, dict):
        return None
    data: Dict[str, Any] = {"id": raw.get("id") if isinstance(raw.get("id"), int) else 0}
    data["type"] = _node_type(raw, RequestNodeType.TEXT)

    for key, aliases in _REQUEST_PAYLOAD_KEYS.items():
        payload = pick_field(raw, *aliases)
        if not isinstance(payload, dict):
            continue
        payload = dict(payload)
        if key == "text_node":
            payload["content"] = _json_text(payload.get("content"))
        elif key == "tool_result_node":
            payload["content"] = _json_text(payload.get("content"))
            nodes = pick_field(payload, "content_nodes", "contentNodes")
            payload.pop("contentNodes", None)
            payload["content_nodes"] = [n for n in nodes if isinstance(n, dict)] if isinstance(nodes, list) else []
            is_error = pick_field(payload, "is_error", "isError")
            payload.pop("isError", None)
            payload["is_error"] = is_error is True
            for alias in ("tool_use_id", "toolUseId"):
                if alias in payload and not isinstance(payload[alias], str):
                    payload[alias] = _json_text(payload[alias])
        elif key == "image_node":
            fmt = payload.get("format")
            payload["format"] = fmt if isinstance(fmt, int) and not isinstance(fmt, bool) else 0
            image = pick_field(payload, "image_data", "imageData")
            payload.pop("imageData", None)
            payload["image_data"] = image if isinstance(image, str) else ""
        elif key == "history_summary_node":
            text = pick_field(payload, "summary_text", "summaryText")
            payload.pop("summaryText", None)
            payload["summary_text"] = text if isinstance(text, str) else ""
        data[key] = payload

    # 兼容只给了 text 字段的简写节点
    if data["type"] == RequestNodeType.TEXT and "text_node" not in data and isinstance(raw.get("text"), str):
        data["text_node"] = {"content": raw["text"]}
    return RequestNode.model_validate(data)


def normalize_request_nodes(raw_nodes: Any) -> List[RequestNode]:
    if not isinstance(raw_nodes, list):
        return []
    nodes = [_normalize_request_node(n) for n in raw_nodes]
    return [n for n in nodes if n is not None]


def _normalize_response_node(raw: Any) -> Optional[ResponseNode]:
    if not isinstance(raw, dict):
        return None
    data: Dict[str, Any] = {
        "id": raw.get("id") if isinstance(raw.get("id"), int) else 0,
        "type": _node_type(raw, ResponseNodeType.RAW_RESPONSE),
        "content": _str_field(raw, "content", "text"),
    }
    tool_use = pick_field(raw, "tool_use", "toolUse")
    if isinstance(tool_use, dict):
        tu = dict(tool_use)
        input_json = pick_field(tu, "input_json", "inputJson", "input")
        tu.pop("inputJson", None)
        tu.pop("input", None)
        tu["input_json"] = _json_text(input_json) if input_json is not None else "{}"
        for alias in ("tool_use_id", "toolUseId", "tool_name", "toolName"):
            if alias in tu and not isinstance(tu[alias], str):
                tu[alias] = _json_text(tu[alias])
        for alias in ("mcp_server_name", "mcpServerName", "mcp_tool_name", "mcpToolName"):
            if alias in tu and not isinstance(tu[alias], str):
                tu.pop(alias)
        data["tool_use"] = tu
    usage = pick_field(raw, "token_usage", "tokenUsage")
    if isinstance(usage, dict):
        data["token_usage"] = {k: v for k, v in usage.items() if isinstance(v, int) and not isinstance(v, bool)}
    thinking = raw.get("thinking")
    if isinstance(thinking, dict):
        data["thinking"] = thinking
    return ResponseNode.model_validate(data)


def normalize_response_nodes(raw_nodes: Any) -> List[ResponseNode]:
    if not isinstance(raw_nodes, list):
        return []
    nodes = [_normalize_response_node(n) for n in raw_nodes]
    return [n for n in nodes if n is not None]


def normalize_exchange(raw: Any) -> Optional[Exchange]:
    if isinstance(raw, Exchange):
        return raw
    if not isinstance(raw, dict):
        return None
    return Exchange(
        request_id=_str_field(raw, "request_id", "requestId"),
        request_message=_str_field(raw, "request_message", "requestMessage"),
        response_text=_str_field(raw, "response_text", "responseText"),
        request_nodes=normalize_request_nodes(pick_field(raw, "request_nodes", "requestNodes")),
        structured_request_nodes=normalize_request_nodes(
            pick_field(raw, "structured_request_nodes", "structuredRequestNodes")
        ),
        nodes=normalize_request_nodes(raw.get("nodes")),
        response_nodes=normalize_response_nodes(pick_field(raw, "response_nodes", "responseNodes")),
        structured_output_nodes=normalize_response_nodes(
            pick_field(raw, "structured_output_nodes", "structuredOutputNodes")
        ),
    )


def normalize_canonical_request(raw_body: Any) -> CanonicalChatRequest:
    """
    把原始请求体标准化为 CanonicalChatRequest

    Args:
        raw_body: 原始 JSON（dict）；其他类型视为空请求

    Returns:
        CanonicalChatRequest（不会抛出校验错误）
    """
    if isinstance(raw_body, CanonicalChatRequest):
        return raw_body.model_copy(deep=True)
    raw = raw_body if isinstance(raw_body, dict) else {}

    history = [normalize_exchange(e) for e in _list_field(raw, "chat_history", "chatHistory")]
    flags = pick_field(raw, "feature_detection_flags", "featureDetectionFlags")
    mode = _str_field(raw, "mode").strip()

    return CanonicalChatRequest(
        message=_str_field(raw, "message"),
        conversation_id=_str_field(raw, "conversation_id", "conversationId"),
        chat_history=[e for e in history if e is not None],
        tool_definitions=coerce_tool_definitions(_list_field(raw, "tool_definitions", "toolDefinitions")),
        nodes=normalize_request_nodes(raw.get("nodes")),
        structured_request_nodes=normalize_request_nodes(
            pick_field(raw, "structured_request_nodes", "structuredRequestNodes")
        ),
        request_nodes=normalize_request_nodes(pick_field(raw, "request_nodes", "requestNodes")),
        agent_memories=_str_field(raw, "agent_memories", "agentMemories"),
        mode=mode or "AGENT",
        prefix=_str_field(raw, "prefix"),
        selected_code=_str_field(raw, "selected_code", "selectedCode", "selected_text", "selectedText"),
        suffix=_str_field(raw, "suffix"),
        diff=_str_field(raw, "diff"),
        lang=_str_field(raw, "lang", "language"),
        path=_str_field(raw, "path"),
        user_guidelines=_str_field(raw, "user_guidelines", "userGuidelines"),
        workspace_guidelines=_str_field(raw, "workspace_guidelines", "workspaceGuidelines"),
        rules=_list_field(raw, "rules"),
        feature_detection_flags=flags if isinstance(flags, dict) else {},
    )


def read_feature_flag(req: CanonicalChatRequest, *names: str) -> bool:
    """读取 feature_detection_flags 中的布尔开关（任一名字为真即可）"""
    flags = req.feature_detection_flags or {}
    return any(flags.get(name) is True for name in names)
