# -*- coding: utf-8 -*-
"""
BYOK Canonical Protocol Types
=============================

Pydantic 类型定义，对应 agent 客户端使用的 canonical chat 协议。

- 请求节点 RequestNodeType：TEXT / TOOL_RESULT / IMAGE / IMAGE_ID / HISTORY_SUMMARY
- 响应节点 ResponseNodeType：RAW_RESPONSE / MAIN_TEXT_FINISHED / TOOL_USE / TOOL_USE_START / THINKING / TOKEN_USAGE
- 所有字段输入时同时接受 snake_case 与 camelCase（例如 tool_use_id / toolUseId），
  输出只使用 snake_case。
- 未知字段直接忽略。
"""

import json
from enum import IntEnum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

__all__ = [
    "RequestNodeType",
    "ResponseNodeType",
    "ImageFormat",
    "StopReason",
    "ProviderType",
    "RouteMode",
    "RouteReason",
    "ProviderConfig",
    "Route",
    "TextNode",
    "ImageNode",
    "ToolResultNode",
    "HistorySummaryNode",
    "RequestNode",
    "ToolUse",
    "TokenUsage",
    "ResponseNode",
    "Exchange",
    "ToolDefinition",
    "CanonicalChatRequest",
    "ChatChunk",
    "TestResult",
    "SelfTestEntry",
    "CapturedToolsSummary",
    "ToolExecSummary",
    "SelfTestGlobal",
    "SelfTestReport",
    "SelfTestEvent",
]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _field(default: Any = None, name: str = "", *extra_aliases: str, **kwargs) -> Any:
    """带 snake/camel 双别名的 Field；name 为 snake_case 字段名"""
    choices = [name]
    camel = _camel(name)
    if camel != name:
        choices.append(camel)
    choices.extend(extra_aliases)
    if "default_factory" in kwargs:
        return Field(validation_alias=AliasChoices(*choices), **kwargs)
    return Field(default, validation_alias=AliasChoices(*choices), **kwargs)


class _Canonical(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ============== 枚举与常量 ==============

class RequestNodeType(IntEnum):
    """请求节点类型"""
    TEXT = 0
    TOOL_RESULT = 1
    IMAGE = 2
    IMAGE_ID = 3
    HISTORY_SUMMARY = 10       # 历史压缩后注入的摘要节点


class ResponseNodeType(IntEnum):
    """
    响应节点类型

    - 0: RAW_RESPONSE (content 为文本)
    - 5: TOOL_USE (tool_use) ⭐ 触发客户端 tool loop
    - 7: TOOL_USE_START (只在 feature flag 打开时发送)
    - 10: TOKEN_USAGE (token_usage)
    """
    RAW_RESPONSE = 0
    MAIN_TEXT_FINISHED = 2
    TOOL_USE = 5
    TOOL_USE_START = 7
    THINKING = 8
    TOKEN_USAGE = 10


class ImageFormat(IntEnum):
    PNG = 0
    JPEG = 1
    GIF = 2
    WEBP = 3


class StopReason:
    """停止原因字符串常量"""
    END_TURN = "end_turn"
    TOOL_USE_REQUESTED = "tool_use_requested"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    SAFETY = "safety"

    ALL = (END_TURN, TOOL_USE_REQUESTED, MAX_TOKENS, STOP_SEQUENCE, SAFETY)


class ProviderType:
    OPENAI_COMPATIBLE = "openai_compatible"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC = "anthropic"
    GEMINI_AI_STUDIO = "gemini_ai_studio"

    ALL = (OPENAI_COMPATIBLE, OPENAI_RESPONSES, ANTHROPIC, GEMINI_AI_STUDIO)


class RouteMode:
    OFFICIAL = "official"
    BYOK = "byok"
    DISABLED = "disabled"

    ALL = (OFFICIAL, BYOK, DISABLED)


class RouteReason:
    RUNTIME_DISABLED = "runtime_disabled"
    TELEMETRY_DISABLED = "telemetry_disabled"
    RULE = "rule"
    REQUESTED_MODEL = "requested_model"
    DEFAULT = "default"
    MODEL_DISCOVERY_REQUIRED = "model_discovery_required"


# ============== Provider / Route ==============

class ProviderConfig(_Canonical):
    """
    单个 BYOK provider 的配置（只读）

    凭据可以是 api_key（按 provider type 决定放在哪个 header / query 参数），
    也可以直接在 headers 里给出 authorization / x-api-key 等。
    """
    id: str = Field("", description="provider 唯一 ID")
    type: str = Field("", description="openai_compatible / openai_responses / anthropic / gemini_ai_studio")
    base_url: str = _field("", "base_url")
    api_key: str = _field("", "api_key")
    headers: Dict[str, str] = Field(default_factory=dict, description="自定义请求头，覆盖默认鉴权头")
    default_model: str = _field("", "default_model")
    models: List[str] = Field(default_factory=list, description="已知模型列表")
    request_defaults: Dict[str, Any] = _field(
        None, "request_defaults", default_factory=dict, description="合并进每次请求体的默认字段"
    )

    @field_validator("id", "type", "base_url", "api_key", "default_model", mode="before")
    @classmethod
    def _strip_str(cls, v: Any) -> str:
        # 环境变量展开后纯数字的 key 会变成 int
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v.strip() if isinstance(v, str) else ""

    @field_validator("headers", mode="before")
    @classmethod
    def _coerce_headers(cls, v: Any) -> Dict[str, str]:
        if not isinstance(v, dict):
            return {}
        return {str(k): str(val) for k, val in v.items() if isinstance(k, str) and k.strip() and val is not None}

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        out: List[str] = []
        for m in v:
            s = m.strip() if isinstance(m, str) else ""
            if s and s not in out:
                out.append(s)
        return out

    @field_validator("request_defaults", mode="before")
    @classmethod
    def _coerce_defaults(cls, v: Any) -> Dict[str, Any]:
        return dict(v) if isinstance(v, dict) else {}

    @property
    def label(self) -> str:
        return f"{self.id or '?'}({self.type or '?'})"


class Route(_Canonical):
    """
    单次请求的路由决策（每次请求重新计算，不持久化）

    provider / model 当且仅当 mode=byok 时存在；唯一例外是
    reason=model_discovery_required，此时 model 由调用方通过模型发现补全。
    """
    endpoint: str
    mode: Literal["official", "byok", "disabled"]
    provider: Optional[ProviderConfig] = None
    model: Optional[str] = None
    requested_model: Optional[str] = _field(None, "requested_model")
    reason: str = ""

    @model_validator(mode="after")
    def _check_byok_fields(self) -> "Route":
        if self.mode == RouteMode.BYOK:
            if self.provider is None:
                raise ValueError("byok route requires a provider")
            if not self.model and self.reason != RouteReason.MODEL_DISCOVERY_REQUIRED:
                raise ValueError("byok route requires a model")
        elif self.provider is not None or self.model:
            raise ValueError(f"{self.mode} route must not carry provider/model")
        return self

    @property
    def needs_model_discovery(self) -> bool:
        return self.mode == RouteMode.BYOK and not self.model


# ============== 请求节点 ==============

class TextNode(_Canonical):
    content: str = ""


class ImageNode(_Canonical):
    image_data: str = _field("", "image_data")
    format: int = Field(ImageFormat.PNG, description="0=png 1=jpeg 2=gif 3=webp")

    @property
    def mime_type(self) -> str:
        return {
            ImageFormat.JPEG: "image/jpeg",
            ImageFormat.GIF: "image/gif",
            ImageFormat.WEBP: "image/webp",
        }.get(self.format, "image/png")


class ToolResultNode(_Canonical):
    tool_use_id: str = _field("", "tool_use_id")
    content: str = ""
    is_error: bool = _field(False, "is_error")
    content_nodes: List[Dict[str, Any]] = _field(None, "content_nodes", default_factory=list)


class HistorySummaryNode(_Canonical):
    summary_text: str = _field("", "summary_text")
    summarized_exchanges: int = _field(0, "summarized_exchanges")


class RequestNode(_Canonical):
    """请求节点（tagged union，按 type 决定哪个 payload 有效）"""
    id: int = 0
    type: int = RequestNodeType.TEXT
    text_node: Optional[TextNode] = _field(None, "text_node")
    tool_result_node: Optional[ToolResultNode] = _field(None, "tool_result_node")
    image_node: Optional[ImageNode] = _field(None, "image_node")
    image_id_node: Optional[Dict[str, Any]] = _field(None, "image_id_node")
    history_summary_node: Optional[HistorySummaryNode] = _field(None, "history_summary_node")


# ============== 响应节点 ==============

class ToolUse(_Canonical):
    tool_use_id: str = _field("", "tool_use_id")
    tool_name: str = _field("", "tool_name")
    input_json: str = _field("{}", "input_json")
    mcp_server_name: Optional[str] = _field(None, "mcp_server_name")
    mcp_tool_name: Optional[str] = _field(None, "mcp_tool_name")

    def parsed_input(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.input_json or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class TokenUsage(_Canonical):
    input_tokens: Optional[int] = _field(None, "input_tokens")
    output_tokens: Optional[int] = _field(None, "output_tokens")
    cache_read_input_tokens: Optional[int] = _field(None, "cache_read_input_tokens", "cached_tokens")
    cache_creation_input_tokens: Optional[int] = _field(None, "cache_creation_input_tokens")


class ResponseNode(_Canonical):
    id: int = 0
    type: int = ResponseNodeType.RAW_RESPONSE
    content: str = ""
    tool_use: Optional[ToolUse] = _field(None, "tool_use")
    thinking: Optional[Dict[str, Any]] = None
    token_usage: Optional[TokenUsage] = _field(None, "token_usage")


class Exchange(_Canonical):
    """一轮历史对话：请求文本/节点 + 响应文本/节点"""
    request_id: str = _field("", "request_id")
    request_message: str = _field("", "request_message")
    response_text: str = _field("", "response_text")
    request_nodes: List[RequestNode] = _field(None, "request_nodes", default_factory=list)
    structured_request_nodes: List[RequestNode] = _field(None, "structured_request_nodes", default_factory=list)
    nodes: List[RequestNode] = Field(default_factory=list)
    response_nodes: List[ResponseNode] = _field(None, "response_nodes", default_factory=list)
    structured_output_nodes: List[ResponseNode] = _field(None, "structured_output_nodes", default_factory=list)


# ============== Tool Definition ==============

class ToolDefinition(_Canonical):
    """
    工具定义

    输入可以是 input_schema (dict) 或 input_schema_json (字符串)；
    两者都给时以 input_schema 为准。
    """
    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = _field(None, "input_schema", "parameters", default_factory=dict)
    input_schema_json: str = _field("", "input_schema_json")
    mcp_server_name: Optional[str] = _field(None, "mcp_server_name")
    mcp_tool_name: Optional[str] = _field(None, "mcp_tool_name")

    @model_validator(mode="after")
    def _fill_schema(self) -> "ToolDefinition":
        if not self.input_schema and self.input_schema_json:
            try:
                parsed = json.loads(self.input_schema_json)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                self.input_schema = parsed
        if not self.input_schema:
            self.input_schema = {"type": "object", "properties": {}}
        return self


# ============== Canonical Request / Chunk ==============

class CanonicalChatRequest(_Canonical):
    message: str = ""
    conversation_id: str = _field("", "conversation_id")
    chat_history: List[Exchange] = _field(None, "chat_history", default_factory=list)
    tool_definitions: List[ToolDefinition] = _field(None, "tool_definitions", default_factory=list)
    nodes: List[RequestNode] = Field(default_factory=list)
    structured_request_nodes: List[RequestNode] = _field(None, "structured_request_nodes", default_factory=list)
    request_nodes: List[RequestNode] = _field(None, "request_nodes", default_factory=list)
    agent_memories: str = _field("", "agent_memories")
    mode: str = "AGENT"
    prefix: str = ""
    selected_code: str = _field("", "selected_code")
    suffix: str = ""
    diff: str = ""
    lang: str = ""
    path: str = ""
    user_guidelines: str = _field("", "user_guidelines")
    workspace_guidelines: str = _field("", "workspace_guidelines")
    rules: List[Any] = Field(default_factory=list)
    feature_detection_flags: Dict[str, Any] = _field(None, "feature_detection_flags", default_factory=dict)

    def all_request_nodes(self) -> List[RequestNode]:
        """当前轮的全部请求节点（nodes + structured_request_nodes + request_nodes）"""
        return [*self.nodes, *self.structured_request_nodes, *self.request_nodes]

    def is_empty(self) -> bool:
        return not self.message.strip() and not self.all_request_nodes() and not self.chat_history


class ChatChunk(_Canonical):
    """流式响应的增量单元"""
    text: str = ""
    nodes: List[ResponseNode] = Field(default_factory=list)
    stop_reason: Optional[str] = _field(None, "stop_reason")


# ============== Self Test 报告 ==============

class TestResult(_Canonical):
    __test__ = False

    name: str
    ok: bool
    ms: int = 0
    detail: str = ""


class SelfTestEntry(_Canonical):
    provider_id: str = _field("", "provider_id")
    provider_type: str = _field("", "provider_type")
    model: str = ""
    tests: List[TestResult] = Field(default_factory=list)
    ok: bool = True
    ms_total: int = _field(0, "ms_total", "elapsed_ms", "elapsedMs")


class CapturedToolsSummary(_Canonical):
    count: int = 0
    captured_at_ms: Optional[int] = _field(None, "captured_at_ms")
    age_ms: Optional[int] = _field(None, "age_ms")
    meta: Dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    names_preview: str = _field("", "names_preview")


class ToolExecSummary(_Canonical):
    ok: bool = False
    ms: int = 0
    detail: str = ""
    failed_tools: List[str] = _field(None, "failed_tools", default_factory=list)
    failed_tools_truncated: bool = _field(False, "failed_tools_truncated")
    tool_results: List[Dict[str, Any]] = _field(None, "tool_results", default_factory=list)


class SelfTestGlobal(_Canonical):
    tests: List[TestResult] = Field(default_factory=list)
    captured_tools: Optional[CapturedToolsSummary] = _field(None, "captured_tools")
    tool_exec: Optional[ToolExecSummary] = _field(None, "tool_exec")


class SelfTestReport(_Canonical):
    run_id: str = _field("", "run_id")
    started_at_ms: int = _field(0, "started_at_ms")
    finished_at_ms: Optional[int] = _field(None, "finished_at_ms")
    ok: bool = True
    global_: SelfTestGlobal = Field(
        default_factory=SelfTestGlobal,
        validation_alias=AliasChoices("global", "global_"),
        serialization_alias="global",
    )
    providers: List[SelfTestEntry] = Field(default_factory=list)

    def to_json_dict(self) -> Dict[str, Any]:
        """报告的 JSON 形式（global 字段使用原名）"""
        return self.model_dump(by_alias=True)


class SelfTestEvent(_Canonical):
    type: Literal["log", "done"]
    line: str = ""
    report: Optional[SelfTestReport] = None
