"""
Tools Bridge 测试

覆盖工具定义解析、按名字去重以及四种上游格式的转换。
"""

import json

import pytest

from src.byok.errors import ConfigurationError, SchemaViolation
from src.byok.tools_bridge import (
    build_tool_meta_by_name,
    coerce_tool_definitions,
    convert_anthropic_tools,
    convert_gemini_tools,
    convert_openai_responses_tools,
    convert_openai_tools,
    convert_tools_by_provider_type,
    ensure_strict_tools,
    summarize_tool_defs,
    validate_converted_tools_for_provider,
)
from src.byok.types import ToolDefinition


RAW_TOOLS = [
    {"name": "read_file", "description": "first", "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}}},
    {"name": "read_file", "description": "second"},
    {"type": "function", "function": {"name": "web", "parameters": {"type": "object", "properties": {"url": {"type": "string"}}}}},
    {"definition": {"name": "mcp_tool", "input_schema_json": json.dumps({"type": "object", "properties": {"q": {"type": "string"}}}), "mcp_server_name": "srv", "mcpToolName": "search"}},
    "junk",
    {"description": "no name"},
]


class TestCoerceToolDefinitions:
    """测试工具定义解析与去重"""

    def test_dedupe_keeps_first(self):
        defs = coerce_tool_definitions(RAW_TOOLS)

        assert [d.name for d in defs] == ["read_file", "web", "mcp_tool"]
        assert defs[0].description == "first"

    def test_wrapped_and_openai_shapes(self):
        defs = {d.name: d for d in coerce_tool_definitions(RAW_TOOLS)}

        assert defs["web"].input_schema["properties"] == {"url": {"type": "string"}}
        assert defs["mcp_tool"].input_schema["properties"] == {"q": {"type": "string"}}
        assert defs["mcp_tool"].mcp_server_name == "srv"
        assert defs["mcp_tool"].mcp_tool_name == "search"

    def test_non_list(self):
        assert coerce_tool_definitions(None) == []
        assert coerce_tool_definitions({"name": "x"}) == []

    def test_missing_schema_defaults_to_empty_object(self):
        d = ToolDefinition(name="noop")
        assert d.input_schema == {"type": "object", "properties": {}}

    def test_summary_and_meta(self):
        defs = coerce_tool_definitions(RAW_TOOLS)

        summary = summarize_tool_defs(defs, max_names=2)
        assert summary == {"count": 3, "names": ["read_file", "web"], "names_truncated": True}
        assert build_tool_meta_by_name(defs) == {"mcp_tool": {"mcp_server_name": "srv", "mcp_tool_name": "search"}}


class TestConvertTools:
    """测试各上游格式"""

    def setup_method(self):
        self.defs = coerce_tool_definitions(RAW_TOOLS) + [ToolDefinition(name="read_file", description="dup")]

    def test_openai(self):
        tools = convert_openai_tools(self.defs)
        assert [t["function"]["name"] for t in tools] == ["read_file", "web", "mcp_tool"]
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["parameters"]["properties"] == {"path": {"type": "string"}}

    def test_openai_responses_is_strict(self):
        tools = convert_openai_responses_tools(self.defs)

        assert all(t["strict"] is True for t in tools)
        assert tools[0]["parameters"]["additionalProperties"] is False
        assert tools[0]["parameters"]["required"] == ["path"]
        assert validate_converted_tools_for_provider("openai_responses", tools) == (True, [])

    def test_anthropic(self):
        tools = convert_anthropic_tools(self.defs)
        assert tools[1] == {
            "name": "web",
            "description": "",
            "input_schema": {"type": "object", "properties": {"url": {"type": "string"}}},
        }

    def test_gemini_single_group(self):
        tools = convert_gemini_tools(self.defs)
        assert len(tools) == 1
        assert [d["name"] for d in tools[0]["functionDeclarations"]] == ["read_file", "web", "mcp_tool"]
        assert convert_gemini_tools([]) == []

    def test_dispatch(self):
        assert convert_tools_by_provider_type("anthropic", self.defs) == convert_anthropic_tools(self.defs)
        with pytest.raises(ConfigurationError):
            convert_tools_by_provider_type("bogus", self.defs)


class TestValidateConvertedTools:
    """测试 strict 校验"""

    def test_only_responses_is_validated(self):
        loose = convert_openai_tools([ToolDefinition(name="x")])
        assert validate_converted_tools_for_provider("openai_compatible", loose) == (True, [])

    def test_loose_responses_tool_fails(self):
        loose = [{"type": "function", "name": "x", "parameters": {"type": "object", "properties": {"a": {"type": "string"}}}}]
        ok, issues = validate_converted_tools_for_provider("openai_responses", loose)

        assert not ok
        assert issues == ["x: <root>: additionalProperties must be false"]
        with pytest.raises(SchemaViolation) as exc:
            ensure_strict_tools("openai_responses", loose)
        assert exc.value.issues == issues
