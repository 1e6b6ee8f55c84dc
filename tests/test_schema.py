"""
Tool JSON Schema 工具集测试

覆盖 strict 化、strict 校验、样例生成与 Gemini 清理。
"""

import copy
import json

from src.byok.schema import (
    SchemaKind,
    classify_schema,
    clean_schema_for_gemini,
    coerce_strict_schema,
    count_schema_properties,
    sample_json_from_schema,
    strict_schema_issues,
)


NESTED_SCHEMA = {
    "type": "object",
    "properties": {
        "a": {"type": "string"},
        "b": {
            "type": "object",
            "properties": {"c": {"type": "integer"}},
        },
        "items": {"type": "array", "items": {"type": "object", "properties": {"d": {"type": "string"}}}},
    },
    "required": ["a"],
}


class TestClassifySchema:
    """测试 schema 节点分类"""

    def test_kinds(self):
        assert classify_schema({"type": "object"}) is SchemaKind.OBJECT
        assert classify_schema({"properties": {}}) is SchemaKind.OBJECT
        assert classify_schema({"type": "array"}) is SchemaKind.ARRAY
        assert classify_schema({"anyOf": [{"type": "string"}]}) is SchemaKind.UNION
        assert classify_schema({"$ref": "#/$defs/x"}) is SchemaKind.REFERENCE
        assert classify_schema({"type": "string"}) is SchemaKind.LEAF
        assert classify_schema("junk") is SchemaKind.LEAF

    def test_count_properties(self):
        assert count_schema_properties(NESTED_SCHEMA) == 3
        assert count_schema_properties({"type": "object"}) == 0
        assert count_schema_properties(None) == 0


class TestStrictSchema:
    """测试 OpenAI responses strict 模式"""

    def test_coerce_closes_every_object(self):
        """每个 object 都封闭且 required 覆盖全部 key"""
        strict = coerce_strict_schema(NESTED_SCHEMA)

        assert strict["additionalProperties"] is False
        assert strict["required"] == ["a", "b", "items"]
        assert strict["properties"]["b"]["additionalProperties"] is False
        assert strict["properties"]["b"]["required"] == ["c"]
        item = strict["properties"]["items"]["items"]
        assert item["additionalProperties"] is False
        assert item["required"] == ["d"]
        assert strict_schema_issues(strict) == []

    def test_coerce_does_not_mutate_input(self):
        original = copy.deepcopy(NESTED_SCHEMA)
        coerce_strict_schema(NESTED_SCHEMA)
        assert NESTED_SCHEMA == original

    def test_issues_for_loose_schema(self):
        issues = strict_schema_issues(NESTED_SCHEMA)

        assert "<root>: additionalProperties must be false" in issues
        assert "<root>: required missing 'b'" in issues
        assert "properties.b: additionalProperties must be false" in issues
        assert "properties.b: required must be array" in issues

    def test_object_without_properties(self):
        """type=object 但没有 properties 时补一个空的"""
        strict = coerce_strict_schema({"type": "object"})
        assert strict == {"type": "object", "properties": {}, "additionalProperties": False, "required": []}

    def test_union_members_are_coerced(self):
        strict = coerce_strict_schema({"anyOf": [{"type": "object", "properties": {"x": {"type": "string"}}}]})
        assert strict["anyOf"][0]["required"] == ["x"]
        assert strict_schema_issues(strict) == []

    def test_deep_schema_does_not_recurse_forever(self):
        node = {"type": "string"}
        for _ in range(100):
            node = {"type": "object", "properties": {"n": node}}
        coerce_strict_schema(node)
        strict_schema_issues(node)


class TestSampleJson:
    """测试 schema 样例生成"""

    def test_object_fills_required_only(self):
        schema = {
            "type": "object",
            "properties": {
                "a": {"type": "string"},
                "n": {"type": "integer", "minimum": 3},
                "e": {"enum": ["x", "y"]},
                "optional": {"type": "boolean"},
            },
            "required": ["a", "n", "e", "missing"],
        }
        assert sample_json_from_schema(schema) == {"a": "x", "n": 3, "e": "x"}

    def test_object_without_required_fills_all(self):
        schema = {"type": "object", "properties": {"flag": {"type": "boolean"}, "nothing": {"type": "null"}}}
        assert sample_json_from_schema(schema) == {"flag": True, "nothing": None}

    def test_priorities(self):
        assert sample_json_from_schema({"const": 7, "enum": [1]}) == 7
        assert sample_json_from_schema({"type": "string", "default": "d"}) == "d"
        assert sample_json_from_schema({"oneOf": [{"type": "integer"}, {"type": "string"}]}) == 1

    def test_arrays_and_numbers(self):
        assert sample_json_from_schema({"type": "array", "items": {"type": "boolean"}, "minItems": 2}) == [True, True]
        assert sample_json_from_schema({"type": "array", "items": {"type": "string"}}) == []
        assert sample_json_from_schema({"type": "integer", "exclusiveMinimum": 4}) == 5
        assert sample_json_from_schema({"type": "number", "minimum": 0.5}) == 0.5
        assert sample_json_from_schema({"type": "string", "minLength": 40}) == "x" * 16

    def test_unknown_schema_is_json_serializable(self):
        for schema in (None, {}, {"type": "mystery"}, "junk"):
            json.dumps(sample_json_from_schema(schema))


class TestGeminiSchema:
    """测试 Gemini functionDeclarations 清理"""

    def test_clean(self):
        schema = {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "name": {"type": ["string", "null"], "description": "name", "minLength": 2},
                "cfg": {"type": "object"},
            },
            "required": ["name", "ghost"],
        }
        cleaned = clean_schema_for_gemini(schema)

        assert "$schema" not in cleaned
        assert "additionalProperties" not in cleaned
        assert cleaned["required"] == ["name"]
        name = cleaned["properties"]["name"]
        assert name["type"] == "string"
        assert name["nullable"] is True
        assert name["description"] == "name (minLength: 2)"
        assert cleaned["properties"]["cfg"] == {"type": "object", "properties": {}}

    def test_properties_without_type_become_object(self):
        cleaned = clean_schema_for_gemini({"properties": {"x": {"type": "string"}}})
        assert cleaned["type"] == "object"
