# -*- coding: utf-8 -*-
"""
Tool JSON Schema 工具集

- classify_schema: 把 schema 节点归类为 OBJECT / ARRAY / UNION / REFERENCE / LEAF
- coerce_strict_schema: 改写为 OpenAI responses strict 模式（对象一律封闭且全部必填）
- validate_strict_schema: 检查 strict 模式违规，返回 issue 字符串
- sample_json_from_schema: 按 schema 生成一个可 JSON 序列化的样例值
- clean_schema_for_gemini: 剔除 Gemini functionDeclarations 不接受的字段

所有递归都显式传递 depth，防止循环 / 病态 schema。
"""

import copy
import math
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "SchemaKind",
    "schema_types",
    "classify_schema",
    "coerce_strict_schema",
    "validate_strict_schema",
    "strict_schema_issues",
    "sample_json_from_schema",
    "clean_schema_for_gemini",
    "count_schema_properties",
    "STRICT_MAX_DEPTH",
    "SAMPLE_MAX_DEPTH",
]

STRICT_MAX_DEPTH = 50
SAMPLE_MAX_DEPTH = 8
SAMPLE_MAX_KEYS = 60

# 需要递归进入的单个子 schema 关键字
_CHILD_KEYS = ("items", "prefixItems", "not", "if", "then", "else")
_UNION_KEYS = ("anyOf", "oneOf", "allOf")
_DEFS_KEYS = ("$defs", "definitions")


class SchemaKind(Enum):
    OBJECT = "object"
    ARRAY = "array"
    UNION = "union"
    REFERENCE = "reference"
    LEAF = "leaf"


def schema_types(node: Any) -> List[str]:
    """type 字段规范化为小写列表（支持 type: [..]）"""
    if not isinstance(node, dict):
        return []
    raw = node.get("type")
    items = raw if isinstance(raw, list) else [raw]
    return [t.strip().lower() for t in items if isinstance(t, str) and t.strip()]


def _properties(node: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    props = node.get("properties")
    return props if isinstance(props, dict) else None


def _first_union_member(node: Dict[str, Any]) -> Any:
    for key in ("oneOf", "anyOf", "allOf"):
        members = node.get(key)
        if isinstance(members, list) and members:
            return members[0]
    return None


def classify_schema(node: Any) -> SchemaKind:
    if not isinstance(node, dict):
        return SchemaKind.LEAF
    if _first_union_member(node) is not None:
        return SchemaKind.UNION
    types = schema_types(node)
    if "object" in types or _properties(node) is not None:
        return SchemaKind.OBJECT
    if "array" in types or node.get("items") is not None:
        return SchemaKind.ARRAY
    if isinstance(node.get("$ref"), str):
        return SchemaKind.REFERENCE
    return SchemaKind.LEAF


def count_schema_properties(schema: Any) -> int:
    if not isinstance(schema, dict):
        return 0
    props = _properties(schema)
    return len(props) if props else 0


# ====================== strict 模式 ======================

def coerce_strict_schema(schema: Any, depth: int = 0) -> Any:
    """
    返回 schema 的 strict 版本（不修改入参）

    每个 object / 带 properties 的子 schema:
    - additionalProperties = false
    - required = 全部 property key（保持声明顺序）
    """
    return _coerce_strict(copy.deepcopy(schema), depth)


def _coerce_strict(node: Any, depth: int) -> Any:
    if depth > STRICT_MAX_DEPTH:
        return node
    if isinstance(node, list):
        return [_coerce_strict(item, depth + 1) for item in node]
    if not isinstance(node, dict):
        return node

    props = _properties(node)
    if "object" in schema_types(node) or props is not None:
        if props is None:
            node["properties"] = props = {}
        node["additionalProperties"] = False
        node["required"] = list(props.keys())
        for key in list(props.keys()):
            props[key] = _coerce_strict(props[key], depth + 1)

    for key in _CHILD_KEYS:
        if node.get(key) is not None:
            node[key] = _coerce_strict(node[key], depth + 1)
    for key in _UNION_KEYS:
        if isinstance(node.get(key), list):
            node[key] = _coerce_strict(node[key], depth + 1)
    for key in _DEFS_KEYS:
        defs = node.get(key)
        if isinstance(defs, dict):
            for name in list(defs.keys()):
                defs[name] = _coerce_strict(defs[name], depth + 1)
    return node


def _join_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def validate_strict_schema(schema: Any, issues: List[str], path: str = "", depth: int = 0) -> None:
    """
    检查 schema 是否满足 strict 模式，违规项追加到 issues

    issue 格式:
    - "<path>: additionalProperties must be false"
    - "<path>: required must be array"
    - "<path>: required missing 'k'"
    根节点的 path 显示为 <root>。
    """
    if depth > STRICT_MAX_DEPTH or not schema:
        return
    if isinstance(schema, list):
        for i, item in enumerate(schema):
            validate_strict_schema(item, issues, f"{path}[{i}]", depth + 1)
        return
    if not isinstance(schema, dict):
        return

    label = path or "<root>"
    props = _properties(schema)
    if "object" in schema_types(schema) or props is not None:
        if schema.get("additionalProperties") is not False:
            issues.append(f"{label}: additionalProperties must be false")
        required = schema.get("required")
        if not isinstance(required, list):
            issues.append(f"{label}: required must be array")
        elif props:
            for key in props.keys():
                if key not in required:
                    issues.append(f"{label}: required missing '{key}'")

    if props:
        for key, sub in props.items():
            validate_strict_schema(sub, issues, _join_path(path, f"properties.{key}"), depth + 1)

    for key in _CHILD_KEYS:
        if schema.get(key) is not None:
            validate_strict_schema(schema[key], issues, _join_path(path, key), depth + 1)
    for key in _UNION_KEYS:
        if isinstance(schema.get(key), list):
            validate_strict_schema(schema[key], issues, _join_path(path, key), depth + 1)
    for key in _DEFS_KEYS:
        defs = schema.get(key)
        if isinstance(defs, dict):
            for name, sub in defs.items():
                validate_strict_schema(sub, issues, _join_path(path, f"{key}.{name}"), depth + 1)


def strict_schema_issues(schema: Any) -> List[str]:
    issues: List[str] = []
    validate_strict_schema(schema, issues, "", 0)
    return issues


# ====================== 样例生成 ======================

def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _positive_int(value: Any) -> int:
    number = _finite(value)
    return int(math.floor(number)) if number is not None and number > 0 else 0


def sample_json_from_schema(schema: Any, depth: int = 0) -> Any:
    """
    按 schema 生成样例值

    优先级: const > enum[0] > default > oneOf/anyOf/allOf 的第一个分支 > 按 type 生成。
    object 只填 required（且存在于 properties 中）的 key，没有 required 时填全部 key，最多 60 个。
    """
    if depth > SAMPLE_MAX_DEPTH:
        return {}
    s = schema if isinstance(schema, dict) else {}

    if "const" in s:
        return s["const"]
    if isinstance(s.get("enum"), list) and s["enum"]:
        return s["enum"][0]
    if "default" in s:
        return s["default"]

    kind = classify_schema(s)
    if kind is SchemaKind.UNION:
        return sample_json_from_schema(_first_union_member(s), depth + 1)

    if kind is SchemaKind.OBJECT:
        props = _properties(s) or {}
        required = [r.strip() for r in s.get("required") or [] if isinstance(r, str) and r.strip()]
        chosen = [k for k in required if k in props] if required else list(props.keys())
        return {k: sample_json_from_schema(props.get(k), depth + 1) for k in chosen[:SAMPLE_MAX_KEYS]}

    if kind is SchemaKind.ARRAY:
        count = min(3, _positive_int(s.get("minItems")))
        return [sample_json_from_schema(s.get("items"), depth + 1) for _ in range(count)]

    types = schema_types(s)
    if "integer" in types:
        minimum = _finite(s.get("minimum"))
        if minimum is not None:
            return int(math.floor(minimum))
        exclusive = _finite(s.get("exclusiveMinimum"))
        if exclusive is not None:
            return int(math.floor(exclusive)) + 1
        return 1
    if "number" in types:
        minimum = _finite(s.get("minimum"))
        if minimum is not None:
            return minimum
        exclusive = _finite(s.get("exclusiveMinimum"))
        if exclusive is not None:
            return exclusive + 1
        return 1
    if "boolean" in types:
        return True
    if "null" in types:
        return None
    if "string" in types:
        return "x" * min(16, max(1, _positive_int(s.get("minLength"))))

    # 兜底：返回可 JSON 化的值
    return {}


# ====================== Gemini ======================

_GEMINI_UNSUPPORTED_KEYS = {
    "$schema",
    "$id",
    "$ref",
    "$defs",
    "definitions",
    "title",
    "example",
    "examples",
    "readOnly",
    "writeOnly",
    "default",
    "exclusiveMaximum",
    "exclusiveMinimum",
    "oneOf",
    "anyOf",
    "allOf",
    "const",
    "additionalItems",
    "contains",
    "patternProperties",
    "dependencies",
    "propertyNames",
    "if",
    "then",
    "else",
    "contentEncoding",
    "contentMediaType",
    "additionalProperties",
    "strict",
}

_GEMINI_VALIDATION_FIELDS = ("minLength", "maxLength", "minimum", "maximum", "minItems", "maxItems")


def clean_schema_for_gemini(schema: Any, depth: int = 0) -> Any:
    """
    清理 JSON Schema，移除 Gemini 不支持的字段，并把校验要求追加到 description

    - type: ["string", "null"] 收敛为 type: "string" + nullable: true
    - 有 properties 但没有 type 时补为 object
    """
    if not isinstance(schema, dict) or depth > STRICT_MAX_DEPTH:
        return schema

    validations = [f"{f}: {schema[f]}" for f in _GEMINI_VALIDATION_FIELDS if f in schema]

    cleaned: Dict[str, Any] = {}
    for key, value in schema.items():
        if key in _GEMINI_UNSUPPORTED_KEYS or key in _GEMINI_VALIDATION_FIELDS:
            continue

        if key == "type" and isinstance(value, list):
            has_null = any(isinstance(t, str) and t.strip().lower() == "null" for t in value)
            non_null = [t.strip() for t in value if isinstance(t, str) and t.strip() and t.strip().lower() != "null"]
            cleaned["type"] = non_null[0] if non_null else "string"
            if has_null:
                cleaned["nullable"] = True
            continue

        if key == "description" and validations:
            cleaned[key] = f"{value} ({', '.join(validations)})"
        elif key == "properties" and isinstance(value, dict):
            props: Dict[str, Any] = {}
            for prop_name, prop_schema in value.items():
                if isinstance(prop_schema, dict):
                    cleaned_prop = clean_schema_for_gemini(prop_schema, depth + 1)
                    if cleaned_prop.get("type") == "object" and "properties" not in cleaned_prop:
                        cleaned_prop["properties"] = {}
                    props[prop_name] = cleaned_prop
                else:
                    props[prop_name] = {"type": "string"}
            cleaned[key] = props
        elif isinstance(value, dict):
            cleaned[key] = clean_schema_for_gemini(value, depth + 1)
        elif isinstance(value, list):
            cleaned[key] = [clean_schema_for_gemini(item, depth + 1) if isinstance(item, dict) else item for item in value]
        else:
            cleaned[key] = value

    if validations and "description" not in cleaned:
        cleaned["description"] = f"Validation: {', '.join(validations)}"

    if "properties" in cleaned and "type" not in cleaned:
        cleaned["type"] = "object"

    # required 里只能出现存在的 property
    if isinstance(cleaned.get("required"), list) and isinstance(cleaned.get("properties"), dict):
        cleaned["required"] = [r for r in cleaned["required"] if r in cleaned["properties"]]
        if not cleaned["required"]:
            cleaned.pop("required")

    return cleaned
