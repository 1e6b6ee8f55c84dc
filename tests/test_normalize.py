"""
Request Normalize 测试

原始请求体（snake / camel 混用、类型错误、缺字段）到 CanonicalChatRequest 的标准化。
"""

from src.byok.normalize import (
    normalize_canonical_request,
    normalize_endpoint,
    normalize_response_nodes,
    read_feature_flag,
)
from src.byok.types import CanonicalChatRequest, RequestNodeType, ResponseNodeType


class TestNormalizeEndpoint:
    """测试端点路径标准化"""

    def test_variants(self):
        assert normalize_endpoint("chat-stream") == "/chat-stream"
        assert normalize_endpoint("/chat-stream?x=1") == "/chat-stream"
        assert normalize_endpoint(" /edit/ ") == "/edit"
        assert normalize_endpoint("/get-models#frag") == "/get-models"
        assert normalize_endpoint("/") == "/"

    def test_empty_and_non_string(self):
        assert normalize_endpoint("") == ""
        assert normalize_endpoint("   ") == ""
        assert normalize_endpoint(None) == ""
        assert normalize_endpoint(42) == ""


class TestNormalizeCanonicalRequest:
    """测试请求体标准化"""

    def test_camel_case_body(self):
        req = normalize_canonical_request({
            "message": "hi",
            "conversationId": "conv-1",
            "chatHistory": [
                {
                    "requestMessage": "q",
                    "responseText": "a",
                    "responseNodes": [
                        {"id": 1, "type": 5, "toolUse": {"toolUseId": "t1", "toolName": "read", "input": {"p": 1}}}
                    ],
                },
                "junk",
            ],
            "toolDefinitions": [{"name": "read"}, {"name": "read"}],
            "requestNodes": [
                {"id": 1, "type": 1, "toolResultNode": {"toolUseId": "t1", "content": {"ok": True}, "isError": True}}
            ],
            "featureDetectionFlags": {"support_tool_use_start": True},
            "selectedText": "sel",
            "language": "python",
        })

        assert req.message == "hi"
        assert req.conversation_id == "conv-1"
        assert len(req.chat_history) == 1
        tool_use = req.chat_history[0].response_nodes[0].tool_use
        assert tool_use.tool_use_id == "t1"
        assert tool_use.parsed_input() == {"p": 1}
        assert [d.name for d in req.tool_definitions] == ["read"]
        result = req.request_nodes[0].tool_result_node
        assert result.tool_use_id == "t1"
        assert result.content == '{"ok": true}'
        assert result.is_error is True
        assert req.selected_code == "sel"
        assert req.lang == "python"
        assert read_feature_flag(req, "supportToolUseStart", "support_tool_use_start")

    def test_wrong_types_become_empty(self):
        req = normalize_canonical_request({
            "message": 5,
            "chat_history": "nope",
            "nodes": {"type": 0},
            "tool_definitions": None,
            "feature_detection_flags": [],
        })

        assert req.message == ""
        assert req.chat_history == []
        assert req.nodes == []
        assert req.tool_definitions == []
        assert req.feature_detection_flags == {}
        assert req.mode == "AGENT"
        assert req.is_empty()

    def test_non_dict_body(self):
        assert normalize_canonical_request(None).is_empty()
        assert normalize_canonical_request("text").is_empty()

    def test_text_shorthand_and_image(self):
        req = normalize_canonical_request({
            "nodes": [
                {"type": 0, "text": "hello"},
                {"type": 2, "imageNode": {"imageData": "AAAA", "format": "png"}},
                "junk",
            ]
        })

        assert [n.type for n in req.nodes] == [RequestNodeType.TEXT, RequestNodeType.IMAGE]
        assert req.nodes[0].text_node.content == "hello"
        assert req.nodes[1].image_node.image_data == "AAAA"
        assert req.nodes[1].image_node.format == 0
        assert not req.is_empty()

    def test_canonical_input_is_copied(self):
        original = CanonicalChatRequest(message="m")
        copy = normalize_canonical_request(original)
        copy.message = "changed"
        assert original.message == "m"


class TestNormalizeResponseNodes:
    """测试响应节点标准化"""

    def test_token_usage_and_tool_use(self):
        nodes = normalize_response_nodes([
            {"type": 10, "tokenUsage": {"input_tokens": 3, "outputTokens": 4, "flag": True}},
            {"type": "5", "tool_use": {"tool_use_id": "x", "tool_name": "t", "input_json": "{\"a\":1}", "mcp_server_name": 3}},
            None,
        ])

        assert nodes[0].type == ResponseNodeType.TOKEN_USAGE
        assert nodes[0].token_usage.input_tokens == 3
        assert nodes[0].token_usage.output_tokens == 4
        assert nodes[1].type == ResponseNodeType.TOOL_USE
        assert nodes[1].tool_use.input_json == '{"a":1}'
        assert nodes[1].tool_use.mcp_server_name is None
