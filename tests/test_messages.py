"""
Messages 测试

canonical 对话折叠以及四种上游消息格式的渲染，重点是 tool_use / tool_result 配对。
"""

import json

from src.byok.messages import (
    TOOL_RESULT_MISSING,
    as_gemini_contents,
    as_openai_messages,
    build_anthropic_messages,
    build_gemini_contents,
    build_openai_messages,
    build_openai_responses_input,
    build_system_prompt,
    fold_conversation,
)
from src.byok.types import CanonicalChatRequest


def _tool_use_exchange(tool_use_id="t1", name="read_file"):
    return {
        "request_message": "read it",
        "response_text": "",
        "response_nodes": [
            {
                "id": 1,
                "type": 5,
                "tool_use": {"tool_use_id": tool_use_id, "tool_name": name, "input_json": '{"path": "a.py"}'},
            }
        ],
    }


def _tool_result(tool_use_id="t1", content="file body", is_error=False):
    return {
        "id": 1,
        "type": 1,
        "tool_result_node": {"tool_use_id": tool_use_id, "content": content, "is_error": is_error},
    }


def _request(**kwargs) -> CanonicalChatRequest:
    return CanonicalChatRequest.model_validate(kwargs)


class TestFoldConversation:
    """测试 tool loop 配对"""

    def test_matched_tool_result(self):
        req = _request(chat_history=[_tool_use_exchange()], request_nodes=[_tool_result()])
        turns = fold_conversation(req)

        assert [t.role for t in turns] == ["user", "assistant", "user"]
        assert turns[1].tool_calls[0].tool_use_id == "t1"
        assert turns[2].tool_results[0].content == "file body"
        assert turns[2].text == ""

    def test_orphan_result_becomes_text(self):
        req = _request(message="go on", request_nodes=[_tool_result("t9", "stray", is_error=True)])
        turns = fold_conversation(req)

        assert len(turns) == 1
        assert turns[0].tool_results == []
        assert "[Tool result without matching tool call: tool_use_id=t9, is_error=true]" in turns[0].text
        assert "stray" in turns[0].text
        assert turns[0].text.endswith("go on")

    def test_missing_result_is_synthesized(self):
        req = _request(chat_history=[_tool_use_exchange()], message="next")
        turns = fold_conversation(req)

        result = turns[2].tool_results[0]
        assert result.tool_use_id == "t1"
        assert result.is_error is True
        assert json.loads(result.content)["error"] == TOOL_RESULT_MISSING
        assert turns[2].text == "next"


class TestOpenAIMessages:
    """测试 OpenAI chat 格式"""

    def test_tool_loop(self):
        req = _request(chat_history=[_tool_use_exchange()], request_nodes=[_tool_result()])
        messages = build_openai_messages(req)

        assert messages[0] == {"role": "user", "content": "read it"}
        assert messages[1]["role"] == "assistant"
        assert messages[1]["tool_calls"] == [
            {"id": "t1", "type": "function", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}
        ]
        assert messages[2] == {"role": "tool", "tool_call_id": "t1", "content": "file body"}
        assert len(messages) == 3

    def test_system_and_image(self):
        req = _request(
            message="what is this",
            user_guidelines="be brief",
            nodes=[{"id": 2, "type": 2, "image_node": {"image_data": "AAAA", "format": 1}}],
        )
        messages = build_openai_messages(req)

        assert messages[0] == {"role": "system", "content": "# User Guidelines\nbe brief"}
        assert messages[1]["content"] == [
            {"type": "text", "text": "what is this"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
        ]

    def test_text_only_helpers(self):
        msgs = [{"role": "user", "content": "hi"}, {"role": "tool", "content": "x"}, {"role": "assistant", "content": " "}]
        assert as_openai_messages(" sys ", msgs) == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert as_gemini_contents("", msgs) == ("", [{"role": "user", "parts": [{"text": "hi"}]}])


class TestResponsesInput:
    """测试 OpenAI responses 格式"""

    def test_function_call_items(self):
        req = _request(chat_history=[_tool_use_exchange()], request_nodes=[_tool_result()])
        instructions, items = build_openai_responses_input(req)

        assert instructions == ""
        assert [i["type"] for i in items] == ["message", "function_call", "function_call_output"]
        assert items[1]["call_id"] == "t1"
        assert items[2] == {"type": "function_call_output", "call_id": "t1", "output": "file body"}


class TestAnthropicMessages:
    """测试 Anthropic 格式"""

    def test_tool_blocks_and_merge(self):
        req = _request(
            chat_history=[_tool_use_exchange()],
            message="and then?",
            request_nodes=[_tool_result(is_error=True)],
        )
        system, messages = build_anthropic_messages(req)

        assert system == ""
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][0] == {
            "type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"},
        }
        last = messages[2]["content"]
        assert last[0] == {"type": "tool_result", "tool_use_id": "t1", "content": "file body", "is_error": True}
        assert last[1] == {"type": "text", "text": "and then?"}

    def test_first_message_is_user(self):
        req = _request(chat_history=[{"request_message": "", "response_text": "hello"}], message="hi")
        _, messages = build_anthropic_messages(req)

        assert messages[0]["role"] == "user"
        assert messages[1] == {"role": "assistant", "content": [{"type": "text", "text": "hello"}]}


class TestGeminiContents:
    """测试 Gemini 格式"""

    def test_function_response_uses_tool_name(self):
        req = _request(chat_history=[_tool_use_exchange()], request_nodes=[_tool_result()])
        _, contents = build_gemini_contents(req)

        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[1]["parts"] == [{"functionCall": {"name": "read_file", "args": {"path": "a.py"}}}]
        assert contents[2]["parts"] == [
            {"functionResponse": {"name": "read_file", "response": {"result": "file body"}}}
        ]


class TestSystemPrompt:
    """测试 system prompt 拼接"""

    def test_all_sections(self):
        req = _request(
            user_guidelines="ug",
            workspace_guidelines="wg",
            rules=["rule one", {"path": "r.md", "content": "rule two"}],
            agent_memories="mem",
            nodes=[{"id": 0, "type": 10, "history_summary_node": {"summary_text": "earlier stuff"}}],
        )
        prompt = build_system_prompt(req)

        assert prompt == (
            "# User Guidelines\nug\n\n"
            "# Workspace Guidelines\nwg\n\n"
            "# Rules\nrule one\n\nr.md:\nrule two\n\n"
            "# Memories\nmem\n\n"
            "# Summary of earlier conversation\nearlier stuff"
        )
