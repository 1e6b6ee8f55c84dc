"""
Endpoint Prompts 测试
"""

import pytest

from src.byok.prompts import (
    build_messages_for_endpoint,
    parse_next_edit_loc_candidates,
    pick_num_results,
    pick_path,
    supported_prompt_endpoints,
)


class TestBuildMessages:
    """测试各一次性端点的 prompt"""

    def test_completion(self):
        system, messages = build_messages_for_endpoint(
            "completion", {"prefix": "def f(", "suffix": "):", "path": "a.py", "lang": "python"}
        )
        assert "<CURSOR>" in system
        assert messages == [{"role": "user", "content": "File: a.py\nLanguage: python\n\ndef f(<CURSOR>):"}]

    def test_completion_prefix_is_tail_truncated(self):
        _, messages = build_messages_for_endpoint("/completion", {"prefix": "a" * 9000 + "END"})
        content = messages[0]["content"]
        assert content.endswith("END<CURSOR>")
        assert len(content) == 8000 + len("<CURSOR>")

    def test_edit_camel_case(self):
        _, messages = build_messages_for_endpoint(
            "/edit", {"instruction": "rename x", "selectedText": "x = 1", "pathName": "m.py"}
        )
        content = messages[0]["content"]
        assert content.startswith("Instruction: rename x")
        assert "File: m.py" in content
        assert "Selected code:\n```\nx = 1\n```" in content

    def test_next_edit_loc_caps_results(self):
        system, messages = build_messages_for_endpoint(
            "/next_edit_loc",
            {
                "numResults": 9,
                "path": "a.py",
                "diagnostics": [{"path": "a.py", "range": {"start": {"line": 3}}, "message": "undefined name"}],
                "blobs": {"a.py": "print(x)"},
            },
        )
        assert "at most 6 objects" in system
        content = messages[0]["content"]
        assert "Current file: a.py" in content
        assert "- a.py:3: undefined name" in content
        assert "print(x)" in content

    def test_title_and_commit(self):
        _, messages = build_messages_for_endpoint(
            "/generate-conversation-title",
            {"chatHistory": [{"requestMessage": "fix bug", "responseText": "done"}], "message": "thanks"},
        )
        assert messages[0]["content"] == "User: fix bug\nAssistant: done\nUser: thanks"

        _, messages = build_messages_for_endpoint("/generate-commit-message-stream", {})
        assert messages[0]["content"] == "(no diff provided)"

    def test_prompt_enhancer_reads_text_nodes(self):
        _, messages = build_messages_for_endpoint(
            "/prompt-enhancer", {"nodes": [{"text_node": {"content": "make it fast"}}]}
        )
        assert messages[0]["content"] == "make it fast"

    def test_unknown_endpoint(self):
        with pytest.raises(ValueError):
            build_messages_for_endpoint("/chat-stream", {})
        assert "/chat-stream" not in supported_prompt_endpoints()
        assert "/next_edit_loc" in supported_prompt_endpoints()


class TestPickers:
    def test_pickers(self):
        assert pick_path({"filePath": " b.py "}) == "b.py"
        assert pick_path(None) == ""
        assert pick_num_results({"num_results": "3"}) == 3
        assert pick_num_results({"num_results": 0}) == 1
        assert pick_num_results({}) == 1


class TestParseNextEditLoc:
    """测试候选位置解析"""

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n[{"path": "a.py", "start_line": 4, "end_line": 2}, {"line": 9}]\n```'
        out = parse_next_edit_loc_candidates(text, fallback_path="cur.py", max_results=5)

        assert out == [
            {"item": {"path": "a.py", "range": {"start": 4, "stop": 4}}, "score": 1, "debug_info": {"source": "byok:llm"}},
            {"item": {"path": "cur.py", "range": {"start": 9, "stop": 9}}, "score": 1, "debug_info": {"source": "byok:llm"}},
        ]

    def test_max_results_and_garbage(self):
        text = '[{"path": "a", "startLine": 1}, {"path": "b", "startLine": 2}]'
        assert len(parse_next_edit_loc_candidates(text)) == 1
        assert parse_next_edit_loc_candidates("no json here") == []
        assert parse_next_edit_loc_candidates("[not json]") == []
        assert parse_next_edit_loc_candidates('[{"start_line": 1}]') == []
