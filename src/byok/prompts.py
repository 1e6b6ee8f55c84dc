# -*- coding: utf-8 -*-
"""
Endpoint Prompts - 一次性端点的 prompt 构建
==========================================

build_messages_for_endpoint(endpoint, body) -> (system, messages)

messages 为简单的 [{"role": "user"|"assistant", "content": str}]，
再由 messages.as_* 渲染成各上游格式。

支持的端点：
- /completion, /chat-input-completion
- /edit, /instruction-stream, /smart-paste-stream, /next-edit-stream
- /next_edit_loc（输出 JSON 数组，parse_next_edit_loc_candidates 负责解析）
- /prompt-enhancer, /generate-conversation-title, /generate-commit-message-stream
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from .normalize import normalize_endpoint, normalize_string, pick_field

__all__ = [
    "build_messages_for_endpoint",
    "supported_prompt_endpoints",
    "pick_path",
    "pick_num_results",
    "parse_next_edit_loc_candidates",
]

PREFIX_MAX_CHARS = 8000
SUFFIX_MAX_CHARS = 4000
TRANSCRIPT_MAX_CHARS = 6000
DIFF_MAX_CHARS = 40000

_NO_FENCE = "Do not wrap the output in markdown code fences and do not add explanations."


def _text(body: Dict[str, Any], *keys: str) -> str:
    value = pick_field(body, *keys)
    return value if isinstance(value, str) else ""


def pick_path(body: Any) -> str:
    b = body if isinstance(body, dict) else {}
    return normalize_string(pick_field(b, "path", "pathName", "file_path", "filePath", "target_file_path", "targetFilePath"))


def pick_num_results(body: Any, default: int = 1, maximum: int = 6) -> int:
    b = body if isinstance(body, dict) else {}
    raw = pick_field(b, "num_results", "numResults")
    try:
        n = int(raw)
    except (TypeError, ValueError):
        n = default
    return max(1, min(maximum, n))


def _tail(s: str, n: int) -> str:
    return s[-n:] if len(s) > n else s


def _head(s: str, n: int) -> str:
    return s[:n] if len(s) > n else s


def _file_header(body: Dict[str, Any]) -> str:
    path = pick_path(body)
    lang = _text(body, "lang", "language")
    lines = []
    if path:
        lines.append(f"File: {path}")
    if lang:
        lines.append(f"Language: {lang}")
    return "\n".join(lines)


def _fenced(label: str, code: str) -> str:
    return f"{label}:\n```\n{code}\n```"


def _user(content: str) -> List[Dict[str, str]]:
    return [{"role": "user", "content": content.strip()}]


def _completion(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "You are an inline code completion engine. Continue the code exactly at <CURSOR>. "
        "Output only the text to insert. " + _NO_FENCE
    )
    prefix = _tail(_text(body, "prefix", "prompt"), PREFIX_MAX_CHARS)
    suffix = _head(_text(body, "suffix"), SUFFIX_MAX_CHARS)
    header = _file_header(body)
    return system, _user(f"{header}\n\n{prefix}<CURSOR>{suffix}" if header else f"{prefix}<CURSOR>{suffix}")


def _chat_input_completion(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = "Complete the user's partially typed chat message. Output only the continuation text, without repeating the input."
    partial = _text(body, "prompt", "message", "text", "prefix")
    return system, _user(f"Partial message:\n{partial}")


def _edit_like(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "You are a code editing assistant. Apply the instruction to the selected code and output only the "
        "complete replacement for the selected code. " + _NO_FENCE
    )
    instruction = _text(body, "instruction", "message", "prompt")
    parts = [f"Instruction: {instruction}"]
    header = _file_header(body)
    if header:
        parts.append(header)
    prefix = _tail(_text(body, "prefix"), PREFIX_MAX_CHARS)
    suffix = _head(_text(body, "suffix"), SUFFIX_MAX_CHARS)
    if prefix:
        parts.append(_fenced("Code before the selection", prefix))
    parts.append(_fenced("Selected code", _text(body, "selected_text", "selectedText", "selected_code", "selectedCode")))
    if suffix:
        parts.append(_fenced("Code after the selection", suffix))
    return system, _user("\n\n".join(parts))


def _smart_paste(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "You integrate a pasted code block into a target file. Output only the replacement for the selected "
        "range of the target file, adapted to the surrounding code. " + _NO_FENCE
    )
    parts = []
    instruction = _text(body, "instruction", "message")
    if instruction:
        parts.append(f"Instruction: {instruction}")
    header = _file_header(body)
    if header:
        parts.append(header)
    parts.append(_fenced("Code block to paste", _text(body, "code_block", "codeBlock")))
    target = _text(body, "target_file_content", "targetFileContent")
    if target:
        parts.append(_fenced("Target file", _head(target, PREFIX_MAX_CHARS * 2)))
    parts.append(_fenced("Selected range", _text(body, "selected_text", "selectedText")))
    return system, _user("\n\n".join(parts))


def _next_edit(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "You suggest the next edit in a code file. Rewrite the selected range according to the instruction and "
        "output only the new text for that range. " + _NO_FENCE
    )
    parts = []
    instruction = _text(body, "instruction", "message")
    if instruction:
        parts.append(f"Instruction: {instruction}")
    header = _file_header(body)
    if header:
        parts.append(header)
    parts.append(_fenced("Code before the selection", _tail(_text(body, "prefix"), PREFIX_MAX_CHARS)))
    parts.append(_fenced("Selected range", _text(body, "selected_text", "selectedText", "selected_code")))
    parts.append(_fenced("Code after the selection", _head(_text(body, "suffix"), SUFFIX_MAX_CHARS)))
    return system, _user("\n\n".join(parts))


def _diagnostic_lines(body: Dict[str, Any]) -> List[str]:
    diags = body.get("diagnostics")
    if not isinstance(diags, list):
        return []
    lines: List[str] = []
    for d in diags[:50]:
        if not isinstance(d, dict):
            continue
        path = normalize_string(pick_field(d, "path", "file_path", "filePath"))
        rng = d.get("range") if isinstance(d.get("range"), dict) else {}
        start = rng.get("start") if isinstance(rng.get("start"), dict) else {}
        line = start.get("line", d.get("line"))
        message = normalize_string(d.get("message"))
        lines.append(f"- {path}:{line}: {message}")
    return lines


def _next_edit_loc(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    n = pick_num_results(body)
    system = (
        "You locate where the next code edit should happen. Reply with JSON only: an array of at most "
        f"{n} objects of the form {{\"path\": string, \"start_line\": number, \"end_line\": number}} "
        "using 0-based line numbers, most relevant first."
    )
    parts = []
    instruction = _text(body, "instruction", "message")
    if instruction:
        parts.append(f"Instruction: {instruction}")
    path = pick_path(body)
    if path:
        parts.append(f"Current file: {path}")
    diags = _diagnostic_lines(body)
    if diags:
        parts.append("Diagnostics:\n" + "\n".join(diags))
    blobs = body.get("blobs")
    if isinstance(blobs, dict) and path and isinstance(blobs.get(path), str):
        parts.append(_fenced("File content", _head(blobs[path], PREFIX_MAX_CHARS)))
    return system, _user("\n\n".join(parts) or "Find the most relevant place to apply the next edit.")


def _request_text(body: Dict[str, Any]) -> str:
    message = _text(body, "message", "prompt")
    if message.strip():
        return message
    nodes = body.get("nodes")
    texts: List[str] = []
    if isinstance(nodes, list):
        for node in nodes:
            tn = node.get("text_node") if isinstance(node, dict) else None
            if isinstance(tn, dict) and isinstance(tn.get("content"), str):
                texts.append(tn["content"])
    return "\n".join(texts)


def _transcript(body: Dict[str, Any]) -> str:
    history = pick_field(body, "chat_history", "chatHistory")
    lines: List[str] = []
    if isinstance(history, list):
        for ex in history:
            if not isinstance(ex, dict):
                continue
            req = _text(ex, "request_message", "requestMessage")
            resp = _text(ex, "response_text", "responseText")
            if req.strip():
                lines.append(f"User: {req.strip()}")
            if resp.strip():
                lines.append(f"Assistant: {resp.strip()}")
    current = _request_text(body)
    if current.strip():
        lines.append(f"User: {current.strip()}")
    return _head("\n".join(lines), TRANSCRIPT_MAX_CHARS)


def _prompt_enhancer(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "Rewrite the user's prompt for a coding agent so that it is clear, specific and actionable. "
        "Keep the original intent and language. Output only the improved prompt."
    )
    return system, _user(_request_text(body))


def _conversation_title(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = "Generate a short title (at most 8 words) for the conversation. Output only the title, without quotes."
    return system, _user(_transcript(body) or "(empty conversation)")


def _commit_message(body: Dict[str, Any]) -> Tuple[str, List[Dict[str, str]]]:
    system = (
        "Write a git commit message for the following changes: a concise summary line (at most 72 characters), "
        "optionally followed by a blank line and a short body. Output only the commit message."
    )
    parts = []
    diff = _text(body, "diff")
    if diff:
        parts.append(_fenced("Diff", _head(diff, DIFF_MAX_CHARS)))
    stats = pick_field(body, "changed_file_stats", "changedFileStats")
    if stats:
        parts.append("Changed files:\n" + json.dumps(stats, ensure_ascii=False)[:4000])
    examples = pick_field(body, "relevant_commit_messages", "relevantCommitMessages", "example_commit_messages")
    if isinstance(examples, list) and examples:
        parts.append("Recent commit messages for style reference:\n" + "\n".join(str(e) for e in examples[:10]))
    return system, _user("\n\n".join(parts) or "(no diff provided)")


_BUILDERS = {
    "/completion": _completion,
    "/chat-input-completion": _chat_input_completion,
    "/edit": _edit_like,
    "/instruction-stream": _edit_like,
    "/smart-paste-stream": _smart_paste,
    "/next-edit-stream": _next_edit,
    "/next_edit_loc": _next_edit_loc,
    "/prompt-enhancer": _prompt_enhancer,
    "/generate-conversation-title": _conversation_title,
    "/generate-commit-message-stream": _commit_message,
}


def supported_prompt_endpoints() -> List[str]:
    return list(_BUILDERS.keys())


def build_messages_for_endpoint(endpoint: str, body: Any) -> Tuple[str, List[Dict[str, str]]]:
    """
    Args:
        endpoint: 端点（会被标准化）
        body: 原始请求体

    Returns:
        (system, messages)

    Raises:
        ValueError: 端点不是一次性文本端点
    """
    ep = normalize_endpoint(endpoint)
    builder = _BUILDERS.get(ep)
    if builder is None:
        raise ValueError(f"no prompt builder for endpoint: {endpoint}")
    return builder(body if isinstance(body, dict) else {})


# ====================== next_edit_loc 解析 ======================

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


def _line(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(0, n)


def parse_next_edit_loc_candidates(
    text: str, fallback_path: str = "", max_results: int = 1, source: str = "byok:llm"
) -> List[Dict[str, Any]]:
    """
    解析模型输出的候选位置（容忍 ``` 包裹与前后多余文字）

    Returns:
        [{"item": {"path", "range": {"start", "stop"}}, "score", "debug_info": {"source"}}]
    """
    match = _JSON_ARRAY.search(text or "")
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []

    out: List[Dict[str, Any]] = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        path = normalize_string(entry.get("path")) or fallback_path
        start = _line(pick_field(entry, "start_line", "startLine", "line", "start"))
        if not path or start is None:
            continue
        stop = _line(pick_field(entry, "end_line", "endLine", "stop", "end"))
        stop = start if stop is None else max(start, stop)
        out.append(
            {"item": {"path": path, "range": {"start": start, "stop": stop}}, "score": 1, "debug_info": {"source": source}}
        )
        if len(out) >= max_results:
            break
    return out
