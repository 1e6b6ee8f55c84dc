# -*- coding: utf-8 -*-
"""
Messages - canonical 对话 -> 各上游消息格式
=========================================

先把 chat_history + 当前轮节点折叠成中性的 turn 列表，再分别渲染成：

- OpenAI chat:      messages[]（system / user / assistant(tool_calls) / tool）
- OpenAI responses: (instructions, input[])（message / function_call / function_call_output）
- Anthropic:        (system, messages[])（text / image / tool_use / tool_result 块，同角色合并）
- Gemini:           (system_instruction, contents[])（text / inlineData / functionCall / functionResponse）

Tool loop 约束：
- tool_result 只有在上一条 assistant turn 里能找到同 id 的 tool_use 时才按工具结果发送，
  否则折叠为 user 文本（上游不会收到孤儿 tool_result）。
- assistant 的 tool_use 在下一条 user turn 里没有结果时，补一个 is_error 的
  tool_result_missing 结果，避免上游 400。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .types import (
    CanonicalChatRequest,
    Exchange,
    ImageNode,
    RequestNode,
    RequestNodeType,
    ResponseNode,
    ResponseNodeType,
    ToolResultNode,
    ToolUse,
)

__all__ = [
    "Turn",
    "TOOL_RESULT_MISSING",
    "fold_conversation",
    "build_system_prompt",
    "build_openai_messages",
    "build_openai_responses_input",
    "build_anthropic_messages",
    "build_gemini_contents",
    "as_openai_messages",
    "as_openai_responses_input",
    "as_anthropic_messages",
    "as_gemini_contents",
    "image_data_url",
    "tool_result_text",
]

TOOL_RESULT_MISSING = "tool_result_missing"

_MISSING_RESULT_CONTENT = json.dumps(
    {"error": TOOL_RESULT_MISSING, "message": "The tool result was not returned by the client."}
)


@dataclass
class Turn:
    """中性的一轮消息"""
    role: str
    text: str = ""
    images: List[ImageNode] = field(default_factory=list)
    tool_calls: List[ToolUse] = field(default_factory=list)
    tool_results: List[ToolResultNode] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.text.strip() and not self.images and not self.tool_calls and not self.tool_results


# ====================== 折叠 ======================

def image_data_url(image: ImageNode) -> str:
    return f"data:{image.mime_type};base64,{image.image_data}"


def tool_result_text(result: ToolResultNode) -> str:
    """工具结果文本；content 为空时拼接 content_nodes 里的文本"""
    if result.content:
        return result.content
    parts: List[str] = []
    for node in result.content_nodes or []:
        text = node.get("text_content", node.get("textContent", node.get("text")))
        if isinstance(text, str) and text:
            parts.append(text)
    return "\n".join(parts)


def _user_turn(message: str, nodes: List[RequestNode]) -> Turn:
    turn = Turn(role="user", text=message or "")
    texts: List[str] = []
    for node in nodes:
        if node.type == RequestNodeType.TEXT and node.text_node is not None:
            if node.text_node.content:
                texts.append(node.text_node.content)
        elif node.type == RequestNodeType.TOOL_RESULT and node.tool_result_node is not None:
            if node.tool_result_node.tool_use_id:
                turn.tool_results.append(node.tool_result_node)
        elif node.type == RequestNodeType.IMAGE and node.image_node is not None:
            if node.image_node.image_data:
                turn.images.append(node.image_node)
    # text 节点通常是 message 的副本，message 为空时才使用
    if not turn.text.strip() and texts:
        turn.text = "\n".join(texts)
    return turn


def _assistant_turn(exchange: Exchange) -> Turn:
    turn = Turn(role="assistant", text=exchange.response_text or "")
    nodes: List[ResponseNode] = exchange.response_nodes or exchange.structured_output_nodes
    raw_texts: List[str] = []
    seen_ids = set()
    for node in nodes:
        if node.type == ResponseNodeType.TOOL_USE and node.tool_use is not None:
            tu = node.tool_use
            if tu.tool_use_id and tu.tool_name and tu.tool_use_id not in seen_ids:
                seen_ids.add(tu.tool_use_id)
                turn.tool_calls.append(tu)
        elif node.type == ResponseNodeType.RAW_RESPONSE and node.content:
            raw_texts.append(node.content)
    if not turn.text.strip() and raw_texts:
        turn.text = "".join(raw_texts)
    return turn


def _orphan_note(result: ToolResultNode) -> str:
    note = f"[Tool result without matching tool call: tool_use_id={result.tool_use_id}"
    if result.is_error:
        note += ", is_error=true"
    return note + "]\n" + tool_result_text(result)


def _pair_tool_results(turns: List[Turn]) -> List[Turn]:
    """保证每个 tool_call 都有结果、每个结果都有 tool_call"""
    out: List[Turn] = []
    for turn in turns:
        prev = out[-1] if out else None
        pending = {tc.tool_use_id for tc in prev.tool_calls} if prev is not None and prev.role == "assistant" else set()

        if turn.role == "user":
            matched: List[ToolResultNode] = []
            notes: List[str] = []
            for result in turn.tool_results:
                if result.tool_use_id in pending:
                    pending.discard(result.tool_use_id)
                    matched.append(result)
                else:
                    notes.append(_orphan_note(result))
            if prev is not None and prev.role == "assistant":
                for tc in prev.tool_calls:
                    if tc.tool_use_id in pending:
                        matched.append(
                            ToolResultNode(tool_use_id=tc.tool_use_id, content=_MISSING_RESULT_CONTENT, is_error=True)
                        )
            order = {tc.tool_use_id: i for i, tc in enumerate(prev.tool_calls)} if prev is not None else {}
            matched.sort(key=lambda r: order.get(r.tool_use_id, 0))
            text = "\n\n".join([*notes, turn.text] if turn.text.strip() else notes)
            out.append(Turn(role="user", text=text, images=list(turn.images), tool_results=matched))
        else:
            if prev is not None and prev.role == "assistant" and prev.tool_calls:
                # 两个 assistant 相邻：给上一轮的 tool_call 补 missing 结果
                out.append(
                    Turn(
                        role="user",
                        tool_results=[
                            ToolResultNode(tool_use_id=tc.tool_use_id, content=_MISSING_RESULT_CONTENT, is_error=True)
                            for tc in prev.tool_calls
                        ],
                    )
                )
            out.append(turn)
    return [t for t in out if not t.is_empty()]


def fold_conversation(req: CanonicalChatRequest) -> List[Turn]:
    """
    chat_history + 当前轮 -> Turn 列表（user / assistant 交替，tool 配对已处理）

    当前轮的 HISTORY_SUMMARY 节点不在这里出现，由 build_system_prompt 注入。
    """
    turns: List[Turn] = []
    for exchange in req.chat_history:
        history_nodes = [*exchange.request_nodes, *exchange.structured_request_nodes, *exchange.nodes]
        turns.append(_user_turn(exchange.request_message, history_nodes))
        turns.append(_assistant_turn(exchange))
    turns.append(_user_turn(req.message, req.all_request_nodes()))

    paired = _pair_tool_results([t for t in turns if not t.is_empty()])
    # 末尾的 assistant tool_call 没有对应的当前轮结果
    if paired and paired[-1].role == "assistant" and paired[-1].tool_calls:
        paired.append(
            Turn(
                role="user",
                tool_results=[
                    ToolResultNode(tool_use_id=tc.tool_use_id, content=_MISSING_RESULT_CONTENT, is_error=True)
                    for tc in paired[-1].tool_calls
                ],
            )
        )
    return paired


def _rule_text(rule: Any) -> str:
    if isinstance(rule, str):
        return rule.strip()
    if isinstance(rule, dict):
        content = rule.get("content")
        if isinstance(content, str) and content.strip():
            path = rule.get("path")
            return f"{path}:\n{content.strip()}" if isinstance(path, str) and path.strip() else content.strip()
    try:
        return json.dumps(rule, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(rule)


def build_system_prompt(req: CanonicalChatRequest) -> str:
    """
    把 guidelines / rules / memories / 历史摘要拼成 system prompt

    上游不认识这些带外字段，只能放进 system。
    """
    parts: List[str] = []
    if req.user_guidelines.strip():
        parts.append(f"# User Guidelines\n{req.user_guidelines.strip()}")
    if req.workspace_guidelines.strip():
        parts.append(f"# Workspace Guidelines\n{req.workspace_guidelines.strip()}")
    rules = [r for r in (_rule_text(rule) for rule in req.rules) if r]
    if rules:
        parts.append("# Rules\n" + "\n\n".join(rules))
    if req.agent_memories.strip():
        parts.append(f"# Memories\n{req.agent_memories.strip()}")

    summaries = [
        n.history_summary_node.summary_text.strip()
        for n in req.all_request_nodes()
        if n.type == RequestNodeType.HISTORY_SUMMARY
        and n.history_summary_node is not None
        and n.history_summary_node.summary_text.strip()
    ]
    if summaries:
        parts.append("# Summary of earlier conversation\n" + "\n\n".join(summaries))
    return "\n\n".join(parts).strip()


# ====================== OpenAI chat ======================

def build_openai_messages(req: CanonicalChatRequest, system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
    system = build_system_prompt(req) if system_prompt is None else system_prompt
    messages: List[Dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})

    for turn in fold_conversation(req):
        if turn.role == "assistant":
            msg: Dict[str, Any] = {"role": "assistant", "content": turn.text}
            if turn.tool_calls:
                msg["tool_calls"] = [
                    {
                        "id": tc.tool_use_id,
                        "type": "function",
                        "function": {"name": tc.tool_name, "arguments": tc.input_json or "{}"},
                    }
                    for tc in turn.tool_calls
                ]
            messages.append(msg)
            continue

        for result in turn.tool_results:
            messages.append({"role": "tool", "tool_call_id": result.tool_use_id, "content": tool_result_text(result)})
        if turn.images:
            parts: List[Dict[str, Any]] = []
            if turn.text.strip():
                parts.append({"type": "text", "text": turn.text})
            parts.extend({"type": "image_url", "image_url": {"url": image_data_url(img)}} for img in turn.images)
            messages.append({"role": "user", "content": parts})
        elif turn.text.strip():
            messages.append({"role": "user", "content": turn.text})
    return messages


# ====================== OpenAI responses ======================

def build_openai_responses_input(
    req: CanonicalChatRequest, system_prompt: Optional[str] = None
) -> Tuple[str, List[Dict[str, Any]]]:
    """Returns: (instructions, input[])"""
    instructions = build_system_prompt(req) if system_prompt is None else system_prompt
    items: List[Dict[str, Any]] = []

    for turn in fold_conversation(req):
        if turn.role == "assistant":
            if turn.text.strip():
                items.append({"type": "message", "role": "assistant", "content": turn.text})
            for tc in turn.tool_calls:
                items.append(
                    {"type": "function_call", "call_id": tc.tool_use_id, "name": tc.tool_name, "arguments": tc.input_json or "{}"}
                )
            continue

        for result in turn.tool_results:
            items.append({"type": "function_call_output", "call_id": result.tool_use_id, "output": tool_result_text(result)})
        if turn.images:
            content: List[Dict[str, Any]] = []
            if turn.text.strip():
                content.append({"type": "input_text", "text": turn.text})
            content.extend({"type": "input_image", "image_url": image_data_url(img)} for img in turn.images)
            items.append({"type": "message", "role": "user", "content": content})
        elif turn.text.strip():
            items.append({"type": "message", "role": "user", "content": turn.text})
    return instructions, items


# ====================== Anthropic ======================

def _merge_same_role(messages: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    merged: List[Dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1][key] = [*merged[-1][key], *msg[key]]
        else:
            merged.append({"role": msg["role"], key: list(msg[key])})
    return merged


def build_anthropic_messages(
    req: CanonicalChatRequest, system_prompt: Optional[str] = None
) -> Tuple[str, List[Dict[str, Any]]]:
    """Returns: (system, messages[])，同角色相邻消息合并，首条一定是 user"""
    system = build_system_prompt(req) if system_prompt is None else system_prompt
    raw: List[Dict[str, Any]] = []

    for turn in fold_conversation(req):
        blocks: List[Dict[str, Any]] = []
        if turn.role == "assistant":
            if turn.text.strip():
                blocks.append({"type": "text", "text": turn.text})
            for tc in turn.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.tool_use_id, "name": tc.tool_name, "input": tc.parsed_input()})
        else:
            for result in turn.tool_results:
                block: Dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": result.tool_use_id,
                    "content": tool_result_text(result),
                }
                if result.is_error:
                    block["is_error"] = True
                blocks.append(block)
            for img in turn.images:
                blocks.append(
                    {"type": "image", "source": {"type": "base64", "media_type": img.mime_type, "data": img.image_data}}
                )
            if turn.text.strip():
                blocks.append({"type": "text", "text": turn.text})
        if blocks:
            raw.append({"role": turn.role, "content": blocks})

    messages = _merge_same_role(raw, "content")
    if messages and messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": [{"type": "text", "text": "(continue)"}]})
    return system, messages


# ====================== Gemini ======================

def build_gemini_contents(
    req: CanonicalChatRequest, system_prompt: Optional[str] = None
) -> Tuple[str, List[Dict[str, Any]]]:
    """Returns: (system_instruction, contents[])；functionResponse 需要工具名，按 tool_use_id 回查"""
    system = build_system_prompt(req) if system_prompt is None else system_prompt
    names_by_id: Dict[str, str] = {}
    raw: List[Dict[str, Any]] = []

    for turn in fold_conversation(req):
        parts: List[Dict[str, Any]] = []
        if turn.role == "assistant":
            if turn.text.strip():
                parts.append({"text": turn.text})
            for tc in turn.tool_calls:
                names_by_id[tc.tool_use_id] = tc.tool_name
                parts.append({"functionCall": {"name": tc.tool_name, "args": tc.parsed_input()}})
            role = "model"
        else:
            for result in turn.tool_results:
                name = names_by_id.get(result.tool_use_id, "tool")
                key = "error" if result.is_error else "result"
                parts.append({"functionResponse": {"name": name, "response": {key: tool_result_text(result)}}})
            for img in turn.images:
                parts.append({"inlineData": {"mimeType": img.mime_type, "data": img.image_data}})
            if turn.text.strip():
                parts.append({"text": turn.text})
            role = "user"
        if parts:
            raw.append({"role": role, "parts": parts})

    return system, _merge_same_role(raw, "parts")


# ====================== 一次性文本接口 ======================

def _text_messages(messages: List[Dict[str, Any]]) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for m in messages or []:
        if not isinstance(m, dict):
            continue
        role = m.get("role")
        content = m.get("content")
        if role in ("user", "assistant") and isinstance(content, str) and content.strip():
            out.append((role, content))
    return out


def as_openai_messages(system: str, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if (system or "").strip():
        out.append({"role": "system", "content": system.strip()})
    out.extend({"role": role, "content": content} for role, content in _text_messages(messages))
    return out


def as_openai_responses_input(system: str, messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    items = [{"type": "message", "role": role, "content": content} for role, content in _text_messages(messages)]
    return (system or "").strip(), items


def as_anthropic_messages(system: str, messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    return (system or "").strip(), [{"role": role, "content": content} for role, content in _text_messages(messages)]


def as_gemini_contents(system: str, messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    contents = [
        {"role": "model" if role == "assistant" else "user", "parts": [{"text": content}]}
        for role, content in _text_messages(messages)
    ]
    return (system or "").strip(), contents
