# -*- coding: utf-8 -*-
"""
Streaming Aggregator
====================

把各上游的增量事件聚合为 canonical ChatChunk：

- 文本增量原样透传（RAW_RESPONSE 节点）
- tool call 的参数在多个事件中分片到达，按 key（index / item_id / block index）缓冲，
  参数完整后只发出一个 TOOL_USE 节点
- support_tool_use_start 打开时，tool call 开始时先发 TOOL_USE_START 节点
- stop_reason 只设置一次；上游没有终止信号时合成 end_turn（发出过 tool use 则为 tool_use_requested）

状态机：STREAMING -> TOOL_USE_PENDING -> TOOL_USE_COMPLETE -> ... -> DONE
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from log import format_ms, log

from .types import ChatChunk, ResponseNode, ResponseNodeType, StopReason, TokenUsage, ToolUse

__all__ = [
    "ToolCallPhase",
    "StreamAggregator",
    "CollectedStream",
    "collect_chat_stream",
    "extract_tool_uses_from_nodes",
    "extract_token_usage_from_nodes",
    "map_openai_finish_reason",
    "map_anthropic_stop_reason",
    "map_gemini_finish_reason",
    "trace_async_iterator",
]

DEFAULT_MAX_CHUNKS = 500


class ToolCallPhase(Enum):
    STREAMING = "streaming"
    TOOL_USE_PENDING = "tool_use_pending"
    TOOL_USE_COMPLETE = "tool_use_complete"
    DONE = "done"


# ====================== 停止原因映射 ======================

_OPENAI_FINISH = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE_REQUESTED,
    "function_call": StopReason.TOOL_USE_REQUESTED,
    "length": StopReason.MAX_TOKENS,
    "content_filter": StopReason.SAFETY,
    # responses API 的 status / incomplete reason
    "completed": StopReason.END_TURN,
    "max_output_tokens": StopReason.MAX_TOKENS,
}

_ANTHROPIC_STOP = {
    "end_turn": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE_REQUESTED,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "refusal": StopReason.SAFETY,
}

_GEMINI_FINISH = {
    "STOP": StopReason.END_TURN,
    "MAX_TOKENS": StopReason.MAX_TOKENS,
    "SAFETY": StopReason.SAFETY,
    "RECITATION": StopReason.SAFETY,
    "BLOCKLIST": StopReason.SAFETY,
    "PROHIBITED_CONTENT": StopReason.SAFETY,
    "SPII": StopReason.SAFETY,
}


def map_openai_finish_reason(reason: Any) -> Optional[str]:
    return _OPENAI_FINISH.get(reason) if isinstance(reason, str) else None


def map_anthropic_stop_reason(reason: Any) -> Optional[str]:
    return _ANTHROPIC_STOP.get(reason) if isinstance(reason, str) else None


def map_gemini_finish_reason(reason: Any) -> Optional[str]:
    if not isinstance(reason, str) or not reason:
        return None
    return _GEMINI_FINISH.get(reason.upper(), StopReason.END_TURN)


# ====================== 聚合器 ======================

@dataclass
class _PendingToolCall:
    key: str
    tool_use_id: str = ""
    tool_name: str = ""
    arguments: List[str] = field(default_factory=list)
    started: bool = False
    completed: bool = False


class StreamAggregator:
    """
    单次流式响应的聚合状态

    Args:
        tool_meta_by_name: 工具名 -> {mcp_server_name, mcp_tool_name}
        support_tool_use_start: 是否在 tool call 开始时发出 TOOL_USE_START 节点
    """

    def __init__(
        self,
        tool_meta_by_name: Optional[Dict[str, Dict[str, str]]] = None,
        support_tool_use_start: bool = False,
    ):
        self.tool_meta_by_name = tool_meta_by_name or {}
        self.support_tool_use_start = bool(support_tool_use_start)
        self.phase = ToolCallPhase.STREAMING
        self.stop_reason: Optional[str] = None
        self.emitted_tool_uses = 0
        self._text_parts: List[str] = []
        self._pending: Dict[str, _PendingToolCall] = {}
        self._usage: Dict[str, int] = {}
        self._next_id = 1

    # ---------------- 内部 ----------------

    def _node(self, node_type: int, **kwargs) -> ResponseNode:
        node = ResponseNode(id=self._next_id, type=node_type, **kwargs)
        self._next_id += 1
        return node

    def _tool_use(self, call: _PendingToolCall) -> ToolUse:
        meta = self.tool_meta_by_name.get(call.tool_name) or {}
        return ToolUse(
            tool_use_id=call.tool_use_id,
            tool_name=call.tool_name,
            input_json="".join(call.arguments).strip() or "{}",
            mcp_server_name=meta.get("mcp_server_name"),
            mcp_tool_name=meta.get("mcp_tool_name"),
        )

    def _ensure_call(self, key: Any) -> _PendingToolCall:
        k = str(key)
        call = self._pending.get(k)
        if call is None:
            call = _PendingToolCall(key=k)
            self._pending[k] = call
        return call

    def _refresh_phase(self) -> None:
        if self.phase is ToolCallPhase.DONE:
            return
        if any(not c.completed for c in self._pending.values()):
            self.phase = ToolCallPhase.TOOL_USE_PENDING
        elif self._pending:
            self.phase = ToolCallPhase.TOOL_USE_COMPLETE

    # ---------------- 事件 ----------------

    @property
    def text_so_far(self) -> str:
        return "".join(self._text_parts)

    def text(self, delta: str) -> List[ChatChunk]:
        if not delta or self.phase is ToolCallPhase.DONE:
            return []
        self._text_parts.append(delta)
        node = self._node(ResponseNodeType.RAW_RESPONSE, content=delta)
        return [ChatChunk(text=delta, nodes=[node])]

    def thinking(self, delta: str) -> List[ChatChunk]:
        if not delta or self.phase is ToolCallPhase.DONE:
            return []
        return [ChatChunk(nodes=[self._node(ResponseNodeType.THINKING, thinking={"summary": delta})])]

    def begin_tool_use(self, key: Any, tool_use_id: str = "", tool_name: str = "") -> List[ChatChunk]:
        """tool call 开始（或补齐 id / name）；同一个 key 重复调用是安全的"""
        if self.phase is ToolCallPhase.DONE:
            return []
        call = self._ensure_call(key)
        if tool_use_id and not call.tool_use_id:
            call.tool_use_id = tool_use_id
        if tool_name and not call.tool_name:
            call.tool_name = tool_name
        self._refresh_phase()
        if call.started or call.completed or not call.tool_name:
            return []
        call.started = True
        if not self.support_tool_use_start:
            return []
        node = self._node(
            ResponseNodeType.TOOL_USE_START,
            tool_use=ToolUse(tool_use_id=call.tool_use_id, tool_name=call.tool_name, input_json="{}"),
        )
        return [ChatChunk(nodes=[node])]

    def append_tool_arguments(self, key: Any, fragment: str) -> None:
        if not fragment or self.phase is ToolCallPhase.DONE:
            return
        call = self._ensure_call(key)
        if not call.completed:
            call.arguments.append(fragment)
        self._refresh_phase()

    def set_tool_arguments(self, key: Any, arguments: str) -> None:
        """一次性给出完整参数（覆盖已缓冲的分片）"""
        call = self._ensure_call(key)
        if not call.completed:
            call.arguments = [arguments or ""]
        self._refresh_phase()

    def complete_tool_use(self, key: Any) -> List[ChatChunk]:
        call = self._pending.get(str(key))
        if call is None or call.completed:
            return []
        if not call.tool_name:
            log.warning(f"dropping tool call without name key={call.key}", tag="STREAM")
            call.completed = True
            self._refresh_phase()
            return []
        if not call.tool_use_id:
            call.tool_use_id = f"toolu_{uuid.uuid4().hex[:24]}"
        call.completed = True
        self.emitted_tool_uses += 1
        self._refresh_phase()
        node = self._node(ResponseNodeType.TOOL_USE, tool_use=self._tool_use(call))
        return [ChatChunk(nodes=[node])]

    def complete_pending(self) -> List[ChatChunk]:
        out: List[ChatChunk] = []
        for key in list(self._pending.keys()):
            out.extend(self.complete_tool_use(key))
        return out

    def usage(
        self,
        input_tokens: Any = None,
        output_tokens: Any = None,
        cache_read_input_tokens: Any = None,
        cache_creation_input_tokens: Any = None,
    ) -> None:
        """记录 token 用量；后到的值覆盖先到的值（Anthropic 会分两次给出）"""
        for name, value in (
            ("input_tokens", input_tokens),
            ("output_tokens", output_tokens),
            ("cache_read_input_tokens", cache_read_input_tokens),
            ("cache_creation_input_tokens", cache_creation_input_tokens),
        ):
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                self._usage[name] = value

    def finish(self, native_stop_reason: Optional[str] = None) -> List[ChatChunk]:
        """
        结束流：补发未完成的 tool call、用量节点，并给出唯一的 stop_reason

        Args:
            native_stop_reason: 已映射为 canonical 的上游停止原因；None 表示上游没有给出
        """
        if self.phase is ToolCallPhase.DONE:
            return []
        out = self.complete_pending()

        stop = native_stop_reason
        if self.emitted_tool_uses and stop in (None, StopReason.END_TURN):
            stop = StopReason.TOOL_USE_REQUESTED
        if stop is None:
            stop = StopReason.END_TURN

        nodes: List[ResponseNode] = []
        if self._usage:
            nodes.append(self._node(ResponseNodeType.TOKEN_USAGE, token_usage=TokenUsage(**self._usage)))
        nodes.append(self._node(ResponseNodeType.MAIN_TEXT_FINISHED, content=self.text_so_far))

        self.stop_reason = stop
        self.phase = ToolCallPhase.DONE
        out.append(ChatChunk(nodes=nodes, stop_reason=stop))
        return out


# ====================== 收集 ======================

@dataclass
class CollectedStream:
    chunks: List[ChatChunk] = field(default_factory=list)
    nodes: List[ResponseNode] = field(default_factory=list)
    text: str = ""
    stop_reason: Optional[str] = None
    truncated: bool = False


async def collect_chat_stream(chunks: AsyncIterator[ChatChunk], max_chunks: int = DEFAULT_MAX_CHUNKS) -> CollectedStream:
    """
    读完一个 ChatChunk 流（最多 max_chunks 个，超出时关闭上游并标记 truncated）
    """
    out = CollectedStream()
    text_parts: List[str] = []
    iterator = chunks.__aiter__()
    try:
        async for chunk in iterator:
            if len(out.chunks) >= max_chunks:
                out.truncated = True
                break
            out.chunks.append(chunk)
            if chunk.text:
                text_parts.append(chunk.text)
            out.nodes.extend(chunk.nodes)
            if chunk.stop_reason and out.stop_reason is None:
                out.stop_reason = chunk.stop_reason
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
    out.text = "".join(text_parts)
    return out


def extract_tool_uses_from_nodes(nodes: List[ResponseNode]) -> List[ToolUse]:
    """取出 TOOL_USE 节点里的 ToolUse（按 tool_use_id 去重，忽略 TOOL_USE_START）"""
    out: List[ToolUse] = []
    seen = set()
    for node in nodes or []:
        if node.type != ResponseNodeType.TOOL_USE or node.tool_use is None:
            continue
        tu = node.tool_use
        key = tu.tool_use_id or f"{tu.tool_name}#{len(out)}"
        if key in seen:
            continue
        seen.add(key)
        out.append(tu)
    return out


def extract_token_usage_from_nodes(nodes: List[ResponseNode]) -> Optional[TokenUsage]:
    """合并所有 TOKEN_USAGE 节点，后出现的字段覆盖先出现的"""
    merged: Dict[str, int] = {}
    for node in nodes or []:
        if node.type != ResponseNodeType.TOKEN_USAGE or node.token_usage is None:
            continue
        for name, value in node.token_usage.model_dump().items():
            if value is not None:
                merged[name] = value
    return TokenUsage(**merged) if merged else None


# ====================== 追踪 ======================

async def trace_async_iterator(label: str, source: AsyncIterator[Any], tag: str = "STREAM") -> AsyncIterator[Any]:
    """透传 source，流关闭时记录条目数与耗时（异常照常向上抛）"""
    start = time.perf_counter()
    count = 0
    outcome = "ok"
    iterator = source.__aiter__()
    try:
        async for item in iterator:
            count += 1
            yield item
    except BaseException as e:
        outcome = type(e).__name__
        raise
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
        elapsed = (time.perf_counter() - start) * 1000
        log.perf(f"{label} closed items={count} outcome={outcome} ({format_ms(elapsed)})", tag=tag)
