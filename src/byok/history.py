# -*- coding: utf-8 -*-
"""
History Compactor - 长对话历史压缩
=================================

chat_history 总字符数超过 trigger_on_history_size_chars 时：
- 尾部保留最近的若干 exchange（不超过 history_tail_size_chars_to_exclude 字符，
  但至少 min_tail_exchanges 个）
- 头部交给 LLM 生成摘要，以 HISTORY_SUMMARY 节点插入当前轮，chat_history 只剩尾部

摘要按 (conversation_id, 头部 exchange 数) 缓存，带 TTL；
删除 / 归档会话时通过 HistorySummaryCache.delete 清掉。
"""

import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from log import log

from .cancellation import CancellationToken
from .config import ByokConfig, HistorySummaryConfig
from .providers.registry import complete_text_by_provider
from .types import (
    CanonicalChatRequest,
    Exchange,
    HistorySummaryNode,
    ProviderConfig,
    RequestNode,
    RequestNodeType,
    ResponseNodeType,
)

__all__ = [
    "HistorySummaryCache",
    "history_summary_cache",
    "exchange_chars",
    "history_chars",
    "split_history",
    "render_transcript",
    "maybe_summarize_and_compact",
]

TRANSCRIPT_EXCHANGE_MAX_CHARS = 20000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _CacheEntry:
    summary_text: str
    expires_at_ms: int


class HistorySummaryCache:
    """
    会话摘要缓存（线程安全）

    key = (conversation_id, summarized_exchanges)
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._entries: Dict[Tuple[str, int], _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, conversation_id: str, head_count: int) -> Optional[str]:
        key = (conversation_id, head_count)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at_ms <= self._clock():
                self._entries.pop(key, None)
                return None
            return entry.summary_text

    def put(self, conversation_id: str, head_count: int, summary_text: str, ttl_ms: int) -> None:
        if not conversation_id or ttl_ms <= 0:
            return
        with self._lock:
            self._entries[(conversation_id, head_count)] = _CacheEntry(summary_text, self._clock() + ttl_ms)

    def delete(self, conversation_id: str) -> int:
        """删除某个会话的全部摘要，返回删除的条目数"""
        with self._lock:
            keys = [k for k in self._entries if k[0] == conversation_id]
            for k in keys:
                self._entries.pop(k, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# 运行时默认使用的全局缓存
history_summary_cache = HistorySummaryCache()


# ====================== 切分 ======================

def exchange_chars(exchange: Exchange) -> int:
    """一个 exchange 的大致字符数（消息、回复、工具结果与工具参数）"""
    total = len(exchange.request_message) + len(exchange.response_text)
    for node in [*exchange.request_nodes, *exchange.structured_request_nodes, *exchange.nodes]:
        if node.text_node is not None:
            total += len(node.text_node.content)
        if node.tool_result_node is not None:
            total += len(node.tool_result_node.content)
    for node in [*exchange.response_nodes, *exchange.structured_output_nodes]:
        if node.tool_use is not None:
            total += len(node.tool_use.input_json)
        elif node.type == ResponseNodeType.RAW_RESPONSE and not exchange.response_text:
            total += len(node.content)
    return total


def history_chars(history: List[Exchange]) -> int:
    return sum(exchange_chars(e) for e in history)


def split_history(history: List[Exchange], tail_chars: int, min_tail: int) -> Tuple[List[Exchange], List[Exchange]]:
    """
    Returns:
        (head, tail)；tail 从末尾向前累积，直到超过 tail_chars 且已满足 min_tail
    """
    tail: List[Exchange] = []
    used = 0
    for exchange in reversed(history):
        size = exchange_chars(exchange)
        if len(tail) >= min_tail and used + size > tail_chars:
            break
        tail.insert(0, exchange)
        used += size
    return history[: len(history) - len(tail)], tail


def render_transcript(head: List[Exchange]) -> str:
    blocks: List[str] = []
    for i, exchange in enumerate(head, 1):
        lines = [f"### Exchange {i}"]
        if exchange.request_message.strip():
            lines.append("User: " + exchange.request_message.strip()[:TRANSCRIPT_EXCHANGE_MAX_CHARS])
        tools = [
            n.tool_use.tool_name
            for n in [*exchange.response_nodes, *exchange.structured_output_nodes]
            if n.tool_use is not None and n.type == ResponseNodeType.TOOL_USE
        ]
        if tools:
            lines.append("Assistant called tools: " + ", ".join(tools))
        if exchange.response_text.strip():
            lines.append("Assistant: " + exchange.response_text.strip()[:TRANSCRIPT_EXCHANGE_MAX_CHARS])
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _existing_summary(req: CanonicalChatRequest) -> str:
    for node in req.all_request_nodes():
        if node.type == RequestNodeType.HISTORY_SUMMARY and node.history_summary_node is not None:
            return node.history_summary_node.summary_text
    return ""


def _summary_target(
    config: ByokConfig, hs: HistorySummaryConfig, fallback_provider: Optional[ProviderConfig], fallback_model: str
) -> Tuple[Optional[ProviderConfig], str]:
    provider = config.get_provider(hs.provider_id) if hs.provider_id else None
    if provider is not None:
        model = hs.model or provider.default_model or (provider.models[0] if provider.models else "")
        return provider, model
    if hs.provider_id:
        log.fallback(f"history summary provider {hs.provider_id} not found, using request provider", tag="HISTORY")
    return fallback_provider, hs.model or fallback_model


async def maybe_summarize_and_compact(
    config: ByokConfig,
    req: CanonicalChatRequest,
    requested_model: Optional[str] = None,
    fallback_provider: Optional[ProviderConfig] = None,
    fallback_model: str = "",
    timeout_ms: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
    cache: Optional[HistorySummaryCache] = None,
    complete_text: Optional[Callable[..., Awaitable[str]]] = None,
) -> bool:
    """
    按配置压缩 req.chat_history（原地修改 req）

    Args:
        requested_model: 客户端请求的模型（只用于日志）
        fallback_provider / fallback_model: history_summary 未指定 provider 时使用
        cache: 摘要缓存，默认使用全局 history_summary_cache
        complete_text: 可替换的补全函数，默认 complete_text_by_provider

    Returns:
        是否发生了压缩

    Raises:
        上游调用的异常原样抛出，由调用方决定是否忽略
    """
    hs = config.history_summary
    if not hs.enabled or not req.chat_history:
        return False
    total = history_chars(req.chat_history)
    if total < hs.trigger_on_history_size_chars:
        return False

    head, tail = split_history(req.chat_history, hs.history_tail_size_chars_to_exclude, hs.min_tail_exchanges)
    if not head:
        log.fallback(f"history {total} chars over trigger but nothing to summarize", tag="HISTORY")
        return False

    cache = cache if cache is not None else history_summary_cache
    conversation_id = req.conversation_id
    summary = cache.get(conversation_id, len(head)) if conversation_id else None

    if summary is None:
        provider, model = _summary_target(config, hs, fallback_provider, fallback_model)
        if provider is None or not model:
            log.fallback("history summary skipped: no provider/model available", tag="HISTORY")
            return False

        transcript = render_transcript(head)
        previous = _existing_summary(req)
        if previous.strip():
            transcript = f"Previous summary:\n{previous.strip()}\n\n{transcript}"
        limit_ms = hs.timeout_seconds * 1000
        t = min(timeout_ms, limit_ms) if timeout_ms and limit_ms else (timeout_ms or limit_ms or None)

        complete = complete_text or complete_text_by_provider
        with log.timer("history_summary", tag="HISTORY", provider_id=provider.id, model=model):
            summary = await complete(
                provider,
                model,
                hs.prompt,
                [{"role": "user", "content": transcript}],
                timeout_ms=t,
                cancel=cancel,
                max_tokens=hs.max_tokens or None,
            )
        summary = (summary or "").strip()
        if not summary:
            log.fallback("history summary skipped: empty summary", tag="HISTORY")
            return False
        if conversation_id:
            cache.put(conversation_id, len(head), summary, hs.cache_ttl_ms)
    else:
        log.debug(f"history summary cache hit conv={conversation_id} head={len(head)}", tag="HISTORY")

    req.chat_history = tail
    req.nodes = [
        n for n in req.nodes if n.type != RequestNodeType.HISTORY_SUMMARY
    ]
    req.nodes.insert(
        0,
        RequestNode(
            id=0,
            type=RequestNodeType.HISTORY_SUMMARY,
            history_summary_node=HistorySummaryNode(summary_text=summary, summarized_exchanges=len(head)),
        ),
    )
    log.info(
        f"history compacted conv={conversation_id or 'n/a'} summarized={len(head)} kept={len(tail)} "
        f"chars={total} requested_model={requested_model or 'n/a'}",
        tag="HISTORY",
    )
    return True
