# -*- coding: utf-8 -*-
"""
Anthropic messages 适配器

POST {base_url}/messages，鉴权头 x-api-key + anthropic-version
- 非流式：content[] 中 type=text 的块拼接
- 流式事件：
    message_start        输入用量（含 cache_read / cache_creation）
    content_block_start  text / thinking / tool_use(id, name)
    content_block_delta  text_delta / thinking_delta / input_json_delta(partial_json)
    content_block_stop   tool_use 块在这里完成
    message_delta        stop_reason + 输出用量
    error                上游错误
"""

from typing import Any, AsyncIterator, Dict, List, Optional

from ..cancellation import CancellationToken, guard_stream, run_with_deadline
from ..errors import UpstreamHTTPError, redact_secrets
from ..messages import as_anthropic_messages, build_anthropic_messages
from ..sse import iter_sse_events
from ..stream import StreamAggregator, map_anthropic_stop_reason
from ..tools_bridge import convert_anthropic_tools
from ..types import CanonicalChatRequest, ChatChunk
from .http import HttpxClientManager, apply_request_defaults, build_auth_headers, http_client, join_url
from .interface import ProviderRequestContext

__all__ = ["AnthropicAdapter", "DEFAULT_MAX_TOKENS"]

DEFAULT_MAX_TOKENS = 4096


class AnthropicAdapter:
    """Anthropic messages 后端"""

    def __init__(self, http: Optional[HttpxClientManager] = None):
        self.http = http or http_client

    def _request(self, ctx: ProviderRequestContext, body: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "url": join_url(ctx.base_url, "messages"),
            "headers": build_auth_headers(ctx.provider_type, ctx.api_key, ctx.headers),
            "json_body": apply_request_defaults(body, ctx.request_defaults),
            "secrets": ctx.secrets(),
        }

    @staticmethod
    def _body(
        ctx: ProviderRequestContext,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        stream: bool,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        # max_tokens 是必填字段；request_defaults 里给了就用它
        default_max = ctx.request_defaults.get("max_tokens") or DEFAULT_MAX_TOKENS
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": int(max_tokens or default_max),
            "messages": messages,
            "stream": stream,
        }
        if system:
            body["system"] = system
        return body

    async def _stream_events(self, ctx: ProviderRequestContext, body: Dict[str, Any], timeout_ms, label: str):
        source = self.http.stream_response("POST", timeout_ms=timeout_ms, label=label, **self._request(ctx, body))
        async for ev in iter_sse_events(source):
            payload = ev.json()
            if not isinstance(payload, dict):
                continue
            kind = payload.get("type") or ev.event
            if kind == "error":
                err = payload.get("error") if isinstance(payload.get("error"), dict) else {}
                message = str(err.get("message") or err.get("type") or "error")
                raise UpstreamHTTPError(status=200, excerpt=redact_secrets(message, ctx.secrets()), label=label)
            yield kind, payload
            if kind == "message_stop":
                return

    # ---------------- 非流式 ----------------

    async def _complete_text(self, ctx, model, system, messages, timeout_ms, max_tokens) -> str:
        system, msgs = as_anthropic_messages(system, messages)
        body = self._body(ctx, model, system, msgs, False, max_tokens)
        payload = await self.http.send_json(
            "POST", timeout_ms=timeout_ms, label=f"{ctx.label} completeText", **self._request(ctx, body)
        )
        blocks = payload.get("content") if isinstance(payload, dict) else None
        return "".join(
            b.get("text", "")
            for b in blocks or []
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        )

    async def complete_text(
        self,
        ctx: ProviderRequestContext,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        return await run_with_deadline(
            self._complete_text(ctx, model, system, messages, timeout_ms, max_tokens), timeout_ms, cancel
        )

    # ---------------- 流式文本 ----------------

    async def _stream_text(self, ctx, model, system, messages, timeout_ms) -> AsyncIterator[str]:
        system, msgs = as_anthropic_messages(system, messages)
        body = self._body(ctx, model, system, msgs, True)
        async for kind, payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} streamText"):
            if kind != "content_block_delta":
                continue
            delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
            if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str) and delta["text"]:
                yield delta["text"]

    def stream_text_deltas(
        self,
        ctx: ProviderRequestContext,
        model: str,
        system: str,
        messages: List[Dict[str, Any]],
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        return guard_stream(self._stream_text(ctx, model, system, messages, timeout_ms), cancel, timeout_ms)

    # ---------------- chat ----------------

    def build_chat_body(self, ctx: ProviderRequestContext, model: str, req: CanonicalChatRequest) -> Dict[str, Any]:
        system, messages = build_anthropic_messages(req)
        body = self._body(ctx, model, system, messages, True)
        tools = convert_anthropic_tools(req.tool_definitions)
        if tools:
            body["tools"] = tools
        return body

    async def _chat_stream(self, ctx, model, req, timeout_ms, tool_meta_by_name, support_tool_use_start):
        agg = StreamAggregator(tool_meta_by_name, support_tool_use_start)
        stop: Optional[str] = None
        tool_blocks = set()
        body = self.build_chat_body(ctx, model, req)

        async for kind, payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} chatStream"):
            if kind == "message_start":
                message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
                usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
                agg.usage(
                    usage.get("input_tokens"),
                    usage.get("output_tokens"),
                    usage.get("cache_read_input_tokens"),
                    usage.get("cache_creation_input_tokens"),
                )
            elif kind == "content_block_start":
                block = payload.get("content_block") if isinstance(payload.get("content_block"), dict) else {}
                index = payload.get("index", 0)
                if block.get("type") == "tool_use":
                    tool_blocks.add(index)
                    for chunk in agg.begin_tool_use(index, block.get("id") or "", block.get("name") or ""):
                        yield chunk
                elif block.get("type") == "text":
                    for chunk in agg.text(block.get("text") or ""):
                        yield chunk
            elif kind == "content_block_delta":
                delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
                dtype = delta.get("type")
                if dtype == "text_delta":
                    for chunk in agg.text(delta.get("text") or ""):
                        yield chunk
                elif dtype == "thinking_delta":
                    for chunk in agg.thinking(delta.get("thinking") or ""):
                        yield chunk
                elif dtype == "input_json_delta":
                    agg.append_tool_arguments(payload.get("index", 0), delta.get("partial_json") or "")
            elif kind == "content_block_stop":
                index = payload.get("index", 0)
                if index in tool_blocks:
                    for chunk in agg.complete_tool_use(index):
                        yield chunk
            elif kind == "message_delta":
                delta = payload.get("delta") if isinstance(payload.get("delta"), dict) else {}
                stop = map_anthropic_stop_reason(delta.get("stop_reason")) or stop
                usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
                agg.usage(
                    usage.get("input_tokens"),
                    usage.get("output_tokens"),
                    usage.get("cache_read_input_tokens"),
                    usage.get("cache_creation_input_tokens"),
                )

        for chunk in agg.finish(stop):
            yield chunk

    def chat_stream_chunks(
        self,
        ctx: ProviderRequestContext,
        model: str,
        req: CanonicalChatRequest,
        *,
        timeout_ms: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        tool_meta_by_name: Optional[Dict[str, Dict[str, str]]] = None,
        support_tool_use_start: bool = False,
    ) -> AsyncIterator[ChatChunk]:
        return guard_stream(
            self._chat_stream(ctx, model, req, timeout_ms, tool_meta_by_name, support_tool_use_start),
            cancel,
            timeout_ms,
        )
