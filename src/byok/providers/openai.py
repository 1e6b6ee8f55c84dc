# -*- coding: utf-8 -*-
"""
OpenAI chat-completions 适配器（openai_compatible）

POST {base_url}/chat/completions
- 非流式：choices[0].message.content
- 流式：SSE，choices[0].delta.{content, reasoning_content, tool_calls[]}，
  tool_calls 按 index 分片到达，usage 在最后一个（choices 为空的）chunk 里
"""

from typing import Any, AsyncIterator, Dict, List, Optional

from log import log

from ..cancellation import CancellationToken, guard_stream, run_with_deadline
from ..errors import UpstreamHTTPError, redact_secrets
from ..messages import as_openai_messages, build_openai_messages
from ..sse import iter_sse_events
from ..stream import StreamAggregator, map_openai_finish_reason
from ..tools_bridge import convert_openai_tools
from ..types import CanonicalChatRequest, ChatChunk
from .http import HttpxClientManager, apply_request_defaults, build_auth_headers, http_client, join_url
from .interface import ProviderRequestContext

__all__ = ["OpenAIChatAdapter", "openai_message_text"]


def openai_message_text(content: Any) -> str:
    """message.content 可能是字符串，也可能是 [{type: text, text}] 分段"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            p.get("text", "") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str)
        )
    return ""


def _first_choice(payload: Any) -> Dict[str, Any]:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _stream_error_message(payload: Dict[str, Any]) -> str:
    err = payload.get("error")
    if isinstance(err, dict):
        return str(err.get("message") or err.get("code") or err.get("type") or "stream error")
    return str(err)


class OpenAIChatAdapter:
    """OpenAI chat-completions 兼容后端"""

    def __init__(self, http: Optional[HttpxClientManager] = None):
        self.http = http or http_client

    def _request(self, ctx: ProviderRequestContext, body: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "url": join_url(ctx.base_url, "chat/completions"),
            "headers": build_auth_headers(ctx.provider_type, ctx.api_key, ctx.headers),
            "json_body": apply_request_defaults(body, ctx.request_defaults),
            "secrets": ctx.secrets(),
        }

    async def _stream_events(self, ctx: ProviderRequestContext, body: Dict[str, Any], timeout_ms, label: str):
        source = self.http.stream_response("POST", timeout_ms=timeout_ms, label=label, **self._request(ctx, body))
        async for ev in iter_sse_events(source):
            if ev.done:
                return
            payload = ev.json()
            if not isinstance(payload, dict):
                continue
            # 部分兼容后端在 200 流里下发 {"error": {...}}
            if payload.get("error"):
                raise UpstreamHTTPError(
                    status=200, excerpt=redact_secrets(_stream_error_message(payload), ctx.secrets()), label=label
                )
            yield payload

    # ---------------- 非流式 ----------------

    async def _complete_text(self, ctx, model, system, messages, timeout_ms, max_tokens) -> str:
        body: Dict[str, Any] = {"model": model, "messages": as_openai_messages(system, messages), "stream": False}
        if max_tokens:
            body["max_tokens"] = int(max_tokens)
        payload = await self.http.send_json(
            "POST", timeout_ms=timeout_ms, label=f"{ctx.label} completeText", **self._request(ctx, body)
        )
        message = _first_choice(payload).get("message") or {}
        return openai_message_text(message.get("content"))

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
        body = {"model": model, "messages": as_openai_messages(system, messages), "stream": True}
        async for payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} streamText"):
            delta = _first_choice(payload).get("delta") or {}
            text = delta.get("content")
            if isinstance(text, str) and text:
                yield text

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

    def build_chat_body(self, model: str, req: CanonicalChatRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": build_openai_messages(req),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        tools = convert_openai_tools(req.tool_definitions)
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    async def _chat_stream(self, ctx, model, req, timeout_ms, tool_meta_by_name, support_tool_use_start):
        agg = StreamAggregator(tool_meta_by_name, support_tool_use_start)
        stop: Optional[str] = None
        body = self.build_chat_body(model, req)
        async for payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} chatStream"):
            usage = payload.get("usage")
            if isinstance(usage, dict):
                details = usage.get("prompt_tokens_details") if isinstance(usage.get("prompt_tokens_details"), dict) else {}
                agg.usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), details.get("cached_tokens"))

            choice = _first_choice(payload)
            delta = choice.get("delta") or {}
            for chunk in agg.thinking(delta.get("reasoning_content") or ""):
                yield chunk
            content = delta.get("content")
            for chunk in agg.text(content if isinstance(content, str) else ""):
                yield chunk

            for i, tc in enumerate(delta.get("tool_calls") or []):
                if not isinstance(tc, dict):
                    continue
                key = tc.get("index", i)
                fn = tc.get("function") if isinstance(tc.get("function"), dict) else {}
                for chunk in agg.begin_tool_use(key, tc.get("id") or "", fn.get("name") or ""):
                    yield chunk
                args = fn.get("arguments")
                if isinstance(args, str):
                    agg.append_tool_arguments(key, args)

            mapped = map_openai_finish_reason(choice.get("finish_reason"))
            if mapped and stop is None:
                stop = mapped

        log.debug(f"{ctx.label} chat stream finished stop={stop} tool_uses={agg.emitted_tool_uses}", tag="STREAM")
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
