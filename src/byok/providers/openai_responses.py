# -*- coding: utf-8 -*-
"""
OpenAI responses 适配器（openai_responses）

POST {base_url}/responses
- 请求：instructions + input[]（message / function_call / function_call_output），
  tools 为 strict 模式，发送前做 strict 校验
- 非流式：output_text 或 output[].content[].text
- 流式事件：
    response.output_text.delta              文本增量
    response.reasoning_summary_text.delta   思考摘要
    response.output_item.added              function_call 开始（id / call_id / name）
    response.function_call_arguments.delta  参数分片（item_id）
    response.function_call_arguments.done   完整参数
    response.output_item.done               function_call 完成
    response.completed / response.incomplete 用量与停止原因
    response.failed / error                 上游错误
"""

from typing import Any, AsyncIterator, Dict, List, Optional

from ..cancellation import CancellationToken, guard_stream, run_with_deadline
from ..errors import UpstreamHTTPError, redact_secrets
from ..messages import as_openai_responses_input, build_openai_responses_input
from ..sse import iter_sse_events
from ..stream import StreamAggregator, map_openai_finish_reason
from ..tools_bridge import convert_openai_responses_tools, ensure_strict_tools
from ..types import CanonicalChatRequest, ChatChunk, ProviderType, StopReason
from .http import HttpxClientManager, apply_request_defaults, build_auth_headers, http_client, join_url
from .interface import ProviderRequestContext

__all__ = ["OpenAIResponsesAdapter", "responses_output_text"]


def responses_output_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    if isinstance(payload.get("output_text"), str):
        return payload["output_text"]
    parts: List[str] = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for c in item.get("content") or []:
            if isinstance(c, dict) and c.get("type") in ("output_text", "text") and isinstance(c.get("text"), str):
                parts.append(c["text"])
    return "".join(parts)


def _stream_error_message(payload: Dict[str, Any]) -> str:
    err = payload.get("error")
    if not isinstance(err, dict):
        resp = payload.get("response") if isinstance(payload.get("response"), dict) else {}
        err = resp.get("error") if isinstance(resp.get("error"), dict) else {}
    return str(err.get("message") or err.get("code") or payload.get("type") or "stream error")


class OpenAIResponsesAdapter:
    """OpenAI responses 后端"""

    def __init__(self, http: Optional[HttpxClientManager] = None):
        self.http = http or http_client

    def _request(self, ctx: ProviderRequestContext, body: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "url": join_url(ctx.base_url, "responses"),
            "headers": build_auth_headers(ctx.provider_type, ctx.api_key, ctx.headers),
            "json_body": apply_request_defaults(body, ctx.request_defaults),
            "secrets": ctx.secrets(),
        }

    @staticmethod
    def _body(model: str, instructions: str, items: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": model, "input": items, "stream": stream, "store": False}
        if instructions:
            body["instructions"] = instructions
        return body

    async def _stream_events(self, ctx: ProviderRequestContext, body: Dict[str, Any], timeout_ms, label: str):
        source = self.http.stream_response("POST", timeout_ms=timeout_ms, label=label, **self._request(ctx, body))
        async for ev in iter_sse_events(source):
            if ev.done:
                return
            payload = ev.json()
            if not isinstance(payload, dict):
                continue
            kind = payload.get("type") or ev.event
            if kind in ("error", "response.failed"):
                raise UpstreamHTTPError(
                    status=200, excerpt=redact_secrets(_stream_error_message(payload), ctx.secrets()), label=label
                )
            yield kind, payload

    # ---------------- 非流式 ----------------

    async def _complete_text(self, ctx, model, system, messages, timeout_ms, max_tokens) -> str:
        instructions, items = as_openai_responses_input(system, messages)
        body = self._body(model, instructions, items, False)
        if max_tokens:
            body["max_output_tokens"] = int(max_tokens)
        payload = await self.http.send_json(
            "POST", timeout_ms=timeout_ms, label=f"{ctx.label} completeText", **self._request(ctx, body)
        )
        return responses_output_text(payload)

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
        instructions, items = as_openai_responses_input(system, messages)
        body = self._body(model, instructions, items, True)
        async for kind, payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} streamText"):
            if kind == "response.output_text.delta" and isinstance(payload.get("delta"), str) and payload["delta"]:
                yield payload["delta"]

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
        """
        Raises:
            SchemaViolation: 转换后的工具不满足 strict 模式
        """
        instructions, items = build_openai_responses_input(req)
        body = self._body(model, instructions, items, True)
        tools = convert_openai_responses_tools(req.tool_definitions)
        if tools:
            ensure_strict_tools(ProviderType.OPENAI_RESPONSES, tools)
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    async def _chat_stream(self, ctx, model, req, timeout_ms, tool_meta_by_name, support_tool_use_start):
        agg = StreamAggregator(tool_meta_by_name, support_tool_use_start)
        stop: Optional[str] = None
        body = self.build_chat_body(model, req)

        def item_key(payload: Dict[str, Any], item: Optional[Dict[str, Any]] = None) -> str:
            if item and item.get("id"):
                return str(item["id"])
            return str(payload.get("item_id") or payload.get("output_index", 0))

        async for kind, payload in self._stream_events(ctx, body, timeout_ms, f"{ctx.label} chatStream"):
            if kind == "response.output_text.delta":
                for chunk in agg.text(payload.get("delta") or ""):
                    yield chunk
            elif kind == "response.reasoning_summary_text.delta":
                for chunk in agg.thinking(payload.get("delta") or ""):
                    yield chunk
            elif kind in ("response.output_item.added", "response.output_item.done"):
                item = payload.get("item") if isinstance(payload.get("item"), dict) else {}
                if item.get("type") != "function_call":
                    continue
                key = item_key(payload, item)
                for chunk in agg.begin_tool_use(key, item.get("call_id") or "", item.get("name") or ""):
                    yield chunk
                if kind == "response.output_item.done":
                    if isinstance(item.get("arguments"), str) and item["arguments"]:
                        agg.set_tool_arguments(key, item["arguments"])
                    for chunk in agg.complete_tool_use(key):
                        yield chunk
            elif kind == "response.function_call_arguments.delta":
                agg.append_tool_arguments(item_key(payload), payload.get("delta") or "")
            elif kind == "response.function_call_arguments.done":
                if isinstance(payload.get("arguments"), str):
                    agg.set_tool_arguments(item_key(payload), payload["arguments"])
            elif kind in ("response.completed", "response.incomplete"):
                resp = payload.get("response") if isinstance(payload.get("response"), dict) else {}
                usage = resp.get("usage") if isinstance(resp.get("usage"), dict) else {}
                details = usage.get("input_tokens_details") if isinstance(usage.get("input_tokens_details"), dict) else {}
                agg.usage(usage.get("input_tokens"), usage.get("output_tokens"), details.get("cached_tokens"))
                if kind == "response.incomplete":
                    reason = (resp.get("incomplete_details") or {}).get("reason")
                    stop = map_openai_finish_reason(reason) or StopReason.MAX_TOKENS
                else:
                    stop = StopReason.END_TURN

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
