# -*- coding: utf-8 -*-
"""
Gemini generateContent 适配器（gemini_ai_studio）

- 非流式：POST {base_url}/models/{model}:generateContent?key=...
- 流式：  POST {base_url}/models/{model}:streamGenerateContent?alt=sse&key=...

functionCall 在单个事件里一次性给出（args 为对象），没有分片；
Gemini 一般不返回 call id，由聚合器生成。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..cancellation import CancellationToken, guard_stream, run_with_deadline
from ..messages import as_gemini_contents, build_gemini_contents
from ..sse import iter_sse_events
from ..stream import StreamAggregator, map_gemini_finish_reason
from ..tools_bridge import convert_gemini_tools
from ..types import CanonicalChatRequest, ChatChunk
from .http import HttpxClientManager, apply_request_defaults, build_auth_headers, http_client, join_url
from .interface import ProviderRequestContext

__all__ = ["GeminiAdapter", "gemini_model_path", "gemini_candidate_parts"]


def gemini_model_path(model: str) -> str:
    """模型名统一为 models/<name>"""
    m = (model or "").strip()
    return m if m.startswith("models/") else f"models/{m}"


def gemini_candidate_parts(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Returns: (candidates[0].content.parts, finishReason)"""
    if not isinstance(payload, dict):
        return [], None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return [], None
    cand = candidates[0]
    content = cand.get("content") if isinstance(cand.get("content"), dict) else {}
    parts = [p for p in content.get("parts") or [] if isinstance(p, dict)]
    return parts, cand.get("finishReason")


class GeminiAdapter:
    """Gemini AI Studio 后端"""

    def __init__(self, http: Optional[HttpxClientManager] = None):
        self.http = http or http_client

    def _request(self, ctx: ProviderRequestContext, model: str, body: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        action = "streamGenerateContent" if stream else "generateContent"
        params: Dict[str, str] = {}
        if stream:
            params["alt"] = "sse"
        # 自定义头里已给出鉴权时不再附加 ?key=
        if ctx.api_key and not ctx.has_auth_header():
            params["key"] = ctx.api_key
        return {
            "url": join_url(ctx.base_url, f"{gemini_model_path(model)}:{action}"),
            "headers": build_auth_headers(ctx.provider_type, ctx.api_key, ctx.headers),
            "json_body": apply_request_defaults(body, ctx.request_defaults),
            "params": params,
            "secrets": ctx.secrets(),
        }

    @staticmethod
    def _body(system: str, contents: List[Dict[str, Any]], max_tokens: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if max_tokens:
            body["generationConfig"] = {"maxOutputTokens": int(max_tokens)}
        return body

    async def _stream_payloads(self, ctx, model, body, timeout_ms, label: str):
        source = self.http.stream_response(
            "POST", timeout_ms=timeout_ms, label=label, **self._request(ctx, model, body, True)
        )
        async for ev in iter_sse_events(source):
            payload = ev.json()
            if isinstance(payload, dict):
                yield payload

    # ---------------- 非流式 ----------------

    async def _complete_text(self, ctx, model, system, messages, timeout_ms, max_tokens) -> str:
        system, contents = as_gemini_contents(system, messages)
        payload = await self.http.send_json(
            "POST",
            timeout_ms=timeout_ms,
            label=f"{ctx.label} completeText",
            **self._request(ctx, model, self._body(system, contents, max_tokens), False),
        )
        parts, _ = gemini_candidate_parts(payload)
        return "".join(p["text"] for p in parts if isinstance(p.get("text"), str) and not p.get("thought"))

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
        system, contents = as_gemini_contents(system, messages)
        body = self._body(system, contents)
        async for payload in self._stream_payloads(ctx, model, body, timeout_ms, f"{ctx.label} streamText"):
            parts, _ = gemini_candidate_parts(payload)
            for p in parts:
                if isinstance(p.get("text"), str) and p["text"] and not p.get("thought"):
                    yield p["text"]

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

    def build_chat_body(self, req: CanonicalChatRequest) -> Dict[str, Any]:
        system, contents = build_gemini_contents(req)
        body = self._body(system, contents)
        tools = convert_gemini_tools(req.tool_definitions)
        if tools:
            body["tools"] = tools
        return body

    async def _chat_stream(self, ctx, model, req, timeout_ms, tool_meta_by_name, support_tool_use_start):
        agg = StreamAggregator(tool_meta_by_name, support_tool_use_start)
        stop: Optional[str] = None
        call_index = 0
        body = self.build_chat_body(req)

        async for payload in self._stream_payloads(ctx, model, body, timeout_ms, f"{ctx.label} chatStream"):
            usage = payload.get("usageMetadata") if isinstance(payload.get("usageMetadata"), dict) else {}
            if usage:
                agg.usage(
                    usage.get("promptTokenCount"),
                    usage.get("candidatesTokenCount"),
                    usage.get("cachedContentTokenCount"),
                )
            parts, finish = gemini_candidate_parts(payload)
            for p in parts:
                fc = p.get("functionCall")
                if isinstance(fc, dict):
                    key = f"fc{call_index}"
                    call_index += 1
                    for chunk in agg.begin_tool_use(key, fc.get("id") or "", fc.get("name") or ""):
                        yield chunk
                    args = fc.get("args") if isinstance(fc.get("args"), dict) else {}
                    agg.set_tool_arguments(key, json.dumps(args, ensure_ascii=False))
                    for chunk in agg.complete_tool_use(key):
                        yield chunk
                elif isinstance(p.get("text"), str):
                    emit = agg.thinking if p.get("thought") else agg.text
                    for chunk in emit(p["text"]):
                        yield chunk
            mapped = map_gemini_finish_reason(finish)
            if mapped:
                stop = mapped

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
