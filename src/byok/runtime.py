# -*- coding: utf-8 -*-
"""
BYOK Runtime - 端点处理入口
===========================

宿主（编辑器扩展的 shim）对每次 callApi / callApiStream 调用这里：

- handle_call_api(endpoint, body, ...)        -> dict | None
- handle_call_api_stream(endpoint, body, ...) -> AsyncIterator[dict] | None

返回 None 表示该端点走 official 透传；disabled 端点返回空结果 / 空流。
所有返回值都是可以直接 JSON 序列化的 dict（snake_case 字段）。

错误策略：上游 / 配置错误原样抛出，由宿主决定如何展示；
只有历史压缩失败会被记录为 warning 并忽略，next_edit_loc 的 LLM 失败会回退到诊断基线。
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from config import get_default_upstream_timeout_ms, get_runtime_enabled
from log import log, set_request_id

from .cancellation import CancellationToken, clamp_timeout_ms
from .config import ByokConfig
from .errors import CancellationError
from .history import HistorySummaryCache, history_summary_cache, maybe_summarize_and_compact
from .normalize import normalize_canonical_request, normalize_endpoint, normalize_string, pick_field, read_feature_flag
from .prompts import build_messages_for_endpoint, parse_next_edit_loc_candidates, pick_num_results, pick_path
from .providers.models import MODELS_TIMEOUT_MS
from .providers.registry import chat_stream_by_provider, complete_text_by_provider, stream_text_by_provider
from .router import decide_route, format_byok_model_id, resolve_route_model
from .stream import collect_chat_stream, trace_async_iterator
from .tools_bridge import build_tool_meta_by_name
from .tools_context import ToolDefinitionsContext
from .types import CanonicalChatRequest, ChatChunk, Route, RouteMode, StopReason

__all__ = [
    "ByokRuntime",
    "CACHE_DELETE_MARKERS",
    "build_byok_model_list",
    "build_instruction_replacement_meta",
    "pick_next_edit_location_candidates",
    "merge_next_edit_loc_candidates",
]

CACHE_DELETE_MARKERS = ("delete", "remove", "archive")
SELECTION_HINT_CHARS = 400


# ====================== 结果构造 ======================

def _completion_result(text: str) -> Dict[str, Any]:
    return {"completion_items": [{"text": text}], "unknown_blob_names": [], "checkpoint_not_found": False}


def _text_result(text: str) -> Dict[str, Any]:
    return {"text": text, "unknown_blob_names": [], "checkpoint_not_found": False}


def _chat_result(text: str, nodes: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "text": text,
        "nodes": nodes or [],
        "unknown_blob_names": [],
        "checkpoint_not_found": False,
        "workspace_file_chunks": [],
    }


def _chunk_dict(chunk: ChatChunk) -> Dict[str, Any]:
    return chunk.model_dump(exclude_none=True)


def build_byok_model_list(config: ByokConfig) -> List[str]:
    """所有 provider 的 byok:<providerId>:<model>（default_model 在前，去重）"""
    out: List[str] = []
    for provider in config.providers:
        if not provider.id:
            continue
        for model in [provider.default_model, *provider.models]:
            model = normalize_string(model)
            if not model:
                continue
            mid = format_byok_model_id(provider.id, model)
            if mid not in out:
                out.append(mid)
    return out


def _get_models_result(config: ByokConfig) -> Dict[str, Any]:
    models = build_byok_model_list(config)
    default = models[0] if models else ""
    first = config.providers[0] if config.providers else None
    if first is not None and first.id:
        preferred_model = first.default_model or (first.models[0] if first.models else "")
        preferred = format_byok_model_id(first.id, preferred_model) if preferred_model else ""
        if preferred in models:
            default = preferred
    return {"default_model": default or "unknown", "models": [{"name": m} for m in models], "feature_flags": {}}


# ====================== instruction-stream 替换区间 ======================

def _text_field(body: Dict[str, Any], *keys: str) -> str:
    value = pick_field(body, *keys)
    return value.replace("\r\n", "\n") if isinstance(value, str) else ""


def _line_of(text: str, index: int) -> int:
    return 1 + text.count("\n", 0, max(0, index))


def _best_match_index(file_text: str, selected: str, prefix_hint: str, suffix_hint: str) -> int:
    """selected 在 file_text 中的位置；多处命中时用前后文提示挑选"""
    hits: List[int] = []
    start = file_text.find(selected)
    while start >= 0:
        hits.append(start)
        start = file_text.find(selected, start + 1)
    if not hits:
        return -1

    def score(idx: int) -> int:
        s = 0
        if prefix_hint and file_text[:idx].endswith(prefix_hint):
            s += 2
        if suffix_hint and file_text[idx + len(selected):].startswith(suffix_hint):
            s += 1
        return s

    return max(hits, key=lambda idx: (score(idx), -idx))


def _best_insertion_index(file_text: str, prefix_hint: str, suffix_hint: str) -> int:
    if prefix_hint:
        idx = file_text.rfind(prefix_hint)
        if idx >= 0:
            return idx + len(prefix_hint)
    if suffix_hint:
        idx = file_text.find(suffix_hint)
        if idx >= 0:
            return idx
    return 0


def build_instruction_replacement_meta(body: Any) -> Dict[str, Any]:
    """
    /instruction-stream 与 /smart-paste-stream 的首个 chunk：替换区间（1-based 行号）

    只使用请求体里的 target_file_content；没有文件内容时退化为按选区 / 纯插入处理。
    """
    b = body if isinstance(body, dict) else {}
    selected = _text_field(b, "selected_text", "selectedText")
    prefix = _text_field(b, "prefix")
    suffix = _text_field(b, "suffix")
    file_text = _text_field(b, "target_file_content", "targetFileContent")
    prefix_hint = prefix[-SELECTION_HINT_CHARS:] if prefix else ""
    suffix_hint = suffix[:SELECTION_HINT_CHARS] if suffix else ""

    if file_text and selected:
        idx = _best_match_index(file_text, selected, prefix_hint, suffix_hint)
        if idx >= 0:
            start_line = _line_of(file_text, idx)
            end_line = start_line + selected.rstrip("\n").count("\n")
            return {
                "replacement_start_line": max(1, start_line),
                "replacement_end_line": max(1, end_line),
                "replacement_old_text": selected,
            }

    insert_idx = _best_insertion_index(file_text, prefix_hint, suffix_hint) if file_text else 0
    insert_line = _line_of(file_text, insert_idx) if file_text else 1
    lines = file_text.split("\n") if file_text else []
    line_before = lines[insert_line - 2].rstrip() if 1 < insert_line <= len(lines) + 1 else ""
    return {
        "replacement_start_line": max(1, insert_line),
        "replacement_end_line": max(1, insert_line),
        "replacement_old_text": selected or f"PURE INSERTION AFTER LINE:{line_before}",
    }


# ====================== next_edit_loc ======================

def _line_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(0, n)


def _diagnostic_range(diag: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    rng = diag.get("range") if isinstance(diag.get("range"), dict) else {}
    start = rng.get("start")
    stop = rng.get("stop", rng.get("end"))
    start_line = _line_number(start.get("line") if isinstance(start, dict) else start)
    if start_line is None:
        start_line = _line_number(pick_field(diag, "line", "start_line", "startLine"))
    if start_line is None:
        return None, None
    stop_line = _line_number(stop.get("line") if isinstance(stop, dict) else stop)
    if stop_line is None:
        stop_line = _line_number(pick_field(diag, "end_line", "endLine"))
    return start_line, start_line if stop_line is None else max(start_line, stop_line)


class _CandidateList:
    """按 path:start:stop 去重的候选位置列表"""

    def __init__(self, limit: int):
        self.limit = limit
        self.items: List[Dict[str, Any]] = []
        self._seen = set()

    @property
    def full(self) -> bool:
        return len(self.items) >= self.limit

    def push(self, path: str, start: int, stop: int, source: str, score: float = 1) -> bool:
        path = normalize_string(path)
        if not path or self.full:
            return False
        stop = max(start, stop)
        key = f"{path}:{start}:{stop}"
        if key in self._seen:
            return False
        self._seen.add(key)
        self.items.append(
            {"item": {"path": path, "range": {"start": start, "stop": stop}}, "score": score, "debug_info": {"source": source}}
        )
        return True

    def push_candidate(self, candidate: Dict[str, Any]) -> bool:
        item = candidate.get("item") or {}
        rng = item.get("range") or {}
        return self.push(
            item.get("path", ""),
            rng.get("start", 0),
            rng.get("stop", 0),
            (candidate.get("debug_info") or {}).get("source", "unknown"),
            candidate.get("score", 1),
        )


def pick_next_edit_location_candidates(body: Any) -> List[Dict[str, Any]]:
    """诊断信息 -> 当前文件第 0 行 -> blobs 中的文件，依次补足 num_results 个候选"""
    b = body if isinstance(body, dict) else {}
    out = _CandidateList(pick_num_results(b))

    diags = b.get("diagnostics")
    for diag in diags if isinstance(diags, list) else []:
        if out.full:
            break
        if not isinstance(diag, dict):
            continue
        path = normalize_string(pick_field(diag, "path", "file_path", "filePath"))
        start, stop = _diagnostic_range(diag)
        if path and start is not None:
            out.push(path, start, stop, "diagnostic")

    path = pick_path(b)
    if path:
        out.push(path, 0, 0, "fallback:path")

    blobs = b.get("blobs")
    if isinstance(blobs, dict):
        for key in blobs:
            if out.full:
                break
            out.push(str(key), 0, 0, "fallback:blobs")
    return out.items


def merge_next_edit_loc_candidates(
    baseline: List[Dict[str, Any]], llm_candidates: List[Dict[str, Any]], max_results: int
) -> List[Dict[str, Any]]:
    """LLM 候选优先，基线补足，总数不超过 max_results"""
    out = _CandidateList(max(1, max_results))
    for candidate in [*llm_candidates, *baseline]:
        out.push_candidate(candidate)
    return out.items


# ====================== next-edit-stream ======================

def _next_edit_context(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    没有 prefix / suffix 时从 blobs 中的文件内容按 selection_begin_char / selection_end_char 切出上下文
    """
    path = pick_path(body)
    blob_name = normalize_string(pick_field(body, "blob_name", "blobName"))
    begin = _line_number(pick_field(body, "selection_begin_char", "selectionBeginChar"))
    end = _line_number(pick_field(body, "selection_end_char", "selectionEndChar"))
    prompt_body = dict(body)

    prefix, suffix = body.get("prefix"), body.get("suffix")
    if isinstance(prefix, str) and isinstance(suffix, str):
        selected = _text_field(body, "selected_text", "selectedText")
        begin = len(prefix) if begin is None else begin
    else:
        blobs = body.get("blobs") if isinstance(body.get("blobs"), dict) else {}
        text = blobs.get(blob_name) or blobs.get(path) or ""
        text = text if isinstance(text, str) else ""
        begin = min(len(text), begin or 0)
        end = min(len(text), max(begin, end if end is not None else begin))
        selected = text[begin:end]
        prompt_body.update(prefix=text[:begin], suffix=text[end:], selected_text=selected)
    end = begin + len(selected) if end is None else max(begin, end)
    return {
        "prompt_body": prompt_body,
        "path": path,
        "blob_name": blob_name,
        "char_start": begin,
        "char_end": end,
        "existing_code": selected,
    }


# ====================== Runtime ======================

class ByokRuntime:
    """
    BYOK 端点处理器

    Args:
        config: BYOK 配置
        tools_context: 捕获工具定义的上下文（默认新建一个）
        runtime_enabled: 总开关（默认读取 BYOK_RUNTIME_ENABLED）
        history_cache: 历史摘要缓存（默认全局缓存）
        default_timeout_ms: 调用方未传超时时使用（默认读取 BYOK_UPSTREAM_TIMEOUT_MS）
    """

    def __init__(
        self,
        config: ByokConfig,
        tools_context: Optional[ToolDefinitionsContext] = None,
        runtime_enabled: Optional[bool] = None,
        history_cache: Optional[HistorySummaryCache] = None,
        default_timeout_ms: Optional[int] = None,
    ):
        self.config = config
        self.tools_context = tools_context if tools_context is not None else ToolDefinitionsContext()
        self.runtime_enabled = get_runtime_enabled() if runtime_enabled is None else runtime_enabled
        self.history_cache = history_cache if history_cache is not None else history_summary_cache
        self.default_timeout_ms = default_timeout_ms or get_default_upstream_timeout_ms()

    # ---------- 公共辅助 ----------

    def _maybe_delete_history_cache(self, endpoint: str, body: Any) -> int:
        if not any(marker in endpoint.lower() for marker in CACHE_DELETE_MARKERS):
            return 0
        b = body if isinstance(body, dict) else {}
        conversation_id = normalize_string(pick_field(b, "conversation_id", "conversationId", "conversationID"))
        if not conversation_id:
            return 0
        deleted = self.history_cache.delete(conversation_id)
        if deleted:
            log.debug(f"history summary cache deleted conv={conversation_id} endpoint={endpoint}", tag="RUNTIME")
        return deleted

    async def _route(
        self, endpoint: str, body: Any, timeout_ms: int, cancel: Optional[CancellationToken]
    ) -> Route:
        raw = body if isinstance(body, dict) else {}
        set_request_id(normalize_string(pick_field(raw, "request_id", "requestId")))
        route = decide_route(self.config, endpoint, body, self.runtime_enabled)
        if route.needs_model_discovery:
            route = await resolve_route_model(
                route, timeout_ms=min(MODELS_TIMEOUT_MS, timeout_ms), cancel=cancel
            )
        return route

    def _capture_tools(self, req: CanonicalChatRequest, endpoint: str, route: Route) -> None:
        if not req.tool_definitions:
            return
        self.tools_context.capture(
            req.tool_definitions,
            source=endpoint,
            meta={
                "provider_id": route.provider.id,
                "provider_type": route.provider.type,
                "requested_model": route.requested_model or "",
                "conversation_id": req.conversation_id,
            },
        )

    async def _compact_history(
        self, req: CanonicalChatRequest, route: Route, timeout_ms: int, cancel: Optional[CancellationToken]
    ) -> None:
        try:
            await maybe_summarize_and_compact(
                self.config,
                req,
                requested_model=route.requested_model,
                fallback_provider=route.provider,
                fallback_model=route.model or "",
                timeout_ms=timeout_ms,
                cancel=cancel,
                cache=self.history_cache,
            )
        except CancellationError:
            raise
        except Exception as e:
            log.warning(f"history summary failed (ignored): {e}", tag="RUNTIME")

    async def _chat_chunks(
        self,
        endpoint: str,
        route: Route,
        body: Any,
        timeout_ms: int,
        cancel: Optional[CancellationToken],
    ) -> AsyncIterator[ChatChunk]:
        req = normalize_canonical_request(body)
        self._capture_tools(req, endpoint, route)
        log.debug(
            f"{endpoint} start provider={route.provider.label} model={route.model} conv={req.conversation_id or 'n/a'} "
            f"tools={len(req.tool_definitions)} history={len(req.chat_history)} msg_len={len(req.message)}",
            tag="RUNTIME",
        )
        if req.is_empty():
            yield ChatChunk(text="", stop_reason=StopReason.END_TURN)
            return

        await self._compact_history(req, route, timeout_ms, cancel)
        stream = chat_stream_by_provider(
            route.provider,
            route.model,
            req,
            timeout_ms=timeout_ms,
            cancel=cancel,
            tool_meta_by_name=build_tool_meta_by_name(req.tool_definitions),
            support_tool_use_start=read_feature_flag(req, "support_tool_use_start", "supportToolUseStart"),
        )
        async for chunk in stream:
            yield chunk

    async def _complete(
        self, endpoint: str, route: Route, body: Any, timeout_ms: int, cancel: Optional[CancellationToken]
    ) -> str:
        system, messages = build_messages_for_endpoint(endpoint, body)
        with log.timer(f"{endpoint} complete", tag="RUNTIME", provider=route.provider.label, model=route.model):
            return await complete_text_by_provider(
                route.provider, route.model, system, messages, timeout_ms=timeout_ms, cancel=cancel
            )

    async def _next_edit_loc(
        self, route: Route, body: Any, timeout_ms: int, cancel: Optional[CancellationToken]
    ) -> Dict[str, Any]:
        b = body if isinstance(body, dict) else {}
        limit = pick_num_results(b)
        baseline = pick_next_edit_location_candidates(b)
        fallback_path = pick_path(b) or (baseline[0]["item"]["path"] if baseline else "")

        llm_candidates: List[Dict[str, Any]] = []
        try:
            text = await self._complete("/next_edit_loc", route, b, timeout_ms, cancel)
            llm_candidates = parse_next_edit_loc_candidates(text, fallback_path=fallback_path, max_results=limit)
        except CancellationError:
            raise
        except Exception as e:
            log.warning(f"next_edit_loc llm fallback to diagnostics: {e}", tag="RUNTIME")

        candidates = merge_next_edit_loc_candidates(baseline, llm_candidates, limit) if llm_candidates else baseline
        return {"candidate_locations": candidates, "unknown_blob_names": [], "checkpoint_not_found": False}

    # ---------- callApi ----------

    async def handle_call_api(
        self,
        endpoint: str,
        body: Any,
        timeout_ms: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Returns:
            结果 dict；None 表示交给 official 透传

        Raises:
            ConfigurationError / UpstreamHTTPError / asyncio.TimeoutError / CancellationError
        """
        ep = normalize_endpoint(endpoint)
        if not ep:
            return None
        self._maybe_delete_history_cache(ep, body)
        if not self.runtime_enabled:
            return None

        t = clamp_timeout_ms(timeout_ms, self.default_timeout_ms)
        route = await self._route(ep, body, t, cancel)
        if route.mode == RouteMode.OFFICIAL:
            return None
        if route.mode == RouteMode.DISABLED:
            return {}

        if ep == "/get-models":
            return _get_models_result(self.config)

        if ep in ("/completion", "/chat-input-completion"):
            return _completion_result(await self._complete(ep, route, body, t, cancel))

        if ep == "/edit":
            return _text_result(await self._complete(ep, route, body, t, cancel))

        if ep == "/chat":
            with log.timer("/chat", tag="RUNTIME", provider=route.provider.label, model=route.model):
                collected = await collect_chat_stream(self._chat_chunks(ep, route, body, t, cancel))
            return _chat_result(collected.text, [n.model_dump(exclude_none=True) for n in collected.nodes])

        if ep == "/next_edit_loc":
            return await self._next_edit_loc(route, body, t, cancel)

        log.debug(f"{ep} has no byok handler, passing through", tag="RUNTIME")
        return None

    # ---------- callApiStream ----------

    async def handle_call_api_stream(
        self,
        endpoint: str,
        body: Any,
        timeout_ms: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[AsyncIterator[Dict[str, Any]]]:
        """
        Returns:
            dict 流；None 表示交给 official 透传；disabled 端点返回空流
        """
        ep = normalize_endpoint(endpoint)
        if not ep:
            return None
        self._maybe_delete_history_cache(ep, body)
        if not self.runtime_enabled:
            return None

        t = clamp_timeout_ms(timeout_ms, self.default_timeout_ms)
        route = await self._route(ep, body, t, cancel)
        if route.mode == RouteMode.OFFICIAL:
            return None
        if route.mode == RouteMode.DISABLED:
            return _empty_stream()

        label = f"{ep} provider={route.provider.label} model={route.model}"

        if ep == "/chat-stream":
            chunks = self._chat_chunks(ep, route, body, t, cancel)
            return trace_async_iterator(label, _map_chunks(chunks), tag="RUNTIME")

        if ep in ("/prompt-enhancer", "/generate-conversation-title", "/generate-commit-message-stream"):
            system, messages = build_messages_for_endpoint(ep, body)
            deltas = stream_text_by_provider(route.provider, route.model, system, messages, timeout_ms=t, cancel=cancel)
            return trace_async_iterator(label, _map_deltas(deltas), tag="RUNTIME")

        if ep in ("/instruction-stream", "/smart-paste-stream"):
            system, messages = build_messages_for_endpoint(ep, body)
            meta = build_instruction_replacement_meta(body)
            deltas = stream_text_by_provider(route.provider, route.model, system, messages, timeout_ms=t, cancel=cancel)
            return trace_async_iterator(label, _replacement_stream(meta, deltas), tag="RUNTIME")

        if ep == "/next-edit-stream":
            ctx = _next_edit_context(body if isinstance(body, dict) else {})
            suggested = await self._complete(ep, route, ctx["prompt_body"], t, cancel)
            return _single(
                {
                    "result": {
                        "suggested_edit": {
                            "path": ctx["path"] or ctx["blob_name"],
                            "blob_name": ctx["blob_name"],
                            "char_start": ctx["char_start"],
                            "char_end": ctx["char_end"],
                            "existing_code": ctx["existing_code"],
                            "suggested_code": suggested,
                        }
                    },
                    "unknown_blob_names": [],
                    "checkpoint_not_found": False,
                }
            )

        log.debug(f"{ep} has no byok stream handler, passing through", tag="RUNTIME")
        return None


async def _empty_stream() -> AsyncIterator[Dict[str, Any]]:
    return
    yield


async def _single(item: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
    yield item


async def _map_chunks(chunks: AsyncIterator[ChatChunk]) -> AsyncIterator[Dict[str, Any]]:
    async for chunk in chunks:
        yield _chunk_dict(chunk)


async def _map_deltas(deltas: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    async for delta in deltas:
        yield _chat_result(delta)


async def _replacement_stream(meta: Dict[str, Any], deltas: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    yield {"text": "", **meta}
    async for delta in deltas:
        if delta:
            yield {"text": delta, "replacement_text": delta}
