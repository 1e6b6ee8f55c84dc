# -*- coding: utf-8 -*-
"""
Self Test Harness
=================

对一份 BYOK 配置做端到端体检：

全局阶段:
    captured tools -> capturedToolsAvailable -> capturedToolsSchemaSamples
    -> responsesStrictSchema -> responsesStrictSchema(capturedTools) -> toolsExec

Provider 阶段（按配置顺序逐个执行）:
    config -> models -> model -> completeText -> streamText -> nextEdit -> nextEditLoc
    -> chatStream -> realToolsSchema -> realToolsToolRoundtrip -> tools+multimodal -> toolRoundtrip

最后: historySummary（使用第一个配置完整的 provider）

每个探针互相隔离，失败只记录为 TestResult(ok=False)；
CancellationError 不会被降级，直接向外抛出。
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import get_self_test_timeout_ms
from log import format_ms, log

from ..cancellation import CancellationToken, clamp_timeout_ms, guard_stream, run_with_deadline
from ..config import ByokConfig, HistorySummaryConfig
from ..errors import CancellationError, ConfigurationError, ToolRoundTripFailure
from ..history import HistorySummaryCache, maybe_summarize_and_compact
from ..prompts import build_messages_for_endpoint, parse_next_edit_loc_candidates
from ..providers.models import MODELS_TIMEOUT_MS, fetch_provider_models
from ..providers.registry import (
    chat_stream_by_provider,
    complete_text_by_provider,
    provider_request_context,
    stream_text_by_provider,
)
from ..stream import CollectedStream, collect_chat_stream, extract_token_usage_from_nodes, extract_tool_uses_from_nodes
from ..tools_bridge import (
    build_tool_meta_by_name,
    convert_openai_responses_tools,
    convert_tools_by_provider_type,
    dedupe_tool_defs_by_name,
    summarize_tool_defs,
    validate_converted_tools_for_provider,
)
from ..tools_context import ToolDefinitionsContext, ToolExecutor
from ..types import (
    CapturedToolsSummary,
    ProviderConfig,
    ProviderType,
    SelfTestEntry,
    SelfTestEvent,
    SelfTestReport,
    StopReason,
    TestResult,
    ToolDefinition,
)
from .requests import (
    NEXT_EDIT_BODY,
    NEXT_EDIT_LOC_BODY,
    REAL_TOOLS_BATCH_SIZE,
    example_args_json,
    make_chat_request,
    make_exchange,
    make_image_node,
    make_tool_result_node,
    pick_real_tools_for_probe,
    random_id,
    self_test_tool_definitions,
    summarize_captured_tools_schemas,
    unpaired_tool_uses,
)
from .tools_exec import run_tools_exec

__all__ = ["run_self_test", "TOOL_DEFINITIONS_TIMEOUT_MS"]

TOOL_DEFINITIONS_TIMEOUT_MS = 20000
HISTORY_SUMMARY_CACHE_TTL_MS = 5 * 60 * 1000
ISSUES_PREVIEW = 3


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Run:
    """一次 Self Test 的共享状态"""

    run_id: str
    timeout_ms: int
    cancel: Optional[CancellationToken]
    on_event: Optional[Callable[[SelfTestEvent], None]]
    tool_defs: List[ToolDefinition] = field(default_factory=list)

    def emit(self, line: str) -> None:
        log.debug(line, tag="SELFTEST")
        if self.on_event is not None:
            self.on_event(SelfTestEvent(type="log", line=line))

    def check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    async def deadline(self, awaitable: Awaitable[Any], timeout_ms: Optional[int] = None) -> Any:
        return await run_with_deadline(awaitable, timeout_ms or self.timeout_ms, self.cancel)


ProbeOutcome = Tuple[bool, str]


async def _timed(
    run: _Run,
    tests: List[TestResult],
    label: str,
    name: str,
    probe: Callable[[], Awaitable[ProbeOutcome]],
) -> TestResult:
    """
    执行一个探针并记录 TestResult

    探针返回 (ok, detail)；抛出的异常记为失败（CancellationError 除外）。
    """
    run.check_cancel()
    start = time.perf_counter()
    try:
        ok, detail = await probe()
    except CancellationError:
        raise
    except Exception as e:
        ok, detail = False, str(e) or type(e).__name__
    ms = int((time.perf_counter() - start) * 1000)
    result = TestResult(name=name, ok=ok, ms=ms, detail=detail)
    tests.append(result)
    run.emit(f"[{label}] {name}: {'ok' if ok else 'FAIL'} ({format_ms(ms)}) {detail}".rstrip())
    return result


def _note(run: _Run, tests: List[TestResult], label: str, detail: str) -> None:
    tests.append(TestResult(name="note", ok=True, detail=detail))
    run.emit(f"[{label}] note: {detail}")


async def _collect(run: _Run, provider: ProviderConfig, model: str, req, **kwargs) -> CollectedStream:
    chunks = chat_stream_by_provider(provider, model, req, timeout_ms=run.timeout_ms, cancel=run.cancel, **kwargs)
    return await collect_chat_stream(guard_stream(chunks, run.cancel, run.timeout_ms))


# ====================== Provider 探针 ======================

class _ProviderProbes:
    def __init__(self, run: _Run, provider: ProviderConfig):
        self.run = run
        self.provider = provider
        self.label = provider.label
        self.entry = SelfTestEntry(provider_id=provider.id, provider_type=provider.type)
        self.fetched_models: List[str] = []
        self.model = ""

    async def timed(self, name: str, probe: Callable[[], Awaitable[ProbeOutcome]]) -> TestResult:
        return await _timed(self.run, self.entry.tests, self.label, name, probe)

    def note(self, detail: str) -> None:
        _note(self.run, self.entry.tests, self.label, detail)

    async def complete(self, system: str, messages: List[Dict[str, Any]]) -> str:
        r = self.run
        return await r.deadline(
            complete_text_by_provider(
                self.provider, self.model, system, messages, timeout_ms=r.timeout_ms, cancel=r.cancel
            )
        )

    # ---------- 基础 ----------

    async def config(self) -> ProbeOutcome:
        p = self.provider
        missing = [k for k, v in (("type", p.type), ("base_url", p.base_url)) if not v]
        if missing:
            return False, f"type/base_url/auth 未配置完整({','.join(missing)})"
        try:
            provider_request_context(p)
        except ConfigurationError as e:
            return False, f"type/base_url/auth 未配置完整({e})"
        return True, f"type={p.type} base_url={p.base_url}"

    async def models(self) -> ProbeOutcome:
        t = min(MODELS_TIMEOUT_MS, self.run.timeout_ms)
        discovery = await fetch_provider_models(self.provider, timeout_ms=t, cancel=self.run.cancel)
        self.fetched_models = list(discovery.models)
        preview = ",".join(self.fetched_models[:5])
        return True, f"models={len(self.fetched_models)}" + (f" first={preview}" if preview else "")

    async def pick_model(self) -> ProbeOutcome:
        p = self.provider
        self.model = p.default_model or (p.models[0] if p.models else "") or (
            self.fetched_models[0] if self.fetched_models else ""
        )
        if not self.model:
            return False, "no model (default_model / models / fetched models all empty)"
        return True, self.model

    async def complete_text(self) -> ProbeOutcome:
        text = await self.complete(
            "You are running a connectivity self-test. Output only: OK", [{"role": "user", "content": "OK"}]
        )
        text = (text or "").strip()
        if not text:
            return False, "empty output"
        return True, f"len={len(text)} preview={text[:40]}"

    async def stream_text(self) -> ProbeOutcome:
        r = self.run
        deltas = stream_text_by_provider(
            self.provider,
            self.model,
            "You are running a streaming self-test. Output only: OK",
            [{"role": "user", "content": "OK"}],
            timeout_ms=r.timeout_ms,
            cancel=r.cancel,
        )
        parts: List[str] = []
        async for delta in guard_stream(deltas, r.cancel, r.timeout_ms):
            parts.append(delta)
        text = "".join(parts).strip()
        if not text:
            return False, f"empty stream (chunks={len(parts)})"
        return True, f"chunks={len(parts)} len={len(text)}"

    async def next_edit(self) -> ProbeOutcome:
        system, messages = build_messages_for_endpoint("/next-edit-stream", NEXT_EDIT_BODY)
        text = (await self.complete(system, messages) or "").strip()
        if not text:
            return False, "empty suggestion"
        return True, f"len={len(text)}"

    async def next_edit_loc(self) -> ProbeOutcome:
        system, messages = build_messages_for_endpoint("/next_edit_loc", NEXT_EDIT_LOC_BODY)
        text = await self.complete(system, messages)
        candidates = parse_next_edit_loc_candidates(
            text, fallback_path=NEXT_EDIT_LOC_BODY["path"], max_results=NEXT_EDIT_LOC_BODY["num_results"]
        )
        # 模型不按格式输出时运行时会回退到启发式候选，这里只要求有输出
        if not (text or "").strip():
            return False, "empty output"
        return True, f"candidates={len(candidates)} len={len(text)}"

    async def chat_stream(self) -> ProbeOutcome:
        req = make_chat_request(
            "Self-test: reply with OK-chat (no markdown).", conversation_id=f"byok-selftest-{self.run.run_id}"
        )
        collected = await _collect(self.run, self.provider, self.model, req)
        usage = extract_token_usage_from_nodes(collected.nodes)
        detail = f"textLen={len(collected.text)} nodes={len(collected.nodes)}"
        if usage is not None:
            detail += f" tokens={usage.input_tokens or 0}/{usage.output_tokens or 0}"
            if usage.cache_read_input_tokens:
                detail += f" cached={usage.cache_read_input_tokens}"
        if not collected.text.strip():
            return False, "empty text " + detail
        return True, detail

    # ---------- 真实工具 ----------

    async def real_tools_schema(self) -> ProbeOutcome:
        defs = self.run.tool_defs
        if not defs:
            return True, "skipped (no captured tool_definitions yet)"
        defs = dedupe_tool_defs_by_name(defs)
        converted = convert_tools_by_provider_type(self.provider.type, defs)
        ok, issues = validate_converted_tools_for_provider(self.provider.type, converted)
        # gemini 把全部工具放在一个 functionDeclarations 组里
        count = sum(len(t.get("functionDeclarations") or []) for t in converted) if (
            self.provider.type == ProviderType.GEMINI_AI_STUDIO
        ) else len(converted)
        names = summarize_tool_defs(defs, max_names=6)["names"]
        detail = f"tools={len(defs)} converted={count} names={','.join(names)}"
        if not ok:
            detail += f" issues={len(issues)} first={'; '.join(issues[:ISSUES_PREVIEW])}"
        return ok and count == len(defs), detail

    async def _tool_batch(
        self, batch: List[ToolDefinition], index: int, total: int, stats: Dict[str, List[str]]
    ) -> None:
        r = self.run
        lines = [f"- {d.name} {example_args_json(d, self.provider.type)}" for d in batch]
        message = (
            f"Self-test (real tools) batch {index}/{total}. You MUST call ALL tools below exactly once, "
            "in any order, with the JSON arguments shown. Do not output normal text.\n" + "\n".join(lines)
        )
        conversation_id = f"byok-selftest-realtools-{r.run_id}"
        meta = build_tool_meta_by_name(batch)
        first = await _collect(
            r, self.provider, self.model,
            make_chat_request(message, conversation_id=conversation_id, tool_definitions=batch),
            tool_meta_by_name=meta,
        )
        tool_uses = extract_tool_uses_from_nodes(first.nodes)
        by_name = {}
        for tu in tool_uses:
            by_name.setdefault(tu.tool_name, tu)

        called: List[str] = []
        for d in batch:
            tu = by_name.get(d.name)
            if tu is None:
                stats["call_fail"].append(d.name)
                continue
            called.append(d.name)
            expected = meta.get(d.name) or {}
            got = {"mcp_server_name": tu.mcp_server_name or "", "mcp_tool_name": tu.mcp_tool_name or ""}
            if expected and any(expected.get(k, "") != got[k] for k in got):
                stats["meta_mismatch"].append(d.name)
        stats["call_ok"].extend(called)
        if not tool_uses:
            return

        results = [
            make_tool_result_node(i, tu.tool_use_id, json.dumps({"ok": True, "tool": tu.tool_name}))
            for i, tu in enumerate(tool_uses, 1)
        ]
        unpaired = unpaired_tool_uses(first.nodes, results)
        if unpaired:
            stats["roundtrip_error"].append(str(ToolRoundTripFailure(unpaired, "tool_use_id not paired")))
        exchange = make_exchange(f"selftest-{random_id()}", message, first.nodes, response_text=first.text)
        try:
            second = await _collect(
                r, self.provider, self.model,
                make_chat_request(
                    "", conversation_id=conversation_id, tool_definitions=batch,
                    chat_history=[exchange], request_nodes=results,
                ),
                tool_meta_by_name=meta,
            )
        except CancellationError:
            raise
        except Exception as e:
            stats["roundtrip_fail"].extend(called)
            stats["roundtrip_error"].append(str(e))
            return
        if not second.text.strip():
            stats["roundtrip_fail"].extend(called)
            stats["roundtrip_error"].append("empty text after tool_result")
            return
        for name in called:
            (stats["roundtrip_fail"] if name in unpaired else stats["roundtrip_ok"]).append(name)

    async def real_tools_roundtrip(self) -> ProbeOutcome:
        defs = dedupe_tool_defs_by_name(self.run.tool_defs)
        if not defs:
            return True, "skipped (no captured tool_definitions yet)"
        picked = pick_real_tools_for_probe(defs, len(defs))
        batches = [picked[i:i + REAL_TOOLS_BATCH_SIZE] for i in range(0, len(picked), REAL_TOOLS_BATCH_SIZE)]
        stats: Dict[str, List[str]] = {
            k: [] for k in ("call_ok", "call_fail", "roundtrip_ok", "roundtrip_fail", "roundtrip_error", "meta_mismatch")
        }
        for i, batch in enumerate(batches, 1):
            self.run.check_cancel()
            try:
                await self._tool_batch(batch, i, len(batches), stats)
            except CancellationError:
                raise
            except Exception as e:
                # 整批失败不影响后续批次
                stats["call_fail"].extend(d.name for d in batch)
                self.run.emit(f"[{self.label}] realTools batch {i}/{len(batches)} error: {e}")

        n = len(picked)
        detail = (
            f"tools={n}/{len(defs)} call={len(stats['call_ok'])}/{n} roundtrip={len(stats['roundtrip_ok'])}/{n}"
        )
        for key in ("call_fail", "roundtrip_fail", "meta_mismatch"):
            if stats[key]:
                detail += f" {key}={len(stats[key])} first={','.join(stats[key][:ISSUES_PREVIEW])}"
        if stats["roundtrip_error"]:
            detail += f" error={stats['roundtrip_error'][0][:160]}"
        ok = len(stats["roundtrip_ok"]) == n and not stats["meta_mismatch"]
        return ok, detail

    # ---------- 自带工具 + 多模态 ----------

    async def tools_multimodal(self) -> None:
        r = self.run
        message = (
            "Self-test tool call.\n"
            '1) You MUST call the tool echo_self_test with JSON arguments {"text":"hello"}.\n'
            "2) Do not output normal text; only call the tool."
        )
        conversation_id = f"byok-selftest-tools-{r.run_id}"
        tool_defs = self_test_tool_definitions()
        first: Dict[str, Any] = {}

        async def probe() -> ProbeOutcome:
            req = make_chat_request(
                message, conversation_id=conversation_id, tool_definitions=tool_defs, nodes=[make_image_node()]
            )
            collected = await _collect(r, self.provider, self.model, req)
            first["collected"] = collected
            tool_uses = [tu for tu in extract_tool_uses_from_nodes(collected.nodes) if tu.tool_name == "echo_self_test"]
            first["tool_uses"] = tool_uses
            if not tool_uses:
                return True, f"no tool call (stop_reason={collected.stop_reason}) textLen={len(collected.text)}"
            return True, f"tool_uses={len(tool_uses)} stop_reason={collected.stop_reason}"

        result = await self.timed("tools+multimodal", probe)
        tool_uses = first.get("tool_uses") or []
        if not result.ok or not tool_uses:
            self.entry.tests.append(TestResult(name="toolRoundtrip", ok=True, detail="skipped (no tool call)"))
            r.emit(f"[{self.label}] toolRoundtrip: skipped (no tool call)")
            return
        collected = first["collected"]
        if collected.stop_reason != StopReason.TOOL_USE_REQUESTED:
            self.note(f"stop_reason={collected.stop_reason} (expected {StopReason.TOOL_USE_REQUESTED})")

        results = [make_tool_result_node(i, tu.tool_use_id, '{"ok":true}') for i, tu in enumerate(tool_uses, 1)]
        missing = unpaired_tool_uses(collected.nodes, results)

        async def roundtrip() -> ProbeOutcome:
            if missing:
                raise ToolRoundTripFailure(missing, "tool_use_id not paired")
            exchange = make_exchange(f"selftest-{random_id()}", message, collected.nodes, response_text=collected.text)
            req = make_chat_request(
                "Tool result received. Reply with OK-tool.",
                conversation_id=conversation_id,
                tool_definitions=tool_defs,
                chat_history=[exchange],
                request_nodes=results,
            )
            second = await _collect(r, self.provider, self.model, req)
            if not second.text.strip():
                return False, f"empty text after tool_result (tool={tool_uses[0].tool_name})"
            return True, f"textLen={len(second.text)}"

        await self.timed("toolRoundtrip", roundtrip)

    async def run_all(self) -> SelfTestEntry:
        start = time.perf_counter()
        self.run.emit(f"[{self.label}] start")
        try:
            if not (await self.timed("config", self.config)).ok:
                return self.entry
            await self.timed("models", self.models)
            if not (await self.timed("model", self.pick_model)).ok:
                return self.entry
            self.entry.model = self.model
            await self.timed("completeText", self.complete_text)
            await self.timed("streamText", self.stream_text)
            await self.timed("nextEdit", self.next_edit)
            await self.timed("nextEditLoc", self.next_edit_loc)
            await self.timed("chatStream", self.chat_stream)
            await self.timed("realToolsSchema", self.real_tools_schema)
            await self.timed("realToolsToolRoundtrip", self.real_tools_roundtrip)
            await self.tools_multimodal()
            return self.entry
        finally:
            self.entry.ok = all(t.ok for t in self.entry.tests)
            self.entry.ms_total = int((time.perf_counter() - start) * 1000)
            self.run.emit(f"[{self.label}] done ok={str(self.entry.ok).lower()} ({format_ms(self.entry.ms_total)})")


# ====================== 全局探针 ======================

async def _load_captured_tools(
    run: _Run, tools_context: ToolDefinitionsContext, executor: Optional[ToolExecutor]
) -> Optional[CapturedToolsSummary]:
    last = tools_context.get_last()
    if last is None and executor is not None:
        try:
            raw = await run.deadline(
                executor.get_tool_definitions(), min(TOOL_DEFINITIONS_TIMEOUT_MS, run.timeout_ms)
            )
            last = tools_context.capture(raw, source="selftest:tool_executor")
        except CancellationError:
            raise
        except Exception as e:
            run.emit(f"[captured tools] failed to fetch tool definitions from executor: {e}")
    if last is None:
        run.emit("[captured tools] none")
        return None

    run.tool_defs = list(last.tool_definitions)
    summary = summarize_tool_defs(run.tool_defs)
    names_preview = ",".join(summary["names"]) + (",…" if summary["names_truncated"] else "")
    age_ms = last.age_ms()
    run.emit(f"[captured tools] count={last.count} source={last.source or 'n/a'} age={format_ms(age_ms)} names={names_preview}")
    return CapturedToolsSummary(
        count=last.count,
        captured_at_ms=last.captured_at_ms,
        age_ms=age_ms,
        meta=dict(last.meta),
        source=last.source,
        names_preview=names_preview,
    )


def _strict_issues_detail(issues: List[str]) -> str:
    return f"issues={len(issues)} first={'; '.join(issues[:ISSUES_PREVIEW])}"


async def _responses_strict_schema(run: _Run) -> ProbeOutcome:
    tool = ToolDefinition(
        name="schema_self_test",
        description="strict schema self-test",
        input_schema={
            "type": "object",
            "properties": {"a": {"type": "string"}, "insert_line_1": {"type": "integer"}},
            "required": ["a"],
        },
    )
    converted = convert_openai_responses_tools([tool])
    params = converted[0]["parameters"] if converted else {}
    props = sorted((params.get("properties") or {}).keys())
    additional = params.get("additionalProperties")
    required_ok = sorted(params.get("required") or []) == props
    run.emit(f"[responses strict schema] additionalProperties={additional} required_ok={required_ok} props={','.join(props)}")
    ok, issues = validate_converted_tools_for_provider(ProviderType.OPENAI_RESPONSES, converted)
    if not ok:
        return False, _strict_issues_detail(issues)
    return additional is False and required_ok, f"additionalProperties={additional} required_ok={required_ok}"


async def _responses_strict_captured(run: _Run) -> ProbeOutcome:
    if not run.tool_defs:
        return True, "skipped (no captured tool_definitions yet)"
    converted = convert_openai_responses_tools(run.tool_defs)
    ok, issues = validate_converted_tools_for_provider(ProviderType.OPENAI_RESPONSES, converted)
    if not ok:
        return False, f"tools={len(converted)} " + _strict_issues_detail(issues)
    return True, f"tools={len(converted)}"


def _pick_history_provider(config: ByokConfig) -> Optional[Tuple[ProviderConfig, str]]:
    for provider in config.providers:
        try:
            provider_request_context(provider)
        except ConfigurationError:
            continue
        model = provider.default_model or (provider.models[0] if provider.models else "")
        if model:
            return provider, model
    return None


async def _history_summary(run: _Run, config: ByokConfig) -> ProbeOutcome:
    target = _pick_history_provider(config)
    if target is None:
        return True, "skipped (no provider with complete config and model)"
    provider, model = target
    forced = config.model_copy(
        update={
            "history_summary": HistorySummaryConfig(
                enabled=True,
                provider_id=provider.id,
                model=model,
                trigger_on_history_size_chars=2000,
                history_tail_size_chars_to_exclude=0,
                min_tail_exchanges=2,
                max_tokens=256,
                timeout_seconds=max(5, run.timeout_ms // 1000),
                cache_ttl_ms=HISTORY_SUMMARY_CACHE_TTL_MS,
            )
        }
    )
    cache = HistorySummaryCache()
    conversation_id = f"byok-selftest-history-{run.run_id}"

    def fresh_request():
        history = [
            make_exchange(f"h{i}", f"[{i}] " + "x" * 2000, [], response_text="y" * 2000) for i in range(6)
        ]
        return make_chat_request("continue", conversation_id=conversation_id, chat_history=history)

    outcomes: List[bool] = []
    kept = 0
    for _ in range(2):
        req = fresh_request()
        outcomes.append(
            await maybe_summarize_and_compact(
                forced, req, fallback_provider=provider, fallback_model=model,
                timeout_ms=run.timeout_ms, cancel=run.cancel, cache=cache,
            )
        )
        kept = len(req.chat_history)
    detail = f"provider={provider.id} model={model} first={outcomes[0]} second={outcomes[1]} kept={kept} cached={len(cache)}"
    return all(outcomes), detail


# ====================== 入口 ======================

async def run_self_test(
    config: ByokConfig,
    *,
    tools_context: ToolDefinitionsContext,
    tool_executor: Optional[ToolExecutor] = None,
    workspace_root: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
    on_event: Optional[Callable[[SelfTestEvent], None]] = None,
) -> SelfTestReport:
    """
    运行完整 Self Test

    Args:
        config: BYOK 配置
        tools_context: 最近捕获的工具定义（为空时从 tool_executor 拉取并回写）
        tool_executor: 宿主注入的工具执行能力；为 None 时 toolsExec 失败
        workspace_root: toolsExec 的工作目录
        timeout_ms: 单次上游调用超时（非法值回退到 get_self_test_timeout_ms()）
        cancel: 取消令牌
        on_event: 接收 log / done 事件

    Raises:
        CancellationError: 运行被取消
    """
    run = _Run(
        run_id=random_id(),
        timeout_ms=clamp_timeout_ms(timeout_ms, get_self_test_timeout_ms()),
        cancel=cancel,
        on_event=on_event,
    )
    report = SelfTestReport(run_id=run.run_id, started_at_ms=_now_ms())
    tests = report.global_.tests
    run.emit("Self Test started.")

    report.global_.captured_tools = await _load_captured_tools(run, tools_context, tool_executor)

    async def tools_available() -> ProbeOutcome:
        if not run.tool_defs:
            return False, "no captured tool_definitions (run a chat in Agent mode first, or inject a tool executor)"
        return True, f"tools={len(run.tool_defs)}"

    async def schema_samples() -> ProbeOutcome:
        if not run.tool_defs:
            return True, "skipped (no captured tool_definitions yet)"
        s = summarize_captured_tools_schemas(run.tool_defs)
        detail = f"sampleable={s['sample_ok']}/{s['tool_count']} mcpMeta={s['with_mcp_meta']}"
        if s["sample_failed_names"]:
            detail += " failed=" + ",".join(s["sample_failed_names"]) + (",…" if s["sample_failed_truncated"] else "")
        return s["sample_ok"] == s["tool_count"], detail

    async def tools_exec() -> ProbeOutcome:
        summary = await run_tools_exec(run.tool_defs, tool_executor, workspace_root, cancel=run.cancel, emit=run.emit)
        report.global_.tool_exec = summary
        return summary.ok, summary.detail

    await _timed(run, tests, "global", "capturedToolsAvailable", tools_available)
    await _timed(run, tests, "global", "capturedToolsSchemaSamples", schema_samples)
    await _timed(run, tests, "global", "responsesStrictSchema", lambda: _responses_strict_schema(run))
    await _timed(run, tests, "global", "responsesStrictSchema(capturedTools)", lambda: _responses_strict_captured(run))
    await _timed(run, tests, "global", "toolsExec", tools_exec)

    if not config.providers:
        run.emit("no providers configured")
    for provider in config.providers:
        run.check_cancel()
        report.providers.append(await _ProviderProbes(run, provider).run_all())

    await _timed(run, tests, "global", "historySummary", lambda: _history_summary(run, config))

    report.ok = all(t.ok for t in tests) and all(p.ok for p in report.providers)
    report.finished_at_ms = _now_ms()
    run.emit(f"Self Test finished. ok={str(report.ok).lower()}")
    if on_event is not None:
        on_event(SelfTestEvent(type="done", report=report))
    return report
