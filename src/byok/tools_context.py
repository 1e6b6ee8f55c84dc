# -*- coding: utf-8 -*-
"""
工具定义上下文与工具执行能力接口

ToolDefinitionsContext 保存"最近一次捕获"的工具定义集合：
- /chat-stream 请求带来的 tool_definitions 会被 capture 进来
- Self Test 在没有捕获时通过 ToolExecutor.get_tool_definitions() 拉取，并回写

它是显式对象（由 runtime / self-test 传递），不是模块级全局；
策略为 last-write-wins，可随时 clear。
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .cancellation import CancellationToken
from .tools_bridge import coerce_tool_definitions, dedupe_tool_defs_by_name
from .types import ToolDefinition

__all__ = [
    "CapturedToolDefinitions",
    "ToolDefinitionsContext",
    "ToolExecutor",
    "ToolCallContext",
    "ToolCallResult",
    "coerce_tool_call_result",
]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CapturedToolDefinitions:
    """一次捕获的快照"""

    tool_definitions: List[ToolDefinition]
    captured_at_ms: int
    source: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.tool_definitions)

    def age_ms(self, now_ms: Optional[int] = None) -> int:
        return max(0, (now_ms if now_ms is not None else _now_ms()) - self.captured_at_ms)


class ToolDefinitionsContext:
    """
    最近一次捕获的工具定义（线程安全，last-write-wins）

    用法:
        ctx = ToolDefinitionsContext()
        ctx.capture(req.tool_definitions, source="chat-stream")
        last = ctx.get_last()
        ctx.clear()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Optional[CapturedToolDefinitions] = None

    def capture(
        self,
        tool_definitions: Any,
        source: str = "",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[CapturedToolDefinitions]:
        """
        替换当前快照；去重后为空的列表不会覆盖已有快照

        Args:
            tool_definitions: ToolDefinition 列表，或待解析的原始 dict 列表

        Returns:
            新快照；输入为空时返回 None
        """
        defs = _as_tool_definitions(tool_definitions)
        if not defs:
            return None
        snapshot = CapturedToolDefinitions(
            tool_definitions=defs,
            captured_at_ms=_now_ms(),
            source=source,
            meta=dict(meta or {}),
        )
        with self._lock:
            self._last = snapshot
        return snapshot

    replace = capture

    def get_last(self) -> Optional[CapturedToolDefinitions]:
        with self._lock:
            return self._last

    def clear(self) -> None:
        with self._lock:
            self._last = None


def _as_tool_definitions(value: Any) -> List[ToolDefinition]:
    if not isinstance(value, list):
        return []
    if all(isinstance(v, ToolDefinition) for v in value):
        return dedupe_tool_defs_by_name(value)
    return coerce_tool_definitions(value)


# ====================== 工具执行能力 ======================

@dataclass
class ToolCallContext:
    """一次工具调用的上下文"""

    conversation_id: str
    request_id: str = ""
    tool_use_id: str = ""
    workspace_root: str = ""
    # 宿主执行工具时应在令牌触发后尽快返回
    cancel: Optional[CancellationToken] = None


@dataclass
class ToolCallResult:
    text: str = ""
    is_error: bool = False
    # 工具返回的其他字段（terminal_id / reference_id / plan 等）
    extra: Dict[str, Any] = field(default_factory=dict)


def coerce_tool_call_result(res: Any) -> ToolCallResult:
    """把 ToolExecutor 返回的 dict / str / ToolCallResult 统一成 ToolCallResult"""
    if isinstance(res, ToolCallResult):
        return res
    if isinstance(res, str):
        return ToolCallResult(text=res)
    if isinstance(res, dict):
        text = res.get("text")
        is_error = res.get("is_error", res.get("isError", False))
        extra = {k: v for k, v in res.items() if k not in ("text", "is_error", "isError")}
        return ToolCallResult(text="" if text is None else str(text), is_error=bool(is_error), extra=extra)
    return ToolCallResult(text="" if res is None else str(res))


@runtime_checkable
class ToolExecutor(Protocol):
    """
    宿主注入的工具执行能力

    必需:
        get_tool_definitions() -> List[ToolDefinition | dict]
        call_tool(name, input, context) -> ToolCallResult | dict | str

    可选（用 getattr 探测）:
        check_tool_call_safe(name, input) -> bool   安全闸门，返回 False 视为被策略拦截
        task_manager                                 tasklist 工具需要的根任务管理器，
                                                     提供 get_root_task_uuid / create_new_task_list
    """

    async def get_tool_definitions(self) -> List[Any]:
        ...

    async def call_tool(self, name: str, input: Dict[str, Any], context: ToolCallContext) -> Any:
        ...
