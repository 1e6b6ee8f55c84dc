# -*- coding: utf-8 -*-
"""
取消令牌与按调用的超时控制

- CancellationToken: 基于 asyncio.Event 的协作式取消
- run_with_deadline: 让一次 await 同时受 deadline 与取消令牌约束
- guard_stream: 让惰性流在下一个挂起点响应取消 / 超时

超时是按调用传入的毫秒数，没有全局 deadline。超时抛 asyncio.TimeoutError，
取消抛 CancellationError，两者互不混淆。
"""

import asyncio
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Optional, TypeVar

from .errors import CancellationError

__all__ = [
    "CancellationToken",
    "run_with_deadline",
    "guard_stream",
    "clamp_timeout_ms",
]

T = TypeVar("T")

_STREAM_DONE = object()


class CancellationToken:
    """协作式取消令牌，一个 Self Test run 或一次上游请求共用一个"""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()


def clamp_timeout_ms(timeout_ms: Any, default_ms: int, cap_ms: Optional[int] = None) -> int:
    """非法值回退到 default_ms；给了 cap_ms 时取 min(timeout, cap)"""
    try:
        value = int(float(timeout_ms))
    except (TypeError, ValueError):
        value = default_ms
    if value <= 0:
        value = default_ms
    if cap_ms is not None:
        value = min(value, cap_ms)
    return value


async def run_with_deadline(
    awaitable: Awaitable[T],
    timeout_ms: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> T:
    """
    等待 awaitable，直到完成、超时或被取消（先到者为准）

    Raises:
        CancellationError: 令牌被触发
        asyncio.TimeoutError: 超过 timeout_ms
    """
    if cancel is not None and cancel.cancelled:
        # 丢弃尚未调度的协程，避免 "never awaited" 警告
        close = getattr(awaitable, "close", None)
        if callable(close):
            close()
        cancel.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    timeout = timeout_ms / 1000.0 if timeout_ms is not None and timeout_ms > 0 else None
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel is not None and cancel.cancelled:
        raise CancellationError(cancel.reason or "aborted")
    raise asyncio.TimeoutError(f"timeout after {int(timeout_ms or 0)}ms")


async def _next_or_done(iterator: AsyncIterator[T]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _STREAM_DONE


async def guard_stream(
    source: AsyncIterable[T],
    cancel: Optional[CancellationToken] = None,
    timeout_ms: Optional[float] = None,
) -> AsyncIterator[T]:
    """
    包装一个异步流：整体 deadline 为 timeout_ms，每次取下一个元素都会与取消令牌赛跑。

    退出时（正常结束、异常或调用方提前 aclose）都会关闭底层流。
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0 if timeout_ms else None
    iterator = source.__aiter__()
    try:
        while True:
            remaining_ms = None
            if deadline is not None:
                remaining_ms = (deadline - loop.time()) * 1000.0
                if remaining_ms <= 0:
                    raise asyncio.TimeoutError(f"stream timeout after {int(timeout_ms)}ms")
            item = await run_with_deadline(_next_or_done(iterator), remaining_ms, cancel)
            if item is _STREAM_DONE:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
