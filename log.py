"""
BYOK 日志模块

控制台彩色输出 + 可选 JSON 行 + 可选文件落盘，另带请求级 request_id 与耗时日志。

级别与颜色：
- DEBUG:    灰色 - 流/探针细节
- INFO:     白色 - 一般信息
- ROUTE:    青色 - 路由决策 (official / byok / disabled)
- SUCCESS:  绿色 - 上游调用成功
- FALLBACK: 黄色 - 降级 (模型列表 URL 回退、默认模型回退、跳过历史压缩)
- PERF:     紫色 - 耗时
- WARNING:  橙色
- ERROR:    红色
- CRITICAL: 红色加粗

环境变量：
- LOG_LEVEL: 阈值（默认 info）
- LOG_FORMAT=json: 控制台输出 JSON 行
- LOG_FILE: 文本日志文件（默认 byok.log，空字符串表示不写文件）

extra 字段里的凭据（api_key / authorization / x-api-key 等）在输出前统一打码。
"""

import contextvars
import inspect
import json
import os
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional


class Colors:
    """ANSI 颜色代码"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    WHITE = "\033[37m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_CYAN = "\033[96m"
    BRIGHT_MAGENTA = "\033[95m"


def _supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR"):
        return True
    if sys.platform == "win32":
        return os.getenv("WT_SESSION") is not None
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled = _supports_color()

LOG_LEVELS = {
    "debug": 0,
    "info": 1,
    "route": 1,
    "success": 1,
    "fallback": 2,
    "perf": 2,
    "warning": 3,
    "error": 4,
    "critical": 5,
}

LOG_STYLES = {
    "debug":    (Colors.DIM + Colors.WHITE, "DEBUG"),
    "info":     (Colors.WHITE, "INFO"),
    "route":    (Colors.BRIGHT_CYAN, "ROUTE"),
    "success":  (Colors.BRIGHT_GREEN, "SUCCESS"),
    "fallback": (Colors.BRIGHT_YELLOW, "FALLBACK"),
    "perf":     (Colors.BRIGHT_MAGENTA, "PERF"),
    "warning":  (Colors.YELLOW + Colors.BOLD, "WARNING"),
    "error":    (Colors.RED, "ERROR"),
    "critical": (Colors.BRIGHT_RED + Colors.BOLD, "CRITICAL"),
}

# extra 中这些 key 的值只输出掩码
SENSITIVE_KEYS = frozenset({
    "api_key", "apikey", "key", "authorization", "x-api-key", "x-goog-api-key", "api-key", "token",
})

_file_lock = threading.Lock()
_file_sink_broken = False

# asyncio 下每个 task 拥有独立的上下文副本
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "byok_request_id", default=None
)


def set_request_id(request_id: Optional[str]) -> str:
    """绑定当前上下文的 request_id；为空时生成一个 8 位短 id 并返回"""
    rid = (request_id or "").strip() or uuid.uuid4().hex[:8]
    _request_id_var.set(rid)
    return rid


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


def clear_request_id():
    _request_id_var.set(None)


def format_ms(ms: Any) -> str:
    """把毫秒数格式化为 `123ms`，非法值返回 `n/a`"""
    try:
        value = float(ms)
    except (TypeError, ValueError):
        return "n/a"
    if value < 0 or value != value:
        return "n/a"
    return f"{int(value)}ms"


def mask_secret(value: Any) -> str:
    """保留末 4 位：sk-abcdef123456 -> ***3456"""
    s = str(value or "")
    if len(s) <= 8:
        return "***"
    return "***" + s[-4:]


def _mask_extra(extra: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (mask_secret(v) if k.lower() in SENSITIVE_KEYS else v) for k, v in extra.items()}


def _threshold() -> int:
    return LOG_LEVELS.get(os.getenv("LOG_LEVEL", "info").lower(), LOG_LEVELS["info"])


def _json_lines() -> bool:
    return os.getenv("LOG_FORMAT", "text").lower() == "json"


def _write_to_file(line: str):
    global _file_sink_broken
    if _file_sink_broken:
        return
    path = os.getenv("LOG_FILE", "byok.log")
    if not path:
        return
    try:
        with _file_lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError as e:
        # 文件不可写时只报一次，之后只走控制台
        _file_sink_broken = True
        print(f"Warning: Disabling log file writing: {e}", file=sys.stderr)


def _colorize(text: str, color: str) -> str:
    if not _color_enabled:
        return text
    return f"{color}{text}{Colors.RESET}"


def _log(level: str, message: str, tag: Optional[str] = None, **extra):
    """
    核心日志函数

    Args:
        level: 日志级别
        message: 日志消息
        tag: ROUTER / PROVIDER / MODELS / STREAM / HISTORY / SELFTEST / TOOLS / RUNTIME
        **extra: 结构化字段（provider, model, duration_ms ...）
    """
    level = level.lower()
    if level not in LOG_LEVELS:
        print(f"Warning: Unknown log level '{level}'", file=sys.stderr)
        return
    if LOG_LEVELS[level] < _threshold():
        return

    color, label = LOG_STYLES[level]
    now = datetime.now()
    timestamp = now.strftime("%H:%M:%S")

    request_id = get_request_id()
    if request_id and "request_id" not in extra:
        extra["request_id"] = request_id
    extra = _mask_extra(extra)

    tag_part = f" [{tag}]" if tag else ""
    plain = f"[{timestamp}] [{label}]{tag_part} {message}"
    colored = (
        f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
        f"{_colorize(f'[{label}]', color)}"
        + (f" {_colorize(f'[{tag}]', Colors.BRIGHT_MAGENTA)}" if tag else "")
        + f" {message}"
    )
    if extra:
        extra_str = " ".join(f"{k}={v}" for k, v in extra.items())
        plain += f" | {extra_str}"
        colored += f" {Colors.DIM}| {extra_str}{Colors.RESET}"

    stream = sys.stderr if level in ("error", "critical") else sys.stdout
    if _json_lines():
        entry: Dict[str, Any] = {"timestamp": now.isoformat(), "level": label, "message": message}
        if tag:
            entry["tag"] = tag
        entry.update(extra)
        print(json.dumps(entry, ensure_ascii=False, default=str), file=stream)
    else:
        print(colored if _color_enabled else plain, file=stream)

    _write_to_file(plain)


def set_log_level(level: str) -> bool:
    level = level.lower()
    if level not in LOG_LEVELS:
        print(f"Warning: Unknown log level '{level}'. Valid: {', '.join(LOG_LEVELS.keys())}", file=sys.stderr)
        return False
    os.environ["LOG_LEVEL"] = level
    return True


class Logger:
    """按级别分方法的日志器"""

    def __call__(self, level: str, message: str, tag: Optional[str] = None, **extra):
        _log(level, message, tag, **extra)

    def debug(self, message: str, tag: Optional[str] = None, **extra):
        _log("debug", message, tag, **extra)

    def info(self, message: str, tag: Optional[str] = None, **extra):
        _log("info", message, tag, **extra)

    def route(self, message: str, tag: Optional[str] = None, **extra):
        _log("route", message, tag, **extra)

    def success(self, message: str, tag: Optional[str] = None, **extra):
        _log("success", message, tag, **extra)

    def fallback(self, message: str, tag: Optional[str] = None, **extra):
        _log("fallback", message, tag, **extra)

    def warning(self, message: str, tag: Optional[str] = None, **extra):
        _log("warning", message, tag, **extra)

    def error(self, message: str, tag: Optional[str] = None, **extra):
        _log("error", message, tag, **extra)

    def critical(self, message: str, tag: Optional[str] = None, **extra):
        _log("critical", message, tag, **extra)

    def perf(self, message: str, tag: Optional[str] = None, **extra):
        _log("perf", message, tag, **extra)

    @contextmanager
    def timer(self, operation: str, tag: Optional[str] = None, **extra):
        """
        计时上下文，成功与失败都会记录一条 perf 日志

        Usage:
            with log.timer("/chat", tag="RUNTIME", provider="p1(openai_compatible)"):
                collected = await collect_chat_stream(...)
        """
        start = time.perf_counter()
        outcome = "ok"
        try:
            yield
        except BaseException:
            outcome = "FAIL"
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.perf(
                f"{operation} {outcome} ({format_ms(duration_ms)})",
                tag=tag,
                duration_ms=round(duration_ms, 2),
                **extra
            )

    def timed(self, operation: Optional[str] = None, tag: Optional[str] = None):
        """
        计时装饰器，同步 / 异步函数均可

        Usage:
            @log.timed("model_discovery", tag="MODELS")
            async def fetch_provider_models(...):
                ...
        """
        def decorator(func: Callable) -> Callable:
            op_name = operation or func.__name__

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with self.timer(op_name, tag=tag):
                    return await func(*args, **kwargs)

            @wraps(func)
            def sync_wrapper(*args, **kwargs):
                with self.timer(op_name, tag=tag):
                    return func(*args, **kwargs)

            return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

        return decorator


log = Logger()

__all__ = [
    "log",
    "set_log_level",
    "format_ms",
    "mask_secret",
    "LOG_LEVELS",
    "Colors",
    "set_request_id",
    "get_request_id",
    "clear_request_id",
]
