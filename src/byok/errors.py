# -*- coding: utf-8 -*-
"""
BYOK 错误类型
=============

- ConfigurationError: provider 缺 type/base_url/凭据，或路由无法解析出模型
- UpstreamHTTPError: 上游非 2xx，携带 status 与 ≤300 字符的正文摘录（已脱敏）
- SchemaViolation: 工具 schema 不满足 OpenAI responses strict 模式
- ToolRoundTripFailure: tool_use / tool_result 配对没有完成
- CancellationError: 调用方通过 CancellationToken 主动取消

只有 Self Test 会把异常降级为失败的测试记录；其余层一律向上抛。
"""

from typing import Iterable, List, Optional

__all__ = [
    "ByokError",
    "ConfigurationError",
    "UpstreamHTTPError",
    "SchemaViolation",
    "ToolRoundTripFailure",
    "CancellationError",
    "excerpt_text",
    "redact_secrets",
]

EXCERPT_MAX_CHARS = 300
REDACTED = "[REDACTED]"


def excerpt_text(text: str, max_chars: int = EXCERPT_MAX_CHARS) -> str:
    """压缩空白并截断到 max_chars（含省略号）"""
    s = " ".join(str(text or "").split())
    if max_chars <= 0:
        return ""
    if len(s) <= max_chars:
        return s
    return s[: max(0, max_chars - 1)] + "…"


def redact_secrets(text: str, secrets: Iterable[Optional[str]]) -> str:
    """把 text 中出现的凭据替换为 [REDACTED]；过短的值不处理，避免误伤"""
    out = str(text or "")
    for secret in secrets:
        s = str(secret or "").strip()
        if len(s) < 4:
            continue
        out = out.replace(s, REDACTED)
        # Bearer 前缀的 header 值里真正的 token
        if s.lower().startswith("bearer "):
            token = s[7:].strip()
            if len(token) >= 4:
                out = out.replace(token, REDACTED)
    return out


class ByokError(Exception):
    """BYOK core 的基础异常"""


class ConfigurationError(ByokError):
    """配置缺失或无效，对单个 provider 的探测是致命的"""


class UpstreamHTTPError(ByokError):
    def __init__(
        self,
        *,
        status: int,
        excerpt: str = "",
        label: str = "",
        url: str = "",
    ) -> None:
        self.status = int(status)
        self.excerpt = excerpt_text(excerpt)
        self.label = label
        self.url = url
        prefix = f"{label} " if label else ""
        detail = f": {self.excerpt}" if self.excerpt else ""
        super().__init__(f"{prefix}HTTP {self.status}{detail}")

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)


class SchemaViolation(ByokError):
    def __init__(self, issues: List[str], label: str = "") -> None:
        self.issues = list(issues or [])
        head = " | ".join(self.issues[:10])
        prefix = f"{label}: " if label else ""
        super().__init__(f"{prefix}{head}" if head else f"{prefix}schema violation")


class ToolRoundTripFailure(ByokError):
    def __init__(self, tool_names: List[str], detail: str = "") -> None:
        self.tool_names = list(tool_names or [])
        self.detail = detail
        names = ",".join(self.tool_names) or "?"
        super().__init__(f"tool round trip failed tools={names}" + (f" {detail}" if detail else ""))


class CancellationError(ByokError):
    """操作被取消；与普通失败区分开，Self Test 不会把它记录为失败的 probe"""

    def __init__(self, message: str = "aborted") -> None:
        super().__init__(message)
