# -*- coding: utf-8 -*-
"""
BYOK 配置模型与 YAML 加载器

配置文件结构（config/byok.yaml）:

    providers:
      - id: p1
        type: openai_compatible
        base_url: https://api.example.com/v1
        api_key: ${OPENAI_API_KEY}
        default_model: gpt-4o-mini
    routing:
      default_mode: official
      rules:
        /chat-stream: {mode: byok, provider_id: p1}
        /record-session-events: {mode: disabled}
    telemetry:
      disabled_endpoints: [/report-error]
    history_summary:
      enabled: false

字符串中的 ${VAR} / ${VAR:default} 会在校验前展开。
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import get_byok_config_path
from log import log

from .errors import ConfigurationError
from .normalize import normalize_endpoint
from .types import ProviderConfig

__all__ = [
    "RoutingRule",
    "RoutingConfig",
    "TelemetryConfig",
    "HistorySummaryConfig",
    "ByokConfig",
    "expand_env_vars",
    "load_byok_config",
    "byok_config_from_dict",
]

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}")

DEFAULT_HISTORY_SUMMARY_PROMPT = (
    "Summarize the earlier part of this coding conversation so that the assistant can continue the task. "
    "Keep file paths, decisions, open problems and pending steps. Be concise; use plain text bullet points."
)


def _aliases(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RoutingRule(_ConfigModel):
    """单个端点的路由规则"""
    mode: Literal["official", "byok", "disabled"] = "byok"
    provider_id: str = Field("", validation_alias=_aliases("provider_id", "providerId"))
    model: str = ""

    @field_validator("provider_id", "model", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""


class RoutingConfig(_ConfigModel):
    rules: Dict[str, RoutingRule] = Field(default_factory=dict)
    default_mode: Literal["official", "byok", "disabled"] = Field(
        "official", validation_alias=_aliases("default_mode", "defaultMode")
    )

    @field_validator("rules", mode="before")
    @classmethod
    def _normalize_rule_keys(cls, v: Any) -> Dict[str, Any]:
        if not isinstance(v, dict):
            return {}
        out: Dict[str, Any] = {}
        for endpoint, rule in v.items():
            key = normalize_endpoint(endpoint)
            if not key:
                continue
            # 简写: "/chat-stream": byok
            if isinstance(rule, str):
                rule = {"mode": rule}
            if isinstance(rule, dict):
                out[key] = rule
        return out


class TelemetryConfig(_ConfigModel):
    disabled_endpoints: List[str] = Field(
        default_factory=list, validation_alias=_aliases("disabled_endpoints", "disabledEndpoints")
    )

    @field_validator("disabled_endpoints", mode="before")
    @classmethod
    def _normalize_endpoints(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        out: List[str] = []
        for item in v:
            ep = normalize_endpoint(item)
            if ep and ep not in out:
                out.append(ep)
        return out


class HistorySummaryConfig(_ConfigModel):
    """历史压缩配置；provider_id / model 为空时使用当前请求的 provider / model"""
    enabled: bool = False
    provider_id: str = Field("", validation_alias=_aliases("provider_id", "providerId"))
    model: str = ""
    trigger_on_history_size_chars: int = Field(
        200000, validation_alias=_aliases("trigger_on_history_size_chars", "triggerOnHistorySizeChars")
    )
    history_tail_size_chars_to_exclude: int = Field(
        80000, validation_alias=_aliases("history_tail_size_chars_to_exclude", "historyTailSizeCharsToExclude")
    )
    min_tail_exchanges: int = Field(2, validation_alias=_aliases("min_tail_exchanges", "minTailExchanges"))
    max_tokens: int = Field(1024, validation_alias=_aliases("max_tokens", "maxTokens"))
    timeout_seconds: int = Field(60, validation_alias=_aliases("timeout_seconds", "timeoutSeconds"))
    cache_ttl_ms: int = Field(30 * 60 * 1000, validation_alias=_aliases("cache_ttl_ms", "cacheTtlMs"))
    prompt: str = DEFAULT_HISTORY_SUMMARY_PROMPT

    @field_validator(
        "trigger_on_history_size_chars",
        "history_tail_size_chars_to_exclude",
        "min_tail_exchanges",
        "max_tokens",
        "timeout_seconds",
        "cache_ttl_ms",
    )
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, int(v))


class ByokConfig(_ConfigModel):
    providers: List[ProviderConfig] = Field(default_factory=list)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    history_summary: HistorySummaryConfig = Field(
        default_factory=HistorySummaryConfig, validation_alias=_aliases("history_summary", "historySummary")
    )

    @field_validator("providers", mode="before")
    @classmethod
    def _drop_invalid_providers(cls, v: Any) -> List[Any]:
        if not isinstance(v, list):
            return []
        return [p for p in v if isinstance(p, (dict, ProviderConfig))]

    def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        pid = (provider_id or "").strip()
        if not pid:
            return None
        for provider in self.providers:
            if provider.id == pid:
                return provider
        return None


def expand_env_vars(value: Any) -> Any:
    """
    递归展开环境变量

    支持语法：${VAR_NAME} 与 ${VAR_NAME:default_value}

    展开结果始终是字符串，类型转换交给 pydantic 模型
    （api_key 写成 0123 也不会变成整数）。

    Examples:
        >>> os.environ["TEST_VAR"] = "hello"
        >>> expand_env_vars("${TEST_VAR:world}")
        'hello'
        >>> expand_env_vars("${MISSING_VAR:world}")
        'world'
        >>> expand_env_vars("${INT_VAR:42}")
        '42'
    """
    if isinstance(value, str):
        if not _ENV_PATTERN.search(value):
            return value

        def replacer(match):
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(match.group(1), default_value)

        return _ENV_PATTERN.sub(replacer, value)

    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    if isinstance(value, dict):
        return {key: expand_env_vars(val) for key, val in value.items()}

    return value


def byok_config_from_dict(data: Optional[Dict[str, Any]]) -> ByokConfig:
    """从已解析的 dict 构建 ByokConfig（会展开环境变量）"""
    raw = expand_env_vars(data or {})
    if not isinstance(raw, dict):
        raise ConfigurationError("配置格式错误：顶层必须是字典")
    try:
        return ByokConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"配置校验失败: {e}") from e


def load_byok_config(config_path: Optional[Union[str, Path]] = None) -> ByokConfig:
    """
    从 YAML 文件加载 BYOK 配置

    Args:
        config_path: 配置文件路径（默认读取 BYOK_CONFIG，回退到 config/byok.yaml）

    Raises:
        FileNotFoundError: 配置文件不存在
        ConfigurationError: 配置格式错误
    """
    path = Path(config_path) if config_path else Path(get_byok_config_path())
    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML 解析失败: {path}: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"配置文件格式错误：顶层必须是字典 ({path})")

    cfg = byok_config_from_dict(raw_config)
    log.info(
        f"BYOK config loaded: providers={len(cfg.providers)} rules={len(cfg.routing.rules)}",
        tag="CONFIG",
        path=str(path),
    )
    return cfg
