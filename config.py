"""
Runtime settings for the BYOK gateway core.

所有值按 ENV > .env 文件 > 默认值 的优先级读取；.env 在模块导入时加载一次。
YAML 配置文件（providers / routing / telemetry / history_summary）由
src/byok/config.py 负责解析，这里只决定去哪里找它。
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = "config/byok.yaml"
DEFAULT_UPSTREAM_TIMEOUT_MS = 120000
DEFAULT_SELF_TEST_TIMEOUT_MS = 30000


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_byok_config_path() -> str:
    """YAML 配置文件路径 (BYOK_CONFIG)"""
    return os.getenv("BYOK_CONFIG", DEFAULT_CONFIG_PATH)


def get_runtime_enabled() -> bool:
    """BYOK 运行时总开关；关闭时所有端点走 official (BYOK_RUNTIME_ENABLED)"""
    return _get_bool_env("BYOK_RUNTIME_ENABLED", True)


def get_default_upstream_timeout_ms() -> int:
    """上游调用的默认超时 (BYOK_UPSTREAM_TIMEOUT_MS)"""
    return _get_int_env("BYOK_UPSTREAM_TIMEOUT_MS", DEFAULT_UPSTREAM_TIMEOUT_MS)


def get_self_test_timeout_ms() -> int:
    """Self Test 单次调用超时 (BYOK_SELF_TEST_TIMEOUT_MS)"""
    return _get_int_env("BYOK_SELF_TEST_TIMEOUT_MS", DEFAULT_SELF_TEST_TIMEOUT_MS)


def get_proxy_config() -> Optional[str]:
    """出站代理，优先 BYOK_PROXY，其次 HTTPS_PROXY / PROXY"""
    for name in ("BYOK_PROXY", "HTTPS_PROXY", "PROXY"):
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None
