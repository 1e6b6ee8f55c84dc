"""
BYOK 模块 - 自带密钥的 LLM 协议网关核心

宿主编辑器的 shim 把端点调用交给这里：按配置决定走官方后端、BYOK provider 还是直接禁用，
并把规范化的聊天请求翻译成四种上游协议之一，再把上游流式响应翻译回规范化的 chunk。

目录结构:
- types.py / config.py: 规范化数据模型与 YAML 配置 (ByokConfig)
- router.py: 路由决策 (decide_route, resolve_route_model)
- normalize.py / messages.py / prompts.py: 请求规范化与各协议消息构造
- schema.py / tools_bridge.py: 工具 schema 严格化、采样与各协议工具格式
- sse.py / stream.py: SSE 解析与流式聚合 (StreamAggregator)
- providers/: 四种上游协议的适配器与模型发现
- history.py: 长对话历史压缩
- tools_context.py: 捕获的工具定义与 ToolExecutor 接口
- runtime.py: 端点入口 (ByokRuntime.handle_call_api / handle_call_api_stream)
- selftest/: Self Test
"""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
if TYPE_CHECKING:
    from .config import ByokConfig, load_byok_config
    from .runtime import ByokRuntime
    from .tools_context import ToolDefinitionsContext, ToolExecutor

__all__ = [
    "ByokConfig",
    "load_byok_config",
    "ByokRuntime",
    "ToolDefinitionsContext",
    "ToolExecutor",
    "get_runtime",
    "run_self_test",
]


def __getattr__(name):
    if name in ("ByokConfig", "load_byok_config"):
        from . import config
        return getattr(config, name)
    if name == "ByokRuntime":
        from .runtime import ByokRuntime
        return ByokRuntime
    if name in ("ToolDefinitionsContext", "ToolExecutor"):
        from . import tools_context
        return getattr(tools_context, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def get_runtime(config_path=None):
    """按 YAML 配置创建运行时 (延迟导入)"""
    from .config import load_byok_config
    from .runtime import ByokRuntime
    return ByokRuntime(load_byok_config(config_path))


async def run_self_test(config, **kwargs):
    """运行 Self Test (延迟导入)"""
    from .selftest import run_self_test as _run
    return await _run(config, **kwargs)
