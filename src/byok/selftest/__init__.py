"""
BYOK Self Test

run_self_test 对配置中的每个 provider 做连通性、流式、工具调用、多模态与历史压缩检查，
并可通过宿主注入的 ToolExecutor 真实执行全部工具。
"""

from .harness import TOOL_DEFINITIONS_TIMEOUT_MS, run_self_test
from .tools_exec import TOOLS_EXEC_CONVERSATION_ID, run_tools_exec

__all__ = [
    "run_self_test",
    "run_tools_exec",
    "TOOL_DEFINITIONS_TIMEOUT_MS",
    "TOOLS_EXEC_CONVERSATION_ID",
]
