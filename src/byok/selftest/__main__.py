# -*- coding: utf-8 -*-
"""
命令行运行 Self Test

用法:
    python -m src.byok.selftest [config.yaml] [--workspace DIR]

逐行打印日志，最后输出 JSON 报告；全部通过时退出码为 0。
没有宿主注入 ToolExecutor，toolsExec 与依赖捕获工具的探针会被记为失败或跳过。
"""

import argparse
import asyncio
import json
import sys

from config import get_byok_config_path, get_self_test_timeout_ms

from ..config import load_byok_config
from ..tools_context import ToolDefinitionsContext
from ..types import SelfTestEvent
from .harness import run_self_test


def _print_event(event: SelfTestEvent) -> None:
    if event.type == "log":
        print(event.line, flush=True)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="python -m src.byok.selftest", description="BYOK Self Test")
    parser.add_argument("config", nargs="?", default=None, help=f"YAML 配置文件（默认 {get_byok_config_path()}）")
    parser.add_argument("--workspace", default=None, help="toolsExec 使用的 workspace 目录")
    parser.add_argument("--timeout-ms", type=int, default=None, help="单次上游调用超时")
    args = parser.parse_args(argv)

    config = load_byok_config(args.config)
    report = asyncio.run(
        run_self_test(
            config,
            tools_context=ToolDefinitionsContext(),
            workspace_root=args.workspace,
            timeout_ms=args.timeout_ms or get_self_test_timeout_ms(),
            on_event=_print_event,
        )
    )
    print(json.dumps(report.to_json_dict(), ensure_ascii=False, indent=2))
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
