#!/usr/bin/env python3
"""网络接口事件的透明代理设置

由 NetworkManager dispatcher 调用（设备和动作取自 DEVICE_IFACE /
NM_DISPATCHER_ACTION），也可手动执行。

用法：
    redsocks-setup-proxy [-n] [-t] <device> <up|down|vpn-up|vpn-down|flush>
    redsocks-setup-proxy-prepare <device> <action>
    redsocks-setup-proxy-finalize <device> <action>

选项：
    -n, --dry-run   打印防火墙/系统命令而不执行
    -t, --trace     详细执行跟踪
    --config PATH   配置文件（默认 /etc/sysconfig/redsocks-setup-proxy）
    --stage STAGE   prepare、main 或 finalize（默认根据程序名判断）

退出状态：成功或无事可做时为 0，动作无法识别时为 1。
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from command_runner import CommandRunner
from event_router import Stage, build_router
from hook_registry import HookRegistry, load_hook_modules
from log_config import attach_debug_file, dump_invocation, setup_logging
from proxy_config import load_config
from proxy_errors import ConfigError, ConfigMissing, UsageError

EXIT_OK = 0
EXIT_USAGE = 1

logger = logging.getLogger("setup-proxy")


def stage_from_program(prog: str) -> Stage:
    """根据程序名（符号链接/console script）判断阶段"""
    name = os.path.basename(prog)
    if "prepare" in name:
        return Stage.PREPARE
    if "finalize" in name:
        return Stage.FINALIZE
    return Stage.MAIN


def event_from_invocation(
    args: argparse.Namespace,
    environ: Mapping[str, str],
) -> Tuple[Optional[str], Optional[str]]:
    """从 dispatcher 环境变量或命令行参数中取得设备和动作"""
    if environ.get("DEVICE_IFACE"):
        return environ["DEVICE_IFACE"], environ.get("NM_DISPATCHER_ACTION")
    return args.device, args.action


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Configure transparent proxying on network interface events",
    )
    parser.add_argument("-n", "--dry-run", action="store_true",
                        help="print commands instead of executing them")
    parser.add_argument("-t", "--trace", action="store_true",
                        help="verbose execution trace")
    parser.add_argument("--config", type=Path, metavar="PATH",
                        help="configuration file")
    parser.add_argument("--stage", choices=[s.value for s in Stage],
                        help="hook stage to run (default: derived from program name)")
    parser.add_argument("device", nargs="?", help="network device")
    parser.add_argument("action", nargs="?", help="up, down, vpn-up, vpn-down or flush")
    return parser


def main(
    argv: Optional[List[str]] = None,
    prog: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if prog is None:
        prog = sys.argv[0]
    if environ is None:
        environ = os.environ

    args = build_parser(os.path.basename(prog)).parse_args(argv)
    setup_logging(trace=args.trace)

    try:
        config = load_config(args.config)
    except ConfigMissing as e:
        logger.warning(e.message)
        return EXIT_OK
    except ConfigError as e:
        logger.error(f"invalid configuration: {e.message}")
        return EXIT_OK

    device, action = event_from_invocation(args, environ)

    attach_debug_file(config.debug_file)
    dump_invocation([prog] + list(argv), device, action, environ)

    if not config.is_trigger(device):
        logger.debug(f"{device} is not a trigger interface, nothing to do")
        return EXIT_OK

    stage = Stage(args.stage) if args.stage else stage_from_program(prog)

    runner = CommandRunner(dry_run=args.dry_run, trace=args.trace)
    hooks = HookRegistry(dry_run=args.dry_run)
    load_hook_modules(hooks, config.hook_modules)
    router = build_router(config, runner, hooks=hooks)

    try:
        router.handle(device, action, stage)
    except UsageError as e:
        logger.error(e.message)
        return EXIT_USAGE

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
