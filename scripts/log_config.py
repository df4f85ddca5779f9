#!/usr/bin/env python3
"""
统一日志配置模块

通过环境变量和命令行控制日志：
- LOG_LEVEL: Python 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: 设置为 "1"/"true" 时使用 DEBUG 级别
- --trace: 强制 DEBUG 级别并使用详细格式
- DEBUG_FILE (配置文件): 调试输出和调用环境转储的目标文件

使用方式：
    from log_config import setup_logging, attach_debug_file, dump_invocation

    setup_logging(trace=args.trace)
    attach_debug_file(config.debug_file)
    dump_invocation(sys.argv, device, action, os.environ)
"""

import logging
import os
import sys
import time
from pathlib import Path
from typing import Mapping, Optional, Sequence

DEFAULT_LOG_LEVEL = "INFO"
DEBUG_FLAG_VALUES = ("1", "true", "yes", "on")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 调用环境转储只写入调试文件，不进入 stderr
DEBUG_LOGGER_NAME = "redsocks-setup-proxy.debug"

_logging_configured = False
_debug_handler: Optional[logging.Handler] = None


def get_log_level(environ: Optional[Mapping[str, str]] = None) -> int:
    """确定日志级别

    LOG_LEVEL 接受任意 logging 级别名（含 WARN/FATAL 别名），无法识别时
    回退到 INFO；未设置时由 DEBUG 开关决定。

    Args:
        environ: 环境变量映射，默认 os.environ
    """
    if environ is None:
        environ = os.environ

    name = environ.get("LOG_LEVEL", "").strip().upper()
    if not name:
        debug = environ.get("DEBUG", "").strip().lower() in DEBUG_FLAG_VALUES
        name = "DEBUG" if debug else DEFAULT_LOG_LEVEL

    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    level: Optional[int] = None,
    trace: bool = False,
    force: bool = False
) -> logging.Logger:
    """配置全局日志

    Args:
        level: 日志级别，None 表示从环境变量获取
        trace: --trace 模式，使用 DEBUG 级别和详细格式（包含文件名和行号）
        force: 是否强制重新配置

    Returns:
        root logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger()

    if trace:
        level = logging.DEBUG
    elif level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if trace else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    # 减少第三方库的噪音
    for lib_logger in ["urllib3", "requests"]:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    # 调试转储默认不向上传播到 stderr
    debug_logger = logging.getLogger(DEBUG_LOGGER_NAME)
    debug_logger.propagate = False
    debug_logger.setLevel(logging.DEBUG)
    if not debug_logger.handlers:
        debug_logger.addHandler(logging.NullHandler())

    _logging_configured = True

    logger = logging.getLogger()
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def attach_debug_file(path: Optional[Path]) -> bool:
    """将 DEBUG 级别输出追加到调试文件

    文件必须已存在且可写（与 /etc/sysconfig 中的 DEBUG_FILE 语义一致），
    否则调试输出被丢弃。

    Args:
        path: 调试文件路径

    Returns:
        是否已挂载文件 handler
    """
    global _debug_handler

    if not path:
        return False
    path = Path(path)
    if not path.is_file() or not os.access(path, os.W_OK):
        logging.getLogger().debug(f"Debug file not writable, ignoring: {path}")
        return False

    if _debug_handler is not None:
        detach_debug_file()

    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT_DETAILED, DATE_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    # root 级别需放开到 DEBUG，stderr handler 保持原级别
    for existing in root.handlers:
        if existing is not handler and existing.level == logging.NOTSET:
            existing.setLevel(root.level)
    root.setLevel(logging.DEBUG)

    debug_logger = logging.getLogger(DEBUG_LOGGER_NAME)
    debug_logger.addHandler(handler)

    _debug_handler = handler
    return True


def detach_debug_file() -> None:
    """移除调试文件 handler"""
    global _debug_handler

    if _debug_handler is None:
        return
    logging.getLogger().removeHandler(_debug_handler)
    logging.getLogger(DEBUG_LOGGER_NAME).removeHandler(_debug_handler)
    _debug_handler.close()
    _debug_handler = None


def dump_invocation(
    argv: Sequence[str],
    device: Optional[str],
    action: Optional[str],
    environ: Mapping[str, str],
) -> None:
    """转储本次调用的参数和环境变量到调试文件"""
    debug_logger = logging.getLogger(DEBUG_LOGGER_NAME)
    debug_logger.debug(
        f"===== {time.strftime('%a %b %d %H:%M:%S %Z %Y')} {' '.join(argv)} "
        f"[{os.getpid()}] [device={device or ''}, action={action or ''}] ====="
    )
    for key in sorted(environ):
        debug_logger.debug(f"{key}={environ[key]}")
