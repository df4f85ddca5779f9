#!/usr/bin/env python3
"""透明代理设置的错误类型

分类：
- ConfigMissing / ConfigError: 无事可做，调用静默成功
- FetchError: 重试全部失败后仍无法获取远程 autoproxy 列表
- RuleMutationError: 单条 iptables 命令失败
- ProxyDaemonError: redsocks 配置生成或服务控制失败
- HookError: 已注册的钩子抛出异常
- UsageError: 无法识别的动作（CLI 唯一的致命错误）
"""

from typing import List, Optional


class ProxySetupError(Exception):
    """代理设置错误基类"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigMissing(ProxySetupError):
    """未找到配置文件"""

    def __init__(self, searched: List[str]):
        self.searched = list(searched)
        super().__init__(f"can't configure proxying, missing {' or '.join(self.searched)}")


class ConfigError(ProxySetupError):
    """配置文件存在但内容无效"""
    pass


class FetchError(ProxySetupError):
    """无法获取远程 autoproxy 列表"""

    def __init__(self, url: str, attempts: int, reason: Optional[str] = None):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        message = f"failed to fetch {url} after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RuleMutationError(ProxySetupError):
    """iptables 命令执行失败"""

    def __init__(self, command: List[str], detail: str = ""):
        self.command = list(command)
        self.detail = detail
        message = f"command failed: {' '.join(self.command)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProxyDaemonError(ProxySetupError):
    """redsocks 配置或服务控制失败"""
    pass


class HookError(ProxySetupError):
    """处理事件时钩子抛出异常"""

    def __init__(self, hook: str, device: str, cause: BaseException):
        self.hook = hook
        self.device = device
        self.cause = cause
        super().__init__(f"hook {hook} failed for {device}: {cause}")


class UsageError(ProxySetupError):
    """无法识别的动作"""

    def __init__(self, action: Optional[str]):
        self.action = action
        super().__init__(f"unknown action: {action!r}")
