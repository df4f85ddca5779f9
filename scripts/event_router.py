#!/usr/bin/env python3
"""网络事件路由

将 (device, action) 事件映射到所需的代理操作，并在其前后运行
所调用阶段的钩子。

动作：
    up        刷新路由缓存、重置链、解析例外网络、
              安装链、应用规则、(重新)启动 redsocks
    down      停止 redsocks、刷新路由缓存、重置链
    vpn-up    不改变代理，仅运行钩子
    vpn-down  不改变代理，仅运行钩子
    flush     重置链

阶段：
    prepare   运行 prepare-<action>-* 钩子
    main      执行动作，然后运行 main-<action>-* 钩子
    finalize  运行 finalize-<action>-* 钩子
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional

from command_runner import CommandRunner
from exception_cache import ExceptionCache
from hook_registry import HookRegistry
from iptables_proxy import ChainManager, IptablesBackend, TeardownReport
from proxy_config import ProxyConfig
from proxy_errors import ProxyDaemonError, ProxySetupError, UsageError
from redsocks_manager import RedsocksManager


class Action(str, Enum):
    BRING_UP = "up"
    TEAR_DOWN = "down"
    VPN_UP = "vpn-up"
    VPN_DOWN = "vpn-down"
    FLUSH = "flush"


class Stage(str, Enum):
    PREPARE = "prepare"
    MAIN = "main"
    FINALIZE = "finalize"


def parse_action(action: Optional[str]) -> Action:
    """将动作字符串映射为 Action

    Raises:
        UsageError: 无法识别的动作
    """
    try:
        return Action(action)
    except ValueError:
        raise UsageError(action)


class EventRouter:
    """将网络事件分派到代理操作和钩子"""

    def __init__(
        self,
        config: ProxyConfig,
        chains: ChainManager,
        exceptions: ExceptionCache,
        redsocks: RedsocksManager,
        hooks: HookRegistry,
    ):
        self.config = config
        self.chains = chains
        self.exceptions = exceptions
        self.redsocks = redsocks
        self.hooks = hooks
        self._logger = logging.getLogger("event-router")
        self._operations: Dict[Action, Callable[[str], Optional[TeardownReport]]] = {
            Action.BRING_UP: self.device_up,
            Action.TEAR_DOWN: self.device_down,
            Action.VPN_UP: self.vpn_up,
            Action.VPN_DOWN: self.vpn_down,
            Action.FLUSH: self.flush,
        }

    def handle(self, device: str, action: Optional[str], stage: Stage = Stage.MAIN) -> bool:
        """处理单个事件

        不在 TRIGGER_INTERFACES 中的设备的事件被忽略。

        Returns:
            主操作失败时返回 False，否则返回 True

        Raises:
            UsageError: 触发设备上的动作无法识别
        """
        if not self.config.is_trigger(device):
            self._logger.debug(f"{device} is not a trigger interface, ignoring {action}")
            return True

        event = parse_action(action)

        if stage is Stage.PREPARE:
            self.hooks.run_hooks(Stage.PREPARE.value, device, event.value)
            return True
        if stage is Stage.FINALIZE:
            self.hooks.run_hooks(Stage.FINALIZE.value, device, event.value)
            return True

        ok = self.run_action(device, event)
        self.hooks.run_hooks(Stage.MAIN.value, device, event.value)
        return ok

    def run_action(self, device: str, event: Action) -> bool:
        """执行事件对应的代理操作并报告失败"""
        operation = self._operations[event]
        try:
            report = operation(device)
        except ProxySetupError as e:
            self._logger.error(f"{device}: {operation.__name__} failed: {e}")
            return False

        if report is not None and not report.ok:
            self._logger.error(
                f"{device}: {operation.__name__} finished with {len(report.errors)} failed step(s)"
            )
            return False
        return True

    def _reset(self) -> TeardownReport:
        return self.chains.reset(self.config.forward_interfaces, self.config.target)

    def device_up(self, device: str) -> None:
        """触发设备连接时建立代理

        redsocks 重启前的任何失败都不会留下兜底重定向规则，
        流量不会在缺少例外规则的情况下被重定向。
        """
        target = self.config.target

        self.chains.flush_route_cache()
        self._reset()
        networks = self.exceptions.resolve()
        self.chains.install(target, self.config.forward_interfaces)
        self.chains.apply_rules(networks, target)
        self.redsocks.restart()
        self._logger.info(f"{device}: proxying via {target.proxy_address}:{target.proxy_port} enabled")

    def device_down(self, device: str) -> TeardownReport:
        """触发设备断开时拆除代理"""
        try:
            self.redsocks.stop()
        except ProxyDaemonError as e:
            self._logger.error(f"{device}: {e}")

        self.chains.flush_route_cache()
        return self._reset()

    def vpn_up(self, device: str) -> None:
        self._logger.debug(f"{device}: VPN up, no proxy changes")

    def vpn_down(self, device: str) -> None:
        self._logger.debug(f"{device}: VPN down, no proxy changes")

    def flush(self, device: str) -> TeardownReport:
        return self._reset()


def build_router(
    config: ProxyConfig,
    runner: CommandRunner,
    hooks: Optional[HookRegistry] = None,
    exceptions: Optional[ExceptionCache] = None,
) -> EventRouter:
    """组装 EventRouter 及其协作者"""
    chains = ChainManager(IptablesBackend(runner, binary=config.iptables), runner)
    return EventRouter(
        config=config,
        chains=chains,
        exceptions=exceptions or ExceptionCache.from_config(config),
        redsocks=RedsocksManager(config, runner),
        hooks=hooks or HookRegistry(dry_run=runner.dry_run),
    )
