#!/usr/bin/env python3
"""分阶段事件钩子

钩子是接收 (device, action) 的普通可调用对象，按阶段和动作注册。
钩子全名为 ``<phase>-<action>-<name>``；同一 (phase, action) 下的钩子
按全名字典序执行。

站点专用钩子放在 HOOK_MODULES 列出的模块中，每个模块提供
``register_hooks(registry)``：

    def register_hooks(registry):
        @registry.hook("finalize", "up", "10-notify")
        def notify(device, action):
            ...
"""

import importlib
import logging
from typing import Callable, Dict, Iterable, List, Tuple

from proxy_errors import HookError

PHASES = ("prepare", "main", "finalize")

HookHandler = Callable[[str, str], object]


class HookRegistry:
    """按 (phase, action) 索引的钩子注册表"""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self._hooks: Dict[Tuple[str, str], Dict[str, HookHandler]] = {}
        self._logger = logging.getLogger("hook-registry")

    def register(self, phase: str, action: str, name: str, handler: HookHandler) -> str:
        """注册钩子

        Returns:
            钩子全名

        Raises:
            ValueError: 未知阶段、名称为空或全名重复
        """
        if phase not in PHASES:
            raise ValueError(f"unknown hook phase: {phase!r}")
        if not action or not name:
            raise ValueError("hook action and name must not be empty")

        full_name = f"{phase}-{action}-{name}"
        hooks = self._hooks.setdefault((phase, action), {})
        if full_name in hooks:
            raise ValueError(f"hook already registered: {full_name}")
        hooks[full_name] = handler
        self._logger.debug(f"Registered hook {full_name}")
        return full_name

    def hook(self, phase: str, action: str, name: str) -> Callable[[HookHandler], HookHandler]:
        """register() 的装饰器形式"""
        def decorator(handler: HookHandler) -> HookHandler:
            self.register(phase, action, name, handler)
            return handler
        return decorator

    def handlers(self, phase: str, action: str) -> List[Tuple[str, HookHandler]]:
        """按全名排序的 (phase, action) 钩子"""
        hooks = self._hooks.get((phase, action), {})
        return sorted(hooks.items())

    def run_hooks(self, phase: str, device: str, action: str) -> None:
        """运行某阶段和动作的全部钩子

        失败的钩子被记录，不影响其余钩子执行。
        """
        self._logger.info(f"Running {phase}-{action} hooks for {device}...")

        for full_name, handler in self.handlers(phase, action):
            if self.dry_run:
                print(f"{full_name} {device} {action}")
                continue
            try:
                handler(device, action)
            except Exception as e:
                error = HookError(full_name, device, e)
                self._logger.error(error.message, exc_info=self._logger.isEnabledFor(logging.DEBUG))


def load_hook_modules(registry: HookRegistry, module_names: Iterable[str]) -> int:
    """导入钩子模块并由其注册钩子

    无法导入或缺少 register_hooks() 的模块被跳过。

    Returns:
        成功加载的模块数
    """
    logger = logging.getLogger("hook-registry")
    loaded = 0

    for module_name in module_names:
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            logger.error(f"Cannot import hook module {module_name}: {e}")
            continue

        register = getattr(module, "register_hooks", None)
        if not callable(register):
            logger.error(f"Hook module {module_name} has no register_hooks()")
            continue

        try:
            register(registry)
        except Exception as e:
            logger.error(f"Hook module {module_name} failed to register: {e}")
            continue
        loaded += 1

    return loaded
