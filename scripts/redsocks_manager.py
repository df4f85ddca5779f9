#!/usr/bin/env python3
"""redsocks 守护进程控制

根据模板生成 /etc/redsocks.conf，并驱动 systemd 服务单元。

模板占位符：
    __REDSOCKS_ADDRESS__  __REDSOCKS_PORT__
    __PROXY_ADDRESS__     __PROXY_PORT__     __PROXY_TYPE__

已存在的配置文件保持不变，本地修改在重启后仍然保留。
"""

import logging
import os
import tempfile
from pathlib import Path

from command_runner import CommandRunner
from proxy_config import ProxyConfig
from proxy_errors import ProxyDaemonError


def render_template(template: str, substitutions: dict) -> str:
    """将 __NAME__ 占位符替换为对应值"""
    for name, value in substitutions.items():
        template = template.replace(f"__{name}__", str(value))
    return template


class RedsocksManager:
    """生成 redsocks 配置并重启/停止服务"""

    def __init__(self, config: ProxyConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self._logger = logging.getLogger("redsocks-manager")

    def generate_config(self) -> Path:
        """写入 redsocks 配置（已存在时跳过）

        Returns:
            配置文件路径

        Raises:
            ProxyDaemonError: 模板不可读或配置不可写
        """
        config_path = self.config.redsocks_config
        self._logger.info("Generating redsocks configuration...")

        if config_path.exists():
            self._logger.debug(f"Keeping existing {config_path}")
            return config_path

        try:
            template = self.config.redsocks_template.read_text()
        except OSError as e:
            raise ProxyDaemonError(f"cannot read template {self.config.redsocks_template}: {e}")

        content = render_template(template, self.config.target.substitutions())

        if self.runner.dry_run:
            print(f"# would write {config_path} from {self.config.redsocks_template}")
            return config_path

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(config_path.parent), prefix=f".{config_path.name}.")
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, config_path)
        except OSError as e:
            raise ProxyDaemonError(f"cannot write {config_path}: {e}")

        self._logger.info(f"Wrote {config_path}")
        return config_path

    def _systemctl(self, verb: str) -> None:
        result = self.runner.run(["systemctl", verb, self.config.redsocks_service])
        if not result.ok:
            raise ProxyDaemonError(f"systemctl {verb} {self.config.redsocks_service} failed: {result.error}")

    def restart(self) -> None:
        """按需生成配置并(重新)启动 redsocks"""
        self.generate_config()
        self._systemctl("restart")

    def stop(self) -> None:
        self._systemctl("stop")
