#!/usr/bin/env python3
"""系统命令执行（支持 dry-run）

所有外部命令（iptables、ip、systemctl）都通过 CommandRunner 执行，
失败时返回 CommandResult 而不是抛出异常，由调用方决定是否致命。
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List

COMMAND_TIMEOUT = 30


@dataclass
class CommandResult:
    """单条命令的执行结果"""
    cmd: List[str]
    ok: bool
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""

    @property
    def error(self) -> str:
        """最具体的失败描述"""
        if self.ok:
            return ""
        return self.stderr or self.stdout or f"exit code {self.returncode}"


@dataclass
class CommandRunner:
    """执行命令，或在 dry-run 模式下打印命令

    dry-run 模式下变更命令视为成功，探测命令（query=True，如 ``iptables -C``）
    视为未命中，这样真实运行时探测失败后才会执行的变更命令也会被打印。
    """
    dry_run: bool = False
    trace: bool = False
    timeout: int = COMMAND_TIMEOUT

    def __post_init__(self):
        self._logger = logging.getLogger("command-runner")

    def run(self, cmd: List[str], query: bool = False) -> CommandResult:
        """执行命令

        Args:
            cmd: 命令及参数
            query: 探测命令，失败属于预期情况，不记录警告

        Returns:
            CommandResult，ok 反映退出状态
        """
        cmd = [str(c) for c in cmd]
        line = " ".join(shlex.quote(c) for c in cmd)

        if self.dry_run:
            print(line)
            return CommandResult(cmd, ok=not query, returncode=1 if query else 0)

        if self.trace:
            self._logger.debug(f"$ {line}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            self._logger.error(f"Command timeout: {line}")
            return CommandResult(cmd, ok=False, returncode=124, stderr="Command timeout")
        except OSError as e:
            self._logger.error(f"Command exception: {line}: {e}")
            return CommandResult(cmd, ok=False, returncode=127, stderr=str(e))

        outcome = CommandResult(
            cmd,
            ok=result.returncode == 0,
            returncode=result.returncode,
            stdout=(result.stdout or "").strip(),
            stderr=(result.stderr or "").strip(),
        )
        if not outcome.ok:
            if query:
                self._logger.debug(f"Check missed: {line}")
            else:
                self._logger.warning(f"Command failed: {line}: {outcome.error}")
        return outcome
