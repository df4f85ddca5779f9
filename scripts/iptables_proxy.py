#!/usr/bin/env python3
"""透明代理 iptables 链管理器

管理将 TCP 流量重定向到本地 redsocks 监听端口的 NAT/filter 规则。

链结构：
    nat OUTPUT      -p tcp -j PROXY_OUTPUT
    nat PREROUTING  -p tcp -j PROXY_FORWARD
    PROXY_OUTPUT    ! -o lo -j PROXY
    PROXY_FORWARD   -p tcp -i <forward iface> -j PROXY
    PROXY           -d <bypass net> -j RETURN ...（全部例外规则）
                    -p tcp -j REDIRECT --to-ports <redsocks port>（兜底规则，必须在最后）

    filter INPUT    -p tcp --dport <redsocks port> -j PROXY_FORWARD
    PROXY_FORWARD   -i <forward iface|lo> -j ACCEPT ... -j DROP

所有链名由本模块独占。所有插入都先用 -C 检查（幂等，且可容忍并发执行），
所有删除都先检查存在性（规则不存在不算错误）。

使用示例：
    runner = CommandRunner()
    manager = ChainManager(IptablesBackend(runner))

    manager.install(target, ["br0"])
    manager.apply_rules(["10.0.0.0/8", "192.168.0.0/16"], target)

    report = manager.reset(["br0"], target)
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from command_runner import CommandResult, CommandRunner
from proxy_config import ProxyTarget
from proxy_errors import RuleMutationError

NAT_TABLE = "nat"
FILTER_TABLE = "filter"

# 独占的链名
REDIRECT_CHAIN = "PROXY"
OUTPUT_CHAIN = "PROXY_OUTPUT"
FORWARD_CHAIN = "PROXY_FORWARD"
FORWARD_FILTER_CHAIN = "PROXY_FORWARD"
NAT_CHAINS = (REDIRECT_CHAIN, OUTPUT_CHAIN, FORWARD_CHAIN)

BUILTIN_CHAINS = {"INPUT", "OUTPUT", "FORWARD", "PREROUTING", "POSTROUTING"}

# 防止异常情况下的无限删除循环
MAX_DUPLICATE_RULES = 64


def forward_jump_rule(interface: str) -> List[str]:
    return ["-p", "tcp", "-i", interface, "-j", REDIRECT_CHAIN]


def output_jump_rule() -> List[str]:
    return ["!", "-o", "lo", "-j", REDIRECT_CHAIN]


def output_hook_rule() -> List[str]:
    return ["-p", "tcp", "-j", OUTPUT_CHAIN]


def prerouting_hook_rule() -> List[str]:
    return ["-p", "tcp", "-j", FORWARD_CHAIN]


def filter_accept_rule(interface: str) -> List[str]:
    return ["-i", interface, "-j", "ACCEPT"]


def input_hook_rule(port: int) -> List[str]:
    return ["-p", "tcp", "--dport", str(port), "-j", FORWARD_FILTER_CHAIN]


def bypass_rule(network: str) -> List[str]:
    return ["-d", network, "-j", "RETURN"]


def catch_all_rule(port: int) -> List[str]:
    return ["-p", "tcp", "-j", "REDIRECT", "--to-ports", str(port)]


class IptablesBackend:
    """iptables 命令封装

    每个操作作用于 (table, chain)，返回 CommandResult，不抛出异常。
    """

    def __init__(self, runner: CommandRunner, binary: str = "iptables"):
        self.runner = runner
        self.binary = binary

    def _iptables(self, table: str, args: List[str], query: bool = False) -> CommandResult:
        return self.runner.run([self.binary, "-t", table] + args, query=query)

    def chain_exists(self, table: str, chain: str) -> bool:
        """检查链是否存在"""
        return self._iptables(table, ["-n", "-L", chain], query=True).ok

    def create_chain(self, table: str, chain: str) -> CommandResult:
        return self._iptables(table, ["-N", chain])

    def flush_chain(self, table: str, chain: str, quiet: bool = False) -> CommandResult:
        return self._iptables(table, ["-F", chain], query=quiet)

    def delete_chain(self, table: str, chain: str) -> CommandResult:
        return self._iptables(table, ["-X", chain])

    def rule_exists(self, table: str, chain: str, rule_spec: List[str]) -> bool:
        """检查规则是否存在 (iptables -C)"""
        return self._iptables(table, ["-C", chain] + rule_spec, query=True).ok

    def insert_rule(self, table: str, chain: str, rule_spec: List[str]) -> CommandResult:
        return self._iptables(table, ["-I", chain] + rule_spec)

    def append_rule(self, table: str, chain: str, rule_spec: List[str]) -> CommandResult:
        return self._iptables(table, ["-A", chain] + rule_spec)

    def delete_rule(self, table: str, chain: str, rule_spec: List[str]) -> CommandResult:
        return self._iptables(table, ["-D", chain] + rule_spec)

    def set_policy(self, table: str, chain: str, policy: str) -> CommandResult:
        """设置链的默认策略

        内置链使用 -P；自定义链不能设置策略，改为在链尾追加 -j <policy>，
        因此必须在链内其他规则之后调用。
        """
        if chain in BUILTIN_CHAINS:
            return self._iptables(table, ["-P", chain, policy])

        rule_spec = ["-j", policy]
        if self.rule_exists(table, chain, rule_spec):
            return CommandResult([self.binary, "-t", table, "-C", chain] + rule_spec, ok=True)
        return self.append_rule(table, chain, rule_spec)


@dataclass
class TeardownReport:
    """清理过程中收集的失败（空列表表示完全清理）"""
    errors: List[RuleMutationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def record(self, result: CommandResult) -> None:
        if not result.ok:
            self.errors.append(RuleMutationError(result.cmd, result.error))


class ChainManager:
    """透明代理链状态机

    每条链的状态：ABSENT → PRESENT-EMPTY (install) → PRESENT-CONFIGURED (apply_rules)，
    reset 回到 ABSENT（filter 链保留为空链）。
    """

    def __init__(self, backend: IptablesBackend, runner: Optional[CommandRunner] = None):
        self.backend = backend
        self.runner = runner or backend.runner
        self._logger = logging.getLogger("chain-manager")

    def _check(self, result: CommandResult) -> None:
        if not result.ok:
            raise RuleMutationError(result.cmd, result.error)

    def _ensure_chain(self, table: str, chain: str) -> None:
        """确保链存在且为空：先尝试清空，失败则创建"""
        if self.backend.flush_chain(table, chain, quiet=True).ok:
            return
        self._check(self.backend.create_chain(table, chain))
        self._logger.debug(f"Created chain {table}/{chain}")

    def _insert_unique(self, table: str, chain: str, rule_spec: List[str]) -> None:
        """插入规则到链首（如果不存在）"""
        if self.backend.rule_exists(table, chain, rule_spec):
            self._logger.debug(f"Rule already exists: {table}/{chain} {rule_spec}")
            return
        self._check(self.backend.insert_rule(table, chain, rule_spec))

    def _append_unique(self, table: str, chain: str, rule_spec: List[str]) -> None:
        """追加规则到链尾（如果不存在）"""
        if self.backend.rule_exists(table, chain, rule_spec):
            self._logger.debug(f"Rule already exists: {table}/{chain} {rule_spec}")
            return
        self._check(self.backend.append_rule(table, chain, rule_spec))

    def _chain_present(self, table: str, chain: str) -> bool:
        """检查链是否存在，dry-run 下视为存在以打印清理命令"""
        exists = self.backend.chain_exists(table, chain)
        return exists or self.runner.dry_run

    def _delete_if_present(self, table: str, chain: str, rule_spec: List[str],
                           report: TeardownReport) -> None:
        """删除规则的所有副本（不存在时不算错误）

        dry-run 下探测总是未命中，因此无条件打印一次删除命令。
        """
        if self.runner.dry_run:
            self.backend.rule_exists(table, chain, rule_spec)
            self.backend.delete_rule(table, chain, rule_spec)
            return

        for _ in range(MAX_DUPLICATE_RULES):
            if not self.backend.rule_exists(table, chain, rule_spec):
                return
            result = self.backend.delete_rule(table, chain, rule_spec)
            report.record(result)
            if not result.ok:
                return

    def install(
        self,
        target: ProxyTarget,
        forward_interfaces: Sequence[str],
        bypass_set: Optional[Sequence[str]] = None,
    ) -> None:
        """创建代理链并挂载到内置链

        Args:
            target: 代理目标（使用 listen_port）
            forward_interfaces: 需要代理转发流量的接口
            bypass_set: 若提供，安装后立即调用 apply_rules

        Raises:
            RuleMutationError: 任一规则或链操作失败，后续步骤不再执行
        """
        self._logger.info("Initializing iptables proxy chains...")

        for chain in NAT_CHAINS:
            self._ensure_chain(NAT_TABLE, chain)

        # 代理转发接口的流量
        for interface in forward_interfaces:
            self._insert_unique(NAT_TABLE, FORWARD_CHAIN, forward_jump_rule(interface))

        # 代理本机出站流量
        self._insert_unique(NAT_TABLE, OUTPUT_CHAIN, output_jump_rule())
        self._insert_unique(NAT_TABLE, "OUTPUT", output_hook_rule())
        self._insert_unique(NAT_TABLE, "PREROUTING", prerouting_hook_rule())

        # 过滤到达代理端口的流量：仅允许转发接口和本机 (lo)
        self._ensure_chain(FILTER_TABLE, FORWARD_FILTER_CHAIN)
        for interface in _unique(["lo"] + list(forward_interfaces)):
            self._append_unique(FILTER_TABLE, FORWARD_FILTER_CHAIN, filter_accept_rule(interface))
        self._check(self.backend.set_policy(FILTER_TABLE, FORWARD_FILTER_CHAIN, "DROP"))
        self._insert_unique(FILTER_TABLE, "INPUT", input_hook_rule(target.listen_port))

        if bypass_set is not None:
            self.apply_rules(bypass_set, target)

    def apply_rules(self, bypass_set: Sequence[str], target: ProxyTarget) -> None:
        """生成重定向规则

        所有 RETURN 例外规则必须位于兜底 REDIRECT 规则之前（首次匹配生效）。
        任一例外规则失败即中止，不追加兜底规则。

        Raises:
            RuleMutationError: 清空链或插入规则失败
        """
        self._logger.info("Generating iptables proxy rules...")

        self._check(self.backend.flush_chain(NAT_TABLE, REDIRECT_CHAIN))

        for network in bypass_set:
            self._append_unique(NAT_TABLE, REDIRECT_CHAIN, bypass_rule(network))

        self._append_unique(NAT_TABLE, REDIRECT_CHAIN, catch_all_rule(target.listen_port))

        self._logger.info(
            f"Proxy rules applied: {len(bypass_set)} exceptions, redirect to port {target.listen_port}"
        )

    def reset(self, forward_interfaces: Sequence[str], target: ProxyTarget) -> TeardownReport:
        """移除 install/apply_rules 添加的全部规则和链

        尽力而为：每一步都会执行，失败被记录到返回的 TeardownReport 中。
        """
        self._logger.info("Resetting iptables proxy chains...")
        report = TeardownReport()

        for interface in forward_interfaces:
            self._delete_if_present(NAT_TABLE, FORWARD_CHAIN, forward_jump_rule(interface), report)

        self._delete_if_present(NAT_TABLE, OUTPUT_CHAIN, output_jump_rule(), report)
        self._delete_if_present(NAT_TABLE, "OUTPUT", output_hook_rule(), report)
        self._delete_if_present(NAT_TABLE, "PREROUTING", prerouting_hook_rule(), report)

        # 先全部清空，再删除（链之间存在引用）
        present = [chain for chain in NAT_CHAINS if self._chain_present(NAT_TABLE, chain)]
        for chain in present:
            report.record(self.backend.flush_chain(NAT_TABLE, chain))
        for chain in present:
            report.record(self.backend.delete_chain(NAT_TABLE, chain))

        if self._chain_present(FILTER_TABLE, FORWARD_FILTER_CHAIN):
            report.record(self.backend.flush_chain(FILTER_TABLE, FORWARD_FILTER_CHAIN))

        self._delete_if_present(FILTER_TABLE, "INPUT", input_hook_rule(target.listen_port), report)

        for error in report.errors:
            self._logger.error(f"Teardown step failed: {error}")
        return report

    def flush_route_cache(self) -> bool:
        """刷新路由缓存，使规则变化对已解析的目的地立即生效"""
        result = self.runner.run(["ip", "route", "flush", "cache"])
        if not result.ok:
            self._logger.warning(f"Failed to flush routing cache: {result.error}")
        return result.ok


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered
