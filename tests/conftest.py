"""
Pytest configuration and fixtures for redsocks-setup-proxy tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from command_runner import CommandResult  # noqa: E402

BUILTIN = {
    "nat": ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"],
    "filter": ["INPUT", "FORWARD", "OUTPUT"],
}
STANDARD_TARGETS = {"ACCEPT", "DROP", "RETURN", "REDIRECT", "REJECT"}


class FakeIptables:
    """
    In-memory iptables emulator behind the CommandRunner interface.

    Understands -N/-F/-X/-L/-C/-I/-A/-D/-P with the same failure modes as
    iptables for missing chains, missing rules and referenced chains.
    """

    def __init__(self):
        self.dry_run = False
        self.history: List[List[str]] = []
        self.tables: Dict[str, Dict[str, List[List[str]]]] = {
            table: {chain: [] for chain in chains} for table, chains in BUILTIN.items()
        }
        self.policies: Dict[str, Dict[str, str]] = {
            table: {chain: "ACCEPT" for chain in chains} for table, chains in BUILTIN.items()
        }
        self.fail_on: List[str] = []
        self.other: List[List[str]] = []

    def rules(self, table: str, chain: str) -> List[List[str]]:
        return [list(r) for r in self.tables[table].get(chain, [])]

    def chains(self, table: str) -> List[str]:
        return list(self.tables[table])

    def snapshot(self) -> Dict[str, Dict[str, List[List[str]]]]:
        return {t: {c: [list(r) for r in rules] for c, rules in chains.items()}
                for t, chains in self.tables.items()}

    def _fail(self, cmd, message) -> CommandResult:
        return CommandResult(cmd, ok=False, returncode=1, stderr=message)

    def run(self, cmd: List[str], query: bool = False) -> CommandResult:
        cmd = [str(c) for c in cmd]
        self.history.append(cmd)
        line = " ".join(cmd)
        if any(pattern in line for pattern in self.fail_on):
            return self._fail(cmd, "injected failure")

        if cmd[0] != "iptables":
            self.other.append(cmd)
            return CommandResult(cmd, ok=True)

        table = cmd[2]
        args = cmd[3:]
        chains = self.tables[table]

        if "-L" in args:
            chain = args[args.index("-L") + 1]
            return CommandResult(cmd, ok=chain in chains, returncode=0 if chain in chains else 1)

        op, chain, spec = args[0], args[1], args[2:]

        if op == "-N":
            if chain in chains:
                return self._fail(cmd, "Chain already exists.")
            chains[chain] = []
            return CommandResult(cmd, ok=True)

        if chain not in chains:
            return self._fail(cmd, "No chain/target/match by that name.")

        if op == "-F":
            chains[chain] = []
        elif op == "-X":
            if chain in BUILTIN[table] or chains[chain]:
                return self._fail(cmd, "Directory not empty.")
            for rules in chains.values():
                for rule in rules:
                    if "-j" in rule and rule[rule.index("-j") + 1] == chain:
                        return self._fail(cmd, "Too many links.")
            del chains[chain]
        elif op == "-P":
            if chain not in BUILTIN[table]:
                return self._fail(cmd, "Bad built-in chain name")
            self.policies[table][chain] = spec[0]
        elif op == "-C":
            if spec not in chains[chain]:
                return self._fail(cmd, "Bad rule (does a matching rule exist in that chain?).")
        elif op in ("-I", "-A"):
            jump = spec[spec.index("-j") + 1]
            if jump not in STANDARD_TARGETS and jump not in chains:
                return self._fail(cmd, "Couldn't load target")
            if op == "-I":
                chains[chain].insert(0, spec)
            else:
                chains[chain].append(spec)
        elif op == "-D":
            if spec not in chains[chain]:
                return self._fail(cmd, "Bad rule (does a matching rule exist in that chain?).")
            chains[chain].remove(spec)
        else:
            return self._fail(cmd, f"unsupported operation {op}")

        return CommandResult(cmd, ok=True)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_iptables() -> FakeIptables:
    """In-memory iptables emulator."""
    return FakeIptables()


@pytest.fixture
def proxy_target():
    """Sample proxy target."""
    from proxy_config import ProxyTarget

    return ProxyTarget(
        listen_address="0.0.0.0",
        listen_port=1080,
        proxy_address="proxy.example.com",
        proxy_port=1081,
        proxy_type="socks5",
    )


@pytest.fixture
def redsocks_template(temp_dir: Path) -> Path:
    """Minimal redsocks configuration template."""
    path = temp_dir / "redsocks.conf.template"
    path.write_text(
        "redsocks {\n"
        "    local_ip = __REDSOCKS_ADDRESS__;\n"
        "    local_port = __REDSOCKS_PORT__;\n"
        "    ip = __PROXY_ADDRESS__;\n"
        "    port = __PROXY_PORT__;\n"
        "    type = __PROXY_TYPE__;\n"
        "}\n"
    )
    return path


@pytest.fixture
def write_config(temp_dir: Path, redsocks_template: Path) -> Callable[..., Path]:
    """Write a sysconfig file with sensible test defaults."""

    def _write(name: str = "setup-proxy", **overrides: Optional[str]) -> Path:
        values = {
            "CACHE_DIR": str(temp_dir / "cache"),
            "AUTOPROXY_URL": "http://wpad.example.com/wpad.dat",
            "AUTOPROXY_TIMEOUT": "5",
            "REDSOCKS_PORT": "1080",
            "REDSOCKS_TEMPLATE": str(redsocks_template),
            "REDSOCKS_CONFIG": str(temp_dir / "redsocks.conf"),
            "PROXY_ADDRESS": "proxy.example.com",
            "PROXY_PORT": "1081",
            "TRIGGER_INTERFACES": "eth* wlan0",
            "FORWARD_INTERFACES": "br0",
        }
        values.update(overrides)
        path = temp_dir / name
        path.write_text("".join(f'{k}="{v}"\n' for k, v in values.items() if v is not None))
        return path

    return _write
