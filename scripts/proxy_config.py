#!/usr/bin/env python3
"""代理设置配置

读取一次 sysconfig 文件，填充默认值并校验，结果为不可变的
ProxyConfig，交给所有组件使用。

支持两种格式：
- shell 风格 sysconfig（KEY=value、带引号的多行值、# 注释），
  使用 shlex 解析而不是 source 执行
- YAML，文件名以 .yaml/.yml 结尾

/etc/sysconfig/redsocks-setup-proxy 示例：

    AUTOPROXY_URL=http://proxy.example.com/wpad.dat
    PROXY_ADDRESS=proxy.example.com
    PROXY_PORT=1080
    TRIGGER_INTERFACES="eth* wlan*"
    PROXY_BYPASS="
    172.16.5.0/24
    "
"""

import fnmatch
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import yaml

from proxy_errors import ConfigError, ConfigMissing

CONFIG_FILES = (
    Path("/etc/sysconfig/redsocks-setup-proxy"),
    Path("/etc/sysconfig/setup-proxy"),
)
CONFIG_ENV_VAR = "REDSOCKS_SETUP_PROXY_CONFIG"

DEFAULTS: Dict[str, str] = {
    "CACHE_DIR": "/var/cache/redsocks-config",
    "CACHE_FILE": "autoproxy",
    "AUTOPROXY_URL": "",
    "AUTOPROXY_TIMEOUT": "60",
    "REDSOCKS_ADDRESS": "0.0.0.0",
    "REDSOCKS_PORT": "1080",
    "REDSOCKS_TEMPLATE": "/etc/redsocks/redsocks.conf.template",
    "REDSOCKS_CONFIG": "/etc/redsocks.conf",
    "REDSOCKS_SERVICE": "redsocks",
    "PROXY_ADDRESS": "unset-proxy-address",
    "PROXY_PORT": "1080",
    "PROXY_TYPE": "socks5",
    "PROXY_BYPASS": "",
    "PROXY_ALWAYS_BYPASS": "",
    "FORWARD_INTERFACES": "",
    "TRIGGER_INTERFACES": "",
    "DEBUG_FILE": "",
    "HOOK_MODULES": "",
    "IPTABLES": "iptables",
}

# redsocks 支持的转发类型
PROXY_TYPES = ("socks4", "socks5", "http-connect", "http-relay")

logger = logging.getLogger("proxy-config")


@dataclass(frozen=True)
class ProxyTarget:
    """本地 redsocks 监听地址及其转发到的上游代理"""
    listen_address: str
    listen_port: int
    proxy_address: str
    proxy_port: int
    proxy_type: str = "socks5"

    def substitutions(self) -> Dict[str, str]:
        """生成 redsocks.conf 所用的模板变量"""
        return {
            "REDSOCKS_ADDRESS": self.listen_address,
            "REDSOCKS_PORT": str(self.listen_port),
            "PROXY_ADDRESS": self.proxy_address,
            "PROXY_PORT": str(self.proxy_port),
            "PROXY_TYPE": self.proxy_type,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """校验后的代理设置配置"""
    target: ProxyTarget
    cache_dir: Path
    cache_file: str = "autoproxy"
    autoproxy_url: str = ""
    autoproxy_timeout: int = 60
    redsocks_template: Path = Path("/etc/redsocks/redsocks.conf.template")
    redsocks_config: Path = Path("/etc/redsocks.conf")
    redsocks_service: str = "redsocks"
    bypass: Tuple[str, ...] = ()
    always_bypass: Tuple[str, ...] = ()
    forward_interfaces: Tuple[str, ...] = ()
    trigger_interfaces: Tuple[str, ...] = ()
    debug_file: Optional[Path] = None
    hook_modules: Tuple[str, ...] = ()
    iptables: str = "iptables"
    source: Optional[Path] = None

    def is_trigger(self, device: Optional[str]) -> bool:
        """检查设备是否匹配任一触发接口模式"""
        if not device:
            return False
        return any(fnmatch.fnmatchcase(device, pattern) for pattern in self.trigger_interfaces)


def parse_sysconfig(text: str) -> Dict[str, str]:
    """解析 sysconfig 风格文件中的 KEY=value 赋值

    仅处理赋值语句，不执行命令、函数或变量展开。
    """
    try:
        tokens = shlex.split(text, comments=True, posix=True)
    except ValueError as e:
        raise ConfigError(f"malformed configuration: {e}")

    values: Dict[str, str] = {}
    for token in tokens:
        if "=" not in token:
            continue
        key, _, value = token.partition("=")
        if key.isidentifier():
            values[key] = value
    return values


def parse_yaml_config(text: str) -> Dict[str, str]:
    """解析 YAML 配置映射，键不区分大小写"""
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"malformed configuration: {e}")
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    values: Dict[str, str] = {}
    for key, value in data.items():
        key = str(key).upper()
        if value is None:
            values[key] = ""
        elif isinstance(value, (list, tuple)):
            values[key] = " ".join(str(v) for v in value)
        else:
            values[key] = str(value)
    return values


def _split_words(value: str) -> Tuple[str, ...]:
    return tuple(value.split())


def _parse_port(values: Dict[str, str], key: str) -> int:
    raw = values[key].strip()
    try:
        port = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a port number, got {raw!r}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key} out of range: {port}")
    return port


def build_config(raw: Dict[str, Any], source: Optional[Path] = None) -> ProxyConfig:
    """为原始 KEY=value 填充默认值并校验"""
    values = dict(DEFAULTS)
    values.update({k: str(v) for k, v in raw.items() if v is not None})

    proxy_type = values["PROXY_TYPE"].strip()
    if proxy_type not in PROXY_TYPES:
        raise ConfigError(f"PROXY_TYPE must be one of {', '.join(PROXY_TYPES)}, got {proxy_type!r}")

    try:
        timeout = int(values["AUTOPROXY_TIMEOUT"])
    except ValueError:
        raise ConfigError(f"AUTOPROXY_TIMEOUT must be an integer, got {values['AUTOPROXY_TIMEOUT']!r}")
    if timeout <= 0:
        raise ConfigError("AUTOPROXY_TIMEOUT must be positive")

    target = ProxyTarget(
        listen_address=values["REDSOCKS_ADDRESS"].strip(),
        listen_port=_parse_port(values, "REDSOCKS_PORT"),
        proxy_address=values["PROXY_ADDRESS"].strip(),
        proxy_port=_parse_port(values, "PROXY_PORT"),
        proxy_type=proxy_type,
    )

    debug_file = values["DEBUG_FILE"].strip()

    return ProxyConfig(
        target=target,
        cache_dir=Path(values["CACHE_DIR"]),
        cache_file=values["CACHE_FILE"].strip(),
        autoproxy_url=values["AUTOPROXY_URL"].strip(),
        autoproxy_timeout=timeout,
        redsocks_template=Path(values["REDSOCKS_TEMPLATE"]),
        redsocks_config=Path(values["REDSOCKS_CONFIG"]),
        redsocks_service=values["REDSOCKS_SERVICE"].strip(),
        bypass=_split_words(values["PROXY_BYPASS"]),
        always_bypass=_split_words(values["PROXY_ALWAYS_BYPASS"]),
        forward_interfaces=_split_words(values["FORWARD_INTERFACES"]),
        trigger_interfaces=_split_words(values["TRIGGER_INTERFACES"]),
        debug_file=Path(debug_file) if debug_file else None,
        hook_modules=_split_words(values["HOOK_MODULES"]),
        iptables=values["IPTABLES"].strip() or "iptables",
        source=source,
    )


def find_config(candidates: Optional[Iterable[Path]] = None) -> Path:
    """返回第一个存在的配置文件"""
    if candidates is None:
        override = os.environ.get(CONFIG_ENV_VAR)
        candidates = [Path(override)] if override else CONFIG_FILES
    candidates = [Path(c) for c in candidates]

    for path in candidates:
        if path.is_file():
            return path
    raise ConfigMissing([str(c) for c in candidates])


def load_config(path: Optional[Path] = None) -> ProxyConfig:
    """加载并校验代理配置

    Args:
        path: 显式指定的配置文件，否则使用标准位置

    Raises:
        ConfigMissing: 配置文件不存在
        ConfigError: 文件不可读或包含无效值
    """
    config_path = find_config([path] if path else None)

    try:
        text = config_path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read {config_path}: {e}")

    if config_path.suffix in (".yaml", ".yml"):
        raw = parse_yaml_config(text)
    else:
        raw = parse_sysconfig(text)

    config = build_config(raw, source=config_path)
    logger.debug(f"Loaded configuration from {config_path}")
    return config
