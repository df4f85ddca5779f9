#!/usr/bin/env python3
"""绕过网络提取与规范化

将自由格式的网络列表转换为排序、去重的 IPv4 CIDR 字符串列表。
每行可接受的输入：

- CIDR 表示:          10.0.0.0/8
- 单个地址:           198.51.100.7        -> 198.51.100.7/32
- 地址加掩码:         10.0.0.0 255.0.0.0  -> 10.0.0.0/8
- PAC isInNet() 调用: isInNet(host, "10.0.0.0", "255.0.0.0")

注释（# 和 //）被忽略。IPv6 网络被跳过（管理的是 iptables IPv4 链）。
仅当地址在掩码之外没有主机位时才按"地址 掩码"配对，否则两个令牌
各自解析为独立地址。重叠网络保留为独立条目。
"""

import ipaddress
import logging
import re
from typing import Iterable, List, Optional

logger = logging.getLogger("proxynet")

IS_IN_NET_PATTERN = re.compile(
    r'isInNet\s*\(\s*[^,]+,\s*["\']([0-9.]+)["\']\s*,\s*["\']([0-9.]+)["\']\s*\)'
)
COMMENT_PATTERN = re.compile(r'(#|//).*$')
TOKEN_SEPARATORS = re.compile(r'[\s,;]+')
DOTTED_QUAD = re.compile(r'^\d{1,3}(\.\d{1,3}){3}$')


def parse_network(token: str, netmask: Optional[str] = None) -> Optional[ipaddress.IPv4Network]:
    """解析单个网络令牌，非 IPv4 网络时返回 None"""
    text = token if netmask is None else f"{token}/{netmask}"
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError:
        return None
    if network.version != 4:
        logger.debug(f"Skipping non-IPv4 network: {text}")
        return None
    return network


def _is_netmask(token: str) -> bool:
    if not DOTTED_QUAD.match(token):
        return False
    try:
        mask = int(ipaddress.IPv4Address(token))
        ipaddress.IPv4Network(f"0.0.0.0/{token}")
    except ValueError:
        return False
    # 仅接受掩码形式（前导 1 位），排除反掩码和 0.0.0.0
    return bool(mask & 0x80000000)


def _is_address_netmask_pair(token: str, following: Optional[str]) -> bool:
    """检查两个令牌能否组成"网络地址 掩码"

    地址在掩码之外带有主机位时（例如两个相邻的单独地址
    198.51.100.7 224.0.0.0）不配对。
    """
    if not following or "/" in token or not DOTTED_QUAD.match(token):
        return False
    if not _is_netmask(following):
        return False
    try:
        ipaddress.IPv4Network(f"{token}/{following}", strict=True)
    except ValueError:
        return False
    return True


def extract_networks(line: str) -> List[ipaddress.IPv4Network]:
    """从一行输入中提取所有 IPv4 网络"""
    matches = IS_IN_NET_PATTERN.findall(line)
    if matches:
        networks = []
        for address, netmask in matches:
            network = parse_network(address, netmask)
            if network is not None:
                networks.append(network)
        return networks

    line = COMMENT_PATTERN.sub("", line).strip()
    if not line:
        return []

    tokens = [t for t in TOKEN_SEPARATORS.split(line) if t]
    networks = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        following = tokens[i + 1] if i + 1 < len(tokens) else None
        if _is_address_netmask_pair(token, following):
            network = parse_network(token, following)
            i += 2
        else:
            network = parse_network(token)
            i += 1
        if network is None:
            logger.debug(f"Ignoring token: {token}")
            continue
        networks.append(network)
    return networks


def normalize_networks(lines: Iterable[str]) -> List[str]:
    """规范化、去重并排序任意多行中的网络

    Returns:
        按网络地址、再按前缀长度排序的 CIDR 字符串
    """
    unique = set()
    for line in lines:
        unique.update(extract_networks(line))
    ordered = sorted(unique, key=lambda n: (int(n.network_address), n.prefixlen))
    return [str(n) for n in ordered]
