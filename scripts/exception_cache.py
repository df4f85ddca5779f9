#!/usr/bin/env python3
"""代理绕过例外缓存

构建不得被重定向到透明代理的目的网络列表，合并三个来源：

1. 远程 autoproxy 文档（AUTOPROXY_URL），按 UTC 日缓存一次
2. 固定的始终绕过网络（以及 PROXY_ALWAYS_BYPASS 扩展）
3. 配置的额外绕过网络（PROXY_BYPASS）

CACHE_DIR 下的文件布局：

    autoproxy.<day>   远程原始文档，<day> = unix 时间 // 86400
    exceptions        合并后的 CIDR 列表，每行一个，已排序去重
    .lock             flock() 串行化并发调用

使用方式：
    cache = ExceptionCache.from_config(config)
    networks = cache.resolve()
"""

import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from itertools import chain
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

import requests

from proxy_config import ProxyConfig
from proxy_errors import FetchError
from proxynet import normalize_networks

# "本"网络、RFC1918、链路本地、组播、保留地址，以及部署环境保留的
# 163.33.0.0/16 网段
ALWAYS_BYPASS = (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "163.33.0.0/16",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "224.0.0.0/4",
    "240.0.0.0/4",
)

EXCEPTIONS_FILE = "exceptions"
LOCK_FILE = ".lock"
SECONDS_PER_DAY = 24 * 60 * 60

FETCH_ATTEMPTS = 5
FETCH_RETRY_DELAY = 2

# 获取列表时绝不经过代理，尤其是正在配置的这个代理
NO_PROXIES = {"http": None, "https": None}


def cache_key(now: float) -> int:
    """每日缓存键：自纪元起的完整 UTC 天数"""
    return int(now // SECONDS_PER_DAY)


def _atomic_write(path: Path, data: bytes) -> None:
    """先写入同目录临时文件，再重命名覆盖目标路径"""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class ExceptionCache:
    """获取、缓存并合并代理绕过网络"""

    def __init__(
        self,
        cache_dir: Path,
        url: str = "",
        cache_file: str = "autoproxy",
        timeout: int = 60,
        bypass: Sequence[str] = (),
        always_bypass: Sequence[str] = ALWAYS_BYPASS,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        attempts: int = FETCH_ATTEMPTS,
        retry_delay: float = FETCH_RETRY_DELAY,
    ):
        if not always_bypass:
            raise ValueError("always-bypass network list must not be empty")
        self.cache_dir = Path(cache_dir)
        self.url = url
        self.cache_file = cache_file
        self.timeout = timeout
        self.bypass = tuple(bypass)
        self.always_bypass = tuple(always_bypass)
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._session = session
        self._sleep = sleep
        self._clock = clock
        self._logger = logging.getLogger("exception-cache")

    @classmethod
    def from_config(cls, config: ProxyConfig, **kwargs) -> "ExceptionCache":
        """根据代理配置构建缓存"""
        return cls(
            cache_dir=config.cache_dir,
            url=config.autoproxy_url,
            cache_file=config.cache_file,
            timeout=config.autoproxy_timeout,
            bypass=config.bypass,
            always_bypass=ALWAYS_BYPASS + tuple(config.always_bypass),
            **kwargs,
        )

    @property
    def exceptions_path(self) -> Path:
        return self.cache_dir / EXCEPTIONS_FILE

    def cache_path(self, key: Optional[int] = None) -> Path:
        """某一天（默认今天）的 autoproxy 原始缓存文件"""
        if key is None:
            key = cache_key(self._clock())
        return self.cache_dir / f"{self.cache_file}.{key}"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """持有缓存目录的排他锁"""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with open(self.cache_dir / LOCK_FILE, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def resolve(self) -> List[str]:
        """生成合并后的绕过集合并持久化

        Returns:
            排序去重后的 CIDR 字符串

        Raises:
            FetchError: 远程列表未缓存且无法获取，此时不写入合并的例外文件
        """
        with self._locked():
            remote = self._cached_remote_list()
            remote_lines = remote.read_text(errors="replace").splitlines() if remote else []

            networks = normalize_networks(chain(remote_lines, self.always_bypass, self.bypass))

            data = "".join(f"{n}\n" for n in networks).encode()
            _atomic_write(self.exceptions_path, data)

        self._logger.info(f"Generated {len(networks)} proxy exceptions")
        return networks

    def load(self) -> List[str]:
        """读取合并后的例外文件，不存在时返回空列表"""
        try:
            text = self.exceptions_path.read_text()
        except FileNotFoundError:
            return []
        return [line.strip() for line in text.splitlines() if line.strip()]

    def _cached_remote_list(self) -> Optional[Path]:
        """返回今天的 autoproxy 原始文件，缺失或为空时重新获取"""
        if not self.url:
            self._logger.debug("No AUTOPROXY_URL configured, skipping remote list")
            return None

        path = self.cache_path()
        if path.is_file() and path.stat().st_size > 0:
            self._logger.debug(f"Using cached autoproxy list {path}")
            return path

        self._purge()
        content = self._fetch_with_retry()
        _atomic_write(path, content)
        self._logger.info(f"Cached autoproxy list {path} ({len(content)} bytes)")
        return path

    def _purge(self) -> None:
        """删除所有每日缓存文件和合并的例外文件"""
        stale = list(self.cache_dir.glob(f"{self.cache_file}.*"))
        stale.append(self.exceptions_path)
        for path in stale:
            try:
                path.unlink()
                self._logger.debug(f"Removed stale cache file {path}")
            except FileNotFoundError:
                pass

    def _fetch_with_retry(self) -> bytes:
        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                return self._fetch()
            except FetchError as e:
                last_error = e.reason
                self._logger.warning(f"Autoproxy fetch attempt {attempt}/{self.attempts} failed: {e.reason}")
            if attempt < self.attempts:
                self._sleep(self.retry_delay)
        raise FetchError(self.url, self.attempts, last_error)

    def _fetch(self) -> bytes:
        session = self._session
        if session is None:
            session = requests.Session()
            session.trust_env = False
            self._session = session

        try:
            response = session.get(self.url, timeout=self.timeout, proxies=NO_PROXIES)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(self.url, 1, str(e))

        if not response.content:
            raise FetchError(self.url, 1, "empty response")
        return response.content
