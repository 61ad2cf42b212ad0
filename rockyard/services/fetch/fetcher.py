"""源码拉取器 - 按来源类型分发 + 可重试失败的指数退避"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Callable

from rockyard.core.exceptions import FetchError
from rockyard.core.models import SourceKind, SourceSpec, SourceTree
from rockyard.services.fetch.sources import FileSource, GitSource, UrlSource
from rockyard.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class Fetcher:
    """SourceFetcher 协议的默认实现

    NetworkFailure / FetchTimeout 最多重试 retries 次，
    第 n 次重试前等待 backoff * 2**(n-1) 秒；SourceNotFound 等不可重试错误直接抛出。
    """

    def __init__(
        self,
        *,
        retries: int = 3,
        backoff: float = 1.0,
        timeout: float = 300,
        executor: CommandExecutor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.retries = max(0, retries)
        self.backoff = backoff
        self._sleep = sleep
        self._sources = {
            SourceKind.FILE: FileSource(),
            SourceKind.URL: UrlSource(timeout=timeout),
            SourceKind.GIT: GitSource(executor=executor, timeout=timeout),
        }

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        handler = self._sources[source.kind]
        attempt = 0
        while True:
            if dest.exists():
                shutil.rmtree(dest)
            try:
                return handler.fetch(source, dest)
            except FetchError as e:
                if not e.retryable or attempt >= self.retries:
                    raise
                attempt += 1
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    "拉取失败，%.1f 秒后重试 (%d/%d): %s", delay, attempt, self.retries, e,
                )
                self._sleep(delay)
