"""构建缓存管理

缓存策略:
  - 以 (包名, 版本, 变体, 架构, 完整性摘要) 为缓存键
  - 命中时直接复用已暂存的产物，跳过后端调用
  - 未声明完整性摘要的包不缓存（内容未被钉住）
  - 写入先落到临时目录再原子改名，并发写同一键时先到者保留
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path

from rockyard.core.models import ResolvedPackage

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str, str, str]


def cache_key(pkg: ResolvedPackage, arch: str) -> CacheKey:
    return (pkg.name, str(pkg.version), pkg.variant.value, arch, pkg.integrity)


class BuildCache:
    """基于目录的构建产物缓存"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: CacheKey) -> Path:
        digest = hashlib.sha256("\0".join(key).encode("utf-8")).hexdigest()[:24]
        return self.root / key[0] / digest

    def get(self, key: CacheKey) -> Path | None:
        """返回缓存的 staging 目录，未命中返回 None"""
        if not key[-1]:
            return None
        path = self._path(key)
        if not path.is_dir():
            return None
        logger.info("构建缓存命中: %s@%s (%s-%s)", key[0], key[1], key[2], key[3])
        return path

    def put(self, key: CacheKey, staging: Path) -> Path | None:
        """缓存 staging 目录内容，返回缓存路径；无摘要的包不缓存"""
        if not key[-1]:
            return None
        target = self._path(key)
        if target.is_dir():
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix=".tmp-", dir=str(target.parent)))
        try:
            shutil.copytree(staging, tmp, dirs_exist_ok=True, symlinks=True)
            os.rename(tmp, target)
        except OSError:
            # 另一个线程已写入同一键
            shutil.rmtree(tmp, ignore_errors=True)
            if not target.is_dir():
                raise
        logger.debug("构建产物已缓存: %s", target)
        return target

    def invalidate(self, name: str) -> bool:
        """清除某个包的全部缓存"""
        path = self.root / name
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True
