"""清单提供者实现

- YamlManifestProvider:     读取注册表 YAML 文件（packages: {名称: [描述, ...]}）
- InMemoryManifestProvider: 内存清单，测试和离线场景使用
- CachedManifestProvider:   包装任意提供者，按包名写一次、读多次，线程安全

注册表文件格式:

    packages:
      foo:
        - version: "1.0"
          source: {url: "https://example.org/foo-1.0.tar.gz", integrity: "sha256-..."}
          dependencies: ["bar >= 2.0"]
          build: {type: builtin}
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path

import yaml

from rockyard.core.descriptor import parse_descriptor
from rockyard.core.exceptions import (
    MalformedVersion,
    PackageNotFound,
    ProviderUnavailable,
    ValidationError,
)
from rockyard.core.models import PackageDescriptor
from rockyard.core.protocols import ManifestProvider
from rockyard.core.version import Version
from rockyard.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

Entries = tuple[tuple[Version, PackageDescriptor], ...]


class InMemoryManifestProvider:
    """内存清单"""

    def __init__(self, descriptors: Iterable[PackageDescriptor] = ()) -> None:
        self._packages: dict[str, dict[Version, PackageDescriptor]] = {}
        for desc in descriptors:
            self.add(desc)

    def add(self, desc: PackageDescriptor) -> None:
        self._packages.setdefault(desc.name, {})[desc.version] = desc

    def names(self) -> list[str]:
        return sorted(self._packages)

    def list_versions(self, name: str) -> Sequence[tuple[Version, PackageDescriptor]]:
        versions = self._packages.get(name)
        if not versions:
            raise PackageNotFound(name)
        return tuple(versions.items())


class YamlManifestProvider:
    """注册表 YAML 文件

    文件在构造时整体读入；单个包的描述在首次查询时才解析。
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if not self.path.exists():
            raise ProviderUnavailable(f"注册表文件不存在: {self.path}")
        try:
            data = load_yaml(self.path)
        except (yaml.YAMLError, OSError, ValueError) as e:
            raise ProviderUnavailable(f"注册表无法读取: {self.path}: {e}") from e
        raw = data.get("packages") or {}
        if not isinstance(raw, dict):
            raise ProviderUnavailable(f"注册表 packages 段必须是映射: {self.path}")
        self._raw: dict[str, list] = {str(k).lower(): v or [] for k, v in raw.items()}
        logger.debug("注册表已加载: %s (%d 个包)", self.path, len(self._raw))

    def names(self) -> list[str]:
        return sorted(self._raw)

    def list_versions(self, name: str) -> Sequence[tuple[Version, PackageDescriptor]]:
        items = self._raw.get(name)
        if items is None:
            raise PackageNotFound(name)
        if not isinstance(items, list):
            raise ProviderUnavailable(f"注册表中 {name} 的条目必须是列表")
        result: list[tuple[Version, PackageDescriptor]] = []
        for item in items:
            try:
                desc = parse_descriptor(item, name=name)
            except (ValidationError, MalformedVersion) as e:
                raise ProviderUnavailable(f"注册表中 {name} 的描述无效: {e}") from e
            result.append((desc.version, desc))
        return tuple(result)


class CachedManifestProvider:
    """按包名缓存查询结果

    每个包名只写一次；并发首次查询同一包名时可能重复查询底层提供者，
    但只有第一个结果被保留。PackageNotFound 同样缓存。
    """

    def __init__(self, inner: ManifestProvider) -> None:
        self.inner = inner
        self._lock = threading.Lock()
        self._cache: dict[str, Entries | PackageNotFound] = {}
        self.queries = 0

    def list_versions(self, name: str) -> Sequence[tuple[Version, PackageDescriptor]]:
        with self._lock:
            cached = self._cache.get(name)
        if cached is None:
            try:
                cached = tuple(self.inner.list_versions(name))
            except PackageNotFound as e:
                cached = e
            with self._lock:
                self.queries += 1
                cached = self._cache.setdefault(name, cached)
        if isinstance(cached, PackageNotFound):
            raise PackageNotFound(cached.name)
        return cached

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
