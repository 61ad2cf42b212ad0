"""领域协议定义

集中定义解析器、构建流水线所依赖的外部协作者接口（Protocol），
上层依赖抽象而非具体实现，测试时可直接注入内存实现。
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from rockyard.core.models import PackageDescriptor, SourceSpec, SourceTree
from rockyard.core.version import Version


# =========================================================================
# 清单提供者协议
# =========================================================================

class ManifestProvider(Protocol):
    """包清单提供者协议

    对给定包名返回所有已发布的 (版本, 描述) 对，顺序不限。
    注册表的传输细节对解析器不可见。
    """

    def list_versions(self, name: str) -> Sequence[tuple[Version, PackageDescriptor]]:
        """列出包的全部已发布版本

        异常:
            PackageNotFound: 包不存在
            ProviderUnavailable: 注册表不可达或数据损坏
        """
        ...


# =========================================================================
# 源码拉取协议
# =========================================================================

class SourceFetcher(Protocol):
    """源码拉取协议"""

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        """把 source 拉取到 dest 目录下，返回本地源码树句柄

        异常:
            NetworkFailure / FetchTimeout: 可重试的传输失败
            SourceNotFound: 来源不存在（不重试）
        """
        ...
