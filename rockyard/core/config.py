"""集中配置管理

所有路径、并发度、重试与工具链命令统一由 Config 提供。
支持从 YAML 文件加载 + 编程式覆盖。
"""

from __future__ import annotations

import logging
import os
import platform
from dataclasses import asdict, dataclass, field

from rockyard.core.exceptions import ConfigError, ValidationError
from rockyard.core.models import RuntimeVariant
from rockyard.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "configs/default.yml"


def _default_arch() -> str:
    """<os>-<machine>，如 linux-x86_64"""
    return f"{platform.system().lower() or 'unknown'}-{platform.machine().lower() or 'unknown'}"


@dataclass
class Config:
    """全局配置"""

    # 项目
    project_file: str = "rockyard.yml"
    lockfile: str = "rockyard.lock"
    registry: str = "registry.yml"

    # 目录
    tree_root: str = "lua_modules"
    cache_dir: str = ".rockyard/cache"
    build_dir: str = ".rockyard/build"

    # 目标
    runtimes: list[str] = field(default_factory=lambda: ["5.4"])
    arch: str = field(default_factory=_default_arch)

    # 执行
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    best_effort: bool = False
    command_timeout: int = 1800        # 单条构建命令超时（秒）

    # 拉取
    fetch_retries: int = 3
    fetch_backoff: float = 1.0         # 首次重试前的等待（秒），之后指数翻倍
    fetch_timeout: int = 300

    # 工具链
    make_cmd: str = "make"
    cmake_cmd: str = "cmake"
    cc: str = "cc"

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_PATH) -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f for f in cls.__dataclass_fields__}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if isinstance(self.runtimes, str):
            self.runtimes = [self.runtimes]
        try:
            for r in self.runtimes:
                RuntimeVariant.parse(r)
        except ValidationError as e:
            raise ConfigError(f"runtimes 配置无效: {e}") from e
        if int(self.max_workers) < 1:
            raise ConfigError(f"max_workers 必须 >= 1: {self.max_workers}")
        if int(self.fetch_retries) < 0:
            raise ConfigError(f"fetch_retries 不能为负数: {self.fetch_retries}")

    def variants(self) -> list[RuntimeVariant]:
        return [RuntimeVariant.parse(r) for r in self.runtimes]

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current
