"""项目文件加载

rockyard.yml 示例:

    name: my-app
    runtimes: ["5.1", "5.4"]      # 可选，缺省取 Config.runtimes
    dependencies:
      - "lua >= 5.1"
      - "penlight ~> 1.13"
      - {name: luasocket, version: ">= 3.0", optional: true}
      - {name: bit32, runtimes: ["5.1"]}
    build_dependencies:           # 可选，构建期工具
      - "luarocks-build-treesitter"
    test_dependencies:            # 可选
      - "busted >= 2"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from rockyard.core.descriptor import parse_dependency
from rockyard.core.exceptions import ConfigError, MalformedConstraint, ValidationError
from rockyard.core.lockfile import BUILD_DEPENDENCIES, DEPENDENCIES, TEST_DEPENDENCIES
from rockyard.core.models import Dependency, RuntimeVariant
from rockyard.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)


@dataclass
class Project:
    """项目声明"""

    name: str
    path: Path
    dependencies: list[Dependency] = field(default_factory=list)
    runtimes: list[RuntimeVariant] = field(default_factory=list)
    build_dependencies: list[Dependency] = field(default_factory=list)
    test_dependencies: list[Dependency] = field(default_factory=list)

    def variants(self, default: list[RuntimeVariant]) -> list[RuntimeVariant]:
        return self.runtimes or list(default)

    def requirements(self) -> dict[str, list[Dependency]]:
        """锁文件分区 -> 该分区的根依赖"""
        return {
            DEPENDENCIES: self.dependencies,
            BUILD_DEPENDENCIES: self.build_dependencies,
            TEST_DEPENDENCIES: self.test_dependencies,
        }


def _parse_dependencies(data: dict[str, Any], key: str, p: Path, errors: list[str]) -> list[Dependency]:
    raw = data.get(key) or []
    if not isinstance(raw, list):
        raise ValidationError(f"{p}: {key} 必须是列表")
    deps: list[Dependency] = []
    for item in raw:
        try:
            deps.append(parse_dependency(item))
        except (ValidationError, MalformedConstraint) as e:
            errors.append(f"{key}: {e}")
    return deps


def load_project(path: str | Path) -> Project:
    """读取项目文件

    异常:
        ConfigError: 文件不存在或不是合法 YAML
        ValidationError: 依赖 / 运行时声明无效
        MalformedConstraint: 依赖约束无法解析
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"项目文件不存在: {p}")
    try:
        data = load_yaml(p)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"项目文件无法解析: {p}: {e}") from e

    errors: list[str] = []
    deps = _parse_dependencies(data, DEPENDENCIES, p, errors)
    build_deps = _parse_dependencies(data, BUILD_DEPENDENCIES, p, errors)
    test_deps = _parse_dependencies(data, TEST_DEPENDENCIES, p, errors)
    if errors:
        raise ValidationError(f"{p}: 依赖声明无效", details=errors)

    runtimes = data.get("runtimes") or []
    if isinstance(runtimes, str):
        runtimes = [runtimes]
    project = Project(
        name=str(data.get("name") or p.parent.resolve().name),
        path=p,
        dependencies=deps,
        runtimes=[RuntimeVariant.parse(r) for r in runtimes],
        build_dependencies=build_deps,
        test_dependencies=test_deps,
    )
    logger.debug(
        "项目已加载: %s (%d 个依赖, %d 个构建依赖, %d 个测试依赖)",
        project.name, len(deps), len(build_deps), len(test_deps),
    )
    return project
