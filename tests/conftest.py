"""测试公共 fixture: 描述工厂、假命令执行器、假拉取器、工作区生成"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Callable

import pytest

from rockyard.core.config import Config
from rockyard.core.descriptor import parse_descriptor
from rockyard.core.exceptions import FetchError
from rockyard.core.models import PackageDescriptor, SourceSpec, SourceTree
from rockyard.services.fetch.digest import tree_digest
from rockyard.utils.shell import CommandResult
from rockyard.utils.yaml_io import save_yaml


def make_descriptor(
    name: str,
    version: str,
    deps: list[Any] | None = None,
    **extra: Any,
) -> PackageDescriptor:
    data: dict[str, Any] = {
        "name": name,
        "version": version,
        "dependencies": deps or [],
        "source": {"file": f"/srv/rocks/{name}-{version}"},
    }
    data.update(extra)
    return parse_descriptor(data)


@pytest.fixture()
def desc() -> Callable[..., PackageDescriptor]:
    """包描述工厂: desc("foo", "1.0", ["bar >= 1"], runtimes=["5.4"])"""
    return make_descriptor


class FakeExecutor:
    """记录调用的命令执行器；handler(cmd, cwd, env) 可返回 CommandResult 或 None（视为成功）"""

    def __init__(self, handler: Callable[..., CommandResult | None] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.terminations = 0
        self._handler = handler

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        args = cmd.split() if isinstance(cmd, str) else list(cmd)
        self.calls.append(args)
        if self._handler is not None:
            result = self._handler(args, cwd, env or {})
            if result is not None:
                return result
        return CommandResult(returncode=0, stdout="", stderr="")

    def terminate_all(self) -> int:
        self.terminations += 1
        return 0


@pytest.fixture()
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


class FakeFetcher:
    """按包来源 location 从 trees 中复制预先准备的源码树

    errors 中的 location 抛对应异常（每次都抛）。
    """

    def __init__(self, trees: dict[str, Path] | None = None) -> None:
        self.trees = dict(trees or {})
        self.errors: dict[str, FetchError] = {}
        self.fetched: list[str] = []

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        self.fetched.append(source.location)
        if source.location in self.errors:
            raise self.errors[source.location]
        src = self.trees[source.location]
        shutil.copytree(src, dest)
        return SourceTree(path=dest, source=source)


@pytest.fixture()
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """在 root 下按 相对路径 -> 内容 写出文件"""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def make_workspace(
    root: Path,
    registry: dict[str, list[dict[str, Any]]],
    dependencies: list[Any],
    **overrides: Any,
) -> Config:
    """在 root 下生成注册表、项目文件与配置文件，返回对应的 Config

    registry 条目可带:
      files:     源码树内容，缺省为单个 <name>.lua
      integrity: "auto"（缺省，按源码树计算）/ 空串（不声明）/ 指定值
    配置同时写到 root/rockyard-config.yml，供 CLI 的 --config 使用。
    """
    packages: dict[str, list[dict[str, Any]]] = {}
    for name, entries in registry.items():
        for raw in entries:
            entry = dict(raw)
            files = entry.pop("files", {f"{name}.lua": f"return '{name} {entry['version']}'"})
            src = write_tree(root / "upstream" / f"{name}-{entry['version']}", files)
            source: dict[str, str] = {"file": str(src)}
            integrity = entry.pop("integrity", "auto")
            if integrity:
                source["integrity"] = tree_digest(src) if integrity == "auto" else integrity
            entry["source"] = source
            packages.setdefault(name, []).append(entry)
    save_yaml(root / "registry.yml", {"packages": packages})
    save_yaml(root / "rockyard.yml", {"name": "demo", "dependencies": dependencies})

    values: dict[str, Any] = {
        "project_file": str(root / "rockyard.yml"),
        "lockfile": str(root / "rockyard.lock"),
        "registry": str(root / "registry.yml"),
        "tree_root": str(root / "lua_modules"),
        "cache_dir": str(root / ".rockyard" / "cache"),
        "build_dir": str(root / ".rockyard" / "build"),
        "runtimes": ["5.4"],
        "arch": "linux-x86_64",
        "max_workers": 2,
        "fetch_retries": 0,
    }
    values.update(overrides)
    save_yaml(root / "rockyard-config.yml", values)
    return Config(**values)
