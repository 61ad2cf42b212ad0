"""安装树管理

每个 (运行时变体, 架构) 一棵树，根目录 <tree_root>/<variant>-<arch>/:

    share/lua/<lua 版本>/    Lua 模块
    lib/lua/<lua 版本>/      C 模块
    bin/                     可执行脚本
    etc/                     配置文件
    .rockyard/manifest.yml   本地清单: name@version -> {name, version, files, descriptor}

写操作持有该根目录的写锁，list / owner_of 等读操作持有读锁，不同根目录互不竞争。
文件按路径做引用计数: 同一包的不同版本可以共享路径，不同包之间不允许。
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rockyard.core.descriptor import descriptor_to_data, parse_descriptor
from rockyard.core.exceptions import (
    FileCollision,
    InstallError,
    InstallPermissionDenied,
    PackageNotFound,
)
from rockyard.core.models import BuildOutput, PackageDescriptor, ResolvedPackage, RuntimeVariant
from rockyard.core.version import Version, parse_version
from rockyard.utils.locks import LockRegistry, ReadWriteLock
from rockyard.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

MANIFEST_DIR = ".rockyard"
UNTRACKED = "(未登记文件)"


@dataclass(frozen=True)
class InstallTree:
    """安装树根目录"""

    root: Path
    variant: RuntimeVariant
    arch: str

    @classmethod
    def for_target(cls, tree_root: str | Path, variant: RuntimeVariant, arch: str) -> InstallTree:
        return cls(root=Path(tree_root) / f"{variant.value}-{arch}", variant=variant, arch=arch)

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_DIR / "manifest.yml"


def tree_layout(prefix: Path, variant: RuntimeVariant) -> dict[str, Path]:
    """安装前缀下的标准目录（构建变量 $(PREFIX) / $(LUADIR) 等即取自此处）"""
    lua_version = str(variant.lua_version)
    return {
        "PREFIX": prefix,
        "LUADIR": prefix / "share" / "lua" / lua_version,
        "LIBDIR": prefix / "lib" / "lua" / lua_version,
        "BINDIR": prefix / "bin",
        "CONFDIR": prefix / "etc",
    }


class InstalledListing:
    """已安装 (包名, 版本) 的快照，可重复迭代"""

    def __init__(self, items: Sequence[tuple[str, Version]]) -> None:
        self._items = tuple(items)

    def __iter__(self) -> Iterator[tuple[str, Version]]:
        return (item for item in self._items)

    def __len__(self) -> int:
        return len(self._items)


class InstallTreeManager:
    """安装树的唯一写入者"""

    def __init__(self) -> None:
        self._locks = LockRegistry()

    def _lock(self, tree: InstallTree) -> ReadWriteLock:
        return self._locks.get(tree.root.resolve())

    # ---- 清单读写 ----

    def _load(self, tree: InstallTree) -> dict[str, dict[str, Any]]:
        data = load_yaml(tree.manifest_path)
        packages = data.get("packages") or {}
        if not isinstance(packages, dict):
            raise InstallError(f"安装树清单损坏: {tree.manifest_path}")
        return packages

    def _save(self, tree: InstallTree, packages: dict[str, dict[str, Any]]) -> None:
        save_yaml(tree.manifest_path, {"packages": packages}, sort_keys=True)

    @staticmethod
    def _owners(packages: dict[str, dict[str, Any]]) -> dict[str, list[str]]:
        owners: dict[str, list[str]] = {}
        for key, entry in sorted(packages.items()):
            for rel in entry.get("files") or []:
                owners.setdefault(rel, []).append(key)
        return owners

    # ---- 写操作 ----

    def install(
        self, tree: InstallTree, package: ResolvedPackage, output: BuildOutput,
    ) -> list[str]:
        """把构建产物合并进安装树，返回写入的相对路径

        所有冲突检查在任何写入之前完成；复制失败时回滚已写入的文件。

        异常:
            FileCollision: 某路径已属于其他包（或是未登记的文件）
            InstallPermissionDenied: 无写权限
            InstallError: 其他 IO 失败
        """
        key = f"{package.name}@{package.version}"
        with self._lock(tree).write():
            packages = self._load(tree)
            owners = self._owners(packages)
            for rel in output.files:
                for owner in owners.get(rel, []):
                    if packages[owner].get("name") != package.name:
                        raise FileCollision(rel, owner, key)
                if rel not in owners and (tree.root / rel).exists():
                    raise FileCollision(rel, UNTRACKED, key)

            try:
                backup = Path(tempfile.mkdtemp(prefix="backup-", dir=self._scratch(tree)))
            except PermissionError as e:
                raise InstallPermissionDenied(f"无权写入安装树 {tree.root}: {e}") from e
            written: list[str] = []
            replaced: list[str] = []
            try:
                for rel in output.files:
                    src, dst = output.staging / rel, tree.root / rel
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    if dst.exists() or dst.is_symlink():
                        (backup / rel).parent.mkdir(parents=True, exist_ok=True)
                        dst.replace(backup / rel)
                        replaced.append(rel)
                    shutil.copy2(src, dst, follow_symlinks=False)
                    written.append(rel)

                entry: dict[str, Any] = {
                    "name": package.name,
                    "version": str(package.version),
                    "files": list(output.files),
                }
                if package.descriptor is not None:
                    entry["descriptor"] = descriptor_to_data(package.descriptor)
                packages[key] = entry
                self._save(tree, packages)
            except PermissionError as e:
                self._rollback(tree, backup, written, replaced)
                raise InstallPermissionDenied(f"无权写入安装树 {tree.root}: {e}") from e
            except OSError as e:
                self._rollback(tree, backup, written, replaced)
                raise InstallError(f"安装 {key} 失败: {e}") from e
            finally:
                shutil.rmtree(backup, ignore_errors=True)

        logger.info("已安装 %s -> %s (%d 个文件)", key, tree.root, len(written))
        return written

    def _scratch(self, tree: InstallTree) -> Path:
        path = tree.root / MANIFEST_DIR / "tmp"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _rollback(
        self, tree: InstallTree, backup: Path, written: list[str], replaced: list[str],
    ) -> None:
        for rel in reversed(written):
            (tree.root / rel).unlink(missing_ok=True)
        for rel in replaced:
            if (backup / rel).exists():
                (backup / rel).replace(tree.root / rel)
        self._prune_dirs(tree, written)
        logger.warning("安装失败，已回滚 %d 个文件", len(written))

    def _prune_dirs(self, tree: InstallTree, files: Sequence[str]) -> None:
        """删除因移除文件而变空的目录（不越过树根）"""
        root = tree.root.resolve()
        for rel in files:
            parent = (tree.root / rel).parent.resolve()
            while parent != root and root in parent.parents:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent

    def uninstall(self, tree: InstallTree, name: str, version: Version | str) -> list[str]:
        """移除 name@version 条目及其引用计数归零的文件，返回删除的相对路径

        异常:
            PackageNotFound: 该版本未安装
        """
        ver = version if isinstance(version, Version) else parse_version(version)
        with self._lock(tree).write():
            packages = self._load(tree)
            key = self._find_key(packages, name, ver)
            if key is None:
                raise PackageNotFound(f"{name}@{ver}")
            entry = packages.pop(key)
            still_owned = self._owners(packages)
            removed: list[str] = []
            try:
                for rel in entry.get("files") or []:
                    if rel in still_owned:
                        continue
                    (tree.root / rel).unlink(missing_ok=True)
                    removed.append(rel)
            except PermissionError as e:
                raise InstallPermissionDenied(f"无权删除 {tree.root} 中的文件: {e}") from e
            self._prune_dirs(tree, removed)
            self._save(tree, packages)
        logger.info("已卸载 %s (删除 %d 个文件)", key, len(removed))
        return removed

    @staticmethod
    def _find_key(packages: dict[str, dict[str, Any]], name: str, version: Version) -> str | None:
        for key, entry in packages.items():
            if entry.get("name") == name and parse_version(str(entry.get("version"))) == version:
                return key
        return None

    # ---- 读操作 ----

    def list(self, tree: InstallTree) -> InstalledListing:
        """读锁下取快照，返回可重复迭代的 (包名, 版本) 序列"""
        with self._lock(tree).read():
            packages = self._load(tree)
        items = sorted(
            ((str(e["name"]), parse_version(str(e["version"]))) for e in packages.values()),
            key=lambda nv: (nv[0], nv[1]),
        )
        return InstalledListing(items)

    def is_installed(self, tree: InstallTree, name: str, version: Version) -> bool:
        with self._lock(tree).read():
            return self._find_key(self._load(tree), name, version) is not None

    def owner_of(self, tree: InstallTree, path: str) -> str | None:
        """路径（相对树根）的所属条目 name@version，无主返回 None"""
        with self._lock(tree).read():
            owners = self._owners(self._load(tree)).get(path)
        return owners[0] if owners else None

    def files_of(self, tree: InstallTree, name: str, version: Version | str) -> list[str]:
        ver = version if isinstance(version, Version) else parse_version(version)
        with self._lock(tree).read():
            packages = self._load(tree)
            key = self._find_key(packages, name, ver)
            if key is None:
                raise PackageNotFound(f"{name}@{ver}")
            return list(packages[key].get("files") or [])

    def descriptors(self, tree: InstallTree) -> list[PackageDescriptor]:
        """已安装条目中记录的包描述"""
        with self._lock(tree).read():
            packages = self._load(tree)
        return [
            parse_descriptor(e["descriptor"])
            for _, e in sorted(packages.items()) if e.get("descriptor")
        ]


class TreeManifestProvider:
    """把安装树中记录的描述作为清单提供者，用于离线重新解析"""

    def __init__(self, manager: InstallTreeManager, tree: InstallTree) -> None:
        self.manager = manager
        self.tree = tree

    def list_versions(self, name: str) -> Sequence[tuple[Version, PackageDescriptor]]:
        found = tuple(
            (d.version, d) for d in self.manager.descriptors(self.tree) if d.name == name
        )
        if not found:
            raise PackageNotFound(name)
        return found
