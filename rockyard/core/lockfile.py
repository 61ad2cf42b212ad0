"""锁文件编解码

锁文件是 Resolution 的规范化 YAML 文本（可按行 diff）:

    build_dependencies:          # 可选，结构同顶层运行依赖（不含 format）
      packages: [...]
      requirements: [...]
      roots: {...}
      variants: [...]
    format: 1
    packages:
    - dependencies:
      - bar
      integrity: sha256-...
      name: foo
      pinned: false
      variant: '5.4'
      version: 1.9-1
    requirements:
    - foo >= 1.0, < 2.0
    roots:
      '5.4':
      - foo
    test_dependencies:           # 可选
      ...
    variants:
    - '5.4'

顶层是运行依赖；构建依赖与测试依赖各自独立锁定，为空时省略。
键按字母序、包按 (包名, 变体) 排序，语义相同的解析结果编码后逐字节相同。
从未激活的可选 / 条件依赖不会出现在锁文件中。
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from rockyard.core.exceptions import (
    LockfileCorrupt,
    PackageNotFound,
    ResolutionError,
    RockyardError,
    ValidationError,
)
from rockyard.core.models import Resolution, ResolvedPackage, RuntimeVariant, variant_order
from rockyard.core.protocols import ManifestProvider
from rockyard.core.resolver import Requirement, normalize_requirements
from rockyard.core.version import parse_requirement, parse_version
from rockyard.utils.yaml_io import atomic_write, dump_yaml

logger = logging.getLogger(__name__)

LOCKFILE_FORMAT = 1

DEPENDENCIES = "dependencies"
BUILD_DEPENDENCIES = "build_dependencies"
TEST_DEPENDENCIES = "test_dependencies"
SECTIONS = (DEPENDENCIES, BUILD_DEPENDENCIES, TEST_DEPENDENCIES)


def is_empty(resolution: Resolution) -> bool:
    return not resolution.variants and not resolution.packages


@dataclass
class Lockfile:
    """锁文件内容: 运行依赖、构建依赖、测试依赖三份独立的 Resolution"""

    dependencies: Resolution = field(default_factory=Resolution)
    build_dependencies: Resolution = field(default_factory=Resolution)
    test_dependencies: Resolution = field(default_factory=Resolution)

    def section(self, name: str) -> Resolution:
        if name not in SECTIONS:
            raise ValidationError(f"未知的锁文件分区: {name}")
        return getattr(self, name)

    def replace(self, name: str, resolution: Resolution) -> Lockfile:
        self.section(name)
        return dataclasses.replace(self, **{name: resolution})


# =========================================================================
# 编码
# =========================================================================


def _resolution_data(resolution: Resolution) -> dict[str, Any]:
    variants = sorted(resolution.variants, key=variant_order)
    packages = sorted(
        resolution.packages.values(),
        key=lambda p: (p.name, variant_order(p.variant)),
    )
    return {
        "requirements": sorted(resolution.requirements),
        "variants": [v.value for v in variants],
        "roots": {
            v.value: sorted(resolution.roots.get(v, ())) for v in variants
        },
        "packages": [
            {
                "name": p.name,
                "variant": p.variant.value,
                "version": str(p.version),
                "integrity": p.integrity,
                "dependencies": list(p.dependencies),
                "pinned": p.pinned,
            }
            for p in packages
        ],
    }


def _dump(data: dict[str, Any]) -> bytes:
    return dump_yaml(data, sort_keys=True).encode("utf-8")


def encode(resolution: Resolution) -> bytes:
    """Resolution -> 规范化锁文件字节"""
    return _dump({"format": LOCKFILE_FORMAT, **_resolution_data(resolution)})


def encode_lockfile(lock: Lockfile) -> bytes:
    """Lockfile -> 规范化锁文件字节；构建 / 测试依赖为空时与 encode(运行依赖) 相同"""
    data: dict[str, Any] = {"format": LOCKFILE_FORMAT, **_resolution_data(lock.dependencies)}
    for name in (BUILD_DEPENDENCIES, TEST_DEPENDENCIES):
        section = lock.section(name)
        if not is_empty(section):
            data[name] = _resolution_data(section)
    return _dump(data)


# =========================================================================
# 解码
# =========================================================================


def _expect(cond: bool, message: str) -> None:
    if not cond:
        raise LockfileCorrupt(f"锁文件损坏: {message}")


def _str_list(value: Any, where: str) -> list[str]:
    _expect(isinstance(value, list), f"{where} 必须是列表")
    _expect(all(isinstance(v, str) for v in value), f"{where} 只能包含字符串")
    return list(value)


def _load(data: bytes | str) -> dict[str, Any]:
    try:
        doc = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise LockfileCorrupt(f"锁文件不是合法 YAML: {e}") from e
    _expect(isinstance(doc, dict), "顶层必须是映射")
    _expect(doc.get("format") == LOCKFILE_FORMAT, f"不支持的格式版本 {doc.get('format')!r}")
    return doc


def _resolution_from(doc: dict[str, Any], where: str = "") -> Resolution:
    prefix = f"{where}." if where else ""
    try:
        requirements = _str_list(doc.get("requirements", []), f"{prefix}requirements")
        for req in requirements:
            parse_requirement(req)
        variants = [
            RuntimeVariant.parse(v)
            for v in _str_list(doc.get("variants", []), f"{prefix}variants")
        ]
    except (ResolutionError, ValidationError) as e:
        raise LockfileCorrupt(f"锁文件损坏: {e}") from e

    resolution = Resolution(
        requirements=tuple(sorted(requirements)),
        variants=tuple(sorted(variants, key=variant_order)),
    )

    entries = doc.get("packages", [])
    _expect(isinstance(entries, list), f"{prefix}packages 必须是列表")
    for entry in entries:
        _expect(isinstance(entry, dict), f"{prefix}packages 的每一项必须是映射")
        name, variant_text, version_text = (entry.get(k) for k in ("name", "variant", "version"))
        _expect(
            all(isinstance(v, str) and v for v in (name, variant_text, version_text)),
            f"包条目缺少 name / variant / version: {entry!r}",
        )
        integrity = entry.get("integrity", "")
        _expect(isinstance(integrity, str), f"{name}: integrity 必须是字符串")
        pinned = entry.get("pinned", False)
        _expect(isinstance(pinned, bool), f"{name}: pinned 必须是布尔值")
        try:
            variant = RuntimeVariant.parse(variant_text)
            version = parse_version(version_text)
        except (ResolutionError, ValidationError) as e:
            raise LockfileCorrupt(f"锁文件损坏: {name}: {e}") from e
        _expect(variant in variants, f"{name} 的变体 {variant} 未在 variants 中声明")
        _expect((name, variant) not in resolution.packages, f"重复条目 {name} ({variant})")
        resolution.packages[(name, variant)] = ResolvedPackage(
            name=name, version=version, variant=variant, integrity=integrity,
            dependencies=tuple(_str_list(entry.get("dependencies", []), f"{name}.dependencies")),
            pinned=pinned,
        )

    roots = doc.get("roots", {})
    _expect(isinstance(roots, dict), f"{prefix}roots 必须是映射")
    for variant in resolution.variants:
        names = _str_list(roots.get(variant.value, []), f"{prefix}roots.{variant}")
        for n in names:
            _expect((n, variant) in resolution.packages, f"根依赖 {n} ({variant}) 未锁定")
        resolution.roots[variant] = tuple(sorted(names))

    for pkg in resolution.packages.values():
        for dep in pkg.dependencies:
            _expect((dep, pkg.variant) in resolution.packages, f"{pkg.label} 的依赖 {dep} 悬空")
    try:
        resolution.topological_order()
    except RockyardError as e:
        raise LockfileCorrupt(f"锁文件损坏: {e}") from e
    return resolution


def decode(data: bytes | str) -> Resolution:
    """锁文件字节 -> 运行依赖的 Resolution，任何结构或语义错误都抛 LockfileCorrupt"""
    return _resolution_from(_load(data))


def decode_lockfile(data: bytes | str) -> Lockfile:
    """锁文件字节 -> Lockfile（含构建 / 测试依赖分区）"""
    doc = _load(data)
    lock = Lockfile(dependencies=_resolution_from(doc))
    for name in (BUILD_DEPENDENCIES, TEST_DEPENDENCIES):
        block = doc.get(name)
        if block is None:
            continue
        _expect(isinstance(block, dict), f"{name} 必须是映射")
        lock = lock.replace(name, _resolution_from(block, name))
    return lock


# =========================================================================
# 过期检测 / 钉住
# =========================================================================


def is_stale(
    resolution: Resolution,
    root_requirements: Iterable[Requirement],
    provider: ManifestProvider | None = None,
    variants: Iterable[RuntimeVariant] | None = None,
) -> bool:
    """锁文件是否需要重新解析

    以下任一情况为 True:
      - 请求的变体未被锁定
      - 根依赖集合（包名）变化
      - 某个根约束不再被锁定版本满足
      - （给定 provider 时）锁定的 (包名, 版本) 已不在注册表中
    """
    reqs = normalize_requirements(root_requirements)
    wanted = list(variants) if variants is not None else list(resolution.variants)
    missing = [v for v in wanted if v not in resolution.variants]
    if missing:
        logger.info("锁文件过期: 未锁定变体 %s", ", ".join(v.value for v in missing))
        return True

    locked_names = {parse_requirement(r).name for r in resolution.requirements}
    if locked_names != {d.name for d in reqs}:
        logger.info("锁文件过期: 根依赖集合已变化")
        return True

    for variant in wanted:
        for dep in reqs:
            if not dep.is_active(variant):
                continue
            if dep.name == "lua":
                if not dep.constraint.matches(variant.lua_version):
                    logger.info("锁文件过期: 运行时 %s 不满足 %s", variant, dep)
                    return True
                continue
            pkg = resolution.get(dep.name, variant)
            if pkg is None:
                if dep.optional:
                    continue
                logger.info("锁文件过期: %s (%s) 未锁定", dep.name, variant)
                return True
            if not dep.constraint.matches(pkg.version):
                logger.info("锁文件过期: %s 不满足 %s", pkg.label, dep)
                return True

    if provider is not None:
        for pkg in resolution.packages.values():
            try:
                published = {v for v, _ in provider.list_versions(pkg.name)}
            except PackageNotFound:
                published = set()
            if pkg.version not in published:
                logger.info("锁文件过期: %s 已不在注册表中", pkg.label)
                return True
    return False


def stale_sections(
    lock: Lockfile,
    requirements: Mapping[str, Iterable[Requirement]],
    provider: ManifestProvider | None = None,
    variants: Iterable[RuntimeVariant] | None = None,
) -> list[str]:
    """需要重新解析的分区

    构建 / 测试依赖没有声明时，分区为空才算有效；运行依赖始终按 is_stale 判断。
    """
    wanted = list(variants) if variants is not None else None
    stale: list[str] = []
    for name in SECTIONS:
        reqs = list(requirements.get(name, ()))
        section = lock.section(name)
        if name != DEPENDENCIES and not reqs:
            if not is_empty(section):
                logger.info("锁文件过期: %s 已不再声明", name)
                stale.append(name)
            continue
        if is_stale(section, reqs, provider, wanted):
            logger.info("锁文件分区需要重新解析: %s", name)
            stale.append(name)
    return stale


def set_pinned(resolution: Resolution, name: str, pinned: bool) -> list[ResolvedPackage]:
    """修改 name 在所有变体下的钉住状态（原地替换），返回被修改的包

    异常:
        PackageNotFound: 该分区中没有锁定 name
    """
    keys = [k for k in resolution.packages if k[0] == name]
    if not keys:
        raise PackageNotFound(name)
    changed = []
    for key in sorted(keys, key=lambda k: variant_order(k[1])):
        pkg = dataclasses.replace(resolution.packages[key], pinned=pinned)
        resolution.packages[key] = pkg
        changed.append(pkg)
    return changed


def hydrate(resolution: Resolution, provider: ManifestProvider) -> Resolution:
    """为解码得到的 Resolution 重新挂上描述（不做搜索）

    异常:
        PackageNotFound: 锁定版本已不在注册表中
    """
    result = dataclasses.replace(resolution, roots=dict(resolution.roots), packages={})
    for key, pkg in resolution.packages.items():
        desc = next(
            (d for v, d in provider.list_versions(pkg.name) if v == pkg.version),
            None,
        )
        if desc is None:
            raise PackageNotFound(f"{pkg.name}@{pkg.version}")
        result.packages[key] = dataclasses.replace(pkg, descriptor=desc)
    return result


def read_lockfile(path: str | Path) -> Lockfile | None:
    """读取锁文件，文件不存在返回 None"""
    p = Path(path)
    if not p.exists():
        return None
    return decode_lockfile(p.read_bytes())


def write_lockfile(path: str | Path, lock: Lockfile | Resolution) -> None:
    if isinstance(lock, Resolution):
        lock = Lockfile(dependencies=lock)
    atomic_write(Path(path), encode_lockfile(lock))
    logger.info(
        "锁文件已写入: %s (%d 个包)", path,
        sum(len(lock.section(s).packages) for s in SECTIONS),
    )
