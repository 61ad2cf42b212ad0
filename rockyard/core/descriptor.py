"""包描述的解析与序列化

注册表 YAML、安装树清单中的描述均为同一种字典格式:

    name: luasocket
    version: 3.1.0-1
    summary: Network support for Lua
    runtimes: ["5.1", "5.4"]            # 可选，缺省为全部
    dependencies:
      - "lua >= 5.1"
      - {name: lpeg, version: ">= 1.0", optional: true, runtimes: ["5.4"]}
    source:
      url: https://example.org/luasocket-3.1.0.tar.gz   # 或 file: / git: / url: git+https://
      ref: v3.1.0
      integrity: sha256-<hex>
      dir: luasocket-3.1.0
    build:
      type: builtin                     # builtin | make | cmake | command | native
      modules:
        socket: src/socket.lua
        socket.core: {sources: [src/luasocket.c], defines: [LUASOCKET_API=]}
"""

from __future__ import annotations

import dataclasses
import logging
import re
from pathlib import PurePosixPath
from typing import Any

from rockyard.core.exceptions import (
    MalformedConstraint,
    MalformedVersion,
    UnsupportedBackend,
    ValidationError,
)
from rockyard.core.models import (
    BUILD_SPEC_TYPES,
    BackendKind,
    BuildSpec,
    Dependency,
    InstallSpec,
    ModuleSpec,
    PackageDescriptor,
    RuntimeVariant,
    SourceKind,
    SourceSpec,
    UnknownBuild,
)
from rockyard.core.version import parse_constraint, parse_requirement, parse_version

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_MODULE_ROOTS = ("src", "lua", "lib")

# YAML 中的别名字段 -> 数据类字段
_BUILD_ALIASES = {"cmake": "cmake_lists_content"}


def normalize_integrity(text: str) -> str:
    """sha256-<hex> / sha256:<hex> / 裸 hex 统一为 sha256-<小写 hex>，空串原样返回"""
    s = (text or "").strip()
    if not s:
        return ""
    for prefix in ("sha256-", "sha256:"):
        if s.lower().startswith(prefix):
            s = s[len(prefix):]
            break
    if not _HEX_RE.match(s):
        raise ValidationError(f"无效的完整性摘要: {text!r}")
    return f"sha256-{s.lower()}"


def _parse_runtimes(value: Any, where: str) -> frozenset[RuntimeVariant]:
    if value in (None, "", []):
        return frozenset()
    items = [value] if isinstance(value, str) else value
    if not isinstance(items, list):
        raise ValidationError(f"{where}: runtimes 必须是列表")
    return frozenset(RuntimeVariant.parse(v) for v in items)


def parse_dependency(item: Any) -> Dependency:
    """字符串 "name >= 1.0" 或映射 {name, version, optional, runtimes}"""
    if isinstance(item, str):
        return Dependency(constraint=parse_requirement(item))
    if not isinstance(item, dict) or not item.get("name"):
        raise ValidationError(f"无效的依赖声明: {item!r}")
    name = str(item["name"]).strip().lower()
    constraint = parse_constraint(str(item.get("version", "") or ""), name=name)
    return Dependency(
        constraint=constraint,
        optional=bool(item.get("optional", False)),
        runtimes=_parse_runtimes(item.get("runtimes"), name),
    )


def parse_source(data: Any) -> SourceSpec:
    if isinstance(data, str):
        data = {"url": data}
    if not isinstance(data, dict):
        raise ValidationError(f"source 必须是映射: {data!r}")

    ref = str(data.get("ref") or data.get("tag") or data.get("branch") or "")
    integrity = normalize_integrity(str(data.get("integrity", "") or ""))
    subdir = str(data.get("dir", "") or "")

    if data.get("git"):
        kind, location = SourceKind.GIT, str(data["git"])
    elif data.get("file"):
        kind, location = SourceKind.FILE, str(data["file"])
    elif data.get("url"):
        url = str(data["url"])
        if url.startswith("git+"):
            kind, location = SourceKind.GIT, url[len("git+"):]
        elif url.startswith("git://"):
            kind, location = SourceKind.GIT, url
        elif url.startswith("file://"):
            kind, location = SourceKind.FILE, url[len("file://"):]
        else:
            kind, location = SourceKind.URL, url
    else:
        raise ValidationError(f"source 缺少 url / file / git: {data!r}")
    return SourceSpec(kind=kind, location=location, ref=ref, integrity=integrity, subdir=subdir)


def _parse_module(name: str, value: Any) -> ModuleSpec:
    if isinstance(value, str):
        return ModuleSpec(sources=(value,))
    if isinstance(value, list):
        return ModuleSpec(sources=tuple(str(v) for v in value))
    if isinstance(value, dict):
        sources = value.get("sources", [])
        if isinstance(sources, str):
            sources = [sources]
        return ModuleSpec(
            sources=tuple(str(s) for s in sources),
            defines=tuple(str(v) for v in value.get("defines", []) or []),
            incdirs=tuple(str(v) for v in value.get("incdirs", []) or []),
            libdirs=tuple(str(v) for v in value.get("libdirs", []) or []),
            libraries=tuple(str(v) for v in value.get("libraries", []) or []),
        )
    raise ValidationError(f"无效的模块声明 {name}: {value!r}")


def _module_name(path: str) -> str:
    """src/foo/bar.lua -> foo.bar；以 src/ lua/ lib/ 开头时去掉这一层"""
    parts = list(PurePosixPath(path).with_suffix("").parts)
    if len(parts) > 1 and parts[0] in _MODULE_ROOTS:
        parts = parts[1:]
    return ".".join(parts)


def _parse_install(value: Any) -> InstallSpec:
    if not value:
        return InstallSpec()
    if not isinstance(value, dict):
        raise ValidationError(f"install 必须是映射: {value!r}")

    def section(key: str) -> dict[str, str]:
        raw = value.get(key) or {}
        if isinstance(raw, list):
            # 列表形式: lua / lib 的键是模块名，bin / conf 取文件名
            if key in ("lua", "lib"):
                return {_module_name(str(p)): str(p) for p in raw}
            return {PurePosixPath(str(p)).name: str(p) for p in raw}
        return {str(k): str(v) for k, v in raw.items()}

    return InstallSpec(
        lua=section("lua"), lib=section("lib"),
        bin=section("bin"), conf=section("conf"),
    )


def _coerce(field: dataclasses.Field, value: Any, where: str) -> Any:
    """按字段缺省值的类型规整 YAML 值"""
    if field.default_factory is not dataclasses.MISSING:  # type: ignore[misc]
        sample = field.default_factory()  # type: ignore[misc]
    else:
        sample = field.default
    if isinstance(sample, bool):
        return bool(value)
    if isinstance(sample, tuple):
        items = [value] if isinstance(value, str) else (value or [])
        return tuple(str(v) for v in items)
    if isinstance(sample, dict):
        if not isinstance(value, dict):
            raise ValidationError(f"{where}: {field.name} 必须是映射")
        return {str(k): str(v) for k, v in value.items()}
    return "" if value is None else str(value)


def parse_build(data: Any) -> BuildSpec:
    """解析构建描述，未知 type 抛 UnsupportedBackend（不回退到缺省后端）"""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"build 必须是映射: {data!r}")
    type_name = str(data.get("type", BackendKind.BUILTIN.value))
    try:
        kind = BackendKind(type_name)
    except ValueError:
        raise UnsupportedBackend(type_name) from None

    cls = BUILD_SPEC_TYPES[kind]
    names = {f.name: f for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key == "type":
            continue
        attr = _BUILD_ALIASES.get(key, key)
        if attr == "install":
            kwargs["install"] = _parse_install(value)
        elif attr == "modules" and kind is BackendKind.BUILTIN:
            kwargs["modules"] = {
                str(n): _parse_module(str(n), v) for n, v in (value or {}).items()
            }
        elif attr in names:
            kwargs[attr] = _coerce(names[attr], value, type_name)
        else:
            logger.warning("构建描述 (%s) 中忽略未知字段: %s", type_name, key)
    return cls(**kwargs)


def parse_descriptor(data: dict[str, Any], *, name: str = "") -> PackageDescriptor:
    """字典 -> PackageDescriptor

    异常:
        ValidationError: 字段缺失或结构错误
        MalformedVersion / MalformedConstraint: 版本或依赖约束无法解析
    """
    if not isinstance(data, dict):
        raise ValidationError(f"包描述必须是映射: {data!r}")
    pkg_name = str(data.get("name") or name).strip().lower()
    if not pkg_name:
        raise ValidationError("包描述缺少 name")
    if "version" not in data:
        raise ValidationError(f"{pkg_name}: 包描述缺少 version")
    version = parse_version(str(data["version"]))

    try:
        deps = tuple(parse_dependency(d) for d in data.get("dependencies") or [])
    except (MalformedConstraint, MalformedVersion) as e:
        raise MalformedConstraint(f"{pkg_name}@{version}: {e}") from e

    try:
        build: BuildSpec | UnknownBuild = parse_build(data.get("build"))
    except UnsupportedBackend as e:
        logger.warning("%s@%s 声明了不支持的构建后端 %r", pkg_name, version, e.backend)
        build = UnknownBuild(type_name=e.backend, raw=dict(data.get("build") or {}))

    return PackageDescriptor(
        name=pkg_name,
        version=version,
        source=parse_source(data.get("source")),
        build=build,
        dependencies=deps,
        runtimes=_parse_runtimes(data.get("runtimes"), pkg_name),
        summary=str(data.get("summary", "") or ""),
    )


# =========================================================================
# 序列化（写入安装树清单，供离线重新解析）
# =========================================================================


def _dependency_to_data(dep: Dependency) -> Any:
    if not dep.optional and not dep.runtimes:
        return str(dep.constraint)
    d: dict[str, Any] = {"name": dep.name}
    if not dep.constraint.is_any:
        d["version"] = dep.constraint.expression
    if dep.optional:
        d["optional"] = True
    if dep.runtimes:
        d["runtimes"] = sorted(v.value for v in dep.runtimes)
    return d


def _source_to_data(source: SourceSpec) -> dict[str, Any]:
    d: dict[str, Any] = {source.kind.value: source.location}
    if source.ref:
        d["ref"] = source.ref
    if source.integrity:
        d["integrity"] = source.integrity
    if source.subdir:
        d["dir"] = source.subdir
    return d


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def build_to_data(spec: BuildSpec | UnknownBuild) -> dict[str, Any]:
    if isinstance(spec, UnknownBuild):
        return {**spec.raw, "type": spec.type_name}
    d: dict[str, Any] = {"type": spec.kind.value}
    for f in dataclasses.fields(spec):
        value = getattr(spec, f.name)
        if f.name == "install":
            sections = {k: v for k, v in dataclasses.asdict(value).items() if v}
            if sections:
                d["install"] = sections
        elif f.name == "modules":
            if value:
                d["modules"] = {
                    n: {k: list(v) for k, v in dataclasses.asdict(m).items() if v}
                    for n, m in value.items()
                }
        elif value not in ((), {}, "") and value != f.default:
            d[f.name] = _plain(value)
    return d


def descriptor_to_data(desc: PackageDescriptor) -> dict[str, Any]:
    d: dict[str, Any] = {
        "name": desc.name,
        "version": str(desc.version),
        "source": _source_to_data(desc.source),
        "build": build_to_data(desc.build),
    }
    if desc.summary:
        d["summary"] = desc.summary
    if desc.runtimes:
        d["runtimes"] = sorted(v.value for v in desc.runtimes)
    if desc.dependencies:
        d["dependencies"] = [_dependency_to_data(dep) for dep in desc.dependencies]
    return d
