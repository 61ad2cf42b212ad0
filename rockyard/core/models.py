"""核心数据模型

包描述、解析结果、构建状态与安装报告集中定义，
resolver / lockfile / scheduler / tree 统一从此处导入。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Union

from rockyard.core.exceptions import RockyardError, ValidationError
from rockyard.core.version import Version, VersionConstraint, parse_version

# =========================================================================
# 运行时变体
# =========================================================================


class RuntimeVariant(str, Enum):
    """Lua 运行时世代（互不二进制兼容）"""

    LUA51 = "5.1"
    LUA52 = "5.2"
    LUA53 = "5.3"
    LUA54 = "5.4"
    LUAJIT = "jit"

    @property
    def lua_version(self) -> Version:
        """对伪包 lua 的依赖按此版本匹配（LuaJIT 自称 5.1）"""
        return parse_version("5.1" if self is RuntimeVariant.LUAJIT else self.value)

    @classmethod
    def parse(cls, text: str) -> RuntimeVariant:
        """接受 5.1 / lua5.1 / lua-5.1 / lua51 / jit / luajit 等写法"""
        s = str(text).strip().lower().replace("lua", "", 1).lstrip("-_")
        if s in ("jit", "j"):
            return cls.LUAJIT
        if len(s) == 2 and s.isdigit():
            s = f"{s[0]}.{s[1]}"
        try:
            return cls(s)
        except ValueError:
            raise ValidationError(f"未知的运行时变体: {text!r}") from None

    def __str__(self) -> str:
        return self.value


ALL_VARIANTS: tuple[RuntimeVariant, ...] = tuple(RuntimeVariant)


def variant_order(variant: RuntimeVariant) -> int:
    return ALL_VARIANTS.index(variant)


# =========================================================================
# 依赖 / 来源
# =========================================================================


@dataclass(frozen=True)
class Dependency:
    """一条依赖边: 约束 + 是否可选 + 激活条件（空 = 总是激活）"""

    constraint: VersionConstraint
    optional: bool = False
    runtimes: frozenset[RuntimeVariant] = frozenset()

    @property
    def name(self) -> str:
        return self.constraint.name

    def is_active(self, variant: RuntimeVariant) -> bool:
        return not self.runtimes or variant in self.runtimes

    def __str__(self) -> str:
        return str(self.constraint)


class SourceKind(str, Enum):
    FILE = "file"
    URL = "url"
    GIT = "git"


@dataclass(frozen=True)
class SourceSpec:
    """源码来源

    integrity 接受 sha256-<hex> / sha256:<hex> / 裸 hex，读入时规整为 sha256-<hex>。
    """

    kind: SourceKind
    location: str
    ref: str = ""              # git 分支 / tag / commit
    integrity: str = ""
    subdir: str = ""           # 解压后的源码子目录


# =========================================================================
# 构建描述（封闭的标签联合，每种后端一个数据类）
# =========================================================================


class BackendKind(str, Enum):
    BUILTIN = "builtin"
    MAKE = "make"
    CMAKE = "cmake"
    COMMAND = "command"
    NATIVE = "native"


@dataclass(frozen=True)
class InstallSpec:
    """额外安装映射: 目标名 -> 源码树内相对路径"""

    lua: dict[str, str] = field(default_factory=dict)
    lib: dict[str, str] = field(default_factory=dict)
    bin: dict[str, str] = field(default_factory=dict)
    conf: dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.lua or self.lib or self.bin or self.conf)


@dataclass(frozen=True)
class ModuleSpec:
    """builtin 后端中的一个模块: 单个 .lua 文件，或需要编译的 C 源码集合"""

    sources: tuple[str, ...]
    defines: tuple[str, ...] = ()
    incdirs: tuple[str, ...] = ()
    libdirs: tuple[str, ...] = ()
    libraries: tuple[str, ...] = ()

    @property
    def is_lua(self) -> bool:
        return len(self.sources) == 1 and self.sources[0].endswith(".lua")


@dataclass(frozen=True)
class BuiltinBuild:
    kind: ClassVar[BackendKind] = BackendKind.BUILTIN

    modules: dict[str, ModuleSpec] = field(default_factory=dict)
    install: InstallSpec = field(default_factory=InstallSpec)
    copy_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class MakeBuild:
    kind: ClassVar[BackendKind] = BackendKind.MAKE

    makefile: str = "Makefile"
    build_target: str = ""
    build_pass: bool = True
    install_target: str = "install"
    install_pass: bool = True
    build_variables: dict[str, str] = field(default_factory=dict)
    install_variables: dict[str, str] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    install: InstallSpec = field(default_factory=InstallSpec)
    copy_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class CMakeBuild:
    kind: ClassVar[BackendKind] = BackendKind.CMAKE

    cmake_lists_content: str = ""
    build_pass: bool = True
    install_pass: bool = True
    variables: dict[str, str] = field(default_factory=dict)
    install: InstallSpec = field(default_factory=InstallSpec)
    copy_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class CommandBuild:
    kind: ClassVar[BackendKind] = BackendKind.COMMAND

    build_command: str = ""
    install_command: str = ""
    install: InstallSpec = field(default_factory=InstallSpec)
    copy_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class NativeBuild:
    """直接调用 C 编译器产出一个 Lua C 模块"""

    kind: ClassVar[BackendKind] = BackendKind.NATIVE

    module: str = ""
    sources: tuple[str, ...] = ()
    incdirs: tuple[str, ...] = ()
    libdirs: tuple[str, ...] = ()
    libraries: tuple[str, ...] = ()
    defines: tuple[str, ...] = ()
    install: InstallSpec = field(default_factory=InstallSpec)
    copy_directories: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnknownBuild:
    """未知后端标签的占位，构建分发时以 UnsupportedBackend 失败"""

    type_name: str
    raw: dict[str, Any] = field(default_factory=dict)


BuildSpec = Union[BuiltinBuild, MakeBuild, CMakeBuild, CommandBuild, NativeBuild]

BUILD_SPEC_TYPES: dict[BackendKind, type] = {
    BackendKind.BUILTIN: BuiltinBuild,
    BackendKind.MAKE: MakeBuild,
    BackendKind.CMAKE: CMakeBuild,
    BackendKind.COMMAND: CommandBuild,
    BackendKind.NATIVE: NativeBuild,
}


# =========================================================================
# 包描述
# =========================================================================


@dataclass(frozen=True)
class PackageDescriptor:
    """已发布的某个版本的包描述（rockspec），解析后不可变"""

    name: str
    version: Version
    source: SourceSpec
    build: BuildSpec | UnknownBuild = field(default_factory=BuiltinBuild)
    dependencies: tuple[Dependency, ...] = ()
    runtimes: frozenset[RuntimeVariant] = frozenset()
    summary: str = ""

    @property
    def integrity(self) -> str:
        return self.source.integrity

    def supports(self, variant: RuntimeVariant) -> bool:
        """运行时兼容: 声明的运行时列表 + 对伪包 lua 的依赖约束"""
        if self.runtimes and variant not in self.runtimes:
            return False
        for dep in self.dependencies:
            if dep.name == "lua" and dep.is_active(variant):
                if not dep.constraint.matches(variant.lua_version):
                    return False
        return True

    def active_dependencies(self, variant: RuntimeVariant) -> list[Dependency]:
        """对 variant 生效的真实依赖（剔除伪包 lua 和未激活的条件依赖）"""
        return [
            d for d in self.dependencies
            if d.name != "lua" and d.is_active(variant)
        ]

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class SourceTree:
    """拉取得到的本地源码树句柄"""

    path: Path
    source: SourceSpec
    revision: str = ""     # git 检出的 commit，其他来源为空


@dataclass(frozen=True)
class BuildOutput:
    """构建产物: staging 目录 + 其中的文件（相对路径，布局与安装树一致）"""

    staging: Path
    files: tuple[str, ...] = ()

    @classmethod
    def scan(cls, staging: Path) -> BuildOutput:
        files = sorted(
            p.relative_to(staging).as_posix()
            for p in staging.rglob("*") if p.is_file() or p.is_symlink()
        )
        return cls(staging=staging, files=tuple(files))


# =========================================================================
# 解析结果
# =========================================================================

PackageKey = tuple[str, RuntimeVariant]


@dataclass(frozen=True)
class ResolvedPackage:
    """某个运行时变体下被选中的包版本；descriptor 不参与相等比较"""

    name: str
    version: Version
    variant: RuntimeVariant
    integrity: str = ""
    dependencies: tuple[str, ...] = ()
    pinned: bool = False            # 锁定后 --update 也不改变版本
    descriptor: PackageDescriptor | None = field(
        default=None, compare=False, repr=False,
    )

    @property
    def key(self) -> PackageKey:
        return (self.name, self.variant)

    @property
    def label(self) -> str:
        return f"{self.name}@{self.version} ({self.variant})"


@dataclass
class Resolution:
    """完整解析结果: 每个 (包名, 变体) 恰好一个版本，边不跨变体"""

    requirements: tuple[str, ...] = ()
    variants: tuple[RuntimeVariant, ...] = ()
    roots: dict[RuntimeVariant, tuple[str, ...]] = field(default_factory=dict)
    packages: dict[PackageKey, ResolvedPackage] = field(default_factory=dict)

    def get(self, name: str, variant: RuntimeVariant) -> ResolvedPackage | None:
        return self.packages.get((name, variant))

    def for_variant(self, variant: RuntimeVariant) -> list[ResolvedPackage]:
        return sorted(
            (p for p in self.packages.values() if p.variant == variant),
            key=lambda p: p.name,
        )

    def dependents(self) -> dict[PackageKey, list[PackageKey]]:
        """反向边: 被依赖者 -> 依赖它的包"""
        result: dict[PackageKey, list[PackageKey]] = {k: [] for k in self.packages}
        for key, pkg in sorted(self.packages.items(), key=lambda kv: _key_sort(kv[0])):
            for dep in pkg.dependencies:
                result[(dep, pkg.variant)].append(key)
        return result

    def topological_order(self) -> list[PackageKey]:
        """依赖在前的确定性拓扑序（Kahn，同层按 (变体, 包名) 排序）"""
        pending = {k: len(p.dependencies) for k, p in self.packages.items()}
        rdeps = self.dependents()
        ready = sorted((k for k, n in pending.items() if n == 0), key=_key_sort)
        order: list[PackageKey] = []
        while ready:
            key = ready.pop(0)
            order.append(key)
            for parent in rdeps[key]:
                pending[parent] -= 1
                if pending[parent] == 0:
                    ready.append(parent)
            ready.sort(key=_key_sort)
        if len(order) != len(self.packages):
            raise RockyardError("解析结果存在环，无法排序")
        return order


def _key_sort(key: PackageKey) -> tuple[int, str]:
    return (variant_order(key[1]), key[0])


# =========================================================================
# 构建状态与安装报告
# =========================================================================


class BuildState(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    CHECKSUM_VERIFIED = "checksum_verified"
    CONFIGURED = "configured"
    BUILT = "built"
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.INSTALLED, BuildState.FAILED, BuildState.SKIPPED)


class FailureKind(str, Enum):
    """失败类型，取值与异常 code 一一对应（小写）"""

    NETWORK_FAILURE = "network_failure"
    SOURCE_NOT_FOUND = "source_not_found"
    FETCH_TIMEOUT = "fetch_timeout"
    FETCH_ERROR = "fetch_error"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNSUPPORTED_BACKEND = "unsupported_backend"
    BACKEND_FAILURE = "backend_failure"
    MISSING_TOOLCHAIN = "missing_toolchain"
    BUILD_CONFIG_ERROR = "build_config_error"
    FILE_COLLISION = "file_collision"
    PERMISSION_DENIED = "permission_denied"
    INTERNAL_ERROR = "internal_error"

    @classmethod
    def from_error(cls, exc: BaseException) -> FailureKind:
        code = getattr(exc, "code", "")
        try:
            return cls(str(code).lower())
        except ValueError:
            return cls.INTERNAL_ERROR


@dataclass
class PackageOutcome:
    """单个包的最终结果"""

    name: str
    version: str
    variant: RuntimeVariant
    state: BuildState = BuildState.PENDING
    failure: FailureKind | None = None
    message: str = ""
    exit_code: int | None = None
    blocked_by: tuple[str, ...] = ()
    cached: bool = False
    duration: float = 0.0   # 秒

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "variant": self.variant.value,
            "state": self.state.value,
        }
        if self.failure is not None:
            d["failure"] = self.failure.value
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        if self.blocked_by:
            d["blocked_by"] = list(self.blocked_by)
        if self.message:
            d["message"] = self.message
        if self.cached:
            d["cached"] = True
        d["duration"] = round(self.duration, 3)
        return d


@dataclass
class InstallReport:
    """安装报告汇总"""

    outcomes: list[PackageOutcome] = field(default_factory=list)

    def _with(self, state: BuildState) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.state == state]

    @property
    def installed(self) -> list[PackageOutcome]:
        return self._with(BuildState.INSTALLED)

    @property
    def failed(self) -> list[PackageOutcome]:
        return self._with(BuildState.FAILED)

    @property
    def skipped(self) -> list[PackageOutcome]:
        return self._with(BuildState.SKIPPED)

    @property
    def success(self) -> bool:
        return all(o.state == BuildState.INSTALLED for o in self.outcomes)

    def get(self, name: str, variant: RuntimeVariant) -> PackageOutcome | None:
        for o in self.outcomes:
            if o.name == name and o.variant == variant:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total": len(self.outcomes),
            "installed": len(self.installed),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "packages": [o.to_dict() for o in self.outcomes],
        }
