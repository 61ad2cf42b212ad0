"""构建后端

后端集合是封闭的: BACKENDS 以 BackendKind 为键，导入时检查是否覆盖全部枚举值。
每个后端两步:
  configure(spec, ctx): 对照源码树校验参数（文件存在、工具链可用），不产生副作用
  build(spec, ctx):     调用工具链，把产物写入 ctx.staging（布局与安装树一致）

install 映射与 copy_directories 是所有后端共有的收尾步骤（install_extras）。
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from rockyard.core.exceptions import (
    BackendFailure,
    BuildConfigError,
    MissingToolchain,
    UnsupportedBackend,
)
from rockyard.core.models import (
    BackendKind,
    BuildSpec,
    BuiltinBuild,
    CMakeBuild,
    CommandBuild,
    InstallSpec,
    MakeBuild,
    ModuleSpec,
    NativeBuild,
    ResolvedPackage,
    UnknownBuild,
)
from rockyard.services.build.variables import substitute, substitute_all
from rockyard.utils.shell import CommandExecutor, format_cmd

logger = logging.getLogger(__name__)

LIB_SUFFIX = ".dll" if os.name == "nt" else ".so"
_AUTODETECT_DIRS = ("src", "lua", "lib")


@dataclass
class BuildContext:
    """一次构建的上下文"""

    package: ResolvedPackage
    source: Path                    # 源码树根
    staging: Path                   # 产物前缀
    variables: dict[str, str]
    executor: CommandExecutor
    timeout: float | None = None
    which: Callable[[str], Any] = shutil.which
    env: dict[str, str] = field(default_factory=dict)

    def dir(self, name: str) -> Path:
        return Path(self.variables[name])

    def require_tool(self, tool: str) -> None:
        if not tool or self.which(tool) is None:
            raise MissingToolchain(tool or "(未配置)")

    def require_file(self, rel: str) -> Path:
        path = self.source / rel
        if not path.exists():
            raise BuildConfigError(f"{self.package.name}: 声明的文件不存在: {rel}")
        return path

    def run(self, cmd: list[str], *, label: str, cwd: Path | None = None) -> None:
        """执行构建命令，非零退出抛 BackendFailure"""
        logger.info("[%s] %s: %s", self.package.name, label, format_cmd(cmd))
        result = self.executor.execute(
            cmd, cwd=str(cwd or self.source),
            env={**os.environ, **self.variables, **self.env},
            timeout=self.timeout,
        )
        if result.timed_out:
            raise BackendFailure(f"{label} 超时 ({self.timeout}s)", result.returncode)
        if result.terminated:
            raise BackendFailure(f"{label} 被终止", result.returncode)
        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip()[-500:]
            raise BackendFailure(
                f"{label} 失败 (退出码 {result.returncode}): {tail}", result.returncode,
            )


class Backend(Protocol):
    def configure(self, spec: Any, ctx: BuildContext) -> None: ...

    def build(self, spec: Any, ctx: BuildContext) -> None: ...


# =========================================================================
# 公共步骤
# =========================================================================


def _module_path(module: str) -> Path:
    return Path(*module.split("."))


def _copy(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dst)


def install_extras(install: InstallSpec, copy_directories: tuple[str, ...], ctx: BuildContext) -> None:
    """按 install 映射与 copy_directories 把文件放入 staging"""
    for module, rel in install.lua.items():
        src = ctx.require_file(rel)
        _copy(src, ctx.dir("LUADIR") / _module_path(module).with_suffix(src.suffix or ".lua"))
    for module, rel in install.lib.items():
        src = ctx.require_file(rel)
        _copy(src, ctx.dir("LIBDIR") / _module_path(module).with_suffix(src.suffix or LIB_SUFFIX))
    for name, rel in install.bin.items():
        dst = ctx.dir("BINDIR") / name
        _copy(ctx.require_file(rel), dst)
        dst.chmod(dst.stat().st_mode | 0o111)
    for name, rel in install.conf.items():
        _copy(ctx.require_file(rel), ctx.dir("CONFDIR") / name)
    for rel in copy_directories:
        src = ctx.require_file(rel)
        if not src.is_dir():
            raise BuildConfigError(f"{ctx.package.name}: copy_directories 不是目录: {rel}")
        _copy(src, ctx.dir("PREFIX") / "share" / ctx.package.name / rel)


def _compile_cmd(
    ctx: BuildContext, output: Path, sources: tuple[str, ...], *,
    defines: tuple[str, ...] = (), incdirs: tuple[str, ...] = (),
    libdirs: tuple[str, ...] = (), libraries: tuple[str, ...] = (),
) -> list[str]:
    cmd = [ctx.variables["CC"], "-shared", "-fPIC", "-O2"]
    cmd += [f"-D{substitute(d, ctx.variables)}" for d in defines]
    cmd += [f"-I{substitute(d, ctx.variables)}" for d in incdirs]
    cmd += [str(ctx.source / s) for s in sources]
    cmd += [f"-L{substitute(d, ctx.variables)}" for d in libdirs]
    cmd += [f"-l{lib}" for lib in libraries]
    cmd += ["-o", str(output)]
    return cmd


# =========================================================================
# builtin
# =========================================================================


def autodetect_modules(source: Path) -> dict[str, ModuleSpec]:
    """在 src/ lua/ lib/ 下查找 .lua 文件生成模块表（都不存在时取顶层 .lua）"""
    found: dict[str, ModuleSpec] = {}
    roots = [source / d for d in _AUTODETECT_DIRS if (source / d).is_dir()]
    candidates: list[tuple[Path, Path]] = [
        (root, p) for root in roots for p in sorted(root.rglob("*.lua"))
    ]
    if not roots:
        candidates = [
            (source, p) for p in sorted(source.glob("*.lua"))
            if not p.name.startswith(("test", "spec"))
        ]
    for root, path in candidates:
        rel = path.relative_to(root).with_suffix("")
        parts = list(rel.parts)
        if parts[-1] == "init" and len(parts) > 1:
            parts = parts[:-1]
        found.setdefault(".".join(parts), ModuleSpec(sources=(path.relative_to(source).as_posix(),)))
    return found


class BuiltinBackend:
    """复制 Lua 模块、编译 C 模块"""

    def _modules(self, spec: BuiltinBuild, ctx: BuildContext) -> dict[str, ModuleSpec]:
        return spec.modules or autodetect_modules(ctx.source)

    def configure(self, spec: BuiltinBuild, ctx: BuildContext) -> None:
        modules = self._modules(spec, ctx)
        if not modules and spec.install.is_empty() and not spec.copy_directories:
            raise BuildConfigError(f"{ctx.package.name}: 未声明模块且未检测到任何 .lua 文件")
        for name, module in modules.items():
            if not module.sources:
                raise BuildConfigError(f"{ctx.package.name}: 模块 {name} 没有源文件")
            for rel in module.sources:
                ctx.require_file(rel)
        if any(not m.is_lua for m in modules.values()):
            ctx.require_tool(ctx.variables["CC"])

    def build(self, spec: BuiltinBuild, ctx: BuildContext) -> None:
        for name, module in sorted(self._modules(spec, ctx).items()):
            if module.is_lua:
                src = ctx.source / module.sources[0]
                target = _module_path(name)
                if src.name == "init.lua":
                    target = target / "init"
                _copy(src, ctx.dir("LUADIR") / target.with_suffix(".lua"))
                continue
            output = ctx.dir("LIBDIR") / _module_path(name).with_suffix(LIB_SUFFIX)
            output.parent.mkdir(parents=True, exist_ok=True)
            ctx.run(_compile_cmd(
                ctx, output, module.sources, defines=module.defines,
                incdirs=module.incdirs, libdirs=module.libdirs, libraries=module.libraries,
            ), label=f"编译 {name}")


# =========================================================================
# make
# =========================================================================


class MakeBackend:
    """make 构建 + 安装两遍"""

    def configure(self, spec: MakeBuild, ctx: BuildContext) -> None:
        if spec.build_pass or spec.install_pass:
            ctx.require_file(spec.makefile)
            ctx.require_tool(ctx.variables["MAKE"])

    def _vars(self, base: dict[str, str], extra: dict[str, str], ctx: BuildContext) -> list[str]:
        merged = {
            k: ctx.variables[k]
            for k in ("PREFIX", "LUADIR", "LIBDIR", "BINDIR", "CONFDIR", "LUA_VERSION", "CC")
        }
        merged.update(substitute_all(base, ctx.variables))
        merged.update(substitute_all(extra, ctx.variables))
        return [f"{k}={v}" for k, v in merged.items()]

    def build(self, spec: MakeBuild, ctx: BuildContext) -> None:
        make = [ctx.variables["MAKE"], "-f", spec.makefile]
        if spec.build_pass:
            target = [spec.build_target] if spec.build_target else []
            ctx.run(make + target + self._vars(spec.variables, spec.build_variables, ctx), label="make")
        if spec.install_pass:
            target = [spec.install_target] if spec.install_target else []
            ctx.run(
                make + target + self._vars(spec.variables, spec.install_variables, ctx),
                label="make install",
            )


# =========================================================================
# cmake
# =========================================================================


class CMakeBackend:
    """cmake 配置 / 构建 / 安装，可内联 CMakeLists.txt"""

    def configure(self, spec: CMakeBuild, ctx: BuildContext) -> None:
        if not spec.cmake_lists_content:
            ctx.require_file("CMakeLists.txt")
        ctx.require_tool(ctx.variables["CMAKE"])

    def build(self, spec: CMakeBuild, ctx: BuildContext) -> None:
        cmake = ctx.variables["CMAKE"]
        if spec.cmake_lists_content:
            (ctx.source / "CMakeLists.txt").write_text(spec.cmake_lists_content, encoding="utf-8")
        build_dir = ctx.source / "build.rockyard"
        defines = {"CMAKE_INSTALL_PREFIX": ctx.variables["PREFIX"], "CMAKE_BUILD_TYPE": "Release"}
        defines.update(substitute_all(spec.variables, ctx.variables))
        ctx.run(
            [cmake, "-S", str(ctx.source), "-B", str(build_dir)]
            + [f"-D{k}={v}" for k, v in defines.items()],
            label="cmake 配置",
        )
        if spec.build_pass:
            ctx.run([cmake, "--build", str(build_dir), "--config", "Release"], label="cmake 构建")
        if spec.install_pass:
            ctx.run([cmake, "--install", str(build_dir), "--config", "Release"], label="cmake 安装")


# =========================================================================
# command
# =========================================================================


class CommandBackend:
    """自由命令（不经过 shell）"""

    @staticmethod
    def _commands(spec: CommandBuild, ctx: BuildContext) -> list[tuple[str, list[str]]]:
        result = []
        for label, text in (("build_command", spec.build_command), ("install_command", spec.install_command)):
            if text:
                result.append((label, shlex.split(substitute(text, ctx.variables))))
        return result

    def configure(self, spec: CommandBuild, ctx: BuildContext) -> None:
        commands = self._commands(spec, ctx)
        if not commands:
            raise BuildConfigError(f"{ctx.package.name}: command 后端至少需要一条命令")
        for _, argv in commands:
            if not argv:
                raise BuildConfigError(f"{ctx.package.name}: 命令为空")
            ctx.require_tool(argv[0])

    def build(self, spec: CommandBuild, ctx: BuildContext) -> None:
        for label, argv in self._commands(spec, ctx):
            ctx.run(argv, label=label)


# =========================================================================
# native
# =========================================================================


class NativeBackend:
    """直接调用 C 编译器产出单个 C 模块"""

    def configure(self, spec: NativeBuild, ctx: BuildContext) -> None:
        if not spec.module:
            raise BuildConfigError(f"{ctx.package.name}: native 后端缺少 module")
        if not spec.sources:
            raise BuildConfigError(f"{ctx.package.name}: native 后端缺少 sources")
        for rel in spec.sources:
            ctx.require_file(rel)
        ctx.require_tool(ctx.variables["CC"])

    def build(self, spec: NativeBuild, ctx: BuildContext) -> None:
        output = ctx.dir("LIBDIR") / _module_path(spec.module).with_suffix(LIB_SUFFIX)
        output.parent.mkdir(parents=True, exist_ok=True)
        ctx.run(_compile_cmd(
            ctx, output, spec.sources, defines=spec.defines,
            incdirs=spec.incdirs, libdirs=spec.libdirs, libraries=spec.libraries,
        ), label=f"编译 {spec.module}")


# =========================================================================
# 分发表
# =========================================================================

BACKENDS: dict[BackendKind, Backend] = {
    BackendKind.BUILTIN: BuiltinBackend(),
    BackendKind.MAKE: MakeBackend(),
    BackendKind.CMAKE: CMakeBackend(),
    BackendKind.COMMAND: CommandBackend(),
    BackendKind.NATIVE: NativeBackend(),
}

_missing = set(BackendKind) - set(BACKENDS)
if _missing:
    raise RuntimeError(f"构建后端分发表缺少: {sorted(k.value for k in _missing)}")


def backend_for(spec: BuildSpec | UnknownBuild) -> Backend:
    """按 BuildSpec 的标签选择后端，未知标签抛 UnsupportedBackend"""
    if isinstance(spec, UnknownBuild):
        raise UnsupportedBackend(spec.type_name)
    return BACKENDS[spec.kind]
