"""单包构建流水线 - 状态机驱动

    Pending → Fetched → ChecksumVerified → Configured → Built → Installed
任一非终态可迁移到 Failed(kind) 或 Skipped（取消）；其余迁移是程序错误。

每个阶段的含义:
  Fetched           拉取器产出本地源码树（可重试错误由拉取器退避重试）
  ChecksumVerified  源码树摘要与锁定的完整性值一致；不一致直接失败，绝不重试或构建
  Configured        后端参数对照源码树校验通过（文件、工具链）
  Built             后端调用成功，产物位于 staging；命中构建缓存时跳过拉取与调用
  Installed         产物在安装树写锁下合并完成
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Callable

from rockyard.core.config import Config
from rockyard.core.exceptions import (
    BuildConfigError,
    BuildError,
    FetchError,
    IllegalTransition,
    RockyardError,
)
from rockyard.core.models import (
    BuildOutput,
    BuildState,
    FailureKind,
    PackageOutcome,
    ResolvedPackage,
    RuntimeVariant,
)
from rockyard.core.protocols import SourceFetcher
from rockyard.core.tree import InstallTree, InstallTreeManager
from rockyard.services.build.backends import BuildContext, backend_for, install_extras
from rockyard.services.build.cache import BuildCache, cache_key
from rockyard.services.build.variables import build_variables
from rockyard.services.fetch.digest import verify_integrity
from rockyard.utils.shell import CommandExecutor, get_executor

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.PENDING: frozenset((BuildState.FETCHED,)),
    BuildState.FETCHED: frozenset((BuildState.CHECKSUM_VERIFIED,)),
    BuildState.CHECKSUM_VERIFIED: frozenset((BuildState.CONFIGURED,)),
    BuildState.CONFIGURED: frozenset((BuildState.BUILT,)),
    BuildState.BUILT: frozenset((BuildState.INSTALLED,)),
}

# 缓存命中时一次走完的中间状态
_FAST_PATH = (
    BuildState.FETCHED, BuildState.CHECKSUM_VERIFIED,
    BuildState.CONFIGURED, BuildState.BUILT,
)


class PackageStateMachine:
    """单个包的构建状态"""

    def __init__(self, label: str) -> None:
        self.label = label
        self.state = BuildState.PENDING
        self.history: list[BuildState] = [self.state]

    def advance(self, new: BuildState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if not self.state.terminal and new in (BuildState.FAILED, BuildState.SKIPPED):
            allowed = allowed | {new}
        if new not in allowed:
            raise IllegalTransition(f"{self.label}: 非法状态迁移 {self.state.value} -> {new.value}")
        logger.debug("%s: %s -> %s", self.label, self.state.value, new.value)
        self.state = new
        self.history.append(new)


class _Cancelled(Exception):
    """fail-fast 取消信号（仅流水线内部使用）"""


class BuildPipeline:
    """驱动单个包从拉取到安装；作为调度器的 worker 任务"""

    def __init__(
        self,
        *,
        fetcher: SourceFetcher,
        trees: InstallTreeManager,
        tree_root: str | Path,
        build_dir: str | Path,
        arch: str,
        cache: BuildCache | None = None,
        executor: CommandExecutor | None = None,
        command_timeout: float | None = None,
        toolchain: dict[str, str] | None = None,
        which: Callable[[str], Any] = shutil.which,
    ) -> None:
        self.fetcher = fetcher
        self.trees = trees
        self.tree_root = Path(tree_root)
        self.build_dir = Path(build_dir)
        self.arch = arch
        self.cache = cache
        self.executor = executor or get_executor()
        self.command_timeout = command_timeout
        self.toolchain = {"cc": "cc", "make": "make", "cmake": "cmake", **(toolchain or {})}
        self.which = which

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        fetcher: SourceFetcher,
        trees: InstallTreeManager,
        executor: CommandExecutor | None = None,
        tree_root: str | Path | None = None,
        **kwargs: Any,
    ) -> BuildPipeline:
        return cls(
            fetcher=fetcher,
            trees=trees,
            tree_root=tree_root or cfg.tree_root,
            build_dir=cfg.build_dir,
            arch=cfg.arch,
            cache=BuildCache(Path(cfg.cache_dir) / "builds"),
            executor=executor,
            command_timeout=cfg.command_timeout,
            toolchain={"cc": cfg.cc, "make": cfg.make_cmd, "cmake": cfg.cmake_cmd},
            **kwargs,
        )

    def tree_for(self, variant: RuntimeVariant) -> InstallTree:
        return InstallTree.for_target(self.tree_root, variant, self.arch)

    @staticmethod
    def _check(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise _Cancelled()

    def run(self, pkg: ResolvedPackage, cancel: threading.Event) -> PackageOutcome:
        """执行全部阶段，返回终态结果（构建 / 安装错误不会抛出）"""
        start = time.monotonic()
        machine = PackageStateMachine(pkg.label)
        outcome = PackageOutcome(name=pkg.name, version=str(pkg.version), variant=pkg.variant)
        work = self.build_dir / f"{pkg.name}-{pkg.version}-{pkg.variant.value}-{self.arch}"
        try:
            self._stages(pkg, machine, outcome, work, cancel)
        except _Cancelled:
            machine.advance(BuildState.SKIPPED)
            outcome.message = "因其他包失败而取消"
        except IllegalTransition:
            raise
        except RockyardError as e:
            if cancel.is_set() and isinstance(e, (BuildError, FetchError)):
                machine.advance(BuildState.SKIPPED)
                outcome.message = f"因其他包失败而取消 ({e})"
            else:
                machine.advance(BuildState.FAILED)
                outcome.failure = FailureKind.from_error(e)
                outcome.exit_code = getattr(e, "exit_code", None)
                outcome.message = str(e)
                logger.error("构建失败 %s: [%s] %s", pkg.label, outcome.failure.value, e)
        finally:
            shutil.rmtree(work, ignore_errors=True)
        outcome.state = machine.state
        outcome.duration = time.monotonic() - start
        return outcome

    def _stages(
        self,
        pkg: ResolvedPackage,
        machine: PackageStateMachine,
        outcome: PackageOutcome,
        work: Path,
        cancel: threading.Event,
    ) -> None:
        desc = pkg.descriptor
        if desc is None:
            raise BuildConfigError(f"{pkg.label}: 缺少包描述，无法构建")
        backend = backend_for(desc.build)
        spec = desc.build
        target = self.tree_for(pkg.variant)

        if self.trees.is_installed(target, pkg.name, pkg.version):
            for state in _FAST_PATH + (BuildState.INSTALLED,):
                machine.advance(state)
            outcome.message = "已安装"
            logger.debug("%s 已在 %s 中，跳过", pkg.label, target.root)
            return

        key = cache_key(pkg, self.arch)
        cached = self.cache.get(key) if self.cache is not None else None
        if cached is not None:
            for state in _FAST_PATH:
                machine.advance(state)
            outcome.cached = True
            staging = cached
        else:
            self._check(cancel)
            if work.exists():
                shutil.rmtree(work)
            tree = self.fetcher.fetch(desc.source, work / "src")
            machine.advance(BuildState.FETCHED)

            verify_integrity(tree.path, pkg.integrity, pkg.label)
            machine.advance(BuildState.CHECKSUM_VERIFIED)
            self._check(cancel)

            staging = work / "staging"
            staging.mkdir(parents=True, exist_ok=True)
            ctx = BuildContext(
                package=pkg,
                source=tree.path,
                staging=staging,
                variables=build_variables(
                    staging, pkg.variant, cc=self.toolchain["cc"],
                    make=self.toolchain["make"], cmake=self.toolchain["cmake"],
                ),
                executor=self.executor,
                timeout=self.command_timeout,
                which=self.which,
            )
            backend.configure(spec, ctx)
            machine.advance(BuildState.CONFIGURED)

            self._check(cancel)
            backend.build(spec, ctx)
            install_extras(spec.install, spec.copy_directories, ctx)
            machine.advance(BuildState.BUILT)
            if self.cache is not None:
                self.cache.put(key, staging)

        self._check(cancel)
        output = BuildOutput.scan(staging)
        self.trees.install(target, pkg, output)
        machine.advance(BuildState.INSTALLED)
