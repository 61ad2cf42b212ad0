"""安装服务 - 串起 项目文件 → 解析 → 锁文件 → 调度构建 → 安装报告

用法:
    svc = InstallService(config)
    resolution = svc.lock()          # 锁文件有效则复用，否则重新解析并写回
    svc.set_pinned("penlight")       # 钉住后 --update 也保持锁定版本
    report = svc.install()           # 按锁定结果构建安装
    if not report.success: ...

锁文件策略:
  - 锁文件存在且未过期: 直接复用，不访问解析器
  - 已过期: 以旧锁定版本为偏好重新解析（尽量少变动），写回
  - update=True: 忽略旧锁定版本，全部取最新可行解（被钉住的包除外）
  - 运行依赖、构建依赖、测试依赖分区各自判断过期、各自重新解析
  - frozen=True: 锁文件缺失或过期直接报错（CI 场景）
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from rockyard.core.config import Config
from rockyard.core.exceptions import LockfileError, PackageNotFound
from rockyard.core.lockfile import (
    DEPENDENCIES,
    SECTIONS,
    Lockfile,
    hydrate,
    read_lockfile,
    set_pinned as _set_pinned,
    stale_sections,
    write_lockfile,
)
from rockyard.core.manifest import (
    CachedManifestProvider,
    InMemoryManifestProvider,
    YamlManifestProvider,
)
from rockyard.core.models import (
    Dependency,
    InstallReport,
    Resolution,
    ResolvedPackage,
    RuntimeVariant,
)
from rockyard.core.project import Project, load_project
from rockyard.core.protocols import ManifestProvider, SourceFetcher
from rockyard.core.resolver import resolve
from rockyard.core.scheduler import BuildScheduler
from rockyard.core.tree import InstalledListing, InstallTree, InstallTreeManager
from rockyard.core.version import Version, parse_version
from rockyard.services.build.pipeline import BuildPipeline
from rockyard.services.fetch.fetcher import Fetcher
from rockyard.utils.shell import CommandExecutor, get_executor

logger = logging.getLogger(__name__)


class InstallService:
    """依赖安装的生命周期管理"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: ManifestProvider | None = None,
        fetcher: SourceFetcher | None = None,
        executor: CommandExecutor | None = None,
        trees: InstallTreeManager | None = None,
    ) -> None:
        if config is None:
            from rockyard.core.config import get_config
            config = get_config()
        self.config = config
        self.executor = executor or get_executor()
        self.trees = trees or InstallTreeManager()
        self._provider = provider
        self._fetcher = fetcher

    # ---- 依赖注入的懒加载 ----

    @property
    def provider(self) -> CachedManifestProvider:
        if not isinstance(self._provider, CachedManifestProvider):
            inner = self._provider or YamlManifestProvider(self.config.registry)
            self._provider = CachedManifestProvider(inner)
        return self._provider

    @property
    def fetcher(self) -> SourceFetcher:
        if self._fetcher is None:
            self._fetcher = Fetcher(
                retries=self.config.fetch_retries,
                backoff=self.config.fetch_backoff,
                timeout=self.config.fetch_timeout,
                executor=self.executor,
            )
        return self._fetcher

    def project(self) -> Project:
        return load_project(self.config.project_file)

    def variants(self, project: Project | None = None) -> list[RuntimeVariant]:
        project = project or self.project()
        return project.variants(self.config.variants())

    def tree(self, variant: RuntimeVariant) -> InstallTree:
        return InstallTree.for_target(self.config.tree_root, variant, self.config.arch)

    # ---- 解析 / 锁定 ----

    def resolve(
        self,
        requirements: list[Any] | None = None,
        variants: list[RuntimeVariant] | None = None,
        *,
        offline: bool = False,
    ) -> Resolution:
        """解析但不写锁文件；offline 时只使用安装树中记录的描述"""
        project = self.project() if requirements is None or variants is None else None
        reqs = requirements if requirements is not None else project.dependencies
        targets = variants or self.variants(project)
        provider: ManifestProvider = (
            self._offline_provider(targets) if offline else self.provider
        )
        return resolve(reqs, provider, targets, max_workers=self.config.max_workers)

    def _offline_provider(self, variants: list[RuntimeVariant]) -> ManifestProvider:
        """合并各目标树中已安装的描述"""
        memory = InMemoryManifestProvider()
        seen: set[tuple[str, Version]] = set()
        for variant in variants:
            for desc in self.trees.descriptors(self.tree(variant)):
                if (desc.name, desc.version) not in seen:
                    seen.add((desc.name, desc.version))
                    memory.add(desc)
        logger.info("离线解析: 使用安装树中的 %d 个描述", len(seen))
        return memory

    def lock_all(self, *, update: bool = False, frozen: bool = False) -> Lockfile:
        """返回与项目一致的 Lockfile，只重新解析过期的分区并写回

        update=True 时全部分区重新取最新可行版本，但被钉住的包保持锁定版本。

        异常:
            LockfileError: frozen 模式下锁文件缺失或过期
            NoSolution / DependencyCycle: 重新解析失败（锁文件保持不变）
        """
        project = self.project()
        targets = self.variants(project)
        wanted = project.requirements()
        path = Path(self.config.lockfile)
        locked = read_lockfile(path)

        if locked is not None and not update:
            stale = stale_sections(locked, wanted, self.provider, targets)
            if not stale:
                logger.info("锁文件有效，复用: %s", path)
                return locked
        else:
            stale = list(SECTIONS)
        if frozen:
            reason = "不存在" if locked is None else "已过期"
            raise LockfileError(f"锁文件{reason}，frozen 模式下拒绝重新解析: {path}")

        previous = locked or Lockfile()
        result = previous
        for name in stale:
            result = result.replace(name, self._relock(
                name, wanted[name], targets, previous.section(name), update=update,
            ))
        write_lockfile(path, result)
        return result

    def _relock(
        self,
        section: str,
        requirements: list[Dependency],
        targets: list[RuntimeVariant],
        previous: Resolution,
        *,
        update: bool,
    ) -> Resolution:
        if section != DEPENDENCIES and not requirements:
            return Resolution()
        logger.info("重新解析 %s (%d 个根依赖)", section, len(requirements))
        return resolve(
            requirements, self.provider, targets,
            None if update else previous,
            pinned=previous,
            max_workers=self.config.max_workers,
        )

    def lock(self, *, update: bool = False, frozen: bool = False) -> Resolution:
        """lock_all 的运行依赖分区"""
        return self.lock_all(update=update, frozen=frozen).dependencies

    def set_pinned(
        self, name: str, pinned: bool = True, *, section: str = DEPENDENCIES,
    ) -> list[ResolvedPackage]:
        """修改锁文件中包的钉住状态

        异常:
            LockfileError: 锁文件不存在
            PackageNotFound: 该分区没有锁定此包
        """
        path = Path(self.config.lockfile)
        locked = read_lockfile(path)
        if locked is None:
            raise LockfileError(f"锁文件不存在，请先执行 lock: {path}")
        changed = _set_pinned(locked.section(section), name, pinned)
        write_lockfile(path, locked)
        logger.info("%s %s (%s)", "已钉住" if pinned else "已取消钉住", name, section)
        return changed

    # ---- 安装 ----

    def _tree_root(self, section: str) -> Path:
        # 构建 / 测试依赖装在各自的子树中，与运行依赖互不冲突
        root = Path(self.config.tree_root)
        return root if section == DEPENDENCIES else root / section

    def install(
        self,
        *,
        best_effort: bool | None = None,
        update: bool = False,
        frozen: bool = False,
        resolution: Resolution | None = None,
        sections: tuple[str, ...] = (DEPENDENCIES,),
    ) -> InstallReport:
        """构建并安装锁定的包，单包失败记录在报告中而不抛出

        sections 依次安装；fail-fast 模式下某个分区失败后不再安装后续分区。
        """
        effort = self.config.best_effort if best_effort is None else best_effort
        if resolution is not None:
            plan = [(DEPENDENCIES, resolution)]
        else:
            locked = self.lock_all(update=update, frozen=frozen)
            plan = [(name, locked.section(name)) for name in sections]

        report = InstallReport()
        for name, section in plan:
            if not section.packages:
                continue
            pipeline = BuildPipeline.from_config(
                self.config, fetcher=self.fetcher, trees=self.trees, executor=self.executor,
                tree_root=self._tree_root(name),
            )
            scheduler = BuildScheduler(self.config.max_workers, best_effort=effort, executor=self.executor)
            part = scheduler.run(hydrate(section, self.provider), pipeline.run)
            report.outcomes.extend(part.outcomes)
            if not part.success and not effort:
                break
        logger.info(
            "安装结束: %d 成功, %d 失败, %d 跳过",
            len(report.installed), len(report.failed), len(report.skipped),
        )
        return report

    def installed(self, variants: list[RuntimeVariant] | None = None) -> dict[RuntimeVariant, InstalledListing]:
        targets = variants or self.config.variants()
        return {v: self.trees.list(self.tree(v)) for v in targets}

    def uninstall(
        self,
        name: str,
        version: str | None = None,
        variants: list[RuntimeVariant] | None = None,
    ) -> dict[RuntimeVariant, list[str]]:
        """卸载包（不指定版本则卸载所有已安装版本），返回每棵树删除的文件

        异常:
            PackageNotFound: 所有目标树中都没有该包
        """
        targets = variants or self.config.variants()
        wanted = parse_version(version) if version else None
        removed: dict[RuntimeVariant, list[str]] = {}
        for variant in targets:
            tree = self.tree(variant)
            versions = [v for n, v in self.trees.list(tree) if n == name]
            if wanted is not None:
                versions = [v for v in versions if v == wanted]
            for ver in versions:
                removed.setdefault(variant, []).extend(self.trees.uninstall(tree, name, ver))
        if not removed:
            raise PackageNotFound(f"{name}@{version}" if version else name)
        return removed
