"""依赖解析器

回溯搜索，每个 (包名, 运行时变体) 一个选择点:

  1. 维护部分赋值 (包名 -> 描述) 与待处理依赖边的 FIFO 工作队列
  2. 取出下一条边；目标未赋值时向清单提供者查询候选，
     按施加在该名上的全部约束（含队列中尚未处理的必需边）和运行时兼容性过滤
  3. 候选按版本降序，锁定 / 偏好版本优先
  4. 选第一个候选，把它的依赖压入队列，并把 (剩余候选, 赋值快照) 压入选择点栈
  5. 冲突（含依赖成环）时回到最近一个仍有候选的选择点；
     栈空时若途中遇到过环则抛 DependencyCycle，否则抛 NoSolution，附全部冲突

选择点栈是显式的，不使用递归或异常回退。
每个运行时变体是独立的赋值空间，多个变体在线程池中并行解析，
共享同一个带缓存的清单提供者，结果按变体顺序合并。
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Union

from rockyard.core.exceptions import (
    Conflict,
    DependencyCycle,
    NoSolution,
    PackageNotFound,
    ValidationError,
)
from rockyard.core.manifest import CachedManifestProvider
from rockyard.core.models import (
    Dependency,
    PackageDescriptor,
    Resolution,
    ResolvedPackage,
    RuntimeVariant,
    variant_order,
)
from rockyard.core.protocols import ManifestProvider
from rockyard.core.version import (
    Comparator,
    Version,
    VersionConstraint,
    parse_requirement,
    parse_version,
)

logger = logging.getLogger(__name__)

ROOT = "<root>"
PINNED = "<pinned>"

Requirement = Union[str, Dependency, VersionConstraint]


def normalize_requirements(root_requirements: Iterable[Requirement]) -> list[Dependency]:
    """字符串 / 约束 / 依赖统一为 Dependency，字符串解析失败抛 MalformedConstraint"""
    result: list[Dependency] = []
    for req in root_requirements:
        if isinstance(req, Dependency):
            result.append(req)
        elif isinstance(req, VersionConstraint):
            result.append(Dependency(constraint=req))
        else:
            result.append(Dependency(constraint=parse_requirement(str(req))))
    return result


# =========================================================================
# 搜索状态
# =========================================================================


@dataclass
class _State:
    assignment: dict[str, PackageDescriptor] = field(default_factory=dict)
    constraints: dict[str, list[tuple[VersionConstraint, str]]] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)
    roots: list[str] = field(default_factory=list)
    worklist: deque[tuple[str, Dependency]] = field(default_factory=deque)

    def copy(self) -> _State:
        return _State(
            assignment=dict(self.assignment),
            constraints={k: list(v) for k, v in self.constraints.items()},
            edges={k: list(v) for k, v in self.edges.items()},
            roots=list(self.roots),
            worklist=deque(self.worklist),
        )

    def add_edge(self, origin: str, name: str) -> None:
        targets = self.roots if origin == ROOT else self.edges.setdefault(origin, [])
        if name not in targets:
            targets.append(name)

    def add_constraint(self, name: str, constraint: VersionConstraint, origin: str) -> None:
        self.constraints.setdefault(name, []).append((constraint, origin))


@dataclass
class _ChoicePoint:
    """选择点: 包名、剩余候选（None 表示放弃该可选依赖）、赋值快照"""

    name: str
    origin: str
    dep: Dependency
    remaining: list[PackageDescriptor | None]
    snapshot: _State


# =========================================================================
# 单变体求解
# =========================================================================


class _VariantSolver:
    """在一个运行时变体的赋值空间内求解"""

    def __init__(
        self,
        variant: RuntimeVariant,
        roots: Sequence[Dependency],
        provider: ManifestProvider,
        preferred: Mapping[str, Version],
        pinned: Mapping[str, Version] | None = None,
    ) -> None:
        self.variant = variant
        self.roots = roots
        self.provider = provider
        self.preferred = preferred
        self.pinned = {
            name: VersionConstraint(name=name, comparators=(Comparator("==", version),))
            for name, version in (pinned or {}).items()
        }
        self.conflicts: list[Conflict] = []
        self.cycles: list[list[str]] = []

    def solve(self) -> tuple[list[ResolvedPackage], tuple[str, ...]]:
        state = _State()
        for dep in self.roots:
            if not dep.is_active(self.variant):
                continue
            if dep.name == "lua":
                self._check_runtime(dep)
                continue
            state.worklist.append((ROOT, dep))

        stack: list[_ChoicePoint] = []
        while not self._advance(state, stack):
            state = self._backtrack(stack)
        return self._finish(state)

    def _check_runtime(self, dep: Dependency) -> None:
        if dep.constraint.matches(self.variant.lua_version):
            return
        conflict = Conflict(
            package="lua",
            constraints=((dep.constraint.expression, ROOT),),
            rejected=((self.variant.value, f"运行时不满足 {dep.constraint}"),),
        )
        raise NoSolution(f"[{self.variant}] 运行时与项目要求不兼容", [conflict])

    def _advance(self, state: _State, stack: list[_ChoicePoint]) -> bool:
        """处理工作队列直到清空（True）或遇到冲突（False）"""
        while state.worklist:
            origin, dep = state.worklist.popleft()
            name = dep.name

            if name in state.assignment:
                chosen = state.assignment[name]
                if not dep.constraint.matches(chosen.version):
                    if dep.optional:
                        logger.debug("[%s] 丢弃不满足的可选依赖 %s -> %s", self.variant, origin, dep)
                        continue
                    self._record(state, name, extra=(dep.constraint, origin), rejected=(
                        (str(chosen.version), f"不满足 {dep.constraint.expression or 'any'} (来自 {origin})"),
                    ))
                    return False
                if origin != ROOT:
                    path = _find_path(state.edges, name, origin)
                    if path is not None:
                        # 环按冲突处理: 换别的候选可能无环，全部失败时才报告
                        cycle = [*path, name]
                        if cycle not in self.cycles:
                            self.cycles.append(cycle)
                        logger.debug("[%s] 检测到环 %s，回溯", self.variant, " -> ".join(cycle))
                        return False
                state.add_edge(origin, name)
                state.add_constraint(name, dep.constraint, origin)
                continue

            candidates = self._candidates(state, origin, dep)
            if candidates is None:
                return False
            if dep.optional:
                candidates.append(None)
            if candidates == [None]:
                logger.debug("[%s] 可选依赖无可用候选，忽略: %s -> %s", self.variant, origin, dep)
                continue
            stack.append(_ChoicePoint(
                name=name, origin=origin, dep=dep,
                remaining=candidates[1:], snapshot=state.copy(),
            ))
            self._apply(state, origin, dep, candidates[0])
        return True

    def _candidates(
        self, state: _State, origin: str, dep: Dependency,
    ) -> list[PackageDescriptor | None] | None:
        """过滤后的候选列表；必需依赖无候选时记录冲突并返回 None"""
        name = dep.name
        imposed = [(dep.constraint, origin)] + [
            (d.constraint, o) for o, d in state.worklist
            if d.name == name and not d.optional
        ]
        if name in self.pinned:
            imposed.append((self.pinned[name], PINNED))

        merged = imposed[0][0]
        for c, _ in imposed[1:]:
            merged = merged.merge(c)
        if not merged.intersects():
            if dep.optional:
                return []
            self._conflict(name, imposed, ())
            return None

        try:
            published = self.provider.list_versions(name)
        except PackageNotFound:
            if dep.optional:
                return []
            self._conflict(name, imposed, (("-", "注册表中不存在该包"),))
            return None

        rejected: list[tuple[str, str]] = []
        accepted: list[PackageDescriptor | None] = []
        for version, desc in sorted(published, key=lambda vd: vd[0], reverse=True):
            reason = self._reject_reason(desc, imposed)
            if reason:
                rejected.append((str(version), reason))
            else:
                accepted.append(desc)

        pin = self.preferred.get(name)
        if pin is not None:
            for i, desc in enumerate(accepted):
                if desc is not None and desc.version == pin:
                    accepted.insert(0, accepted.pop(i))
                    break

        if not accepted and not dep.optional:
            self._conflict(name, imposed, tuple(rejected))
            return None
        logger.debug(
            "[%s] %s 候选: %s", self.variant, name,
            [str(d.version) for d in accepted if d is not None],
        )
        return accepted

    def _reject_reason(
        self, desc: PackageDescriptor, imposed: list[tuple[VersionConstraint, str]],
    ) -> str:
        for constraint, origin in imposed:
            if not constraint.matches(desc.version):
                return f"不满足 {constraint.expression or 'any'} (来自 {origin})"
        if not desc.supports(self.variant):
            return f"不支持运行时 {self.variant}"
        return ""

    def _apply(
        self, state: _State, origin: str, dep: Dependency,
        desc: PackageDescriptor | None,
    ) -> None:
        if desc is None:
            logger.debug("[%s] 放弃可选依赖 %s -> %s", self.variant, origin, dep)
            return
        state.assignment[desc.name] = desc
        state.add_constraint(desc.name, dep.constraint, origin)
        state.add_edge(origin, desc.name)
        for child in desc.active_dependencies(self.variant):
            state.worklist.append((desc.name, child))
        logger.debug("[%s] 选择 %s", self.variant, desc)

    def _backtrack(self, stack: list[_ChoicePoint]) -> _State:
        while stack:
            point = stack[-1]
            if not point.remaining:
                stack.pop()
                continue
            candidate = point.remaining.pop(0)
            state = point.snapshot.copy()
            logger.debug(
                "[%s] 回溯到 %s，改选 %s", self.variant, point.name,
                candidate.version if candidate is not None else "(放弃)",
            )
            self._apply(state, point.origin, point.dep, candidate)
            return state
        if self.cycles:
            raise DependencyCycle(self.cycles[0])
        raise NoSolution(f"[{self.variant}] 无法满足依赖约束", self.conflicts)

    def _record(
        self, state: _State, name: str, *,
        extra: tuple[VersionConstraint, str], rejected: tuple[tuple[str, str], ...],
    ) -> None:
        self._conflict(name, [*state.constraints.get(name, []), extra], rejected)

    def _conflict(
        self, name: str, imposed: list[tuple[VersionConstraint, str]],
        rejected: tuple[tuple[str, str], ...],
    ) -> None:
        conflict = Conflict(
            package=name,
            constraints=tuple((c.expression, o) for c, o in imposed),
            rejected=rejected,
        )
        if conflict not in self.conflicts:
            self.conflicts.append(conflict)
        logger.debug("[%s] 冲突: %s", self.variant, conflict.describe())

    def _finish(self, state: _State) -> tuple[list[ResolvedPackage], tuple[str, ...]]:
        packages = [
            ResolvedPackage(
                name=name,
                version=desc.version,
                variant=self.variant,
                integrity=desc.integrity,
                dependencies=tuple(sorted(state.edges.get(name, []))),
                pinned=name in self.pinned,
                descriptor=desc,
            )
            for name, desc in sorted(state.assignment.items())
        ]
        return packages, tuple(sorted(state.roots))


def _find_path(edges: Mapping[str, list[str]], start: str, goal: str) -> list[str] | None:
    """已赋值图中 start -> goal 的路径（含两端），不存在返回 None"""
    if start == goal:
        return [start]
    parents: dict[str, str] = {start: ""}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for nxt in edges.get(node, []):
            if nxt in parents:
                continue
            parents[nxt] = node
            if nxt == goal:
                path = [nxt]
                while parents[path[-1]]:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(nxt)
    return None


# =========================================================================
# 公共入口
# =========================================================================


def _preferred_map(
    preferred: Resolution | Mapping[str, Version | str] | None,
    variant: RuntimeVariant,
    *,
    pinned_only: bool = False,
) -> dict[str, Version]:
    if preferred is None:
        return {}
    if isinstance(preferred, Resolution):
        return {
            p.name: p.version for p in preferred.for_variant(variant)
            if p.pinned or not pinned_only
        }
    return {
        name: v if isinstance(v, Version) else parse_version(str(v))
        for name, v in preferred.items()
    }


def resolve(
    root_requirements: Iterable[Requirement],
    provider: ManifestProvider,
    variants: Iterable[RuntimeVariant | str],
    preferred: Resolution | Mapping[str, Version | str] | None = None,
    *,
    pinned: Resolution | Mapping[str, Version | str] | None = None,
    max_workers: int | None = None,
) -> Resolution:
    """解析依赖，返回完整 Resolution（绝不返回部分结果）

    参数:
        root_requirements: 项目直接依赖（字符串如 "foo >= 1.0" 或 Dependency）
        provider: 清单提供者；非 CachedManifestProvider 时自动包装
        variants: 目标运行时变体
        preferred: 优先尝试的版本（通常来自锁文件）
        pinned: 必须保持的版本；传 Resolution 时只取其中 pinned 的包。
            被钉住的包一旦被选中只能取该版本，否则视为冲突

    异常:
        NoSolution / DependencyCycle / MalformedConstraint
    """
    roots = normalize_requirements(root_requirements)
    targets: list[RuntimeVariant] = []
    for v in variants:
        variant = v if isinstance(v, RuntimeVariant) else RuntimeVariant.parse(v)
        if variant not in targets:
            targets.append(variant)
    if not targets:
        raise ValidationError("至少需要一个运行时变体")
    targets.sort(key=variant_order)

    cached = provider if isinstance(provider, CachedManifestProvider) else CachedManifestProvider(provider)
    solvers = [
        _VariantSolver(
            variant, roots, cached, _preferred_map(preferred, variant),
            _preferred_map(pinned, variant, pinned_only=True),
        )
        for variant in targets
    ]

    if len(solvers) == 1:
        results = [solvers[0].solve()]
    else:
        with ThreadPoolExecutor(max_workers=max_workers or len(solvers)) as pool:
            futures = [pool.submit(s.solve) for s in solvers]
            # 按变体顺序取结果，第一个失败的变体决定抛出的异常
            results = [f.result() for f in futures]

    resolution = Resolution(
        requirements=tuple(sorted(str(d.constraint) for d in roots)),
        variants=tuple(targets),
    )
    for variant, (packages, root_names) in zip(targets, results):
        resolution.roots[variant] = root_names
        for pkg in packages:
            resolution.packages[pkg.key] = pkg
    logger.info(
        "解析完成: %d 个包, 变体 %s",
        len(resolution.packages), ", ".join(v.value for v in targets),
    )
    return resolution
