"""构建调度器 - 按依赖拓扑并行驱动每个包的构建状态机

一个包只有在它的全部依赖都到达 Installed 之后才会提交给线程池；
同一层的兄弟包可并行，互相之间不保证顺序。
调度器是调度状态的唯一持有者，worker 只通过 future 返回 PackageOutcome。

失败传播:
  - 失败包的所有传递依赖者标记为 Skipped(blocked_by)
  - fail-fast（默认）: 首个失败后取消尚未开始的包，并终止在途子进程
  - best-effort: 独立子图继续执行，最终报告列出全部失败 / 跳过
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable

from rockyard.core.models import (
    BuildState,
    FailureKind,
    InstallReport,
    PackageKey,
    PackageOutcome,
    Resolution,
    ResolvedPackage,
)
from rockyard.utils.shell import CommandExecutor, get_executor

logger = logging.getLogger(__name__)

# worker 任务: 接受包与取消事件，返回终态结果
PackageTask = Callable[[ResolvedPackage, threading.Event], PackageOutcome]


class BuildScheduler:
    """有界线程池调度器"""

    def __init__(
        self,
        max_workers: int | None = None,
        *,
        best_effort: bool = False,
        executor: CommandExecutor | None = None,
    ) -> None:
        self.max_workers = max(1, max_workers or os.cpu_count() or 1)
        self.best_effort = best_effort
        self.executor = executor or get_executor()

    def run(self, resolution: Resolution, task: PackageTask) -> InstallReport:
        """执行全部包，返回按拓扑序排列的安装报告（任务异常不会逃逸）"""
        order = resolution.topological_order()
        position = {key: i for i, key in enumerate(order)}
        rdeps = resolution.dependents()
        waiting = {
            key: {(d, pkg.variant) for d in pkg.dependencies}
            for key, pkg in resolution.packages.items()
        }
        outcomes: dict[PackageKey, PackageOutcome] = {}
        ready = [key for key in order if not waiting[key]]
        cancel = threading.Event()

        logger.info(
            "开始构建 %d 个包 (并行度 %d, %s)", len(order), self.max_workers,
            "best-effort" if self.best_effort else "fail-fast",
        )
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            running: dict[Future[PackageOutcome], PackageKey] = {}

            def submit_ready() -> None:
                # 只在有空闲 worker 时提交，排队中的包留在 ready 里便于取消
                while ready and len(running) < self.max_workers and not cancel.is_set():
                    key = ready.pop(0)
                    running[pool.submit(task, resolution.packages[key], cancel)] = key

            submit_ready()
            while running:
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: position[running[f]]):
                    key = running.pop(fut)
                    outcome = self._collect(fut, resolution.packages[key])
                    outcomes[key] = outcome
                    logger.info(
                        "完成: %s -> %s (%.1f秒)",
                        resolution.packages[key].label, outcome.state.value, outcome.duration,
                    )
                    if outcome.state == BuildState.INSTALLED:
                        for parent in rdeps[key]:
                            waiting[parent].discard(key)
                            if not waiting[parent] and parent not in outcomes:
                                ready.append(parent)
                        ready.sort(key=position.__getitem__)
                    elif outcome.state == BuildState.FAILED:
                        self._block_dependents(resolution, key, rdeps, outcomes)
                        if not self.best_effort and not cancel.is_set():
                            self._cancel(cancel, running, resolution, outcomes)
                submit_ready()

        for key in order:
            if key not in outcomes:
                pkg = resolution.packages[key]
                outcomes[key] = PackageOutcome(
                    name=pkg.name, version=str(pkg.version), variant=pkg.variant,
                    state=BuildState.SKIPPED, message="因其他包失败而取消",
                )
        report = InstallReport(outcomes=[outcomes[key] for key in order])
        logger.info(
            "构建结束: 安装 %d, 失败 %d, 跳过 %d",
            len(report.installed), len(report.failed), len(report.skipped),
        )
        return report

    @staticmethod
    def _collect(fut: Future[PackageOutcome], pkg: ResolvedPackage) -> PackageOutcome:
        try:
            return fut.result()
        except Exception as e:  # worker 边界: 未预期的异常记为该包失败
            logger.exception("构建 %s 时出现未预期异常", pkg.label)
            return PackageOutcome(
                name=pkg.name, version=str(pkg.version), variant=pkg.variant,
                state=BuildState.FAILED, failure=FailureKind.from_error(e), message=str(e),
            )

    @staticmethod
    def _block_dependents(
        resolution: Resolution,
        failed: PackageKey,
        rdeps: dict[PackageKey, list[PackageKey]],
        outcomes: dict[PackageKey, PackageOutcome],
    ) -> None:
        """失败包的所有传递依赖者标记为 Skipped(blocked_by)"""
        stack = list(rdeps[failed])
        seen: set[PackageKey] = set()
        while stack:
            key = stack.pop()
            if key in seen:
                continue
            seen.add(key)
            stack.extend(rdeps[key])
            existing = outcomes.get(key)
            if existing is not None and existing.state != BuildState.SKIPPED:
                continue
            blocked = existing.blocked_by if existing is not None else ()
            if failed[0] not in blocked:
                blocked = (*blocked, failed[0])
            pkg = resolution.packages[key]
            outcomes[key] = PackageOutcome(
                name=pkg.name, version=str(pkg.version), variant=pkg.variant,
                state=BuildState.SKIPPED, blocked_by=blocked,
                message=f"依赖失败: {', '.join(blocked)}",
            )
            logger.warning("跳过 %s: 依赖 %s 失败", pkg.label, failed[0])

    def _cancel(
        self,
        cancel: threading.Event,
        running: dict[Future[PackageOutcome], PackageKey],
        resolution: Resolution,
        outcomes: dict[PackageKey, PackageOutcome],
    ) -> None:
        """fail-fast: 取消排队中的任务并终止在途子进程"""
        cancel.set()
        for fut, key in list(running.items()):
            if fut.cancel():
                running.pop(fut)
                pkg = resolution.packages[key]
                outcomes[key] = PackageOutcome(
                    name=pkg.name, version=str(pkg.version), variant=pkg.variant,
                    state=BuildState.SKIPPED, message="因其他包失败而取消",
                )
        terminated = self.executor.terminate_all()
        logger.error("fail-fast: 已取消后续构建，终止 %d 个在途进程", terminated)
