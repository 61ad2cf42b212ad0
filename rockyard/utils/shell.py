"""Shell 命令执行工具 — 统一子进程调用

通过 CommandExecutor 协议抽象子进程执行，方便测试替换。
LocalExecutor 记录所有存活子进程，调度器在 fail-fast 时可一次性终止。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Protocol

from rockyard.core.exceptions import MissingToolchain

logger = logging.getLogger(__name__)


# =========================================================================
# 命令执行结果
# =========================================================================

@dataclass
class CommandResult:
    """命令执行结果（与 subprocess 解耦）"""

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    terminated: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议 — 抽象子进程调用

    测试时可注入 fake 实现，无需 patch subprocess。
    """

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """执行命令并返回结果；可执行文件不存在时抛 MissingToolchain"""
        ...

    def terminate_all(self) -> int:
        """终止所有在途子进程，返回被终止的数量"""
        ...


# =========================================================================
# 默认实现: 本地执行器
# =========================================================================

class LocalExecutor:
    """本地子进程执行器（默认实现，不经过 shell）"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: set[subprocess.Popen[str]] = set()
        self._terminated: set[int] = set()

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        args = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
        try:
            proc = subprocess.Popen(
                args, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                text=True, cwd=cwd, env=env,
            )
        except FileNotFoundError as e:
            raise MissingToolchain(args[0] if args else "") from e

        with self._lock:
            self._live.add(proc)
        try:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = proc.communicate()
                logger.warning("命令超时已终止 (%ss): %s", timeout, args[0])
                return CommandResult(
                    returncode=proc.returncode, stdout=stdout, stderr=stderr,
                    timed_out=True,
                )
        finally:
            with self._lock:
                self._live.discard(proc)
                terminated = proc.pid in self._terminated
                self._terminated.discard(proc.pid)

        return CommandResult(
            returncode=proc.returncode, stdout=stdout, stderr=stderr,
            terminated=terminated,
        )

    def terminate_all(self) -> int:
        with self._lock:
            procs = list(self._live)
            self._terminated.update(p.pid for p in procs)
        for proc in procs:
            if proc.poll() is None:
                logger.warning("终止在途进程: pid=%d", proc.pid)
                proc.terminate()
        return len(procs)


# =========================================================================
# 全局默认执行器（可替换）
# =========================================================================

_default_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    """获取全局默认命令执行器"""
    return _default_executor


def set_executor(executor: CommandExecutor) -> None:
    """替换全局默认命令执行器（用于测试）"""
    global _default_executor  # noqa: PLW0603
    _default_executor = executor


def format_cmd(cmd: str | list[str]) -> str:
    return cmd if isinstance(cmd, str) else shlex.join(cmd)
