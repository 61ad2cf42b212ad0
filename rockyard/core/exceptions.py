"""统一异常体系

所有业务异常继承 RockyardError，每个类带稳定的 code，
CLI 据此输出友好提示，安装报告据此记录失败类型。
"""

from __future__ import annotations

from dataclasses import dataclass, field


class RockyardError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(RockyardError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(RockyardError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


# =========================================================================
# 版本 / 解析
# =========================================================================


class ResolutionError(RockyardError):
    """依赖解析失败，不会返回部分结果"""

    code = "RESOLUTION_ERROR"


class MalformedVersion(ResolutionError):
    code = "MALFORMED_VERSION"


class MalformedConstraint(ResolutionError):
    code = "MALFORMED_CONSTRAINT"


@dataclass(frozen=True)
class Conflict:
    """一次冲突: 包名、施加在它上面的约束（附来源）、每个被拒候选及拒绝它的约束"""

    package: str
    constraints: tuple[tuple[str, str], ...]   # (约束文本, 来源包)
    rejected: tuple[tuple[str, str], ...] = field(default_factory=tuple)  # (候选版本, 拒绝原因)

    def describe(self) -> str:
        lines = [f"{self.package}:"]
        for text, origin in self.constraints:
            lines.append(f"  {text or 'any'} (来自 {origin})")
        for version, reason in self.rejected:
            lines.append(f"  × {version}: {reason}")
        return "\n".join(lines)


class NoSolution(ResolutionError):
    """回溯穷尽仍无可行解"""

    code = "NO_SOLUTION"

    def __init__(self, message: str, conflicts: list[Conflict] | None = None) -> None:
        self.conflicts = list(conflicts or [])
        detail = "\n".join(c.describe() for c in self.conflicts)
        super().__init__(f"{message}\n{detail}" if detail else message)


class DependencyCycle(ResolutionError):
    """包在同一赋值空间内传递依赖自身"""

    code = "DEPENDENCY_CYCLE"

    def __init__(self, path: list[str]) -> None:
        self.path = list(path)
        super().__init__(f"检测到循环依赖: {' -> '.join(self.path)}")


# =========================================================================
# 清单提供者
# =========================================================================


class ProviderError(RockyardError):
    code = "PROVIDER_ERROR"


class PackageNotFound(ProviderError):
    code = "PACKAGE_NOT_FOUND"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"清单中不存在包: {name}")


class ProviderUnavailable(ProviderError):
    code = "PROVIDER_UNAVAILABLE"


# =========================================================================
# 拉取 / 校验
# =========================================================================


class FetchError(RockyardError):
    code = "FETCH_ERROR"
    retryable = False


class NetworkFailure(FetchError):
    code = "NETWORK_FAILURE"
    retryable = True


class SourceNotFound(FetchError):
    code = "SOURCE_NOT_FOUND"


class FetchTimeout(FetchError):
    code = "FETCH_TIMEOUT"
    retryable = True


class IntegrityError(RockyardError):
    code = "INTEGRITY_ERROR"


class ChecksumMismatch(IntegrityError):
    code = "CHECKSUM_MISMATCH"

    def __init__(self, package: str, expected: str, actual: str) -> None:
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(f"校验和不匹配 {package}: 期望 {expected}, 实际 {actual}")


# =========================================================================
# 构建
# =========================================================================


class BuildError(RockyardError):
    code = "BUILD_ERROR"


class UnsupportedBackend(BuildError):
    code = "UNSUPPORTED_BACKEND"

    def __init__(self, backend: str) -> None:
        self.backend = backend
        super().__init__(f"不支持的构建后端: {backend!r}")


class BackendFailure(BuildError):
    code = "BACKEND_FAILURE"

    def __init__(self, message: str, exit_code: int) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class MissingToolchain(BuildError):
    code = "MISSING_TOOLCHAIN"

    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(f"未找到构建工具: {tool}")


class BuildConfigError(BuildError):
    """后端参数与源码树不匹配（如声明的文件不存在）"""

    code = "BUILD_CONFIG_ERROR"


class IllegalTransition(BuildError):
    """构建状态机的非法迁移（程序错误）"""

    code = "ILLEGAL_TRANSITION"


# =========================================================================
# 安装
# =========================================================================


class InstallError(RockyardError):
    code = "INSTALL_ERROR"


class FileCollision(InstallError):
    code = "FILE_COLLISION"

    def __init__(self, path: str, owner: str, package: str) -> None:
        self.path = path
        self.owner = owner
        self.package = package
        super().__init__(f"文件冲突: {path} 已属于 {owner}，拒绝被 {package} 覆盖")


class InstallPermissionDenied(InstallError):
    code = "PERMISSION_DENIED"


# =========================================================================
# 锁文件
# =========================================================================


class LockfileError(RockyardError):
    code = "LOCKFILE_ERROR"


class LockfileCorrupt(LockfileError):
    code = "LOCKFILE_CORRUPT"
