"""源码来源适配器 - 支持 File / URL / Git

职责:
- 本地目录 / 归档 / 单文件复制
- http(s) 下载 + 归档解压（tar 使用 data 过滤器，zip 做路径检查）
- Git clone + 检出 ref

传输失败统一映射到 FetchError 家族: NetworkFailure / FetchTimeout 可重试，SourceNotFound 不重试。
"""

from __future__ import annotations

import logging
import re
import shutil
import socket
import tarfile
import urllib.error
import urllib.request
import zipfile
from pathlib import Path
from urllib.parse import urlparse

from rockyard.core.exceptions import (
    FetchError,
    FetchTimeout,
    NetworkFailure,
    SourceNotFound,
)
from rockyard.core.models import SourceSpec, SourceTree
from rockyard.utils.shell import CommandExecutor, get_executor

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset(("http", "https"))
_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz", ".tar", ".zip")
_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")
_NOT_FOUND_MARKERS = ("not found", "does not exist", "could not find remote branch")


def _is_archive(name: str) -> bool:
    return name.lower().endswith(_ARCHIVE_SUFFIXES)


def _archive_name(url: str) -> str:
    """从 URL 取下载文件名"""
    name = urlparse(url).path.rstrip("/").split("/")[-1]
    return name or "download"


def extract_archive(archive: Path, dest: Path) -> None:
    """解压 tar / zip 归档到 dest，拒绝越出 dest 的成员"""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if archive.name.lower().endswith(".zip"):
            root = dest.resolve()
            with zipfile.ZipFile(archive) as zf:
                for member in zf.namelist():
                    target = (dest / member).resolve()
                    if target != root and root not in target.parents:
                        raise FetchError(f"归档成员越界: {member}")
                zf.extractall(dest)
        else:
            with tarfile.open(archive) as tf:
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(path=str(dest), filter="data")  # noqa: S202
                else:
                    # 没有解压过滤器的解释器: 先检查成员路径与链接
                    root = dest.resolve()
                    for member in tf.getmembers():
                        target = (dest / member.name).resolve()
                        if target != root and root not in target.parents:
                            raise FetchError(f"归档成员越界: {member.name}")
                        if member.issym() or member.islnk():
                            raise FetchError(f"归档包含链接: {member.name}")
                    tf.extractall(path=str(dest))  # noqa: S202
    except (tarfile.TarError, zipfile.BadZipFile) as e:
        raise FetchError(f"归档解压失败 {archive.name}: {e}") from e


def _source_root(dest: Path, source: SourceSpec) -> Path:
    """确定源码根: 显式 dir 优先；否则归档只含一个顶层目录时进入该目录"""
    if source.subdir:
        root = dest / source.subdir
        if not root.is_dir():
            raise SourceNotFound(f"源码子目录不存在: {source.subdir}")
        return root
    entries = [p for p in dest.iterdir() if not p.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


class FileSource:
    """本地来源: 目录、归档或单个文件"""

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        src = Path(source.location).expanduser()
        if not src.exists():
            raise SourceNotFound(f"本地来源不存在: {src}")
        dest.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True, ignore=shutil.ignore_patterns(".git"))
            root = dest / source.subdir if source.subdir else dest
            if not root.is_dir():
                raise SourceNotFound(f"源码子目录不存在: {source.subdir}")
        elif _is_archive(src.name):
            extract_archive(src, dest)
            root = _source_root(dest, source)
        else:
            shutil.copy2(src, dest / src.name)
            root = dest
        logger.info("本地来源就绪: %s -> %s", src, root)
        return SourceTree(path=root, source=source)


class UrlSource:
    """http(s) 下载来源"""

    def __init__(self, timeout: float = 300) -> None:
        self.timeout = timeout

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        url = source.location
        scheme = urlparse(url).scheme
        if scheme not in _ALLOWED_SCHEMES:
            raise SourceNotFound(f"不允许的 URL 协议 '{scheme}'，仅支持 http/https: {url}")

        download_dir = dest.parent / f"{dest.name}.download"
        download_dir.mkdir(parents=True, exist_ok=True)
        archive = download_dir / _archive_name(url)
        logger.info("下载: %s", url)
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as resp:  # nosec B310
                with open(archive, "wb") as f:
                    shutil.copyfileobj(resp, f)
        except urllib.error.HTTPError as e:
            archive.unlink(missing_ok=True)
            if e.code in (404, 410):
                raise SourceNotFound(f"下载地址不存在 ({e.code}): {url}") from e
            raise NetworkFailure(f"下载失败 ({e.code}): {url}") from e
        except urllib.error.URLError as e:
            archive.unlink(missing_ok=True)
            if isinstance(e.reason, (TimeoutError, socket.timeout)):
                raise FetchTimeout(f"下载超时 ({self.timeout}s): {url}") from e
            raise NetworkFailure(f"下载失败: {url} - {e.reason}") from e
        except (TimeoutError, socket.timeout) as e:
            archive.unlink(missing_ok=True)
            raise FetchTimeout(f"下载超时 ({self.timeout}s): {url}") from e

        try:
            dest.mkdir(parents=True, exist_ok=True)
            if _is_archive(archive.name):
                extract_archive(archive, dest)
                root = _source_root(dest, source)
            else:
                shutil.copy2(archive, dest / archive.name)
                root = dest
        finally:
            shutil.rmtree(download_dir, ignore_errors=True)
        logger.info("URL 来源就绪: %s -> %s", url, root)
        return SourceTree(path=root, source=source)


class GitSource:
    """Git 仓库来源（通过命令执行器调用 git，可被 fail-fast 终止）"""

    def __init__(self, executor: CommandExecutor | None = None, timeout: float = 300) -> None:
        self.executor = executor or get_executor()
        self.timeout = timeout

    def _git(self, args: list[str], *, cwd: str = ".") -> str:
        result = self.executor.execute(["git", *args], cwd=cwd, timeout=self.timeout)
        if result.timed_out:
            raise FetchTimeout(f"git {args[0]} 超时 ({self.timeout}s)")
        if not result.success:
            stderr = result.stderr.strip()
            if any(m in stderr.lower() for m in _NOT_FOUND_MARKERS):
                raise SourceNotFound(f"git {args[0]} 失败: {stderr[:300]}")
            raise NetworkFailure(f"git {args[0]} 失败 (rc={result.returncode}): {stderr[:300]}")
        return result.stdout

    def fetch(self, source: SourceSpec, dest: Path) -> SourceTree:
        ref = source.ref
        if ref and not _SAFE_REF_RE.match(ref):
            raise SourceNotFound(f"ref 包含非法字符: {ref}")
        dest.parent.mkdir(parents=True, exist_ok=True)

        if ref:
            try:
                self._git(["clone", "--depth", "1", "--branch", ref, source.location, str(dest)])
            except SourceNotFound:
                # ref 可能是 commit，回退: 完整 clone + checkout
                shutil.rmtree(dest, ignore_errors=True)
                self._git(["clone", source.location, str(dest)])
                self._git(["checkout", ref], cwd=str(dest))
        else:
            self._git(["clone", "--depth", "1", source.location, str(dest)])

        revision = self._git(["rev-parse", "HEAD"], cwd=str(dest)).strip()
        shutil.rmtree(dest / ".git", ignore_errors=True)
        root = dest / source.subdir if source.subdir else dest
        if not root.is_dir():
            raise SourceNotFound(f"源码子目录不存在: {source.subdir}")
        logger.info("Git 就绪: %s@%s (%s)", source.location, ref or "HEAD", revision[:12])
        return SourceTree(path=root, source=source, revision=revision)
