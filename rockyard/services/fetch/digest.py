"""源码树内容摘要

摘要 = sha256( 按相对路径排序的 "<相对路径>:<文件 sha256>" 行 )，
与文件系统时间戳、权限、遍历顺序无关。.git 目录不参与计算。
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from rockyard.core.exceptions import ChecksumMismatch

logger = logging.getLogger(__name__)

_IGNORED_DIRS = frozenset((".git",))


def _sha256_file(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def tree_digest(root: Path) -> str:
    """目录（或单个文件）的内容摘要，格式 sha256-<hex>"""
    if root.is_file():
        return f"sha256-{_sha256_file(root)}"
    entries: list[str] = []
    for item in sorted(root.rglob("*")):
        rel = item.relative_to(root)
        if _IGNORED_DIRS.intersection(rel.parts) or not item.is_file():
            continue
        entries.append(f"{rel.as_posix()}:{_sha256_file(item)}")
    payload = "\n".join(entries)
    return f"sha256-{hashlib.sha256(payload.encode('utf-8')).hexdigest()}"


def verify_integrity(root: Path, expected: str, package: str) -> str:
    """校验源码树摘要，返回实际摘要

    expected 为空时跳过校验（记录警告）。

    异常:
        ChecksumMismatch: 摘要不一致（调用方不得重试）
    """
    actual = tree_digest(root)
    if not expected:
        logger.warning("%s 未声明完整性摘要，跳过校验 (实际 %s)", package, actual)
        return actual
    if actual != expected:
        raise ChecksumMismatch(package, expected, actual)
    logger.info("校验和通过: %s", package)
    return actual
