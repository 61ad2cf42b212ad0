"""CLI — 杂项命令（试解析、源码摘要）"""

from __future__ import annotations

from pathlib import Path

import click

from rockyard.cli import _svc
from rockyard.cli.cmd_install import _echo_resolution
from rockyard.core.models import RuntimeVariant
from rockyard.services.fetch.digest import tree_digest


def register(group: click.Group) -> None:
    group.add_command(resolve_cmd)
    group.add_command(digest)


@click.command(name="resolve")
@click.argument("requirements", nargs=-1)
@click.option("--runtime", "-r", "runtimes", multiple=True, help="运行时变体（可多次指定）")
@click.option("--offline", is_flag=True, help="只使用安装树中已记录的包描述")
def resolve_cmd(requirements: tuple[str, ...], runtimes: tuple[str, ...], offline: bool) -> None:
    """试解析依赖（不写锁文件）；不给 REQUIREMENTS 时使用项目文件"""
    variants = [RuntimeVariant.parse(r) for r in runtimes] or None
    svc = _svc().install
    if requirements and variants is None:
        variants = svc.config.variants()
    resolution = svc.resolve(list(requirements) or None, variants, offline=offline)
    _echo_resolution(resolution)


@click.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def digest(path: Path) -> None:
    """计算源码树的完整性摘要（用于填写包描述的 integrity 字段）"""
    click.echo(tree_digest(path))
