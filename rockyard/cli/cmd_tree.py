"""CLI — 安装树查看与卸载"""

from __future__ import annotations

import click

from rockyard.cli import _svc
from rockyard.core.models import RuntimeVariant


def register(group: click.Group) -> None:
    group.add_command(list_installed)
    group.add_command(uninstall)


def _variants(runtimes: tuple[str, ...]) -> list[RuntimeVariant] | None:
    return [RuntimeVariant.parse(r) for r in runtimes] or None


@click.command(name="list")
@click.option("--runtime", "-r", "runtimes", multiple=True, help="运行时变体（可多次指定）")
def list_installed(runtimes: tuple[str, ...]) -> None:
    """列出安装树中的包"""
    listings = _svc().install.installed(_variants(runtimes))
    for variant, listing in listings.items():
        if not len(listing):
            click.echo(f"[{variant.value}] 没有已安装的包。")
            continue
        click.echo(f"[{variant.value}] {len(listing)} 个包")
        for name, version in listing:
            click.echo(f"  {name:24s} {version}")


@click.command()
@click.argument("name")
@click.argument("version", required=False)
@click.option("--runtime", "-r", "runtimes", multiple=True, help="运行时变体（可多次指定）")
def uninstall(name: str, version: str | None, runtimes: tuple[str, ...]) -> None:
    """卸载包（不指定版本则卸载全部已安装版本）"""
    removed = _svc().install.uninstall(name, version, _variants(runtimes))
    for variant, files in removed.items():
        click.echo(f"[{variant.value}] 已卸载 {name}，删除 {len(files)} 个文件")
