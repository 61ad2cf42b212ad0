"""CLI — 锁定与安装命令"""

from __future__ import annotations

import json
import sys

import click

from rockyard.cli import _svc
from rockyard.core.lockfile import BUILD_DEPENDENCIES, DEPENDENCIES, SECTIONS, TEST_DEPENDENCIES
from rockyard.core.models import InstallReport, PackageOutcome, Resolution

_SECTION_TITLES = {BUILD_DEPENDENCIES: "构建依赖", TEST_DEPENDENCIES: "测试依赖"}


def register(group: click.Group) -> None:
    group.add_command(lock)
    group.add_command(install)
    group.add_command(pin)
    group.add_command(unpin)


def _echo_resolution(resolution: Resolution) -> None:
    for variant in resolution.variants:
        packages = resolution.for_variant(variant)
        click.echo(f"[{variant.value}] {len(packages)} 个包")
        for pkg in packages:
            mark = " (pinned)" if pkg.pinned else ""
            click.echo(f"  {pkg.name:24s} {pkg.version}{mark}")


def _outcome_line(o: PackageOutcome) -> str:
    line = f"  {o.name:24s} {o.version:12s} [{o.variant.value}] {o.state.value}"
    if o.failure is not None:
        line += f" ({o.failure.value}"
        if o.exit_code is not None:
            line += f", 退出码 {o.exit_code}"
        line += ")"
    if o.blocked_by:
        line += f" <- {', '.join(o.blocked_by)}"
    if o.cached:
        line += " [缓存]"
    return line


def echo_report(report: InstallReport) -> None:
    for o in report.outcomes:
        click.echo(_outcome_line(o))
        if o.failure is not None and o.message:
            click.echo(f"      {o.message}")
    click.echo(
        f"共 {len(report.outcomes)} 个包: {len(report.installed)} 已安装, "
        f"{len(report.failed)} 失败, {len(report.skipped)} 跳过"
    )


@click.command()
@click.option("--update", is_flag=True, help="忽略已锁定版本，全部重新选择最新可行版本")
def lock(update: bool) -> None:
    """解析依赖并写入锁文件"""
    locked = _svc().install.lock_all(update=update)
    _echo_resolution(locked.dependencies)
    for name in SECTIONS[1:]:
        section = locked.section(name)
        if section.packages:
            click.echo(f"{_SECTION_TITLES[name]}:")
            _echo_resolution(section)


@click.command()
@click.option("--best-effort", is_flag=True, help="单包失败时继续构建互不相关的包")
@click.option("--update", is_flag=True, help="安装前重新选择最新可行版本")
@click.option("--frozen", is_flag=True, help="锁文件缺失或过期时报错而非重新解析")
@click.option("--jobs", "-j", type=int, default=None, help="并行构建数")
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出安装报告")
@click.option("--build-deps", is_flag=True, help="同时安装构建依赖")
@click.option("--test-deps", is_flag=True, help="同时安装测试依赖")
def install(
    best_effort: bool, update: bool, frozen: bool, jobs: int | None, as_json: bool,
    build_deps: bool, test_deps: bool,
) -> None:
    """按锁文件构建并安装全部依赖"""
    svc = _svc().install
    if jobs is not None:
        if jobs < 1:
            raise click.BadParameter("必须 >= 1", param_hint="--jobs")
        svc.config.max_workers = jobs
    sections = [DEPENDENCIES]
    if build_deps:
        sections.append(BUILD_DEPENDENCIES)
    if test_deps:
        sections.append(TEST_DEPENDENCIES)
    report = svc.install(
        best_effort=True if best_effort else None, update=update, frozen=frozen,
        sections=tuple(sections),
    )
    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        echo_report(report)
    if not report.success:
        sys.exit(1)


def _set_pin(name: str, section: str, pinned: bool) -> None:
    for pkg in _svc().install.set_pinned(name, pinned, section=section):
        state = "已钉住" if pinned else "已取消钉住"
        click.echo(f"{state} {pkg.name} {pkg.version} [{pkg.variant.value}]")


_section_option = click.option(
    "--section", type=click.Choice(SECTIONS), default=DEPENDENCIES, show_default=True,
    help="锁文件分区",
)


@click.command()
@click.argument("name")
@_section_option
def pin(name: str, section: str) -> None:
    """钉住锁定版本，lock --update 时保持不变"""
    _set_pin(name, section, True)


@click.command()
@click.argument("name")
@_section_option
def unpin(name: str, section: str) -> None:
    """取消钉住"""
    _set_pin(name, section, False)
