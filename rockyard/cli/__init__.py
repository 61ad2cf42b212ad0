"""rockyard 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
业务错误（RockyardError）统一转换为 "[CODE] 消息" 并以非零状态退出。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import click

from rockyard import __version__
from rockyard.core.config import DEFAULT_CONFIG_PATH, Config, init_config
from rockyard.core.exceptions import RockyardError, ValidationError
from rockyard.services.container import get_container, reset_container
from rockyard.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def _format_error(e: RockyardError) -> str:
    message = f"[{e.code}] {e}"
    if isinstance(e, ValidationError) and e.details:
        message += "\n" + "\n".join(f"  - {d}" for d in e.details)
    return message


class _RockyardGroup(click.Group):
    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except RockyardError as e:
            raise click.ClickException(_format_error(e)) from e


@click.group(cls=_RockyardGroup)
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=DEFAULT_CONFIG_PATH, help="配置文件路径")
def main(config_path: str) -> None:
    """rockyard - Lua 包管理器"""
    setup_logging(
        level=os.getenv("ROCKYARD_LOG_LEVEL", "INFO"),
        json_output=os.getenv("ROCKYARD_LOG_JSON", "") == "1",
    )
    cfg = init_config(config_path) if Path(config_path).exists() else Config()
    reset_container(cfg)


# 注册各领域子命令
from rockyard.cli.cmd_install import register as _reg_install  # noqa: E402
from rockyard.cli.cmd_tree import register as _reg_tree  # noqa: E402
from rockyard.cli.cmd_misc import register as _reg_misc  # noqa: E402

_reg_install(main)
_reg_tree(main)
_reg_misc(main)
