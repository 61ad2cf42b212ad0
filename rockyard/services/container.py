"""服务容器 - 统一依赖注入

CLI 通过 get_container() 获取服务，同一容器内的实例共享状态
（清单缓存、安装树锁表等）。

用法:
    container = ServiceContainer(config=Config.from_file("my.yml"))
    report = container.install.install()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rockyard.core.config import Config
    from rockyard.services.install_service import InstallService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器"""

    def __init__(self, config: Config | None = None) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from rockyard.core.config import get_config
            config = get_config()
        self._config = config

    @property
    def config(self) -> Config:
        return self._config

    @property
    def install(self) -> InstallService:
        if "install" not in self._instances:
            from rockyard.services.install_service import InstallService
            self._instances["install"] = InstallService(self._config)
        return self._instances["install"]  # type: ignore[return-value]


_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局服务容器（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def reset_container(config: Config | None = None) -> ServiceContainer:
    """以新配置重建全局容器（CLI 入口与测试使用）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = ServiceContainer(config)
        return _global
