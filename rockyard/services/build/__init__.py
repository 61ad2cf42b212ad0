"""构建模块

拆分说明:
- variables.py: $(PREFIX) 等构建变量的生成与替换
- backends.py: builtin / make / cmake / command / native 五种后端与分发表
- cache.py: 以 (包, 版本, 变体, 架构, 摘要) 为键的构建产物缓存
- pipeline.py: 单包状态机与 拉取 → 校验 → 配置 → 构建 → 安装 流水线
"""

from rockyard.services.build.backends import BACKENDS, BuildContext, backend_for
from rockyard.services.build.cache import BuildCache, cache_key
from rockyard.services.build.pipeline import BuildPipeline, PackageStateMachine

__all__ = [
    "BACKENDS",
    "BuildCache",
    "BuildContext",
    "BuildPipeline",
    "PackageStateMachine",
    "backend_for",
    "cache_key",
]
