"""rockyard - Lua 包管理器

依赖解析 → 锁文件 → 拉取 / 构建 / 安装，多运行时版本并存。
"""

__version__ = "0.4.0"
