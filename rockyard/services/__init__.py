"""服务层

拆分说明:
- fetch/: 源码拉取（File / URL / Git）与完整性校验
- build/: 构建后端、构建缓存、单包流水线
- install_service.py: 项目级 锁定 / 安装 / 卸载 编排
- container.py: 懒加载服务容器
"""
