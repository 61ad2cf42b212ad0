"""源码拉取模块

拆分说明:
- sources.py: File / URL / Git 来源适配器与归档解压
- fetcher.py: 按来源类型分发 + 重试退避
- digest.py: 源码树内容摘要与完整性校验
"""

from rockyard.services.fetch.digest import tree_digest, verify_integrity
from rockyard.services.fetch.fetcher import Fetcher
from rockyard.services.fetch.sources import FileSource, GitSource, UrlSource

__all__ = ["Fetcher", "FileSource", "GitSource", "UrlSource", "tree_digest", "verify_integrity"]
