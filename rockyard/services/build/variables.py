"""构建变量替换

后端参数中的 $(NAME) 会被替换为对应值:
  $(PREFIX) $(LUADIR) $(LIBDIR) $(BINDIR) $(CONFDIR)  : staging 前缀下的标准目录
  $(LUA_VERSION)                                      : 5.1 / 5.2 / 5.3 / 5.4
  $(CC) $(MAKE) $(CMAKE)                              : 工具链命令
未知变量保持原样。
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from rockyard.core.models import RuntimeVariant
from rockyard.core.tree import tree_layout

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\(([A-Za-z_][A-Za-z0-9_]*)\)")


def build_variables(
    staging: Path,
    variant: RuntimeVariant,
    *,
    cc: str = "cc",
    make: str = "make",
    cmake: str = "cmake",
) -> dict[str, str]:
    variables = {k: str(v) for k, v in tree_layout(staging, variant).items()}
    variables.update({
        "LUA_VERSION": str(variant.lua_version),
        "CC": cc,
        "MAKE": make,
        "CMAKE": cmake,
    })
    return variables


def substitute(text: str, variables: dict[str, str]) -> str:
    def repl(m: re.Match[str]) -> str:
        name = m.group(1)
        if name in variables:
            return variables[name]
        logger.debug("未知构建变量保持原样: $(%s)", name)
        return m.group(0)

    return _VAR_RE.sub(repl, text)


def substitute_all(values: dict[str, str], variables: dict[str, str]) -> dict[str, str]:
    return {k: substitute(v, variables) for k, v in values.items()}
