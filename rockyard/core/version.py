"""版本与约束引擎

版本格式（rockspec 风格）:
  - 发布版:  1.2.3 / 1.0 / 2.0.1.4        数字段任意多个，末尾 0 不影响比较（1.0 == 1.0.0）
  - 预发布:  1.0-rc1 / 1.0.0-beta.2 / 2.0alpha   预发布标签按字典序比较，且永远低于同号发布版
  - 修订号:  1.0-1 / 1.0-rc1-2             末尾 "-数字" 为 rockspec 修订号，缺省为 1
  - 开发版:  scm / dev / scm-1 / 提交哈希  高于一切发布版
             提交哈希为 7-40 位十六进制且至少含一个字母（纯数字按发布版解析）

约束格式:
  ">= 1.0, < 2.0"   逗号分隔，全部满足
  "~> 1.2"          悲观约束，展开为 ">= 1.2, < 1.3"
  "== 1.0" / "1.0" / "@1.0"   精确匹配
  "~= 1.0" / "!= 1.0"         排除
  "" / "*" / "any"           无约束

约束匹配忽略修订号（修订号只影响候选排序）。
预发布版与开发版只有在约束本身点名了预发布 / 开发版时才会被匹配。
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass

from rockyard.core.exceptions import MalformedConstraint, MalformedVersion

_VERSION_RE = re.compile(
    r"^(?P<nums>\d+(?:\.\d+)*)"
    r"(?:[-.]?(?P<pre>[A-Za-z][0-9A-Za-z.]*?))?"
    r"(?:-(?P<rev>\d+))?$"
)
_DEV_RE = re.compile(
    r"^(?P<dev>scm|dev|(?=[0-9a-fA-F]*[a-fA-F])[0-9a-fA-F]{7,40})(?:-(?P<rev>\d+))?$"
)
_COMPARATOR_RE = re.compile(r"^(?P<op>==|~=|!=|>=|<=|~>|>|<|=|@)?\s*(?P<ver>\S+)$")
_REQUIREMENT_RE = re.compile(r"^(?P<name>[A-Za-z0-9_][A-Za-z0-9_.\-]*)\s*(?P<expr>.*)$")

_ANY_EXPRS = frozenset(("", "*", "any"))
_OP_ALIASES = {"=": "==", "@": "==", "~=": "!=", None: "=="}

DEFAULT_REVISION = 1


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """全序版本值，str() 返回解析时的原文"""

    text: str
    release: tuple[int, ...] = ()
    prerelease: str = ""
    revision: int = DEFAULT_REVISION
    dev: str = ""

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def is_dev(self) -> bool:
        return bool(self.dev)

    @property
    def base_key(self) -> tuple:
        """不含修订号的比较键，约束匹配使用"""
        if self.dev:
            return (1, self.dev)
        release = list(self.release)
        while len(release) > 1 and release[-1] == 0:
            release.pop()
        return (0, tuple(release), 0 if self.prerelease else 1, self.prerelease)

    @property
    def sort_key(self) -> tuple:
        # 开发版先比修订号再比名称
        if self.dev:
            return (1, self.revision, self.dev)
        return (*self.base_key, self.revision)

    def bump(self, index: int) -> Version:
        """第 index 个数字段 +1，其后截断，丢弃预发布与修订号"""
        parts = list(self.release[: index + 1])
        while len(parts) <= index:
            parts.append(0)
        parts[index] += 1
        text = ".".join(str(p) for p in parts)
        return Version(text=text, release=tuple(parts))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key == other.sort_key

    def __lt__(self, other: Version) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __hash__(self) -> int:
        return hash(self.sort_key)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"Version({self.text!r})"


def parse_version(text: str) -> Version:
    """解析版本字符串，无法解析时抛 MalformedVersion（不做任何容错转换）"""
    if not isinstance(text, str):
        raise MalformedVersion(f"版本必须是字符串: {text!r}")
    s = text.strip()
    m = _DEV_RE.match(s)
    if m:
        rev = int(m.group("rev")) if m.group("rev") else DEFAULT_REVISION
        return Version(text=s, dev=m.group("dev"), revision=rev)
    m = _VERSION_RE.match(s)
    if not m:
        raise MalformedVersion(f"无法解析版本: {text!r}")
    release = tuple(int(p) for p in m.group("nums").split("."))
    rev = int(m.group("rev")) if m.group("rev") else DEFAULT_REVISION
    return Version(text=s, release=release, prerelease=m.group("pre") or "", revision=rev)


# =========================================================================
# 约束
# =========================================================================


@dataclass(frozen=True)
class Comparator:
    """单个比较子句，如 ">= 1.0"（比较忽略修订号）"""

    op: str
    version: Version

    def matches(self, version: Version) -> bool:
        a, b = version.base_key, self.version.base_key
        if self.op == "==":
            return a == b
        if self.op == "!=":
            return a != b
        if version.is_dev != self.version.is_dev:
            # 开发版与发布版之间只有 ==/!= 有意义
            return False
        if self.op == ">=":
            return a >= b
        if self.op == ">":
            return a > b
        if self.op == "<=":
            return a <= b
        return a < b

    def __str__(self) -> str:
        return f"{self.op} {self.version}"


@dataclass(frozen=True)
class VersionConstraint:
    """包名 + 比较子句集合（空集合表示任意版本）"""

    name: str = ""
    comparators: tuple[Comparator, ...] = ()

    @property
    def is_any(self) -> bool:
        return not self.comparators

    @property
    def expression(self) -> str:
        return ", ".join(str(c) for c in self.comparators)

    @property
    def exact(self) -> Version | None:
        """只含一个 == 子句时返回被钉住的版本"""
        eqs = [c.version for c in self.comparators if c.op == "=="]
        if len(eqs) == 1 and len(self.comparators) == 1:
            return eqs[0]
        return None

    def _allows_unstable(self) -> bool:
        return any(
            c.version.is_prerelease or c.version.is_dev
            for c in self.comparators if c.op != "!="
        )

    def matches(self, version: Version) -> bool:
        if (version.is_prerelease or version.is_dev) and not self._allows_unstable():
            return False
        return all(c.matches(version) for c in self.comparators)

    def merge(self, other: VersionConstraint) -> VersionConstraint:
        """合并两组子句（同名约束求交）"""
        seen = list(self.comparators)
        for c in other.comparators:
            if c not in seen:
                seen.append(c)
        return VersionConstraint(name=self.name or other.name, comparators=tuple(seen))

    def intersects(self, other: VersionConstraint | None = None) -> bool:
        """判断（与 other 合并后的）约束是否可能被某个版本满足

        保守判断: 返回 False 时一定为空；返回 True 时也可能为空（只用于剪枝）。
        """
        comps = self.comparators if other is None else self.merge(other).comparators
        eqs = [c.version for c in comps if c.op == "=="]
        if eqs:
            return any(all(c.matches(p) for c in comps) for p in eqs)

        lower: tuple[tuple, bool] | None = None   # (base_key, inclusive)
        upper: tuple[tuple, bool] | None = None
        for c in comps:
            key = c.version.base_key
            if c.op in (">=", ">"):
                bound = (key, c.op == ">=")
                if lower is None or key > lower[0] or (key == lower[0] and not bound[1]):
                    lower = bound
            elif c.op in ("<=", "<"):
                bound = (key, c.op == "<=")
                if upper is None or key < upper[0] or (key == upper[0] and not bound[1]):
                    upper = bound
        if lower is None or upper is None:
            return True
        if lower[0] > upper[0]:
            return False
        if lower[0] == upper[0]:
            if not (lower[1] and upper[1]):
                return False
            excluded = {c.version.base_key for c in comps if c.op == "!="}
            return lower[0] not in excluded
        return True

    def __str__(self) -> str:
        return f"{self.name} {self.expression}".strip()


def _parse_comparators(expr: str) -> list[Comparator]:
    result: list[Comparator] = []
    for raw in expr.split(","):
        part = raw.strip()
        if not part:
            raise MalformedConstraint(f"约束中存在空子句: {expr!r}")
        m = _COMPARATOR_RE.match(part)
        if not m:
            raise MalformedConstraint(f"无法解析约束子句: {part!r}")
        op = _OP_ALIASES.get(m.group("op"), m.group("op"))
        try:
            version = parse_version(m.group("ver"))
        except MalformedVersion as e:
            raise MalformedConstraint(f"约束 {expr!r} 中的版本无效: {e}") from e
        if op == "~>":
            if version.is_dev or not version.release:
                raise MalformedConstraint(f"悲观约束只能用于发布版本: {part!r}")
            upper = version.bump(min(len(version.release) - 1, 2))
            result.append(Comparator(">=", version))
            result.append(Comparator("<", upper))
        else:
            result.append(Comparator(op, version))
    return result


def parse_constraint(text: str, name: str = "") -> VersionConstraint:
    """解析约束表达式（不含包名），失败抛 MalformedConstraint"""
    if not isinstance(text, str):
        raise MalformedConstraint(f"约束必须是字符串: {text!r}")
    expr = text.strip()
    if expr.lower() in _ANY_EXPRS:
        return VersionConstraint(name=name)
    return VersionConstraint(name=name, comparators=tuple(_parse_comparators(expr)))


def parse_requirement(text: str) -> VersionConstraint:
    """解析带包名的需求，如 "luasocket >= 3.0, < 4" / "penlight@1.13.1" / "lpeg" """
    if not isinstance(text, str):
        raise MalformedConstraint(f"需求必须是字符串: {text!r}")
    s = text.strip()
    m = _REQUIREMENT_RE.match(s)
    if not m:
        raise MalformedConstraint(f"无法解析依赖需求: {text!r}")
    return parse_constraint(m.group("expr"), name=m.group("name").lower())


def satisfies(version: Version | str, constraint: VersionConstraint | str) -> bool:
    """version 是否满足 constraint（均可传字符串）"""
    v = parse_version(version) if isinstance(version, str) else version
    c = parse_constraint(constraint) if isinstance(constraint, str) else constraint
    return c.matches(v)
