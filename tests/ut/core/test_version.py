"""版本与约束引擎测试"""

from __future__ import annotations

import pytest

from rockyard.core.exceptions import MalformedConstraint, MalformedVersion
from rockyard.core.version import (
    parse_constraint,
    parse_requirement,
    parse_version,
    satisfies,
)


class TestParseVersion:
    def test_release(self) -> None:
        v = parse_version("1.2.3")
        assert v.release == (1, 2, 3)
        assert v.revision == 1
        assert str(v) == "1.2.3"

    def test_revision_suffix(self) -> None:
        v = parse_version("3.0-2")
        assert v.release == (3, 0)
        assert v.revision == 2
        assert not v.is_prerelease

    def test_prerelease_with_revision(self) -> None:
        v = parse_version("1.0-rc1-2")
        assert v.prerelease == "rc1"
        assert v.revision == 2

    def test_dev_versions(self) -> None:
        assert parse_version("scm").is_dev
        assert parse_version("dev-1").is_dev

    @pytest.mark.parametrize("text", ["a1b2c3d", "3f2e1d0c9b8a", "0123456789abcdef0123456789abcdef01234567-2"])
    def test_commit_hash_is_dev(self, text: str) -> None:
        v = parse_version(text)
        assert v.is_dev
        assert v > parse_version("99.0")

    def test_hash_needs_a_letter_and_length(self) -> None:
        assert not parse_version("1234567").is_dev
        with pytest.raises(MalformedVersion):
            parse_version("abc12")
        with pytest.raises(MalformedVersion):
            parse_version("a" * 41)

    @pytest.mark.parametrize("text", ["", "abc", "1..2", "v1.0", "1.0 beta"])
    def test_malformed(self, text: str) -> None:
        with pytest.raises(MalformedVersion):
            parse_version(text)

    def test_non_string_rejected(self) -> None:
        with pytest.raises(MalformedVersion):
            parse_version(1.0)  # type: ignore[arg-type]


class TestOrdering:
    def test_numeric_not_lexical(self) -> None:
        assert parse_version("1.10") > parse_version("1.9")

    def test_trailing_zeros_equal(self) -> None:
        assert parse_version("1.0") == parse_version("1.0.0")
        assert hash(parse_version("1.0")) == hash(parse_version("1.0.0"))

    def test_prerelease_below_release(self) -> None:
        assert parse_version("1.0-rc1") < parse_version("1.0")
        assert parse_version("1.0-alpha") < parse_version("1.0-beta")

    def test_revision_breaks_ties(self) -> None:
        assert parse_version("1.0-1") < parse_version("1.0-2")

    def test_dev_above_release(self) -> None:
        assert parse_version("scm") > parse_version("99.0")

    def test_total_order_sorted(self) -> None:
        texts = ["2.0", "1.0-rc1", "scm", "1.0", "1.0-2", "1.10"]
        ordered = [str(v) for v in sorted(parse_version(t) for t in texts)]
        assert ordered == ["1.0-rc1", "1.0", "1.0-2", "1.10", "2.0", "scm"]


class TestConstraint:
    @pytest.mark.parametrize(("version", "expr", "expected"), [
        ("1.5", ">= 1.0, < 2.0", True),
        ("2.0", ">= 1.0, < 2.0", False),
        ("1.2.9", "~> 1.2", True),
        ("1.3", "~> 1.2", False),
        ("1.2.3.9", "~> 1.2.3", True),
        ("1.2.4", "~> 1.2.3", False),
        ("1.9", "~> 1", True),
        ("2.0", "~> 1", False),
        ("1.0", "1.0", True),
        ("1.0", "@1.0", True),
        ("1.0.1", "== 1.0", False),
        ("1.0", "~= 1.0", False),
        ("1.1", "!= 1.0", True),
        ("7.3", "", True),
        ("7.3", "*", True),
    ])
    def test_matches(self, version: str, expr: str, expected: bool) -> None:
        assert satisfies(version, expr) is expected

    def test_revision_ignored_when_matching(self) -> None:
        assert satisfies("1.0-3", "== 1.0")
        assert satisfies("2.0-5", "<= 2.0")

    def test_prerelease_excluded_unless_named(self) -> None:
        assert not satisfies("2.0-rc1", ">= 1.0")
        assert satisfies("2.0-rc1", ">= 2.0-rc1")

    def test_dev_excluded_unless_named(self) -> None:
        assert not satisfies("scm", ">= 1.0")
        assert satisfies("scm", "== scm")

    @pytest.mark.parametrize("expr", [">= ", ">= 1.0,", "=> 1.0", "~> scm", ">= x"])
    def test_malformed(self, expr: str) -> None:
        with pytest.raises(MalformedConstraint):
            parse_constraint(expr)

    def test_str_round_trip(self) -> None:
        c = parse_requirement("luasocket >= 3.0, < 4")
        assert c.name == "luasocket"
        assert str(c) == "luasocket >= 3.0, < 4"
        assert str(parse_requirement(str(c))) == str(c)

    def test_requirement_at_syntax(self) -> None:
        c = parse_requirement("penlight@1.13.1")
        assert c.name == "penlight"
        assert c.exact == parse_version("1.13.1")

    def test_requirement_name_lowercased(self) -> None:
        assert parse_requirement("LPeg").name == "lpeg"
        assert parse_requirement("LPeg").is_any


class TestIntersects:
    def test_overlapping_ranges(self) -> None:
        a = parse_constraint(">= 1.0, < 2.0")
        assert a.intersects(parse_constraint(">= 1.5"))

    def test_disjoint_ranges(self) -> None:
        a = parse_constraint(">= 2.0")
        assert not a.intersects(parse_constraint("< 2.0"))

    def test_exact_against_range(self) -> None:
        assert not parse_constraint("== 3.0").intersects(parse_constraint("< 2.0"))
        assert parse_constraint("== 1.5").intersects(parse_constraint("~> 1.5"))

    def test_point_range_excluded(self) -> None:
        c = parse_constraint(">= 1.0, <= 1.0, != 1.0")
        assert not c.intersects()

    def test_merge_keeps_name(self) -> None:
        merged = parse_requirement("foo >= 1").merge(parse_constraint("< 2"))
        assert merged.name == "foo"
        assert len(merged.comparators) == 2
