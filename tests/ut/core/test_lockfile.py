"""锁文件编解码与过期检测测试"""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_descriptor as d
from rockyard.core.exceptions import LockfileCorrupt, PackageNotFound, ValidationError
from rockyard.core.lockfile import (
    BUILD_DEPENDENCIES,
    DEPENDENCIES,
    TEST_DEPENDENCIES,
    Lockfile,
    decode,
    decode_lockfile,
    encode,
    encode_lockfile,
    hydrate,
    is_stale,
    read_lockfile,
    set_pinned,
    stale_sections,
    write_lockfile,
)
from rockyard.core.manifest import InMemoryManifestProvider
from rockyard.core.models import Resolution, RuntimeVariant
from rockyard.core.resolver import resolve

V51 = RuntimeVariant.LUA51
V54 = RuntimeVariant.LUA54
HEX = "cd" * 32


@pytest.fixture()
def provider() -> InMemoryManifestProvider:
    return InMemoryManifestProvider([
        d("app", "1.0", ["lib >= 1", {"name": "bit32", "runtimes": ["5.1"]}]),
        d("lib", "1.0"),
        d("lib", "1.4", source={"file": "/srv/lib", "integrity": HEX}),
        d("bit32", "5.3.0-1"),
    ])


@pytest.fixture()
def resolution(provider) -> Resolution:
    return resolve(["app"], provider, [V51, V54])


class TestCodec:
    def test_round_trip(self, resolution) -> None:
        assert decode(encode(resolution)) == resolution

    def test_byte_identical_for_equal_resolutions(self, provider) -> None:
        a = resolve(["app"], provider, [V54, V51])
        b = resolve(["app"], provider, [V51, V54])
        assert encode(a) == encode(b)

    def test_order_independent(self, resolution) -> None:
        shuffled = Resolution(
            requirements=tuple(reversed(resolution.requirements)),
            variants=tuple(reversed(resolution.variants)),
            roots=dict(reversed(list(resolution.roots.items()))),
            packages=dict(reversed(list(resolution.packages.items()))),
        )
        assert encode(shuffled) == encode(resolution)

    def test_text_is_line_oriented(self, resolution) -> None:
        text = encode(resolution).decode("utf-8")
        assert text.startswith("format: 1\n")
        assert f"integrity: sha256-{HEX}" in text
        assert "pinned: false" in text
        assert "name: lib" in text

    def test_conditional_dependency_omitted(self, resolution) -> None:
        text = encode(resolution).decode("utf-8")
        assert text.count("name: bit32") == 1
        assert resolution.get("app", V54).dependencies == ("lib",)
        assert resolution.get("app", V51).dependencies == ("bit32", "lib")

    def test_file_round_trip(self, tmp_path: Path, resolution) -> None:
        path = tmp_path / "rockyard.lock"
        assert read_lockfile(path) is None
        write_lockfile(path, resolution)
        assert read_lockfile(path) == Lockfile(dependencies=resolution)


class TestCorrupt:
    @pytest.mark.parametrize("text", [
        "packages: [unclosed",
        "- just a list",
        "format: 99\n",
        "format: 1\nvariants: ['9.9']\n",
        "format: 1\nrequirements: ['foo >= ']\n",
        "format: 1\nvariants: ['5.4']\npackages:\n- {name: foo, variant: '5.4'}\n",
        "format: 1\nvariants: ['5.4']\npackages:\n- {name: foo, variant: '5.1', version: '1.0'}\n",
        "format: 1\nvariants: ['5.4']\npackages:\n- {name: foo, variant: '5.4', version: 'x.y'}\n",
        "format: 1\nvariants: ['5.4']\npackages:\n"
        "- {name: foo, variant: '5.4', version: '1.0', dependencies: [bar]}\n",
        "format: 1\nvariants: ['5.4']\nroots: {'5.4': [foo]}\n",
        "format: 1\nvariants: ['5.4']\npackages:\n"
        "- {name: a, variant: '5.4', version: '1.0', dependencies: [b]}\n"
        "- {name: b, variant: '5.4', version: '1.0', dependencies: [a]}\n",
    ])
    def test_rejected(self, text: str) -> None:
        with pytest.raises(LockfileCorrupt):
            decode(text)

    def test_duplicate_entry(self) -> None:
        text = (
            "format: 1\nvariants: ['5.4']\npackages:\n"
            "- {name: foo, variant: '5.4', version: '1.0'}\n"
            "- {name: foo, variant: '5.4', version: '2.0'}\n"
        )
        with pytest.raises(LockfileCorrupt, match="重复"):
            decode(text)


class TestStale:
    def test_fresh(self, resolution, provider) -> None:
        assert not is_stale(resolution, ["app"], provider)

    def test_tightened_constraint(self, resolution) -> None:
        assert is_stale(resolution, ["app >= 2"])

    def test_loosened_but_still_satisfied(self, resolution) -> None:
        assert not is_stale(resolution, ["app >= 0.5"])

    def test_new_root(self, resolution) -> None:
        assert is_stale(resolution, ["app", "lib"])

    def test_new_variant(self, resolution) -> None:
        assert is_stale(resolution, ["app"], variants=[RuntimeVariant.LUA53])

    def test_runtime_requirement(self, resolution) -> None:
        assert is_stale(resolution, ["app", "lua >= 5.3"])

    def test_withdrawn_version(self, resolution) -> None:
        shrunk = InMemoryManifestProvider([d("app", "1.0"), d("lib", "1.0"), d("bit32", "5.3.0-1")])
        assert is_stale(resolution, ["app"], shrunk)


class TestHydrate:
    def test_attaches_descriptors(self, resolution, provider) -> None:
        bare = decode(encode(resolution))
        assert bare.get("lib", V54).descriptor is None
        full = hydrate(bare, provider)
        assert full.get("lib", V54).descriptor.integrity == f"sha256-{HEX}"
        assert full == resolution

    def test_missing_version(self, resolution) -> None:
        with pytest.raises(PackageNotFound, match="lib@1.4"):
            hydrate(resolution, InMemoryManifestProvider([d("app", "1.0"), d("lib", "1.0"), d("bit32", "5.3.0-1")]))


class TestPinned:
    def test_round_trip(self, resolution) -> None:
        changed = set_pinned(resolution, "lib", True)
        assert [p.variant for p in changed] == [V51, V54]
        text = encode(resolution).decode("utf-8")
        assert text.count("pinned: true") == 2
        decoded = decode(text)
        assert decoded.get("lib", V54).pinned
        assert not decoded.get("app", V54).pinned
        assert decoded == resolution

    def test_keeps_descriptor(self, resolution) -> None:
        set_pinned(resolution, "lib", True)
        assert resolution.get("lib", V54).descriptor is not None

    def test_unknown_package(self, resolution) -> None:
        with pytest.raises(PackageNotFound):
            set_pinned(resolution, "ghost", True)

    def test_non_bool_rejected(self) -> None:
        text = (
            "format: 1\nvariants: ['5.4']\npackages:\n"
            "- {name: foo, variant: '5.4', version: '1.0', pinned: 'yes please'}\n"
        )
        with pytest.raises(LockfileCorrupt, match="pinned"):
            decode(text)


class TestSections:
    @pytest.fixture()
    def lock(self, provider, resolution) -> Lockfile:
        return Lockfile(
            dependencies=resolution,
            test_dependencies=resolve(["lib == 1.0"], provider, [V54]),
        )

    def test_round_trip(self, lock) -> None:
        data = encode_lockfile(lock)
        decoded = decode_lockfile(data)
        assert decoded == lock
        assert str(decoded.test_dependencies.get("lib", V54).version) == "1.0"
        assert str(decoded.dependencies.get("lib", V54).version) == "1.4"
        assert decode(data) == lock.dependencies

    def test_empty_sections_omitted(self, resolution) -> None:
        data = encode_lockfile(Lockfile(dependencies=resolution))
        assert data == encode(resolution)
        assert b"build_dependencies" not in data
        assert b"test_dependencies" not in data

    def test_section_is_validated(self) -> None:
        text = (
            "format: 1\ntest_dependencies:\n  variants: ['5.4']\n  roots: {'5.4': [busted]}\n"
        )
        with pytest.raises(LockfileCorrupt, match="busted"):
            decode_lockfile(text)

    def test_unknown_section(self, lock) -> None:
        with pytest.raises(ValidationError):
            lock.section("dev_dependencies")

    def test_stale_sections(self, lock, provider) -> None:
        wanted = {DEPENDENCIES: ["app"], TEST_DEPENDENCIES: ["lib == 1.0"]}
        assert stale_sections(lock, wanted, provider, [V54]) == []

        wanted[TEST_DEPENDENCIES] = ["lib >= 1.2"]
        assert stale_sections(lock, wanted, provider, [V54]) == [TEST_DEPENDENCIES]

        wanted[BUILD_DEPENDENCIES] = ["bit32"]
        assert stale_sections(lock, wanted, provider, [V54]) == [BUILD_DEPENDENCIES, TEST_DEPENDENCIES]

    def test_dropped_section_is_stale(self, lock, provider) -> None:
        assert stale_sections(lock, {DEPENDENCIES: ["app"]}, provider, [V54]) == [TEST_DEPENDENCIES]
