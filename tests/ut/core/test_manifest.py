"""清单提供者测试"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from rockyard.core.exceptions import PackageNotFound, ProviderUnavailable
from rockyard.core.manifest import (
    CachedManifestProvider,
    InMemoryManifestProvider,
    YamlManifestProvider,
)
from rockyard.core.version import parse_version
from rockyard.utils.yaml_io import save_yaml


def _registry(tmp_path: Path, packages: dict) -> Path:
    path = tmp_path / "registry.yml"
    save_yaml(path, {"packages": packages})
    return path


class TestInMemory:
    def test_list_versions(self, desc) -> None:
        p = InMemoryManifestProvider([desc("foo", "1.0"), desc("foo", "2.0")])
        assert [str(v) for v, _ in p.list_versions("foo")] == ["1.0", "2.0"]
        assert p.names() == ["foo"]

    def test_unknown(self) -> None:
        with pytest.raises(PackageNotFound):
            InMemoryManifestProvider().list_versions("nope")


class TestYaml:
    def test_load(self, tmp_path: Path) -> None:
        path = _registry(tmp_path, {
            "Foo": [
                {"version": "1.0", "source": {"file": "/srv/foo"}},
                {"version": "1.1", "source": {"file": "/srv/foo"}, "dependencies": ["bar"]},
            ],
        })
        p = YamlManifestProvider(path)
        versions = p.list_versions("foo")
        assert [v for v, _ in versions] == [parse_version("1.0"), parse_version("1.1")]
        assert versions[1][1].name == "foo"
        assert versions[1][1].dependencies[0].name == "bar"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ProviderUnavailable, match="不存在"):
            YamlManifestProvider(tmp_path / "nope.yml")

    def test_broken_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.yml"
        path.write_text("packages: [unclosed", encoding="utf-8")
        with pytest.raises(ProviderUnavailable):
            YamlManifestProvider(path)

    def test_invalid_entry(self, tmp_path: Path) -> None:
        path = _registry(tmp_path, {"foo": [{"source": {"file": "/x"}}]})
        with pytest.raises(ProviderUnavailable, match="foo"):
            YamlManifestProvider(path).list_versions("foo")

    def test_unknown_package(self, tmp_path: Path) -> None:
        path = _registry(tmp_path, {})
        with pytest.raises(PackageNotFound):
            YamlManifestProvider(path).list_versions("foo")


class _CountingProvider:
    def __init__(self, inner: InMemoryManifestProvider) -> None:
        self.inner = inner
        self.calls: list[str] = []

    def list_versions(self, name: str):
        self.calls.append(name)
        return self.inner.list_versions(name)


class TestCached:
    def test_queries_once(self, desc) -> None:
        inner = _CountingProvider(InMemoryManifestProvider([desc("foo", "1.0")]))
        cached = CachedManifestProvider(inner)
        first = cached.list_versions("foo")
        assert cached.list_versions("foo") is first
        assert inner.calls == ["foo"]

    def test_not_found_cached(self) -> None:
        inner = _CountingProvider(InMemoryManifestProvider())
        cached = CachedManifestProvider(inner)
        for _ in range(3):
            with pytest.raises(PackageNotFound):
                cached.list_versions("ghost")
        assert inner.calls == ["ghost"]

    def test_concurrent_population_keeps_one_result(self, desc) -> None:
        inner = _CountingProvider(InMemoryManifestProvider([desc("foo", "1.0")]))
        cached = CachedManifestProvider(inner)
        results: list[object] = []

        def worker() -> None:
            results.append(cached.list_versions("foo"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_clear(self, desc) -> None:
        inner = _CountingProvider(InMemoryManifestProvider([desc("foo", "1.0")]))
        cached = CachedManifestProvider(inner)
        cached.list_versions("foo")
        cached.clear()
        cached.list_versions("foo")
        assert inner.calls == ["foo", "foo"]
