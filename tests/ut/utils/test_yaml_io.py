"""yaml_io 工具测试"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from rockyard.utils import yaml_io
from rockyard.utils.yaml_io import atomic_write, dump_yaml, load_yaml, save_yaml


class TestLoadYaml:
    def test_missing_returns_empty(self, tmp_path: Path) -> None:
        assert load_yaml(tmp_path / "nope.yml") == {}

    def test_empty_file(self, tmp_path: Path) -> None:
        p = tmp_path / "empty.yml"
        p.write_text("", encoding="utf-8")
        assert load_yaml(p) == {}

    def test_non_dict_returns_empty(self, tmp_path: Path) -> None:
        p = tmp_path / "list.yml"
        p.write_text("- a\n- b\n", encoding="utf-8")
        assert load_yaml(p) == {}

    def test_broken_raises(self, tmp_path: Path) -> None:
        p = tmp_path / "bad.yml"
        p.write_text("key: [unclosed", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            load_yaml(p)

    def test_too_large(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setattr(yaml_io, "MAX_YAML_SIZE", 4)
        p = tmp_path / "big.yml"
        p.write_text("key: value\n", encoding="utf-8")
        with pytest.raises(ValueError, match="过大"):
            load_yaml(p)


class TestSaveYaml:
    def test_round_trip_creates_parents(self, tmp_path: Path) -> None:
        p = tmp_path / "a" / "b" / "data.yml"
        save_yaml(p, {"name": "中文", "items": [1, 2]})
        assert load_yaml(p) == {"name": "中文", "items": [1, 2]}
        assert "中文" in p.read_text(encoding="utf-8")

    def test_block_style(self) -> None:
        text = dump_yaml({"packages": [{"name": "foo"}]})
        assert text == "packages:\n- name: foo\n"

    def test_atomic_write_leaves_no_temp(self, tmp_path: Path) -> None:
        p = tmp_path / "out.bin"
        atomic_write(p, b"\x00\x01")
        atomic_write(p, "text")
        assert p.read_text(encoding="utf-8") == "text"
        assert [f.name for f in tmp_path.iterdir()] == ["out.bin"]

    def test_atomic_write_failure_cleans_up(self, tmp_path: Path, monkeypatch) -> None:
        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(yaml_io.os, "replace", boom)
        with pytest.raises(OSError, match="disk full"):
            atomic_write(tmp_path / "out.txt", "x")
        assert list(tmp_path.iterdir()) == []
