"""配置加载测试"""

from __future__ import annotations

from pathlib import Path

import pytest

import rockyard.core.config as cfgmod
from rockyard.core.config import Config, get_config, init_config
from rockyard.core.exceptions import ConfigError
from rockyard.core.models import RuntimeVariant
from rockyard.utils.yaml_io import save_yaml


@pytest.fixture(autouse=True)
def _reset_global(monkeypatch) -> None:
    monkeypatch.setattr(cfgmod, "_current", None)


class TestFromFile:
    def test_missing_file_defaults(self, tmp_path: Path) -> None:
        cfg = Config.from_file(str(tmp_path / "nope.yml"))
        assert cfg.tree_root == "lua_modules"
        assert cfg.runtimes == ["5.4"]
        assert cfg.max_workers >= 1

    def test_known_and_extra_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yml"
        save_yaml(path, {"runtimes": ["5.1", "jit"], "max_workers": 2, "mirror": "https://x"})
        cfg = Config.from_file(str(path))
        assert cfg.max_workers == 2
        assert cfg.variants() == [RuntimeVariant.LUA51, RuntimeVariant.LUAJIT]
        assert cfg.extra == {"mirror": "https://x"}

    def test_single_runtime_string(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yml"
        save_yaml(path, {"runtimes": "lua5.3"})
        assert Config.from_file(str(path)).variants() == [RuntimeVariant.LUA53]

    @pytest.mark.parametrize("data", [
        {"runtimes": ["6.0"]},
        {"max_workers": 0},
        {"fetch_retries": -1},
    ])
    def test_invalid(self, tmp_path: Path, data: dict) -> None:
        path = tmp_path / "cfg.yml"
        save_yaml(path, data)
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    def test_to_dict(self) -> None:
        d = Config(arch="linux-x86_64").to_dict()
        assert d["arch"] == "linux-x86_64"
        assert d["extra"] == {}


class TestGlobal:
    def test_get_config_default(self) -> None:
        assert get_config() is get_config()

    def test_init_config(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yml"
        save_yaml(path, {"best_effort": True})
        cfg = init_config(str(path))
        assert cfg.best_effort is True
        assert get_config() is cfg
