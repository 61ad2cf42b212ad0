"""InstallService 端到端测试（本地文件来源，不访问网络）"""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeExecutor, make_workspace
from rockyard.core.exceptions import LockfileError, NoSolution, PackageNotFound
from rockyard.core.lockfile import DEPENDENCIES, TEST_DEPENDENCIES, read_lockfile
from rockyard.core.models import BuildState, FailureKind, RuntimeVariant
from rockyard.services.container import ServiceContainer, get_container, reset_container
from rockyard.services.install_service import InstallService
from rockyard.utils.yaml_io import load_yaml, save_yaml

V51 = RuntimeVariant.LUA51
V54 = RuntimeVariant.LUA54
BAD = "sha256-" + "0" * 64

XYZ = {
    "x": [{"version": "1.0", "integrity": BAD}],
    "y": [{"version": "1.0", "dependencies": ["x"]}],
    "z": [{"version": "1.0"}],
}


def _svc(cfg) -> InstallService:
    return InstallService(cfg, executor=FakeExecutor())


def _add_dependency(cfg, dep: str) -> None:
    data = load_yaml(cfg.project_file)
    data["dependencies"].append(dep)
    save_yaml(cfg.project_file, data)


def _set_section(cfg, section: str, deps: list) -> None:
    data = load_yaml(cfg.project_file)
    data[section] = deps
    save_yaml(cfg.project_file, data)


class TestInstall:
    def test_checksum_failure_best_effort(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, XYZ, ["y", "z"])
        report = _svc(cfg).install(best_effort=True)

        x, y, z = (report.get(n, V54) for n in ("x", "y", "z"))
        assert x.state is BuildState.FAILED
        assert x.failure is FailureKind.CHECKSUM_MISMATCH
        assert y.state is BuildState.SKIPPED
        assert y.blocked_by == ("x",)
        assert z.state is BuildState.INSTALLED
        assert not report.success

        listing = _svc(cfg).installed()[V54]
        assert [n for n, _ in listing] == ["z"]

    def test_installs_all_variants(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {
            "app": [{"version": "1.0", "dependencies": ["lib", {"name": "bit32", "runtimes": ["5.1"]}]}],
            "lib": [{"version": "2.0"}],
            "bit32": [{"version": "5.3.0-1"}],
        }, ["app"], runtimes=["5.1", "5.4"])
        report = _svc(cfg).install()
        assert report.success
        assert {(o.name, o.variant) for o in report.outcomes} == {
            ("app", V51), ("lib", V51), ("bit32", V51), ("app", V54), ("lib", V54),
        }
        root54 = tmp_path / "lua_modules" / "5.4-linux-x86_64"
        assert (root54 / "share" / "lua" / "5.4" / "lib.lua").exists()
        root51 = tmp_path / "lua_modules" / "5.1-linux-x86_64"
        assert (root51 / "share" / "lua" / "5.1" / "bit32.lua").exists()

    def test_second_install_is_noop(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        _svc(cfg).install()
        report = _svc(cfg).install()
        assert report.success
        assert report.get("z", V54).message == "已安装"

    def test_no_solution_leaves_no_lockfile(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z >= 2"])
        with pytest.raises(NoSolution):
            _svc(cfg).install()
        assert not Path(cfg.lockfile).exists()


class TestLock:
    def test_written_and_reused(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        first = _svc(cfg).lock()
        assert read_lockfile(Path(cfg.lockfile)).dependencies == first
        before = Path(cfg.lockfile).read_bytes()

        make_workspace(tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z"])
        again = _svc(cfg).lock()
        assert str(again.get("z", V54).version) == "1.0"
        assert Path(cfg.lockfile).read_bytes() == before

    def test_update_takes_newest(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        _svc(cfg).lock()
        make_workspace(tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z"])
        assert str(_svc(cfg).lock(update=True).get("z", V54).version) == "1.1"

    def test_stale_relock_keeps_locked_versions(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        _svc(cfg).lock()
        make_workspace(
            tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}], "w": [{"version": "0.1"}]},
            ["z", "w"],
        )
        relocked = _svc(cfg).lock()
        assert str(relocked.get("z", V54).version) == "1.0"
        assert str(relocked.get("w", V54).version) == "0.1"

    def test_frozen_requires_lockfile(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        with pytest.raises(LockfileError, match="不存在"):
            _svc(cfg).lock(frozen=True)

    def test_frozen_rejects_stale(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}], "w": [{"version": "0.1"}]}, ["z"])
        _svc(cfg).lock()
        _add_dependency(cfg, "w")
        with pytest.raises(LockfileError, match="过期"):
            _svc(cfg).lock(frozen=True)


class TestPinned:
    def test_update_keeps_pinned_version(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}], "w": [{"version": "0.1"}]}, ["z", "w"])
        _svc(cfg).lock()
        changed = _svc(cfg).set_pinned("z")
        assert [p.pinned for p in changed] == [True]

        make_workspace(
            tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}], "w": [{"version": "0.1"}, {"version": "0.2"}]},
            ["z", "w"],
        )
        updated = _svc(cfg).lock(update=True)
        assert str(updated.get("z", V54).version) == "1.0"
        assert updated.get("z", V54).pinned
        assert str(updated.get("w", V54).version) == "0.2"
        assert not updated.get("w", V54).pinned

    def test_unpin_releases_version(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        _svc(cfg).lock()
        _svc(cfg).set_pinned("z")
        _svc(cfg).set_pinned("z", False)
        make_workspace(tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z"])
        assert str(_svc(cfg).lock(update=True).get("z", V54).version) == "1.1"

    def test_pinned_conflicts_with_new_constraint(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z < 1.1"])
        _svc(cfg).lock()
        _svc(cfg).set_pinned("z")
        before = Path(cfg.lockfile).read_bytes()
        make_workspace(tmp_path, {"z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z >= 1.1"])
        with pytest.raises(NoSolution):
            _svc(cfg).lock()
        assert Path(cfg.lockfile).read_bytes() == before

    def test_requires_lockfile(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        with pytest.raises(LockfileError, match="不存在"):
            _svc(cfg).set_pinned("z")

    def test_unknown_package(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        _svc(cfg).lock()
        with pytest.raises(PackageNotFound):
            _svc(cfg).set_pinned("nope")


class TestSections:
    REGISTRY = {"z": [{"version": "1.0"}], "busted": [{"version": "2.1"}], "luassert": [{"version": "1.9"}]}

    def test_sections_locked_separately(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, self.REGISTRY, ["z"])
        _set_section(cfg, TEST_DEPENDENCIES, ["busted"])
        locked = _svc(cfg).lock_all()
        assert {p.name for p in locked.dependencies.packages.values()} == {"z"}
        assert {p.name for p in locked.test_dependencies.packages.values()} == {"busted"}
        assert not locked.build_dependencies.packages
        assert read_lockfile(Path(cfg.lockfile)) == locked

    def test_new_test_dependency_relocks_only_that_section(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, self.REGISTRY, ["z"])
        _set_section(cfg, TEST_DEPENDENCIES, ["busted"])
        _svc(cfg).lock_all()
        make_workspace(tmp_path, {**self.REGISTRY, "z": [{"version": "1.0"}, {"version": "1.1"}]}, ["z"])
        _set_section(cfg, TEST_DEPENDENCIES, ["busted", "luassert"])
        with pytest.raises(LockfileError, match="过期"):
            _svc(cfg).lock_all(frozen=True)
        locked = _svc(cfg).lock_all()
        assert str(locked.dependencies.get("z", V54).version) == "1.0"
        assert {p.name for p in locked.test_dependencies.packages.values()} == {"busted", "luassert"}

    def test_install_test_dependencies_into_subtree(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, self.REGISTRY, ["z"])
        _set_section(cfg, TEST_DEPENDENCIES, ["busted"])
        report = _svc(cfg).install(sections=(DEPENDENCIES, TEST_DEPENDENCIES))
        assert report.success
        modules = tmp_path / "lua_modules"
        assert (modules / "5.4-linux-x86_64" / "share" / "lua" / "5.4" / "z.lua").exists()
        sub = modules / TEST_DEPENDENCIES / "5.4-linux-x86_64"
        assert (sub / "share" / "lua" / "5.4" / "busted.lua").exists()
        assert not (modules / "5.4-linux-x86_64" / "share" / "lua" / "5.4" / "busted.lua").exists()


class TestTreeOps:
    def test_uninstall(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"z": [{"version": "1.0"}]}, ["z"])
        svc = _svc(cfg)
        svc.install()
        removed = svc.uninstall("z")
        assert removed == {V54: ["share/lua/5.4/z.lua"]}
        assert len(svc.installed()[V54]) == 0
        with pytest.raises(PackageNotFound):
            svc.uninstall("z")

    def test_offline_resolve(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {"y": [{"version": "1.0", "dependencies": ["z"]}], "z": [{"version": "1.0"}]}, ["y"])
        svc = _svc(cfg)
        svc.install()
        Path(cfg.registry).unlink()
        resolution = _svc(cfg).resolve(["y"], [V54], offline=True)
        assert {p.name for p in resolution.for_variant(V54)} == {"y", "z"}


class TestContainer:
    def test_lazy_shared_service(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {}, [])
        container = ServiceContainer(cfg)
        assert container.install is container.install
        assert container.install.config is cfg

    def test_reset(self, tmp_path: Path) -> None:
        cfg = make_workspace(tmp_path, {}, [])
        old = get_container()
        new = reset_container(cfg)
        assert new is not old
        assert get_container() is new
        assert new.config is cfg
