import os
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from packmod_manager.models.package import Package
from packmod_manager.models.state import PackageInstallationState
from packmod_manager.services.backup import BackupChain, default_backup_chain
from packmod_manager.services.installers import BaseInstaller, InstallerConfig
from packmod_manager.services.packages_updater import OwnershipMap, PackagesUpdater
from packmod_manager.utils.paths import path_key, to_native_relative

LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)


class StaticFilesInstaller(BaseInstaller[str]):
    """Installs a fixed ``relative path -> content`` mapping, optionally failing on one path."""

    def __init__(
        self,
        name: str,
        files: dict[str, str],
        fs_hash: int | None = 1,
        fail_on: str | None = None,
    ) -> None:
        top_level = sorted({f.split("/")[0] for f in files})
        super().__init__(name, fs_hash, InstallerConfig(dirs_at_root=top_level))
        self._files = {to_native_relative(k): v for k, v in files.items()}
        self._fail_on = to_native_relative(fail_on) if fail_on else None

    @property
    def relative_directory_paths(self):
        return {os.path.dirname(f) for f in self._files}

    def _iter_files(self):
        yield from self._files.items()

    def _install_file(self, destination, context):
        if destination.relative == self._fail_on:
            raise OSError(f"{destination.relative} is locked")
        with open(destination.full, "w") as f:
            f.write(context)


class Recorder:
    def __init__(self, previous=None) -> None:
        self.state = dict(previous or {})
        self.calls: list[tuple[str, PackageInstallationState | None]] = []

    def __call__(self, name, state) -> None:
        self.calls.append((name, state))
        if state is None:
            self.state.pop(name, None)
        else:
            self.state[name] = state


def _native(*relative_paths: str) -> list[str]:
    return [to_native_relative(p) for p in relative_paths]


def _event_names(handler) -> list[str]:
    return [c[0] for c in handler.method_calls if c[0] != "progress_update"]


def _progress(handler) -> list[float]:
    return [c.args[0] for c in handler.progress_update.call_args_list]


def _assert_unique_ownership(state) -> None:
    keys = [path_key(f) for s in state.values() for f in s.files]
    assert len(keys) == len(set(keys))


def _mod(files, time=None, **kwargs) -> PackageInstallationState:
    return PackageInstallationState(time=time, files=_native(*files), **kwargs)


@pytest.fixture
def updater(future):
    clock = lambda: future  # noqa: E731
    return PackagesUpdater(backup_chain=default_backup_chain(clock=clock), clock=clock)


@pytest.fixture
def run(updater, install_dir):
    def _run(previous, installers, handler=None, cancel=None, recorder=None):
        recorder = recorder or Recorder(previous)
        updater.apply_installers(
            previous, installers, str(install_dir), recorder, handler or MagicMock(), cancel
        )
        return recorder.state

    return _run


class TestInstall:
    def test_nothing_to_do(self, run):
        handler = MagicMock()
        assert run({}, [], handler) == {}

        assert _event_names(handler) == ["uninstall_no_packages", "install_no_packages"]
        assert _progress(handler) == [0.5, 1.0]

    def test_events_and_progress(self, run):
        handler = MagicMock()
        run(
            {},
            [StaticFilesInstaller("A", {"X/a": "A"}), StaticFilesInstaller("B", {"X/b": "B"})],
            handler,
        )

        assert _event_names(handler) == [
            "uninstall_no_packages",
            "install_start",
            "install_current",
            "install_current",
            "install_end",
        ]
        assert [c.args for c in handler.install_current.call_args_list] == [("A",), ("B",)]
        assert _progress(handler) == [0.25, 0.5, 0.75, 1.0]

    def test_records_installed_packages(self, run, install_dir, future):
        state = run({}, [StaticFilesInstaller("A", {"X/f": "A", "X/Y/g": "A"}, fs_hash=42)])

        mod = state["A"]
        assert mod.files == _native("X/f", "X/Y/g")
        assert mod.fs_hash == 42
        assert mod.partial is False
        assert mod.dependencies == []
        assert mod.time == future
        assert (install_dir / "X" / "Y" / "g").read_text() == "A"

    def test_earlier_package_wins(self, run, install_dir):
        state = run(
            {},
            [
                StaticFilesInstaller("P1", {"X/f": "P1", "X/p1": "P1"}),
                StaticFilesInstaller("P2", {"X/f": "P2", "X/p2": "P2"}),
            ],
        )

        assert (install_dir / "X" / "f").read_text() == "P1"
        assert state["P2"].dependencies == ["P1"]
        assert state["P2"].files == _native("X/p2")
        assert state["P1"].files == _native("X/f", "X/p1")
        _assert_unique_ownership(state)

    def test_case_insensitive_collision(self, run, install_dir):
        state = run(
            {},
            [
                StaticFilesInstaller("P100", {"DirAtRoot/A": "100"}, fs_hash=100),
                StaticFilesInstaller("P200", {"DirAtRoot/a": "200", "DirAtRoot/b": "200"}, 200),
            ],
        )

        assert state["P100"].files == _native("DirAtRoot/A")
        assert state["P200"].files == _native("DirAtRoot/b")
        assert state["P200"].dependencies == ["P100"]
        assert (install_dir / "DirAtRoot" / "A").read_text() == "100"
        _assert_unique_ownership(state)

    def test_fully_shadowed_package_is_not_recorded(self, run):
        state = run(
            {},
            [StaticFilesInstaller("A", {"X/f": "A"}), StaticFilesInstaller("B", {"X/F": "B"})],
        )
        assert list(state) == ["A"]

    def test_backs_up_existing_files(self, run, install_dir, write_files):
        write_files(install_dir, {"X/f": "Orig"})
        run({}, [StaticFilesInstaller("A", {"X/f": "A"})])

        assert (install_dir / "X" / "f").read_text() == "A"
        assert (install_dir / "X" / "f.orig").read_text() == "Orig"

    def test_failure_records_partial_state_and_stops(self, run, install_dir):
        handler = MagicMock()
        recorder = Recorder()
        installers = [
            StaticFilesInstaller("A", {"X/1": "A", "X/2": "A", "X/3": "A"}, fail_on="X/2"),
            StaticFilesInstaller("B", {"X/b": "B"}),
        ]

        with pytest.raises(OSError):
            run({}, installers, handler, recorder=recorder)

        mod = recorder.state["A"]
        assert mod.partial is True
        assert mod.fs_hash is None
        assert mod.files == _native("X/1", "X/2")
        assert "B" not in recorder.state
        assert not (install_dir / "X" / "b").exists()
        handler.install_end.assert_not_called()

    def test_dependencies_declared_by_installer_are_kept(self, run):
        installer = StaticFilesInstaller("A", {"X/a": "A"})
        installer.package_dependencies = frozenset({"Base"})

        assert run({}, [installer])["A"].dependencies == ["Base"]


class TestUninstall:
    def test_restores_backups_and_forgets_package(self, run, install_dir, write_files, future):
        write_files(install_dir, {"X/f": "A", "X/f.orig": "Orig", "X/n": "A"})
        recorder = Recorder()
        previous = {"A": _mod(["X/f", "X/n"], time=future)}

        state = run(previous, [], recorder=recorder)

        assert state == {}
        assert recorder.calls == [("A", None)]
        assert (install_dir / "X" / "f").read_text() == "Orig"
        assert not (install_dir / "X" / "f.orig").exists()
        assert not (install_dir / "X" / "n").exists()

    def test_removes_empty_directories(self, run, install_dir, write_files, future):
        write_files(install_dir, {"X/a/b/c/f": "A"})

        run({"A": _mod(["X/a/b/c/f"], time=future)}, [])

        assert install_dir.is_dir()
        assert list(install_dir.iterdir()) == []

    def test_scenario_with_unrelated_file(self, run, install_dir, write_files, future):
        write_files(
            install_dir,
            {"X/ModAFile": "A", "Y/ModAFile": "A", "X/ModBFile": "B", "Y/ExistingFile": "E"},
        )
        previous = {
            "A": _mod(["X/ModAFile", "Y/ModAFile"], time=future),
            "B": _mod(["X/ModBFile"], time=future),
        }

        state = run(previous, [])

        assert state == {}
        assert not (install_dir / "X").exists()
        assert not (install_dir / "Y" / "ModAFile").exists()
        assert (install_dir / "Y" / "ExistingFile").read_text() == "E"

    def test_events_and_progress(self, run, future):
        handler = MagicMock()
        previous = {"A": _mod(["X/a"], time=future), "B": _mod(["X/b"], time=future)}

        run(previous, [StaticFilesInstaller("C", {"X/c": "C"})], handler)

        assert _event_names(handler) == [
            "uninstall_start",
            "uninstall_current",
            "uninstall_current",
            "uninstall_end",
            "install_start",
            "install_current",
            "install_end",
        ]
        assert _progress(handler) == pytest.approx([0.2, 0.4, 0.6, 0.8, 1.0])

    def test_files_updated_after_install_are_left_alone(self, run, install_dir, write_files):
        write_files(install_dir, {"X/f": "Updated", "X/f.orig": "Orig", "X/g": "A"})
        handler = MagicMock()
        previous = {"A": _mod(["X/f"], time=LONG_AGO)}

        state = run(previous, [], handler)

        handler.uninstall_skip_modified.assert_called_once_with(to_native_relative("X/f"))
        assert (install_dir / "X" / "f").read_text() == "Updated"
        assert not (install_dir / "X" / "f.orig").exists()
        assert state["A"].files == _native("X/f")
        assert state["A"].partial is False
        assert state["A"].fs_hash == previous["A"].fs_hash

    def test_some_files_restored_makes_package_partial(self, run, install_dir, write_files):
        write_files(install_dir, {"X/f": "Updated"})
        previous = {"A": _mod(["X/f", "X/gone"], time=LONG_AGO, fs_hash=1)}

        state = run(previous, [])

        assert state["A"].files == _native("X/f")
        assert state["A"].partial is True

    def test_partial_package_stays_partial_when_nothing_is_restored(
        self, run, install_dir, write_files
    ):
        write_files(install_dir, {"X/f": "Updated"})
        previous = {"A": _mod(["X/f"], time=LONG_AGO, partial=True)}

        state = run(previous, [])

        assert state["A"].partial is True

    def test_files_left_behind_keep_their_owner(self, run, install_dir, write_files):
        write_files(install_dir, {"X/f": "Updated"})
        previous = {"A": _mod(["X/f"], time=LONG_AGO)}

        state = run(previous, [StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"})])

        assert (install_dir / "X" / "f").read_text() == "Updated"
        assert state["B"].files == _native("X/b")
        assert state["B"].dependencies == ["A"]
        _assert_unique_ownership(state)

    def test_failure_keeps_files_not_yet_restored(self, install_dir, future):
        strategy = MagicMock()
        strategy.restore_backup.side_effect = [True, OSError("locked")]
        updater = PackagesUpdater(backup_chain=BackupChain([("mock", lambda inner, s: strategy)]))
        previous = {"A": _mod(["X/1", "X/2", "X/3"], time=future)}
        recorder = Recorder(previous)

        with pytest.raises(OSError):
            updater.apply_installers(
                previous,
                [StaticFilesInstaller("B", {"X/b": "B"})],
                str(install_dir),
                recorder,
            )

        assert recorder.state["A"].files == _native("X/2", "X/3")
        assert recorder.state["A"].partial is True
        assert "B" not in recorder.state

    def test_cancellation_between_packages(self, run, install_dir, write_files, future):
        write_files(install_dir, {"X/a": "A", "X/b": "B"})
        cancel = MagicMock()
        cancel.is_set.side_effect = [False] + [True] * 10
        previous = {"A": _mod(["X/a"], time=future), "B": _mod(["X/b"], time=future)}

        state = run(previous, [StaticFilesInstaller("C", {"X/c": "C"})], cancel=cancel)

        assert state == {"B": previous["B"]}
        assert not (install_dir / "X" / "a").exists()
        assert (install_dir / "X" / "b").exists()
        assert not (install_dir / "X" / "c").exists()


class TestReinstall:
    def test_backup_round_trip(self, run, install_dir, write_files):
        write_files(install_dir, {"X/f": "Orig"})

        state = run({}, [StaticFilesInstaller("A", {"X/f": "A", "X/new": "A"})])
        state = run(state, [])

        assert state == {}
        assert (install_dir / "X" / "f").read_text() == "Orig"
        assert not (install_dir / "X" / "f.orig").exists()
        assert not (install_dir / "X" / "new").exists()
        assert not (install_dir / "X" / "new.orig").exists()

    def test_unchanged_packages_are_kept(self, run, install_dir):
        def installers():
            return [
                StaticFilesInstaller("A", {"X/f": "A"}),
                StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"}),
            ]

        first = run({}, installers())
        handler = MagicMock()
        second = run(first, installers(), handler)

        assert second == first
        handler.uninstall_current.assert_not_called()
        handler.install_current.assert_not_called()
        assert [c.args for c in handler.install_unchanged.call_args_list] == [("A",), ("B",)]
        assert (install_dir / "X" / "f").read_text() == "A"
        assert not (install_dir / "X" / "f.orig").exists()

    def test_changed_package_reinstalls_everything_after_it(self, run, install_dir):
        first = run(
            {},
            [
                StaticFilesInstaller("A", {"X/f": "A"}),
                StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"}),
            ],
        )
        handler = MagicMock()
        second = run(
            first,
            [
                StaticFilesInstaller("A", {"X/f": "A2"}, fs_hash=2),
                StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"}),
            ],
            handler,
        )

        assert [c.args for c in handler.uninstall_current.call_args_list] == [("A",), ("B",)]
        assert (install_dir / "X" / "f").read_text() == "A2"
        assert second["A"].fs_hash == 2
        assert second["B"].dependencies == ["A"]

    def test_shadowed_package_takes_over_when_owner_is_removed(self, run, install_dir):
        first = run(
            {},
            [
                StaticFilesInstaller("A", {"X/f": "A"}),
                StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"}),
            ],
        )

        second = run(first, [StaticFilesInstaller("B", {"X/f": "B", "X/b": "B"})])

        assert (install_dir / "X" / "f").read_text() == "B"
        assert list(second) == ["B"]
        assert second["B"].files == _native("X/f", "X/b")
        assert second["B"].dependencies == []

    def test_partial_install_is_cleared_by_full_install(self, run, install_dir):
        recorder = Recorder()
        with pytest.raises(OSError):
            run(
                {},
                [StaticFilesInstaller("A", {"X/1": "A", "X/2": "A"}, fail_on="X/2")],
                recorder=recorder,
            )
        assert recorder.state["A"].partial is True

        state = run(recorder.state, [StaticFilesInstaller("A", {"X/1": "A", "X/2": "A"})])

        assert state["A"].partial is False
        assert state["A"].fs_hash == 1
        assert (install_dir / "X" / "2").read_text() == "A"


class TestRetainedPackages:
    @staticmethod
    def _installer(name, fs_hash=1):
        return SimpleNamespace(package_name=name, package_fs_hash=fs_hash)

    def test_unchanged_complete_package(self):
        previous = {"A": PackageInstallationState(fs_hash=1)}
        assert PackagesUpdater.retained_packages(previous, [self._installer("A")]) == {"A"}

    @pytest.mark.parametrize(
        "state",
        [
            PackageInstallationState(fs_hash=2),
            PackageInstallationState(fs_hash=None),
            PackageInstallationState(fs_hash=1, partial=True),
        ],
    )
    def test_changed_or_partial_package(self, state):
        assert PackagesUpdater.retained_packages({"A": state}, [self._installer("A")]) == set()

    def test_new_package_stops_retention(self):
        previous = {"B": PackageInstallationState(fs_hash=1)}
        installers = [self._installer("A"), self._installer("B")]
        assert PackagesUpdater.retained_packages(previous, installers) == set()

    def test_shadowing_package_must_be_retained(self):
        previous = {
            "B": PackageInstallationState(fs_hash=1, dependencies=["A"]),
            "A": PackageInstallationState(fs_hash=1),
        }
        # A is removed from this run, so B may gain the files A held
        assert PackagesUpdater.retained_packages(previous, [self._installer("B")]) == set()


class TestOwnershipMap:
    def test_first_claim_wins(self):
        ownership = OwnershipMap()
        assert ownership.claim("X/f", "A") is None
        assert ownership.claim("x\\F", "B") == "A"
        assert ownership.claim("X/F", "C") == "A"

    def test_same_package_can_claim_again(self):
        ownership = OwnershipMap()
        ownership.claim("X/f", "A")
        assert ownership.claim("x/F", "A") is None
        assert ownership.claim("X/f", "B") == "A"


class TestApply:
    def test_builds_installers_and_reports_final_state(self, install_dir, tmp_path):
        files = {"A": {"X/a": "A"}, "B": {"X/b": "B"}}
        updater = PackagesUpdater(
            installer_factory=lambda p: StaticFilesInstaller(p.name, files[p.name], p.fs_hash)
        )
        packages = [
            Package(name="A", full_path=str(tmp_path / "A"), enabled=True, fs_hash=5),
            Package(name="B", full_path=str(tmp_path / "B"), enabled=True, fs_hash=6),
        ]
        after_install = MagicMock()

        updater.apply({}, packages, str(install_dir), after_install)

        after_install.assert_called_once()
        (state,) = after_install.call_args.args
        assert state["A"].fs_hash == 5
        assert state["B"].files == _native("X/b")

    def test_final_state_is_reported_on_failure(self, install_dir, tmp_path):
        updater = PackagesUpdater(
            installer_factory=lambda p: StaticFilesInstaller(
                p.name, {"X/1": "A", "X/2": "A"}, fail_on="X/2"
            )
        )
        package = Package(name="A", full_path=str(tmp_path / "A"), enabled=True, fs_hash=5)
        after_install = MagicMock()

        with pytest.raises(OSError):
            updater.apply({}, [package], str(install_dir), after_install)

        (state,) = after_install.call_args.args
        assert state["A"].partial is True
