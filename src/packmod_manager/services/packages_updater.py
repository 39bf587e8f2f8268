"""Reconciles installed packages with the packages selected for this run.

A run has two phases:

1. **Uninstall** every previously installed package, restoring the files it
   backed up, except packages that can be kept as they are (see
   :meth:`PackagesUpdater.retained_packages`).
2. **Install** the selected packages in priority order. Earlier packages win:
   a path claimed by one package is rejected for every later package, which
   records the owner among its dependencies (it is *shadowed* by it).

After every package, in both phases and whether or not it failed, the new
state of that package is reported through a callback. Exceptions are never
swallowed, but they only leave the updater after that report, so what the
caller persists always matches what is on disk.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Protocol

from packmod_manager.models.package import Package
from packmod_manager.models.state import PackageInstallationState
from packmod_manager.services.backup import BackupChain, BackupStrategy, default_backup_chain
from packmod_manager.services.events import BaseEventHandler, EventHandler
from packmod_manager.services.installers import (
    InstallationState,
    ProcessingCallbacks,
    installer_for_package,
)
from packmod_manager.utils.dependency_resolver import transitive
from packmod_manager.utils.paths import RootedPath, ancestors_up_to, path_key, to_native_relative
from packmod_manager.utils.progress import PercentOfTotal

logger = logging.getLogger(__name__)


class Cancellation(Protocol):
    def is_set(self) -> bool: ...


class _NeverCancelled:
    def is_set(self) -> bool:
        return False


class Installer(Protocol):
    package_name: str
    package_fs_hash: int | None
    package_dependencies: frozenset[str]
    installed: InstallationState

    @property
    def installed_files(self) -> list[RootedPath]: ...

    def install(
        self,
        destination: Callable[[str], RootedPath],
        backup_strategy: BackupStrategy,
        callbacks: ProcessingCallbacks[RootedPath] | None = None,
    ) -> None: ...


InstallerFactory = Callable[[Package], Installer]
StateCallback = Callable[[str, PackageInstallationState | None], None]


class OwnershipMap:
    """Which package owns each destination path during one install phase.

    Paths compare case-insensitively. Only the install loop holds a
    reference; it is the one place to synchronise if packages were ever
    installed concurrently.
    """

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}

    def claim(self, relative_path: str, package_name: str) -> str | None:
        """Claim *relative_path* for *package_name*.

        Returns ``None`` when the claim succeeded (the path was free or
        already owned by the same package), otherwise the current owner.
        """
        key = path_key(relative_path)
        owner = self._owners.setdefault(key, package_name)
        return None if owner == package_name else owner


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _delete_empty_directories(root: str, relative_paths: Iterable[str]) -> None:
    dirs = {
        ancestor
        for relative in relative_paths
        for ancestor in ancestors_up_to(root, os.path.join(root, to_native_relative(relative)))
    }
    for directory in sorted(dirs, key=len, reverse=True):
        # Packages may list a file twice, so a directory might already be gone
        if os.path.isdir(directory) and not os.listdir(directory):
            os.rmdir(directory)


def _unique_by_key(relative_paths: Iterable[str]) -> list[str]:
    seen: dict[str, str] = {}
    for relative in relative_paths:
        seen.setdefault(path_key(relative), relative)
    return list(seen.values())


class PackagesUpdater:
    def __init__(
        self,
        installer_factory: InstallerFactory = installer_for_package,
        backup_chain: BackupChain | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._installer_factory = installer_factory
        self._backup_chain = backup_chain or default_backup_chain()
        self._clock = clock

    def apply(
        self,
        previous_state: Mapping[str, PackageInstallationState],
        packages: Iterable[Package],
        install_dir: str,
        after_install: Callable[[dict[str, PackageInstallationState]], None],
        event_handler: EventHandler | None = None,
        cancel: Cancellation | None = None,
    ) -> None:
        """Update *install_dir* to contain *packages*, earlier ones taking precedence.

        *after_install* always receives the resulting state, also when an
        exception interrupts the run.
        """
        installers = [self._installer_factory(package) for package in packages]
        current_state = dict(previous_state)

        def record(package_name: str, state: PackageInstallationState | None) -> None:
            if state is None:
                current_state.pop(package_name, None)
            else:
                current_state[package_name] = state

        try:
            self.apply_installers(
                previous_state, installers, install_dir, record, event_handler, cancel
            )
        finally:
            after_install(current_state)

    def apply_installers(
        self,
        previous_state: Mapping[str, PackageInstallationState],
        installers: Sequence[Installer],
        install_dir: str,
        record: StateCallback,
        event_handler: EventHandler | None = None,
        cancel: Cancellation | None = None,
    ) -> None:
        event_handler = event_handler or BaseEventHandler()
        cancel = cancel or _NeverCancelled()

        retained = self.retained_packages(previous_state, installers)
        progress = PercentOfTotal(len(previous_state) + len(installers) + 2)
        event_handler.progress_update(progress.increment_done().percent)

        remaining = self._uninstall_packages(
            previous_state, retained, install_dir, record, event_handler, cancel, progress
        )
        self._install_packages(
            installers, remaining, retained, install_dir, record, event_handler, cancel, progress
        )

        event_handler.progress_update(progress.done_all().percent)

    @staticmethod
    def retained_packages(
        previous_state: Mapping[str, PackageInstallationState],
        installers: Sequence[Installer],
    ) -> set[str]:
        """Names of installed packages that can be kept without reinstalling.

        A package is kept when its fingerprint is known and unchanged, its
        last installation was complete, and everything it was shadowed by
        (transitively) is kept too. Kept packages form a prefix of the
        priority order: once a package has to be reinstalled, any package
        after it might lose files to it, so none of them is kept.
        """
        dependencies = transitive(
            {name: state.dependencies for name, state in previous_state.items()}
        )
        retained: set[str] = set()
        for installer in installers:
            state = previous_state.get(installer.package_name)
            if (
                state is None
                or state.partial
                or state.fs_hash is None
                or state.fs_hash != installer.package_fs_hash
                or not dependencies.get(installer.package_name, set()) <= retained
            ):
                break
            retained.add(installer.package_name)
        return retained

    def _uninstall_packages(
        self,
        previous_state: Mapping[str, PackageInstallationState],
        retained: set[str],
        install_dir: str,
        record: StateCallback,
        event_handler: EventHandler,
        cancel: Cancellation,
        progress: PercentOfTotal,
    ) -> dict[str, PackageInstallationState]:
        """Uninstall what is not retained; return what is still recorded afterwards."""
        remaining = dict(previous_state)
        if not previous_state:
            event_handler.uninstall_no_packages()
            return remaining

        event_handler.uninstall_start()
        for package_name, state in previous_state.items():
            if cancel.is_set():
                logger.info("Uninstall cancelled before %s", package_name)
                break
            if package_name in retained:
                event_handler.progress_update(progress.increment_done().percent)
                continue

            event_handler.uninstall_current(package_name)
            backup_strategy = self._backup_chain.strategy_for(state)
            files_left = {path_key(f): f for f in state.files}
            files_recorded = len(files_left)
            failed = False
            try:
                for relative_path in state.files:
                    path = RootedPath(install_dir, to_native_relative(relative_path))
                    if backup_strategy.restore_backup(path):
                        files_left.pop(path_key(relative_path), None)
                    else:
                        event_handler.uninstall_skip_modified(path.relative)
                _delete_empty_directories(install_dir, state.files)
            except BaseException:
                failed = True
                raise
            finally:
                if files_left:
                    # Files skipped as externally updated alone do not make it partial
                    partial = state.partial or failed or len(files_left) != files_recorded
                    new_state = state.model_copy(
                        update={"partial": partial, "files": list(files_left.values())}
                    )
                    remaining[package_name] = new_state
                    record(package_name, new_state)
                else:
                    del remaining[package_name]
                    record(package_name, None)
            logger.info(
                "Uninstalled %s (%d of %d files left)",
                package_name,
                len(files_left),
                len(state.files),
            )
            event_handler.progress_update(progress.increment_done().percent)

        event_handler.uninstall_end()
        return remaining

    def _install_packages(
        self,
        installers: Sequence[Installer],
        remaining: Mapping[str, PackageInstallationState],
        retained: set[str],
        install_dir: str,
        record: StateCallback,
        event_handler: EventHandler,
        cancel: Cancellation,
        progress: PercentOfTotal,
    ) -> None:
        ownership = OwnershipMap()
        # Files still owned by packages that are not part of this run
        selected = {installer.package_name for installer in installers}
        for package_name, state in remaining.items():
            if package_name not in selected:
                for relative_path in state.files:
                    ownership.claim(relative_path, package_name)

        if not installers:
            event_handler.install_no_packages()
            return

        event_handler.install_start()
        for installer in installers:
            if cancel.is_set():
                logger.info("Install cancelled before %s", installer.package_name)
                break
            package_name = installer.package_name

            if package_name in retained:
                event_handler.install_unchanged(package_name)
                state = remaining[package_name]
                for relative_path in state.files:
                    ownership.claim(relative_path, package_name)
                record(package_name, state)
                event_handler.progress_update(progress.increment_done().percent)
                continue

            event_handler.install_current(package_name)
            shadowed_by: set[str] = set()
            callbacks = ProcessingCallbacks[RootedPath](
                accept=self._accept_unowned(ownership, package_name, shadowed_by)
            )
            backup_strategy = self._backup_chain.strategy_for(None)
            try:
                installer.install(_install_to(install_dir), backup_strategy, callbacks)
            finally:
                record(package_name, self._package_state(installer, install_dir, shadowed_by))
            logger.info(
                "Installed %s (%d files, shadowed by %d packages)",
                package_name,
                len(installer.installed_files),
                len(shadowed_by),
            )
            event_handler.progress_update(progress.increment_done().percent)

        event_handler.install_end()

    @staticmethod
    def _accept_unowned(
        ownership: OwnershipMap, package_name: str, shadowed_by: set[str]
    ) -> Callable[[RootedPath], bool]:
        def accept(path: RootedPath) -> bool:
            owner = ownership.claim(path.relative, package_name)
            if owner is None:
                return True
            shadowed_by.add(owner)
            return False

        return accept

    def _package_state(
        self, installer: Installer, install_dir: str, shadowed_by: set[str]
    ) -> PackageInstallationState | None:
        files = _unique_by_key(
            rp.relative for rp in installer.installed_files if rp.root == install_dir
        )
        if not files:
            return None
        partial = installer.installed != InstallationState.INSTALLED
        return PackageInstallationState(
            time=self._clock(),
            # Unknown when not every file made it
            fs_hash=None if partial else installer.package_fs_hash,
            partial=partial,
            dependencies=sorted(shadowed_by | installer.package_dependencies),
            files=files,
        )


def _install_to(install_dir: str) -> Callable[[str], RootedPath]:
    def destination(relative_path: str) -> RootedPath:
        return RootedPath(install_dir, relative_path)

    return destination
