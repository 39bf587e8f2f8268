"""Entry point tying the repository, the state store and the updater together."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping, Sequence
from functools import partial

from send2trash import send2trash

from packmod_manager.archive.handler import SUPPORTED_EXTENSIONS
from packmod_manager.config import Settings
from packmod_manager.errors import PackageError
from packmod_manager.models.package import Package
from packmod_manager.models.state import (
    InstallationStateSnapshot,
    PackageInstallationState,
    SavedState,
)
from packmod_manager.schemas.package import PackageStatus, UpdateSummary
from packmod_manager.services.events import EventHandler, LoggingEventHandler
from packmod_manager.services.installers import InstallerConfig, installer_for_package
from packmod_manager.services.packages_updater import Cancellation, PackagesUpdater
from packmod_manager.services.repository import FileSystemRepository
from packmod_manager.services.state_persistence import JsonFileStatePersistence, StatePersistence

logger = logging.getLogger(__name__)


def _is_out_of_date(package: Package | None, state: PackageInstallationState | None) -> bool:
    if package is None or state is None:
        return False
    # Unknown fingerprint: partially installed or from the legacy state format
    if state.fs_hash is None:
        return True
    return state.fs_hash != package.fs_hash


def _status(
    name: str, package: Package | None, state: PackageInstallationState | None
) -> PackageStatus:
    return PackageStatus(
        package_name=name,
        package_path=package.full_path if package else None,
        is_installed=False if state is None else (None if state.partial else True),
        is_enabled=package is not None and package.enabled,
        is_out_of_date=_is_out_of_date(package, state),
        installed_at=state.time if state else None,
    )


def _summarize(
    before: Mapping[str, PackageInstallationState],
    after: Mapping[str, PackageInstallationState],
) -> UpdateSummary:
    return UpdateSummary(
        installed=sorted(name for name, s in after.items() if not s.partial),
        partially_installed=sorted(name for name, s in after.items() if s.partial),
        removed=sorted(name for name in before if name not in after),
    )


class PackageManager:
    def __init__(
        self,
        install_dir: str,
        repository: FileSystemRepository,
        persistence: StatePersistence,
        updater: PackagesUpdater,
        staging_dir: str | None = None,
    ) -> None:
        self._install_dir = install_dir
        self._repository = repository
        self._persistence = persistence
        self._updater = updater
        self._staging_dir = staging_dir

    @classmethod
    def from_settings(cls, settings: Settings) -> PackageManager:
        config = InstallerConfig(
            dirs_at_root=list(settings.dirs_at_root),
            excluded_from_install=list(settings.excluded_from_install),
            excluded_from_config=list(settings.excluded_from_config),
            staging_dir=str(settings.staging_dir),
        )
        return cls(
            install_dir=str(settings.game_path),
            repository=FileSystemRepository(settings.packages_dir),
            persistence=JsonFileStatePersistence.in_directory(str(settings.state_dir)),
            updater=PackagesUpdater(partial(installer_for_package, config=config)),
            staging_dir=str(settings.staging_dir),
        )

    def fetch_state(self) -> list[PackageStatus]:
        installed = self._persistence.read_state().install.mods
        enabled = {p.name: p for p in self._repository.list_enabled()}
        disabled = {p.name: p for p in self._repository.list_disabled()}
        available = {**disabled, **enabled}

        names = dict.fromkeys([*installed, *enabled, *disabled])
        return [_status(name, available.get(name), installed.get(name)) for name in names]

    def add_package(self, package_path: str) -> PackageStatus:
        if os.path.isdir(package_path):
            raise PackageError(f"{package_path} is a directory")
        if os.path.splitext(package_path)[1].lower() not in SUPPORTED_EXTENSIONS:
            raise PackageError(f"{package_path} is not a supported archive")
        package = self._repository.upload(package_path)
        state = self._persistence.read_state().install.mods.get(package.name)
        return _status(package.name, package, state)

    def delete_package(self, package_path: str) -> None:
        """Move *package_path* to the OS trash; installed files are left as they are."""
        if not os.path.exists(package_path):
            raise PackageError(f"{package_path} does not exist")
        send2trash(package_path)
        logger.info("Moved %s to the trash", package_path)

    def enable_package(self, package_path: str) -> str:
        return self._repository.enable(package_path)

    def disable_package(self, package_path: str) -> str:
        return self._repository.disable(package_path)

    def install_enabled(
        self,
        event_handler: EventHandler | None = None,
        cancel: Cancellation | None = None,
    ) -> UpdateSummary:
        # Clean what was left by a previous failed installation
        self._clean_staging()
        try:
            return self._update(self._repository.list_enabled(), event_handler, cancel)
        finally:
            self._clean_staging()

    def uninstall_all(
        self,
        event_handler: EventHandler | None = None,
        cancel: Cancellation | None = None,
    ) -> UpdateSummary:
        return self._update([], event_handler, cancel)

    def _update(
        self,
        packages: Sequence[Package],
        event_handler: EventHandler | None,
        cancel: Cancellation | None,
    ) -> UpdateSummary:
        previous_state = self._persistence.read_state().install.mods
        result: dict[str, PackageInstallationState] = {}

        def persist(current_state: dict[str, PackageInstallationState]) -> None:
            result.update(current_state)
            times = [s.time for s in current_state.values() if s.time is not None]
            self._persistence.write_state(
                SavedState(
                    install=InstallationStateSnapshot(
                        time=max(times) if times else None,
                        mods=current_state,
                    )
                )
            )

        self._updater.apply(
            previous_state,
            packages,
            self._install_dir,
            persist,
            event_handler or LoggingEventHandler(),
            cancel,
        )
        summary = _summarize(previous_state, result)
        logger.info(
            "Update complete: %d installed, %d partial, %d removed",
            len(summary.installed),
            len(summary.partially_installed),
            len(summary.removed),
        )
        return summary

    def _clean_staging(self) -> None:
        if self._staging_dir and os.path.isdir(self._staging_dir):
            shutil.rmtree(self._staging_dir)
