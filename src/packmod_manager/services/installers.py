"""Per-package installers.

An installer is created for one package for one run. It enumerates the
package's files, maps each one below the package's installable root to a
destination, backs up whatever lives there, and writes the new content.
Every destination it touches is recorded in ``installed_files``, even when
the run later fails, so that the caller always knows what to clean up.

Files outside every root that sit at the top level of the package are
configuration files: they are extracted to a per-package staging directory
instead of the destination.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

from packmod_manager.archive.handler import open_archive
from packmod_manager.constants import DEFAULT_DIRS_AT_ROOT, REMOVE_FILE_SUFFIX
from packmod_manager.errors import InstallerStateError
from packmod_manager.models.package import Package
from packmod_manager.services.backup import BackupStrategy
from packmod_manager.services.root_finder import ContainedDirsRootFinder
from packmod_manager.utils.matchers import excluding_patterns
from packmod_manager.utils.paths import RootedPath

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")

Destination = Callable[[str], RootedPath]


class InstallationState(enum.IntEnum):
    NOT_INSTALLED = 0
    PARTIALLY_INSTALLED = 1
    INSTALLED = 2


def _accept_all(_: object) -> bool:
    return True


def _do_nothing(_: object) -> None:
    return None


@dataclass(frozen=True)
class ProcessingCallbacks(Generic[T]):
    """Hooks around each entry an installer processes."""

    accept: Callable[[T], bool] = _accept_all
    before: Callable[[T], None] = _do_nothing
    after: Callable[[T], None] = _do_nothing
    not_accepted: Callable[[T], None] = _do_nothing


@dataclass(frozen=True)
class InstallerConfig:
    dirs_at_root: list[str] = field(default_factory=lambda: list(DEFAULT_DIRS_AT_ROOT))
    excluded_from_install: list[str] = field(default_factory=list)
    excluded_from_config: list[str] = field(default_factory=list)
    # Where top-level configuration files are extracted; None skips them
    staging_dir: str | None = None


def _needs_removing(relative_path: str) -> tuple[str, bool]:
    if relative_path.endswith(REMOVE_FILE_SUFFIX):
        return relative_path[: -len(REMOVE_FILE_SUFFIX)].strip(), True
    return relative_path, False


def _is_safe_relative(relative_path: str) -> bool:
    parts = Path(relative_path).parts
    return not Path(relative_path).is_absolute() and ".." not in parts


class BaseInstaller(ABC, Generic[C]):
    """Common install loop; subclasses enumerate files and write their content.

    ``C`` is whatever the subclass needs to write one file (a source path,
    archive bytes...), passed through from enumeration to :meth:`_install_file`.
    """

    def __init__(
        self,
        package_name: str,
        package_fs_hash: int | None,
        config: InstallerConfig | None = None,
        package_dependencies: Iterable[str] = (),
    ) -> None:
        config = config or InstallerConfig()
        self.package_name = package_name
        self.package_fs_hash = package_fs_hash
        self.package_dependencies: frozenset[str] = frozenset(package_dependencies)
        self.installed = InstallationState.NOT_INSTALLED
        self._installed_files: list[RootedPath] = []
        self._root_finder = ContainedDirsRootFinder(config.dirs_at_root)
        self._install_matcher = excluding_patterns(config.excluded_from_install)
        self._config_matcher = excluding_patterns(config.excluded_from_config)
        self._staging_dir = (
            os.path.join(config.staging_dir, package_name.rstrip("\\/"))
            if config.staging_dir
            else None
        )

    @property
    def installed_files(self) -> list[RootedPath]:
        return list(self._installed_files)

    @property
    @abstractmethod
    def relative_directory_paths(self) -> Iterable[str]:
        """Package directories, relative to the package source."""

    @abstractmethod
    def _iter_files(self) -> Iterator[tuple[str, C]]:
        """Yield ``(relative path in package, context)`` for each file, once."""

    @abstractmethod
    def _install_file(self, destination: RootedPath, context: C) -> None:
        """Write one file's content to *destination*."""

    def install(
        self,
        destination: Destination,
        backup_strategy: BackupStrategy,
        callbacks: ProcessingCallbacks[RootedPath] | None = None,
    ) -> None:
        if self.installed != InstallationState.NOT_INSTALLED:
            raise InstallerStateError(f"Package {self.package_name} was already installed")
        self.installed = InstallationState.PARTIALLY_INSTALLED
        callbacks = callbacks or ProcessingCallbacks()

        root_paths = self._root_finder.from_directory_list(self.relative_directory_paths)
        if not root_paths:
            logger.info("No installable content found in %s", self.package_name)

        for path_in_package, context in self._iter_files():
            if not _is_safe_relative(path_in_package):
                logger.warning("Skipping path traversal entry: %s", path_in_package)
                continue

            relative_path_in_root = root_paths.path_from_root(path_in_package)
            if relative_path_in_root is None:
                self._install_config_file(path_in_package, context)
                continue

            relative_path, remove_file = _needs_removing(relative_path_in_root)
            dest = destination(relative_path)

            if not (self._install_matcher.matches(dest.relative) and callbacks.accept(dest)):
                logger.debug("Not installing %s from %s", dest.relative, self.package_name)
                callbacks.not_accepted(dest)
                continue

            callbacks.before(dest)
            backup_strategy.perform_backup(dest)
            self._installed_files.append(dest)
            if not remove_file:
                os.makedirs(os.path.dirname(dest.full) or ".", exist_ok=True)
                self._install_file(dest, context)
            backup_strategy.after_install(dest)
            callbacks.after(dest)

        self.installed = InstallationState.INSTALLED

    def _install_config_file(self, path_in_package: str, context: C) -> None:
        # Config files only at the package top level
        if self._staging_dir is None or os.sep in path_in_package:
            return
        if not self._config_matcher.matches(path_in_package):
            return
        config_path = RootedPath(self._staging_dir, path_in_package)
        os.makedirs(self._staging_dir, exist_ok=True)
        self._install_file(config_path, context)
        self._installed_files.append(config_path)


class DirectoryInstaller(BaseInstaller[str]):
    """Copies files from an unpacked package directory."""

    def __init__(
        self,
        package_name: str,
        package_fs_hash: int | None,
        source_path: str,
        config: InstallerConfig | None = None,
    ) -> None:
        super().__init__(package_name, package_fs_hash, config)
        self._source = Path(source_path)

    def _walk(self) -> Iterator[tuple[str, list[str], list[str]]]:
        for dirpath, dirnames, filenames in os.walk(self._source):
            # Hidden entries are skipped, as is descending into hidden directories
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            yield dirpath, dirnames, sorted(f for f in filenames if not f.startswith("."))

    @property
    def relative_directory_paths(self) -> list[str]:
        return [
            os.path.relpath(os.path.join(dirpath, d), self._source)
            for dirpath, dirnames, _ in self._walk()
            for d in dirnames
        ]

    def _iter_files(self) -> Iterator[tuple[str, str]]:
        for dirpath, _, filenames in self._walk():
            for filename in filenames:
                full_path = os.path.join(dirpath, filename)
                yield os.path.relpath(full_path, self._source), full_path

    def _install_file(self, destination: RootedPath, context: str) -> None:
        shutil.copyfile(context, destination.full)


def _native(archive_path: str) -> str:
    return os.path.normpath(archive_path.replace("\\", "/").strip("/"))


class ArchiveInstaller(BaseInstaller[bytes]):
    """Extracts files from a package archive in a single forward pass."""

    def __init__(
        self,
        package_name: str,
        package_fs_hash: int | None,
        archive_path: str,
        config: InstallerConfig | None = None,
    ) -> None:
        super().__init__(package_name, package_fs_hash, config)
        self._archive_path = archive_path

    @property
    def relative_directory_paths(self) -> set[str]:
        directories: set[str] = set()
        with open_archive(self._archive_path) as archive:
            for entry in archive.list_entries():
                path = _native(entry.filename)
                # Archives do not always carry explicit directory entries
                parent = path if entry.is_dir else os.path.dirname(path)
                while parent and parent not in directories:
                    directories.add(parent)
                    parent = os.path.dirname(parent)
        return directories

    def _iter_files(self) -> Iterator[tuple[str, bytes]]:
        with open_archive(self._archive_path) as archive:
            for entry, data in archive.iter_files():
                yield _native(entry.filename), data

    def _install_file(self, destination: RootedPath, context: bytes) -> None:
        with open(destination.full, "wb") as f:
            f.write(context)


def installer_for_package(package: Package, config: InstallerConfig | None = None) -> BaseInstaller:
    """Pick the installer matching the package's on-disk form."""
    if os.path.isdir(package.full_path):
        return DirectoryInstaller(package.name, package.fs_hash, package.full_path, config)
    return ArchiveInstaller(package.name, package.fs_hash, package.full_path, config)
