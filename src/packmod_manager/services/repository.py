"""Package storage on disk.

Packages are archives or directories placed in ``Enabled/`` or ``Disabled/``
below the repository root. Enabling or disabling a package moves it between
the two.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from packmod_manager.constants import DISABLED_SUBDIR, ENABLED_SUBDIR
from packmod_manager.models.package import Package

logger = logging.getLogger(__name__)


def fs_hash(path: str | Path) -> int:
    """Cheap fingerprint of a file from its modification time and size.

    Only meant to tell whether a package file might have changed; two
    different files can share a fingerprint.
    """
    st = os.stat(path)
    # 100ns ticks, as a signed 32-bit integer
    value = ((st.st_mtime_ns // 100) ^ st.st_size) & 0xFFFFFFFF
    return value - (1 << 32) if value >= (1 << 31) else value


class FileSystemRepository:
    def __init__(self, repository_dir: str | Path) -> None:
        self._enabled_dir = Path(repository_dir) / ENABLED_SUBDIR
        self._disabled_dir = Path(repository_dir) / DISABLED_SUBDIR

    def upload(self, source_file_path: str | Path) -> Package:
        """Copy a package file in, keeping it disabled if a disabled copy exists."""
        file_name = Path(source_file_path).name
        is_disabled = any(p.name == file_name for p in self.list_disabled())
        destination_dir = self._disabled_dir if is_disabled else self._enabled_dir
        destination_dir.mkdir(parents=True, exist_ok=True)
        destination = destination_dir / file_name
        shutil.copyfile(source_file_path, destination)
        logger.info("Added package %s", file_name)
        return self._file_package(destination)

    def enable(self, package_path: str | Path) -> str:
        return self._move_package(Path(package_path), self._enabled_dir)

    def disable(self, package_path: str | Path) -> str:
        return self._move_package(Path(package_path), self._disabled_dir)

    def list_enabled(self) -> list[Package]:
        return self._list_packages(self._enabled_dir)

    def list_disabled(self) -> list[Package]:
        return self._list_packages(self._disabled_dir)

    @staticmethod
    def _move_package(source: Path, destination_dir: Path) -> str:
        destination_dir.mkdir(parents=True, exist_ok=True)
        destination = destination_dir / source.name
        shutil.move(source, destination)
        return str(destination)

    def _list_packages(self, directory: Path) -> list[Package]:
        if not directory.is_dir():
            return []
        entries = sorted(
            (p for p in directory.iterdir() if not p.name.startswith(".")),
            key=lambda p: p.name.lower(),
        )
        files = [self._file_package(p) for p in entries if p.is_file()]
        dirs = [self._directory_package(p) for p in entries if p.is_dir()]
        return files + dirs

    def _file_package(self, path: Path) -> Package:
        return Package(
            name=path.name,
            full_path=str(path),
            enabled=path.parent == self._enabled_dir,
            fs_hash=fs_hash(path),
        )

    def _directory_package(self, path: Path) -> Package:
        return Package(
            name=f"{path.name}{os.sep}",
            full_path=str(path),
            enabled=path.parent == self._enabled_dir,
            fs_hash=None,
        )
