"""Backup strategies protecting files that predate package management.

Strategies share one four-operation contract and are stacked explicitly by a
:class:`BackupChain`, innermost layer first. The default chain is::

    suffix        move the live file aside to ``<name>.orig`` and back
    skip_updated  leave files alone that were replaced after installation

The second layer exists because the host application's own updater may
replace an installed file. Restoring the backup over it would roll the
application back, so the backup is discarded instead and the caller is told.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol

from packmod_manager.constants import BACKUP_SUFFIX
from packmod_manager.errors import BackupError
from packmod_manager.models.state import PackageInstallationState
from packmod_manager.utils.paths import RootedPath

logger = logging.getLogger(__name__)


class BackupStrategy(Protocol):
    def perform_backup(self, path: RootedPath) -> None: ...

    def restore_backup(self, path: RootedPath) -> bool:
        """Return ``False`` when a backup existed but was deliberately not restored."""
        ...

    def delete_backup(self, path: RootedPath) -> None: ...

    def after_install(self, path: RootedPath) -> None: ...


class BackupFileNaming(Protocol):
    def to_backup(self, full_path: str) -> str: ...

    def is_backup(self, full_path: str) -> bool: ...


class SuffixBackupNaming:
    def __init__(self, suffix: str = BACKUP_SUFFIX) -> None:
        self._suffix = suffix

    def to_backup(self, full_path: str) -> str:
        return f"{full_path}{self._suffix}"

    def is_backup(self, full_path: str) -> bool:
        return full_path.endswith(self._suffix)


class MoveFileBackupStrategy:
    """Backs up by renaming the live file; an existing backup is never overwritten."""

    def __init__(self, naming: BackupFileNaming) -> None:
        self._naming = naming

    def perform_backup(self, path: RootedPath) -> None:
        full_path = path.full
        if self._naming.is_backup(full_path):
            raise BackupError(f"Installing a backup file is forbidden: {path.relative}")
        if not os.path.isfile(full_path):
            return

        backup_path = self._naming.to_backup(full_path)
        if os.path.isfile(backup_path):
            # The older backup is the file that predates package management
            os.remove(full_path)
        else:
            os.replace(full_path, backup_path)

    def restore_backup(self, path: RootedPath) -> bool:
        full_path = path.full
        if os.path.isfile(full_path):
            os.remove(full_path)
        backup_path = self._naming.to_backup(full_path)
        if os.path.isfile(backup_path):
            os.replace(backup_path, full_path)
        return True

    def delete_backup(self, path: RootedPath) -> None:
        backup_path = self._naming.to_backup(path.full)
        if os.path.isfile(backup_path):
            os.remove(backup_path)

    def after_install(self, path: RootedPath) -> None:
        pass


class SuffixBackupStrategy(MoveFileBackupStrategy):
    def __init__(self, suffix: str = BACKUP_SUFFIX) -> None:
        super().__init__(SuffixBackupNaming(suffix))


class FileTimes(Protocol):
    def created_at(self, full_path: str) -> datetime: ...

    def set_created_at(self, full_path: str, when: datetime) -> None: ...


class OsFileTimes:
    """Creation times from the OS, read as the modification time.

    Installers always write files fresh, so the modification time is the
    write time. It is used on every platform, including those that report a
    birth time, because it is the only timestamp ``os.utime`` can rewrite.
    """

    def created_at(self, full_path: str) -> datetime:
        return datetime.fromtimestamp(os.stat(full_path).st_mtime, UTC)

    def set_created_at(self, full_path: str, when: datetime) -> None:
        st = os.stat(full_path)
        os.utime(full_path, (st.st_atime, when.timestamp()))


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SkipUpdatedBackupStrategy:
    """Skips restoring backups of files replaced since *backup_time*."""

    def __init__(
        self,
        inner: BackupStrategy,
        backup_time: datetime | None,
        file_times: FileTimes | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._inner = inner
        self._backup_time = backup_time
        self._file_times = file_times or OsFileTimes()
        self._clock = clock

    def perform_backup(self, path: RootedPath) -> None:
        self._inner.perform_backup(path)

    def delete_backup(self, path: RootedPath) -> None:
        self._inner.delete_backup(path)

    def restore_backup(self, path: RootedPath) -> bool:
        if self._file_was_overwritten(path):
            logger.warning("Not restoring %s: replaced after installation", path.relative)
            self._inner.delete_backup(path)
            return False
        return self._inner.restore_backup(path)

    def after_install(self, path: RootedPath) -> None:
        self._inner.after_install(path)

        # Some archives carry timestamps in the future, which would make the
        # file look externally updated on every later run
        now = self._clock()
        if os.path.isfile(path.full) and self._file_times.created_at(path.full) > now:
            logger.debug("Clamping future creation time of %s", path.relative)
            self._file_times.set_created_at(path.full, now)

    def _file_was_overwritten(self, path: RootedPath) -> bool:
        return (
            self._backup_time is not None
            and os.path.isfile(path.full)
            and self._file_times.created_at(path.full) > self._backup_time
        )


BackupLayer = Callable[[BackupStrategy | None, PackageInstallationState | None], BackupStrategy]


def suffix_layer(suffix: str = BACKUP_SUFFIX) -> BackupLayer:
    def build(inner: BackupStrategy | None, state: PackageInstallationState | None) -> BackupStrategy:
        if inner is not None:
            raise ValueError("The suffix layer must be the innermost backup layer")
        return SuffixBackupStrategy(suffix)

    return build


def skip_updated_layer(
    file_times: FileTimes | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> BackupLayer:
    def build(inner: BackupStrategy | None, state: PackageInstallationState | None) -> BackupStrategy:
        if inner is None:
            raise ValueError("The skip-updated layer needs an inner backup layer")
        return SkipUpdatedBackupStrategy(
            inner,
            state.time if state is not None else None,
            file_times=file_times,
            clock=clock,
        )

    return build


class BackupChain:
    """Builds per-package strategies from named layers, innermost first."""

    def __init__(self, layers: Sequence[tuple[str, BackupLayer]]) -> None:
        if not layers:
            raise ValueError("A backup chain needs at least one layer")
        self._layers = list(layers)

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._layers]

    def strategy_for(self, state: PackageInstallationState | None) -> BackupStrategy:
        strategy: BackupStrategy | None = None
        for _, layer in self._layers:
            strategy = layer(strategy, state)
        assert strategy is not None
        return strategy


def default_backup_chain(
    file_times: FileTimes | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> BackupChain:
    return BackupChain(
        [
            ("suffix", suffix_layer()),
            ("skip_updated", skip_updated_layer(file_times, clock)),
        ]
    )
