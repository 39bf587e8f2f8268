"""Lifecycle notifications emitted while packages are updated.

Handlers are purely observational: nothing they do changes what the updater
does next.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class EventHandler(Protocol):
    def install_no_packages(self) -> None: ...
    def install_start(self) -> None: ...
    def install_current(self, package_name: str) -> None: ...
    def install_unchanged(self, package_name: str) -> None: ...
    def install_end(self) -> None: ...

    def uninstall_no_packages(self) -> None: ...
    def uninstall_start(self) -> None: ...
    def uninstall_current(self, package_name: str) -> None: ...
    def uninstall_skip_modified(self, file_path: str) -> None: ...
    def uninstall_end(self) -> None: ...

    def progress_update(self, progress: float) -> None: ...


class BaseEventHandler:
    """No-op implementation to subclass when only some events matter."""

    def install_no_packages(self) -> None:
        pass

    def install_start(self) -> None:
        pass

    def install_current(self, package_name: str) -> None:
        pass

    def install_unchanged(self, package_name: str) -> None:
        pass

    def install_end(self) -> None:
        pass

    def uninstall_no_packages(self) -> None:
        pass

    def uninstall_start(self) -> None:
        pass

    def uninstall_current(self, package_name: str) -> None:
        pass

    def uninstall_skip_modified(self, file_path: str) -> None:
        pass

    def uninstall_end(self) -> None:
        pass

    def progress_update(self, progress: float) -> None:
        pass


class LoggingEventHandler(BaseEventHandler):
    def install_no_packages(self) -> None:
        logger.info("No packages to install")

    def install_start(self) -> None:
        logger.info("Installing packages")

    def install_current(self, package_name: str) -> None:
        logger.info("Installing %s", package_name)

    def install_unchanged(self, package_name: str) -> None:
        logger.info("Keeping %s (unchanged)", package_name)

    def install_end(self) -> None:
        logger.info("Installation complete")

    def uninstall_no_packages(self) -> None:
        logger.info("No previously installed packages")

    def uninstall_start(self) -> None:
        logger.info("Uninstalling packages")

    def uninstall_current(self, package_name: str) -> None:
        logger.info("Uninstalling %s", package_name)

    def uninstall_skip_modified(self, file_path: str) -> None:
        logger.warning("Skipping modified file %s", file_path)

    def uninstall_end(self) -> None:
        logger.info("Uninstall complete")

    def progress_update(self, progress: float) -> None:
        logger.debug("Progress: %.0f%%", progress * 100)
