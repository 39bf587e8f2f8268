"""JSON file storage for the installation state.

The current state lives in ``state.json``. Installations made before
per-package records existed left an ``installed.json`` instead; it is read
when no current file exists and deleted on the next write.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Protocol

from pydantic import ValidationError

from packmod_manager.constants import LEGACY_STATE_FILE_NAME, STATE_FILE_NAME
from packmod_manager.errors import StateFileError
from packmod_manager.models.state import LegacyState, SavedState, StateSchema, upgrade

logger = logging.getLogger(__name__)


class StatePersistence(Protocol):
    def read_state(self) -> SavedState: ...

    def write_state(self, state: SavedState) -> None: ...


def _last_write_time(path: str) -> datetime:
    return datetime.fromtimestamp(os.path.getmtime(path), UTC)


class JsonFileStatePersistence:
    def __init__(self, state_file: str, legacy_state_file: str) -> None:
        self._state_file = state_file
        self._legacy_state_file = legacy_state_file

    @classmethod
    def in_directory(cls, directory: str) -> JsonFileStatePersistence:
        return cls(
            os.path.join(directory, STATE_FILE_NAME),
            os.path.join(directory, LEGACY_STATE_FILE_NAME),
        )

    def read_state(self) -> SavedState:
        # Always favour the current format if present
        if os.path.isfile(self._state_file):
            return upgrade(
                self._parse(self._state_file, SavedState), _last_write_time(self._state_file)
            )
        if os.path.isfile(self._legacy_state_file):
            logger.info("Upgrading legacy state file %s", self._legacy_state_file)
            return upgrade(
                self._parse(self._legacy_state_file, LegacyState),
                _last_write_time(self._legacy_state_file),
            )
        return SavedState.empty()

    def write_state(self, state: SavedState) -> None:
        if os.path.isfile(self._legacy_state_file):
            os.remove(self._legacy_state_file)

        os.makedirs(os.path.dirname(self._state_file) or ".", exist_ok=True)
        tmp_file = f"{self._state_file}.tmp"
        with open(tmp_file, "w", encoding="utf-8") as f:
            f.write(state.model_dump_json(by_alias=True, exclude_defaults=True))
        os.replace(tmp_file, self._state_file)
        logger.debug("Wrote state for %d packages", len(state.install.mods))

    @staticmethod
    def _parse(path: str, schema: type[StateSchema]) -> StateSchema:
        with open(path, encoding="utf-8") as f:
            contents = f.read()
        try:
            return schema.model_validate_json(contents)
        except ValidationError as exc:
            raise StateFileError(f"Cannot read state file {path}: {exc}") from exc
