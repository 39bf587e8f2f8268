"""Persisted installation state and its schema upgrades.

Two on-disk shapes exist. The legacy one is a bare ``{package: [files]}``
mapping; the current one nests per-package records under ``Install.Mods``.
Both are parsed into their own model and turned into :class:`SavedState` by
a pure upgrade function, so nothing past the state store ever sees the
legacy shape.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator
from pydantic.alias_generators import to_pascal


class _StateModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        frozen=True,
    )

    @field_validator("time", mode="after", check_fields=False)
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class PackageInstallationState(_StateModel):
    # When the package was last (re)installed
    time: datetime | None = None
    # Unknown when partially installed or upgraded from the legacy format
    fs_hash: int | None = None
    # Sticky until the package is fully uninstalled
    partial: bool = False
    dependencies: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    # Reserved for the reverse of ``dependencies``; never populated by the updater
    shadowed_by: list[str] = Field(default_factory=list)


class InstallationStateSnapshot(_StateModel):
    time: datetime | None = None
    mods: dict[str, PackageInstallationState] = Field(default_factory=dict)


class SavedState(_StateModel):
    install: InstallationStateSnapshot = Field(default_factory=InstallationStateSnapshot)

    @classmethod
    def empty(cls) -> SavedState:
        return cls()


class LegacyState(RootModel[dict[str, list[str]]]):
    pass


StateSchema = SavedState | LegacyState


def upgrade_legacy(legacy: LegacyState, written_at: datetime) -> SavedState:
    """Upgrade the flat legacy mapping, using the file's write time as install time."""
    return SavedState(
        install=InstallationStateSnapshot(
            time=written_at,
            mods={
                name: PackageInstallationState(
                    time=written_at,
                    fs_hash=None,
                    partial=False,
                    dependencies=[],
                    files=list(files),
                )
                for name, files in legacy.root.items()
            },
        )
    )


def fill_package_times(state: SavedState, written_at: datetime) -> SavedState:
    """Give every package without an install time the global one, or *written_at*."""
    fallback = state.install.time or written_at
    mods = {
        name: mod if mod.time is not None else mod.model_copy(update={"time": fallback})
        for name, mod in state.install.mods.items()
    }
    return state.model_copy(
        update={"install": state.install.model_copy(update={"mods": mods})}
    )


def upgrade(schema: StateSchema, written_at: datetime) -> SavedState:
    """Bring any supported schema version up to the current one."""
    if isinstance(schema, LegacyState):
        return upgrade_legacy(schema, written_at)
    return fill_package_times(schema, written_at)
