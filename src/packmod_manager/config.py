import os
import sys
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from packmod_manager.constants import DEFAULT_DIRS_AT_ROOT


def _default_data_dir() -> Path:
    if env := os.environ.get("PMM_DATA_DIR"):
        return Path(env)
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "com.packmod.app"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PMM_",
        extra="ignore",
        yaml_file="config.yaml",
    )

    data_dir: Path = Path("")
    game_path: Path = Path(".")
    packages_dir: Path = Path("")
    staging_dir: Path = Path("")
    state_dir: Path = Path("")
    dirs_at_root: list[str] = Field(default_factory=lambda: list(DEFAULT_DIRS_AT_ROOT))
    excluded_from_install: list[str] = Field(default_factory=list)
    excluded_from_config: list[str] = Field(default_factory=list)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _resolve_data_paths(self) -> "Settings":
        if self.data_dir == Path(""):
            self.data_dir = _default_data_dir()
        if self.packages_dir == Path(""):
            self.packages_dir = self.data_dir / "Packages"
        if self.staging_dir == Path(""):
            self.staging_dir = self.data_dir / "Staging"
        if self.state_dir == Path(""):
            self.state_dir = self.data_dir
        return self


settings = Settings()
