from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Package:
    name: str
    full_path: str
    enabled: bool
    # None for directories: they always count as changed
    fs_hash: int | None = None
