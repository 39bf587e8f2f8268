from datetime import datetime

from pydantic import BaseModel


class PackageStatus(BaseModel):
    package_name: str
    package_path: str | None = None
    # None when only partially installed
    is_installed: bool | None
    is_enabled: bool
    is_out_of_date: bool
    installed_at: datetime | None = None


class UpdateSummary(BaseModel):
    installed: list[str] = []
    partially_installed: list[str] = []
    removed: list[str] = []
