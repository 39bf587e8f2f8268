import zipfile
from datetime import UTC, datetime, timedelta

import pytest


@pytest.fixture
def install_dir(tmp_path):
    path = tmp_path / "game"
    path.mkdir()
    return path


@pytest.fixture
def write_files():
    def _write(root, files: dict[str, str]) -> None:
        for relative, content in files.items():
            full = root / relative
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content)

    return _write


@pytest.fixture
def make_zip():
    def _make(path, files: dict[str, bytes]) -> None:
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            for name, content in files.items():
                zf.writestr(name, content)

    return _make


@pytest.fixture
def future():
    """A time later than any file written during the test."""
    return datetime.now(UTC) + timedelta(days=10)
