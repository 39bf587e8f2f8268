"""Abstract archive handler with implementations for ZIP, 7z, and RAR.

Provides a uniform interface for listing package archives and streaming
their file contents. Contents are consumed in a single forward pass in
archive order, since solid 7z and RAR archives cannot be read randomly
without decompressing everything before the wanted entry again.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import py7zr

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    filename: str
    is_dir: bool
    size: int = 0


class ArchiveHandler(ABC):
    """Base class for archive format handlers."""

    @abstractmethod
    def list_entries(self) -> list[ArchiveEntry]:
        """Return all entries in the archive."""

    @abstractmethod
    def iter_files(self) -> Iterator[tuple[ArchiveEntry, bytes]]:
        """Yield every file entry with its contents, once, in archive order."""

    @abstractmethod
    def close(self) -> None:
        """Release resources."""

    def __enter__(self) -> ArchiveHandler:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


class ZipHandler(ArchiveHandler):
    """Handler for .zip archives using stdlib zipfile."""

    def __init__(self, path: str | Path) -> None:
        self._zf = zipfile.ZipFile(path, "r")

    def list_entries(self) -> list[ArchiveEntry]:
        return [
            ArchiveEntry(filename=info.filename, is_dir=info.is_dir(), size=info.file_size)
            for info in self._zf.infolist()
        ]

    def iter_files(self) -> Iterator[tuple[ArchiveEntry, bytes]]:
        for info in self._zf.infolist():
            if info.is_dir():
                continue
            entry = ArchiveEntry(filename=info.filename, is_dir=False, size=info.file_size)
            yield entry, self._zf.read(info)

    def close(self) -> None:
        self._zf.close()


class _ExtractingHandler(ArchiveHandler):
    """Handlers that can only extract everything to disk in one go."""

    @abstractmethod
    def _extract_all(self, destination: Path) -> None: ...

    def iter_files(self) -> Iterator[tuple[ArchiveEntry, bytes]]:
        entries = [e for e in self.list_entries() if not e.is_dir]
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir_path = Path(tmpdir).resolve()
            self._extract_all(tmpdir_path)
            for entry in entries:
                extracted = (tmpdir_path / entry.filename).resolve()
                if extracted.is_file() and tmpdir_path in extracted.parents:
                    yield entry, extracted.read_bytes()


class SevenZipHandler(_ExtractingHandler):
    """Handler for .7z archives using py7zr.

    py7zr >= 1.0 removed the ``read()`` method, so contents are extracted to
    a temporary directory and read back from there.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._archive = py7zr.SevenZipFile(self._path, mode="r")

    def list_entries(self) -> list[ArchiveEntry]:
        return [
            ArchiveEntry(
                filename=entry.filename,
                is_dir=entry.is_directory,
                size=entry.uncompressed if hasattr(entry, "uncompressed") else 0,
            )
            for entry in self._archive.list()
        ]

    def _extract_all(self, destination: Path) -> None:
        self._archive.reset()
        self._archive.extractall(path=destination)

    def close(self) -> None:
        self._archive.close()


def _find_7zip() -> str | None:
    """Locate the 7-Zip CLI executable."""
    common = [
        r"C:\Program Files\7-Zip\7z.exe",
        r"C:\Program Files (x86)\7-Zip\7z.exe",
    ]
    for p in common:
        if Path(p).exists():
            return p
    return shutil.which("7z")


class RarHandler(_ExtractingHandler):
    """Handler for .rar archives using 7-Zip CLI.

    RAR extraction requires 7-Zip to be installed on the system.
    """

    def __init__(self, path: str | Path) -> None:
        exe = _find_7zip()
        if not exe:
            raise FileNotFoundError(
                "RAR extraction requires 7-Zip. Install via: winget install 7zip.7zip"
            )
        self._exe = exe
        self._path = str(path)

    def list_entries(self) -> list[ArchiveEntry]:
        result = subprocess.run(
            [self._exe, "l", "-slt", self._path],
            capture_output=True,
            text=True,
            timeout=60,
        )
        if result.returncode != 0:
            raise RuntimeError(f"7z list failed (exit {result.returncode}): {result.stderr}")

        entries: list[ArchiveEntry] = []
        current_path = ""
        current_size = 0
        current_is_dir = False

        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith("Path = "):
                if current_path:
                    entries.append(ArchiveEntry(current_path, current_is_dir, current_size))
                current_path = line[7:]
                current_size = 0
                current_is_dir = False
            elif line.startswith("Size = "):
                try:
                    current_size = int(line[7:])
                except ValueError:
                    current_size = 0
            elif line.startswith("Folder = +"):
                current_is_dir = True

        if current_path:
            entries.append(ArchiveEntry(current_path, current_is_dir, current_size))

        # The first "Path = " block describes the archive itself
        return [e for e in entries if e.filename != self._path]

    def _extract_all(self, destination: Path) -> None:
        result = subprocess.run(
            [self._exe, "x", "-y", f"-o{destination}", self._path],
            capture_output=True,
            timeout=600,
        )
        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace")
            raise RuntimeError(f"7z extract failed (exit {result.returncode}): {stderr}")

    def close(self) -> None:
        pass


def open_archive(path: str | Path) -> ArchiveHandler:
    """Open an archive file and return the appropriate handler.

    Raises:
        ValueError: If the file extension is not supported.
        FileNotFoundError: For RAR files when 7-Zip is not installed.
        zipfile.BadZipFile: If a ZIP file is corrupt.
    """
    path = Path(path)
    ext = path.suffix.lower()

    if ext == ".zip":
        return ZipHandler(path)
    if ext == ".7z":
        return SevenZipHandler(path)
    if ext == ".rar":
        return RarHandler(path)

    raise ValueError(f"Unsupported archive format: {ext}")
