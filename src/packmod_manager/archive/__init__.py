from packmod_manager.archive.handler import (
    ArchiveEntry,
    ArchiveHandler,
    RarHandler,
    SevenZipHandler,
    ZipHandler,
    open_archive,
)

__all__ = [
    "ArchiveEntry",
    "ArchiveHandler",
    "RarHandler",
    "SevenZipHandler",
    "ZipHandler",
    "open_archive",
]
