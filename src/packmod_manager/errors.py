"""Exception hierarchy.

Filesystem failures are never wrapped: ``OSError`` and friends propagate as
raised by the standard library.
"""


class PackmodError(Exception):
    """Base class for errors raised by this package."""


class InvalidOperationError(PackmodError, RuntimeError):
    """A call that violates an object's contract. Never retried."""


class InstallerStateError(InvalidOperationError):
    """An installer was asked to install more than once."""


class BackupError(InvalidOperationError):
    """A backup was requested for a path that is itself a backup."""


class StateFileError(PackmodError):
    """The persisted state file exists but cannot be parsed."""


class PackageError(PackmodError, ValueError):
    """A package path was rejected by the manager."""
