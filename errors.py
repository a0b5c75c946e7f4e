"""
errors.py – Exception hierarchy shared by every module.

Each class corresponds to one failure kind the Gateway reports across the
process boundary.  Cancellation of an interactive save dialog is *not* an
exception: dialogs return None and the Gateway turns that into a
"cancelled" result directly.
"""

from typing import Optional


class GestorError(Exception):
    """Base class for all application errors."""


class DataDirectoryError(GestorError):
    """Neither the preferred nor the fallback data directory is usable."""


class RecordValidationError(GestorError, ValueError):
    """
    Raised when a record or request payload fails validation.

    Attributes
    ----------
    field : str or None
        Name of the offending field, so callers can point the user at it.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field: Optional[str] = field


class StorageError(GestorError):
    """The database is unavailable or a read/write against it failed."""


class ExportError(GestorError):
    """An export file could not be written to its destination."""


class BackupError(GestorError):
    """A backup archive could not be built, encrypted or written."""


class BackupDecryptionError(BackupError):
    """A backup archive is corrupt or the password is wrong."""


class AuthenticationRequired(GestorError):
    """A privileged operation was requested without a valid session."""
