"""Exceptions raised by the backup and restore pipeline."""

from __future__ import annotations


class BackupError(Exception):
    """Base class for every backup/restore failure."""


class NotFound(BackupError):
    """The requested user does not exist."""


class InvalidFormat(BackupError):
    """The uploaded payload is not a readable zip container."""


class CorruptArchive(BackupError):
    """The container opened but a required document is missing or unreadable."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


class ArchiveValidationError(BackupError):
    """Archive contents decoded but failed structural or version checks."""


class ImportFailed(BackupError):
    """The restore transaction failed and was rolled back."""

    def __init__(self, step: str, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Import failed during {step}{detail}")
        self.step = step
        self.cause = cause


class ImageRestoreWarning(UserWarning):
    """Non-fatal problem while repopulating the image cache."""
