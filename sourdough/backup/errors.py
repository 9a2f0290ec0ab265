"""
Error kinds raised by the backup subsystem.

Every exception carries an ErrorKind so callers can branch on `err.kind`
instead of on exception classes.
"""

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    ARCHIVE_ASSEMBLY_FAILED = 'archive_assembly_failed'
    DESTINATION_UPLOAD_FAILED = 'destination_upload_failed'
    INVALID_ARCHIVE = 'invalid_archive'
    UNSUPPORTED_VERSION = 'unsupported_version'
    UNSAFE_STATEMENT_REJECTED = 'unsafe_statement_rejected'
    DESTINATION_UNAVAILABLE = 'destination_unavailable'
    NOT_FOUND = 'not_found'
    RESTORE_FAILED = 'restore_failed'
    OPERATION_IN_PROGRESS = 'operation_in_progress'
    INVALID_FILENAME = 'invalid_filename'


class BackupError(Exception):
    """Base class for backup subsystem errors."""

    kind = ErrorKind.RESTORE_FAILED

    def __init__(self, message: str, destination: Optional[str] = None, section: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.destination = destination
        self.section = section

    def to_dict(self) -> Dict[str, Optional[str]]:
        data = {'kind': self.kind.value, 'error': self.message}
        if self.destination:
            data['destination'] = self.destination
        if self.section:
            data['section'] = self.section
        return data


class ArchiveAssemblyFailed(BackupError):
    """Archive could not be written (disk full, permissions)."""
    kind = ErrorKind.ARCHIVE_ASSEMBLY_FAILED


class DestinationUploadFailed(BackupError):
    """Upload to one destination failed."""
    kind = ErrorKind.DESTINATION_UPLOAD_FAILED


class InvalidArchive(BackupError):
    """Archive is unreadable, lacks a manifest or contains unsafe members."""
    kind = ErrorKind.INVALID_ARCHIVE


class UnsupportedVersion(BackupError):
    """Archive format is newer than this installation supports."""
    kind = ErrorKind.UNSUPPORTED_VERSION

    def __init__(self, message: str, archive_version: str, supported_version: str):
        super().__init__(message)
        self.archive_version = archive_version
        self.supported_version = supported_version


class UnsafeStatementRejected(BackupError):
    """A database-section statement is not an allow-listed INSERT."""
    kind = ErrorKind.UNSAFE_STATEMENT_REJECTED

    def __init__(self, message: str, statement: str, index: int):
        super().__init__(message, section='database')
        # Keep only an excerpt; the statement is untrusted input
        self.statement = statement[:200]
        self.index = index


class DestinationUnavailable(BackupError):
    """Authentication or connectivity failure talking to a destination."""
    kind = ErrorKind.DESTINATION_UNAVAILABLE


class NotFound(BackupError):
    """Named archive does not exist at the destination."""
    kind = ErrorKind.NOT_FOUND


class OperationInProgress(BackupError):
    """Another create/restore holds the backup lock."""
    kind = ErrorKind.OPERATION_IN_PROGRESS


class InvalidFilename(BackupError):
    """Filename does not follow the archive naming pattern."""
    kind = ErrorKind.INVALID_FILENAME


class RestoreFailed(BackupError):
    """
    A section failed while being applied.

    Attributes:
        applied: Sections that completed before the failure
        rolled_back: True when the data-store transaction was rolled back
        files_partial: True when some files were written before the failure;
            file writes are never rolled back
        cause: The underlying exception
    """
    kind = ErrorKind.RESTORE_FAILED

    def __init__(self, message: str, section: str, applied: Dict[str, bool],
                 rolled_back: bool, files_partial: bool = False, cause: Optional[BaseException] = None):
        super().__init__(message, section=section)
        self.applied = applied
        self.rolled_back = rolled_back
        self.files_partial = files_partial
        self.cause = cause

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'applied': self.applied,
            'rolled_back': self.rolled_back,
            'files_partial': self.files_partial,
        })
        if isinstance(self.cause, BackupError):
            data['cause_kind'] = self.cause.kind.value
        return data
