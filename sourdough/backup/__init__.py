"""
Backup & restore subsystem.

Entry point is BackupService, constructed from the BackupConfig returned
by load_backup_config(app).
"""

from .config import BackupConfig, DestinationConfig, RetentionPolicy, ScheduleConfig, load_backup_config
from .errors import (
    ErrorKind, BackupError, ArchiveAssemblyFailed, DestinationUploadFailed, InvalidArchive,
    UnsupportedVersion, UnsafeStatementRejected, DestinationUnavailable, NotFound,
    OperationInProgress, InvalidFilename, RestoreFailed,
)
from .service import BackupService

__all__ = [
    'BackupConfig', 'DestinationConfig', 'RetentionPolicy', 'ScheduleConfig', 'load_backup_config',
    'ErrorKind', 'BackupError', 'ArchiveAssemblyFailed', 'DestinationUploadFailed', 'InvalidArchive',
    'UnsupportedVersion', 'UnsafeStatementRejected', 'DestinationUnavailable', 'NotFound',
    'OperationInProgress', 'InvalidFilename', 'RestoreFailed', 'BackupService',
]
