"""
Storage destinations for backup archives.

Supports:
- LocalDestination: Store in a local directory
- S3Destination: S3-compatible object storage
- SFTPDestination: Remote directory over SFTP
- GoogleDriveDestination: Google Drive folder via OAuth refresh token

Every destination stores archives as single named blobs and shares the
contract below. "Not found" is reported as NotFound (or False from
delete); transport and credential failures as DestinationUnavailable.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..config import DestinationConfig


class Destination(ABC):
    """Named location able to store and retrieve archives by filename."""

    name = 'destination'

    @abstractmethod
    def upload(self, local_path: str, filename: str) -> Dict[str, Any]:
        """
        Store a local file under filename.

        Returns:
            Dict with 'success', 'filename', 'size' and variant metadata

        Raises:
            DestinationUnavailable: If the remote write fails
        """

    @abstractmethod
    def download(self, filename: str, local_path: str) -> Dict[str, Any]:
        """
        Fetch filename into local_path.

        Returns:
            Dict with 'success', 'filename', 'local_path', 'size'

        Raises:
            NotFound: If no such archive exists
            DestinationUnavailable: On transport or credential failure
        """

    @abstractmethod
    def list(self) -> List[Dict[str, Any]]:
        """Archives as {'filename', 'size', 'last_modified'}, newest first."""

    @abstractmethod
    def delete(self, filename: str) -> bool:
        """Delete an archive; False if it did not exist."""

    @abstractmethod
    def is_available(self) -> bool:
        """Non-destructive connectivity and credential probe."""

    def close(self):
        """Release connections held by the destination."""

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name}>'


def create_destination(config: DestinationConfig) -> Destination:
    """
    Build the destination for a DestinationConfig.

    Raises:
        ValueError: For an unknown destination name
    """
    if config.name == 'local':
        from .local import LocalDestination
        return LocalDestination(config.get('path'))
    if config.name == 's3':
        from .s3 import S3Destination
        return S3Destination(config)
    if config.name == 'sftp':
        from .sftp import SFTPDestination
        return SFTPDestination(config)
    if config.name == 'google_drive':
        from .google_drive import GoogleDriveDestination
        return GoogleDriveDestination(config)
    raise ValueError(f"Unknown backup destination: {config.name}")


def sort_newest_first(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order listing entries by filename timestamp, then last_modified."""
    from ..retention import archive_timestamp

    def key(entry):
        stamp = archive_timestamp(entry)
        return (stamp is not None, stamp.timestamp() if stamp else 0, entry.get('filename', ''))

    return sorted(entries, key=key, reverse=True)
