import os
import shutil
import uuid
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List

from . import Destination, sort_newest_first
from ..archive import is_valid_archive_filename
from ..errors import DestinationUnavailable, InvalidFilename, NotFound


class LocalDestination(Destination):
    """
    Archives stored flat in a local directory.

    Writes go to a hidden temporary name first and are renamed into place,
    so a listed archive is always complete.
    """

    name = 'local'

    def __init__(self, base_path: str):
        """
        Args:
            base_path: Backup directory (created if missing)
        """
        if not base_path:
            raise DestinationUnavailable("Local backup directory is not configured", destination=self.name)

        self.base_path = Path(base_path)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DestinationUnavailable(f"Failed to create local backup directory: {e}", destination=self.name)

    def get_full_path(self, filename: str) -> str:
        """
        Absolute path of an archive inside the backup directory.

        Raises:
            InvalidFilename: If filename is not a plain file name
        """
        if not filename or os.path.basename(filename) != filename or filename.startswith('.'):
            raise InvalidFilename(f"Invalid archive filename: {filename!r}", destination=self.name)
        return str(self.base_path / filename)

    def upload(self, local_path: str, filename: str) -> Dict[str, Any]:
        dest_path = self.get_full_path(filename)
        staging = self.base_path / f".{filename}.{uuid.uuid4().hex}.part"

        try:
            shutil.copyfile(local_path, staging)
            os.replace(staging, dest_path)
        except OSError as e:
            raise DestinationUnavailable(f"Failed to store {filename} locally: {e}", destination=self.name)
        finally:
            if staging.exists():
                staging.unlink()

        return {
            'success': True,
            'filename': filename,
            'size': os.path.getsize(dest_path),
            'path': dest_path,
        }

    def download(self, filename: str, local_path: str) -> Dict[str, Any]:
        source = self.get_full_path(filename)
        if not os.path.isfile(source):
            raise NotFound(f"Backup not found: {filename}", destination=self.name)

        try:
            shutil.copyfile(source, local_path)
        except OSError as e:
            raise DestinationUnavailable(f"Failed to read {filename}: {e}", destination=self.name)

        return {
            'success': True,
            'filename': filename,
            'local_path': local_path,
            'size': os.path.getsize(local_path),
        }

    def list(self) -> List[Dict[str, Any]]:
        try:
            entries = []
            for path in self.base_path.iterdir():
                if not path.is_file() or not is_valid_archive_filename(path.name):
                    continue
                stat = path.stat()
                entries.append({
                    'filename': path.name,
                    'size': stat.st_size,
                    'last_modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                })
        except OSError as e:
            raise DestinationUnavailable(f"Failed to list local backups: {e}", destination=self.name)

        return sort_newest_first(entries)

    def exists(self, filename: str) -> bool:
        return os.path.isfile(self.get_full_path(filename))

    def delete(self, filename: str) -> bool:
        path = Path(self.get_full_path(filename))
        if not path.is_file():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise DestinationUnavailable(f"Failed to delete {filename}: {e}", destination=self.name)
        return True

    def is_available(self) -> bool:
        marker = self.base_path / f".probe-{uuid.uuid4().hex}"
        try:
            marker.write_bytes(b'ok')
            marker.unlink()
            return True
        except OSError:
            return False
