"""
Archive codec for backup files.

An archive is a deflate-compressed zip container:

    manifest.json           required, describes format version and contents
    database.sql            raw SQLite bytes or ";"-delimited INSERT statements
    settings.json           users / settings / ai_providers export
    files/<relative path>   one entry per file under the public storage root
"""

import os
import json
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

from packaging.version import Version, InvalidVersion

from .errors import ArchiveAssemblyFailed, InvalidArchive


FILENAME_PREFIX = 'sourdough-backup-'
FILENAME_EXTENSION = '.zip'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

MANIFEST_ENTRY = 'manifest.json'
FILES_PREFIX = 'files/'
SECTION_ENTRIES = {
    'database': 'database.sql',
    'settings': 'settings.json',
}
SECTIONS = ('database', 'files', 'settings')

# Manifests written before versioning was introduced
LEGACY_FORMAT_VERSION = '1.0'


@dataclass
class Manifest:
    """Archive metadata stored as manifest.json."""
    format_version: str
    app_version: str
    created_at: str
    contents: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def new(cls, format_version: str, app_version: str) -> 'Manifest':
        created_at = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
        return cls(format_version=format_version, app_version=app_version, created_at=created_at)

    def to_dict(self) -> dict:
        return {
            'version': self.format_version,
            'app_version': self.app_version,
            'created_at': self.created_at,
            'contents': dict(self.contents),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        if not isinstance(data, dict):
            raise InvalidArchive("Invalid backup: manifest is not an object")

        contents = data.get('contents') or {}
        if not isinstance(contents, dict):
            raise InvalidArchive("Invalid backup: manifest contents is not an object")

        return cls(
            format_version=str(data.get('version') or LEGACY_FORMAT_VERSION),
            app_version=str(data.get('app_version') or ''),
            created_at=str(data.get('created_at') or ''),
            contents={name: bool(flag) for name, flag in contents.items() if flag},
        )

    def includes(self, section: str) -> bool:
        return bool(self.contents.get(section))


def parse_version(value: str) -> Version:
    try:
        return Version(value)
    except InvalidVersion:
        raise InvalidArchive(f"Invalid backup: unparseable format version '{value}'")


def is_supported_version(archive_version: str, supported_version: str) -> bool:
    """True unless the archive version is strictly newer than supported."""
    return parse_version(archive_version) <= parse_version(supported_version)


def generate_archive_filename(now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: sourdough-backup-{YYYY-MM-DD_HH-MM-SS}.zip
    """
    now = now or datetime.now(timezone.utc)
    return f"{FILENAME_PREFIX}{now.strftime(TIMESTAMP_FORMAT)}{FILENAME_EXTENSION}"


def parse_archive_timestamp(filename: str) -> Optional[datetime]:
    """Return the UTC timestamp embedded in an archive filename, or None."""
    if not (filename.startswith(FILENAME_PREFIX) and filename.endswith(FILENAME_EXTENSION)):
        return None
    stamp = filename[len(FILENAME_PREFIX):-len(FILENAME_EXTENSION)]
    try:
        return datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def is_valid_archive_filename(filename: str) -> bool:
    """
    Check a filename against the archive naming pattern.

    Rejects anything with path separators or traversal sequences.
    """
    if not filename or '/' in filename or '\\' in filename or '..' in filename:
        return False
    return parse_archive_timestamp(filename) is not None


def iter_tree(root: str) -> Iterator[Tuple[str, str]]:
    """
    Walk a directory tree yielding (absolute path, relative posix path)
    for regular files, in a stable order. Symlinks are skipped.
    """
    if not os.path.isdir(root):
        return

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            full_path = os.path.join(dirpath, name)
            if os.path.islink(full_path) or not os.path.isfile(full_path):
                continue
            relative = os.path.relpath(full_path, root).replace(os.sep, '/')
            yield full_path, relative


def build_archive(output_path: str, manifest: Manifest, database: Optional[bytes] = None,
                  settings: Optional[dict] = None, files_root: Optional[str] = None) -> int:
    """
    Write an archive to output_path.

    Sections passed as None are omitted; manifest.contents is set to match
    what was written. Files are streamed from disk one entry at a time.

    Args:
        output_path: Destination path of the zip file
        manifest: Manifest stub (format and app version, timestamp)
        database: Database section bytes
        settings: Settings export (serialized as JSON)
        files_root: Directory whose tree becomes files/<relative path>

    Returns:
        Size of the written archive in bytes

    Raises:
        ArchiveAssemblyFailed: If writing fails; the partial file is removed
    """
    manifest.contents = {}

    try:
        with zipfile.ZipFile(output_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            if database is not None:
                zipf.writestr(SECTION_ENTRIES['database'], database)
                manifest.contents['database'] = True

            if files_root is not None:
                for full_path, relative in iter_tree(files_root):
                    zipf.write(full_path, FILES_PREFIX + relative)
                manifest.contents['files'] = True

            if settings is not None:
                zipf.writestr(SECTION_ENTRIES['settings'], json.dumps(settings, indent=2, default=str))
                manifest.contents['settings'] = True

            zipf.writestr(MANIFEST_ENTRY, json.dumps(manifest.to_dict(), indent=2))

        return os.path.getsize(output_path)

    except Exception as e:
        if os.path.exists(output_path):
            try:
                os.remove(output_path)
            except OSError:
                pass
        raise ArchiveAssemblyFailed(f"Failed to create backup archive: {e}")


class ArchiveReader:
    """
    Random access to the sections of an archive on disk.

    Usage:
        with ArchiveReader(path) as archive:
            manifest = archive.read_manifest()
    """

    def __init__(self, path: str):
        self.path = path
        self.files_written = 0
        try:
            self._zip = zipfile.ZipFile(path, 'r')
        except (zipfile.BadZipFile, OSError) as e:
            raise InvalidArchive(f"Failed to open backup archive: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self._zip.close()

    def read_manifest(self) -> Manifest:
        """
        Raises:
            InvalidArchive: If manifest.json is missing or malformed
        """
        raw = self._read_entry(MANIFEST_ENTRY)
        if not raw:
            raise InvalidArchive("Invalid backup: missing manifest")
        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidArchive(f"Invalid backup: manifest is not valid JSON ({e})")
        return Manifest.from_dict(data)

    def extract_section(self, name: str) -> Optional[bytes]:
        """Return the raw bytes of a single-entry section, or None if absent."""
        entry = SECTION_ENTRIES.get(name)
        if entry is None:
            raise ValueError(f"Not a single-entry section: {name}")
        return self._read_entry(entry)

    def file_members(self):
        """(zip member, relative path) pairs of the files section."""
        members = []
        for info in self._zip.infolist():
            if not info.filename.startswith(FILES_PREFIX) or info.is_dir():
                continue
            relative = info.filename[len(FILES_PREFIX):]
            if relative:
                members.append((info, relative))
        return members

    def extract_files(self, target_root: str) -> int:
        """
        Recreate the files section under target_root, overwriting files
        with the same relative path.

        All member paths are checked before anything is written; a member
        that would land outside target_root rejects the whole section.
        self.files_written counts files written so far, also on failure.

        Raises:
            InvalidArchive: If a member path escapes target_root
        """
        self.files_written = 0
        root = os.path.realpath(target_root)

        planned = []
        for info, relative in self.file_members():
            destination = os.path.realpath(os.path.join(root, relative))
            if os.path.isabs(relative) or os.path.commonpath([root, destination]) != root:
                raise InvalidArchive(f"Invalid backup: unsafe file path '{info.filename}'", section='files')
            planned.append((info, destination))

        os.makedirs(root, exist_ok=True)
        for info, destination in planned:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            with self._zip.open(info) as source, open(destination, 'wb') as target:
                shutil.copyfileobj(source, target)
            self.files_written += 1

        return self.files_written

    def _read_entry(self, name: str) -> Optional[bytes]:
        try:
            return self._zip.read(name)
        except KeyError:
            return None
        except (zipfile.BadZipFile, OSError) as e:
            raise InvalidArchive(f"Invalid backup: cannot read {name} ({e})")
