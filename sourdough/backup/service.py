"""
Backup orchestrator - creates, stores, restores and prunes archives.

Create workflow:
1. Capture the requested sections (database, settings, files)
2. Assemble the archive in a private temporary directory
3. Store it locally (mandatory), then upload to the other destinations
   concurrently; a failing destination never cancels the others
4. Apply the retention policy per destination
5. Cleanup temporary files

Restore workflow:
1. Read and version-check the manifest
2. Validate every section before touching the data store
3. Apply database, settings and files inside one session transaction
4. Commit, or roll back and report which sections ran
"""

import os
import fcntl
import shutil
import logging
import tempfile
import threading
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Union

from sourdough import db
from .archive import (
    ArchiveReader, Manifest, build_archive, generate_archive_filename,
    is_supported_version, is_valid_archive_filename,
)
from .config import BackupConfig
from .database import dump_database, embedded_database_path, is_embedded_dump, restore_database, validate_dump
from .destinations import Destination, create_destination
from .errors import (
    ArchiveAssemblyFailed, BackupError, DestinationUploadFailed, InvalidArchive, InvalidFilename,
    NotFound, OperationInProgress, RestoreFailed, UnsafeStatementRejected, UnsupportedVersion,
)
from .retention import apply_retention_policy, archive_timestamp
from .settings_export import export_settings, import_settings, parse_settings_section

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_thread_locks: Dict[Optional[str], threading.Lock] = {}


class OperationLock:
    """
    One backup operation at a time.

    A thread lock shared by every OperationLock on the same path covers
    this process; an exclusive flock on the lock file covers other
    worker processes.
    """

    def __init__(self, path: Optional[str]):
        self.path = path
        with _registry_guard:
            self._mutex = _thread_locks.setdefault(path, threading.Lock())

    @contextmanager
    def hold(self, operation: str):
        if not self._mutex.acquire(blocking=False):
            raise OperationInProgress(f"Another backup operation is in progress; cannot start {operation}")

        fd = None
        try:
            if self.path:
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
                fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    raise OperationInProgress(
                        f"Another backup operation is in progress in another process; cannot start {operation}"
                    )
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()} {operation}\n".encode())
            yield
        finally:
            if fd is not None:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
            self._mutex.release()


class BackupService:
    """
    Orchestrates backup operations for one BackupConfig.

    Database and settings work needs a Flask application context.
    Destinations are created on first use; pass `destinations` to supply
    ready-made instances by name.

    Usage:
        with BackupService(load_backup_config(app)) as service:
            result = service.create()
    """

    def __init__(self, config: BackupConfig, destinations: Optional[Mapping[str, Destination]] = None):
        self.config = config
        self._destinations: Dict[str, Destination] = dict(destinations or {})
        self._lock = OperationLock(config.lock_file)
        self.logs: List[str] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Close every destination connection opened by this service."""
        for destination in self._destinations.values():
            try:
                destination.close()
            except Exception as e:
                logger.warning(f"Failed to close {destination.name} destination: {e}")

    # -- destinations ------------------------------------------------------

    def destination(self, name: str) -> Destination:
        """
        Raises:
            NotFound: If no destination with that name is configured
        """
        if name not in self._destinations:
            dest_config = self.config.destination(name)
            if dest_config is None:
                raise NotFound(f"Unknown backup destination: {name}", destination=name)
            self._destinations[name] = create_destination(dest_config)
        return self._destinations[name]

    @property
    def local(self) -> Destination:
        return self.destination('local')

    def destination_status(self) -> List[Dict[str, Any]]:
        """Availability of every configured destination, for health display."""
        status = []
        for dest_config in self.config.destinations:
            entry = {'name': dest_config.name, 'enabled': dest_config.enabled, 'available': False}
            if dest_config.enabled:
                entry['available'] = self.check_destination(dest_config.name)
            status.append(entry)
        return status

    def check_destination(self, name: str) -> bool:
        """Probe one destination, enabled or not."""
        try:
            return self.destination(name).is_available()
        except NotFound:
            raise
        except Exception as e:
            logger.warning(f"Availability probe for {name} failed: {e}")
            return False

    # -- create ------------------------------------------------------------

    def create(self, include_database: bool = True, include_files: bool = True,
               include_settings: bool = True, destinations: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Create an archive and distribute it.

        Args:
            include_database: Capture the database section
            include_files: Capture the public storage file tree
            include_settings: Capture the settings export
            destinations: Destination names to upload to besides local;
                defaults to every enabled destination

        Returns:
            Dict with 'filename', 'size', 'manifest', 'destinations'
            (per-destination upload results), 'failures', 'retention', 'logs'

        Raises:
            OperationInProgress: If another operation holds the lock
            ArchiveAssemblyFailed: If capture or assembly fails; nothing uploaded
            DestinationUploadFailed: If the mandatory local copy fails
        """
        with self._lock.hold('create'):
            self.logs = []
            temp_dir = self._make_temp_dir('sourdough_backup_')
            try:
                return self._create(temp_dir, include_database, include_files, include_settings, destinations)
            finally:
                self._cleanup(temp_dir)

    def _create(self, temp_dir, include_database, include_files, include_settings, destinations):
        self._log(
            f"Starting backup (database={include_database}, files={include_files}, settings={include_settings})"
        )

        filename = self._next_filename()
        archive_path = os.path.join(temp_dir, filename)
        manifest = Manifest.new(self.config.format_version, self.config.app_version)

        database = self._capture('database', dump_database) if include_database else None
        settings = self._capture('settings', export_settings) if include_settings else None
        files_root = self.config.public_storage_dir if include_files else None

        size = build_archive(archive_path, manifest, database=database, settings=settings, files_root=files_root)
        self._log(f"Archive created: {filename} ({size / 1024 / 1024:.2f} MB)")

        results = {}
        try:
            results['local'] = self.local.upload(archive_path, filename)
        except Exception as e:
            self._log(f"Storing local copy failed: {e}")
            raise DestinationUploadFailed(f"Failed to store backup locally: {e}", destination='local')
        self._log(f"Stored locally: {filename}")

        failures = self._fan_out(self._upload_targets(destinations), archive_path, filename, results)

        retention = []
        if self.config.retention.is_active:
            for name in results:
                retention.append(apply_retention_policy(
                    self.destination(name), self.config.retention, exclude=[filename], log=self._log
                ))

        self._log(f"Backup completed: {filename} stored on {', '.join(results)}"
                  + (f"; {len(failures)} destination(s) failed" if failures else ''))

        return {
            'filename': filename,
            'size': size,
            'manifest': manifest.to_dict(),
            'destinations': results,
            'failures': failures,
            'retention': retention,
            'logs': list(self.logs),
        }

    def _capture(self, section: str, capture):
        self._log(f"Capturing {section}")
        try:
            return capture()
        except BackupError:
            raise
        except Exception as e:
            self._log(f"Capturing {section} failed: {e}")
            raise ArchiveAssemblyFailed(f"Failed to capture {section}: {e}", section=section)

    def _upload_targets(self, requested: Optional[Iterable[str]]) -> List[str]:
        enabled = [d.name for d in self.config.enabled_destinations if d.name != 'local']
        if requested is None:
            return enabled

        targets = []
        for name in requested:
            if name == 'local' or name in targets:
                continue
            if name not in enabled:
                self._log(f"Skipping destination {name}: not enabled")
                continue
            targets.append(name)
        return targets

    def _fan_out(self, names: List[str], archive_path: str, filename: str,
                 results: Dict[str, Any]) -> List[Dict[str, str]]:
        """Upload to every named destination concurrently and wait for all."""
        if not names:
            return []

        failures = []
        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix='backup-upload') as pool:
            futures = {}
            for name in names:
                try:
                    futures[name] = pool.submit(self.destination(name).upload, archive_path, filename)
                except Exception as e:
                    futures[name] = e

            for name, future in futures.items():
                try:
                    if isinstance(future, Exception):
                        raise future
                    results[name] = future.result()
                    self._log(f"Uploaded to {name}: {filename}")
                except Exception as e:
                    error = DestinationUploadFailed(f"Upload to {name} failed: {e}", destination=name)
                    logger.warning(error.message)
                    self._log(error.message)
                    failures.append({
                        'destination': name,
                        'kind': error.kind.value,
                        'cause_kind': e.kind.value if isinstance(e, BackupError) else None,
                        'error': str(e),
                    })
        return failures

    def _next_filename(self) -> str:
        """Timestamped filename not yet present in local storage."""
        now = datetime.now(timezone.utc)
        filename = generate_archive_filename(now)
        while self.local.exists(filename):
            now += timedelta(seconds=1)
            filename = generate_archive_filename(now)
        return filename

    # -- restore -----------------------------------------------------------

    def restore(self, archive_path: str) -> Dict[str, Any]:
        """
        Restore an archive file.

        Returns:
            {'manifest': {...}, 'restored': {'database'?, 'settings'?, 'files'?,
            'files_partial'}, 'logs': [...]}

        Raises:
            OperationInProgress: If another operation holds the lock
            InvalidArchive: Unreadable archive, missing manifest or section
            UnsupportedVersion: Archive format newer than supported
            UnsafeStatementRejected: Database section fails validation
            RestoreFailed: A section failed; database changes rolled back
        """
        with self._lock.hold('restore'):
            self.logs = []
            return self._restore(archive_path)

    def _restore(self, archive_path: str) -> Dict[str, Any]:
        logger.warning(f"Restore started from {os.path.basename(archive_path)}")
        self._log(f"Opening archive {os.path.basename(archive_path)}")

        with ArchiveReader(archive_path) as archive:
            manifest = archive.read_manifest()
            if not is_supported_version(manifest.format_version, self.config.format_version):
                raise UnsupportedVersion(
                    f"Backup format {manifest.format_version} is newer than supported "
                    f"format {self.config.format_version}",
                    manifest.format_version, self.config.format_version,
                )
            self._log(f"Manifest OK: format {manifest.format_version}, "
                      f"sections {', '.join(sorted(manifest.contents)) or 'none'}")

            database, settings = self._load_sections(archive, manifest)
            include_files = manifest.includes('files')

            restored = {}
            section = None
            embedded = database is not None and is_embedded_dump(database)
            try:
                if database is not None:
                    section = 'database'
                    summary = restore_database(database)
                    restored['database'] = True
                    self._log(f"Database restored ({summary['mode']}, {summary['statements']} statements)")

                if settings is not None:
                    section = 'settings'
                    summary = import_settings(settings)
                    restored['settings'] = True
                    self._log(f"Settings restored: {summary}")

                if include_files:
                    section = 'files'
                    count = archive.extract_files(self.config.public_storage_dir)
                    restored['files'] = True
                    self._log(f"Restored {count} files")

                section = 'commit'
                db.session.commit()

            except Exception as e:
                db.session.rollback()
                files_partial = include_files and archive.files_written > 0
                logger.error(f"Restore failed during {section}: {e}")
                self._log(f"Restore failed during {section}: {e}; database changes rolled back")

                if isinstance(e, (UnsafeStatementRejected, InvalidArchive)) and not restored:
                    raise
                raise RestoreFailed(
                    f"Restore failed during {section}: {e}",
                    section=section,
                    applied=dict(restored),
                    rolled_back=not embedded,
                    files_partial=files_partial,
                    cause=e,
                )

        restored['files_partial'] = False
        logger.warning(f"Restore completed: {', '.join(k for k, v in restored.items() if v) or 'nothing'}")
        self._log("Restore completed")

        return {'manifest': manifest.to_dict(), 'restored': restored, 'logs': list(self.logs)}

    def _load_sections(self, archive: ArchiveReader, manifest: Manifest):
        """Extract and validate database and settings sections up front."""
        database = None
        if manifest.includes('database'):
            database = archive.extract_section('database')
            if database is None:
                raise InvalidArchive("Invalid backup: manifest lists a database section but it is missing",
                                     section='database')
            if is_embedded_dump(database):
                if embedded_database_path() is None:
                    raise InvalidArchive(
                        "Backup holds an embedded SQLite database; it can only be restored into a "
                        "file-backed SQLite store", section='database',
                    )
            else:
                count = len(validate_dump(database))
                self._log(f"Validated {count} database statements")

        settings = None
        if manifest.includes('settings'):
            raw = archive.extract_section('settings')
            if raw is None:
                raise InvalidArchive("Invalid backup: manifest lists a settings section but it is missing",
                                     section='settings')
            settings = parse_settings_section(raw)

        return database, settings

    def restore_from_upload(self, source: Union[bytes, BinaryIO]) -> Dict[str, Any]:
        """Restore from uploaded archive bytes or a binary stream."""
        temp_dir = self._make_temp_dir('sourdough_restore_')
        try:
            archive_path = os.path.join(temp_dir, 'upload.zip')
            with open(archive_path, 'wb') as f:
                if isinstance(source, (bytes, bytearray)):
                    f.write(source)
                else:
                    shutil.copyfileobj(source, f)
            return self.restore(archive_path)
        finally:
            self._cleanup(temp_dir)

    def restore_from_stored(self, filename: str, destination: str = 'local') -> Dict[str, Any]:
        """
        Download a stored archive from a destination and restore it.

        Raises:
            InvalidFilename: If filename does not follow the archive pattern
            NotFound: If the archive does not exist at the destination
        """
        self._check_filename(filename)
        temp_dir = self._make_temp_dir('sourdough_restore_')
        try:
            archive_path = os.path.join(temp_dir, filename)
            self.destination(destination).download(filename, archive_path)
            return self.restore(archive_path)
        finally:
            self._cleanup(temp_dir)

    # -- stored archives ---------------------------------------------------

    def list_backups(self, destination: Optional[str] = None) -> List[Dict[str, Any]]:
        """Archives at a destination (local by default), newest first."""
        entries = []
        for item in self.destination(destination or 'local').list():
            created = archive_timestamp(item)
            modified = item.get('last_modified')
            entries.append({
                'filename': item['filename'],
                'size': item.get('size', 0),
                'created_at': created.isoformat() if created else None,
                'last_modified': modified.isoformat() if isinstance(modified, datetime) else modified,
            })
        return entries

    def exists(self, filename: str, destination: str = 'local') -> bool:
        self._check_filename(filename)
        dest = self.destination(destination)
        if hasattr(dest, 'exists'):
            return dest.exists(filename)
        return any(item['filename'] == filename for item in dest.list())

    def download(self, filename: str) -> BinaryIO:
        """
        Open a locally stored archive for reading.

        Raises:
            InvalidFilename: If filename does not follow the archive pattern
            NotFound: If the archive is not stored locally
        """
        self._check_filename(filename)
        if not self.local.exists(filename):
            raise NotFound(f"Backup not found: {filename}", destination='local')
        return open(self.local.get_full_path(filename), 'rb')

    def delete(self, filename: str, destination: str = 'local') -> bool:
        """
        Raises:
            InvalidFilename: If filename does not follow the archive pattern
            NotFound: If the archive does not exist at the destination
        """
        self._check_filename(filename)
        if not self.destination(destination).delete(filename):
            raise NotFound(f"Backup not found: {filename}", destination=destination)
        logger.info(f"Deleted backup {filename} from {destination}")
        return True

    def apply_retention(self, destinations: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Run the retention policy against destinations (all enabled by default).

        Returns:
            {'policy': {...}, 'results': [per-destination results], 'logs': [...]}
        """
        with self._lock.hold('retention'):
            self.logs = []
            policy = self.config.retention
            results = []

            if not policy.is_active:
                self._log("Retention policy is disabled")
            else:
                names = list(destinations) if destinations is not None else \
                    [d.name for d in self.config.enabled_destinations]
                for name in names:
                    try:
                        dest = self.destination(name)
                    except BackupError as e:
                        self._log(f"Retention skipped for {name}: {e}")
                        continue
                    results.append(apply_retention_policy(dest, policy, log=self._log))

            return {
                'policy': {
                    'enabled': policy.enabled,
                    'keep_days': policy.keep_days,
                    'keep_count': policy.keep_count,
                    'min_backups': policy.min_backups,
                },
                'results': results,
                'logs': list(self.logs),
            }

    # -- helpers -----------------------------------------------------------

    def _check_filename(self, filename: str):
        if not is_valid_archive_filename(filename):
            raise InvalidFilename(f"Invalid backup filename: {filename!r}")

    def _make_temp_dir(self, prefix: str) -> str:
        temp_root = self.config.temp_dir
        if temp_root:
            os.makedirs(temp_root, exist_ok=True)
        return tempfile.mkdtemp(prefix=prefix, dir=temp_root or None)

    def _cleanup(self, temp_dir: str):
        """Remove a temporary directory; failures are only logged."""
        try:
            shutil.rmtree(temp_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to cleanup temporary directory {temp_dir}: {e}")

    def _log(self, message: str):
        """Add a timestamped message to the operation log."""
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
