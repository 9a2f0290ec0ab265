"""
Unit tests for BackupService.create and stored-archive operations
(sourdough/backup/service.py).
"""

import io
import json
import os
import threading
import zipfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from sourdough.backup import BackupService, RetentionPolicy
from sourdough.backup.archive import generate_archive_filename
from sourdough.backup.config import DestinationConfig
from sourdough.backup.destinations import Destination
from sourdough.backup.errors import (
    ArchiveAssemblyFailed, DestinationUnavailable, DestinationUploadFailed,
    InvalidFilename, NotFound, OperationInProgress,
)
from sourdough.backup.service import OperationLock
from sourdough.models import User, Setting


class RecordingDestination(Destination):
    """Keeps uploaded archives in memory."""

    def __init__(self, name):
        self.name = name
        self.stored = {}

    def upload(self, local_path, filename):
        with open(local_path, 'rb') as f:
            self.stored[filename] = f.read()
        return {'success': True, 'filename': filename, 'size': len(self.stored[filename])}

    def download(self, filename, local_path):
        if filename not in self.stored:
            raise NotFound(filename, destination=self.name)
        with open(local_path, 'wb') as f:
            f.write(self.stored[filename])
        return {'success': True, 'filename': filename, 'local_path': local_path}

    def list(self):
        return [{'filename': name, 'size': len(data)} for name, data in self.stored.items()]

    def delete(self, filename):
        return self.stored.pop(filename, None) is not None

    def is_available(self):
        return True


class FailingDestination(RecordingDestination):
    """Every call fails as if the remote were unreachable."""

    def upload(self, local_path, filename):
        raise DestinationUnavailable(f"{self.name} is unreachable", destination=self.name)

    def list(self):
        raise DestinationUnavailable(f"{self.name} is unreachable", destination=self.name)

    def is_available(self):
        return False


def with_remotes(config, *names):
    """Enable the named remote destinations on a config."""
    destinations = tuple(
        replace(d, enabled=True) if d.name in names else d for d in config.destinations
    )
    return replace(config, destinations=destinations)


def read_zip(data):
    return zipfile.ZipFile(io.BytesIO(data))


class TestCreate:
    """Test archive creation and distribution."""

    def test_concrete_scenario(self, db, backup_config):
        """Test one user and one setting produce database and settings sections only."""
        user = User(name='Ann', email='ann@example.com', password_hash='x')
        db.session.add(user)
        db.session.flush()
        db.session.add(Setting(user_id=user.id, key='ui.theme', value='"dark"'))
        db.session.commit()

        with BackupService(backup_config) as service:
            result = service.create(include_database=True, include_files=False, include_settings=True)

        assert result['size'] > 0
        assert result['manifest']['contents'] == {'database': True, 'settings': True}
        path = os.path.join(backup_config.backup_dir, result['filename'])
        with zipfile.ZipFile(path) as zipf:
            settings = json.loads(zipf.read('settings.json'))
            assert not any(name.startswith('files/') for name in zipf.namelist())

        assert [u['email'] for u in settings['users']] == ['ann@example.com']
        assert [s['key'] for s in settings['settings']] == ['ui.theme']

    def test_result_layout(self, db, backup_service, admin_user, public_files):
        result = backup_service.create()

        assert set(result) == {'filename', 'size', 'manifest', 'destinations', 'failures', 'retention', 'logs'}
        assert result['manifest']['version'] == '2.0'
        assert result['manifest']['contents'] == {'database': True, 'files': True, 'settings': True}
        assert list(result['destinations']) == ['local']
        assert result['failures'] == []
        assert any('Backup completed' in line for line in result['logs'])

    @freeze_time('2024-05-05 10:00:00')
    def test_filename_collision_bumps_timestamp(self, db, backup_service):
        first = backup_service.create(include_files=False)
        second = backup_service.create(include_files=False)

        assert first['filename'] == 'sourdough-backup-2024-05-05_10-00-00.zip'
        assert second['filename'] == 'sourdough-backup-2024-05-05_10-00-01.zip'

    def test_temporary_files_are_removed(self, db, backup_service, backup_config):
        backup_service.create(include_files=False)

        assert os.listdir(backup_config.temp_dir) == ['backup.lock']

    def test_one_unreachable_destination_does_not_fail_create(self, db, backup_config, admin_user):
        """Test fan-out records the failing destination and keeps the others."""
        config = with_remotes(backup_config, 's3', 'sftp')
        s3 = RecordingDestination('s3')
        sftp = FailingDestination('sftp')

        with BackupService(config, destinations={'s3': s3, 'sftp': sftp}) as service:
            result = service.create(include_files=False)

        assert set(result['destinations']) == {'local', 's3'}
        assert result['filename'] in s3.stored
        assert result['failures'] == [{
            'destination': 'sftp',
            'kind': 'destination_upload_failed',
            'cause_kind': 'destination_unavailable',
            'error': 'sftp is unreachable',
        }]

    def test_requested_destinations_are_filtered(self, db, backup_config):
        config = with_remotes(backup_config, 's3')
        s3 = RecordingDestination('s3')

        with BackupService(config, destinations={'s3': s3}) as service:
            result = service.create(include_files=False, destinations=['local', 's3', 'sftp', 's3'])

        assert set(result['destinations']) == {'local', 's3'}
        assert any('Skipping destination sftp' in line for line in result['logs'])

    def test_local_failure_is_fatal(self, db, backup_config):
        """Test the mandatory local copy failing aborts before remote uploads."""
        config = with_remotes(backup_config, 's3')
        s3 = RecordingDestination('s3')
        local = FailingDestination('local')

        with BackupService(config, destinations={'local': local, 's3': s3}) as service:
            local.exists = lambda filename: False
            with pytest.raises(DestinationUploadFailed) as exc:
                service.create(include_files=False)

        assert exc.value.destination == 'local'
        assert s3.stored == {}

    def test_capture_failure_is_assembly_failure(self, db, backup_service, monkeypatch):
        def broken():
            raise RuntimeError('table locked')
        monkeypatch.setattr('sourdough.backup.service.dump_database', broken)

        with pytest.raises(ArchiveAssemblyFailed) as exc:
            backup_service.create()

        assert exc.value.section == 'database'
        assert backup_service.list_backups() == []

    def test_retention_runs_after_create(self, db, backup_config):
        """Test old archives are pruned and the new one is never selected."""
        config = replace(backup_config, retention=RetentionPolicy(enabled=True, keep_days=None,
                                                                  keep_count=2, min_backups=0))
        now = datetime.now(timezone.utc)
        for age in range(1, 5):
            name = generate_archive_filename(now - timedelta(days=age))
            with open(os.path.join(config.backup_dir, name), 'wb') as f:
                f.write(b'old')

        with BackupService(config) as service:
            result = service.create(include_files=False, include_settings=False)
            remaining = [b['filename'] for b in service.list_backups()]

        assert len(result['retention']) == 1
        assert len(result['retention'][0]['deleted']) == 3
        assert result['filename'] in remaining
        assert len(remaining) == 2

    def test_retention_listing_error_does_not_fail_create(self, db, backup_config):
        """Test a remote that cannot be listed after upload still yields a successful create."""
        class UnlistableDestination(RecordingDestination):
            def list(self):
                raise ValueError('Expecting value: line 1 column 1')

        config = with_remotes(replace(backup_config, retention=RetentionPolicy(
            enabled=True, keep_days=None, keep_count=1, min_backups=0)), 's3')
        s3 = UnlistableDestination('s3')

        with BackupService(config, destinations={'s3': s3}) as service:
            result = service.create(include_files=False, include_settings=False)
            listed = [b['filename'] for b in service.list_backups()]

        assert result['filename'] in s3.stored
        assert result['filename'] in listed
        by_destination = {r['destination']: r for r in result['retention']}
        assert by_destination['s3']['error'] == 'Expecting value: line 1 column 1'
        assert by_destination['local']['error'] is None


class TestOperationLock:
    """Test the one-operation-at-a-time lock."""

    def test_create_rejected_while_restore_holds_lock(self, db, backup_service):
        with backup_service._lock.hold('restore'):
            with pytest.raises(OperationInProgress):
                backup_service.create()

    def test_lock_shared_between_services(self, db, backup_config):
        first = BackupService(backup_config)
        second = BackupService(backup_config)

        with first._lock.hold('create'):
            with pytest.raises(OperationInProgress):
                second.apply_retention()

    def test_lock_released_after_error(self, db, backup_service, monkeypatch):
        monkeypatch.setattr('sourdough.backup.service.export_settings', lambda: 1 / 0)
        with pytest.raises(ArchiveAssemblyFailed):
            backup_service.create(include_database=False)

        result = backup_service.create(include_database=False, include_files=False, include_settings=False)
        assert result['manifest']['contents'] == {}

    def test_lock_blocks_other_thread(self, tmp_path):
        lock = OperationLock(str(tmp_path / 'op.lock'))
        other = OperationLock(str(tmp_path / 'op.lock'))
        errors = []

        def worker():
            try:
                with other.hold('create'):
                    pass
            except OperationInProgress as e:
                errors.append(e)

        with lock.hold('restore'):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        assert len(errors) == 1
        assert (tmp_path / 'op.lock').read_text().startswith(str(os.getpid()))


class TestStoredArchives:
    """Test listing, download and delete of stored archives."""

    def test_list_backups(self, db, backup_service):
        created = backup_service.create(include_files=False)

        listing = backup_service.list_backups()

        assert listing[0]['filename'] == created['filename']
        assert listing[0]['size'] == created['size']
        assert listing[0]['created_at'].endswith('+00:00')

    def test_list_unknown_destination(self, db, backup_service):
        with pytest.raises(NotFound):
            backup_service.list_backups('dropbox')

    def test_exists_and_download(self, db, backup_service):
        created = backup_service.create(include_files=False)

        assert backup_service.exists(created['filename']) is True
        with backup_service.download(created['filename']) as stream:
            assert read_zip(stream.read()).read('manifest.json')

    def test_download_missing(self, db, backup_service):
        with pytest.raises(NotFound):
            backup_service.download('sourdough-backup-2020-01-01_00-00-00.zip')

    @pytest.mark.parametrize('filename', ['../../etc/passwd', 'backup.zip', 'sourdough-backup-x.zip'])
    def test_invalid_filenames(self, db, backup_service, filename):
        with pytest.raises(InvalidFilename):
            backup_service.download(filename)
        with pytest.raises(InvalidFilename):
            backup_service.delete(filename)

    def test_delete(self, db, backup_service):
        created = backup_service.create(include_files=False)

        assert backup_service.delete(created['filename']) is True
        with pytest.raises(NotFound):
            backup_service.delete(created['filename'])

    def test_destination_status(self, db, backup_config):
        config = with_remotes(backup_config, 'sftp')

        with BackupService(config, destinations={'sftp': FailingDestination('sftp')}) as service:
            status = {entry['name']: entry for entry in service.destination_status()}

        assert status['local']['available'] is True
        assert status['sftp'] == {'name': 'sftp', 'enabled': True, 'available': False}
        assert status['s3'] == {'name': 's3', 'enabled': False, 'available': False}

    def test_apply_retention_disabled(self, db, backup_service):
        summary = backup_service.apply_retention()

        assert summary['results'] == []
        assert summary['policy']['enabled'] is False

    def test_apply_retention_skips_unreachable(self, db, backup_config):
        config = with_remotes(replace(backup_config, retention=RetentionPolicy(
            enabled=True, keep_days=1, keep_count=1, min_backups=0)), 's3')

        with BackupService(config, destinations={'s3': FailingDestination('s3')}) as service:
            summary = service.apply_retention()

        by_name = {r['destination']: r for r in summary['results']}
        assert by_name['local']['error'] is None
        assert by_name['s3']['error'] == 's3 is unreachable'


class TestDestinationConfigDefaults:
    """Test the service degrades to local only."""

    def test_unconfigured_remote_is_not_used(self, db, backup_config):
        assert [d.name for d in backup_config.enabled_destinations] == ['local']
        assert isinstance(backup_config.destination('s3'), DestinationConfig)
