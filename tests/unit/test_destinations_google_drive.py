"""
Unit tests for the Google Drive destination
(sourdough/backup/destinations/google_drive.py).

A MagicMock stands in for the requests session.
"""

from unittest.mock import MagicMock

import pytest
import requests

from sourdough.backup.config import DestinationConfig, RetentionPolicy
from sourdough.backup.destinations.google_drive import GoogleDriveDestination, TOKEN_URL, UPLOAD_URL, _quote
from sourdough.backup.errors import DestinationUnavailable, NotFound
from sourdough.backup.retention import apply_retention_policy


OLD = 'sourdough-backup-2024-01-01_00-00-00.zip'
NEW = 'sourdough-backup-2024-02-01_00-00-00.zip'


def response(status=200, payload=None, chunks=(), headers=None):
    mock = MagicMock()
    mock.status_code = status
    mock.ok = status < 400
    mock.text = 'error body'
    mock.headers = headers or {}
    mock.json.return_value = payload or {}
    mock.iter_content.return_value = list(chunks)
    return mock


def drive_config(**options):
    defaults = {
        'client_id': 'client',
        'client_secret': 'secret',
        'refresh_token': 'refresh',
        'folder_id': 'folder123',
    }
    defaults.update(options)
    return DestinationConfig('google_drive', True, defaults)


@pytest.fixture
def session():
    mock = MagicMock()
    mock.post.return_value = response(payload={'access_token': 'token-1'})
    return mock


@pytest.fixture
def drive(session):
    return GoogleDriveDestination(drive_config(), session=session)


class TestAccessToken:
    """Test the refresh-token exchange."""

    def test_token_is_cached_on_instance(self, drive, session):
        session.request.return_value = response(payload={'files': []})

        drive.list()
        drive.list()

        session.post.assert_called_once()
        assert session.post.call_args.args[0] == TOKEN_URL
        headers = session.request.call_args.kwargs['headers']
        assert headers['Authorization'] == 'Bearer token-1'

    def test_token_failure(self, drive, session):
        session.post.return_value = response(status=400)

        with pytest.raises(DestinationUnavailable):
            drive.list()
        assert drive.is_available() is False

    def test_missing_credentials(self, session):
        drive = GoogleDriveDestination(drive_config(refresh_token=None), session=session)

        assert drive.is_available() is False
        session.post.assert_not_called()

    def test_network_error(self, drive, session):
        session.post.side_effect = requests.ConnectionError('offline')

        with pytest.raises(DestinationUnavailable, match='offline'):
            drive.list()


class TestDriveOperations:
    """Test blob operations against mocked Drive responses."""

    def test_upload_streams_chunks(self, drive, session, tmp_path, monkeypatch):
        """Test the archive goes up in fixed-size pieces through a resumable session."""
        monkeypatch.setattr('sourdough.backup.destinations.google_drive.UPLOAD_CHUNK_SIZE', 4)
        archive = tmp_path / 'staged.zip'
        archive.write_bytes(b'zipdata')
        session.request.side_effect = [
            response(headers={'Location': 'https://upload.example/session1'}),
            response(status=308, headers={'Range': 'bytes=0-3'}),
            response(payload={'id': 'file1', 'webViewLink': 'https://drive/x'}),
        ]

        result = drive.upload(str(archive), NEW)

        start, first, second = session.request.call_args_list
        assert start.args[:2] == ('POST', UPLOAD_URL)
        assert start.kwargs['json'] == {'name': NEW, 'mimeType': 'application/zip', 'parents': ['folder123']}
        assert start.kwargs['headers']['X-Upload-Content-Length'] == '7'
        assert first.args[:2] == ('PUT', 'https://upload.example/session1')
        assert first.kwargs['data'] == b'zipd'
        assert first.kwargs['headers']['Content-Range'] == 'bytes 0-3/7'
        assert second.kwargs['data'] == b'ata'
        assert second.kwargs['headers']['Content-Range'] == 'bytes 4-6/7'
        assert result['file_id'] == 'file1'
        assert result['size'] == 7

    def test_upload_resumes_after_persisted_range(self, drive, session, tmp_path, monkeypatch):
        monkeypatch.setattr('sourdough.backup.destinations.google_drive.UPLOAD_CHUNK_SIZE', 4)
        archive = tmp_path / 'staged.zip'
        archive.write_bytes(b'zipdata')
        session.request.side_effect = [
            response(headers={'Location': 'https://upload.example/session1'}),
            response(status=308, headers={'Range': 'bytes=0-1'}),
            response(status=308, headers={'Range': 'bytes=0-5'}),
            response(payload={'id': 'file1'}),
        ]

        drive.upload(str(archive), NEW)

        sent = [c.kwargs['headers']['Content-Range'] for c in session.request.call_args_list[1:]]
        assert sent == ['bytes 0-3/7', 'bytes 2-5/7', 'bytes 6-6/7']

    def test_upload_stalled_session(self, drive, session, tmp_path):
        archive = tmp_path / 'staged.zip'
        archive.write_bytes(b'zipdata')
        session.request.side_effect = [
            response(headers={'Location': 'https://upload.example/session1'}),
            response(status=308),
        ]

        with pytest.raises(DestinationUnavailable, match='stalled'):
            drive.upload(str(archive), NEW)

    def test_upload_without_session_url(self, drive, session, tmp_path):
        archive = tmp_path / 'staged.zip'
        archive.write_bytes(b'zipdata')
        session.request.return_value = response()

        with pytest.raises(DestinationUnavailable, match='upload session'):
            drive.upload(str(archive), NEW)

    def test_download(self, drive, session, tmp_path):
        session.request.side_effect = [
            response(payload={'files': [{'id': 'file1'}]}),
            response(chunks=[b'abc', b'def']),
        ]
        target = tmp_path / 'out.zip'

        result = drive.download(NEW, str(target))

        assert target.read_bytes() == b'abcdef'
        assert result['size'] == 6
        lookup_query = session.request.call_args_list[0].kwargs['params']['q']
        assert f"name='{NEW}'" in lookup_query
        assert "'folder123' in parents" in lookup_query

    def test_download_missing(self, drive, session, tmp_path):
        session.request.return_value = response(payload={'files': []})

        with pytest.raises(NotFound):
            drive.download(NEW, str(tmp_path / 'out.zip'))

    def test_list_follows_pages(self, drive, session):
        session.request.side_effect = [
            response(payload={
                'files': [{'id': '1', 'name': OLD, 'size': '10', 'modifiedTime': '2024-01-01T00:00:00.000Z'}],
                'nextPageToken': 'page2',
            }),
            response(payload={
                'files': [
                    {'id': '2', 'name': NEW, 'size': '20', 'modifiedTime': '2024-02-01T00:00:00Z'},
                    {'id': '3', 'name': 'notes.txt', 'size': '1'},
                    {'id': '4', 'name': 'family-photos.zip', 'size': '5'},
                ],
            }),
        ]

        listing = drive.list()

        assert [item['filename'] for item in listing] == [NEW, OLD]
        assert listing[1]['size'] == 10
        assert session.request.call_args_list[1].kwargs['params']['pageToken'] == 'page2'

    def test_delete(self, drive, session):
        session.request.side_effect = [
            response(payload={'files': [{'id': 'file1'}]}),
            response(status=204),
        ]

        assert drive.delete(NEW) is True
        method, url = session.request.call_args.args[:2]
        assert method == 'DELETE'
        assert url.endswith('/file1')

    def test_delete_missing(self, drive, session):
        session.request.return_value = response(payload={'files': []})
        assert drive.delete(NEW) is False

    def test_server_error_is_unavailable(self, drive, session):
        session.request.return_value = response(status=500)

        with pytest.raises(DestinationUnavailable):
            drive.list()

    def test_query_values_are_escaped(self):
        assert _quote("it's") == "it\\'s"
        assert _quote('a\\b') == 'a\\\\b'

    def test_close_closes_session(self, drive, session):
        drive.close()
        session.close.assert_called_once()


def html_page():
    """A 200 response from something that is not the Drive API."""
    page = response()
    page.json.side_effect = requests.exceptions.JSONDecodeError('Expecting value', '<html>', 0)
    return page


class TestNonJsonResponses:
    """Test bodies that are not Drive JSON surface as unavailability."""

    def test_list(self, drive, session):
        session.request.return_value = html_page()

        with pytest.raises(DestinationUnavailable, match='non-JSON'):
            drive.list()

    def test_download_lookup(self, drive, session, tmp_path):
        session.request.return_value = html_page()

        with pytest.raises(DestinationUnavailable):
            drive.download(NEW, str(tmp_path / 'out.zip'))
        assert not (tmp_path / 'out.zip').exists()

    def test_token_exchange(self, drive, session):
        session.post.return_value = html_page()

        assert drive.is_available() is False

    def test_unexpected_json_shape(self, drive, session):
        page = response()
        page.json.return_value = ['not', 'an', 'object']
        session.request.return_value = page

        with pytest.raises(DestinationUnavailable, match='unexpected'):
            drive.list()

    def test_retention_sweep_is_skipped(self, drive, session):
        session.request.return_value = html_page()
        policy = RetentionPolicy(enabled=True, keep_days=30, keep_count=10, min_backups=5)

        result = apply_retention_policy(drive, policy)

        assert result['deleted'] == []
        assert 'non-JSON' in result['error']
