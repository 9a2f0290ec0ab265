import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from . import Destination, sort_newest_first
from ..archive import is_valid_archive_filename
from ..config import DestinationConfig
from ..errors import DestinationUnavailable, NotFound

TOKEN_URL = 'https://oauth2.googleapis.com/token'
FILES_URL = 'https://www.googleapis.com/drive/v3/files'
UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files?uploadType=resumable'

ZIP_MIME_TYPE = 'application/zip'
REQUEST_TIMEOUT = 60
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
# Resumable upload chunks must be a multiple of 256 KiB
UPLOAD_CHUNK_SIZE = 32 * 256 * 1024
RESUME_INCOMPLETE = 308

RANGE_RE = re.compile(r'bytes=0-(\d+)')


def _quote(value: str) -> str:
    """Escape a value for a Drive query string literal."""
    return value.replace('\\', '\\\\').replace("'", "\\'")


class GoogleDriveDestination(Destination):
    """
    Archives stored in a Google Drive folder.

    Drive has no paths, so every call resolves the filename to a file id
    with a name-and-folder query. The access token comes from a refresh
    token exchange and is cached on the instance only.
    """

    name = 'google_drive'

    def __init__(self, config: DestinationConfig, session: Optional[requests.Session] = None):
        self.client_id = config.get('client_id')
        self.client_secret = config.get('client_secret')
        self.refresh_token = config.get('refresh_token')
        self.folder_id = config.get('folder_id')
        self.session = session or requests.Session()
        self._access_token = None

    def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token

        if not (self.client_id and self.client_secret and self.refresh_token):
            raise DestinationUnavailable("Google Drive credentials are not configured", destination=self.name)

        try:
            response = self.session.post(TOKEN_URL, data={
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'refresh_token': self.refresh_token,
                'grant_type': 'refresh_token',
            }, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise DestinationUnavailable(f"Google Drive token request failed: {e}", destination=self.name)

        if not response.ok:
            raise DestinationUnavailable(
                f"Failed to get Google Drive access token ({response.status_code}): {response.text}",
                destination=self.name,
            )

        token = self._json(response, 'token request').get('access_token')
        if not token:
            raise DestinationUnavailable("Google Drive token response has no access_token", destination=self.name)

        self._access_token = token
        return token

    def _request(self, method: str, url: str, action: str, filename: Optional[str] = None, **kwargs):
        headers = kwargs.pop('headers', {})
        headers['Authorization'] = f"Bearer {self._get_access_token()}"

        try:
            response = self.session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise DestinationUnavailable(f"Google Drive {action} failed: {e}", destination=self.name)

        if response.status_code == 404 and filename:
            raise NotFound(f"Backup not found on Google Drive: {filename}", destination=self.name)
        if not response.ok:
            raise DestinationUnavailable(
                f"Google Drive {action} failed ({response.status_code}): {response.text[:500]}",
                destination=self.name,
            )
        return response

    def _json(self, response, action: str) -> Dict[str, Any]:
        """Decode a Drive JSON body; anything else means the API was not reached."""
        try:
            data = response.json()
        except ValueError as e:
            raise DestinationUnavailable(
                f"Google Drive {action} returned a non-JSON response: {e}", destination=self.name
            )
        if not isinstance(data, dict):
            raise DestinationUnavailable(
                f"Google Drive {action} returned an unexpected response", destination=self.name
            )
        return data

    def _query(self, extra: Optional[str] = None) -> str:
        clauses = [f"mimeType='{ZIP_MIME_TYPE}'", 'trashed=false']
        if self.folder_id:
            clauses.append(f"'{_quote(self.folder_id)}' in parents")
        if extra:
            clauses.append(extra)
        return ' and '.join(clauses)

    def find_file_id(self, filename: str) -> Optional[str]:
        response = self._request('GET', FILES_URL, 'lookup', params={
            'q': self._query(f"name='{_quote(filename)}'"),
            'fields': 'files(id)',
            'pageSize': 1,
        })
        files = self._json(response, 'lookup').get('files', [])
        return files[0]['id'] if files else None

    def upload(self, local_path: str, filename: str) -> Dict[str, Any]:
        """
        Upload with a resumable session, sending the archive in
        UPLOAD_CHUNK_SIZE pieces so memory use does not grow with its size.
        """
        metadata = {'name': filename, 'mimeType': ZIP_MIME_TYPE}
        if self.folder_id:
            metadata['parents'] = [self.folder_id]

        size = os.path.getsize(local_path)
        response = self._request('POST', UPLOAD_URL, 'upload', json=metadata, headers={
            'X-Upload-Content-Type': ZIP_MIME_TYPE,
            'X-Upload-Content-Length': str(size),
        })
        session_url = response.headers.get('Location')
        if not session_url:
            raise DestinationUnavailable("Google Drive did not return an upload session", destination=self.name)

        data = self._send_chunks(session_url, local_path, size)

        return {
            'success': True,
            'filename': filename,
            'size': size,
            'file_id': data.get('id'),
            'web_link': data.get('webViewLink'),
        }

    def _send_chunks(self, session_url: str, local_path: str, size: int) -> Dict[str, Any]:
        offset = 0
        with open(local_path, 'rb') as f:
            while True:
                f.seek(offset)
                chunk = f.read(UPLOAD_CHUNK_SIZE)
                if chunk:
                    content_range = f"bytes {offset}-{offset + len(chunk) - 1}/{size}"
                else:
                    content_range = f"bytes */{size}"

                response = self._request('PUT', session_url, 'upload', data=chunk,
                                         headers={'Content-Range': content_range}, allow_redirects=False)
                if response.status_code != RESUME_INCOMPLETE:
                    return self._json(response, 'upload')

                # Drive reports how much it has persisted; resume after that
                match = RANGE_RE.match(response.headers.get('Range', ''))
                persisted = int(match.group(1)) + 1 if match else 0
                if not chunk or persisted <= offset:
                    raise DestinationUnavailable(
                        f"Google Drive upload stalled at {persisted} of {size} bytes", destination=self.name
                    )
                offset = persisted

    def download(self, filename: str, local_path: str) -> Dict[str, Any]:
        file_id = self.find_file_id(filename)
        if not file_id:
            raise NotFound(f"Backup not found on Google Drive: {filename}", destination=self.name)

        response = self._request('GET', f"{FILES_URL}/{file_id}", 'download', filename,
                                 params={'alt': 'media'}, stream=True)
        try:
            with open(local_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
        except requests.RequestException as e:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise DestinationUnavailable(f"Google Drive download of {filename} failed: {e}", destination=self.name)
        finally:
            response.close()

        return {
            'success': True,
            'filename': filename,
            'local_path': local_path,
            'size': os.path.getsize(local_path),
        }

    def list(self) -> List[Dict[str, Any]]:
        entries = []
        page_token = None

        while True:
            params = {
                'q': self._query(),
                'fields': 'nextPageToken, files(id,name,size,modifiedTime)',
                'orderBy': 'modifiedTime desc',
            }
            if page_token:
                params['pageToken'] = page_token
            data = self._json(self._request('GET', FILES_URL, 'list', params=params), 'list')

            for item in data.get('files', []):
                if not is_valid_archive_filename(item.get('name', '')):
                    continue
                entries.append({
                    'filename': item['name'],
                    'file_id': item['id'],
                    'size': int(item.get('size') or 0),
                    'last_modified': _parse_time(item.get('modifiedTime')),
                })

            page_token = data.get('nextPageToken')
            if not page_token:
                break

        return sort_newest_first(entries)

    def delete(self, filename: str) -> bool:
        file_id = self.find_file_id(filename)
        if not file_id:
            return False
        try:
            self._request('DELETE', f"{FILES_URL}/{file_id}", 'delete', filename)
        except NotFound:
            return False
        return True

    def is_available(self) -> bool:
        try:
            self._get_access_token()
            return True
        except DestinationUnavailable:
            return False

    def close(self):
        self.session.close()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
