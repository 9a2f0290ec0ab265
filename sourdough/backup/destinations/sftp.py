import io
import os
import stat
import posixpath
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from . import Destination, sort_newest_first
from ..archive import is_valid_archive_filename
from ..config import DestinationConfig
from ..errors import DestinationUnavailable, NotFound

KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


class SFTPDestination(Destination):
    """
    Archives stored in a directory on an SFTP server.

    Authenticates with a password or a private key (file path or PEM text)
    plus optional passphrase. The SSH connection is opened on first use and
    kept until close().
    """

    name = 'sftp'

    def __init__(self, config: DestinationConfig):
        self.host = config.get('host')
        self.port = int(config.get('port', 22))
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key = config.get('private_key')
        self.passphrase = config.get('passphrase')
        self.path = (config.get('path') or '/backups').rstrip('/') or '/'

        self.ssh_client = None
        self.sftp_client = None

    def _load_private_key(self):
        """Parse PEM text into a paramiko key, trying each supported type."""
        last_error = None
        for key_class in KEY_CLASSES:
            try:
                return key_class.from_private_key(io.StringIO(self.private_key), password=self.passphrase)
            except paramiko.SSHException as e:
                last_error = e
        raise DestinationUnavailable(f"Unsupported or invalid SFTP private key: {last_error}", destination=self.name)

    def _connect(self):
        """
        Establish the SSH connection and SFTP session.

        Raises:
            DestinationUnavailable: If connection or authentication fails
        """
        if self.sftp_client is not None:
            return self.sftp_client

        if not self.host or not self.username:
            raise DestinationUnavailable("SFTP host and username must be configured", destination=self.name)

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.private_key:
            if '-----BEGIN' in self.private_key:
                connect_kwargs['pkey'] = self._load_private_key()
            else:
                key_path = Path(self.private_key).expanduser()
                if not key_path.exists():
                    raise DestinationUnavailable(f"Private key not found: {self.private_key}", destination=self.name)
                connect_kwargs['key_filename'] = str(key_path)
                if self.passphrase:
                    connect_kwargs['passphrase'] = self.passphrase
        if self.password:
            connect_kwargs['password'] = self.password
        if 'password' not in connect_kwargs and 'pkey' not in connect_kwargs and 'key_filename' not in connect_kwargs:
            raise DestinationUnavailable("Either password or private_key must be provided", destination=self.name)

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self.close()
            raise DestinationUnavailable(f"SFTP authentication failed: {e}", destination=self.name)
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise DestinationUnavailable(f"Failed to connect to {self.host}: {e}", destination=self.name)

        return self.sftp_client

    def close(self):
        if self.sftp_client is not None:
            self.sftp_client.close()
            self.sftp_client = None
        if self.ssh_client is not None:
            self.ssh_client.close()
            self.ssh_client = None

    def remote_path(self, filename: str) -> str:
        return posixpath.join(self.path, filename)

    def _ensure_directory(self, sftp):
        """Create the remote backup directory and its parents."""
        current = '/' if self.path.startswith('/') else ''
        for part in self.path.strip('/').split('/'):
            if not part:
                continue
            current = posixpath.join(current, part) if current else part
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def upload(self, local_path: str, filename: str) -> Dict[str, Any]:
        sftp = self._connect()
        remote = self.remote_path(filename)
        staging = f"{remote}.part"

        try:
            self._ensure_directory(sftp)
            sftp.put(local_path, staging)
            sftp.posix_rename(staging, remote)
        except (IOError, paramiko.SSHException) as e:
            try:
                sftp.remove(staging)
            except (IOError, paramiko.SSHException):
                pass
            raise DestinationUnavailable(f"SFTP upload of {filename} failed: {e}", destination=self.name)

        return {
            'success': True,
            'filename': filename,
            'size': os.path.getsize(local_path),
            'remote_path': remote,
            'host': self.host,
        }

    def download(self, filename: str, local_path: str) -> Dict[str, Any]:
        sftp = self._connect()
        remote = self.remote_path(filename)

        try:
            sftp.stat(remote)
        except FileNotFoundError:
            raise NotFound(f"Backup not found on SFTP: {filename}", destination=self.name)
        except (IOError, paramiko.SSHException) as e:
            raise DestinationUnavailable(f"SFTP stat of {filename} failed: {e}", destination=self.name)

        try:
            sftp.get(remote, local_path)
        except (IOError, paramiko.SSHException) as e:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise DestinationUnavailable(f"SFTP download of {filename} failed: {e}", destination=self.name)

        return {
            'success': True,
            'filename': filename,
            'local_path': local_path,
            'size': os.path.getsize(local_path),
        }

    def list(self) -> List[Dict[str, Any]]:
        sftp = self._connect()
        try:
            items = sftp.listdir_attr(self.path)
        except FileNotFoundError:
            return []
        except (IOError, paramiko.SSHException) as e:
            raise DestinationUnavailable(f"SFTP list failed: {e}", destination=self.name)

        entries = []
        for item in items:
            if stat.S_ISDIR(item.st_mode or 0) or not is_valid_archive_filename(item.filename):
                continue
            entries.append({
                'filename': item.filename,
                'size': item.st_size,
                'last_modified': datetime.fromtimestamp(item.st_mtime or 0, tz=timezone.utc),
            })
        return sort_newest_first(entries)

    def delete(self, filename: str) -> bool:
        sftp = self._connect()
        try:
            sftp.remove(self.remote_path(filename))
        except FileNotFoundError:
            return False
        except (IOError, paramiko.SSHException) as e:
            raise DestinationUnavailable(f"SFTP delete of {filename} failed: {e}", destination=self.name)
        return True

    def is_available(self) -> bool:
        try:
            self._connect().listdir(self.path)
            return True
        except FileNotFoundError:
            # Connected; the directory is created on first upload
            return True
        except (DestinationUnavailable, IOError, paramiko.SSHException):
            return False
