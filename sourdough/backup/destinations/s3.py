import os
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from . import Destination, sort_newest_first
from ..archive import is_valid_archive_filename
from ..config import DestinationConfig
from ..errors import DestinationUnavailable, NotFound

# Use multipart upload above this size
MULTIPART_THRESHOLD = 100 * 1024 * 1024
CHUNK_SIZE = 10 * 1024 * 1024

NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


class S3Destination(Destination):
    """
    Archives stored in an S3-compatible bucket.

    Keys are {path}/{filename}. The boto3 client is created on first use so
    that building the destination never touches the network.
    """

    name = 's3'

    def __init__(self, config: DestinationConfig):
        self.bucket_name = config.get('bucket')
        self.prefix = (config.get('path') or '').strip('/')
        self.region = config.get('region', 'us-east-1')
        self.endpoint = config.get('endpoint')
        self._access_key = config.get('access_key_id')
        self._secret_key = config.get('secret_access_key')
        self._client = None

    @property
    def s3_client(self):
        if self._client is None:
            if not self.bucket_name:
                raise DestinationUnavailable("S3 bucket is not configured", destination=self.name)
            try:
                self._client = boto3.client(
                    's3',
                    aws_access_key_id=self._access_key,
                    aws_secret_access_key=self._secret_key,
                    region_name=self.region,
                    endpoint_url=self.endpoint or None,
                )
            except (BotoCoreError, ValueError) as e:
                raise DestinationUnavailable(f"Failed to initialize S3 client: {e}", destination=self.name)
        return self._client

    def key_for(self, filename: str) -> str:
        return f"{self.prefix}/{filename}" if self.prefix else filename

    def _error(self, action: str, e: Exception, filename: Optional[str] = None):
        if isinstance(e, ClientError):
            code = e.response.get('Error', {}).get('Code', 'Unknown')
            if code in NOT_FOUND_CODES and filename:
                return NotFound(f"Backup not found in S3: {filename}", destination=self.name)
            return DestinationUnavailable(f"S3 {action} failed ({code}): {e}", destination=self.name)
        return DestinationUnavailable(f"S3 {action} failed: {e}", destination=self.name)

    def upload(self, local_path: str, filename: str) -> Dict[str, Any]:
        s3_key = self.key_for(filename)
        file_size = os.path.getsize(local_path)

        try:
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)
        except (ClientError, BotoCoreError) as e:
            raise self._error('upload', e)

        return {
            'success': True,
            'filename': filename,
            'size': file_size,
            'remote_path': s3_key,
            'bucket': self.bucket_name,
        }

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=f)

    def _multipart_upload(self, local_path: str, s3_key: str):
        """Upload in CHUNK_SIZE parts; aborts the upload on any error."""
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']

        parts = []
        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id)
            except (ClientError, BotoCoreError):
                pass
            raise

    def download(self, filename: str, local_path: str) -> Dict[str, Any]:
        try:
            self.s3_client.download_file(self.bucket_name, self.key_for(filename), local_path)
        except (ClientError, BotoCoreError) as e:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise self._error('download', e, filename)

        return {
            'success': True,
            'filename': filename,
            'local_path': local_path,
            'size': os.path.getsize(local_path),
        }

    def list(self) -> List[Dict[str, Any]]:
        prefix = f"{self.prefix}/" if self.prefix else ''
        entries = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    # Only direct children of the prefix
                    if '/' in name or not is_valid_archive_filename(name):
                        continue
                    entries.append({
                        'filename': name,
                        'size': obj['Size'],
                        'last_modified': obj['LastModified'],
                    })
        except (ClientError, BotoCoreError) as e:
            raise self._error('list', e)

        return sort_newest_first(entries)

    def delete(self, filename: str) -> bool:
        s3_key = self.key_for(filename)
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            error = self._error('delete', e, filename)
            if isinstance(error, NotFound):
                return False
            raise error
        except BotoCoreError as e:
            raise self._error('delete', e)

        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=s3_key)
        except (ClientError, BotoCoreError) as e:
            raise self._error('delete', e)
        return True

    def is_available(self) -> bool:
        try:
            self.s3_client.list_objects_v2(Bucket=self.bucket_name, Prefix=self.prefix, MaxKeys=1)
            return True
        except (ClientError, BotoCoreError, DestinationUnavailable):
            return False
