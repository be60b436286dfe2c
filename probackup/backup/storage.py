"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store in a local directory (LOCAL listings)
- S3Storage: Store in an S3 bucket via boto3 (REMOTE listings)
- GCSStorage: Store in a Google Cloud Storage bucket (REMOTE listings)
- SFTPStorage: Store on a remote host via paramiko (REMOTE listings)

All backends share the same contract: store, retrieve, delete, list, exists.
Keys are relative, '/'-separated paths. Failures are logged and reported as
False or an empty list; nothing raises out of the public methods.
"""

import logging
import os
import posixpath
import re
import shutil
import stat
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.cloud import storage as gcs
from paramiko import AutoAddPolicy, SSHClient

from .compression import strip_archive_extension
from .models import LocalListing, RemoteListing, make_backup_id


logger = logging.getLogger(__name__)

Listing = Union[LocalListing, RemoteListing]

_TIMESTAMP_SUFFIX = re.compile(r'_\d{8}_\d{6}$')
_DUMP_EXTENSIONS = ('.sql', '.dump', '.sqlite', '.bak', '.tar')

# Files larger than this are uploaded to S3 in parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


def name_from_filename(filename: str) -> str:
    """Recover the logical backup name from an artifact filename."""
    stem = strip_archive_extension(filename)
    for extension in _DUMP_EXTENSIONS:
        if stem.lower().endswith(extension):
            stem = stem[:-len(extension)]
            break
    return _TIMESTAMP_SUFFIX.sub('', stem)


class StorageBackend(ABC):
    """Durable blob store keyed by relative path."""

    name = 'storage'

    @abstractmethod
    def store(self, local_path: str, key: str) -> bool:
        """Upload local_path under key."""

    @abstractmethod
    def retrieve(self, key: str, local_path: str) -> bool:
        """Download key into local_path."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Deleting a missing key succeeds."""

    @abstractmethod
    def list(self, prefix: str = '') -> List[Listing]:
        """List entries whose key starts with prefix."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether key exists."""


class LocalStorage(StorageBackend):
    """
    Backend for the local filesystem.

    Stores artifacts under {base_path}/{key}. Listings carry the backup type
    (first key segment) and the logical name, so they use the LOCAL shape.
    """

    def __init__(self, base_path: str, name: str = 'local'):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
            name: Backend name used in catalog entries
        """
        self.base_path = Path(base_path)
        self.name = name

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _resolve(self, key: str) -> Path:
        full_path = (self.base_path / key).resolve()
        base = self.base_path.resolve()
        if full_path != base and base not in full_path.parents:
            raise StorageError(f"Key escapes storage directory: {key}")
        return full_path

    def get_full_path(self, key: str) -> str:
        """Get full filesystem path from a key."""
        return str(self._resolve(key))

    def key_for(self, path: str) -> Optional[str]:
        """Return the key of a path inside base_path, or None if it lies outside."""
        try:
            return Path(path).resolve().relative_to(self.base_path.resolve()).as_posix()
        except ValueError:
            return None

    def store(self, local_path: str, key: str) -> bool:
        try:
            dest_path = self._resolve(key)
            source = Path(local_path)
            if not source.exists():
                raise StorageError(f"Source file not found: {local_path}")
            if source.resolve() == dest_path:
                return True

            dest_path.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, dest_path, dirs_exist_ok=True)
            else:
                shutil.copy2(source, dest_path)
            logger.info(f"Stored {local_path} as {key} in local storage")
            return True
        except Exception as e:
            logger.error(f"Failed to store {local_path} locally: {e}")
            return False

    def retrieve(self, key: str, local_path: str) -> bool:
        try:
            source = self._resolve(key)
            if not source.exists():
                raise StorageError(f"Key not found: {key}")
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, local_path, dirs_exist_ok=True)
            else:
                shutil.copy2(source, local_path)
            return True
        except Exception as e:
            logger.error(f"Failed to retrieve {key} from local storage: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            full_path = self._resolve(key)
            if full_path.is_dir():
                shutil.rmtree(full_path)
            elif full_path.exists():
                full_path.unlink()
            return True
        except Exception as e:
            logger.error(f"Failed to delete local file {key}: {e}")
            return False

    def exists(self, key: str) -> bool:
        try:
            return self._resolve(key).exists()
        except StorageError:
            return False

    def list(self, prefix: str = '') -> List[LocalListing]:
        try:
            root = self._resolve(prefix) if prefix else self.base_path.resolve()
        except StorageError as e:
            logger.error(f"Failed to list local files: {e}")
            return []

        if not root.exists():
            return []

        entries = []
        try:
            for file_path in root.rglob('*'):
                if not file_path.is_file():
                    continue
                relative = file_path.relative_to(self.base_path.resolve()).as_posix()
                stat_result = file_path.stat()
                entries.append(LocalListing(
                    id=make_backup_id(self.name, relative),
                    type=relative.split('/', 1)[0] if '/' in relative else 'custom',
                    name=name_from_filename(file_path.name),
                    file_path=str(file_path),
                    file_size=stat_result.st_size,
                    created_at=datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc),
                    storage=self.name,
                    path=relative,
                ))
        except Exception as e:
            logger.error(f"Failed to list local files: {e}")
            return []

        return entries


class S3Storage(StorageBackend):
    """
    Backend for AWS S3 (or an S3-compatible endpoint).

    Objects are stored under {prefix}/{key}.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        prefix: str = '',
        endpoint_url: Optional[str] = None,
        name: str = 's3',
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            prefix: Key prefix inside the bucket
            endpoint_url: Custom endpoint for S3-compatible services
            name: Backend name used in catalog entries
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')
        self.name = name

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _object_key(self, key: str) -> str:
        key = key.lstrip('/')
        return f"{self.prefix}/{key}" if self.prefix else key

    def _strip_prefix(self, object_key: str) -> str:
        if self.prefix and object_key.startswith(self.prefix + '/'):
            return object_key[len(self.prefix) + 1:]
        return object_key

    def store(self, local_path: str, key: str) -> bool:
        if not os.path.isfile(local_path):
            logger.error(f"Local file not found for S3 upload: {local_path}")
            return False

        object_key = self._object_key(key)
        try:
            file_size = os.path.getsize(local_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, object_key)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=object_key, Body=f)
            logger.info(f"Uploaded {local_path} to s3://{self.bucket_name}/{object_key}")
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            logger.error(f"S3 upload failed: {e}")
        return False

    def _multipart_upload(self, local_path: str, object_key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=object_key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break
                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=object_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name, Key=object_key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def retrieve(self, key: str, local_path: str) -> bool:
        object_key = self._object_key(key)
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket_name, object_key, local_path)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 download of {object_key} failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            logger.error(f"S3 download of {object_key} failed: {e}")
        return False

    def delete(self, key: str) -> bool:
        object_key = self._object_key(key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=object_key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey'):
                return True
            logger.error(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            logger.error(f"S3 delete failed: {e}")
        return False

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._object_key(key))
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code not in ('404', 'NoSuchKey', 'NotFound'):
                logger.error(f"S3 head_object failed ({error_code}): {e}")
            return False
        except BotoCoreError as e:
            logger.error(f"S3 head_object failed: {e}")
            return False

    def list(self, prefix: str = '') -> List[RemoteListing]:
        try:
            entries = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._object_key(prefix)):
                for obj in page.get('Contents', []):
                    entries.append(RemoteListing(
                        path=self._strip_prefix(obj['Key']),
                        size=obj['Size'],
                        modified=obj['LastModified'],
                    ))

            return entries

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            logger.error(f"Failed to list S3 objects: {e}")
        return []


class GCSStorage(StorageBackend):
    """
    Backend for Google Cloud Storage.

    Blobs are stored under {prefix}/{key}. Without a service account file
    the client falls back to Application Default Credentials.
    """

    def __init__(
        self,
        bucket_name: str,
        project_id: Optional[str] = None,
        credentials_file: Optional[str] = None,
        prefix: str = '',
        name: str = 'gcs',
    ):
        """
        Initialize Google Cloud Storage handler.

        Args:
            bucket_name: GCS bucket name
            project_id: GCP project (default: inferred from credentials)
            credentials_file: Path to a service account JSON file
            prefix: Blob name prefix inside the bucket
            name: Backend name used in catalog entries
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.name = name

        try:
            if credentials_file:
                self.client = gcs.Client.from_service_account_json(credentials_file, project=project_id)
            else:
                self.client = gcs.Client(project=project_id)
            self.bucket = self.client.bucket(bucket_name)
        except Exception as e:
            raise StorageError(f"Failed to initialize GCS client: {e}")

    def _blob_name(self, key: str) -> str:
        key = key.lstrip('/')
        return f"{self.prefix}/{key}" if self.prefix else key

    def _strip_prefix(self, blob_name: str) -> str:
        if self.prefix and blob_name.startswith(self.prefix + '/'):
            return blob_name[len(self.prefix) + 1:]
        return blob_name

    def store(self, local_path: str, key: str) -> bool:
        if not os.path.isfile(local_path):
            logger.error(f"Local file not found for GCS upload: {local_path}")
            return False

        blob_name = self._blob_name(key)
        try:
            self.bucket.blob(blob_name).upload_from_filename(local_path)
            logger.info(f"Uploaded {local_path} to gs://{self.bucket_name}/{blob_name}")
            return True
        except (GoogleAPIError, OSError) as e:
            logger.error(f"GCS upload of {blob_name} failed: {e}")
        return False

    def retrieve(self, key: str, local_path: str) -> bool:
        blob_name = self._blob_name(key)
        try:
            blob = self.bucket.blob(blob_name)
            if not blob.exists():
                logger.error(f"GCS object not found: gs://{self.bucket_name}/{blob_name}")
                return False
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            blob.download_to_filename(local_path)
            return True
        except (GoogleAPIError, OSError) as e:
            logger.error(f"GCS download of {blob_name} failed: {e}")
        return False

    def delete(self, key: str) -> bool:
        blob_name = self._blob_name(key)
        try:
            self.bucket.blob(blob_name).delete()
            return True
        except NotFound:
            logger.warning(f"GCS object already gone: gs://{self.bucket_name}/{blob_name}")
            return True
        except GoogleAPIError as e:
            logger.error(f"GCS delete of {blob_name} failed: {e}")
        return False

    def exists(self, key: str) -> bool:
        try:
            return bool(self.bucket.blob(self._blob_name(key)).exists())
        except GoogleAPIError as e:
            logger.error(f"GCS exists check failed: {e}")
            return False

    def list(self, prefix: str = '') -> List[RemoteListing]:
        try:
            return [
                RemoteListing(
                    path=self._strip_prefix(blob.name),
                    size=blob.size or 0,
                    modified=blob.updated,
                )
                for blob in self.client.list_blobs(self.bucket_name, prefix=self._blob_name(prefix) or None)
            ]
        except GoogleAPIError as e:
            logger.error(f"Failed to list GCS objects: {e}")
        return []


@dataclass(frozen=True)
class SFTPConfig:
    """Configuration for an SFTP destination."""

    host: str
    username: str
    port: int = 22
    base_path: str = '/backups'
    password: Optional[str] = None
    private_key: Optional[str] = None
    timeout: int = 30


class SFTPStorage(StorageBackend):
    """
    Backend for a remote host reached over SSH/SFTP.

    Artifacts are stored under {base_path}/{key} on the remote host. A new
    SSH connection is opened per operation.
    """

    def __init__(self, config: SFTPConfig, name: str = 'sftp'):
        self.config = config
        self.name = name

    @contextmanager
    def _connect(self):
        """Yield a connected SFTP client, closing the SSH session afterwards."""
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.config.host,
            'port': self.config.port,
            'username': self.config.username,
            'timeout': self.config.timeout
        }
        if self.config.password:
            connect_kwargs['password'] = self.config.password
        elif self.config.private_key:
            connect_kwargs['key_filename'] = str(Path(self.config.private_key).expanduser())

        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise StorageError(f"Failed to connect to {self.config.host}: {e}")

        try:
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    def _remote_path(self, key: str) -> str:
        return posixpath.join(self.config.base_path.rstrip('/') or '/', key.lstrip('/'))

    def _ensure_dir(self, sftp, path: str):
        parts = [p for p in path.strip('/').split('/') if p]
        current = ''
        for part in parts:
            current = f"{current}/{part}"
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def store(self, local_path: str, key: str) -> bool:
        if not os.path.isfile(local_path):
            logger.error(f"Local file not found for SFTP upload: {local_path}")
            return False

        remote_path = self._remote_path(key)
        try:
            with self._connect() as sftp:
                self._ensure_dir(sftp, posixpath.dirname(remote_path))
                sftp.put(local_path, remote_path)
            logger.info(f"Uploaded {local_path} to sftp://{self.config.host}{remote_path}")
            return True
        except (StorageError, OSError, paramiko.SSHException) as e:
            logger.error(f"SFTP upload of {key} failed: {e}")
            return False

    def retrieve(self, key: str, local_path: str) -> bool:
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as sftp:
                sftp.get(self._remote_path(key), local_path)
            return True
        except (StorageError, OSError, paramiko.SSHException) as e:
            logger.error(f"SFTP download of {key} failed: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            with self._connect() as sftp:
                try:
                    sftp.remove(self._remote_path(key))
                except FileNotFoundError:
                    pass
            return True
        except (StorageError, OSError, paramiko.SSHException) as e:
            logger.error(f"SFTP delete of {key} failed: {e}")
            return False

    def exists(self, key: str) -> bool:
        try:
            with self._connect() as sftp:
                sftp.stat(self._remote_path(key))
            return True
        except FileNotFoundError:
            return False
        except (StorageError, OSError, paramiko.SSHException) as e:
            logger.error(f"SFTP stat of {key} failed: {e}")
            return False

    def list(self, prefix: str = '') -> List[RemoteListing]:
        base = self.config.base_path.rstrip('/')
        entries = []
        try:
            with self._connect() as sftp:
                stack = [base or '/']
                while stack:
                    current = stack.pop()
                    try:
                        items = sftp.listdir_attr(current)
                    except FileNotFoundError:
                        continue

                    for item in items:
                        remote_path = f"{current.rstrip('/')}/{item.filename}"
                        if stat.S_ISDIR(item.st_mode):
                            stack.append(remote_path)
                            continue

                        key = remote_path[len(base) + 1:] if remote_path.startswith(base + '/') else remote_path
                        if prefix and not key.startswith(prefix):
                            continue
                        entries.append(RemoteListing(
                            path=key,
                            size=item.st_size,
                            modified=datetime.fromtimestamp(item.st_mtime, tz=timezone.utc),
                        ))
        except (StorageError, OSError, paramiko.SSHException) as e:
            logger.error(f"SFTP list failed: {e}")
            return []

        return entries
