"""
Storage destinations for encrypted artifacts.

Supports:
- S3Storage: any S3-compatible endpoint (AWS, MinIO, Backblaze B2, Scaleway...)
- LocalStorage: a local directory (e.g. a NAS mount)

Both expose the same operations: put_file, download, list_objects, delete,
test_connection. Uploads always land under a temporary key first and are
moved to the final key only once their size has been confirmed, so a
partially uploaded artifact is never visible under its final name.
"""

import os
import uuid
import shutil
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Callable, List, Dict, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    BotoCoreError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

PARTIAL_MARKER = '.partial-'

_TRANSIENT_ERROR_CODES = {
    'RequestTimeout', 'RequestTimeoutException', 'SlowDown', 'Throttling',
    'ThrottlingException', 'InternalError', 'ServiceUnavailable', '500', '502', '503', '504'
}


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class StorageObjectNotFound(StorageError):
    """Raised when a requested key does not exist."""
    pass


class ArtifactExists(StorageError):
    """Raised when the final key is already taken; artifacts are never overwritten."""
    pass


@dataclass
class UploadConfirmation:
    """Proof that an artifact reached a destination under its final key."""
    destination: str
    key: str
    etag: str
    size_bytes: int


def is_transient_error(exc: BaseException) -> bool:
    """Whether an S3 error is worth retrying (network trouble, throttling, 5xx)."""
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get('Error', {})
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0) or 0
        return error.get('Code') in _TRANSIENT_ERROR_CODES or status >= 500
    return False


def _partial_key(key: str, run_id: Optional[str]) -> str:
    return f"{key}{PARTIAL_MARKER}{run_id or uuid.uuid4().hex}"


class S3Storage:
    """
    Handler for an S3-compatible bucket.

    Every remote call has connect/read timeouts and is retried on transient
    errors with bounded exponential backoff (tenacity). botocore's own retry
    loop is disabled so the attempt budget is exactly max_attempts.
    """

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        name: str = 'primary',
        connect_timeout: float = 10,
        read_timeout: float = 60,
        max_attempts: int = 5,
        backoff_multiplier: float = 1,
        backoff_max: float = 30,
        multipart_threshold: int = 100 * 1024 * 1024,
        part_size: int = 10 * 1024 * 1024
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket holding the artifacts
            access_key: Access key ID (None = default boto3 credential chain)
            secret_key: Secret access key
            region: Region name
            endpoint_url: Custom endpoint for non-AWS providers
            name: Destination name used in logs and confirmations
            connect_timeout: Seconds to establish a connection
            read_timeout: Seconds to wait for a response
            max_attempts: Total attempts per operation, including the first
            backoff_multiplier: Exponential backoff multiplier (seconds)
            backoff_max: Upper bound for a single backoff wait (seconds)
            multipart_threshold: Files larger than this use multipart upload
            part_size: Multipart chunk size
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.name = name
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={'max_attempts': 1, 'mode': 'standard'}
                )
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client for {name}: {e}")

    def __repr__(self):
        return f'<S3Storage {self.name} bucket={self.bucket_name} endpoint={self.endpoint_url or "aws"}>'

    def _call(self, fn: Callable, *args, **kwargs):
        """Run fn with retries on transient errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, min=0, max=self.backoff_max),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        return retrying(fn, *args, **kwargs)

    def _translate(self, action: str, key: str, e: Exception) -> StorageError:
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return StorageObjectNotFound(f"{self.name}: object not found: {key}")
            return StorageError(f"{self.name}: S3 {action} failed ({error_code}): {e}")
        return StorageError(f"{self.name}: S3 {action} failed: {e}")

    def put_file(self, local_path: str, key: str, run_id: Optional[str] = None,
                 cancellation_check: Optional[Callable] = None) -> UploadConfirmation:
        """
        Upload a file under key, going through a temporary key.

        Args:
            local_path: File to upload
            key: Final object key
            run_id: Used to name the temporary key
            cancellation_check: Called between chunks; raises to abort the upload

        Returns:
            UploadConfirmation with the final key and ETag

        Raises:
            ArtifactExists: If an object already exists under key
            StorageError: If the upload fails after retries
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        self._ensure_absent(key)

        file_size = os.path.getsize(local_path)
        temp_key = _partial_key(key, run_id)
        finalized = False

        try:
            if file_size > self.multipart_threshold:
                self._multipart_upload(local_path, temp_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._call(self._simple_upload, local_path, temp_key)

            head = self._call(self.s3_client.head_object, Bucket=self.bucket_name, Key=temp_key)
            if head['ContentLength'] != file_size:
                raise StorageError(
                    f"{self.name}: size mismatch after upload ({head['ContentLength']} != {file_size})"
                )

            if cancellation_check:
                cancellation_check()

            self._ensure_absent(key)
            self._call(
                self.s3_client.copy,
                {'Bucket': self.bucket_name, 'Key': temp_key},
                self.bucket_name,
                key
            )
            final = self._call(self.s3_client.head_object, Bucket=self.bucket_name, Key=key)
            finalized = True

            return UploadConfirmation(
                destination=self.name,
                key=key,
                etag=final.get('ETag', '').strip('"'),
                size_bytes=final['ContentLength']
            )

        except StorageError:
            raise
        except (ClientError, BotoCoreError) as e:
            raise self._translate('upload', key, e)
        finally:
            self._discard_temp(temp_key, finalized)

    def _ensure_absent(self, key: str):
        try:
            self._call(self.s3_client.head_object, Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error = self._translate('head', key, e)
            if isinstance(error, StorageObjectNotFound):
                return
            raise error
        except BotoCoreError as e:
            raise self._translate('head', key, e)
        raise ArtifactExists(f"{self.name}: refusing to overwrite existing object {key}")

    def _discard_temp(self, temp_key: str, finalized: bool):
        try:
            self._call(self.s3_client.delete_object, Bucket=self.bucket_name, Key=temp_key)
        except (ClientError, BotoCoreError) as e:
            level = logging.WARNING if finalized else logging.ERROR
            logger.log(level, f"{self.name}: failed to remove temporary object {temp_key}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload a large file in parts, aborting the upload on error or cancellation.
        """
        response = self._call(
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.part_size)
                    if not data:
                        break

                    response = self._call(
                        self.s3_client.upload_part,
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self._call(
                self.s3_client.complete_multipart_upload,
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.error(f"{self.name}: failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, key: str, local_path: str) -> str:
        """
        Download an object to local_path.

        Raises:
            StorageObjectNotFound: If the key does not exist
            StorageError: If the download fails after retries
        """
        try:
            self._call(self._download_once, key, local_path)
            return local_path
        except (ClientError, BotoCoreError) as e:
            raise self._translate('download', key, e)
        except OSError as e:
            raise StorageError(f"{self.name}: cannot write {local_path}: {e}")

    def _download_once(self, key: str, local_path: str):
        response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        try:
            with open(local_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(chunk_size=1024 * 1024):
                    f.write(chunk)
        except Exception:
            if os.path.exists(local_path):
                os.remove(local_path)
            raise

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self._call(self.s3_client.delete_object, Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate('delete', key, e)

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List finalized objects under prefix.

        Returns:
            List of dicts with 'Key', 'LastModified' and 'Size' keys. In-flight
            temporary upload keys are excluded.

        Raises:
            StorageError: If listing fails
        """
        try:
            return self._call(self._list_once, prefix)
        except (ClientError, BotoCoreError) as e:
            raise self._translate('list', prefix, e)

    def _list_once(self, prefix: str) -> List[Dict[str, Any]]:
        objects = []
        paginator = self.s3_client.get_paginator('list_objects_v2')

        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get('Contents', []):
                if PARTIAL_MARKER in obj['Key']:
                    continue
                objects.append({
                    'Key': obj['Key'],
                    'LastModified': obj['LastModified'],
                    'Size': obj['Size']
                })

        return objects

    def test_connection(self) -> bool:
        """
        Test bucket access.

        Raises:
            StorageError: If the bucket is missing or inaccessible
        """
        try:
            self._call(self.s3_client.head_bucket, Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for a local directory destination.

    Stores artifacts with the same key layout as S3:
    {base_path}/{tier}/{artifact name}
    """

    def __init__(self, base_path: str, name: str = 'local'):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for artifacts
            name: Destination name used in logs and confirmations
        """
        self.base_path = Path(base_path)
        self.name = name

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def __repr__(self):
        return f'<LocalStorage {self.name} path={self.base_path}>'

    def _path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        base = self.base_path.resolve()
        if base not in path.parents:
            raise StorageError(f"Key escapes storage directory: {key}")
        return path

    def put_file(self, local_path: str, key: str, run_id: Optional[str] = None,
                 cancellation_check: Optional[Callable] = None) -> UploadConfirmation:
        """
        Copy an artifact into the directory, then rename it into place.

        Raises:
            ArtifactExists: If a file already exists under key
            StorageError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        dest_path = self._path_for(key)
        if dest_path.exists():
            raise ArtifactExists(f"{self.name}: refusing to overwrite existing file {key}")
        temp_path = dest_path.with_name(dest_path.name + PARTIAL_MARKER + (run_id or uuid.uuid4().hex))

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            if cancellation_check:
                cancellation_check()
            shutil.copyfile(local_path, temp_path)
            if temp_path.stat().st_size != os.path.getsize(local_path):
                raise StorageError(f"{self.name}: size mismatch after copy")
            os.replace(temp_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")
        finally:
            if temp_path.exists():
                temp_path.unlink()

        return UploadConfirmation(
            destination=self.name,
            key=key,
            etag=_md5_file(dest_path),
            size_bytes=dest_path.stat().st_size
        )

    def download(self, key: str, local_path: str) -> str:
        """
        Copy an artifact out of the directory.

        Raises:
            StorageObjectNotFound: If the key does not exist
        """
        source = self._path_for(key)
        if not source.is_file():
            raise StorageObjectNotFound(f"{self.name}: object not found: {key}")
        try:
            shutil.copyfile(source, local_path)
        except OSError as e:
            raise StorageError(f"{self.name}: failed to read {key}: {e}")
        return local_path

    def delete(self, key: str):
        """
        Delete an artifact.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._path_for(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List finalized files whose key starts with prefix.

        Returns:
            List of dicts with 'Key', 'LastModified' and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            raise StorageError(f"Storage directory missing: {self.base_path}")

        try:
            files = []
            for file_path in self.base_path.rglob('*'):
                if not file_path.is_file() or PARTIAL_MARKER in file_path.name:
                    continue
                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue
                stat = file_path.stat()
                files.append({
                    'Key': key,
                    'LastModified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    'Size': stat.st_size
                })
            return files

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def test_connection(self) -> bool:
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Storage directory not writable: {self.base_path}")
        return True


def _md5_file(path) -> str:
    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()
