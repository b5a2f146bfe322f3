"""
Remote storage for backup archives.

Archives are stored by key (the compressor's filename for the backup).
Supports:
- S3Storage: AWS S3 or any S3-compatible endpoint
- LocalStorage: A directory on a mounted filesystem
"""

import os
import tempfile
from pathlib import Path
from typing import Optional, BinaryIO, Callable, List
import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .errors import StorageError, ObjectNotFoundError


# Streams above this size use multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

COPY_BUFFER_SIZE = 1024 * 1024


class RemoteStorage:
    """Key/blob store the orchestrator uploads archives to."""

    def has(self, key: str) -> bool:
        raise NotImplementedError

    def write_stream(self, key: str, source: BinaryIO, cancellation_check: Optional[Callable] = None):
        raise NotImplementedError

    def read_stream(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def list_keys(self) -> List[str]:
        raise NotImplementedError


def _stream_size(source: BinaryIO) -> Optional[int]:
    """Remaining bytes in a seekable stream, or None."""
    try:
        position = source.tell()
        source.seek(0, os.SEEK_END)
        size = source.tell() - position
        source.seek(position)
        return size
    except (AttributeError, OSError, ValueError):
        return None


class S3Storage(RemoteStorage):
    """
    Handler for storing backup archives in S3.

    Objects are stored as {prefix}{key}.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        prefix: str = '',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain if None)
            secret_key: AWS secret access key
            prefix: Key prefix inside the bucket, e.g. 'backups/'
            endpoint_url: Custom endpoint for S3-compatible services
        """
        if not bucket_name:
            raise StorageError("S3 bucket is not configured. Set the S3_BUCKET environment variable.")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix

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
        return f"{self.prefix}{key}"

    def has(self, key: str) -> bool:
        """
        Check whether an object exists.

        Raises:
            StorageError: On any error other than a missing object
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._object_key(key))
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def write_stream(self, key: str, source: BinaryIO, cancellation_check: Optional[Callable] = None):
        """
        Upload a stream to S3.

        Args:
            key: Object key (without prefix)
            source: Binary file-like object positioned at the start of the data
            cancellation_check: Optional function to call periodically to check if operation should be cancelled

        Raises:
            StorageError: If upload fails
        """
        object_key = self._object_key(key)

        try:
            size = _stream_size(source)

            # Use multipart upload for large or unsized streams
            if size is None or size > MULTIPART_THRESHOLD:
                self._multipart_upload(source, object_key, cancellation_check)
            else:
                # Check for cancellation before simple upload
                if cancellation_check:
                    cancellation_check()
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    Body=source
                )

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _multipart_upload(self, source: BinaryIO, object_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload a stream using multipart upload with cancellation support.

        Args:
            source: Binary stream
            object_key: Full S3 object key
            cancellation_check: Optional function to call between chunks to check for cancellation
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=object_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1

            while True:
                # Check for cancellation before each chunk
                if cancellation_check:
                    cancellation_check()

                data = source.read(MULTIPART_CHUNK_SIZE)
                if not data and part_number > 1:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1

                if not data:
                    break

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def read_stream(self, key: str) -> BinaryIO:
        """
        Open an object for streaming download.

        Returns:
            botocore StreamingBody (file-like, supports read())

        Raises:
            ObjectNotFoundError: If the key does not exist
            StorageError: If the download cannot be started
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._object_key(key))
            return response['Body']
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                raise ObjectNotFoundError(key)
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._object_key(key)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

    def list_keys(self) -> List[str]:
        """
        List all keys under the configured prefix (prefix stripped).

        Raises:
            StorageError: If listing fails
        """
        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'][len(self.prefix):])

            return keys

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")


class LocalStorage(RemoteStorage):
    """
    Handler for storing backup archives in a local (or mounted) directory.

    Objects are stored as {base_path}/{key}.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for stored archives
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _full_path(self, key: str) -> Path:
        full_path = (self.base_path / key).resolve()
        base = self.base_path.resolve()

        if base not in full_path.parents:
            raise StorageError(f"Invalid storage key: {key}")

        return full_path

    def has(self, key: str) -> bool:
        return self._full_path(key).is_file()

    def write_stream(self, key: str, source: BinaryIO, cancellation_check: Optional[Callable] = None):
        """
        Copy a stream into storage.

        Data is written to a temporary file first and renamed into place,
        so a failed or cancelled write leaves no partial object.

        Raises:
            StorageError: If storage fails
        """
        dest_path = self._full_path(key)
        temp_path = None

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=dest_path.parent, prefix='.upload-')

            with os.fdopen(fd, 'wb') as target:
                while True:
                    if cancellation_check:
                        cancellation_check()

                    chunk = source.read(COPY_BUFFER_SIZE)
                    if not chunk:
                        break
                    target.write(chunk)

            os.replace(temp_path, dest_path)
            temp_path = None

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store {key} locally: {e}")
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    def read_stream(self, key: str) -> BinaryIO:
        """
        Open a stored object for reading.

        Raises:
            ObjectNotFoundError: If the key does not exist
        """
        full_path = self._full_path(key)

        if not full_path.is_file():
            raise ObjectNotFoundError(key)

        try:
            return open(full_path, 'rb')
        except OSError as e:
            raise StorageError(f"Failed to open {key}: {e}")

    def delete(self, key: str):
        """
        Delete a stored object.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._full_path(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_keys(self) -> List[str]:
        """
        List all stored keys (relative to base_path).

        Raises:
            StorageError: If listing fails
        """
        try:
            return sorted(
                file_path.relative_to(self.base_path).as_posix()
                for file_path in self.base_path.rglob('*')
                if file_path.is_file() and not file_path.name.startswith('.upload-')
            )
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")


def create_storage(config) -> RemoteStorage:
    """
    Factory function to create the configured storage backend.

    Args:
        config: Mapping with FILESYSTEM_TYPE and backend settings (Flask config)

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ValueError: If FILESYSTEM_TYPE is invalid
    """
    filesystem_type = config.get('FILESYSTEM_TYPE')

    if filesystem_type == 's3':
        return S3Storage(
            bucket_name=config.get('S3_BUCKET'),
            region=config.get('S3_REGION', 'us-east-1'),
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            prefix=config.get('S3_PREFIX', ''),
            endpoint_url=config.get('S3_ENDPOINT_URL')
        )
    elif filesystem_type == 'local':
        return LocalStorage(config.get('LOCAL_BACKUP_DIR'))
    else:
        raise ValueError(f"Invalid filesystem type: {filesystem_type}")


def copy_stream_to_file(source: BinaryIO, dest_path: str, cancellation_check: Optional[Callable] = None):
    """
    Stream a download into a local file, closing the source afterwards.

    Raises:
        StorageError: If reading the source or writing the file fails
    """
    try:
        with open(dest_path, 'wb') as target:
            while True:
                if cancellation_check:
                    cancellation_check()

                chunk = source.read(COPY_BUFFER_SIZE)
                if not chunk:
                    break
                target.write(chunk)
    except (OSError, BotoCoreError) as e:
        raise StorageError(f"Failed to download to {dest_path}: {e}")
    finally:
        source.close()
