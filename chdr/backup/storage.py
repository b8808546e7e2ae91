"""
Storage tiers for backup archives.

Supports:
- S3Storage: Object storage on AWS S3 or any S3-compatible endpoint
- LocalStorage: Local or mounted backup directory
"""

import os
import shutil
from pathlib import Path
from datetime import datetime
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class S3Storage:
    """
    Blob store backed by an S3 bucket.

    Keys are passed through unchanged; callers build them from the configured
    prefix and the artifact name.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain if omitted)
            secret_key: AWS secret access key
            endpoint_url: Endpoint of an S3-compatible store
        """
        self.bucket_name = bucket_name
        self.region = region

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def put(self, local_path: str, key: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a file to S3.

        Args:
            local_path: Path to local archive file
            key: Destination object key
            cancellation_check: Optional function called between upload steps;
                raises to abort the upload

        Returns:
            The object key

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, key)

            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The multipart upload is aborted on any error, cancellation included.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def get(self, key: str, local_path: str) -> str:
        """
        Download an object to local_path.

        Returns:
            local_path

        Raises:
            StorageError: If the object is missing or download fails
        """
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket_name, key, local_path)
            return local_path
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to download {key} from S3: {e}")

    def exists(self, key: str) -> bool:
        """
        Check whether an object exists.

        Raises:
            StorageError: On errors other than a missing object
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to query S3: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> List[dict]:
        """
        List objects in S3 with given prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def list(self, prefix: str) -> List[str]:
        """List object keys under prefix."""
        return [obj['Key'] for obj in self.list_objects(prefix)]

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
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


def build_key(prefix: str, name: str) -> str:
    """Join an S3 prefix and an artifact name."""
    prefix = (prefix or '').strip('/')
    return f"{prefix}/{name}" if prefix else name


class LocalStorage:
    """
    Handler for the local backup directory.

    Artifacts are kept flat in base_path, addressed by file name.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def store(self, source_path: str) -> str:
        """
        Move an archive into the backup directory.

        Returns:
            Name of the stored file

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        name = os.path.basename(source_path)
        dest_path = self.base_path / name

        if Path(source_path).resolve() == dest_path.resolve():
            return name

        try:
            shutil.move(source_path, dest_path)
            return name
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def exists(self, name: str) -> bool:
        return (self.base_path / os.path.basename(name)).is_file()

    def delete(self, name: str):
        """
        Delete a file from the backup directory.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / os.path.basename(name)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_files(self) -> List[dict]:
        """
        List files in the backup directory.

        Returns:
            List of dicts with 'name', 'path', 'modified', and 'size' keys
        """
        if not self.base_path.exists():
            return []

        try:
            files = []

            for file_path in self.base_path.iterdir():
                if file_path.is_file():
                    stat = file_path.stat()
                    files.append({
                        'name': file_path.name,
                        'path': str(file_path),
                        'modified': datetime.fromtimestamp(stat.st_mtime),
                        'size': stat.st_size
                    })

            return files

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def get_full_path(self, name: str) -> str:
        return str(self.base_path / os.path.basename(name))


def create_s3_storage(config) -> Optional[S3Storage]:
    """Build the S3 blob store from configuration, or None when S3 is off."""
    if not config.use_s3:
        return None

    return S3Storage(
        bucket_name=config.s3_bucket,
        region=config.s3_region,
        access_key=config.s3_access_key,
        secret_key=config.s3_secret_key,
        endpoint_url=config.s3_endpoint_url
    )
