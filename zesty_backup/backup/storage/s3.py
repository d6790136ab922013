"""
S3-compatible storage: AWS, Contabo, DigitalOcean Spaces, Wasabi, MinIO, Cloudflare R2.

Archives are stored under ``{key_prefix}{name}``. Files larger than
100MB go through multipart upload with a cancellation check between parts.
"""

import logging
from typing import BinaryIO, Callable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from zesty_backup.errors import ConfigError, PermanentProviderError, ProviderError, TransientProviderError
from .base import KeyPrefixMixin, RemoteObject, stream_size, write_chunks


logger = logging.getLogger(__name__)

S3_PROVIDERS = ('s3', 'aws', 'contabo', 'digitalocean', 'wasabi', 'minio', 'r2')

ENDPOINT_TEMPLATES = {
    'aws': 'https://s3.{region}.amazonaws.com',
    'digitalocean': 'https://{region}.digitaloceanspaces.com',
    'wasabi': 'https://s3.{region}.wasabisys.com',
    'r2': 'https://{account_id}.r2.cloudflarestorage.com',
}

MULTIPART_THRESHOLD = 100 * 1024 * 1024
PART_SIZE = 10 * 1024 * 1024

TRANSIENT_CODES = {
    'InternalError', 'ServiceUnavailable', 'SlowDown', 'RequestTimeout',
    'Throttling', 'ThrottlingException', 'RequestLimitExceeded', '500', '502', '503', '504',
}
NOT_FOUND_CODES = {'NoSuchKey', 'NotFound', '404'}


def resolve_endpoint(provider: str, endpoint: Optional[str], region: str, account_id: Optional[str] = None) -> Optional[str]:
    """
    Endpoint URL for an S3-compatible provider.

    aws, digitalocean, wasabi and r2 derive it from region or account id;
    s3, contabo and minio use the configured endpoint.
    """
    template = ENDPOINT_TEMPLATES.get(provider)
    if template is None:
        return endpoint or None
    if provider == 'r2':
        if not account_id:
            raise ConfigError("Cloudflare R2 requires storage.account_id")
        return template.format(account_id=account_id)
    if not region:
        raise ConfigError(f"{provider} requires storage.region")
    return template.format(region=region)


class S3Storage(KeyPrefixMixin):
    """
    Handler for S3-compatible object storage.
    """

    def __init__(self, bucket_name: str, access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None, key_prefix: str = 'backups/',
                 provider: str = 's3', client=None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket name
            access_key: Access key ID
            secret_key: Secret access key
            region: Region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            key_prefix: Prefix for archive keys
            provider: Provider alias, used in messages
            client: Preconfigured boto3 client (tests)
        """
        if not bucket_name:
            raise ConfigError(f"{provider} requires storage.bucket")

        self.bucket_name = bucket_name
        self.region = region or 'us-east-1'
        self.key_prefix = key_prefix
        self.provider = provider

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=self.region,
                endpoint_url=endpoint_url,
                # Retries are handled by RetryingGateway
                config=BotoConfig(
                    retries={'total_max_attempts': 1, 'mode': 'standard'},
                    connect_timeout=30,
                    read_timeout=300,
                ),
            )
        except BotoCoreError as e:
            raise ConfigError(f"Failed to initialize S3 client: {e}")

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload an archive.

        Returns:
            Object key of the uploaded archive

        Raises:
            ProviderError: If upload fails
        """
        key = self._key(name)
        try:
            size = stream_size(stream)
            if size > MULTIPART_THRESHOLD:
                self._multipart_upload(stream, key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(stream, key)
            return key
        except (ClientError, BotoCoreError) as e:
            raise self._classify(e, 'put', key)

    def _simple_upload(self, stream: BinaryIO, key: str):
        self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=stream)

    def _multipart_upload(self, stream: BinaryIO, key: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any failure, including cancellation.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            part_number = 1
            while True:
                if cancellation_check:
                    cancellation_check()

                data = stream.read(PART_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def get(self, name: str, sink: BinaryIO) -> int:
        key = self._key(name)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return write_chunks(response['Body'].iter_chunks(chunk_size=1024 * 1024), sink)
        except (ClientError, BotoCoreError) as e:
            raise self._classify(e, 'get', key)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        """
        List archives under the key prefix.

        Returns:
            RemoteObjects with the prefix stripped from their names
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._key(prefix)):
                for obj in page.get('Contents', []):
                    name = self._name(obj['Key'])
                    if name is None:
                        continue
                    objects.append(RemoteObject(name=name, size=obj['Size'], modified=obj['LastModified']))

            return objects

        except (ClientError, BotoCoreError) as e:
            raise self._classify(e, 'list', prefix)

    def delete(self, name: str) -> None:
        key = self._key(name)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                return
            raise self._classify(e, 'delete', key)

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Raises:
            ProviderError: If the bucket is missing or inaccessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise PermanentProviderError(f"Bucket does not exist: {self.bucket_name}", self.provider, 'test')
            elif error_code == '403':
                raise PermanentProviderError(f"Access denied to bucket: {self.bucket_name}", self.provider, 'test')
            raise self._classify(e, 'test', self.bucket_name)
        except BotoCoreError as e:
            raise self._classify(e, 'test', self.bucket_name)

    @staticmethod
    def _is_not_found(error: Exception) -> bool:
        if isinstance(error, ClientError):
            return error.response.get('Error', {}).get('Code') in NOT_FOUND_CODES
        return False

    def _classify(self, error: Exception, operation: str, target: str) -> ProviderError:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
            message = f"S3 {operation} failed for {target} ({error_code}): {error}"
            if error_code in TRANSIENT_CODES or status >= 500 or status == 429:
                return TransientProviderError(message, self.provider, operation)
            return PermanentProviderError(message, self.provider, operation)

        message = f"S3 {operation} failed for {target}: {error}"
        if isinstance(error, NoCredentialsError):
            return PermanentProviderError(message, self.provider, operation)
        if isinstance(error, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
            return TransientProviderError(message, self.provider, operation)
        return PermanentProviderError(message, self.provider, operation)
