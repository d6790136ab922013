"""
Google Cloud Storage adapter.
"""

import logging
from typing import BinaryIO, Callable, List, Optional

import requests
from google.api_core import exceptions as gexc
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from zesty_backup.errors import ConfigError, PermanentProviderError, ProviderError, TransientProviderError
from .base import KeyPrefixMixin, RemoteObject


logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    gexc.TooManyRequests,
    gexc.ServerError,
    gexc.RetryError,
    requests.ConnectionError,
    requests.Timeout,
    ConnectionError,
    TimeoutError,
)

GCS_ERRORS = (gexc.GoogleAPIError, GoogleAuthError) + TRANSIENT_ERRORS


class GCSStorage(KeyPrefixMixin):
    """Stores archives as blobs under ``{key_prefix}{name}``."""

    provider = 'gcs'

    def __init__(self, bucket_name: str, credentials_path: Optional[str] = None,
                 key_prefix: str = 'backups/', client=None):
        if not bucket_name:
            raise ConfigError("gcs requires storage.bucket")
        self.bucket_name = bucket_name
        self.key_prefix = key_prefix

        try:
            if client is None:
                if credentials_path:
                    client = storage.Client.from_service_account_json(credentials_path)
                else:
                    # GOOGLE_APPLICATION_CREDENTIALS or ambient credentials
                    client = storage.Client()
        except (GoogleAuthError, OSError, ValueError) as e:
            raise ConfigError(f"Failed to initialize GCS client: {e}")

        self.client = client
        self.bucket = client.bucket(bucket_name)

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        key = self._key(name)
        if cancellation_check:
            cancellation_check()
        try:
            blob = self.bucket.blob(key)
            blob.upload_from_file(stream, rewind=False, retry=None)
            return key
        except GCS_ERRORS as e:
            raise self._classify(e, 'put', key)

    def get(self, name: str, sink: BinaryIO) -> int:
        key = self._key(name)
        start = sink.tell()
        try:
            self.bucket.blob(key).download_to_file(sink, retry=None)
        except GCS_ERRORS as e:
            raise self._classify(e, 'get', key)
        return sink.tell() - start

    def list(self, prefix: str = '') -> List[RemoteObject]:
        try:
            objects = []
            for blob in self.client.list_blobs(self.bucket_name, prefix=self._key(prefix)):
                name = self._name(blob.name)
                if name is None:
                    continue
                objects.append(RemoteObject(name=name, size=blob.size or 0, modified=blob.updated))
            return objects
        except GCS_ERRORS as e:
            raise self._classify(e, 'list', prefix)

    def delete(self, name: str) -> None:
        key = self._key(name)
        try:
            self.bucket.blob(key).delete(retry=None)
        except gexc.NotFound:
            return
        except GCS_ERRORS as e:
            raise self._classify(e, 'delete', key)

    def _classify(self, error: Exception, operation: str, target: str) -> ProviderError:
        message = f"GCS {operation} failed for {target}: {error}"
        if isinstance(error, TRANSIENT_ERRORS):
            return TransientProviderError(message, self.provider, operation)
        return PermanentProviderError(message, self.provider, operation)
