"""
Azure Blob Storage adapter.

The configured bucket is the container name.
"""

import logging
from typing import BinaryIO, Callable, List, Optional

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobServiceClient

from zesty_backup.errors import ConfigError, PermanentProviderError, ProviderError, TransientProviderError
from .base import KeyPrefixMixin, RemoteObject


logger = logging.getLogger(__name__)


class AzureBlobStorage(KeyPrefixMixin):
    """Stores archives as block blobs under ``{key_prefix}{name}``."""

    provider = 'azure'

    def __init__(self, container: str, account_name: Optional[str] = None, account_key: Optional[str] = None,
                 key_prefix: str = 'backups/', container_client=None):
        if not container:
            raise ConfigError("azure requires storage.bucket (container name)")
        self.container = container
        self.key_prefix = key_prefix

        if container_client is None:
            if not account_name:
                raise ConfigError("azure requires storage.account_name")
            try:
                service = BlobServiceClient(
                    account_url=f"https://{account_name}.blob.core.windows.net",
                    credential=account_key,
                    # Retries are handled by RetryingGateway
                    retry_total=0,
                )
            except (AzureError, ValueError) as e:
                raise ConfigError(f"Failed to initialize Azure client: {e}")
            container_client = service.get_container_client(container)

        self.container_client = container_client

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        key = self._key(name)
        if cancellation_check:
            cancellation_check()
        try:
            self.container_client.upload_blob(name=key, data=stream, overwrite=True)
            return key
        except AzureError as e:
            raise self._classify(e, 'put', key)

    def get(self, name: str, sink: BinaryIO) -> int:
        key = self._key(name)
        try:
            downloader = self.container_client.download_blob(key)
            return downloader.readinto(sink)
        except AzureError as e:
            raise self._classify(e, 'get', key)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        try:
            objects = []
            for blob in self.container_client.list_blobs(name_starts_with=self._key(prefix)):
                name = self._name(blob.name)
                if name is None:
                    continue
                objects.append(RemoteObject(name=name, size=blob.size or 0, modified=blob.last_modified))
            return objects
        except AzureError as e:
            raise self._classify(e, 'list', prefix)

    def delete(self, name: str) -> None:
        key = self._key(name)
        try:
            self.container_client.delete_blob(key)
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise self._classify(e, 'delete', key)

    def _classify(self, error: AzureError, operation: str, target: str) -> ProviderError:
        message = f"Azure {operation} failed for {target}: {error}"
        if isinstance(error, (ServiceRequestError, ServiceResponseError)):
            return TransientProviderError(message, self.provider, operation)
        if isinstance(error, (ClientAuthenticationError, ResourceNotFoundError)):
            return PermanentProviderError(message, self.provider, operation)
        if isinstance(error, HttpResponseError):
            status = error.status_code or 0
            if status == 429 or status >= 500:
                return TransientProviderError(message, self.provider, operation)
        return PermanentProviderError(message, self.provider, operation)
