"""
Remote storage providers.

create_gateway() picks the adapter for ``storage.provider`` and wraps it
in the retry policy. Provider SDKs are imported lazily so a host only
needs the libraries for the provider it actually uses.
"""

import logging
import time
from typing import Callable

from zesty_backup.errors import ConfigError
from .base import RemoteObject, RemoteStorageGateway
from .retry import RetryingGateway, RetryPolicy


logger = logging.getLogger(__name__)

PROVIDER_ALIASES = {
    's3': 's3', 'aws': 's3', 'contabo': 's3', 'digitalocean': 's3', 'wasabi': 's3', 'minio': 's3', 'r2': 's3',
    'gcs': 'gcs', 'google': 'gcs',
    'azure': 'azure',
    'b2': 'b2', 'backblaze': 'b2',
    'googledrive': 'googledrive', 'gdrive': 'googledrive',
    'onedrive': 'onedrive',
    'dropbox': 'dropbox',
    'box': 'box',
    'pcloud': 'pcloud',
    'mega': 'mega',
}

SUPPORTED_PROVIDERS = tuple(sorted(PROVIDER_ALIASES))


def create_adapter(storage):
    """
    Build the bare provider adapter for StorageSettings.

    Raises:
        ConfigError: If the provider is unknown or its settings are incomplete
    """
    kind = PROVIDER_ALIASES.get(storage.provider)
    if kind is None:
        raise ConfigError(
            f"Unsupported storage provider: {storage.provider}. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    creds = storage.credentials

    if kind == 's3':
        from .s3 import S3Storage, resolve_endpoint
        return S3Storage(
            bucket_name=storage.bucket,
            access_key=creds.get('access_key'),
            secret_key=creds.get('secret_key'),
            region=storage.region,
            endpoint_url=resolve_endpoint(storage.provider, storage.endpoint, storage.region, storage.account_id),
            key_prefix=storage.key_prefix,
            provider=storage.provider,
        )

    if kind == 'gcs':
        from .gcs import GCSStorage
        return GCSStorage(storage.bucket, storage.credentials_path, key_prefix=storage.key_prefix)

    if kind == 'azure':
        from .azure import AzureBlobStorage
        return AzureBlobStorage(
            storage.bucket,
            account_name=storage.account_name,
            account_key=creds.get('account_key'),
            key_prefix=storage.key_prefix,
        )

    if kind == 'b2':
        from .b2 import B2Storage
        return B2Storage(
            account_id=storage.account_id,
            application_key=creds.get('application_key'),
            bucket_id=storage.bucket_id,
            bucket_name=storage.bucket,
            key_prefix=storage.key_prefix,
        )

    if kind == 'googledrive':
        from .gdrive import GoogleDriveStorage
        return GoogleDriveStorage(creds.get('access_key'), storage.bucket_id or 'root')

    if kind == 'onedrive':
        from .onedrive import OneDriveStorage
        return OneDriveStorage(creds.get('access_key'), storage.bucket_id or '/Backups')

    if kind == 'dropbox':
        from .dropbox import DropboxStorage
        return DropboxStorage(creds.get('access_key'), storage.bucket_id or '/Backups')

    if kind == 'box':
        from .box import BoxStorage
        return BoxStorage(creds.get('access_key'), storage.bucket_id or '0')

    if kind == 'pcloud':
        from .pcloud import PCloudStorage
        return PCloudStorage(creds.get('access_key'), storage.bucket_id or '/Backups', region=storage.region)

    from .mega import MegaStorage
    return MegaStorage(storage.account_name, creds.get('account_key'), storage.bucket_id or '/Backups')


def create_gateway(storage, retry, sleep: Callable[[float], None] = time.sleep) -> RetryingGateway:
    """
    Build the remote storage gateway for the configured provider.

    Args:
        storage: StorageSettings
        retry: RetrySettings
        sleep: Sleep function used between retries

    Returns:
        Adapter wrapped in RetryingGateway
    """
    adapter = create_adapter(storage)
    logger.debug(f"Using {storage.provider} storage ({type(adapter).__name__})")
    return RetryingGateway(adapter, RetryPolicy.from_settings(retry), sleep=sleep)


__all__ = [
    'PROVIDER_ALIASES',
    'RemoteObject',
    'RemoteStorageGateway',
    'RetryPolicy',
    'RetryingGateway',
    'SUPPORTED_PROVIDERS',
    'create_adapter',
    'create_gateway',
]
