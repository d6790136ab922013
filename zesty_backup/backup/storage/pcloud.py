"""
pCloud adapter.

pCloud answers HTTP 200 for most failures and reports them in a numeric
``result`` field; 4xxx codes (rate limits) and 5xxx codes (internal
errors) are retried, the rest are permanent.
"""

import logging
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Callable, Dict, List, Optional

import requests

from zesty_backup.errors import ConfigError, PermanentProviderError, TransientProviderError
from .base import RemoteObject, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

HOSTS = {
    'us': 'https://api.pcloud.com',
    'eu': 'https://eapi.pcloud.com',
}

FILE_NOT_FOUND = 2009


class PCloudStorage(HttpProvider):
    provider = 'pcloud'

    def __init__(self, access_token: str, folder: str = '/Backups', region: str = 'us',
                 session: Optional[requests.Session] = None):
        if not access_token:
            raise ConfigError("pcloud requires storage.access_key (OAuth access token)")
        super().__init__(session)
        self.access_token = access_token
        self.base_url = HOSTS['eu'] if (region or '').lower() == 'eu' else HOSTS['us']
        self.folder = '/' + (folder or '/Backups').strip('/')
        self._folder_id: Optional[int] = None

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _call(self, method: str, operation: str, ok_results=(), http_method: str = 'GET', **kwargs) -> dict:
        response = self._request(http_method, f"{self.base_url}/{method}", operation, **kwargs)
        data = self._json(response, operation)
        result = data.get('result', 0)
        if result == 0 or result in ok_results:
            return data

        message = f"pcloud {operation} failed ({result}): {data.get('error', 'unknown error')}"
        if 4000 <= result < 6000:
            raise TransientProviderError(message, self.provider, operation)
        raise PermanentProviderError(message, self.provider, operation)

    def _resolve_folder(self, operation: str) -> int:
        if self._folder_id is None:
            data = self._call('createfolderifnotexists', operation, params={'path': self.folder})
            self._folder_id = data['metadata']['folderid']
        return self._folder_id

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        if cancellation_check:
            cancellation_check()
        folder_id = self._resolve_folder('put')
        data = self._call(
            'uploadfile', 'put', http_method='POST',
            params={'folderid': folder_id, 'filename': name, 'nopartial': 1},
            files={'file': (name, stream, 'application/octet-stream')},
        )
        metadata = data.get('metadata') or [{}]
        return str(metadata[0].get('fileid', name))

    def get(self, name: str, sink: BinaryIO) -> int:
        data = self._call('getfilelink', 'get', params={'path': f"{self.folder}/{name}"})
        hosts = data.get('hosts') or []
        if not hosts:
            raise PermanentProviderError(f"pcloud get: no download host for {name}", self.provider, 'get')
        url = f"https://{hosts[0]}{data['path']}"
        response = self._request('GET', url, 'get', auth=False, stream=True)
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        folder_id = self._resolve_folder('list')
        data = self._call('listfolder', 'list', params={'folderid': folder_id})
        objects = []
        for item in data.get('metadata', {}).get('contents', []):
            if item.get('isfolder') or not item['name'].startswith(prefix):
                continue
            objects.append(RemoteObject(
                name=item['name'],
                size=item.get('size', 0),
                modified=_parse_rfc2822(item.get('modified')),
            ))
        return objects

    def delete(self, name: str) -> None:
        self._call('deletefile', 'delete', ok_results=(FILE_NOT_FOUND,), params={'path': f"{self.folder}/{name}"})


def _parse_rfc2822(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parsedate_to_datetime(value)
