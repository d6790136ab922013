"""
Microsoft OneDrive adapter (Microsoft Graph).

Items are addressed by path under the configured folder. Files under 4MB
use a single PUT; larger files go through an upload session in chunks that
are multiples of 320 KiB.
"""

import logging
from datetime import datetime
from typing import BinaryIO, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from zesty_backup.errors import ConfigError, PermanentProviderError
from .base import RemoteObject, stream_size, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

GRAPH_URL = 'https://graph.microsoft.com/v1.0/me/drive'
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 32 * 320 * 1024


class OneDriveStorage(HttpProvider):
    provider = 'onedrive'

    def __init__(self, access_token: str, folder: str = '/Backups', session: Optional[requests.Session] = None):
        if not access_token:
            raise ConfigError("onedrive requires storage.access_key (OAuth access token)")
        super().__init__(session)
        self.access_token = access_token
        self.folder = (folder or '/Backups').strip('/')

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _item_url(self, name: str) -> str:
        path = f"{self.folder}/{name}" if self.folder else name
        return f"{GRAPH_URL}/root:/{quote(path)}:"

    def _folder_url(self) -> str:
        if not self.folder:
            return f"{GRAPH_URL}/root"
        return f"{GRAPH_URL}/root:/{quote(self.folder)}:"

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        size = stream_size(stream)
        if size < SIMPLE_UPLOAD_LIMIT:
            if cancellation_check:
                cancellation_check()
            response = self._request('PUT', f"{self._item_url(name)}/content", 'put', data=stream.read())
            return self._json(response, 'put').get('id', name)
        return self._session_upload(name, stream, size, cancellation_check)

    def _session_upload(self, name: str, stream: BinaryIO, size: int,
                        cancellation_check: Optional[Callable[[], None]]) -> str:
        session = self._json(self._request(
            'POST', f"{self._item_url(name)}/createUploadSession", 'put',
            json={'item': {'@microsoft.graph.conflictBehavior': 'replace'}},
        ), 'put')
        upload_url = session.get('uploadUrl')
        if not upload_url:
            raise PermanentProviderError("onedrive put: no upload session URL returned", self.provider, 'put')

        offset = 0
        result = {}
        while offset < size:
            if cancellation_check:
                cancellation_check()
            chunk = stream.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            end = offset + len(chunk) - 1
            # The pre-authenticated upload URL must not receive the bearer token
            response = self._request(
                'PUT', upload_url, 'put', auth=False, data=chunk,
                headers={'Content-Length': str(len(chunk)), 'Content-Range': f"bytes {offset}-{end}/{size}"},
            )
            offset = end + 1
            if response.status_code in (200, 201):
                result = self._json(response, 'put')
        return result.get('id', name)

    def get(self, name: str, sink: BinaryIO) -> int:
        response = self._request('GET', f"{self._item_url(name)}/content", 'get', stream=True)
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        objects = []
        url = f"{self._folder_url()}/children"
        params = {'$select': 'name,size,lastModifiedDateTime,file', '$top': 200}
        while url:
            response = self._request('GET', url, 'list', params=params, ok_statuses=(404,))
            if response.status_code == 404:
                # Folder not created yet
                return objects
            data = self._json(response, 'list')
            for item in data.get('value', []):
                if 'file' not in item or not item['name'].startswith(prefix):
                    continue
                objects.append(RemoteObject(
                    name=item['name'],
                    size=item.get('size', 0),
                    modified=_parse_iso(item.get('lastModifiedDateTime')),
                ))
            # nextLink already carries the query string
            url = data.get('@odata.nextLink')
            params = None
        return objects

    def delete(self, name: str) -> None:
        url = self._item_url(name).rstrip(':')
        self._request('DELETE', url, 'delete', ok_statuses=(404,))


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))
