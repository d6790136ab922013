"""
Google Drive adapter (Drive API v3).

Archives live directly in one folder, addressed by file name. Uploads use
a resumable session so large archives are not held in memory.
"""

import logging
from datetime import datetime
from typing import BinaryIO, Callable, Dict, List, Optional

import requests

from zesty_backup.errors import ConfigError, PermanentProviderError
from .base import RemoteObject, stream_size, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

API_URL = 'https://www.googleapis.com/drive/v3'
UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3'
FILE_FIELDS = 'id,name,size,modifiedTime'


class GoogleDriveStorage(HttpProvider):
    provider = 'googledrive'

    def __init__(self, access_token: str, folder_id: str = 'root', session: Optional[requests.Session] = None):
        if not access_token:
            raise ConfigError("googledrive requires storage.access_key (OAuth access token)")
        super().__init__(session)
        self.access_token = access_token
        self.folder_id = folder_id or 'root'

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _find(self, name: str, operation: str) -> Optional[dict]:
        escaped = name.replace('\\', '\\\\').replace("'", "\\'")
        query = f"name = '{escaped}' and '{self.folder_id}' in parents and trashed = false"
        response = self._request('GET', f"{API_URL}/files", operation, params={
            'q': query,
            'fields': f"files({FILE_FIELDS})",
            'pageSize': 1,
        })
        files = self._json(response, operation).get('files', [])
        return files[0] if files else None

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        if cancellation_check:
            cancellation_check()
        size = stream_size(stream)
        existing = self._find(name, 'put')

        if existing:
            session = self._request(
                'PATCH', f"{UPLOAD_URL}/files/{existing['id']}", 'put',
                params={'uploadType': 'resumable'},
                json={},
                headers={'X-Upload-Content-Length': str(size)},
            )
        else:
            session = self._request(
                'POST', f"{UPLOAD_URL}/files", 'put',
                params={'uploadType': 'resumable'},
                json={'name': name, 'parents': [self.folder_id]},
                headers={'X-Upload-Content-Length': str(size)},
            )

        upload_url = session.headers.get('Location')
        if not upload_url:
            raise PermanentProviderError("googledrive put: no resumable session URL returned", self.provider, 'put')

        response = self._request(
            'PUT', upload_url, 'put', data=stream,
            headers={'Content-Length': str(size)},
        )
        return self._json(response, 'put').get('id', name)

    def get(self, name: str, sink: BinaryIO) -> int:
        existing = self._find(name, 'get')
        if existing is None:
            raise PermanentProviderError(f"googledrive get: {name} not found", self.provider, 'get')
        response = self._request(
            'GET', f"{API_URL}/files/{existing['id']}", 'get',
            params={'alt': 'media'}, stream=True,
        )
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        objects = []
        page_token = None
        while True:
            params = {
                'q': f"'{self.folder_id}' in parents and trashed = false",
                'fields': f"nextPageToken,files({FILE_FIELDS})",
                'pageSize': 1000,
            }
            if page_token:
                params['pageToken'] = page_token
            data = self._json(self._request('GET', f"{API_URL}/files", 'list', params=params), 'list')

            for item in data.get('files', []):
                if not item['name'].startswith(prefix):
                    continue
                objects.append(RemoteObject(
                    name=item['name'],
                    size=int(item.get('size', 0)),
                    modified=_parse_rfc3339(item.get('modifiedTime')),
                ))

            page_token = data.get('nextPageToken')
            if not page_token:
                return objects

    def delete(self, name: str) -> None:
        existing = self._find(name, 'delete')
        if existing is None:
            return
        self._request('DELETE', f"{API_URL}/files/{existing['id']}", 'delete', ok_statuses=(404,))


def _parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))
