"""
Dropbox adapter (API v2).

Files up to 150MB use files/upload; larger files are sent through an
upload session in 8MiB chunks.
"""

import json
import logging
from datetime import datetime
from typing import BinaryIO, Callable, Dict, List, Optional

import requests

from zesty_backup.errors import ConfigError, PermanentProviderError
from .base import RemoteObject, stream_size, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

API_URL = 'https://api.dropboxapi.com/2'
CONTENT_URL = 'https://content.dropboxapi.com/2'
SIMPLE_UPLOAD_LIMIT = 150 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


class DropboxStorage(HttpProvider):
    provider = 'dropbox'

    def __init__(self, access_token: str, folder: str = '/Backups', session: Optional[requests.Session] = None):
        if not access_token:
            raise ConfigError("dropbox requires storage.access_key (OAuth access token)")
        super().__init__(session)
        self.access_token = access_token
        folder = (folder or '').strip('/')
        self.folder = f"/{folder}" if folder else ''

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _path(self, name: str) -> str:
        return f"{self.folder}/{name}"

    def _content(self, endpoint: str, operation: str, arg: dict, data=None, stream: bool = False) -> requests.Response:
        return self._request(
            'POST', f"{CONTENT_URL}/{endpoint}", operation, data=data, stream=stream,
            headers={
                'Dropbox-API-Arg': json.dumps(arg),
                'Content-Type': 'application/octet-stream',
            },
        )

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        size = stream_size(stream)
        commit = {'path': self._path(name), 'mode': 'overwrite', 'mute': True}

        if size <= SIMPLE_UPLOAD_LIMIT:
            if cancellation_check:
                cancellation_check()
            response = self._content('files/upload', 'put', commit, data=stream)
            return self._json(response, 'put').get('id', name)

        if cancellation_check:
            cancellation_check()
        first = stream.read(UPLOAD_CHUNK_SIZE)
        started = self._json(self._content('files/upload_session/start', 'put', {'close': False}, data=first), 'put')
        cursor = {'session_id': started['session_id'], 'offset': len(first)}

        while True:
            if cancellation_check:
                cancellation_check()
            chunk = stream.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            self._content('files/upload_session/append_v2', 'put', {'cursor': cursor, 'close': False}, data=chunk)
            cursor['offset'] += len(chunk)

        response = self._content('files/upload_session/finish', 'put', {'cursor': cursor, 'commit': commit}, data=b'')
        return self._json(response, 'put').get('id', name)

    def get(self, name: str, sink: BinaryIO) -> int:
        response = self._content('files/download', 'get', {'path': self._path(name)}, stream=True)
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        objects = []
        response = self._request(
            'POST', f"{API_URL}/files/list_folder", 'list',
            json={'path': self.folder, 'limit': 2000}, ok_statuses=(409,),
        )
        if response.status_code == 409:
            if _is_not_found(response):
                return objects
            raise PermanentProviderError(f"dropbox list failed: {response.text[:300]}", self.provider, 'list')

        while True:
            data = self._json(response, 'list')
            for entry in data.get('entries', []):
                if entry.get('.tag') != 'file' or not entry['name'].startswith(prefix):
                    continue
                objects.append(RemoteObject(
                    name=entry['name'],
                    size=entry.get('size', 0),
                    modified=_parse_iso(entry.get('server_modified')),
                ))
            if not data.get('has_more'):
                return objects
            response = self._request(
                'POST', f"{API_URL}/files/list_folder/continue", 'list', json={'cursor': data['cursor']},
            )

    def delete(self, name: str) -> None:
        response = self._request(
            'POST', f"{API_URL}/files/delete_v2", 'delete',
            json={'path': self._path(name)}, ok_statuses=(409,),
        )
        if response.status_code == 409 and not _is_not_found(response):
            raise PermanentProviderError(f"dropbox delete failed: {response.text[:300]}", self.provider, 'delete')


def _is_not_found(response: requests.Response) -> bool:
    try:
        summary = response.json().get('error_summary', '')
    except ValueError:
        return False
    return 'not_found' in summary


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))
