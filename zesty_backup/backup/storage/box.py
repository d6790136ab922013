"""
Box adapter (Box Content API 2.0).

Archives live in one folder (default ``0``, the root). Uploading a name
that already exists adds a new file version instead of failing. Archives
of 50 MB and more go through a chunked upload session so only one part is
held in memory; smaller ones are sent as a single multipart request.
"""

import base64
import hashlib
import json
import logging
import time
from datetime import datetime
from typing import BinaryIO, Callable, Dict, List, Optional

import requests

from zesty_backup.errors import ConfigError, PermanentProviderError, ProviderError, TransientProviderError
from .base import RemoteObject, stream_size, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

API_URL = 'https://api.box.com/2.0'
UPLOAD_URL = 'https://upload.box.com/api/2.0'
PAGE_SIZE = 1000
# Box accepts upload sessions from 20 MB; smaller files go in one multipart request
CHUNKED_THRESHOLD = 50 * 1024 * 1024
COMMIT_ATTEMPTS = 10


class BoxStorage(HttpProvider):
    provider = 'box'

    def __init__(self, access_token: str, folder_id: str = '0', session: Optional[requests.Session] = None,
                 chunked_threshold: int = CHUNKED_THRESHOLD):
        if not access_token:
            raise ConfigError("box requires storage.access_key (OAuth access token)")
        super().__init__(session)
        self.access_token = access_token
        self.folder_id = folder_id or '0'
        self.chunked_threshold = chunked_threshold

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _items(self, operation: str) -> List[dict]:
        items = []
        offset = 0
        while True:
            response = self._request(
                'GET', f"{API_URL}/folders/{self.folder_id}/items", operation,
                params={'fields': 'id,type,name,size,modified_at', 'limit': PAGE_SIZE, 'offset': offset},
            )
            data = self._json(response, operation)
            entries = data.get('entries', [])
            items.extend(entry for entry in entries if entry.get('type') == 'file')
            offset += len(entries)
            if not entries or offset >= data.get('total_count', 0):
                return items

    def _find(self, name: str, operation: str) -> Optional[dict]:
        for item in self._items(operation):
            if item['name'] == name:
                return item
        return None

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        if cancellation_check:
            cancellation_check()
        existing = self._find(name, 'put')
        size = stream_size(stream)
        if size >= self.chunked_threshold:
            return self._put_chunked(name, stream, size, existing, cancellation_check)

        if existing:
            url = f"{UPLOAD_URL}/files/{existing['id']}/content"
            attributes = {'name': name}
        else:
            url = f"{UPLOAD_URL}/files/content"
            attributes = {'name': name, 'parent': {'id': self.folder_id}}

        response = self._request(
            'POST', url, 'put',
            files={
                'attributes': (None, json.dumps(attributes), 'application/json'),
                'file': (name, stream, 'application/octet-stream'),
            },
        )
        return self._uploaded_id(response, name)

    def _put_chunked(self, name: str, stream: BinaryIO, size: int, existing: Optional[dict],
                     cancellation_check: Optional[Callable[[], None]]) -> str:
        """
        Upload through a chunked upload session, one part in memory at a time.

        The session is aborted on any failure.
        """
        if existing:
            url = f"{UPLOAD_URL}/files/{existing['id']}/upload_sessions"
            body = {'file_name': name, 'file_size': size}
        else:
            url = f"{UPLOAD_URL}/files/upload_sessions"
            body = {'folder_id': self.folder_id, 'file_name': name, 'file_size': size}
        session = self._json(self._request('POST', url, 'put', json=body), 'put')
        session_url = f"{UPLOAD_URL}/files/upload_sessions/{session['id']}"
        part_size = session['part_size']
        logger.info(f"Box upload session {session['id']} for {name}: {size} bytes in {part_size}-byte parts")

        try:
            whole = hashlib.sha1()
            parts = []
            offset = 0
            while offset < size:
                if cancellation_check:
                    cancellation_check()
                chunk = stream.read(min(part_size, size - offset))
                if not chunk:
                    raise PermanentProviderError(
                        f"box put: {name} ended early at byte {offset}", self.provider, 'put'
                    )
                whole.update(chunk)
                end = offset + len(chunk) - 1
                response = self._request(
                    'PUT', session_url, 'put', data=chunk,
                    headers={
                        'Content-Type': 'application/octet-stream',
                        'Content-Range': f"bytes {offset}-{end}/{size}",
                        'Digest': f"sha={_sha1_base64(hashlib.sha1(chunk))}",
                    },
                )
                parts.append(self._json(response, 'put')['part'])
                offset = end + 1

            return self._commit(session_url, parts, whole, name)
        except Exception:
            try:
                self._request('DELETE', session_url, 'put', ok_statuses=(404,))
            except ProviderError as abort_error:
                logger.warning(f"Failed to abort Box upload session for {name}: {abort_error}")
            raise

    def _commit(self, session_url: str, parts: List[dict], whole, name: str) -> str:
        for _ in range(COMMIT_ATTEMPTS):
            response = self._request(
                'POST', f"{session_url}/commit", 'put', json={'parts': parts},
                headers={'Digest': f"sha={_sha1_base64(whole)}"},
            )
            # 202: parts still being processed
            if response.status_code != 202:
                return self._uploaded_id(response, name)
            time.sleep(float(response.headers.get('Retry-After', 1)))
        raise TransientProviderError(f"box put: commit of {name} still pending", self.provider, 'put')

    def _uploaded_id(self, response: requests.Response, name: str) -> str:
        entries = self._json(response, 'put').get('entries', [])
        return entries[0]['id'] if entries else name

    def get(self, name: str, sink: BinaryIO) -> int:
        existing = self._find(name, 'get')
        if existing is None:
            raise PermanentProviderError(f"box get: {name} not found", self.provider, 'get')
        response = self._request('GET', f"{API_URL}/files/{existing['id']}/content", 'get', stream=True)
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        return [
            RemoteObject(name=item['name'], size=item.get('size', 0), modified=_parse_iso(item.get('modified_at')))
            for item in self._items('list')
            if item['name'].startswith(prefix)
        ]

    def delete(self, name: str) -> None:
        existing = self._find(name, 'delete')
        if existing is None:
            return
        self._request('DELETE', f"{API_URL}/files/{existing['id']}", 'delete', ok_statuses=(404,))


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _sha1_base64(digest) -> str:
    return base64.b64encode(digest.digest()).decode('ascii')
