"""
Backblaze B2 adapter using the native B2 API.

Flow:
1. b2_authorize_account with the key id and application key
2. b2_get_upload_url, then POST the file with its SHA1
3. b2_list_file_names, paginated through nextFileName
4. deletes remove every version via b2_list_file_versions + b2_delete_file_version
"""

import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from zesty_backup.errors import ConfigError, TransientProviderError
from .base import KeyPrefixMixin, RemoteObject, stream_size, write_chunks
from .http import HttpProvider


logger = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://api.backblazeb2.com/b2api/v2/b2_authorize_account'
LIST_PAGE_SIZE = 1000


class B2Storage(KeyPrefixMixin, HttpProvider):
    provider = 'b2'

    def __init__(self, account_id: str, application_key: str, bucket_id: str, bucket_name: str,
                 key_prefix: str = 'backups/', session: Optional[requests.Session] = None):
        if not account_id or not application_key:
            raise ConfigError("b2 requires storage.account_id and storage.application_key")
        if not bucket_id or not bucket_name:
            raise ConfigError("b2 requires storage.bucket_id and storage.bucket")
        super().__init__(session)
        self.account_id = account_id
        self.application_key = application_key
        self.bucket_id = bucket_id
        self.bucket_name = bucket_name
        self.key_prefix = key_prefix
        self._auth: Optional[Dict[str, str]] = None

    def _authorize(self) -> Dict[str, str]:
        if self._auth is None:
            response = self._request(
                'GET', AUTHORIZE_URL, 'authorize', auth=False,
                headers={'Authorization': _basic_auth(self.account_id, self.application_key)},
            )
            data = self._json(response, 'authorize')
            self._auth = {
                'token': data['authorizationToken'],
                'api_url': data['apiUrl'],
                'download_url': data['downloadUrl'],
            }
        return self._auth

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': self._authorize()['token']}

    def _api(self, call: str, operation: str, payload: dict) -> dict:
        url = f"{self._authorize()['api_url']}/b2api/v2/{call}"
        response = self._request('POST', url, operation, json=payload, ok_statuses=(401,))
        if response.status_code == 401:
            # Tokens expire after 24h; drop it so the retry re-authorizes
            self._auth = None
            raise TransientProviderError(f"b2 {operation}: authorization expired", self.provider, operation)
        return self._json(response, operation)

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        key = self._key(name)
        size = stream_size(stream)
        start = stream.tell()
        sha1 = hashlib.sha1()
        while True:
            if cancellation_check:
                cancellation_check()
            chunk = stream.read(1024 * 1024)
            if not chunk:
                break
            sha1.update(chunk)
        stream.seek(start)

        upload = self._api('b2_get_upload_url', 'put', {'bucketId': self.bucket_id})
        response = self._request(
            'POST', upload['uploadUrl'], 'put', auth=False, data=stream,
            headers={
                'Authorization': upload['authorizationToken'],
                'X-Bz-File-Name': quote(key, safe='/'),
                'Content-Type': 'b2/x-auto',
                'Content-Length': str(size),
                'X-Bz-Content-Sha1': sha1.hexdigest(),
            },
        )
        return self._json(response, 'put').get('fileId', key)

    def get(self, name: str, sink: BinaryIO) -> int:
        key = self._key(name)
        url = f"{self._authorize()['download_url']}/file/{self.bucket_name}/{quote(key, safe='/')}"
        response = self._request('GET', url, 'get', stream=True)
        with response:
            return write_chunks(response.iter_content(chunk_size=1024 * 1024), sink)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        objects = []
        start_name = None
        while True:
            payload = {'bucketId': self.bucket_id, 'prefix': self._key(prefix), 'maxFileCount': LIST_PAGE_SIZE}
            if start_name:
                payload['startFileName'] = start_name
            data = self._api('b2_list_file_names', 'list', payload)

            for item in data.get('files', []):
                name = self._name(item['fileName'])
                if name is None:
                    continue
                objects.append(RemoteObject(
                    name=name,
                    size=item.get('contentLength', 0),
                    modified=_from_millis(item.get('uploadTimestamp')),
                ))

            start_name = data.get('nextFileName')
            if not start_name:
                return objects

    def delete(self, name: str) -> None:
        key = self._key(name)
        data = self._api('b2_list_file_versions', 'delete', {
            'bucketId': self.bucket_id,
            'startFileName': key,
            'prefix': key,
            'maxFileCount': LIST_PAGE_SIZE,
        })
        for version in data.get('files', []):
            if version.get('fileName') != key:
                continue
            self._api('b2_delete_file_version', 'delete', {'fileName': key, 'fileId': version['fileId']})


def _basic_auth(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return f"Basic {token}"


def _from_millis(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
