"""
Shared HTTP plumbing for REST-based providers (B2, Google Drive, OneDrive,
Dropbox, Box, pCloud).
"""

import logging
from typing import Dict, Iterable, Optional

import requests

from zesty_backup.errors import PermanentProviderError, TransientProviderError
from .base import error_for_status


logger = logging.getLogger(__name__)

# (connect, read) seconds
DEFAULT_TIMEOUT = (30, 300)


class HttpProvider:
    """Base class holding a requests session and HTTP error classification."""

    provider = 'http'
    timeout = DEFAULT_TIMEOUT

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _request(self, method: str, url: str, operation: str, *, ok_statuses: Iterable[int] = (),
                 auth: bool = True, headers: Optional[Dict[str, str]] = None, **kwargs) -> requests.Response:
        """
        Send a request and raise a classified ProviderError on failure.

        Args:
            method: HTTP method
            url: Request URL
            operation: Gateway operation name, for messages
            ok_statuses: Error statuses the caller handles itself (e.g. 404 on delete)
            auth: Whether to send the provider's auth headers
            headers: Extra headers

        Raises:
            TransientProviderError: Timeouts, connection errors, 429 and 5xx
            PermanentProviderError: Any other failure
        """
        all_headers = dict(self._auth_headers()) if auth else {}
        if headers:
            all_headers.update(headers)

        try:
            response = self.session.request(method, url, headers=all_headers, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"{self.provider} {operation} failed: {e}", self.provider, operation)
        except requests.RequestException as e:
            raise PermanentProviderError(f"{self.provider} {operation} failed: {e}", self.provider, operation)

        if response.status_code >= 400 and response.status_code not in ok_statuses:
            raise error_for_status(
                response.status_code,
                f"{self.provider} {operation} failed (HTTP {response.status_code}): {_error_text(response)}",
                self.provider,
                operation,
            )
        return response

    def _json(self, response: requests.Response, operation: str) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise PermanentProviderError(
                f"{self.provider} {operation} returned invalid JSON: {e}", self.provider, operation
            )


def _error_text(response: requests.Response, limit: int = 300) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, requests.RequestException):
        return '<unreadable body>'
    return text[:limit]
