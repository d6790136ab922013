"""
Retry wrapper for remote storage adapters.

Transient failures are retried with exponential backoff and jitter up to
``max_attempts`` attempts in total. Permanent failures are raised after
the first attempt. Upload streams are rewound and download sinks
truncated before every retry.
"""

import logging
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from zesty_backup.errors import TransientProviderError
from .base import RemoteObject


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> 'RetryPolicy':
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )


class RetryingGateway:
    """Wraps any gateway adapter with the retry policy."""

    def __init__(self, gateway, policy: RetryPolicy = RetryPolicy(), sleep: Callable[[float], None] = time.sleep):
        self.gateway = gateway
        self.policy = policy
        self._sleep = sleep

    @property
    def provider(self) -> str:
        return self.gateway.provider

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        start = stream.tell()

        def attempt():
            stream.seek(start)
            return self.gateway.put(name, stream, cancellation_check=cancellation_check)

        return self._call('put', name, attempt)

    def get(self, name: str, sink: BinaryIO) -> int:
        start = sink.tell()

        def attempt():
            sink.seek(start)
            sink.truncate()
            return self.gateway.get(name, sink)

        return self._call('get', name, attempt)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        return self._call('list', prefix or '*', lambda: self.gateway.list(prefix))

    def delete(self, name: str) -> None:
        return self._call('delete', name, lambda: self.gateway.delete(name))

    def _call(self, operation: str, target: str, fn):
        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.base_delay, max=self.policy.max_delay)
            + wait_random(0, self.policy.base_delay),
            sleep=self._sleep,
            before_sleep=lambda state: self._log_retry(operation, target, state),
            reraise=True,
        )
        return retrying(fn)

    def _log_retry(self, operation: str, target: str, retry_state):
        error = retry_state.outcome.exception()
        logger.warning(
            f"{self.provider} {operation} {target} failed "
            f"(attempt {retry_state.attempt_number}/{self.policy.max_attempts}): {error}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )
