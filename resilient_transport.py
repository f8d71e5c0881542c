"""
Retrying HTTP GET wrapper shared by the archive lister and the per-post fetches.

All transient failures (rate limiting, 5xx gateway errors, dropped connections) are
retried here, with exponential backoff and jitter; nothing else in the exporter retries.
"""

import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

log = logging.getLogger(__name__)

RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})
JITTER_LOW: float = 0.7
JITTER_HIGH: float = 1.3


class TransportError(Exception):
    """
    Raised for a terminal HTTP status, or when the retry budget is used up.
    `status_code` is None when the last failure was connection-level.
    """

    def __init__(self, url: str, status_code: int | None, attempts: int, detail: str = '') -> None:
        self.url: str = url
        self.status_code: int | None = status_code
        self.attempts: int = attempts
        self.detail: str = detail
        status_part: str = f'HTTP {status_code}' if status_code is not None else 'network error'
        message: str = f'{status_part} - {url}'
        if detail:
            message = f'{status_part} {detail} - {url}'
        super().__init__(message)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parses a Retry-After header into seconds.
    Accepts an integer count of seconds or an HTTP date; a date in the past yields 0.
    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    s: str = value.strip()
    if s.isascii() and s.isdigit():
        return float(int(s))
    try:
        target: datetime = parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (target - now).total_seconds())


class ResilientTransport:
    """
    Performs one logical GET with retry/backoff.
    - Returns the response as soon as a 2xx status arrives.
    - Treats 429/500/502/503/504 as retryable; any other status fails immediately.
    - Retries connection-level httpx errors under the same budget.
    - Waits `backoff_base_s * 2**attempt`, raised to at least Retry-After on a 429.
    - Multiplies each wait by a jitter factor in [0.7, 1.3].
    - Raises TransportError once `max_retries` retries have been spent.
    """

    def __init__(
        self,
        client: httpx.Client,
        *,
        max_retries: int,
        backoff_base_s: float,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client: httpx.Client = client
        self.max_retries: int = max_retries
        self.backoff_base_s: float = backoff_base_s
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

    def base_wait(self, attempt: int) -> float:
        return self.backoff_base_s * (2**attempt)

    def compute_wait(self, attempt: int, status_code: int | None, retry_after: str | None = None) -> float:
        """
        Returns the jittered wait in seconds before retry number `attempt + 1`.
        """
        wait: float = self.base_wait(attempt)
        if status_code == 429:
            floor: float | None = parse_retry_after(retry_after, self._clock())
            if floor is not None:
                wait = max(wait, floor)
        return wait * (JITTER_LOW + self._rand() * (JITTER_HIGH - JITTER_LOW))

    def get(self, url: str, params: dict[str, object] | None = None) -> httpx.Response:
        attempt: int = 0
        while True:
            try:
                resp: httpx.Response = self.client.get(url, params=params)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise TransportError(url, None, attempt + 1, detail=str(exc)) from exc
                wait: float = self.compute_wait(attempt, None)
                log.warning(f'Retry {attempt + 1}/{self.max_retries} after {round(wait * 1000)}ms ({exc!r}): {url}')
                self._sleep(wait)
                attempt += 1
                continue

            if resp.is_success:
                return resp
            if resp.status_code not in RETRYABLE_STATUSES or attempt >= self.max_retries:
                raise TransportError(url, resp.status_code, attempt + 1, detail=resp.reason_phrase)

            wait = self.compute_wait(attempt, resp.status_code, resp.headers.get('Retry-After'))
            log.warning(
                f'Retry {attempt + 1}/{self.max_retries} after {round(wait * 1000)}ms (HTTP {resp.status_code}): {url}'
            )
            self._sleep(wait)
            attempt += 1
