"""Rate-limited HTML fetcher for the business directory.

Requests are serialized through a shared :class:`RateLimiter` so that every
fetcher in the process honours the same minimum spacing, no matter how many
crawl tasks run in parallel. Failures never propagate: callers get ``None``
and the reason is logged.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple

import requests

from listing_discovery.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "el-GR,el;q=0.9",
    "Connection": "keep-alive",
}
CHALLENGE_MARKERS = ("captcha", "challenge", "cf-chl", "cf-browser-verification")
# Business sites often embed captcha widgets in forms; only CDN interstitials count there.
CDN_CHALLENGE_MARKERS = ("cf-chl", "cf-browser-verification")

# Reason codes attached to every failed fetch.
REASON_NETWORK = "network_error"
REASON_STATUS = "http_status"
REASON_CHALLENGE = "challenge"
REASON_EMPTY = "empty_body"
REASON_EXHAUSTED = "retries_exhausted"
REASON_UNEXPECTED = "unexpected"


class RateLimiter:
    """Process-wide single-flight throttle.

    Holding :meth:`slot` grants exclusive use of the outbound connection. On
    entry the caller waits until ``min_interval`` seconds have passed since the
    previous holder released the slot.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_completed: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(settings.fetch_min_interval_ms / 1000.0)

    def wait_time(self) -> float:
        if self._last_completed is None:
            return 0.0
        elapsed = self._clock() - self._last_completed
        return max(0.0, self.min_interval - elapsed)

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._lock:
            delay = self.wait_time()
            if delay > 0:
                self._sleep(delay)
            try:
                yield
            finally:
                self._last_completed = self._clock()


@dataclass(frozen=True)
class BackoffTable:
    """Fixed delay (seconds) to wait before each retry attempt.

    ``delays[attempt]`` is the pause before ``attempt`` (2-based); the number
    of entries plus one is the maximum number of attempts.
    """

    delays: Mapping[int, float]

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "BackoffTable":
        return cls({attempt: float(delay) for attempt, delay in enumerate(values, start=2)})

    @property
    def max_attempts(self) -> int:
        return 1 + len(self.delays)

    def delay_before(self, attempt: int) -> float:
        return self.delays.get(attempt, 0.0)


DEFAULT_BACKOFF = BackoffTable.from_sequence((2.0, 5.0, 5.0))


class _RetryableFailure(Exception):
    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason


def looks_like_challenge(html: str, markers: Sequence[str] = CHALLENGE_MARKERS) -> bool:
    lowered = html.lower()
    return any(marker in lowered for marker in markers)


class RateLimitedFetcher:
    """Fetch raw HTML pages through a shared :class:`RateLimiter`."""

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        backoff: Optional[BackoffTable] = None,
        referer: Optional[str] = None,
        challenge_markers: Sequence[str] = CHALLENGE_MARKERS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.limiter = limiter
        self.backoff = backoff or BackoffTable.from_sequence(self.settings.fetch_backoff_seconds)
        self.retry_statuses = frozenset(self.settings.fetch_retry_statuses)
        self.timeout = self.settings.fetch_timeout_seconds
        self.challenge_markers = tuple(challenge_markers)
        self._sleep = sleep

        self.session = session or requests.Session()
        headers: Dict[str, str] = dict(REQUEST_HEADERS)
        headers["Referer"] = referer or f"{self.settings.search_base_url}/"
        for key, value in headers.items():
            self.session.headers.setdefault(key, value)

    def fetch_page(self, url: str) -> Optional[str]:
        """Return the page HTML, or ``None`` when the page could not be retrieved."""
        try:
            with self.limiter.slot():
                html, reason = self._fetch_with_retry(url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unexpected error fetching %s reason=%s: %s", url, REASON_UNEXPECTED, exc)
            return None

        if html is None:
            logger.warning("Failed to fetch %s reason=%s", url, reason)
        return html

    def _fetch_with_retry(self, url: str) -> Tuple[Optional[str], Optional[str]]:
        max_attempts = self.backoff.max_attempts
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                self._sleep(self.backoff.delay_before(attempt))
            try:
                return self._attempt(url)
            except _RetryableFailure as exc:
                logger.warning(
                    "Request failed (attempt %s/%s) for %s reason=%s: %s",
                    attempt,
                    max_attempts,
                    url,
                    exc.reason,
                    exc,
                )
        return None, REASON_EXHAUSTED

    def _attempt(self, url: str) -> Tuple[Optional[str], Optional[str]]:
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as exc:
            raise _RetryableFailure(REASON_NETWORK, str(exc)) from exc

        status = response.status_code
        if status in self.retry_statuses:
            raise _RetryableFailure(REASON_STATUS, f"HTTP {status}")
        if status != 200:
            logger.info("Non-retryable status %s for %s", status, url)
            return None, REASON_STATUS

        html = response.text or ""
        if not html.strip():
            return None, REASON_EMPTY
        if looks_like_challenge(html, self.challenge_markers):
            logger.warning("Challenge page detected for %s", url)
            return None, REASON_CHALLENGE
        return html, None
