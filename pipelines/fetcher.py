"""HTTP fetching for DocGraph.

One page at a time, with a per-request timeout and bounded retries using
exponential backoff with jitter. Redirects are followed one hop at a time and
every hop must pass the URL security policy before it is requested.
"""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import aiohttp

from observability.metrics import record_fetch
from .errors import FetchError
from .security import URLSecurityPolicy, default_policy

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
MAX_BODY_BYTES = 20 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Result of fetching a single URL."""
    url: str
    status_code: int
    body: bytes
    content_type: str = ""
    final_url: Optional[str] = None
    retry_count: int = 0
    response_time: float = 0.0

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower()

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")


class PageFetcher:
    """Asynchronous page fetcher with retry logic."""

    def __init__(self,
                 user_agent: str = "DocGraph/1.0",
                 request_timeout: float = 30.0,
                 max_retries: int = 3,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 30.0,
                 max_redirects: int = 5,
                 url_policy: Optional[URLSecurityPolicy] = None):
        """Initialize fetcher.

        Args:
            user_agent: User agent sent with every request
            request_timeout: Total timeout per request in seconds
            max_retries: Maximum number of retry attempts after the first try
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Upper bound for a single retry delay (seconds)
            max_redirects: Redirect hops followed before giving up
            url_policy: Security policy every requested URL must pass
        """
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.max_redirects = max_redirects
        self.url_policy = url_policy or default_policy
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings, url_policy: Optional[URLSecurityPolicy] = None) -> "PageFetcher":
        return cls(
            user_agent=settings.user_agent,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            max_retry_delay=settings.max_retry_delay,
            url_policy=url_policy,
        )

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.user_agent}
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    @staticmethod
    def _is_retryable_exception(exception: Exception) -> bool:
        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True
        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ServerDisconnectedError))

    async def _check_url(self, url: str, source: str, status_code: int = 0):
        is_safe, error = await asyncio.to_thread(self.url_policy.validate, url)
        if not is_safe:
            record_fetch("blocked", 0.0)
            logger.warning(f"Refusing to fetch {url}: {error}")
            raise FetchError(f"URL blocked: {error}", source, status_code=status_code)

    @asynccontextmanager
    async def _open(self, session: aiohttp.ClientSession, url: str):
        """Yield the response at the end of the redirect chain starting at ``url``."""
        current = url
        for _ in range(self.max_redirects + 1):
            async with session.get(current, allow_redirects=False) as response:
                location = response.headers.get('Location')
                if response.status not in REDIRECT_STATUS_CODES or not location:
                    yield response
                    return
                status = response.status
            target = urljoin(current, location)
            logger.debug(f"Redirect {status} from {current} to {target}")
            await self._check_url(target, url, status_code=status)
            current = target
        raise FetchError(f"Exceeded {self.max_redirects} redirects", url)

    async def _read_body(self, response, url: str) -> bytes:
        length = response.content_length
        if length is not None and length > MAX_BODY_BYTES:
            raise FetchError(f"Response body exceeds {MAX_BODY_BYTES} bytes", url, status_code=response.status)

        received = []
        size = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            size += len(chunk)
            if size > MAX_BODY_BYTES:
                raise FetchError(f"Response body exceeds {MAX_BODY_BYTES} bytes", url, status_code=response.status)
            received.append(chunk)
        return b''.join(received)

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url``, retrying transient failures.

        Raises:
            FetchError: On a non-2xx final status, a blocked URL or redirect
                target, an oversized body, or when retries are exhausted
        """
        await self._check_url(url, url)
        session = await self._ensure_session()
        start_time = time.monotonic()
        last_error: Optional[str] = None
        last_status = 0

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")
                async with self._open(session, url) as response:
                    last_status = response.status
                    if response.status in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {response.status} for {url}, retrying in {delay:.2f}s")
                        await asyncio.sleep(delay)
                        continue

                    if response.status >= 400:
                        record_fetch("http_error", time.monotonic() - start_time)
                        raise FetchError(f"HTTP {response.status}", url, status_code=response.status)

                    try:
                        body = await self._read_body(response, url)
                    except FetchError:
                        record_fetch("too_large", time.monotonic() - start_time)
                        raise

                    elapsed = time.monotonic() - start_time
                    record_fetch("success", elapsed)
                    return FetchResult(
                        url=url,
                        status_code=response.status,
                        body=body,
                        content_type=response.headers.get('content-type', ''),
                        final_url=str(response.url),
                        retry_count=attempt,
                        response_time=elapsed,
                    )

            except FetchError:
                raise
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_error = str(e) or type(e).__name__
                if attempt < self.max_retries and self._is_retryable_exception(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error fetching {url}: {last_error}, retrying in {delay:.2f}s "
                                   f"(attempt {attempt + 1}/{self.max_retries + 1})")
                    await asyncio.sleep(delay)
                    continue
                break

        record_fetch("failed", time.monotonic() - start_time)
        status = 408 if last_error and "Timeout" in last_error else last_status
        raise FetchError(f"Failed after {self.max_retries + 1} attempts: {last_error or f'HTTP {last_status}'}",
                         url, status_code=status)
