import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp

from . import LAUNCHER_NAME, LAUNCHER_VERSION

log = logging.getLogger(__name__)

T = TypeVar('T')

CHUNK_SIZE = 64 * 1024
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=None, connect=30, sock_read=60)


class HttpStatusError(Exception):
    def __init__(self, url: str, status: int, reason: str = ''):
        self.url = url
        self.status = status
        self.reason = reason
        super().__init__(f"HTTP {status} {reason} for {url}".replace('  ', ' '))


def is_transient(error: BaseException) -> bool:
    """Errors worth retrying: resets, truncated bodies, timeouts, 5xx and 429."""
    if isinstance(error, HttpStatusError):
        return error.status >= 500 or error.status == 429
    return isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError))


def backoff_delay(attempt: int, base: float) -> float:
    """Exponential delay before retry number ``attempt`` (starting at 1), capped at 30s."""
    return min(30.0, base * (2 ** (attempt - 1)))


class HttpResponse:
    """Thin view over an aiohttp response exposing what the store needs."""

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def content_length(self) -> Optional[int]:
        return self._response.content_length

    async def read(self) -> bytes:
        return await self._response.read()

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_chunked(chunk_size):
            yield chunk


class HttpClient:
    """
    Owns one aiohttp session for a provisioning run.

    Every request is a single attempt; callers wrap them in ``retry`` with
    their own policy. ``get_bytes`` is meant for small documents (version
    lists, API responses).
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        timeout: aiohttp.ClientTimeout = DEFAULT_TIMEOUT,
    ):
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout

    async def __aenter__(self) -> 'HttpClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': f"{LAUNCHER_NAME}/{LAUNCHER_VERSION}"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @contextlib.asynccontextmanager
    async def stream(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> AsyncIterator[HttpResponse]:
        session = self._get_session()
        async with session.get(url, headers=headers) as response:
            if response.status >= 400:
                raise HttpStatusError(url, response.status, response.reason or '')
            yield HttpResponse(response)

    async def get_bytes(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> bytes:
        async with self.stream(url, headers=headers) as response:
            return await response.read()


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: float,
    description: str = '',
) -> T:
    """Runs ``operation`` until it succeeds, retrying only transient errors."""
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as error:
            if not is_transient(error) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, backoff)
            log.warning(f"Transient error on {description} (attempt {attempt}/{attempts}): {error!r}. Retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            attempt += 1
