import asyncio
import codecs
import logging
import socket
from typing import Any

import aiohttp

from .models import ErrorKind, FetchError, FetchStatus, RawPage
from .settings import FetchConfig

logger = logging.getLogger(__name__)


DEFAULT_HTTP_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}


def classify_status(status_code: int) -> FetchStatus | None:
    """
    Classify an HTTP status code.

    Returns None for non-error responses, TRANSIENT_FAILURE for 429 and 5xx,
    PERMANENT_FAILURE for every other 4xx.
    """
    if status_code < 400:
        return None
    if status_code == 429 or status_code >= 500:
        return FetchStatus.TRANSIENT_FAILURE
    return FetchStatus.PERMANENT_FAILURE


def _charset(resp: aiohttp.ClientResponse, url: str) -> str:
    charset = resp.charset
    if not charset:
        return "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.info("http: unknown charset %r from %s, decoding as utf-8", charset, url)
        return "utf-8"
    return charset


def classify_exception(exc: BaseException) -> FetchError:
    """Map an aiohttp / asyncio exception onto a FetchError."""
    name = type(exc).__name__
    message = f"{name}: {exc}"

    # ServerTimeoutError is both a ClientError and a TimeoutError
    if isinstance(exc, asyncio.TimeoutError):
        return FetchError(ErrorKind.TIMEOUT, FetchStatus.TRANSIENT_FAILURE, message)

    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(exc.os_error, socket.gaierror):
            return FetchError(ErrorKind.DNS_FAILURE, FetchStatus.TRANSIENT_FAILURE, message)
        return FetchError(ErrorKind.CONNECTION_REFUSED, FetchStatus.TRANSIENT_FAILURE, message)

    if isinstance(exc, aiohttp.InvalidURL):
        return FetchError(ErrorKind.MALFORMED, FetchStatus.PERMANENT_FAILURE, message)

    if isinstance(exc, aiohttp.TooManyRedirects):
        return FetchError(ErrorKind.HTTP_ERROR, FetchStatus.PERMANENT_FAILURE, message, exc.status or None)

    if isinstance(exc, aiohttp.ClientConnectionError):
        return FetchError(ErrorKind.CONNECTION_REFUSED, FetchStatus.TRANSIENT_FAILURE, message)

    # payload / protocol errors, bad headers, undecodable bodies
    return FetchError(ErrorKind.MALFORMED, FetchStatus.TRANSIENT_FAILURE, message)


class HttpScraper:
    """
    Lightweight HTTP fetcher built on aiohttp.

    - Stateless apart from the shared ClientSession
    - Controlled by FetchConfig (timeout, UA); retries are handled outside
    - Never raises for network conditions: failures come back as FetchError
    """
    name = "http"

    def __init__(self, session: aiohttp.ClientSession, config: FetchConfig):
        self.session = session
        self.config = config

    async def fetch(
        self,
        url: str,
        timeout: float | None = None,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
    ) -> RawPage | FetchError:
        """
        Perform one GET (or POST with a JSON payload).

        Returns:
            RawPage on a non-error response, otherwise a FetchError whose
            status says whether a retry can help.
        """
        timeout_s = self.config.http_timeout_s if timeout is None else timeout
        client_timeout = aiohttp.ClientTimeout(
            total=timeout_s,
            connect=min(self.config.http_connect_timeout_s, timeout_s),
        )
        headers = {**DEFAULT_HTTP_HEADERS, "User-Agent": self.config.user_agent}

        try:
            async with self.session.request(
                method, url, json=payload, headers=headers,
                timeout=client_timeout, allow_redirects=True,
            ) as resp:
                body = await resp.read()
                status = classify_status(resp.status)
                if status is not None:
                    logger.info("http: %d for %s", resp.status, url)
                    return FetchError(
                        ErrorKind.HTTP_ERROR, status,
                        f"HTTP {resp.status}", status_code=resp.status,
                    )
                return RawPage(
                    body=body,
                    status_code=resp.status,
                    headers=dict(resp.headers),
                    final_url=str(resp.url),
                    encoding=_charset(resp, url),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = classify_exception(e)
            logger.warning("http: %s fetching %s: %s", error.kind.value, url, error.message)
            return error
