import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .http_scraper import classify_status
from .models import ErrorKind, FetchError, FetchStatus, RawPage, WaitCondition, WaitKind
from .settings import FetchConfig

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[Any]]

# Playwright navigation error codes we can classify like their HTTP counterparts.
_NET_ERRORS = {
    "net::ERR_NAME_NOT_RESOLVED": ErrorKind.DNS_FAILURE,
    "net::ERR_NAME_RESOLUTION_FAILED": ErrorKind.DNS_FAILURE,
    "net::ERR_CONNECTION_REFUSED": ErrorKind.CONNECTION_REFUSED,
    "net::ERR_CONNECTION_RESET": ErrorKind.CONNECTION_REFUSED,
    "net::ERR_CONNECTION_CLOSED": ErrorKind.CONNECTION_REFUSED,
    "net::ERR_TIMED_OUT": ErrorKind.TIMEOUT,
}


class SessionUnavailable(Exception):
    """No browser session could be acquired before the timeout."""


class SessionPool:
    """
    Bounded pool of reusable browser sessions.

    Sessions are created lazily up to `size`. Acquiring blocks (up to
    `acquire_timeout_s`) while all sessions are busy. A session released as
    unhealthy is closed and its slot freed, so a fresh one gets created on
    the next acquire.
    """

    def __init__(self, factory: SessionFactory, size: int, acquire_timeout_s: float):
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self._factory = factory
        self.size = size
        self.acquire_timeout_s = acquire_timeout_s
        self._slots = asyncio.Semaphore(size)
        self._idle: list[Any] = []
        self._all: set[Any] = set()
        self._closed = False

    @property
    def in_use(self) -> int:
        return len(self._all) - len(self._idle)

    @property
    def created(self) -> int:
        return len(self._all)

    async def acquire(self) -> Any:
        if self._closed:
            raise SessionUnavailable("pool is closed")
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.acquire_timeout_s)
        except asyncio.TimeoutError:
            raise SessionUnavailable(
                f"all {self.size} browser sessions busy for {self.acquire_timeout_s}s"
            ) from None

        if self._idle:
            return self._idle.pop()
        try:
            session = await self._factory()
        except BaseException:
            self._slots.release()
            raise
        self._all.add(session)
        return session

    async def release(self, session: Any, healthy: bool = True) -> None:
        try:
            if healthy and not self._closed:
                self._idle.append(session)
            else:
                self._all.discard(session)
                await _close_quietly(session)
        finally:
            self._slots.release()

    async def close(self) -> None:
        self._closed = True
        sessions, self._all, self._idle = list(self._all), set(), []
        for session in sessions:
            await _close_quietly(session)


async def _close_quietly(obj: Any) -> None:
    try:
        await obj.close()
    except PlaywrightError as e:
        logger.debug("browser: ignoring error while closing %r: %s", obj, e)


def classify_browser_error(exc: Exception) -> FetchError:
    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, PlaywrightTimeoutError):
        return FetchError(ErrorKind.RENDER_TIMEOUT, FetchStatus.TRANSIENT_FAILURE, message)
    text = str(exc)
    for marker, kind in _NET_ERRORS.items():
        if marker in text:
            return FetchError(kind, FetchStatus.TRANSIENT_FAILURE, message)
    return FetchError(ErrorKind.SESSION_CRASHED, FetchStatus.TRANSIENT_FAILURE, message)


class BrowserScraper:
    """
    Heavyweight JS-enabled fetcher using Playwright.

    - Launches one browser per context manager (__aenter__/__aexit__)
    - Keeps a bounded pool of browser contexts ("sessions") for reuse
    - Waits for network idle, a selector, or a fixed delay before reading the DOM
    - Blocks heavy resources (images, media, fonts) when configured
    - Discards a session whose page crashed or hung

    `session_factory` replaces the Playwright-backed context factory; the
    browser is then not launched at all.
    """

    name = "browser"

    def __init__(self, config: FetchConfig, session_factory: SessionFactory | None = None):
        self.config = config
        self._session_factory = session_factory

        self._playwright = None
        self._browser = None
        self._pool: SessionPool | None = None

    async def __aenter__(self):
        factory = self._session_factory
        if factory is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.browser_headless,
            )
            factory = self._new_context

        self._pool = SessionPool(
            factory,
            size=self.config.browser_pool_size,
            acquire_timeout_s=self.config.browser_acquire_timeout_s,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._pool:
            await self._pool.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

    @property
    def pool(self) -> SessionPool:
        if self._pool is None:
            raise RuntimeError("BrowserScraper used outside of its async context")
        return self._pool

    async def _new_context(self):
        context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            locale=self.config.browser_locale,
        )

        if self.config.browser_block_heavy:
            async def route_handler(route):
                if route.request.resource_type in {"image", "media", "font"}:
                    await route.abort()
                else:
                    await route.continue_()
            await context.route("**/*", route_handler)

        return context

    def default_wait(self) -> WaitCondition:
        return WaitCondition(kind=WaitKind(self.config.browser_wait))

    async def render(
        self,
        url: str,
        timeout: float | None = None,
        wait: WaitCondition | None = None,
    ) -> RawPage | FetchError:
        """
        Render `url` in a pooled session and return the resulting DOM as HTML.

        The session goes back to the pool on every path, including
        cancellation; it is replaced instead when the page crashed or hung.
        """
        timeout_s = self.config.browser_timeout_s if timeout is None else timeout
        timeout_ms = timeout_s * 1000
        wait = wait or self.default_wait()

        t0 = time.perf_counter()
        try:
            session = await self.pool.acquire()
        except SessionUnavailable as e:
            logger.warning("browser: no session for %s: %s", url, e)
            return FetchError(ErrorKind.SESSION_UNAVAILABLE, FetchStatus.SESSION_UNAVAILABLE, str(e))
        except PlaywrightError as e:
            logger.warning("browser: could not create a session for %s: %s", url, e)
            return FetchError(ErrorKind.SESSION_CRASHED, FetchStatus.TRANSIENT_FAILURE, f"{type(e).__name__}: {e}")

        healthy = True
        page = None
        try:
            remaining_ms = max(1.0, timeout_ms - (time.perf_counter() - t0) * 1000)
            page = await session.new_page()
            wait_until = "networkidle" if wait.kind is WaitKind.NETWORK_IDLE else "domcontentloaded"
            resp = await page.goto(url, timeout=remaining_ms, wait_until=wait_until)

            if wait.kind is WaitKind.SELECTOR:
                remaining_ms = max(1.0, timeout_ms - (time.perf_counter() - t0) * 1000)
                await page.wait_for_selector(wait.selector, timeout=remaining_ms)
            elif wait.kind is WaitKind.DELAY and wait.delay_s:
                remaining_ms = timeout_ms - (time.perf_counter() - t0) * 1000
                if wait.delay_s * 1000 > remaining_ms:
                    logger.warning("browser: %.1fs delay for %s overruns the render timeout", wait.delay_s, url)
                    return FetchError(
                        ErrorKind.RENDER_TIMEOUT, FetchStatus.TRANSIENT_FAILURE,
                        f"delay of {wait.delay_s}s exceeds the {timeout_s}s render timeout",
                    )
                await page.wait_for_timeout(wait.delay_s * 1000)

            status_code = resp.status if resp else 200
            failure = classify_status(status_code)
            if failure is not None:
                logger.info("browser: %d for %s", status_code, url)
                return FetchError(ErrorKind.HTTP_ERROR, failure, f"HTTP {status_code}", status_code=status_code)

            html = await page.content()
            return RawPage(
                body=html.encode("utf-8"),
                status_code=status_code,
                headers=dict(resp.headers) if resp else {},
                final_url=page.url,
            )

        except PlaywrightError as e:
            error = classify_browser_error(e)
            # a crashed or hung page may leave the context unusable
            healthy = error.kind not in {ErrorKind.SESSION_CRASHED, ErrorKind.RENDER_TIMEOUT}
            logger.warning("browser: %s rendering %s: %s", error.kind.value, url, error.message)
            return error

        finally:
            # the slot must go back even if closing the page is interrupted
            closed = page is None
            try:
                if page is not None:
                    await page.close()
                    closed = True
            except PlaywrightError as e:
                logger.debug("browser: could not close page for %s: %s", url, e)
            finally:
                await self.pool.release(session, healthy=healthy and closed)
