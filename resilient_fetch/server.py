"""
HTTP front end for the orchestrator.

The server is owned by the process entry point (`main`), not by the core
components: the `FetchService` context manager wires the components
explicitly and owns the shared aiohttp session and the browser pool for
the lifetime of the process.
"""

import asyncio
import json
import logging
from contextlib import AsyncExitStack

import aiohttp
from aiohttp import web
from pydantic import ValidationError

from .browser_scraper import BrowserScraper
from .cache import CacheStore
from .codec import decode_request, encode_cache_stats, encode_host_snapshot, encode_result, request_to_target
from .extractor import load_rulebook
from .http_scraper import HttpScraper
from .orchestrator import FetchOrchestrator
from .registry import HostResilienceRegistry
from .settings import FetchConfig, configure_logging, load_fetch_config

logger = logging.getLogger(__name__)


class FetchService:
    """
    Owns the long-lived resources behind a FetchOrchestrator.

        async with FetchService(config) as service:
            result = await service.orchestrator.fetch_one(target)
    """

    def __init__(self, config: FetchConfig, enable_browser: bool = True):
        self.config = config
        self.enable_browser = enable_browser
        self.orchestrator: FetchOrchestrator | None = None
        self._stack = AsyncExitStack()

    async def __aenter__(self):
        connector = aiohttp.TCPConnector(limit=self.config.http_concurrency)
        session = await self._stack.enter_async_context(aiohttp.ClientSession(connector=connector))

        browser = None
        if self.enable_browser:
            browser = await self._stack.enter_async_context(BrowserScraper(self.config))

        self.orchestrator = FetchOrchestrator(
            config=self.config,
            registry=HostResilienceRegistry(self.config),
            cache=CacheStore(capacity=self.config.cache_capacity, ttl_s=self.config.cache_ttl_s),
            http=HttpScraper(session, self.config),
            browser=browser,
            rulebook=load_rulebook(self.config.rulesets_path),
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self._stack.aclose()


def _json_error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


class FetchServer:
    """aiohttp application exposing the orchestrator, with explicit start/stop."""

    def __init__(self, orchestrator: FetchOrchestrator, host: str = "127.0.0.1", port: int = 8080):
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self.app = self._build_app()
        self._runner: web.AppRunner | None = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/fetch", self.handle_fetch)
        app.router.add_get("/cache/stats", self.handle_cache_stats)
        app.router.add_post("/cache/clear", self.handle_cache_clear)
        app.router.add_post("/cache/cleanup", self.handle_cache_cleanup)
        app.router.add_get("/cache/health", self.handle_cache_health)
        app.router.add_get("/hosts", self.handle_hosts)
        app.router.add_get("/hosts/{host}", self.handle_host)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("server: listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("server: stopped")

    async def handle_fetch(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return _json_error(400, "request body must be JSON")

        try:
            req = decode_request(body)
            target = request_to_target(req)
        except ValidationError as e:
            return _json_error(400, "invalid request", details=json.loads(e.json()))
        except ValueError as e:
            return _json_error(400, str(e))

        if target.rules not in self.orchestrator.rulebook:
            return _json_error(400, f"unknown extraction ruleset: {target.rules!r}")

        result = await self.orchestrator.fetch_one(target)
        return web.json_response(encode_result(result, include_raw=req.include_raw))

    async def handle_cache_stats(self, request: web.Request) -> web.Response:
        return web.json_response(encode_cache_stats(self.orchestrator.cache.stats()))

    async def handle_cache_clear(self, request: web.Request) -> web.Response:
        logger.warning("server: clearing all cache data via API request")
        removed = self.orchestrator.cache.clear()
        return web.json_response({"removed": removed})

    async def handle_cache_cleanup(self, request: web.Request) -> web.Response:
        removed = self.orchestrator.cache.cleanup()
        return web.json_response({"removed": removed})

    async def handle_cache_health(self, request: web.Request) -> web.Response:
        stats = self.orchestrator.cache.stats()
        return web.json_response({"status": "ok", "size": stats.size, "capacity": stats.capacity})

    async def handle_hosts(self, request: web.Request) -> web.Response:
        registry = self.orchestrator.registry
        return web.json_response([encode_host_snapshot(registry.snapshot(h)) for h in registry.hosts()])

    async def handle_host(self, request: web.Request) -> web.Response:
        host = request.match_info["host"].lower()
        registry = self.orchestrator.registry
        if host not in registry.hosts():
            return _json_error(404, f"no state for host {host!r}")
        return web.json_response(encode_host_snapshot(registry.snapshot(host)))


async def serve(config: FetchConfig) -> None:
    async with FetchService(config) as service:
        server = FetchServer(service.orchestrator, config.server_host, config.server_port)
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()


def main() -> None:
    config = load_fetch_config()
    configure_logging(config.log_level)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("server: interrupted")


if __name__ == "__main__":
    main()
