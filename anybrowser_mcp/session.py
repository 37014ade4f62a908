"""Sessions own the browser connection tool calls run against.

The stdio server holds exactly one Session for its lifetime, opened with
``open_session``. The HTTP server keeps a SessionStore keyed by the
transport's session id; idle sessions are swept on a fixed interval.
Closing a session releases its control channels and never stops the
browser process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from .automation import Automation
from .config import ServerConfig
from .devtools import DevToolsHTTP
from .direct import DirectAutomation
from .discovery import Endpoint, discover
from .errors import BrowserError, DiscoveryError, StartupError
from .launcher import LaunchResult, launch_browser
from .registry import TargetRegistry
from .scripted import ScriptedAutomation

logger = logging.getLogger(__name__)

LAUNCH_DISABLED = (
    "Browser launching is disabled. Start a browser with remote debugging, "
    "or pass --launch (ALLOW_BROWSER_LAUNCH=true over HTTP) to let the server start one."
)


@dataclass
class BrowserHandle:
    """A live connection to one browser, owned by exactly one Session."""

    endpoint: Endpoint
    automation: Automation
    launched: LaunchResult | None = None

    async def close(self) -> None:
        logger.info("Releasing browser connection %s", self.endpoint.ws_url)
        await self.automation.close()

    def describe(self) -> dict:
        return {
            "mode": self.automation.mode,
            "endpoint": self.endpoint.ws_url,
            "brand": self.endpoint.brand,
            "explicit": self.endpoint.explicit,
            "launched": self.launched is not None and not self.launched.reused,
        }


async def build_automation(endpoint: Endpoint, config: ServerConfig) -> Automation:
    if config.mode == "scripted":
        return await ScriptedAutomation.connect(endpoint.ws_url)
    devtools = DevToolsHTTP(endpoint.host, endpoint.port)
    return DirectAutomation(TargetRegistry(devtools, config.command_timeout))


async def connect_browser(
    config: ServerConfig,
    launcher: Callable = launch_browser,
) -> BrowserHandle:
    """Discover a running browser, falling back to a launch when allowed."""
    launched = None
    try:
        endpoint = await discover(config.endpoint, config.browser, config.port, config.precheck)
    except DiscoveryError as exc:
        if not config.allow_launch:
            raise StartupError(f"{exc}\n\n{LAUNCH_DISABLED}") from exc
        logger.warning("No browser found; launching %s on port %d", config.launch_brand, config.launch_port)
        launched = await launcher(config.launch_brand, config.launch_port, seed=config.seed_profile)
        endpoint = launched.endpoint
    automation = await build_automation(endpoint, config)
    logger.info("Connected to %s via %s (%s mode)", endpoint.brand, endpoint.ws_url, config.mode)
    return BrowserHandle(endpoint, automation, launched)


class Session:
    def __init__(
        self,
        config: ServerConfig,
        key: str = "stdio",
        clock: Callable[[], float] = time.monotonic,
        connector: Callable = connect_browser,
    ):
        self.config = config
        self.key = key
        self.handle: BrowserHandle | None = None
        self._clock = clock
        self._connector = connector
        self._connecting: asyncio.Task | None = None
        self.created = clock()
        self.last_used = self.created

    def touch(self) -> None:
        self.last_used = self._clock()

    def idle_for(self, now: float | None = None) -> float:
        return (self._clock() if now is None else now) - self.last_used

    async def connect(self) -> BrowserHandle:
        """The session's browser handle, connecting on first use.

        Concurrent first calls share one connection attempt.
        """
        if self.handle is not None:
            return self.handle
        if self._connecting is None:
            self._connecting = asyncio.create_task(self._connector(self.config))
        try:
            self.handle = await asyncio.shield(self._connecting)
        finally:
            if self._connecting is not None and self._connecting.done():
                self._connecting = None
        return self.handle

    async def automation(self) -> Automation:
        self.touch()
        return (await self.connect()).automation

    async def launch(self, brand: str | None = None, port: int | None = None, launcher: Callable = launch_browser) -> LaunchResult:
        """Launch on demand and move the session onto the launched browser."""
        brand = brand or self.config.launch_brand
        if port is None and brand == self.config.launch_brand:
            port = self.config.launch_port
        result = await launcher(brand, port, seed=self.config.seed_profile)
        if self.handle is not None and result.reused and self.handle.endpoint.port == result.endpoint.port:
            return result
        automation = await build_automation(result.endpoint, self.config)
        previous, self.handle = self.handle, BrowserHandle(result.endpoint, automation, result)
        if previous is not None:
            await previous.close()
        return result

    async def status(self) -> dict:
        status = {"session": self.key, "connected": self.handle is not None, "mode": self.config.mode}
        if self.handle is None:
            return status
        status.update(self.handle.describe())
        try:
            tabs = await self.handle.automation.list_tabs()
        except BrowserError as exc:
            status["error"] = str(exc)
            return status
        current = next((tab for tab in tabs if tab.get("current")), None)
        status["tabs"] = len(tabs)
        status["current"] = {"url": current["url"], "title": current["title"]} if current else None
        return status

    async def close(self) -> None:
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        self._connecting = None
        handle, self.handle = self.handle, None
        if handle is not None:
            await handle.close()


@contextlib.asynccontextmanager
async def open_session(config: ServerConfig, connector: Callable = connect_browser) -> AsyncIterator[Session]:
    """Connect at entry and release the browser connection on every exit path."""
    session = Session(config, connector=connector)
    await session.connect()
    try:
        yield session
    finally:
        await session.close()


class SessionStore:
    """Per-client sessions for the HTTP transport, evicted when idle."""

    def __init__(
        self,
        config: ServerConfig,
        clock: Callable[[], float] = time.monotonic,
        connector: Callable = connect_browser,
    ):
        self.config = config
        self.max_age = config.session_max_age
        self.sweep_interval = config.sweep_interval
        self.sessions: dict[str, Session] = {}
        self._clock = clock
        self._connector = connector
        self._sweeper: asyncio.Task | None = None

    def acquire(self, key: str) -> Session:
        session = self.sessions.get(key)
        if session is None:
            logger.info("New session %s", key)
            session = Session(self.config, key, self._clock, self._connector)
            self.sessions[key] = session
        session.touch()
        return session

    async def sweep(self, now: float | None = None) -> list[str]:
        """Drop and close sessions idle longer than max_age; returns their keys."""
        now = self._clock() if now is None else now
        expired = [key for key, s in self.sessions.items() if s.idle_for(now) > self.max_age]
        for key in expired:
            session = self.sessions.pop(key)
            logger.info("Evicting idle session %s (idle %.0fs)", key, session.idle_for(now))
            try:
                await session.close()
            except BrowserError as exc:
                logger.warning("Error closing session %s: %s", key, exc)
            except Exception:
                logger.exception("Unexpected error closing session %s", key)
        return expired

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="session-sweeper")

    async def close_all(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        for key in list(self.sessions):
            await self.sessions.pop(key).close()
