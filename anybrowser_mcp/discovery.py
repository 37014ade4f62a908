"""Locate a running browser that exposes a remote-debugging endpoint.

Candidates are tried in a fixed order (chrome, edge, firefox) unless the
caller pins an endpoint URL, a port or a brand. Two cheap pre-checks run
before the websocket handshake: an OS process scan and a ``/json/version``
request. They only decide whether a handshake is worth attempting; a port
whose metadata endpoint answers is always tried, whatever the process scan
says.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from urllib.parse import urlparse

import psutil
import websockets

from .config import BRANDS, DEFAULT_PORTS, normalize_brand
from .devtools import DevToolsHTTP
from .errors import (
    HANDSHAKE_FAILED,
    PORT_NOT_RESPONDING,
    PROCESS_NOT_FOUND,
    BrowserError,
    DiscoveryError,
    ProbeAttempt,
)

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
HANDSHAKE_TIMEOUT = 5.0
METADATA_TIMEOUT = 2.0

PROCESS_NAMES: dict[str, tuple[str, ...]] = {
    "chrome": ("chrome", "chromium", "google chrome"),
    "edge": ("msedge", "microsoft edge"),
    "firefox": ("firefox",),
}


@dataclass(frozen=True)
class Endpoint:
    """A reachable control address for one browser instance."""

    ws_url: str
    brand: str
    explicit: bool = False

    @property
    def host(self) -> str:
        return urlparse(self.ws_url).hostname or LOCALHOST

    @property
    def port(self) -> int:
        parsed = urlparse(self.ws_url)
        if parsed.port:
            return parsed.port
        return 443 if parsed.scheme == "wss" else 80

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def conventional_ws_url(port: int, host: str = LOCALHOST) -> str:
    return f"ws://{host}:{port}/devtools/browser"


# ── Pre-checks ──────────────────────────────────────────────────


def _matches_brand(name: str, brand: str) -> bool:
    name = name.lower()
    return any(candidate in name for candidate in PROCESS_NAMES.get(brand, ()))


def _has_debug_flag(cmdline: list[str], port: int) -> bool:
    for i, arg in enumerate(cmdline):
        if arg == f"--remote-debugging-port={port}":
            return True
        # firefox takes the port as a separate argument
        if arg in ("--remote-debugging-port", "-remote-debugging-port") and i + 1 < len(cmdline):
            if cmdline[i + 1] == str(port):
                return True
    return False


def find_debug_process(brand: str, port: int) -> int | None:
    """PID of a process that looks like ``brand`` started with a debug port."""
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            name = proc.info.get("name") or ""
            cmdline = proc.info.get("cmdline") or []
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if not _matches_brand(name, brand):
            continue
        if _has_debug_flag(cmdline, port):
            return proc.info["pid"]
    return None


async def browser_process_running(brand: str, port: int) -> bool:
    try:
        pid = await asyncio.to_thread(find_debug_process, brand, port)
    except psutil.Error as exc:
        logger.debug("Process scan for %s failed: %s", brand, exc)
        return False
    if pid is not None:
        logger.debug("Process check for %s on port %d: found pid %d", brand, port, pid)
    else:
        logger.debug("Process check for %s on port %d: not found", brand, port)
    return pid is not None


async def fetch_ws_url(host: str, port: int, timeout: float = METADATA_TIMEOUT) -> str | None:
    """The browser websocket URL from ``/json/version``, or None when silent."""
    devtools = DevToolsHTTP(host, port, timeout=timeout)
    try:
        version = await devtools.version()
    except BrowserError as exc:
        logger.debug("Port %d metadata not accessible: %s", port, exc)
        return None
    finally:
        await devtools.aclose()
    logger.debug("Port %d accessible - browser: %s", port, version.get("Browser", "unknown"))
    return version.get("webSocketDebuggerUrl") or conventional_ws_url(port, host)


async def handshake(ws_url: str, timeout: float = HANDSHAKE_TIMEOUT) -> None:
    """Open and immediately close a channel to prove the endpoint is live."""
    ws = await websockets.connect(ws_url, open_timeout=timeout, max_size=None)
    await ws.close()


# ── Discovery ───────────────────────────────────────────────────


async def probe_port(brand: str, port: int, host: str = LOCALHOST, precheck: bool = True) -> Endpoint | ProbeAttempt:
    """Try one candidate port; return an Endpoint or the reason it failed."""
    logger.info("Checking %s on port %d...", brand, port)
    process_found: bool | None = None
    metadata_ws = await fetch_ws_url(host, port)
    metadata_ok = metadata_ws is not None
    if precheck:
        process_found = await browser_process_running(brand, port)
        if not process_found and not metadata_ok:
            logger.info("Skipping %s - no debug process and port %d not responding", brand, port)
            return ProbeAttempt(
                brand, port, conventional_ws_url(port, host), PROCESS_NOT_FOUND,
                "no browser process with debugging found",
                process_found=False, metadata_ok=False,
            )

    ws_url = metadata_ws or conventional_ws_url(port, host)
    logger.info("Attempting channel handshake with %s: %s", brand, ws_url)
    try:
        await handshake(ws_url)
    except Exception as exc:  # noqa: BLE001 - any transport failure is a probe result
        reason = HANDSHAKE_FAILED if metadata_ok else PORT_NOT_RESPONDING
        logger.info("Handshake with %s on port %d failed: %s", brand, port, exc)
        return ProbeAttempt(
            brand, port, ws_url, reason, str(exc) or type(exc).__name__,
            process_found=process_found, metadata_ok=metadata_ok,
        )
    logger.info("Connected to %s on port %d", brand, port)
    return Endpoint(ws_url, brand)


async def probe_url(url: str, brand: str) -> Endpoint | ProbeAttempt:
    """Try an explicitly supplied endpoint URL (ws:// or http://)."""
    logger.info("Connecting to explicit endpoint: %s", url)
    parsed = urlparse(url)
    ws_url = url
    if parsed.scheme in ("http", "https"):
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        ws_url = await fetch_ws_url(parsed.hostname or LOCALHOST, port)
        if ws_url is None:
            return ProbeAttempt(brand, port, url, PORT_NOT_RESPONDING, "metadata endpoint did not answer")
    elif parsed.scheme not in ("ws", "wss"):
        return ProbeAttempt(brand, parsed.port, url, HANDSHAKE_FAILED, f"unsupported scheme {parsed.scheme!r}")
    try:
        await handshake(ws_url)
    except Exception as exc:  # noqa: BLE001
        return ProbeAttempt(brand, parsed.port, ws_url, HANDSHAKE_FAILED, str(exc) or type(exc).__name__)
    return Endpoint(ws_url, brand, explicit=True)


def candidate_ports(brand: str = "auto", port: int | None = None) -> list[tuple[str, int]]:
    """Ordered (brand, port) pairs discovery will try."""
    brand = normalize_brand(brand)
    if port is not None:
        return [("chrome" if brand == "auto" else brand, port)]
    if brand == "auto":
        return [(b, DEFAULT_PORTS[b]) for b in BRANDS]
    return [(brand, DEFAULT_PORTS[brand])]


async def discover(
    endpoint: str | None = None,
    brand: str = "auto",
    port: int | None = None,
    precheck: bool = True,
) -> Endpoint:
    """Resolve exactly one working Endpoint or raise DiscoveryError."""
    brand = normalize_brand(brand)
    logger.info("Discovering browser (brand=%s, port=%s, endpoint=%s, platform=%s)", brand, port, endpoint, sys.platform)

    if endpoint:
        result = await probe_url(endpoint, "chrome" if brand == "auto" else brand)
        if isinstance(result, Endpoint):
            return result
        raise DiscoveryError([result], hint=f"Failed to connect to endpoint {endpoint}.")

    attempts: list[ProbeAttempt] = []
    for candidate_brand, candidate_port in candidate_ports(brand, port):
        # An explicit port is attempted unconditionally.
        result = await probe_port(candidate_brand, candidate_port, precheck=precheck and port is None)
        if isinstance(result, Endpoint):
            return result
        attempts.append(result)
    raise DiscoveryError(attempts, hint=startup_hint())


def startup_hint() -> str:
    if sys.platform == "win32":
        chrome, edge = "chrome.exe --remote-debugging-port=9222", "msedge.exe --remote-debugging-port=9223"
    elif sys.platform == "darwin":
        chrome = "/Applications/Google\\ Chrome.app/Contents/MacOS/Google\\ Chrome --remote-debugging-port=9222"
        edge = "/Applications/Microsoft\\ Edge.app/Contents/MacOS/Microsoft\\ Edge --remote-debugging-port=9223"
    else:
        chrome, edge = "google-chrome --remote-debugging-port=9222", "microsoft-edge --remote-debugging-port=9223"
    return (
        "To fix this:\n"
        f"  1. Start your browser with debugging enabled:\n     {chrome}\n     {edge}\n"
        "  2. Or pass --launch to start a new browser instance\n"
        "  3. Or pass --endpoint with the exact websocket URL"
    )
