"""Start a browser with remote debugging when none can be attached to.

The launched process is detached into its own session and is left running
when the server exits. It uses a dedicated debug profile directory,
optionally seeded once from the user's real profile.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import DEFAULT_PORTS
from .devtools import DevToolsHTTP
from .discovery import Endpoint, conventional_ws_url
from .errors import BrowserError, LaunchError

logger = logging.getLogger(__name__)

READY_ATTEMPTS = 30
READY_INTERVAL = 1.0

CHROMIUM_FLAGS = [
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

# Relative to the real profile's Default directory.
SEED_ALLOWLIST = (
    "Bookmarks",
    "History",
    "Cookies",
    "Network/Cookies",
    "Login Data",
    "Web Data",
    "Preferences",
    "Favicons",
    "Extensions",
    "Local Extension Settings",
)


@dataclass
class LaunchResult:
    endpoint: Endpoint
    command: list[str] = field(default_factory=list)
    profile_dir: Path | None = None
    pid: int | None = None
    reused: bool = False
    seeded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "endpoint": self.endpoint.ws_url,
            "brand": self.endpoint.brand,
            "pid": self.pid,
            "reused": self.reused,
            "profile": str(self.profile_dir) if self.profile_dir else None,
            "seeded": self.seeded,
        }


# ── Executables and profiles ────────────────────────────────────


def executable_candidates(brand: str, platform: str | None = None) -> list[str]:
    platform = platform or sys.platform
    if platform == "darwin":
        return {
            "chrome": ["/Applications/Google Chrome.app/Contents/MacOS/Google Chrome", "/Applications/Chromium.app/Contents/MacOS/Chromium"],
            "edge": ["/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge"],
            "firefox": ["/Applications/Firefox.app/Contents/MacOS/firefox"],
        }[brand]
    if platform == "win32":
        program_files = [os.environ.get(v, "") for v in ("PROGRAMFILES", "PROGRAMFILES(X86)", "LOCALAPPDATA")]
        suffix = {
            "chrome": r"Google\Chrome\Application\chrome.exe",
            "edge": r"Microsoft\Edge\Application\msedge.exe",
            "firefox": r"Mozilla Firefox\firefox.exe",
        }[brand]
        exe = {"chrome": "chrome.exe", "edge": "msedge.exe", "firefox": "firefox.exe"}[brand]
        return [str(Path(base) / suffix) for base in program_files if base] + [exe]
    return {
        "chrome": ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"],
        "edge": ["microsoft-edge", "microsoft-edge-stable"],
        "firefox": ["firefox"],
    }[brand]


def find_executable(brand: str, platform: str | None = None) -> str | None:
    for candidate in executable_candidates(brand, platform):
        if os.path.isabs(candidate):
            if Path(candidate).exists():
                return candidate
        else:
            found = shutil.which(candidate)
            if found:
                return found
    return None


def profile_dirs(brand: str, platform: str | None = None, home: Path | None = None) -> tuple[Path, Path | None]:
    """(debug profile, real profile) for a brand; firefox has no real profile to seed from."""
    platform = platform or sys.platform
    home = home or Path.home()
    if platform == "darwin":
        support = home / "Library" / "Application Support"
        dirs = {
            "chrome": (support / "Google" / "Chrome-Debug", support / "Google" / "Chrome"),
            "edge": (support / "Microsoft Edge-Debug", support / "Microsoft Edge"),
            "firefox": (support / "Firefox-Debug", None),
        }
    elif platform == "win32":
        local = Path(os.environ.get("LOCALAPPDATA") or home / "AppData" / "Local")
        dirs = {
            "chrome": (local / "Google" / "Chrome-Debug", local / "Google" / "Chrome" / "User Data"),
            "edge": (local / "Microsoft" / "Edge-Debug", local / "Microsoft" / "Edge" / "User Data"),
            "firefox": (local / "Mozilla" / "Firefox-Debug", None),
        }
    else:
        config = home / ".config"
        dirs = {
            "chrome": (config / "google-chrome-debug", config / "google-chrome"),
            "edge": (config / "microsoft-edge-debug", config / "microsoft-edge"),
            "firefox": (home / ".mozilla" / "firefox-debug", None),
        }
    return dirs[brand]


def seed_profile(real_dir: Path, debug_dir: Path, allowlist: tuple[str, ...] = SEED_ALLOWLIST) -> list[str]:
    """Copy allow-listed entries from ``real_dir/Default`` into ``debug_dir/Default``.

    Best effort per entry: missing or unreadable entries are skipped.
    Returns the entries that were copied.
    """
    source = real_dir / "Default"
    dest = debug_dir / "Default"
    dest.mkdir(parents=True, exist_ok=True)
    copied = []
    for name in allowlist:
        src = source / name
        if not src.exists():
            logger.debug("Profile seed: %s not present, skipping", name)
            continue
        target = dest / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, target, dirs_exist_ok=True)
            else:
                shutil.copy2(src, target)
        except OSError as exc:
            logger.warning("Profile seed: could not copy %s: %s", name, exc)
            continue
        copied.append(name)
    logger.info("Seeded debug profile %s with %d entries", debug_dir, len(copied))
    return copied


def build_command(executable: str, brand: str, port: int, profile_dir: Path) -> list[str]:
    if brand == "firefox":
        return [executable, "--remote-debugging-port", str(port), "--profile", str(profile_dir), "--no-remote"]
    return [
        executable,
        f"--remote-debugging-port={port}",
        f"--user-data-dir={profile_dir}",
        *CHROMIUM_FLAGS,
    ]


def _spawn_detached(command: list[str], popen: Callable = subprocess.Popen):
    kwargs: dict = {"stdin": subprocess.DEVNULL, "stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    return popen(command, **kwargs)


# ── Launch ──────────────────────────────────────────────────────


async def wait_until_ready(
    devtools: DevToolsHTTP,
    attempts: int = READY_ATTEMPTS,
    interval: float = READY_INTERVAL,
    process=None,
) -> dict | None:
    """Poll ``/json/version`` until it answers; None when the budget runs out."""
    for attempt in range(1, attempts + 1):
        try:
            return await devtools.version(timeout=interval)
        except BrowserError:
            logger.debug("Waiting for browser on port %d (%d/%d)", devtools.port, attempt, attempts)
        if process is not None and process.poll() is not None:
            raise LaunchError(f"Browser process exited with code {process.returncode} before becoming reachable")
        await asyncio.sleep(interval)
    return None


async def launch_browser(
    brand: str = "chrome",
    port: int | None = None,
    seed: bool = True,
    executable: str | None = None,
    attempts: int = READY_ATTEMPTS,
    interval: float = READY_INTERVAL,
    popen: Callable = subprocess.Popen,
    devtools: DevToolsHTTP | None = None,
) -> LaunchResult:
    """Launch ``brand`` with debugging on ``port`` and wait for it to answer.

    If something already answers on the port it is returned as-is and
    nothing is spawned.
    """
    port = port or DEFAULT_PORTS[brand]
    devtools = devtools or DevToolsHTTP("127.0.0.1", port)
    try:
        if await devtools.is_responding():
            version = await devtools.version()
            logger.info("Browser already answering on port %d, not launching", port)
            ws_url = version.get("webSocketDebuggerUrl") or conventional_ws_url(port)
            return LaunchResult(Endpoint(ws_url, brand), reused=True)

        executable = executable or find_executable(brand)
        debug_dir, real_dir = profile_dirs(brand)
        if executable is None:
            raise LaunchError(
                f"No {brand} executable found (tried: {', '.join(executable_candidates(brand))})",
                profile_dir=str(debug_dir),
            )

        seeded: list[str] = []
        if seed and real_dir is not None and not debug_dir.exists() and real_dir.exists():
            seeded = await asyncio.to_thread(seed_profile, real_dir, debug_dir)
        debug_dir.mkdir(parents=True, exist_ok=True)

        command = build_command(executable, brand, port, debug_dir)
        logger.info("Launching %s: %s", brand, " ".join(command))
        try:
            process = _spawn_detached(command, popen)
        except OSError as exc:
            raise LaunchError(f"Failed to start {brand}: {exc}", command, str(debug_dir)) from exc

        try:
            version = await wait_until_ready(devtools, attempts, interval, process)
        except LaunchError as exc:
            raise LaunchError(str(exc), command, str(debug_dir)) from None
        if version is None:
            raise LaunchError(
                f"{brand} did not answer on port {port} after {attempts} attempts",
                command,
                str(debug_dir),
            )
        ws_url = version.get("webSocketDebuggerUrl") or conventional_ws_url(port)
        logger.info("Launched %s (pid %s) on port %d", brand, process.pid, port)
        return LaunchResult(Endpoint(ws_url, brand), command, debug_dir, process.pid, seeded=seeded)
    finally:
        await devtools.aclose()
