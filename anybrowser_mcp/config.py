"""Server configuration and logging setup."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

# Probe order for auto-detection. Chrome wins when several are live.
DEFAULT_PORTS: dict[str, int] = {
    "chrome": 9222,
    "edge": 9223,
    "firefox": 9224,
}
BRANDS = tuple(DEFAULT_PORTS)
BROWSER_CHOICES = ("auto", "detect", *BRANDS)
MODES = ("direct", "scripted")
TRANSPORTS = ("stdio", "http")

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_SESSION_MAX_AGE = 30 * 60.0
DEFAULT_SWEEP_INTERVAL = 10 * 60.0

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def normalize_brand(value: str | None) -> str:
    """Map user input onto ``auto`` or one of BRANDS."""
    brand = (value or "auto").strip().lower()
    if brand == "detect":
        return "auto"
    if brand != "auto" and brand not in DEFAULT_PORTS:
        raise ValueError(f"Unknown browser brand: {value!r} (choose from {', '.join(BROWSER_CHOICES)})")
    return brand


@dataclass
class ServerConfig:
    endpoint: str | None = None
    browser: str = "auto"
    allow_launch: bool = False
    port: int | None = None
    verbose: bool = False
    mode: str = "direct"
    transport: str = "stdio"
    host: str = "127.0.0.1"
    http_port: int = 8000
    seed_profile: bool = True
    precheck: bool = True
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    session_max_age: float = DEFAULT_SESSION_MAX_AGE
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL

    def __post_init__(self) -> None:
        self.browser = normalize_brand(self.browser)
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode: {self.mode!r}")
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {self.transport!r}")

    @property
    def launch_brand(self) -> str:
        return "chrome" if self.browser == "auto" else self.browser

    @property
    def launch_port(self) -> int:
        return self.port or DEFAULT_PORTS[self.launch_brand]

    @classmethod
    def from_env(cls, **overrides) -> ServerConfig:
        """Build a config from the HTTP deployment's environment settings.

        ANYBROWSER_CDP_ENDPOINT (or CDP_ENDPOINT) and ALLOW_BROWSER_LAUNCH are
        the two settings that deployment reads; explicit overrides win.
        """
        values = {
            "endpoint": os.environ.get("ANYBROWSER_CDP_ENDPOINT") or os.environ.get("CDP_ENDPOINT") or None,
            "allow_launch": _env_flag("ALLOW_BROWSER_LAUNCH"),
            "browser": os.environ.get("ANYBROWSER_BROWSER", "auto"),
            "mode": os.environ.get("ANYBROWSER_MODE", "direct"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def configure_logging(verbose: bool = False) -> None:
    """Send package logs to stderr; stdout carries the stdio transport."""
    logger = logging.getLogger("anybrowser_mcp")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
