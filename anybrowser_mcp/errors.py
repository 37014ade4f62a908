"""Exception hierarchy for browser attach, control and automation failures.

Every error raised inside a tool handler derives from BrowserError so the
tool boundary can turn it into a structured ``{success: false}`` payload.
"""

from __future__ import annotations

from dataclasses import dataclass


class BrowserError(Exception):
    """Base class for all expected browser-side failures."""


# ── Discovery ───────────────────────────────────────────────────


PROCESS_NOT_FOUND = "process not found"
PORT_NOT_RESPONDING = "port not responding"
HANDSHAKE_FAILED = "channel handshake failed"


@dataclass
class ProbeAttempt:
    """Outcome of probing one candidate endpoint."""

    brand: str
    port: int | None
    url: str
    reason: str
    detail: str = ""
    process_found: bool | None = None
    metadata_ok: bool | None = None

    def describe(self) -> str:
        where = f"port {self.port}" if self.port is not None else self.url
        line = f"{self.brand} ({where}): {self.reason}"
        if self.detail:
            line += f" - {self.detail}"
        flags = []
        if self.process_found is not None:
            flags.append(f"process: {'yes' if self.process_found else 'no'}")
        if self.metadata_ok is not None:
            flags.append(f"metadata: {'yes' if self.metadata_ok else 'no'}")
        if flags:
            line += f" [{', '.join(flags)}]"
        return line


class DiscoveryError(BrowserError):
    """No candidate endpoint could be connected."""

    def __init__(self, attempts: list[ProbeAttempt], hint: str = ""):
        self.attempts = list(attempts)
        lines = ["No browser found with remote debugging enabled.", "", "Connection attempts:"]
        lines.extend(f"  {a.describe()}" for a in self.attempts)
        if hint:
            lines.extend(["", hint])
        super().__init__("\n".join(lines))


# ── Channel / protocol ─────────────────────────────────────────


class ChannelError(BrowserError):
    """The control channel could not be opened or failed mid-use."""


class ChannelClosedError(ChannelError):
    """The control channel is closed; the target it served is stale."""


class CommandTimeoutError(BrowserError):
    def __init__(self, method: str, command_id: int, timeout: float):
        self.method = method
        self.command_id = command_id
        self.timeout = timeout
        super().__init__(f"CDP command timeout: {method} (id {command_id}, {timeout:g}s)")


class ProtocolError(BrowserError):
    """The browser answered a command with an error payload."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.code = error.get("code")
        self.payload = error
        message = error.get("message", "Unknown protocol error")
        data = error.get("data")
        if data:
            message = f"{message} ({data})"
        super().__init__(f"{method}: {message}")


# ── Page-level failures ─────────────────────────────────────────


class ScriptError(BrowserError):
    """A script evaluated in the page threw."""


class ElementNotFoundError(BrowserError):
    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"Element not found: {selector}")


class NavigationError(BrowserError):
    pass


class WaitTimeoutError(BrowserError):
    """A wait-for condition was not met before its deadline."""

    def __init__(self, condition: str, timeout_ms: float):
        self.condition = condition
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout {timeout_ms:g}ms exceeded waiting for {condition}")


class InvalidArgumentError(BrowserError):
    pass


# ── Targets ─────────────────────────────────────────────────────


class TargetNotFoundError(BrowserError):
    pass


class TargetClosedError(BrowserError):
    """The target behind a stale channel no longer exists in the browser."""


# ── Launch / startup ────────────────────────────────────────────


class LaunchError(BrowserError):
    def __init__(self, message: str, command: list[str] | None = None, profile_dir: str | None = None):
        self.command = command or []
        self.profile_dir = profile_dir
        parts = [message]
        if self.command:
            parts.append(f"Command: {' '.join(self.command)}")
        if profile_dir:
            parts.append(f"Profile: {profile_dir}")
        super().__init__("\n".join(parts))


class StartupError(BrowserError):
    pass
