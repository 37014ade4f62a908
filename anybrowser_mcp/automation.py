"""The automation surface every tool call goes through.

``Automation`` is implemented twice: ``DirectAutomation`` composes raw
protocol commands and ``ScriptedAutomation`` drives Playwright attached
over the same endpoint. Behaviour that does not depend on the strategy
lives here: argument checks, the wait-for polling loop, the screenshot
output policy and the read-only DOM queries, which both variants run as
the same page-side functions from ``js``.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import fnmatch
import logging
from pathlib import Path
from typing import Any

from . import js
from .errors import CommandTimeoutError, ElementNotFoundError, InvalidArgumentError, ScriptError, WaitTimeoutError

logger = logging.getLogger(__name__)

WAIT_UNTIL = ("load", "domcontentloaded", "networkidle")
MOUSE_BUTTONS = ("left", "right", "middle")
WAIT_STATES = ("visible", "hidden", "attached", "detached")
TEXT_KINDS = ("textContent", "innerText", "innerHTML")
ELEMENT_CHECKS = ("visible", "hidden", "enabled", "disabled", "checked", "unchecked", "editable", "readonly")
SCROLL_BEHAVIORS = ("auto", "smooth")

DEFAULT_TIMEOUT_MS = 30000
POLL_INTERVAL = 0.1
ECHO_LIMIT = 100


def truncate(value: Any, limit: int = ECHO_LIMIT) -> Any:
    """Shorten long strings for echoing back in tool results."""
    if isinstance(value, str) and len(value) > limit:
        return value[:limit] + "..."
    return value


def require_choice(name: str, value: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise InvalidArgumentError(f"Invalid {name} {value!r}; expected one of: {', '.join(choices)}")
    return value


def require_timeout(timeout: float) -> float:
    if timeout is None or timeout < 0:
        raise InvalidArgumentError(f"timeout must be a non-negative number of milliseconds, got {timeout!r}")
    return timeout


def image_format(path: str | None, quality: int | None) -> str:
    """``jpeg`` for .jpg/.jpeg paths (or inline captures with a quality), else ``png``."""
    if path:
        return "jpeg" if Path(path).suffix.lower() in (".jpg", ".jpeg") else "png"
    return "jpeg" if quality is not None else "png"


def url_matches(current: str, pattern: str) -> bool:
    if current == pattern:
        return True
    return any(ch in pattern for ch in "*?[") and fnmatch.fnmatchcase(current, pattern)


class Automation(abc.ABC):
    mode: str = ""

    # ── Navigation ──────────────────────────────────────────────

    @abc.abstractmethod
    async def navigate(self, url: str, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        """Load ``url`` in the current target; returns the resulting url and title."""

    @abc.abstractmethod
    async def reload(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict: ...

    @abc.abstractmethod
    async def go_back(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict: ...

    @abc.abstractmethod
    async def go_forward(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict: ...

    # ── Input ───────────────────────────────────────────────────

    @abc.abstractmethod
    async def click(
        self,
        selector: str,
        button: str = "left",
        click_count: int = 1,
        force: bool = False,
        timeout: float = DEFAULT_TIMEOUT_MS,
    ) -> dict: ...

    @abc.abstractmethod
    async def type_text(self, text: str, selector: str | None = None, delay: float = 0, clear: bool = False) -> dict:
        """Type ``text`` key by key into ``selector`` (or the focused element)."""

    @abc.abstractmethod
    async def fill(self, selector: str, value: str) -> dict: ...

    @abc.abstractmethod
    async def _select(self, selector: str, values: list | None, labels: list | None, indexes: list | None) -> list[str]: ...

    async def select_option(
        self,
        selector: str,
        value: str | None = None,
        label: str | None = None,
        index: int | None = None,
    ) -> dict:
        given = [v for v in (value, label, index) if v is not None]
        if len(given) != 1:
            raise InvalidArgumentError("Provide exactly one of value, label or index")
        selected = await self._select(
            selector,
            [value] if value is not None else None,
            [label] if label is not None else None,
            [index] if index is not None else None,
        )
        return {"selected": selected}

    @abc.abstractmethod
    async def hover(self, selector: str) -> dict: ...

    @abc.abstractmethod
    async def drag_and_drop(self, source: str, target: str) -> dict: ...

    @abc.abstractmethod
    async def press_key(self, key: str, selector: str | None = None) -> dict: ...

    # ── Scripts and reads ───────────────────────────────────────

    @abc.abstractmethod
    async def evaluate(self, script: str, args: Any = None) -> Any:
        """Run ``script`` in the page. With ``args`` the script must be a function taking them."""

    @abc.abstractmethod
    async def _call(self, fn: str, arg: dict) -> Any:
        """Invoke one of the ``js`` page functions with a single object argument."""

    @abc.abstractmethod
    async def current_url(self) -> str: ...

    async def _query(self, fn: str, selector: str | None, **arg) -> dict:
        result = await self._call(fn, {"selector": selector, **arg})
        if isinstance(result, dict):
            if result.get("missing"):
                raise ElementNotFoundError(selector)
            if result.get("error"):
                raise InvalidArgumentError(result["error"])
        return result

    async def location(self) -> dict:
        return await self._call(js.LOCATION, {})

    async def get_content(self, selector: str | None = None, text_only: bool = False) -> dict:
        return await self._query(js.GET_CONTENT, selector, textOnly=text_only)

    async def get_text(self, selector: str, kind: str = "textContent") -> dict:
        require_choice("kind", kind, TEXT_KINDS)
        result = await self._query(js.GET_TEXT, selector, kind=kind)
        return {"text": result.get("value"), "kind": kind}

    async def get_attribute(self, selector: str, attribute: str) -> dict:
        result = await self._query(js.GET_ATTRIBUTE, selector, attribute=attribute)
        return {"value": result.get("value")}

    async def find_elements(
        self, selector: str, limit: int = 10, include_text: bool = True, include_attributes: bool = False
    ) -> dict:
        if limit < 1:
            raise InvalidArgumentError("limit must be at least 1")
        return await self._query(
            js.FIND_ELEMENTS, selector, limit=limit, includeText=include_text, includeAttributes=include_attributes
        )

    async def check_element(self, selector: str, checks: list[str] | None = None) -> dict:
        checks = list(checks or ["visible", "enabled"])
        for check in checks:
            require_choice("check", check, ELEMENT_CHECKS)
        return await self._query(js.CHECK_ELEMENT, selector, checks=checks)

    async def scroll(
        self, selector: str | None = None, x: float | None = None, y: float | None = None, behavior: str = "auto"
    ) -> dict:
        require_choice("behavior", behavior, SCROLL_BEHAVIORS)
        position = await self._query(js.SCROLL, selector, x=x, y=y, behavior=behavior)
        return {"position": position}

    async def page_info(
        self, include_metadata: bool = True, include_viewport: bool = True, include_performance: bool = False
    ) -> dict:
        return await self._call(js.PAGE_INFO, {
            "includeMetadata": include_metadata,
            "includeViewport": include_viewport,
            "includePerformance": include_performance,
        })

    # ── Waiting ─────────────────────────────────────────────────

    async def _probe(self, selector: str) -> dict:
        return await self._call(js.PROBE, {"selector": selector})

    async def _text_present(self, text: str, selector: str | None) -> bool:
        return bool(await self._call(js.TEXT_PRESENT, {"selector": selector, "text": text}))

    async def _condition_met(self, selector: str | None, state: str, text: str | None, url: str | None) -> bool:
        if url is not None and not url_matches(await self.current_url(), url):
            return False
        if text is not None:
            return await self._text_present(text, selector)
        if selector is not None:
            probe = await self._probe(selector)
            return {
                "attached": probe["exists"],
                "detached": not probe["exists"],
                "visible": probe["visible"],
                "hidden": not probe["visible"],
            }[state]
        return True

    async def wait_for(
        self,
        selector: str | None = None,
        state: str = "visible",
        text: str | None = None,
        url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_MS,
    ) -> dict:
        """Poll until the condition holds, every POLL_INTERVAL seconds.

        Raises WaitTimeoutError once ``timeout`` milliseconds have passed
        without the condition holding. Each check only gets the time left
        before the deadline (at least one poll interval), so a page that
        stops answering still fails with WaitTimeoutError. A page
        navigating away mid-check counts as "not yet".
        """
        if selector is None and text is None and url is None:
            raise InvalidArgumentError("Must provide selector, text or url to wait for")
        require_choice("state", state, WAIT_STATES)
        require_timeout(timeout)
        condition = describe_condition(selector, state, text, url)

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout / 1000
        while True:
            check = max(deadline - loop.time(), POLL_INTERVAL)
            try:
                if await asyncio.wait_for(self._condition_met(selector, state, text, url), timeout=check):
                    return {"condition": condition, "elapsed": round((loop.time() - started) * 1000)}
            except asyncio.TimeoutError:
                logger.debug("wait_for check did not answer within %.3fs", check)
            except (ScriptError, CommandTimeoutError) as exc:
                logger.debug("wait_for check failed, retrying: %s", exc)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise WaitTimeoutError(condition, timeout)
            await asyncio.sleep(min(POLL_INTERVAL, remaining))

    # ── Screenshots ─────────────────────────────────────────────

    @abc.abstractmethod
    async def _capture(self, full_page: bool, selector: str | None, fmt: str, quality: int | None) -> bytes: ...

    async def screenshot(
        self,
        path: str | None = None,
        full_page: bool = False,
        selector: str | None = None,
        quality: int | None = None,
    ) -> dict:
        """Capture the viewport, the full page or one element.

        With ``path`` the image is written there and only the path is
        reported; without it the image comes back inline as base64 and a
        data URL.
        """
        if full_page and selector:
            raise InvalidArgumentError("full_page and selector cannot be combined")
        if quality is not None and not 0 <= quality <= 100:
            raise InvalidArgumentError("quality must be between 0 and 100")
        fmt = image_format(path, quality)
        data = await self._capture(full_page, selector, fmt, quality if fmt == "jpeg" else None)
        result = {"format": fmt, "size": len(data), "fullPage": full_page}
        if path:
            out = Path(path).expanduser()
            await asyncio.to_thread(_write_file, out, data)
            result["path"] = str(out)
        else:
            encoded = base64.b64encode(data).decode("ascii")
            result["base64"] = encoded
            result["dataUrl"] = f"data:image/{fmt};base64,{encoded}"
        return result

    # ── Tabs ────────────────────────────────────────────────────

    @abc.abstractmethod
    async def list_tabs(self) -> list[dict]: ...

    @abc.abstractmethod
    async def switch_tab(self, index: int | None = None, tab_id: str | None = None) -> dict: ...

    @abc.abstractmethod
    async def new_tab(self, url: str | None = None, switch_to: bool = True) -> dict: ...

    @abc.abstractmethod
    async def close_tab(self, index: int | None = None, tab_id: str | None = None) -> dict: ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Release control channels. Never closes the browser itself."""


def describe_condition(selector: str | None, state: str, text: str | None, url: str | None) -> str:
    parts = []
    if selector is not None and text is None:
        parts.append(f"selector {truncate(selector)!r} to be {state}")
    if text is not None:
        where = f" in {truncate(selector)!r}" if selector else ""
        parts.append(f"text {truncate(text)!r}{where}")
    if url is not None:
        parts.append(f"url {truncate(url)!r}")
    return " and ".join(parts)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
