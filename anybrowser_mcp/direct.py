"""Automation built directly on protocol commands against the current target."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any
from urllib.parse import urldefrag

from . import js
from .automation import (
    DEFAULT_TIMEOUT_MS,
    MOUSE_BUTTONS,
    WAIT_UNTIL,
    Automation,
    require_choice,
    require_timeout,
)
from .cdp import CDPClient
from .errors import BrowserError, InvalidArgumentError, NavigationError, WaitTimeoutError
from .registry import TargetRegistry

logger = logging.getLogger(__name__)

LOAD_EVENTS = {
    "load": ("Page.loadEventFired", None),
    "domcontentloaded": ("Page.domContentEventFired", None),
    "networkidle": ("Page.lifecycleEvent", lambda params: params.get("name") == "networkIdle"),
}

# bit values from Input.dispatchKeyEvent
MODIFIERS = {"Alt": 1, "Control": 2, "Meta": 4, "Shift": 8}
MODIFIER_ALIASES = {
    "alt": "Alt", "option": "Alt",
    "ctrl": "Control", "control": "Control",
    "meta": "Meta", "cmd": "Meta", "command": "Meta",
    "shift": "Shift",
}
MODIFIER_KEYS = {
    "Alt": ("AltLeft", 18),
    "Control": ("ControlLeft", 17),
    "Meta": ("MetaLeft", 91),
    "Shift": ("ShiftLeft", 16),
}

# key -> (code, windowsVirtualKeyCode, text)
NAMED_KEYS: dict[str, tuple[str, int, str]] = {
    "Enter": ("Enter", 13, "\r"),
    "Tab": ("Tab", 9, ""),
    "Escape": ("Escape", 27, ""),
    "Backspace": ("Backspace", 8, ""),
    "Delete": ("Delete", 46, ""),
    "Insert": ("Insert", 45, ""),
    "Space": ("Space", 32, " "),
    "ArrowUp": ("ArrowUp", 38, ""),
    "ArrowDown": ("ArrowDown", 40, ""),
    "ArrowLeft": ("ArrowLeft", 37, ""),
    "ArrowRight": ("ArrowRight", 39, ""),
    "Home": ("Home", 36, ""),
    "End": ("End", 35, ""),
    "PageUp": ("PageUp", 33, ""),
    "PageDown": ("PageDown", 34, ""),
    **{f"F{n}": (f"F{n}", 111 + n, "") for n in range(1, 13)},
}
KEY_ALIASES = {"Esc": "Escape", "Return": "Enter", " ": "Space", "Up": "ArrowUp", "Down": "ArrowDown",
               "Left": "ArrowLeft", "Right": "ArrowRight", "Del": "Delete"}

_FUNCTION_RE = re.compile(r"^\s*(async\s+)?(function\b|\([^()]*\)\s*=>|[A-Za-z_$][\w$]*\s*=>)")


def parse_key(combo: str) -> tuple[list[str], str]:
    """Split ``Control+Shift+a`` into (["Control", "Shift"], "a")."""
    if combo == "+":
        return [], "+"
    parts = combo.split("+")
    if combo.endswith("++"):
        parts = parts[:-2] + ["+"]
    *mods, key = parts
    modifiers = []
    for mod in mods:
        name = MODIFIER_ALIASES.get(mod.strip().lower())
        if name is None:
            raise InvalidArgumentError(f"Unknown modifier {mod!r} in {combo!r}")
        modifiers.append(name)
    if not key:
        raise InvalidArgumentError(f"Missing key in {combo!r}")
    return modifiers, KEY_ALIASES.get(key, key)


def key_definition(key: str) -> dict:
    """Fields of Input.dispatchKeyEvent for one key name or character."""
    if key in MODIFIER_KEYS:
        code, vk = MODIFIER_KEYS[key]
        return {"key": key, "code": code, "windowsVirtualKeyCode": vk, "text": ""}
    if key in NAMED_KEYS:
        code, vk, text = NAMED_KEYS[key]
        return {"key": " " if key == "Space" else key, "code": code, "windowsVirtualKeyCode": vk, "text": text}
    if len(key) != 1:
        raise InvalidArgumentError(f"Unknown key: {key!r}")
    if key.isalpha() and key.isascii():
        code, vk = f"Key{key.upper()}", ord(key.upper())
    elif key.isdigit():
        code, vk = f"Digit{key}", ord(key)
    else:
        code, vk = "", 0
    return {"key": key, "code": code, "windowsVirtualKeyCode": vk, "text": key}


def _check_navigation(wait_until: str, timeout: float) -> None:
    require_choice("wait_until", wait_until, WAIT_UNTIL)
    require_timeout(timeout)


class DirectAutomation(Automation):
    mode = "direct"

    def __init__(self, registry: TargetRegistry):
        self.registry = registry

    async def _client(self) -> CDPClient:
        client = await self.registry.current_client()
        if "Page" not in client.enabled_domains:
            await client.send_command("Page.enable")
            await client.send_command("Page.setLifecycleEventsEnabled", {"enabled": True})
            client.enabled_domains.add("Page")
        return client

    async def _call(self, fn: str, arg: dict) -> Any:
        client = await self._client()
        return await client.evaluate(js.call_expression(fn, arg))

    async def current_url(self) -> str:
        return (await self.location())["url"]

    # ── Navigation ──────────────────────────────────────────────

    async def _navigation(self, client: CDPClient, method: str, params: dict, wait_until: str, timeout: float,
                          what: str, wait: bool = True) -> dict:
        event, predicate = LOAD_EVENTS[wait_until]
        # Registered before the command so a fast load is not missed.
        loaded = client.expect_event(event, predicate=predicate)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout / 1000
        try:
            result = await client.send_command(method, params, timeout=timeout / 1000)
            if result.get("errorText"):
                raise NavigationError(f"{what} failed: {result['errorText']}")
            if method == "Page.navigate" and not result.get("loaderId"):
                wait = False  # same-document navigation, no load follows
            if wait:
                try:
                    await asyncio.wait_for(loaded, timeout=max(deadline - loop.time(), 0))
                except asyncio.TimeoutError:
                    raise WaitTimeoutError(f"{wait_until} after {what}", timeout) from None
        finally:
            client.discard_waiter(loaded)
            if not loaded.done():
                loaded.cancel()
        return await self.location()

    async def navigate(self, url: str, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        _check_navigation(wait_until, timeout)
        client = await self._client()
        logger.info("Navigating to %s", url)
        return await self._navigation(client, "Page.navigate", {"url": url}, wait_until, timeout, f"navigation to {url}")

    async def reload(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        _check_navigation(wait_until, timeout)
        client = await self._client()
        return await self._navigation(client, "Page.reload", {}, wait_until, timeout, "reload")

    async def _history(self, delta: int, wait_until: str, timeout: float) -> dict:
        _check_navigation(wait_until, timeout)
        client = await self._client()
        history = await client.send_command("Page.getNavigationHistory")
        entries = history.get("entries", [])
        index = history.get("currentIndex", 0) + delta
        if not 0 <= index < len(entries):
            return {"navigated": False, **await self.location()}
        entry = entries[index]
        current = entries[history.get("currentIndex", 0)]
        same_document = urldefrag(entry["url"])[0] == urldefrag(current["url"])[0]
        page = await self._navigation(
            client, "Page.navigateToHistoryEntry", {"entryId": entry["id"]}, wait_until, timeout,
            "back navigation" if delta < 0 else "forward navigation", wait=not same_document,
        )
        return {"navigated": True, **page}

    async def go_back(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        return await self._history(-1, wait_until, timeout)

    async def go_forward(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        return await self._history(1, wait_until, timeout)

    # ── Mouse ───────────────────────────────────────────────────

    async def _center(self, selector: str, force: bool = False) -> tuple[float, float]:
        box = await self._query(js.ELEMENT_CENTER, selector)
        if not force and not (box["width"] and box["height"]):
            raise BrowserError(f"Element is not visible: {selector} (pass force to click it anyway)")
        return box["x"], box["y"]

    async def _mouse(self, client: CDPClient, kind: str, x: float, y: float, button: str = "none",
                     click_count: int = 0, timeout: float | None = None) -> None:
        await client.send_command(
            "Input.dispatchMouseEvent",
            {"type": kind, "x": x, "y": y, "button": button, "clickCount": click_count},
            timeout=timeout,
        )

    async def click(self, selector: str, button: str = "left", click_count: int = 1, force: bool = False,
                    timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("button", button, MOUSE_BUTTONS)
        require_timeout(timeout)
        if click_count < 1:
            raise InvalidArgumentError("click_count must be at least 1")
        client = await self._client()
        x, y = await self._center(selector, force)
        budget = timeout / 1000
        await self._mouse(client, "mouseMoved", x, y, timeout=budget)
        for count in range(1, click_count + 1):
            await self._mouse(client, "mousePressed", x, y, button, count, timeout=budget)
            await self._mouse(client, "mouseReleased", x, y, button, count, timeout=budget)
        return {"x": x, "y": y}

    async def hover(self, selector: str) -> dict:
        client = await self._client()
        x, y = await self._center(selector)
        await self._mouse(client, "mouseMoved", x, y)
        return {"x": x, "y": y}

    async def drag_and_drop(self, source: str, target: str, steps: int = 5) -> dict:
        client = await self._client()
        sx, sy = await self._center(source)
        await self._mouse(client, "mouseMoved", sx, sy)
        await self._mouse(client, "mousePressed", sx, sy, "left", 1)
        tx, ty = await self._center(target)
        for step in range(1, steps + 1):
            await self._mouse(client, "mouseMoved", sx + (tx - sx) * step / steps, sy + (ty - sy) * step / steps, "left")
        await self._mouse(client, "mouseReleased", tx, ty, "left", 1)
        return {"from": {"x": sx, "y": sy}, "to": {"x": tx, "y": ty}}

    # ── Keyboard ────────────────────────────────────────────────

    async def _key(self, client: CDPClient, kind: str, definition: dict, modifiers: int = 0) -> None:
        params = {
            "type": kind,
            "modifiers": modifiers,
            "key": definition["key"],
            "code": definition["code"],
            "windowsVirtualKeyCode": definition["windowsVirtualKeyCode"],
        }
        if kind == "keyDown" and definition["text"]:
            params["text"] = definition["text"]
            params["unmodifiedText"] = definition["text"]
        await client.send_command("Input.dispatchKeyEvent", params)

    async def _press(self, client: CDPClient, combo: str) -> None:
        modifiers, key = parse_key(combo)
        definition = key_definition(key)
        mask = 0
        for name in modifiers:
            mask |= MODIFIERS[name]
            await self._key(client, "rawKeyDown", key_definition(name), mask)
        if mask & ~MODIFIERS["Shift"]:
            definition = {**definition, "text": ""}  # shortcuts insert nothing
        await self._key(client, "keyDown" if definition["text"] else "rawKeyDown", definition, mask)
        await self._key(client, "keyUp", definition, mask)
        for name in reversed(modifiers):
            mask &= ~MODIFIERS[name]
            await self._key(client, "keyUp", key_definition(name), mask)

    async def press_key(self, key: str, selector: str | None = None) -> dict:
        key_definition(parse_key(key)[1])
        if selector:
            await self._query(js.FOCUS, selector, clear=False)
        client = await self._client()
        await self._press(client, key)
        return {}

    async def type_text(self, text: str, selector: str | None = None, delay: float = 0, clear: bool = False) -> dict:
        if clear and not selector:
            raise InvalidArgumentError("clear requires a selector")
        if selector:
            await self._query(js.FOCUS, selector, clear=clear)
        client = await self._client()
        for i, char in enumerate(text):
            if char == "\n":
                await self._press(client, "Enter")
            else:
                definition = key_definition(char)
                await self._key(client, "keyDown", definition)
                await self._key(client, "keyUp", definition)
            if delay and i < len(text) - 1:
                await asyncio.sleep(delay / 1000)
        return {"typed": len(text)}

    async def fill(self, selector: str, value: str) -> dict:
        result = await self._query(js.FILL, selector, value=value)
        return {"value": result.get("value")}

    async def _select(self, selector: str, values: list | None, labels: list | None, indexes: list | None) -> list[str]:
        result = await self._query(js.SELECT_OPTION, selector, values=values, labels=labels, indexes=indexes)
        return result["selected"]

    # ── Scripts ─────────────────────────────────────────────────

    async def evaluate(self, script: str, args: Any = None) -> Any:
        if args is not None:
            expression = f"({script})({json.dumps(args)})"
        elif _FUNCTION_RE.match(script):
            expression = f"({script})()"
        else:
            expression = script
        client = await self._client()
        return await client.evaluate(expression)

    # ── Screenshots ─────────────────────────────────────────────

    async def _capture(self, full_page: bool, selector: str | None, fmt: str, quality: int | None) -> bytes:
        params: dict = {"format": fmt}
        if quality is not None:
            params["quality"] = quality
        if selector:
            box = await self._query(js.ELEMENT_CLIP, selector)
            if not (box["width"] and box["height"]):
                raise BrowserError(f"Element has no visible area: {selector}")
            params["clip"] = {"x": box["x"], "y": box["y"], "width": box["width"], "height": box["height"], "scale": 1}
            params["captureBeyondViewport"] = True
        client = await self._client()
        if full_page:
            metrics = await client.send_command("Page.getLayoutMetrics")
            size = metrics.get("cssContentSize") or metrics["contentSize"]
            params["clip"] = {"x": 0, "y": 0, "width": size["width"], "height": size["height"], "scale": 1}
            params["captureBeyondViewport"] = True
        result = await client.send_command("Page.captureScreenshot", params)
        return base64.b64decode(result["data"])

    # ── Tabs ────────────────────────────────────────────────────

    async def list_tabs(self) -> list[dict]:
        return [target.to_dict(i) for i, target in enumerate(await self.registry.list_targets())]

    async def switch_tab(self, index: int | None = None, tab_id: str | None = None) -> dict:
        return (await self.registry.switch_target(index, tab_id)).to_dict()

    async def new_tab(self, url: str | None = None, switch_to: bool = True) -> dict:
        return (await self.registry.create_target(url, activate=switch_to)).to_dict()

    async def close_tab(self, index: int | None = None, tab_id: str | None = None) -> dict:
        return (await self.registry.close_target(index, tab_id)).to_dict()

    async def close(self) -> None:
        await self.registry.close()
        await self.registry.devtools.aclose()
