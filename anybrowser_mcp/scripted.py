"""Automation through Playwright attached to the running browser over CDP.

Element actions go through Playwright locators, so actionability waits and
retries come from Playwright itself. Read-only queries share the page-side
functions used by the direct mode.
"""

from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .automation import (
    DEFAULT_TIMEOUT_MS,
    MOUSE_BUTTONS,
    WAIT_UNTIL,
    Automation,
    require_choice,
    require_timeout,
)
from .errors import (
    BrowserError,
    ChannelClosedError,
    ChannelError,
    ElementNotFoundError,
    InvalidArgumentError,
    ScriptError,
    TargetClosedError,
    TargetNotFoundError,
)

logger = logging.getLogger(__name__)

CLOSED_MARKERS = ("has been closed", "Target closed", "Target page, context or browser has been closed")


def _first_line(exc: Exception) -> str:
    return (str(exc).strip().splitlines() or [type(exc).__name__])[0]


class ScriptedAutomation(Automation):
    mode = "scripted"

    def __init__(self, browser: Browser, context: BrowserContext, playwright: Playwright | None = None):
        self.browser = browser
        self.context = context
        self.playwright = playwright
        self._page: Page | None = None

    @classmethod
    async def connect(cls, ws_url: str, timeout: float = DEFAULT_TIMEOUT_MS) -> ScriptedAutomation:
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.connect_over_cdp(ws_url, timeout=timeout)
        except PlaywrightError as exc:
            await playwright.stop()
            raise ChannelError(f"Playwright could not attach to {ws_url}: {_first_line(exc)}") from exc
        context = browser.contexts[0] if browser.contexts else await browser.new_context()
        logger.info("Playwright attached to %s (%d open pages)", ws_url, len(context.pages))
        return cls(browser, context, playwright)

    async def _current(self) -> Page:
        if not self.browser.is_connected():
            raise ChannelClosedError("Browser connection closed")
        if self._page is None:
            pages = self.context.pages
            self._page = pages[0] if pages else await self.context.new_page()
        if self._page.is_closed():
            self._page = None
            raise TargetClosedError("Current tab was closed; switch to another tab")
        return self._page

    async def _run(self, action, selector: str | None = None, script: bool = False):
        """Await a Playwright call, translating its errors into BrowserError."""
        try:
            return await action
        except PlaywrightTimeout as exc:
            if selector is not None and self._page is not None and not self._page.is_closed():
                if await self._page.locator(selector).count() == 0:
                    raise ElementNotFoundError(selector) from exc
            raise BrowserError(_first_line(exc)) from exc
        except PlaywrightError as exc:
            message = _first_line(exc)
            if any(marker in message for marker in CLOSED_MARKERS):
                raise TargetClosedError(message) from exc
            if script:
                raise ScriptError(message) from exc
            raise BrowserError(message) from exc

    async def _call(self, fn: str, arg: dict) -> Any:
        page = await self._current()
        return await self._run(page.evaluate(fn, arg), script=True)

    async def current_url(self) -> str:
        return (await self._current()).url

    async def _describe(self, page: Page, response=None) -> dict:
        result = {"url": page.url, "title": await page.title()}
        if response is not None:
            result["status"] = response.status
        return result

    # ── Navigation ──────────────────────────────────────────────

    async def navigate(self, url: str, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("wait_until", wait_until, WAIT_UNTIL)
        require_timeout(timeout)
        page = await self._current()
        response = await self._run(page.goto(url, wait_until=wait_until, timeout=timeout))
        return await self._describe(page, response)

    async def reload(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("wait_until", wait_until, WAIT_UNTIL)
        page = await self._current()
        response = await self._run(page.reload(wait_until=wait_until, timeout=timeout))
        return await self._describe(page, response)

    async def go_back(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("wait_until", wait_until, WAIT_UNTIL)
        page = await self._current()
        response = await self._run(page.go_back(wait_until=wait_until, timeout=timeout))
        return {"navigated": response is not None, **await self._describe(page)}

    async def go_forward(self, wait_until: str = "load", timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("wait_until", wait_until, WAIT_UNTIL)
        page = await self._current()
        response = await self._run(page.go_forward(wait_until=wait_until, timeout=timeout))
        return {"navigated": response is not None, **await self._describe(page)}

    # ── Input ───────────────────────────────────────────────────

    async def click(self, selector: str, button: str = "left", click_count: int = 1, force: bool = False,
                    timeout: float = DEFAULT_TIMEOUT_MS) -> dict:
        require_choice("button", button, MOUSE_BUTTONS)
        require_timeout(timeout)
        if click_count < 1:
            raise InvalidArgumentError("click_count must be at least 1")
        page = await self._current()
        locator = page.locator(selector).first
        await self._run(locator.click(button=button, click_count=click_count, force=force, timeout=timeout), selector)
        return {}

    async def type_text(self, text: str, selector: str | None = None, delay: float = 0, clear: bool = False) -> dict:
        if clear and not selector:
            raise InvalidArgumentError("clear requires a selector")
        page = await self._current()
        if selector:
            locator = page.locator(selector).first
            if clear:
                await self._run(locator.fill(""), selector)
            await self._run(locator.press_sequentially(text, delay=delay), selector)
        else:
            await self._run(page.keyboard.type(text, delay=delay))
        return {"typed": len(text)}

    async def fill(self, selector: str, value: str) -> dict:
        page = await self._current()
        await self._run(page.locator(selector).first.fill(value), selector)
        return {"value": value}

    async def _select(self, selector: str, values: list | None, labels: list | None, indexes: list | None) -> list[str]:
        page = await self._current()
        locator = page.locator(selector).first
        return await self._run(locator.select_option(value=values, label=labels, index=indexes), selector)

    async def hover(self, selector: str) -> dict:
        page = await self._current()
        await self._run(page.locator(selector).first.hover(), selector)
        return {}

    async def drag_and_drop(self, source: str, target: str) -> dict:
        page = await self._current()
        try:
            await self._run(page.drag_and_drop(source, target))
        except BrowserError:
            for selector in (source, target):
                if await page.locator(selector).count() == 0:
                    raise ElementNotFoundError(selector) from None
            raise
        return {}

    async def press_key(self, key: str, selector: str | None = None) -> dict:
        page = await self._current()
        if selector:
            await self._run(page.locator(selector).first.press(key), selector)
        else:
            await self._run(page.keyboard.press(key))
        return {}

    # ── Scripts ─────────────────────────────────────────────────

    async def evaluate(self, script: str, args: Any = None) -> Any:
        page = await self._current()
        if args is None:
            return await self._run(page.evaluate(script), script=True)
        return await self._run(page.evaluate(script, args), script=True)

    # ── Screenshots ─────────────────────────────────────────────

    async def _capture(self, full_page: bool, selector: str | None, fmt: str, quality: int | None) -> bytes:
        page = await self._current()
        options: dict = {"type": fmt}
        if quality is not None:
            options["quality"] = quality
        if selector:
            return await self._run(page.locator(selector).first.screenshot(**options), selector)
        return await self._run(page.screenshot(full_page=full_page, **options))

    # ── Tabs ────────────────────────────────────────────────────

    async def _target_id(self, page: Page) -> str | None:
        try:
            session = await self.context.new_cdp_session(page)
            info = await session.send("Target.getTargetInfo")
            await session.detach()
        except PlaywrightError as exc:
            logger.debug("Could not read target id: %s", exc)
            return None
        return info.get("targetInfo", {}).get("targetId")

    async def _tab(self, page: Page, index: int | None = None) -> dict:
        tab = {
            "id": await self._target_id(page),
            "url": page.url,
            "title": await self._run(page.title()),
            "attached": True,
            "stale": False,
            "current": page is self._page,
        }
        if index is not None:
            tab = {"index": index, **tab}
        return tab

    async def list_tabs(self) -> list[dict]:
        return [await self._tab(page, i) for i, page in enumerate(self.context.pages)]

    async def _resolve(self, index: int | None, tab_id: str | None) -> Page:
        if index is None and tab_id is None:
            raise InvalidArgumentError("Must provide either index or id")
        pages = self.context.pages
        if tab_id is not None:
            for page in pages:
                if await self._target_id(page) == tab_id:
                    return page
            raise TargetNotFoundError(f"Tab not found: {tab_id}")
        if index < 0 or index >= len(pages):
            span = f"0-{len(pages) - 1}" if pages else "none"
            raise TargetNotFoundError(f"Tab not found: index {index} out of range (available: {span})")
        return pages[index]

    async def switch_tab(self, index: int | None = None, tab_id: str | None = None) -> dict:
        page = await self._resolve(index, tab_id)
        try:
            await page.bring_to_front()
        except PlaywrightError as exc:
            logger.info("Could not bring tab to front: %s", exc)
        self._page = page
        return await self._tab(page)

    async def new_tab(self, url: str | None = None, switch_to: bool = True) -> dict:
        page = await self._run(self.context.new_page())
        if url:
            await self._run(page.goto(url))
        if switch_to:
            self._page = page
        elif self._page is not None and not self._page.is_closed():
            await self._run(self._page.bring_to_front())
        return await self._tab(page)

    async def close_tab(self, index: int | None = None, tab_id: str | None = None) -> dict:
        if index is None and tab_id is None:
            page = await self._current()
        else:
            page = await self._resolve(index, tab_id)
        tab = await self._tab(page)
        await self._run(page.close())
        if page is self._page:
            self._page = None
        return tab

    async def close(self) -> None:
        # Stopping the driver drops the CDP connection without closing the browser.
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None
        self._page = None
