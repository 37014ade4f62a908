"""
Any Browser MCP Server
Exposes browser control tools over the Model Context Protocol. Attaches to
an already-running Chrome, Edge or Firefox through its remote-debugging
endpoint, launching one only when allowed.
"""

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from mcp.server.fastmcp import Context, FastMCP
from pydantic import Field

from .automation import Automation, truncate
from .config import ServerConfig
from .errors import BrowserError
from .session import Session, SessionStore, open_session

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"

WaitUntil = Literal["load", "domcontentloaded", "networkidle"]
TimeoutMs = Annotated[int, Field(ge=0, le=600000, description="Timeout in milliseconds")]
Selector = Annotated[str, Field(min_length=1, description="CSS selector")]
ElementCheck = Literal["visible", "hidden", "enabled", "disabled", "checked", "unchecked", "editable", "readonly"]


@dataclass
class AppState:
    config: ServerConfig
    session: Session | None = None
    store: SessionStore | None = None

    def session_for(self, ctx: Context) -> Session:
        if self.store is None:
            return self.session
        request = getattr(ctx.request_context, "request", None)
        headers = getattr(request, "headers", None) or {}
        key = headers.get(SESSION_HEADER) or "default"
        return self.store.acquire(key)


INSTRUCTIONS = (
    "Browser control tools for an already-running Chrome, Edge or Firefox. "
    "Tools act on the current tab unless one is named; use browser_list_tabs "
    "and browser_switch_tab to change it."
)

TOOLS: list[Callable[..., Awaitable[str]]] = []


def tool(fn: Callable[..., Awaitable[str]]) -> Callable[..., Awaitable[str]]:
    """Collect a tool function; create_server registers every collected tool."""
    TOOLS.append(fn)
    return fn


def lifespan_for(config: ServerConfig | None = None, session: Session | None = None):
    """Build a lifespan bound to one config.

    Over stdio a pre-opened ``session`` is reused as-is; without one the
    lifespan opens and closes its own. Over HTTP it owns a SessionStore.
    """

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[AppState]:
        app_config = config or ServerConfig.from_env()
        if app_config.transport == "http":
            store = SessionStore(app_config)
            store.start()
            try:
                yield AppState(app_config, store=store)
            finally:
                await store.close_all()
        elif session is not None:
            yield AppState(app_config, session=session)
        else:
            async with open_session(app_config) as opened:
                yield AppState(app_config, session=opened)

    return lifespan


def text_result(data) -> str:
    """Format result as string for MCP tool return."""
    if isinstance(data, (dict, list)):
        return json.dumps(data, indent=2, default=str)
    return str(data)


def _state(ctx: Context) -> AppState:
    return ctx.request_context.lifespan_context


async def run_tool(
    ctx: Context,
    action: str,
    echo: dict,
    operation: Callable[[Automation], Awaitable[Any]],
) -> str:
    """Run one tool against the caller's session; never raises."""
    echoed = {key: truncate(value) for key, value in echo.items() if value is not None}

    async def call():
        session = _state(ctx).session_for(ctx)
        return await operation(await session.automation())

    return await _guarded(action, echoed, call)


async def _guarded(action: str, echoed: dict, call: Callable[[], Awaitable[Any]]) -> str:
    try:
        output = await call()
    except BrowserError as exc:
        logger.warning("%s failed: %s", action, exc)
        return text_result({"success": False, "action": action, "error": str(exc), **echoed})
    except Exception as exc:
        logger.exception("Unexpected error in %s", action)
        return text_result({"success": False, "action": action, "error": f"{type(exc).__name__}: {exc}", **echoed})
    if not isinstance(output, dict):
        output = {"result": output}
    return text_result({"success": True, "action": action, **echoed, **output})


# ── Navigation ──────────────────────────────────────────────────


@tool
async def browser_navigate(
    ctx: Context, url: str, wait_until: WaitUntil = "load", timeout: TimeoutMs = 30000
) -> str:
    """Navigate the current tab to a URL. Returns the resulting URL and page title."""
    return await run_tool(
        ctx, "navigate", {"url": url, "wait_until": wait_until},
        lambda a: a.navigate(url, wait_until, timeout),
    )


@tool
async def browser_reload(ctx: Context, wait_until: WaitUntil = "load", timeout: TimeoutMs = 30000) -> str:
    """Reload the current tab."""
    return await run_tool(ctx, "reload", {"wait_until": wait_until}, lambda a: a.reload(wait_until, timeout))


@tool
async def browser_back(ctx: Context, wait_until: WaitUntil = "load", timeout: TimeoutMs = 30000) -> str:
    """Go back in the current tab's history."""
    return await run_tool(ctx, "back", {"wait_until": wait_until}, lambda a: a.go_back(wait_until, timeout))


@tool
async def browser_forward(ctx: Context, wait_until: WaitUntil = "load", timeout: TimeoutMs = 30000) -> str:
    """Go forward in the current tab's history."""
    return await run_tool(ctx, "forward", {"wait_until": wait_until}, lambda a: a.go_forward(wait_until, timeout))


# ── Interaction ─────────────────────────────────────────────────


@tool
async def browser_click(
    ctx: Context,
    selector: Selector,
    button: Literal["left", "right", "middle"] = "left",
    click_count: Annotated[int, Field(ge=1, le=3)] = 1,
    force: bool = False,
    timeout: TimeoutMs = 30000,
) -> str:
    """Click an element by CSS selector. click_count=2 double-clicks."""
    return await run_tool(
        ctx, "click", {"selector": selector, "button": button, "click_count": click_count},
        lambda a: a.click(selector, button, click_count, force, timeout),
    )


@tool
async def browser_type(
    ctx: Context,
    text: str,
    selector: str | None = None,
    delay: Annotated[int, Field(ge=0, le=5000, description="Milliseconds between keystrokes")] = 0,
    clear: bool = False,
) -> str:
    """Type text key by key into an element, or into the focused element when no selector is given.
    clear empties the element first."""
    return await run_tool(
        ctx, "type", {"selector": selector, "text": text},
        lambda a: a.type_text(text, selector, delay, clear),
    )


@tool
async def browser_fill(ctx: Context, selector: Selector, value: str) -> str:
    """Set an input's value in one step, firing input and change events."""
    return await run_tool(ctx, "fill", {"selector": selector, "value": value}, lambda a: a.fill(selector, value))


@tool
async def browser_select_option(
    ctx: Context,
    selector: Selector,
    value: str | None = None,
    label: str | None = None,
    index: Annotated[int, Field(ge=0)] | None = None,
) -> str:
    """Select an option in a <select> by exactly one of value, label or index."""
    return await run_tool(
        ctx, "select_option", {"selector": selector, "value": value, "label": label, "index": index},
        lambda a: a.select_option(selector, value, label, index),
    )


@tool
async def browser_hover(ctx: Context, selector: Selector) -> str:
    """Move the mouse over an element."""
    return await run_tool(ctx, "hover", {"selector": selector}, lambda a: a.hover(selector))


@tool
async def browser_drag_and_drop(ctx: Context, source: Selector, target: Selector) -> str:
    """Drag one element onto another."""
    return await run_tool(
        ctx, "drag_and_drop", {"source": source, "target": target},
        lambda a: a.drag_and_drop(source, target),
    )


@tool
async def browser_press_key(ctx: Context, key: str, selector: str | None = None) -> str:
    """Press a key or combination (Enter, Tab, Escape, ArrowDown, Control+a).
    Focuses selector first when given."""
    return await run_tool(ctx, "press_key", {"key": key, "selector": selector}, lambda a: a.press_key(key, selector))


@tool
async def browser_scroll(
    ctx: Context,
    selector: str | None = None,
    x: float | None = None,
    y: float | None = None,
    behavior: Literal["auto", "smooth"] = "auto",
) -> str:
    """Scroll the page (or a scrollable element) to x/y. With only a selector,
    scrolls that element into view."""
    return await run_tool(
        ctx, "scroll", {"selector": selector, "x": x, "y": y},
        lambda a: a.scroll(selector, x, y, behavior),
    )


# ── Observation ─────────────────────────────────────────────────


@tool
async def browser_screenshot(
    ctx: Context,
    path: str | None = None,
    full_page: bool = False,
    selector: str | None = None,
    quality: Annotated[int, Field(ge=0, le=100)] | None = None,
) -> str:
    """Capture the viewport, the full page, or one element.
    With path the image is saved there and only the path is returned;
    otherwise the image is returned inline as base64 and a data URL."""
    return await run_tool(
        ctx, "screenshot", {"path": path, "full_page": full_page, "selector": selector},
        lambda a: a.screenshot(path, full_page, selector, quality),
    )


@tool
async def browser_get_content(ctx: Context, selector: str | None = None, text_only: bool = False) -> str:
    """Get the page (or element) HTML, or its text with text_only."""
    return await run_tool(
        ctx, "get_content", {"selector": selector, "text_only": text_only},
        lambda a: a.get_content(selector, text_only),
    )


@tool
async def browser_get_text(
    ctx: Context, selector: Selector, kind: Literal["textContent", "innerText", "innerHTML"] = "textContent"
) -> str:
    """Get the text of an element."""
    return await run_tool(ctx, "get_text", {"selector": selector, "kind": kind}, lambda a: a.get_text(selector, kind))


@tool
async def browser_get_attribute(ctx: Context, selector: Selector, attribute: str) -> str:
    """Get an attribute value of an element (null when absent)."""
    return await run_tool(
        ctx, "get_attribute", {"selector": selector, "attribute": attribute},
        lambda a: a.get_attribute(selector, attribute),
    )


@tool
async def browser_find_elements(
    ctx: Context,
    selector: Selector,
    limit: Annotated[int, Field(ge=1, le=500)] = 10,
    include_text: bool = True,
    include_attributes: bool = False,
) -> str:
    """Count elements matching a selector and describe the first `limit` of them."""
    return await run_tool(
        ctx, "find_elements", {"selector": selector, "limit": limit},
        lambda a: a.find_elements(selector, limit, include_text, include_attributes),
    )


@tool
async def browser_check_element(ctx: Context, selector: Selector, checks: list[ElementCheck] | None = None) -> str:
    """Check element states (visible, enabled, checked, editable and their opposites)."""
    return await run_tool(
        ctx, "check_element", {"selector": selector},
        lambda a: a.check_element(selector, checks),
    )


@tool
async def browser_get_page_info(
    ctx: Context, include_metadata: bool = True, include_viewport: bool = True, include_performance: bool = False
) -> str:
    """Get URL, title, meta tags, viewport geometry and optional navigation timings."""
    return await run_tool(
        ctx, "get_page_info", {},
        lambda a: a.page_info(include_metadata, include_viewport, include_performance),
    )


@tool
async def browser_wait_for(
    ctx: Context,
    selector: str | None = None,
    state: Literal["visible", "hidden", "attached", "detached"] = "visible",
    text: str | None = None,
    url: str | None = None,
    timeout: TimeoutMs = 30000,
) -> str:
    """Wait until an element reaches a state, text appears, or the URL matches
    (exact or glob pattern). Polls every 100ms until timeout."""
    return await run_tool(
        ctx, "wait_for", {"selector": selector, "state": state, "text": text, "url": url, "timeout": timeout},
        lambda a: a.wait_for(selector, state, text, url, timeout),
    )


@tool
async def browser_evaluate(ctx: Context, script: str, args: Any = None) -> str:
    """Run JavaScript in the page and return its JSON-serializable result.
    With args, script must be a function; it is called with args as its argument."""
    return await run_tool(ctx, "evaluate", {"script": script}, lambda a: a.evaluate(script, args))


# ── Tab Management ──────────────────────────────────────────────


async def _list_tabs(automation: Automation) -> dict:
    tabs = await automation.list_tabs()
    return {"tabs": tabs, "count": len(tabs)}


@tool
async def browser_list_tabs(ctx: Context) -> str:
    """List open tabs with index, id, URL and title; the current one is flagged."""
    return await run_tool(ctx, "list_tabs", {}, _list_tabs)


@tool
async def browser_switch_tab(
    ctx: Context, index: Annotated[int, Field(ge=0)] | None = None, tab_id: str | None = None
) -> str:
    """Make a tab current, by zero-based index or by id."""
    return await run_tool(
        ctx, "switch_tab", {"index": index, "tab_id": tab_id},
        lambda a: a.switch_tab(index, tab_id),
    )


@tool
async def browser_new_tab(ctx: Context, url: str | None = None, switch_to: bool = True) -> str:
    """Open a new tab, optionally at a URL. It becomes current unless switch_to is false."""
    return await run_tool(ctx, "new_tab", {"url": url, "switch_to": switch_to}, lambda a: a.new_tab(url, switch_to))


@tool
async def browser_close_tab(
    ctx: Context, index: Annotated[int, Field(ge=0)] | None = None, tab_id: str | None = None
) -> str:
    """Close a tab by index or id. If neither is given, closes the current tab."""
    return await run_tool(
        ctx, "close_tab", {"index": index, "tab_id": tab_id},
        lambda a: a.close_tab(index, tab_id),
    )


# ── Browser ─────────────────────────────────────────────────────


@tool
async def browser_launch(
    ctx: Context,
    browser: Literal["chrome", "edge", "firefox"] | None = None,
    port: Annotated[int, Field(ge=1, le=65535)] | None = None,
) -> str:
    """Start a browser with remote debugging and switch this session to it.
    If a browser already answers on the port, attaches to it instead."""

    async def call():
        session = _state(ctx).session_for(ctx)
        session.touch()
        return (await session.launch(browser, port)).to_dict()

    return await _guarded("launch", {k: v for k, v in {"browser": browser, "port": port}.items() if v}, call)


async def _status(ctx: Context) -> str:
    async def call():
        return await _state(ctx).session_for(ctx).status()

    return await _guarded("status", {}, call)


@tool
async def browser_status(ctx: Context) -> str:
    """Show how this session is connected: mode, endpoint, brand, tab count, current tab."""
    return await _status(ctx)


def create_server(config: ServerConfig | None = None, session: Session | None = None) -> FastMCP:
    """A FastMCP server with every tool and the status resource registered.

    Without ``config`` the lifespan reads the environment when the server
    starts.
    """
    settings = {"host": config.host, "port": config.http_port} if config else {}
    server = FastMCP(
        "any-browser-mcp",
        instructions=INSTRUCTIONS,
        lifespan=lifespan_for(config, session),
        **settings,
    )
    for fn in TOOLS:
        server.tool()(fn)

    @server.resource("browser://status", mime_type="application/json")
    async def status_resource() -> str:
        """Connection status of the calling session."""
        return await _status(server.get_context())

    return server


mcp = create_server()
