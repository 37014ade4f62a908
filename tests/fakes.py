"""Fakes standing in for a browser: websocket channel, DevTools HTTP, one page."""

import asyncio
import base64
import json
from unittest.mock import MagicMock
from urllib.parse import unquote

import httpx
from websockets.exceptions import ConnectionClosedError

from anybrowser_mcp import js
from anybrowser_mcp.automation import Automation
from anybrowser_mcp.devtools import DevToolsHTTP

_EOF = object()

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


async def settle(rounds: int = 5):
    """Let background reader tasks drain what has been pushed."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Websocket ───────────────────────────────────────────────────


class FakeSocket:
    """Simulates a websockets client connection.

    ``handler`` receives each sent message (decoded) and returns the frames
    the browser would answer with; they are queued for the reader.
    """

    def __init__(self, handler=None):
        self.sent = []
        self.handler = handler
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedError(None, None)
        message = json.loads(data)
        self.sent.append(message)
        if self.handler is not None:
            for frame in self.handler(message) or []:
                self.push(frame)

    def push(self, frame):
        self._incoming.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self):
        """Simulate the browser closing the connection."""
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    def methods(self):
        return [m["method"] for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _EOF:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(_EOF)


# ── DevTools HTTP ───────────────────────────────────────────────


class FakeDevTools:
    """In-memory ``/json/*`` endpoints served through httpx.MockTransport."""

    def __init__(self, port=9222, pages=None):
        self.port = port
        self.targets = []
        self.requests = []
        self.activate_status = 200
        self.version_failures = 0
        self._next = 0
        for url, title in pages or []:
            self.add(url, title)

    def add(self, url="about:blank", title=""):
        self._next += 1
        target_id = f"T{self._next}"
        target = {
            "id": target_id,
            "type": "page",
            "url": url,
            "title": title,
            "webSocketDebuggerUrl": f"ws://127.0.0.1:{self.port}/devtools/page/{target_id}",
        }
        self.targets.append(target)
        return target

    def remove(self, target_id):
        self.targets = [t for t in self.targets if t["id"] != target_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if path == "/json/version":
            if self.version_failures > 0:
                self.version_failures -= 1
                return httpx.Response(503)
            return httpx.Response(200, json={
                "Browser": "Chrome/126.0",
                "webSocketDebuggerUrl": f"ws://127.0.0.1:{self.port}/devtools/browser/B1",
            })
        if path == "/json/list":
            worker = {"id": "W1", "type": "service_worker", "url": "https://sw.example"}
            return httpx.Response(200, json=[*self.targets, worker])
        if path == "/json/new":
            url = unquote(request.url.query.decode()) or "about:blank"
            return httpx.Response(200, json=self.add(url))
        if path.startswith("/json/activate/"):
            target_id = path.rsplit("/", 1)[1]
            if not any(t["id"] == target_id for t in self.targets):
                return httpx.Response(404, text=f"No such target id: {target_id}")
            return httpx.Response(self.activate_status, text="Target activated")
        if path.startswith("/json/close/"):
            target_id = path.rsplit("/", 1)[1]
            self.remove(target_id)
            return httpx.Response(200, text="Target is closing")
        return httpx.Response(404)

    def client(self) -> DevToolsHTTP:
        return DevToolsHTTP(port=self.port, transport=httpx.MockTransport(self.handler))


# ── Page ────────────────────────────────────────────────────────


_SNIPPETS = {
    fn: name
    for name, fn in vars(js).items()
    if name.isupper() and isinstance(fn, str) and fn.startswith("(arg) =>")
}


class FakeTab:
    """Answers protocol commands for a single page, enough for the facade.

    ``elements`` maps selectors to boxes ``{x, y, width, height}``;
    ``pages`` maps URLs to the title the page gets once loaded.
    """

    def __init__(self, url="about:blank", title="", pages=None):
        self.url = url
        self.title = title
        self.pages = pages or {}
        self.elements = {}
        self.body_text = ""
        self.navigate_error = None
        self.image = PNG_BYTES
        self.history = [url]
        self.history_index = 0

    def _load(self, url):
        self.url = url
        self.title = self.pages.get(url, "")

    def __call__(self, message):
        method = message["method"]
        params = message.get("params", {})
        reply = {"id": message["id"], "result": {}}
        if method == "Page.navigate":
            if self.navigate_error:
                reply["result"] = {"frameId": "F1", "errorText": self.navigate_error}
                return [reply]
            self.history = self.history[:self.history_index + 1] + [params["url"]]
            self.history_index = len(self.history) - 1
            self._load(params["url"])
            reply["result"] = {"frameId": "F1", "loaderId": "L1"}
            return [reply, {"method": "Page.loadEventFired", "params": {"timestamp": 1.0}}]
        if method == "Page.getNavigationHistory":
            entries = [{"id": i, "url": url, "title": self.pages.get(url, "")} for i, url in enumerate(self.history)]
            reply["result"] = {"currentIndex": self.history_index, "entries": entries}
        elif method == "Page.navigateToHistoryEntry":
            self.history_index = params["entryId"]
            self._load(self.history[self.history_index])
            return [reply, {"method": "Page.loadEventFired", "params": {"timestamp": 2.0}}]
        elif method == "Runtime.evaluate":
            value = self.evaluate(params["expression"])
            reply["result"] = {"result": {"type": "object", "value": value}}
        elif method == "Page.captureScreenshot":
            reply["result"] = {"data": base64.b64encode(self.image).decode()}
        elif method == "Page.getLayoutMetrics":
            reply["result"] = {"cssContentSize": {"x": 0, "y": 0, "width": 1280, "height": 4000}}
        return [reply]

    def evaluate(self, expression):
        for fn, name in _SNIPPETS.items():
            prefix = f"({fn})("
            if expression.startswith(prefix):
                arg = json.loads(expression[len(prefix):-1])
                return self.run(name, arg)
        return None

    def run(self, name, arg):
        selector = arg.get("selector")
        box = self.elements.get(selector)
        if name == "LOCATION":
            return {"url": self.url, "title": self.title}
        if name == "PROBE":
            visible = box is not None and box["width"] > 0 and box["height"] > 0
            return {"exists": box is not None, "visible": visible}
        if name == "TEXT_PRESENT":
            return arg["text"] in self.body_text
        if box is None and selector is not None:
            return {"missing": True}
        if name == "ELEMENT_CENTER":
            return {
                "x": box["x"] + box["width"] / 2,
                "y": box["y"] + box["height"] / 2,
                "width": box["width"],
                "height": box["height"],
            }
        if name == "ELEMENT_CLIP":
            return dict(box)
        if name == "FOCUS":
            return {"focused": True}
        if name == "GET_TEXT":
            return {"value": box.get("text", "")}
        return {}


# ── Automation ──────────────────────────────────────────────────


def fake_automation(mode="direct"):
    """An Automation double whose coroutine methods are AsyncMocks."""
    automation = MagicMock(spec=Automation)
    automation.mode = mode
    automation.list_tabs.return_value = [
        {"index": 0, "id": "T1", "url": "https://a.example/", "title": "A", "current": True, "attached": True, "stale": False},
    ]
    return automation
