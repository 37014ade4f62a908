"""Chrome DevTools Protocol client over a single websocket channel.

One CDPClient serves one target. Commands are written in issue order and
matched to responses by id, so responses may arrive in any order. Frames
with no matching id are events; they are fanned out to ``expect_event``
waiters and buffered on ``events`` for anyone who wants them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .config import DEFAULT_COMMAND_TIMEOUT
from .errors import (
    ChannelClosedError,
    ChannelError,
    CommandTimeoutError,
    ProtocolError,
    ScriptError,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # full-page screenshots run large
EVENT_BUFFER_SIZE = 1000
OPEN_TIMEOUT = 10.0


class CDPClient:
    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout
        self.url: str | None = None
        self.events: asyncio.Queue[dict] = asyncio.Queue(maxsize=EVENT_BUFFER_SIZE)
        self.enabled_domains: set[str] = set()
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._next_id = 0
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._waiters: list[tuple[frozenset[str], Callable[[dict], bool] | None, asyncio.Future]] = []
        self._closed_reason: str | None = None
        self._on_close: list[Callable[[CDPClient], None]] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._closed_reason is None

    @property
    def pending_ids(self) -> set[int]:
        return set(self._pending)

    def on_close(self, callback: Callable[[CDPClient], None]) -> None:
        """Register a callback fired once when the channel drops."""
        self._on_close.append(callback)

    async def connect(self, url: str, open_timeout: float = OPEN_TIMEOUT) -> None:
        """Open the channel; returns once the websocket handshake completes."""
        try:
            self._ws = await websockets.connect(
                url,
                max_size=MAX_MESSAGE_SIZE,
                open_timeout=open_timeout,
                ping_interval=None,  # the browser never answers pings on busy pages
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise ChannelError(f"Failed to open CDP channel {url}: {exc}") from exc
        self.url = url
        self._closed_reason = None
        self._reader = asyncio.create_task(self._read_loop(), name=f"cdp-reader {url}")
        logger.debug("CDP channel open: %s", url)

    async def send_command(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Send one command and wait for its result payload."""
        if not self.connected:
            raise ChannelClosedError(f"CDP channel is not connected ({self._closed_reason or 'never opened'})")
        self._next_id += 1
        command_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[command_id] = (method, future)
        message = {"id": command_id, "method": method, "params": params or {}}
        budget = self.timeout if timeout is None else timeout
        try:
            try:
                await self._ws.send(json.dumps(message))
            except ConnectionClosed as exc:
                self._mark_closed(f"send failed: {exc}")
                raise ChannelClosedError(f"CDP channel closed while sending {method}") from exc
            try:
                return await asyncio.wait_for(future, timeout=budget)
            except asyncio.TimeoutError:
                raise CommandTimeoutError(method, command_id, budget) from None
        finally:
            self._pending.pop(command_id, None)

    def expect_event(self, *methods: str, predicate: Callable[[dict], bool] | None = None) -> asyncio.Future:
        """Return a future for the next event among ``methods``.

        Register before issuing the command that triggers the event, then
        await the future with a timeout. Resolves with the event params.
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((frozenset(methods), predicate, future))
        return future

    async def wait_for_event(self, *methods: str, timeout: float, predicate: Callable[[dict], bool] | None = None) -> dict:
        future = self.expect_event(*methods, predicate=predicate)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self.discard_waiter(future)

    def discard_waiter(self, future: asyncio.Future) -> None:
        self._waiters = [w for w in self._waiters if w[2] is not future]

    async def _read_loop(self) -> None:
        reason = "closed by browser"
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Dropping unparseable CDP frame: %.200r", raw)
                    continue
                self._dispatch(message)
        except ConnectionClosed as exc:
            reason = f"closed by browser ({exc})"
        except asyncio.CancelledError:
            reason = "closed locally"
            raise
        finally:
            self._mark_closed(reason)

    def _dispatch(self, message: dict) -> None:
        command_id = message.get("id")
        entry = self._pending.get(command_id) if command_id is not None else None
        if entry is None:
            self._publish(message)
            return
        method, future = entry
        if future.done():
            return
        if "error" in message:
            future.set_exception(ProtocolError(method, message["error"]))
        else:
            future.set_result(message.get("result", {}))

    def _publish(self, message: dict) -> None:
        method = message.get("method")
        if method is None:
            logger.debug("Ignoring CDP frame with unknown id: %.200r", message)
            return
        params = message.get("params", {})
        for methods, predicate, future in list(self._waiters):
            if future.done() or method not in methods:
                continue
            if predicate is not None and not predicate(params):
                continue
            future.set_result(params)
            self.discard_waiter(future)
        if self.events.full():
            self.events.get_nowait()
        self.events.put_nowait(message)

    def _mark_closed(self, reason: str) -> None:
        if self._closed_reason is not None:
            return
        self._closed_reason = reason
        logger.debug("CDP channel %s %s", self.url, reason)
        if reason != "closed locally":
            # Remote drop: nothing will ever answer, fail fast instead of timing out.
            for method, future in self._pending.values():
                if not future.done():
                    future.set_exception(ChannelClosedError(f"CDP channel {reason} before {method} completed"))
        for _, _, future in self._waiters:
            if not future.done():
                future.set_exception(ChannelClosedError(f"CDP channel {reason}"))
        self._waiters.clear()
        for callback in self._on_close:
            try:
                callback(self)
            except Exception:
                logger.exception("CDP close callback failed")

    async def close(self) -> None:
        """Release the channel.

        Commands still pending are not cancelled; each one fails when its
        own timeout elapses.
        """
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._mark_closed("closed locally")
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as exc:
                logger.debug("Error closing CDP websocket: %s", exc)

    async def evaluate(self, expression: str, await_promise: bool = True, timeout: float | None = None) -> Any:
        """Runtime.evaluate returning the value by value, raising on page exceptions."""
        result = await self.send_command(
            "Runtime.evaluate",
            {
                "expression": expression,
                "returnByValue": True,
                "awaitPromise": await_promise,
                "userGesture": True,
            },
            timeout=timeout,
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            raise ScriptError(exception.get("description") or details.get("text") or "Script evaluation failed")
        return result.get("result", {}).get("value")
