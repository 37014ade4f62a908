"""Which targets (tabs) exist and which one tool calls act on.

The registry owns one CDP channel per target it has attached to. Switching
keeps the old channel open so switching back reuses it. A channel that
drops marks its target stale; the next use reconnects by target id if the
browser still lists it and raises TargetClosedError otherwise.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

from .cdp import CDPClient
from .config import DEFAULT_COMMAND_TIMEOUT
from .devtools import DevToolsHTTP
from .errors import BrowserError, InvalidArgumentError, TargetClosedError, TargetNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class Target:
    id: str
    url: str
    title: str
    ws_url: str | None = None
    attached: bool = False
    stale: bool = False
    current: bool = False

    @classmethod
    def from_info(cls, info: dict) -> Target:
        return cls(
            id=info.get("id") or info.get("targetId", ""),
            url=info.get("url", ""),
            title=info.get("title", ""),
            ws_url=info.get("webSocketDebuggerUrl"),
        )

    def to_dict(self, index: int | None = None) -> dict:
        data = asdict(self)
        data.pop("ws_url")
        if index is not None:
            data = {"index": index, **data}
        return data


class TargetRegistry:
    def __init__(
        self,
        devtools: DevToolsHTTP,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        client_factory: Callable[[], CDPClient] | None = None,
    ):
        self.devtools = devtools
        self.command_timeout = command_timeout
        self._client_factory = client_factory or (lambda: CDPClient(timeout=command_timeout))
        self._channels: dict[str, CDPClient] = {}
        self._stale: set[str] = set()
        self.current_id: str | None = None

    async def list_targets(self) -> list[Target]:
        """Open page targets in browser order, current and stale ones flagged.

        A stale target lost its channel; the next use reconnects to it.
        """
        targets = [Target.from_info(info) for info in await self.devtools.list_targets()]
        for target in targets:
            channel = self._channels.get(target.id)
            target.attached = channel is not None and channel.connected
            target.stale = self.is_stale(target.id)
            target.current = target.id == self.current_id
        return targets

    async def _find(self, target_id: str) -> Target | None:
        for target in await self.list_targets():
            if target.id == target_id:
                return target
        return None

    async def resolve(self, index: int | None = None, target_id: str | None = None) -> Target:
        if target_id is None and index is None:
            raise InvalidArgumentError("Must provide either index or id")
        targets = await self.list_targets()
        if target_id is not None:
            for target in targets:
                if target.id == target_id:
                    return target
            raise TargetNotFoundError(f"Tab not found: {target_id}")
        if index < 0 or index >= len(targets):
            span = f"0-{len(targets) - 1}" if targets else "none"
            raise TargetNotFoundError(f"Tab not found: index {index} out of range (available: {span})")
        return targets[index]

    async def switch_target(self, index: int | None = None, target_id: str | None = None) -> Target:
        """Make a target current: foreground it, attach, then move the pointer."""
        target = await self.resolve(index, target_id)
        try:
            await self.devtools.activate(target.id)
        except BrowserError as exc:
            logger.info("Could not bring tab %s to front: %s", target.id, exc)
        await self._attach(target)
        self.current_id = target.id
        target.current = True
        target.attached = True
        logger.info("Switched to tab %s (%s)", target.id, target.url)
        return target

    async def create_target(self, url: str | None = None, activate: bool = True) -> Target:
        info = await self.devtools.new_target(url)
        target = Target.from_info(info)
        logger.info("Opened tab %s (%s)", target.id, target.url or url)
        if activate:
            await self._attach(target)
            self.current_id = target.id
            target.current = True
            target.attached = True
        if url and not target.url:
            target.url = url
        return target

    async def close_target(self, index: int | None = None, target_id: str | None = None) -> Target:
        if index is None and target_id is None:
            if self.current_id is None:
                raise TargetNotFoundError("No current tab to close")
            target_id = self.current_id
        target = await self.resolve(index, target_id)
        channel = self._channels.pop(target.id, None)
        if channel is not None:
            await channel.close()
        await self.devtools.close_target(target.id)
        self._stale.discard(target.id)
        if self.current_id == target.id:
            self.current_id = None
        logger.info("Closed tab %s", target.id)
        return target

    async def current_client(self) -> CDPClient:
        """Channel for the current target, attaching or reconnecting as needed.

        With no current target yet, the first listed page becomes current,
        or a blank one is opened when the browser has none.
        """
        if self.current_id is None:
            targets = await self.list_targets()
            if targets:
                await self.switch_target(index=0)
            else:
                await self.create_target()
            return self._channels[self.current_id]

        channel = self._channels.get(self.current_id)
        if channel is not None and channel.connected:
            return channel

        target = await self._find(self.current_id)
        if target is None:
            closed_id = self.current_id
            self._channels.pop(closed_id, None)
            self._stale.discard(closed_id)
            raise TargetClosedError(f"Tab {closed_id} was closed; switch to another tab")
        logger.info("Reconnecting to tab %s", target.id)
        return await self._attach(target)

    def is_stale(self, target_id: str) -> bool:
        return target_id in self._stale

    async def _attach(self, target: Target) -> CDPClient:
        channel = self._channels.get(target.id)
        if channel is not None and channel.connected:
            return channel
        if not target.ws_url:
            # /json/new responses sometimes omit the URL; the list has it.
            listed = await self._find(target.id)
            if listed is None or not listed.ws_url:
                raise TargetNotFoundError(f"Tab {target.id} has no debugger URL (already attached elsewhere?)")
            target.ws_url = listed.ws_url
        channel = self._client_factory()
        await channel.connect(target.ws_url)
        channel.on_close(lambda _c, tid=target.id: self._stale.add(tid))
        self._channels[target.id] = channel
        self._stale.discard(target.id)
        return channel

    async def close(self) -> None:
        """Close every channel; tabs stay open in the browser."""
        for target_id, channel in list(self._channels.items()):
            logger.debug("Closing channel for tab %s", target_id)
            await channel.close()
        self._channels.clear()
        self.current_id = None
