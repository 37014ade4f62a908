"""Tests for endpoint discovery: probe order, pre-checks and diagnostics."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from anybrowser_mcp import discovery
from anybrowser_mcp.discovery import Endpoint, candidate_ports, discover
from anybrowser_mcp.errors import (
    HANDSHAKE_FAILED,
    PORT_NOT_RESPONDING,
    PROCESS_NOT_FOUND,
    DiscoveryError,
)


def browser_ws(port):
    return f"ws://127.0.0.1:{port}/devtools/browser/B{port}"


def fake_network(live_ports=(), metadata_ports=None, processes=()):
    """Patch the three probes: metadata fetch, process scan and handshake."""
    metadata_ports = set(live_ports if metadata_ports is None else metadata_ports)

    async def fetch(host, port, timeout=2.0):
        return browser_ws(port) if port in metadata_ports else None

    async def running(brand, port):
        return brand in processes

    async def shake(ws_url, timeout=5.0):
        if not any(f":{port}/" in ws_url for port in live_ports):
            raise ConnectionRefusedError("[Errno 111] Connection refused")

    return (
        patch.object(discovery, "fetch_ws_url", side_effect=fetch),
        patch.object(discovery, "browser_process_running", side_effect=running),
        patch.object(discovery, "handshake", side_effect=shake),
    )


# ── auto mode ───────────────────────────────────────────────────


class TestAutoDiscovery:
    @pytest.mark.asyncio
    async def test_chrome_preferred_over_firefox(self):
        fetch, running, shake = fake_network(live_ports=(9222, 9224), processes=("chrome", "firefox"))
        with fetch, running, shake as handshake:
            endpoint = await discover()

        assert endpoint.brand == "chrome"
        assert endpoint.port == 9222
        assert endpoint.explicit is False
        handshake.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_through_to_first_live_brand(self):
        fetch, running, shake = fake_network(live_ports=(9224,), processes=("firefox",))
        with fetch, running, shake:
            endpoint = await discover()
        assert endpoint.brand == "firefox"
        assert endpoint.ws_url == browser_ws(9224)

    @pytest.mark.asyncio
    async def test_failure_lists_every_brand_with_its_reason(self):
        # chrome: process but dead port; edge: nothing; firefox: metadata up, handshake refused
        fetch, running, shake = fake_network(live_ports=(), metadata_ports={9224}, processes=("chrome",))
        with fetch, running, shake:
            with pytest.raises(DiscoveryError) as info:
                await discover()

        attempts = {a.brand: a for a in info.value.attempts}
        assert list(attempts) == ["chrome", "edge", "firefox"]
        assert attempts["chrome"].reason == PORT_NOT_RESPONDING
        assert attempts["edge"].reason == PROCESS_NOT_FOUND
        assert attempts["firefox"].reason == HANDSHAKE_FAILED

        message = str(info.value)
        assert message.startswith("No browser found")
        for brand, port in (("chrome", 9222), ("edge", 9223), ("firefox", 9224)):
            assert f"{brand} (port {port})" in message

    @pytest.mark.asyncio
    async def test_metadata_answer_overrides_missing_process(self):
        # Process scan misses it, but the port answers: still attempted.
        fetch, running, shake = fake_network(live_ports=(9222,), processes=())
        with fetch, running, shake as handshake:
            endpoint = await discover()
        assert endpoint.brand == "chrome"
        handshake.assert_awaited_once_with(browser_ws(9222))

    @pytest.mark.asyncio
    async def test_no_precheck_always_attempts_handshake(self):
        fetch, running, shake = fake_network(live_ports=(), processes=())
        with fetch, running as scan, shake as handshake:
            with pytest.raises(DiscoveryError):
                await discover(precheck=False)
        scan.assert_not_awaited()
        assert handshake.await_count == 3


# ── explicit preferences ────────────────────────────────────────


class TestExplicitPreferences:
    @pytest.mark.asyncio
    async def test_explicit_ws_url_is_tried_alone(self):
        fetch, running, shake = fake_network(live_ports=(9333,))
        with fetch as metadata, running as scan, shake as handshake:
            endpoint = await discover(endpoint="ws://127.0.0.1:9333/devtools/browser/X")

        assert endpoint.explicit is True
        assert endpoint.ws_url == "ws://127.0.0.1:9333/devtools/browser/X"
        handshake.assert_awaited_once()
        metadata.assert_not_awaited()
        scan.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_url_failure_is_single_attempt(self):
        fetch, running, shake = fake_network(live_ports=(9222,))
        with fetch, running, shake:
            with pytest.raises(DiscoveryError) as info:
                await discover(endpoint="ws://127.0.0.1:9555/devtools/browser/X")
        assert len(info.value.attempts) == 1
        assert info.value.attempts[0].reason == HANDSHAKE_FAILED

    @pytest.mark.asyncio
    async def test_explicit_http_url_resolves_through_metadata(self):
        fetch, running, shake = fake_network(live_ports=(9333,))
        with fetch, running, shake:
            endpoint = await discover(endpoint="http://127.0.0.1:9333")
        assert endpoint.ws_url == browser_ws(9333)

    @pytest.mark.asyncio
    async def test_explicit_port_attempted_once_without_process_check(self):
        fetch, running, shake = fake_network(live_ports=(9500,))
        with fetch, running as scan, shake as handshake:
            endpoint = await discover(port=9500)
        assert endpoint.port == 9500
        handshake.assert_awaited_once()
        scan.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_brand_tries_only_its_default_port(self):
        fetch, running, shake = fake_network(live_ports=(9222,), processes=("chrome", "edge"))
        with fetch, running, shake:
            with pytest.raises(DiscoveryError) as info:
                await discover(brand="edge")
        assert [(a.brand, a.port) for a in info.value.attempts] == [("edge", 9223)]

    def test_candidate_ports(self):
        assert candidate_ports() == [("chrome", 9222), ("edge", 9223), ("firefox", 9224)]
        assert candidate_ports("detect") == candidate_ports("auto")
        assert candidate_ports("firefox") == [("firefox", 9224)]
        assert candidate_ports("edge", 9999) == [("edge", 9999)]

    def test_unknown_brand_rejected(self):
        with pytest.raises(ValueError, match="Unknown browser brand"):
            candidate_ports("safari")


# ── process scan ────────────────────────────────────────────────


def fake_proc(pid, name, cmdline):
    proc = MagicMock()
    proc.info = {"pid": pid, "name": name, "cmdline": cmdline}
    return proc


class TestProcessScan:
    def test_finds_chrome_with_matching_port(self):
        procs = [
            fake_proc(10, "chrome", ["/opt/google/chrome/chrome"]),
            fake_proc(11, "chrome", ["/opt/google/chrome/chrome", "--remote-debugging-port=9222"]),
        ]
        with patch("psutil.process_iter", return_value=procs):
            assert discovery.find_debug_process("chrome", 9222) == 11

    def test_port_must_match(self):
        procs = [fake_proc(11, "msedge", ["msedge", "--remote-debugging-port=9999"])]
        with patch("psutil.process_iter", return_value=procs):
            assert discovery.find_debug_process("edge", 9223) is None

    def test_firefox_separate_argument_form(self):
        procs = [fake_proc(12, "firefox", ["firefox", "--remote-debugging-port", "9224"])]
        with patch("psutil.process_iter", return_value=procs):
            assert discovery.find_debug_process("firefox", 9224) == 12

    def test_other_brand_ignored(self):
        procs = [fake_proc(13, "firefox", ["firefox", "--remote-debugging-port=9222"])]
        with patch("psutil.process_iter", return_value=procs):
            assert discovery.find_debug_process("chrome", 9222) is None


# ── Endpoint ────────────────────────────────────────────────────


class TestEndpoint:
    def test_properties(self):
        endpoint = Endpoint("ws://localhost:9223/devtools/browser/abc", "edge")
        assert endpoint.host == "localhost"
        assert endpoint.port == 9223
        assert endpoint.http_url == "http://localhost:9223"

    def test_is_immutable(self):
        endpoint = Endpoint("ws://127.0.0.1:9222/devtools/browser", "chrome")
        with pytest.raises(AttributeError):
            endpoint.brand = "edge"

    def test_conventional_url(self):
        assert discovery.conventional_ws_url(9222) == "ws://127.0.0.1:9222/devtools/browser"


@pytest.mark.asyncio
async def test_fetch_ws_url_returns_none_when_port_is_silent():
    devtools = MagicMock()
    devtools.version = AsyncMock(side_effect=discovery.BrowserError("connection refused"))
    devtools.aclose = AsyncMock()
    with patch.object(discovery, "DevToolsHTTP", return_value=devtools):
        assert await discovery.fetch_ws_url("127.0.0.1", 9222) is None
    devtools.aclose.assert_awaited_once()
