"""Tests for launching a debuggable browser."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from anybrowser_mcp.errors import LaunchError
from anybrowser_mcp.launcher import (
    build_command,
    executable_candidates,
    find_executable,
    launch_browser,
    profile_dirs,
    seed_profile,
)
from fakes import FakeDevTools


class FakeProcess:
    def __init__(self, pid=4242, exit_code=None):
        self.pid = pid
        self.returncode = exit_code

    def poll(self):
        return self.returncode


@pytest.fixture
def dirs(tmp_path):
    debug, real = tmp_path / "debug", tmp_path / "real"
    with patch("anybrowser_mcp.launcher.profile_dirs", return_value=(debug, real)):
        yield debug, real


def not_yet_running(failures=3):
    fake = FakeDevTools()
    fake.version_failures = failures
    return fake


# ── command and profile ─────────────────────────────────────────


class TestCommand:
    def test_chromium_flags(self, tmp_path):
        command = build_command("/usr/bin/chrome", "chrome", 9222, tmp_path)
        assert command[0] == "/usr/bin/chrome"
        assert "--remote-debugging-port=9222" in command
        assert f"--user-data-dir={tmp_path}" in command
        assert "--no-first-run" in command

    def test_firefox_flags(self, tmp_path):
        command = build_command("firefox", "firefox", 9224, tmp_path)
        assert command[1:3] == ["--remote-debugging-port", "9224"]
        assert "--profile" in command

    def test_candidates_per_platform(self):
        assert "google-chrome" in executable_candidates("chrome", "linux")
        assert executable_candidates("edge", "darwin")[0].endswith("Microsoft Edge")

    def test_find_executable_uses_path_lookup(self):
        with patch("shutil.which", side_effect=lambda name: "/usr/bin/chromium" if name == "chromium" else None):
            assert find_executable("chrome", "linux") == "/usr/bin/chromium"
        with patch("shutil.which", return_value=None):
            assert find_executable("edge", "linux") is None

    def test_profile_dirs_are_separate_from_real_profile(self, tmp_path):
        debug, real = profile_dirs("chrome", "linux", home=tmp_path)
        assert debug == tmp_path / ".config" / "google-chrome-debug"
        assert real == tmp_path / ".config" / "google-chrome"
        assert profile_dirs("firefox", "linux", home=tmp_path)[1] is None


class TestSeedProfile:
    def test_copies_only_allow_listed_entries(self, tmp_path):
        real, debug = tmp_path / "real", tmp_path / "debug"
        default = real / "Default"
        (default / "Network").mkdir(parents=True)
        (default / "Bookmarks").write_text("{}")
        (default / "Network" / "Cookies").write_bytes(b"cookies")
        (default / "Extensions" / "abc").mkdir(parents=True)
        (default / "Extensions" / "abc" / "manifest.json").write_text("{}")
        (default / "Secrets").write_text("no")

        copied = seed_profile(real, debug)

        assert copied == ["Bookmarks", "Network/Cookies", "Extensions"]
        assert (debug / "Default" / "Network" / "Cookies").read_bytes() == b"cookies"
        assert (debug / "Default" / "Extensions" / "abc" / "manifest.json").exists()
        assert not (debug / "Default" / "Secrets").exists()

    def test_empty_real_profile_copies_nothing(self, tmp_path):
        (tmp_path / "real" / "Default").mkdir(parents=True)
        assert seed_profile(tmp_path / "real", tmp_path / "debug") == []
        assert (tmp_path / "debug" / "Default").is_dir()


# ── launch ──────────────────────────────────────────────────────


class TestLaunch:
    @pytest.mark.asyncio
    async def test_reuses_browser_already_on_port(self, dirs):
        popen = MagicMock()
        result = await launch_browser("chrome", 9222, popen=popen, devtools=FakeDevTools().client())

        assert result.reused is True
        assert result.endpoint.ws_url == "ws://127.0.0.1:9222/devtools/browser/B1"
        popen.assert_not_called()

    @pytest.mark.asyncio
    async def test_spawns_detached_and_polls_until_ready(self, dirs):
        debug, real = dirs
        (real / "Default").mkdir(parents=True)
        (real / "Default" / "Bookmarks").write_text("{}")
        popen = MagicMock(return_value=FakeProcess())

        result = await launch_browser(
            "chrome", 9222, executable="/usr/bin/chrome", attempts=5, interval=0.01,
            popen=popen, devtools=not_yet_running().client(),
        )

        command, kwargs = popen.call_args.args[0], popen.call_args.kwargs
        assert command[:2] == ["/usr/bin/chrome", "--remote-debugging-port=9222"]
        assert kwargs["start_new_session"] is True
        assert result.pid == 4242
        assert result.reused is False
        assert result.profile_dir == debug
        assert result.seeded == ["Bookmarks"]
        assert result.to_dict()["endpoint"].startswith("ws://127.0.0.1:9222/")

    @pytest.mark.asyncio
    async def test_existing_debug_profile_is_not_reseeded(self, dirs):
        debug, real = dirs
        debug.mkdir()
        (real / "Default").mkdir(parents=True)
        (real / "Default" / "Bookmarks").write_text("{}")

        result = await launch_browser(
            "chrome", 9222, executable="/usr/bin/chrome", attempts=5, interval=0.01,
            popen=MagicMock(return_value=FakeProcess()), devtools=not_yet_running().client(),
        )
        assert result.seeded == []
        assert not (debug / "Default" / "Bookmarks").exists()

    @pytest.mark.asyncio
    async def test_never_ready_reports_command_and_profile(self, dirs):
        debug, _ = dirs
        with pytest.raises(LaunchError, match="did not answer") as info:
            await launch_browser(
                "chrome", 9222, executable="/usr/bin/chrome", attempts=2, interval=0.01,
                popen=MagicMock(return_value=FakeProcess()), devtools=not_yet_running(100).client(),
            )
        assert info.value.command[0] == "/usr/bin/chrome"
        assert info.value.profile_dir == str(debug)
        assert "Command: /usr/bin/chrome" in str(info.value)

    @pytest.mark.asyncio
    async def test_process_exiting_early_stops_polling(self, dirs):
        with pytest.raises(LaunchError, match="exited with code 1"):
            await launch_browser(
                "chrome", 9222, executable="/usr/bin/chrome", attempts=30, interval=0.01,
                popen=MagicMock(return_value=FakeProcess(exit_code=1)), devtools=not_yet_running(100).client(),
            )

    @pytest.mark.asyncio
    async def test_missing_executable(self, dirs):
        with patch("anybrowser_mcp.launcher.find_executable", return_value=None):
            with pytest.raises(LaunchError, match="No edge executable found"):
                await launch_browser("edge", 9223, popen=MagicMock(), devtools=not_yet_running(1).client())

    @pytest.mark.asyncio
    async def test_spawn_failure(self, dirs):
        popen = MagicMock(side_effect=FileNotFoundError("no such file"))
        with pytest.raises(LaunchError, match="Failed to start chrome") as info:
            await launch_browser(
                "chrome", 9222, executable="/opt/missing/chrome", popen=popen,
                devtools=not_yet_running(1).client(),
            )
        assert info.value.command[0] == "/opt/missing/chrome"
        assert Path(info.value.profile_dir).name == "debug"
