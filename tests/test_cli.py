"""Tests for configuration loading and the command-line entry point."""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from anybrowser_mcp.cli import build_parser, main
from anybrowser_mcp.config import ServerConfig, configure_logging
from anybrowser_mcp.errors import StartupError

ENV_VARS = ("ANYBROWSER_CDP_ENDPOINT", "CDP_ENDPOINT", "ALLOW_BROWSER_LAUNCH", "ANYBROWSER_BROWSER", "ANYBROWSER_MODE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def config_for(argv):
    return ServerConfig.from_env(**vars(build_parser().parse_args(argv)))


class TestServerConfig:
    def test_defaults(self):
        config = ServerConfig()
        assert config.browser == "auto"
        assert config.mode == "direct"
        assert config.allow_launch is False
        assert config.launch_brand == "chrome"
        assert config.launch_port == 9222

    def test_detect_is_auto(self):
        assert ServerConfig(browser="detect").browser == "auto"
        assert ServerConfig(browser="Edge").launch_port == 9223

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="safari"):
            ServerConfig(browser="safari")
        with pytest.raises(ValueError, match="mode"):
            ServerConfig(mode="remote")

    def test_env_settings(self, monkeypatch):
        monkeypatch.setenv("CDP_ENDPOINT", "ws://fallback:1/devtools/browser/x")
        monkeypatch.setenv("ALLOW_BROWSER_LAUNCH", "true")
        config = ServerConfig.from_env()
        assert config.endpoint == "ws://fallback:1/devtools/browser/x"
        assert config.allow_launch is True

        monkeypatch.setenv("ANYBROWSER_CDP_ENDPOINT", "ws://primary:2/devtools/browser/y")
        assert ServerConfig.from_env().endpoint == "ws://primary:2/devtools/browser/y"

    def test_launch_flag_values(self, monkeypatch):
        for value, expected in (("1", True), ("yes", True), ("false", False), ("", False)):
            monkeypatch.setenv("ALLOW_BROWSER_LAUNCH", value)
            assert ServerConfig.from_env().allow_launch is expected


class TestParser:
    def test_flags_map_onto_config(self):
        config = config_for(["-b", "edge", "-p", "9300", "--launch", "--no-profile-seed", "--mode", "scripted"])
        assert config.browser == "edge"
        assert config.port == 9300
        assert config.allow_launch is True
        assert config.seed_profile is False
        assert config.mode == "scripted"
        assert config.precheck is True

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("ANYBROWSER_MODE", "scripted")
        monkeypatch.setenv("ALLOW_BROWSER_LAUNCH", "1")
        assert config_for([]).mode == "scripted"
        assert config_for(["--mode", "direct"]).mode == "direct"
        assert config_for([]).allow_launch is True

    def test_unknown_browser_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--browser", "safari"])


class TestMain:
    def test_startup_error_exits_nonzero(self, capsys):
        serve = AsyncMock(side_effect=StartupError("No browser found with remote debugging enabled."))
        with patch("anybrowser_mcp.cli.serve", serve), patch("anybrowser_mcp.cli.configure_logging"):
            code = main(["--browser", "chrome"])

        assert code == 1
        assert "Error: No browser found" in capsys.readouterr().err
        config = serve.await_args.args[0]
        assert config.browser == "chrome"

    def test_clean_exit(self):
        with patch("anybrowser_mcp.cli.serve", AsyncMock()), patch("anybrowser_mcp.cli.configure_logging"):
            assert main([]) == 0


class TestLogging:
    def test_verbose_logs_to_stderr_once(self):
        logger = logging.getLogger("anybrowser_mcp")
        handlers, level, propagate = logger.handlers[:], logger.level, logger.propagate
        try:
            logger.handlers.clear()
            configure_logging(verbose=True)
            configure_logging(verbose=True)
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 1
            configure_logging(verbose=False)
            assert logger.level == logging.WARNING
        finally:
            logger.handlers[:] = handlers
            logger.setLevel(level)
            logger.propagate = propagate
