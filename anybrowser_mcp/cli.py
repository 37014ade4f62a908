"""Command-line entry point for the any-browser MCP server."""

import argparse
import asyncio
import logging
import sys

from . import __version__, server
from .config import BROWSER_CHOICES, MODES, TRANSPORTS, ServerConfig, configure_logging
from .errors import BrowserError
from .session import open_session

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="any-browser-mcp",
        description="MCP server that controls an already-running browser over its remote-debugging endpoint.",
    )
    parser.add_argument("-e", "--endpoint", help="Explicit endpoint URL (ws://... or http://host:port)")
    parser.add_argument(
        "-b",
        "--browser",
        choices=BROWSER_CHOICES,
        help="Browser to attach to (default: auto, tries chrome, edge, firefox in that order)",
    )
    parser.add_argument("-p", "--port", type=int, help="Custom remote-debugging port")
    parser.add_argument(
        "--launch",
        action="store_true",
        default=None,
        dest="allow_launch",
        help="Launch a browser with debugging enabled if none is found",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="Log every discovery and connection step")
    parser.add_argument("--mode", choices=MODES, help="direct: raw protocol commands (default); scripted: Playwright")
    parser.add_argument("--transport", choices=TRANSPORTS, default="stdio", help="MCP transport (default: stdio)")
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind address (default: 127.0.0.1)")
    parser.add_argument("--http-port", type=int, default=8000, help="HTTP port (default: 8000)")
    parser.add_argument(
        "--no-profile-seed",
        action="store_false",
        default=None,
        dest="seed_profile",
        help="Do not copy bookmarks, cookies and logins into a launched browser's profile",
    )
    parser.add_argument(
        "--no-precheck",
        action="store_false",
        default=None,
        dest="precheck",
        help="Skip the process and metadata checks before each connection attempt",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def serve(config: ServerConfig) -> None:
    if config.transport == "http":
        logger.info("Serving streamable HTTP on %s:%d", config.host, config.http_port)
        await server.create_server(config).run_streamable_http_async()
        return
    # Connect before serving so a startup failure is reported, not deferred to the first tool call.
    async with open_session(config) as session:
        await server.create_server(config, session).run_stdio_async()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = ServerConfig.from_env(**vars(args))
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(config.verbose)

    try:
        asyncio.run(serve(config))
    except BrowserError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
