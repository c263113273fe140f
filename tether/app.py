"""Tether: relay coding-agent prompts from a remote device to a dev machine."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _log_runtime_compatibility() -> None:
    """Log SDK/CLI runtime versions."""
    logger = logging.getLogger(__name__)
    sdk_version = "unknown"
    try:
        from importlib.metadata import PackageNotFoundError, version

        sdk_version = version("claude-agent-sdk")
    except PackageNotFoundError:
        logger.debug("Could not resolve claude-agent-sdk version", exc_info=True)

    cli_version = "unknown"
    try:
        out = subprocess.check_output(
            ["claude", "--version"], text=True, stderr=subprocess.STDOUT, timeout=10,
        ).strip()
        match = re.search(r"(\d+\.\d+\.\d+)", out)
        cli_version = match.group(1) if match else out
    except (OSError, subprocess.SubprocessError):
        logger.debug("Could not resolve claude CLI version", exc_info=True)

    logger.info(
        "Runtime versions: claude-agent-sdk=%s claude-cli=%s",
        sdk_version,
        cli_version,
    )


def configure_logging(mode: str, log_level: str, *, to_stderr: bool = True) -> Path:
    """Rotating file log under ~/.tether/logs, plus stderr when asked."""
    log_dir = Path.home() / ".tether" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"tether-{mode}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _serve(args, config) -> None:
    from tether.server.prompt_server import TetherServer

    log_file = configure_logging("server", config.log_level)
    logging.getLogger(__name__).info(
        "Starting tether server cwd=%s project=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.project_root,
        config.port,
        args.config or "<auto>",
        log_file,
    )
    _log_runtime_compatibility()
    server = TetherServer(config)
    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        pass


def _connect(args, config) -> None:
    from rich.console import Console
    from rich.text import Text

    from tether.adapters.event_bus import EventBus
    from tether.adapters.reload_channel import ReloadChannel
    from tether.client.console import ConsoleClient
    from tether.client.session import SessionClient

    # The console owns the terminal; log to file only.
    configure_logging("client", config.log_level, to_stderr=False)
    console = Console()

    async def run() -> None:
        bus = EventBus()
        client = SessionClient(
            args.address,
            config=config,
            bus=bus,
            on_exhausted=lambda exc: console.print(
                Text(f"Disconnected: {exc}", style="red bold")
            ),
        )
        reload_channel = None
        if args.reload:
            reload_channel = ReloadChannel(
                args.reload, server_address=args.address, config=config,
            )
        await ConsoleClient(
            client, bus, console=console, reload_channel=reload_channel,
        ).run()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


def main() -> None:
    import argparse

    from tether.engine.yaml_config import resolve_config

    parser = argparse.ArgumentParser(
        prog="tether",
        description="Tether: remote prompt relay for coding agents",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .tether/tether.yaml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the prompt server in a project")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Port (0=random available port)")
    serve.add_argument("--project", metavar="DIR", help="Project root (default: cwd)")
    serve.add_argument("--secret", help="Shared secret clients must pass")

    connect = sub.add_parser("connect", help="Open an interactive session")
    connect.add_argument(
        "address", nargs="?",
        default=os.getenv("TETHER_ADDRESS", "ws://127.0.0.1:3847"),
        help="Session address, e.g. ws://host:3847/?secret=TOKEN",
    )
    connect.add_argument(
        "--reload", metavar="ADDRESS",
        help="Bundler hot-reload address to keep alive",
    )

    args = parser.parse_args()
    config = resolve_config(args.config, Path.cwd())

    if args.command == "serve":
        if args.host:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        if args.project:
            config.project_root = args.project
        if args.secret:
            config.secret = args.secret
        _serve(args, config)
    else:
        _connect(args, config)


if __name__ == "__main__":
    main()
